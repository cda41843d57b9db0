"""Versioned-load converters for legacy on-disk shapes.

Older state stores and v1 checkpoints tracked files as two plain path
lists (``files_read`` / ``files_modified``). Current documents hold a
single ``files`` list of access records. The converters here detect the
shape and return the current one; callers persist the result.
"""

from typing import Any

from contextkeeper.utils.helpers import utc_now_iso


def is_legacy_resources(raw: Any) -> bool:
    """True when *raw* is a resources document without a ``files`` list."""
    return isinstance(raw, dict) and not isinstance(raw.get("files"), list)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def normalize_resources(raw: Any, now: str | None = None) -> dict[str, Any]:
    """Convert a state-store resources document to ``{files, tools_used}``.

    Current-shape documents are returned as-is. Legacy paths become access
    records with ``access_count=1``; a path present in both lists ends up
    ``modified``.
    """
    if not isinstance(raw, dict):
        return {"files": [], "tools_used": []}
    if not is_legacy_resources(raw):
        return {"files": raw["files"], "tools_used": _string_list(raw.get("tools_used"))}

    now = now or utc_now_iso()
    files: dict[str, dict[str, Any]] = {}
    for path in _string_list(raw.get("files_read")):
        files[path] = {"path": path, "access_count": 1, "last_accessed": now, "kind": "read"}
    for path in _string_list(raw.get("files_modified")):
        if path in files:
            files[path]["kind"] = "modified"
        else:
            files[path] = {"path": path, "access_count": 1, "last_accessed": now, "kind": "modified"}

    return {"files": list(files.values()), "tools_used": _string_list(raw.get("tools_used"))}


def upgrade_checkpoint_document(doc: dict[str, Any]) -> dict[str, Any]:
    """Bring a loaded checkpoint document up to the current shape.

    v1 resources are converted to scored file entries (score 0) and the
    document is marked ``schema_version: 2``. A missing enrichment tag
    defaults to ``heuristic``.
    """
    resources = doc.get("resources")
    if is_legacy_resources(resources) or resources is None:
        resources = resources or {}
        files: dict[str, dict[str, Any]] = {}
        for path in _string_list(resources.get("files_read")):
            files[path] = {"path": path, "access_count": 1, "kind": "read", "score": 0}
        for path in _string_list(resources.get("files_modified")):
            files[path] = {"path": path, "access_count": 1, "kind": "modified", "score": 0}
        doc["resources"] = {
            "files": list(files.values()),
            "tools_used": _string_list(resources.get("tools_used")),
        }
        doc["schema_version"] = 2

    meta = doc.get("meta")
    if isinstance(meta, dict) and not meta.get("enrichment"):
        meta["enrichment"] = "heuristic"
    return doc
