"""All-or-nothing file replacement."""

import errno
import os
import shutil
import uuid
from pathlib import Path

from loguru import logger

# Errors raised by platforms that refuse to rename onto an existing file.
_REPLACE_REFUSED = {errno.EPERM, errno.EEXIST, errno.EACCES}


def atomic_write_text(path: Path, content: str, mode: int = 0o600) -> None:
    """Write *content* to *path* so readers never observe a partial file.

    The data goes to a uniquely named sibling temp file first and is then
    renamed into place. When the rename is refused because the destination
    exists, falls back to copy + chmod and a best-effort delete of the
    temp file.
    """
    path = Path(path)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")

    with open(tmp, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())

    try:
        os.replace(tmp, path)
    except OSError as e:
        if e.errno in _REPLACE_REFUSED:
            shutil.copyfile(tmp, path)
            try:
                os.chmod(path, mode)
            except OSError:
                pass
            _discard(tmp)
            return
        _discard(tmp)
        raise


def _discard(tmp: Path) -> None:
    try:
        tmp.unlink()
    except OSError as e:
        logger.debug(f"Could not remove temp file {tmp.name}: {e}")
