"""LLM provider abstraction module."""

from contextkeeper.providers.base import LLMProvider, LLMResponse
from contextkeeper.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
