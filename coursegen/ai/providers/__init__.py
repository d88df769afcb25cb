"""Provider implementations."""

from coursegen.ai.providers.openai_compat import OpenAICompatibleService

__all__ = ["OpenAICompatibleService"]
