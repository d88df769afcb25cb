"""OpenAI-compatible generation provider (OpenAI, OpenRouter and similar endpoints)."""

from __future__ import annotations

import json
import logging
from typing import Any, Final

import msgspec
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError

from coursegen.jobs.errors import PermanentError, TransientError

logger = logging.getLogger(__name__)


def strip_json_fences(content: str) -> str:
  """Remove markdown code fences some models wrap around JSON output."""
  cleaned = content.strip()
  if cleaned.startswith("```"):
    cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
    if cleaned.rstrip().endswith("```"):
      cleaned = cleaned.rstrip()[:-3]
  return cleaned.strip()


class OpenAICompatibleService:
  """Generation service backed by the chat completions API in JSON mode."""

  _DEFAULT_BASE_URL: Final[str] = "https://openrouter.ai/api/v1"

  def __init__(self, *, model: str, api_key: str | None, base_url: str | None = None, client: AsyncOpenAI | None = None) -> None:
    self.model = model
    if client is None:
      if not api_key:
        raise ValueError("COURSEGEN_GENERATION_API_KEY environment variable is required")
      # Retries are owned by the engine, so the SDK must not retry on its own.
      client = AsyncOpenAI(api_key=api_key, base_url=base_url or self._DEFAULT_BASE_URL, max_retries=0)
    self._client = client

  async def generate(self, *, task_type: str, prompt: str, schema: dict[str, Any]) -> dict[str, Any]:
    # Serialize schema for prompt injection (reinforcement)
    schema_str = json.dumps(schema, indent=2)
    system_msg = f"You are an expert course author generating {task_type} content.\nYou MUST strictly output JSON adhering to this schema:\n```json\n{schema_str}\n```\nOutput valid JSON only, no markdown formatting."

    try:
      response = await self._client.chat.completions.create(
        model=self.model,
        messages=[{"role": "system", "content": system_msg}, {"role": "user", "content": prompt}],
        response_format={"type": "json_object"},
      )
    except RateLimitError as exc:
      raise TransientError(f"Rate limit reached: {exc}", category="api_limit", status_code=429) from exc
    except APITimeoutError as exc:
      raise TransientError(f"Generation request timed out: {exc}", category="api_timeout") from exc
    except APIConnectionError as exc:
      raise TransientError(f"Generation service connection failed: {exc}", category="api_unavailable") from exc
    except APIStatusError as exc:
      if exc.status_code >= 500:
        raise TransientError(f"Generation service unavailable ({exc.status_code})", category="api_unavailable", status_code=exc.status_code) from exc
      raise PermanentError(f"Generation request rejected ({exc.status_code}): {exc.message}", category="content_validation", status_code=exc.status_code) from exc

    if not response.choices:
      raise PermanentError("Generation service returned no choices", category="api_invalid_response")
    content = response.choices[0].message.content or ""
    if response.usage:
      logger.debug("Generation usage task_type=%s prompt_tokens=%s completion_tokens=%s", task_type, response.usage.prompt_tokens, response.usage.completion_tokens)

    try:
      parsed = msgspec.json.decode(strip_json_fences(content))
    except msgspec.DecodeError as exc:
      raise PermanentError(f"Generation service returned invalid JSON: {exc}", category="api_invalid_response") from exc
    if not isinstance(parsed, dict):
      raise PermanentError("Generation service returned JSON that is not an object", category="api_invalid_response")
    return parsed
