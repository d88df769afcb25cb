"""Server-sent event helpers for streaming responses."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi.responses import StreamingResponse

SSE_HEADERS = {
  "Cache-Control": "no-cache",
  "Content-Type": "text/event-stream",
  "Connection": "keep-alive",
  "X-Accel-Buffering": "no",
}


def format_sse(data: str, event: str | None = None, event_id: str | None = None) -> str:
  """Return a properly formatted SSE payload."""
  lines = []
  if event_id:
    lines.append(f"id: {event_id}")
  if event:
    lines.append(f"event: {event}")
  for chunk in data.splitlines() or [""]:
    lines.append(f"data: {chunk}")
  lines.append("\n")
  return "\n".join(lines)


def stream(payloads: AsyncIterator[str]) -> StreamingResponse:
  """Create a streaming response for an async iterator of SSE payloads."""

  async def iterator() -> AsyncIterator[bytes]:
    async for item in payloads:
      yield item.encode("utf-8")

  return StreamingResponse(iterator(), headers=SSE_HEADERS, media_type="text/event-stream")
