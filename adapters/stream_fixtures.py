"""Synthetic event-stream payloads for exercising the decoder offline.

build_sse_stream() reproduces the backend's framing byte for byte:

    data: {... "delta": {"content": "Hello! "} ...}\\n\\n
    data: {... "delta": {"content": "I "} ...}\\n\\n
    ...
    data: {... "delta": {}, "finish_reason": "stop"}\\n\\n
    data: [DONE]\\n\\n

FakeStreamResponse stands in for an open httpx.Response so tests can
assert the reader is released.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional

DEFAULT_MODEL = "qwen2.5-32b-awq"
DEFAULT_CONTENT = "Hello! I am Vault AI."


def completion_chunk(
    content: Optional[str] = None,
    finish_reason: Optional[str] = None,
    model: str = DEFAULT_MODEL,
    chunk_id: Optional[str] = None,
    created: Optional[int] = None,
) -> Dict[str, Any]:
    """Build one chat.completion.chunk object. content=None gives an empty delta."""
    now = time.time()
    return {
        "id": chunk_id or f"chatcmpl-{int(now * 1000)}",
        "object": "chat.completion.chunk",
        "created": created if created is not None else int(now),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": content} if content is not None else {},
                "finish_reason": finish_reason,
            }
        ],
    }


def format_frame(payload: Any) -> str:
    """Wrap a payload as a data frame followed by its blank separator line."""
    # Raw UTF-8 like the backend, so fragmentation can land mid-character
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n"


def build_frames(content: str = DEFAULT_CONTENT, model: str = DEFAULT_MODEL) -> List[str]:
    """One frame per word, a content-free stop frame, then the sentinel."""
    chunk_id = f"chatcmpl-{int(time.time() * 1000)}"
    created = int(time.time())
    frames = [
        format_frame(completion_chunk(word + " ", model=model, chunk_id=chunk_id, created=created))
        for word in content.split(" ")
    ]
    frames.append(
        format_frame(completion_chunk(finish_reason="stop", model=model, chunk_id=chunk_id, created=created))
    )
    frames.append(format_frame("[DONE]"))
    return frames


def build_sse_stream(content: str = DEFAULT_CONTENT, model: str = DEFAULT_MODEL) -> str:
    return "".join(build_frames(content, model))


def fragment(payload: bytes, size: int) -> List[bytes]:
    """Split payload into fixed-size pieces (the last may be shorter)."""
    if size < 1:
        raise ValueError(f"fragment size must be >= 1, got {size}")
    return [payload[i:i + size] for i in range(0, len(payload), size)]


def split_at(payload: bytes, offsets: Iterable[int]) -> List[bytes]:
    """Split payload at the given byte offsets (may land mid-character)."""
    pieces = []
    start = 0
    for offset in sorted(set(offsets)):
        if 0 < offset < len(payload):
            pieces.append(payload[start:offset])
            start = offset
    pieces.append(payload[start:])
    return pieces


class FakeStreamResponse:
    """In-memory stand-in for an open streaming response.

    Yields `chunks` in order. With hang=True the body stalls after the last
    chunk, like a server that stops mid-generation, until aclose() is called;
    the pending read then ends, or raises `close_error` when one is given
    (a socket torn down under the reader).
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        status_code: int = 200,
        hang: bool = False,
        close_error: Optional[Exception] = None,
    ):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.headers = {"content-type": "text/event-stream"}
        self.hang = hang
        self.close_error = close_error
        self.released = False
        self.reads = 0
        self._release = asyncio.Event()

    async def aiter_bytes(self) -> AsyncGenerator[bytes, None]:
        for chunk in self.chunks:
            self.reads += 1
            await asyncio.sleep(0)
            yield chunk
        if self.hang:
            await self._release.wait()
            if self.close_error is not None:
                raise self.close_error

    async def aclose(self) -> None:
        self.released = True
        self._release.set()
