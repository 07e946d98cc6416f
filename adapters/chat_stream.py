#!/usr/bin/env python3
"""
chat_stream.py — Streaming chat completions over the Vault event stream

Decodes the line-oriented `data: {...}` stream produced by
POST /v1/chat/completions (stream: true) into typed events:

  StreamChunk*  then exactly one of  StreamDone | StreamError

Handles: chunks split mid-line or mid-character, comment lines, the
non-JSON `[DONE]` sentinel, malformed frames (skipped), and streams that
close without a sentinel (treated as done). A cancelled stream simply stops.

Human CLI: python3 chat_stream.py <prompt> [--model id]
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterable, Dict, List, Optional, TextIO, Union

from config_loader import load_config
from vault_client import ByteStream, RequestCancelled, VaultClient, VaultClientError

logger = logging.getLogger("vault.chat_stream")

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
DATA_PREFIX = "data: "
COMMENT_PREFIX = ":"
DONE_SENTINEL = "[DONE]"


# === Request Envelope ===

@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True)
class ChatCompletionRequest:
    """OpenAI-compatible request envelope. Never mutated once submitted."""
    model: str
    messages: tuple = ()
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in self.messages],
            "stream": self.stream,
        }
        for name in ("temperature", "max_tokens", "top_p", "stop"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


# === Stream Events ===

@dataclass(frozen=True)
class StreamChunk:
    """One decoded frame. content is None when the frame carries no text."""
    raw: Dict[str, Any]
    content: Optional[str] = None
    type: str = field(default="chunk", init=False)

    @property
    def finish_reason(self) -> Optional[str]:
        choice = _first_choice(self.raw)
        return choice.get("finish_reason") if choice else None


@dataclass(frozen=True)
class StreamDone:
    type: str = field(default="done", init=False)


@dataclass(frozen=True)
class StreamError:
    error: VaultClientError
    type: str = field(default="error", init=False)


StreamEvent = Union[StreamChunk, StreamDone, StreamError]


def _first_choice(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    choices = raw.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def extract_content(raw: Dict[str, Any]) -> Optional[str]:
    """Return choices[0].delta.content, or None when absent or empty."""
    choice = _first_choice(raw)
    delta = choice.get("delta") if choice else None
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


# === Decoder ===

def _parse_line(line: str) -> Optional[StreamEvent]:
    """Classify one complete line. Returns None for lines to skip."""
    line = line.strip()
    if not line or line.startswith(COMMENT_PREFIX):
        return None
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX):]
    if payload == DONE_SENTINEL:
        return StreamDone()

    try:
        raw = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed frame: %.80s", payload)
        return None
    if not isinstance(raw, dict):
        logger.debug("Skipping non-object frame: %.80s", payload)
        return None

    return StreamChunk(raw=raw, content=extract_content(raw))


async def decode_event_stream(
    stream: Optional[ByteStream],
) -> AsyncGenerator[StreamEvent, None]:
    """Decode an open byte stream into StreamEvents.

    `stream` is anything with aiter_bytes() and aclose() (ByteStream, an
    httpx.Response, or a test double). It is closed on every exit path.
    """
    if stream is None:
        yield StreamError(VaultClientError("No response body", status_code=0))
        return

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    chunks = stream.aiter_bytes()

    try:
        try:
            async for chunk in chunks:
                buffer += decoder.decode(chunk)
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    event = _parse_line(line)
                    if event is not None:
                        yield event
                    if isinstance(event, StreamDone):
                        return

            # Stream ended: flush partial characters and the unterminated tail
            buffer += decoder.decode(b"", final=True)
            event = _parse_line(buffer)
            if event is not None:
                yield event
            if isinstance(event, StreamDone):
                return
        except RequestCancelled:
            logger.debug("Stream cancelled by caller")
            return
        except VaultClientError as e:
            logger.warning("Stream interrupted: %s", e)
            yield StreamError(e)
            return

        # No sentinel: a clean close still counts as completion.
        # TODO: surface truncation once the backend reports finish_reason
        # reliably; a dropped connection after partial output looks the same.
        yield StreamDone()
    finally:
        await chunks.aclose()
        await stream.aclose()


async def stream_chat_completion(
    client: VaultClient,
    request: ChatCompletionRequest,
    cancel_event: Optional[asyncio.Event] = None,
) -> AsyncGenerator[StreamEvent, None]:
    """Open a streaming completion and yield its events.

    Failures to open the stream are yielded as a single StreamError.
    Cancellation before the response arrives ends the sequence silently.
    """
    payload = {**request.to_payload(), "stream": True}
    try:
        stream = await client.stream(CHAT_COMPLETIONS_PATH, payload, cancel_event)
    except RequestCancelled:
        return
    except VaultClientError as e:
        yield StreamError(e)
        return

    events = decode_event_stream(stream)
    try:
        async for event in events:
            yield event
    finally:
        await events.aclose()


async def collect_content(events: AsyncIterable[StreamEvent]) -> str:
    """Concatenate every content delta of a stream."""
    parts = []
    async for event in events:
        if isinstance(event, StreamChunk) and event.content is not None:
            parts.append(event.content)
    return "".join(parts)


# === Human CLI Mode ===

async def run_chat(
    client: VaultClient, prompt: str, model: str, out: TextIO = sys.stdout
) -> int:
    """Stream one completion to `out`. Returns a process exit code."""
    request = ChatCompletionRequest(
        model=model, messages=(ChatMessage(role="user", content=prompt),)
    )
    async for event in stream_chat_completion(client, request):
        if isinstance(event, StreamChunk) and event.content:
            out.write(event.content)
            out.flush()
        elif isinstance(event, StreamError):
            print(f"\nERROR: {event.error}", file=sys.stderr)
            return 2 if event.error.is_transport_error else 1
    out.write("\n")
    return 0


async def _main_async(prompt: str, model_override: Optional[str]) -> int:
    config = load_config()
    model = model_override or config["vault"]["default_model"]
    async with VaultClient.from_config(config) as client:
        return await run_chat(client, prompt, model)


def main():
    logging.basicConfig(
        level=os.environ.get("VAULT_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    args = sys.argv[1:]

    model = None
    if "--model" in args:
        m_idx = args.index("--model")
        if m_idx + 1 >= len(args):
            print("ERROR: --model requires a model id", file=sys.stderr)
            sys.exit(4)
        model = args[m_idx + 1]
        del args[m_idx:m_idx + 2]

    if len(args) != 1:
        print("Usage: python3 chat_stream.py <prompt> [--model id]", file=sys.stderr)
        sys.exit(4)

    sys.exit(asyncio.run(_main_async(args[0], model)))


if __name__ == "__main__":
    main()
