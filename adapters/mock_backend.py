#!/usr/bin/env python3
"""
mock_backend.py — Offline stand-in for the Vault backend

FastAPI application serving the endpoints the client talks to, with
canned data and fixture-generated event streams.
Binds to 127.0.0.1:{VAULT_MOCK_PORT} (default: 8000).

Endpoints:
  GET    /v1/models                  — Model list
  GET    /vault/health               — Health (no auth)
  POST   /v1/chat/completions        — Completion; event stream when stream=true
  GET    /vault/conversations        — List conversations
  POST   /vault/conversations        — Create
  PUT    /vault/conversations/{id}   — Rename
  DELETE /vault/conversations/{id}   — Delete (204)

Security:
  BearerAuthMiddleware on all routes except the health probe when
  VAULT_MOCK_API_KEY is set; rejects with 401 {"detail": ...}.
"""

import asyncio
import hmac
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from stream_fixtures import DEFAULT_MODEL, build_frames

logger = logging.getLogger("vault.mock_backend")

# --- Configuration ---

VAULT_MOCK_PORT = int(os.environ.get("VAULT_MOCK_PORT", "8000"))
VAULT_MOCK_API_KEY = os.environ.get("VAULT_MOCK_API_KEY", "")
VAULT_MOCK_TOKEN_DELAY_MS = int(os.environ.get("VAULT_MOCK_TOKEN_DELAY_MS", "0"))

START_TIME = time.monotonic()

PUBLIC_PATHS = {"/vault/health"}

MOCK_MODELS = {
    "object": "list",
    "data": [
        {
            "id": "qwen2.5-32b-awq",
            "name": "Qwen 2.5 32B AWQ",
            "parameters": "32B",
            "quantization": "AWQ 4-bit",
            "context_window": 32768,
            "vram_required_gb": 20,
            "description": "High-quality general-purpose model with strong reasoning",
        },
        {
            "id": "llama-3.1-8b",
            "name": "Llama 3.1 8B",
            "parameters": "8B",
            "quantization": "FP16",
            "context_window": 131072,
            "vram_required_gb": 16,
            "description": "Efficient model for faster inference with good quality",
        },
    ],
}

MOCK_REPLY = "Hello! I am Vault AI."


# --- Auth Middleware ---


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Require `Authorization: Bearer <VAULT_MOCK_API_KEY>` when a key is set."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if not VAULT_MOCK_API_KEY or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token, VAULT_MOCK_API_KEY):
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid or expired token"},
            )

        return await call_next(request)


# --- Conversation Store ---


class ConversationStore:
    """In-memory conversation summaries keyed by id."""

    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}

    def summaries(self) -> list:
        return sorted(self._items.values(), key=lambda c: c["updated_at"], reverse=True)

    def create(self, title: str, model_id: str) -> Dict[str, Any]:
        now = time.time()
        conversation = {
            "id": str(uuid.uuid4()),
            "title": title,
            "model_id": model_id,
            "created_at": now,
            "updated_at": now,
            "message_count": 0,
        }
        self._items[conversation["id"]] = conversation
        return conversation

    def update(self, conversation_id: str, title: str) -> Dict[str, Any]:
        conversation = self._items[conversation_id]
        conversation["title"] = title
        conversation["updated_at"] = time.time()
        return conversation

    def delete(self, conversation_id: str) -> None:
        del self._items[conversation_id]

    def clear(self) -> None:
        self._items.clear()


conversations = ConversationStore()


# --- Helpers ---


async def _read_json(request: Request) -> Any:
    body = await request.body()
    return json.loads(body) if body else None


def _invalid_json() -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": {"message": "Request body is not valid JSON", "type": "invalid_request"}},
    )


def _conversation_not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Conversation not found"})


def _body_not_object() -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": "Request body must be a JSON object"})


async def _stream_frames(content: str, model: str) -> AsyncGenerator[bytes, None]:
    for frame in build_frames(content, model):
        if VAULT_MOCK_TOKEN_DELAY_MS:
            await asyncio.sleep(VAULT_MOCK_TOKEN_DELAY_MS / 1000.0)
        yield frame.encode("utf-8")


# --- Application ---


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Mock backend on 127.0.0.1:%d", VAULT_MOCK_PORT)
    logger.info("Auth: %s", "required" if VAULT_MOCK_API_KEY else "disabled")
    yield
    logger.info("Mock backend shutting down")


app = FastAPI(title="Vault Mock Backend", docs_url=None, redoc_url=None, lifespan=lifespan)
app.add_middleware(BearerAuthMiddleware)


@app.get("/vault/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "vllm_connected": True,
        "uptime_seconds": round(time.monotonic() - START_TIME, 2),
        "version": "0.1.0",
        "gpus": [],
        "models_loaded": [DEFAULT_MODEL],
    }


@app.get("/v1/models")
async def list_models() -> Dict[str, Any]:
    return MOCK_MODELS


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    """Reply with MOCK_REPLY, streamed word by word when stream=true."""
    try:
        body = await _read_json(request)
    except json.JSONDecodeError:
        return _invalid_json()
    if not isinstance(body, dict) or not body.get("messages"):
        return JSONResponse(
            status_code=422,
            content={"detail": "messages is required"},
        )

    model = body.get("model", DEFAULT_MODEL)
    if model not in {m["id"] for m in MOCK_MODELS["data"]}:
        return JSONResponse(
            status_code=404,
            content={"error": {"message": f"Model '{model}' not found", "type": "not_found"}},
        )

    if body.get("stream"):
        return StreamingResponse(
            _stream_frames(MOCK_REPLY, model),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    words = len(MOCK_REPLY.split())
    return JSONResponse(content={
        "id": f"chatcmpl-{uuid.uuid4().hex[:12]}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": MOCK_REPLY},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 0, "completion_tokens": words, "total_tokens": words},
    })


@app.get("/vault/conversations")
async def list_conversations(limit: Optional[int] = None, offset: int = 0) -> list:
    items = conversations.summaries()[offset:]
    return items if limit is None else items[:limit]


@app.post("/vault/conversations")
async def create_conversation(request: Request) -> Response:
    try:
        body = await _read_json(request) or {}
    except json.JSONDecodeError:
        return _invalid_json()
    if not isinstance(body, dict):
        return _body_not_object()
    conversation = conversations.create(
        title=body.get("title", "New conversation"),
        model_id=body.get("model_id", DEFAULT_MODEL),
    )
    return JSONResponse(status_code=201, content=conversation)


@app.put("/vault/conversations/{conversation_id}")
async def update_conversation(conversation_id: str, request: Request) -> Response:
    try:
        body = await _read_json(request) or {}
    except json.JSONDecodeError:
        return _invalid_json()
    if not isinstance(body, dict):
        return _body_not_object()
    try:
        conversation = conversations.update(conversation_id, body.get("title", ""))
    except KeyError:
        return _conversation_not_found()
    return JSONResponse(content=conversation)


@app.delete("/vault/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str) -> Response:
    try:
        conversations.delete(conversation_id)
    except KeyError:
        return _conversation_not_found()
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="127.0.0.1", port=VAULT_MOCK_PORT)
