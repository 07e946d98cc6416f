"""
vault_client.py — Async HTTP transport for the Vault backend

Provides:
- VaultClientError: the single error type for HTTP and network failures
- VaultClient: JSON request helpers (get/post/put/delete), stream(), and
  thin endpoint helpers for models, health and conversations
- ByteStream: an open streaming response body, abortable via cancel_event

Status code 0 on a VaultClientError means no HTTP response was received
(DNS, connect, timeout, reset). Anything else is the server's status.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from urllib.parse import quote, urlencode

import httpx

from config_loader import load_config, redact_headers

logger = logging.getLogger("vault.client")

CredentialProvider = Callable[[], Optional[str]]

CONVERSATIONS_PATH = "/vault/conversations"


# === Error Classes ===

class VaultClientError(Exception):
    """HTTP or transport failure with status code and best-effort detail."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail

    @property
    def is_transport_error(self) -> bool:
        return self.status_code == 0

    def to_dict(self) -> dict:
        return {
            "error": "VaultClientError",
            "message": self.message,
            "status_code": self.status_code,
            "detail": self.detail,
        }


class RequestCancelled(Exception):
    """The caller's cancel_event was set while the exchange was in flight."""


# === Credentials ===

def static_credentials(api_key: Optional[str]) -> CredentialProvider:
    return lambda: api_key or None


def env_credentials(var_name: str = "VAULT_API_KEY") -> CredentialProvider:
    """Read the key on every call so rotation takes effect without a restart."""
    return lambda: os.environ.get(var_name) or None


# === Error Detail Extraction ===

def _nested_error_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return None


def _detail_field(body: Any) -> Optional[str]:
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return None


# Backend errors use {"error": {"message"}}, FastAPI validation uses {"detail"}
_DETAIL_EXTRACTORS = (_nested_error_message, _detail_field)


def extract_error_detail(body: Any) -> Optional[str]:
    """Return the first human-readable detail found in an error body."""
    for extractor in _DETAIL_EXTRACTORS:
        detail = extractor(body)
        if detail:
            return detail
    return None


def error_from_response(response: httpx.Response) -> VaultClientError:
    """Build a VaultClientError from a non-2xx response whose body is read."""
    detail = None
    try:
        detail = extract_error_detail(response.json())
    except (json.JSONDecodeError, UnicodeDecodeError):
        pass  # Non-JSON error body; fall back to the generic message
    return VaultClientError(
        detail or f"Request failed with status {response.status_code}",
        status_code=response.status_code,
        detail=detail,
    )


def _transport_error(exc: httpx.TransportError) -> VaultClientError:
    reason = str(exc) or type(exc).__name__
    if isinstance(exc, httpx.TimeoutException):
        return VaultClientError(f"Request timed out: {reason}")
    if isinstance(exc, httpx.ConnectError):
        return VaultClientError(f"Connection failed: {reason}")
    return VaultClientError(f"Transport error: {reason}")


# === Cancellation ===

async def _until_cancelled(
    awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event]
) -> Any:
    """Await `awaitable`, abandoning it as soon as cancel_event is set."""
    if cancel_event is None:
        return await awaitable

    if cancel_event.is_set():
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        raise RequestCancelled("request cancelled by caller")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            await asyncio.wait({work})

    # A result that raced the cancel wins; the next read will see the event
    if work.cancelled():
        raise RequestCancelled("request cancelled by caller")
    return work.result()


# === Streaming Body ===

async def _read_next(iterator: Any) -> bytes:
    return await iterator.__anext__()


class ByteStream:
    """An open response body handed to the caller for incremental reading.

    The reader is exclusively owned by one consumer. aclose() must be
    called on every exit path; it is idempotent.
    """

    def __init__(self, response: Any, cancel_event: Optional[asyncio.Event] = None):
        self._response = response
        self._cancel_event = cancel_event
        self._closed = False

    @property
    def status_code(self) -> int:
        return getattr(self._response, "status_code", 200)

    @property
    def headers(self) -> Any:
        return getattr(self._response, "headers", {})

    @property
    def closed(self) -> bool:
        return self._closed

    async def aiter_bytes(self) -> AsyncGenerator[bytes, None]:
        """Yield body chunks as they arrive.

        Raises RequestCancelled when the stream is closed or cancel_event is
        set mid-read, VaultClientError(status_code=0) on transport failure.
        """
        iterator = self._response.aiter_bytes().__aiter__()
        try:
            while True:
                if self._closed:
                    raise RequestCancelled("stream closed")
                try:
                    chunk = await _until_cancelled(_read_next(iterator), self._cancel_event)
                except StopAsyncIteration:
                    if self._closed:
                        raise RequestCancelled("stream closed")
                    return
                except httpx.StreamClosed as e:
                    raise RequestCancelled("stream closed") from e
                except httpx.TransportError as e:
                    # A read torn down by aclose() from another task is not a failure
                    if self._closed:
                        raise RequestCancelled("stream closed") from e
                    raise _transport_error(e) from e
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


# === Client ===

class VaultClient:
    """Async client for the Vault HTTP API.

    Usage:
        async with VaultClient("http://localhost:8000", env_credentials()) as client:
            models = await client.get("/v1/models")
    """

    def __init__(
        self,
        base_url: str,
        credentials: Optional[CredentialProvider] = None,
        connect_timeout_ms: int = 5000,
        read_timeout_ms: int = 300000,
        max_connections: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._credentials = credentials or static_credentials(None)
        timeout = httpx.Timeout(
            connect=connect_timeout_ms / 1000.0,
            read=read_timeout_ms / 1000.0,
            write=30.0,
            pool=connect_timeout_ms / 1000.0,
        )
        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max(1, max_connections // 2),
        )
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            limits=limits,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "VaultClient":
        """Build a client from a loaded config (see config_loader.load_config)."""
        vault = (config if config is not None else load_config()).get("vault", {})
        api_key = vault.get("api_key")
        return cls(
            base_url=vault.get("base_url", "http://localhost:8000"),
            credentials=static_credentials(api_key) if api_key else env_credentials(),
            connect_timeout_ms=vault.get("connect_timeout_ms", 5000),
            read_timeout_ms=vault.get("read_timeout_ms", 300000),
            max_connections=vault.get("max_connections", 20),
            transport=transport,
        )

    async def __aenter__(self) -> "VaultClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _build_headers(self, streaming: bool = False) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if streaming:
            headers["Accept"] = "text/event-stream"
        api_key = self._credentials()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_request(
        self, method: str, path: str, body: Any = None, streaming: bool = False
    ) -> httpx.Request:
        headers = self._build_headers(streaming)
        logger.debug("%s %s headers=%s", method, path, redact_headers(headers))
        content = json.dumps(body).encode("utf-8") if body is not None else None
        return self._http.build_request(method, path, headers=headers, content=content)

    async def _send(
        self,
        request: httpx.Request,
        cancel_event: Optional[asyncio.Event],
        stream: bool = False,
    ) -> httpx.Response:
        try:
            return await _until_cancelled(
                self._http.send(request, stream=stream), cancel_event
            )
        except httpx.TransportError as e:
            error = _transport_error(e)
            logger.warning("%s %s failed: %s", request.method, request.url.path, error)
            raise error from e

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Perform one JSON exchange.

        Returns the parsed body, or None for 204 / empty success bodies.
        Raises VaultClientError on any failure, RequestCancelled on cancel.
        """
        response = await self._send(self._build_request(method, path, body), cancel_event)

        if not response.is_success:
            error = error_from_response(response)
            logger.warning("%s %s -> %d: %s", method, path, response.status_code, error)
            raise error

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise VaultClientError(
                f"Non-JSON response body: {response.text[:200]}",
                status_code=response.status_code,
            ) from e

    async def get(self, path: str, cancel_event: Optional[asyncio.Event] = None) -> Any:
        return await self.request("GET", path, cancel_event=cancel_event)

    async def post(
        self, path: str, body: Any, cancel_event: Optional[asyncio.Event] = None
    ) -> Any:
        return await self.request("POST", path, body, cancel_event)

    async def put(
        self, path: str, body: Any, cancel_event: Optional[asyncio.Event] = None
    ) -> Any:
        return await self.request("PUT", path, body, cancel_event)

    async def delete(self, path: str, cancel_event: Optional[asyncio.Event] = None) -> None:
        await self.request("DELETE", path, cancel_event=cancel_event)

    async def stream(
        self,
        path: str,
        body: Any,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ByteStream:
        """POST `body` and return the still-open response body.

        The error body of a failed response is read and discarded before
        raising, so the connection goes back to the pool.
        """
        request = self._build_request("POST", path, body, streaming=True)
        response = await self._send(request, cancel_event, stream=True)

        if not response.is_success:
            try:
                await response.aread()
            except httpx.TransportError as e:
                raise _transport_error(e) from e
            finally:
                await response.aclose()
            error = error_from_response(response)
            logger.warning("POST %s -> %d: %s", path, response.status_code, error)
            raise error

        return ByteStream(response, cancel_event)

    # --- Endpoints ---

    async def fetch_models(self, cancel_event: Optional[asyncio.Event] = None) -> Any:
        return await self.get("/v1/models", cancel_event)

    async def fetch_health(self, cancel_event: Optional[asyncio.Event] = None) -> Any:
        return await self.get("/vault/health", cancel_event)

    async def list_conversations(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        params = {k: v for k, v in (("limit", limit), ("offset", offset)) if v is not None}
        path = CONVERSATIONS_PATH
        if params:
            path += "?" + urlencode(params)
        return await self.get(path, cancel_event)

    async def create_conversation(
        self,
        title: Optional[str] = None,
        model_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        body = {k: v for k, v in (("title", title), ("model_id", model_id)) if v is not None}
        return await self.post(CONVERSATIONS_PATH, body, cancel_event)

    async def rename_conversation(
        self, conversation_id: str, title: str, cancel_event: Optional[asyncio.Event] = None
    ) -> Any:
        return await self.put(
            f"{CONVERSATIONS_PATH}/{quote(conversation_id, safe='')}", {"title": title}, cancel_event
        )

    async def delete_conversation(
        self, conversation_id: str, cancel_event: Optional[asyncio.Event] = None
    ) -> None:
        await self.delete(f"{CONVERSATIONS_PATH}/{quote(conversation_id, safe='')}", cancel_event)
