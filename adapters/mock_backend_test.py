"""End-to-end tests: VaultClient against the mock backend over ASGI.

Covers bearer auth rejection, model/health helpers, the streaming
completion path, both error-body shapes, and conversation CRUD
including the 204 delete.
"""

import asyncio
import os
import sys

import httpx
import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import mock_backend
from chat_stream import (
    ChatCompletionRequest,
    ChatMessage,
    StreamChunk,
    StreamDone,
    StreamError,
    stream_chat_completion,
)
from vault_client import VaultClient, VaultClientError, static_credentials

API_KEY = "vk-mock-key"


def run(coro):
    return asyncio.run(coro)


def make_client(api_key=API_KEY) -> VaultClient:
    return VaultClient(
        "http://vault.test",
        credentials=static_credentials(api_key),
        transport=httpx.ASGITransport(app=mock_backend.app),
    )


async def with_client(fn, api_key=API_KEY):
    async with make_client(api_key) as client:
        return await fn(client)


@pytest.fixture(autouse=True)
def backend(monkeypatch):
    monkeypatch.setattr(mock_backend, "VAULT_MOCK_API_KEY", API_KEY)
    mock_backend.conversations.clear()
    yield
    mock_backend.conversations.clear()


def _request(model="qwen2.5-32b-awq"):
    return ChatCompletionRequest(model=model, messages=(ChatMessage("user", "Hi"),))


class TestAuth:
    def test_wrong_key_is_401_with_detail(self):
        with pytest.raises(VaultClientError) as exc_info:
            run(with_client(lambda c: c.fetch_models(), api_key="wrong"))
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid or expired token"

    def test_missing_key_is_401(self):
        with pytest.raises(VaultClientError) as exc_info:
            run(with_client(lambda c: c.fetch_models(), api_key=None))
        assert exc_info.value.status_code == 401

    def test_health_is_public(self):
        health = run(with_client(lambda c: c.fetch_health(), api_key=None))
        assert health["status"] == "healthy"

    def test_auth_disabled_without_key(self, monkeypatch):
        monkeypatch.setattr(mock_backend, "VAULT_MOCK_API_KEY", "")
        models = run(with_client(lambda c: c.fetch_models(), api_key=None))
        assert models["object"] == "list"


class TestCompletions:
    def test_streaming_completion(self):
        async def scenario(client):
            return [e async for e in stream_chat_completion(client, _request())]

        events = run(with_client(scenario))
        content = "".join(e.content for e in events if isinstance(e, StreamChunk) and e.content)
        assert content == "Hello! I am Vault AI. "
        assert isinstance(events[-1], StreamDone)
        assert not any(isinstance(e, StreamError) for e in events)

    def test_unknown_model_uses_nested_error_shape(self):
        async def scenario(client):
            return [e async for e in stream_chat_completion(client, _request("nope"))]

        events = run(with_client(scenario))
        assert len(events) == 1
        assert events[0].error.status_code == 404
        assert events[0].error.message == "Model 'nope' not found"

    def test_stream_rejected_without_auth(self):
        async def scenario(client):
            return [e async for e in stream_chat_completion(client, _request())]

        events = run(with_client(scenario, api_key="wrong"))
        assert len(events) == 1
        assert events[0].error.status_code == 401

    def test_non_streaming_completion(self):
        result = run(with_client(lambda c: c.post("/v1/chat/completions", _request().to_payload())))
        assert result["object"] == "chat.completion"
        assert result["choices"][0]["message"]["content"] == mock_backend.MOCK_REPLY

    def test_missing_messages_is_422(self):
        with pytest.raises(VaultClientError) as exc_info:
            run(with_client(lambda c: c.post("/v1/chat/completions", {"model": "qwen2.5-32b-awq"})))
        assert exc_info.value.status_code == 422
        assert exc_info.value.detail == "messages is required"


class TestConversations:
    def test_crud_round(self):
        async def scenario(client):
            created = await client.create_conversation("First")
            renamed = await client.rename_conversation(created["id"], "Renamed")
            listed = await client.list_conversations()
            deleted = await client.delete_conversation(created["id"])
            remaining = await client.list_conversations()
            return created, renamed, listed, deleted, remaining

        created, renamed, listed, deleted, remaining = run(with_client(scenario))
        assert created["title"] == "First"
        assert created["model_id"] == "qwen2.5-32b-awq"
        assert renamed["title"] == "Renamed"
        assert [c["id"] for c in listed] == [created["id"]]
        assert deleted is None
        assert remaining == []

    def test_create_with_model(self):
        created = run(with_client(lambda c: c.create_conversation("Quick", model_id="llama-3.1-8b")))
        assert created["model_id"] == "llama-3.1-8b"

    def test_list_passes_paging_params(self):
        listed = run(with_client(lambda c: c.list_conversations(limit=10, offset=0)))
        assert listed == []

    def test_delete_unknown_is_404(self):
        with pytest.raises(VaultClientError) as exc_info:
            run(with_client(lambda c: c.delete_conversation("missing")))
        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "Conversation not found"

    def test_rename_unknown_is_404(self):
        with pytest.raises(VaultClientError) as exc_info:
            run(with_client(lambda c: c.rename_conversation("missing", "x")))
        assert exc_info.value.status_code == 404

    def test_create_with_non_object_body_is_422(self):
        with pytest.raises(VaultClientError) as exc_info:
            run(with_client(lambda c: c.post("/vault/conversations", ["First"])))
        assert exc_info.value.status_code == 422
        assert exc_info.value.message == "Request body must be a JSON object"

    def test_update_with_non_object_body_is_422(self):
        async def scenario(client):
            created = await client.create_conversation("First")
            await client.put(f"/vault/conversations/{created['id']}", "Renamed")

        with pytest.raises(VaultClientError) as exc_info:
            run(with_client(scenario))
        assert exc_info.value.status_code == 422

    def test_list_paging(self):
        async def scenario(client):
            for title in ("a", "b", "c"):
                await client.create_conversation(title)
            return await client.list_conversations(limit=2, offset=1)

        assert len(run(with_client(scenario))) == 2
