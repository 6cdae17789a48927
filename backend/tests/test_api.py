import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from gateway.core import relay
from gateway.core.ollama import OllamaClient
from gateway.main import app

from conftest import MemoryStore, parse_sse


@pytest.fixture
def spawned(monkeypatch) -> list[tuple[str, str, str]]:
    calls: list[tuple[str, str, str]] = []

    def fake_spawn(client, store, conversation_id, model, user_message):
        calls.append((conversation_id, model, user_message))

    monkeypatch.setattr(relay, "schedule_title_task", fake_spawn)
    return calls


@pytest.fixture
def client(store, ollama, spawned) -> TestClient:
    # No context manager: the lifespan (database pool) is not started
    app.state.store = store
    app.state.ollama = ollama
    return TestClient(app)


def test_chat_round_trip(client, store, spawned):
    resp = client.post("/api/chat", json={"conversation_id": "", "model": "m1", "message": "hello"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"

    events = parse_sse(resp.text)
    conversation_id = events[0]["conversation_id"]
    streamed = "".join(e["content"] for e in events if e["type"] == "chunk")

    messages = client.get(f"/api/conversations/{conversation_id}/messages").json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["content"] == "hello"
    assert messages[1]["content"] == streamed
    assert messages[1]["model"] == "m1"
    assert spawned == [(conversation_id, "m1", "hello")]


def test_second_turn_appends_to_same_conversation(client, upstream, spawned):
    first = parse_sse(client.post("/api/chat", json={"model": "m1", "message": "hello"}).text)
    conversation_id = first[0]["conversation_id"]

    second = parse_sse(
        client.post(
            "/api/chat",
            json={"conversation_id": conversation_id, "model": "m1", "message": "again"},
        ).text
    )

    assert second[0]["conversation_id"] == conversation_id
    assert len(upstream.bodies("/api/chat", stream=True)[1]["messages"]) == 3
    assert len(spawned) == 1


class SlowAssistantStore(MemoryStore):
    async def create_message(self, message):
        if message.role == "assistant":
            await asyncio.sleep(0.2)
        await super().create_message(message)


async def test_reply_is_saved_when_client_leaves_after_done(ollama, spawned):
    store = SlowAssistantStore()
    app.state.store = store
    app.state.ollama = ollama

    body = json.dumps({"model": "m1", "message": "hello"}).encode()
    done_delivered = asyncio.Event()
    request_sent = False

    async def receive():
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        await done_delivered.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if b'"done": true' in message.get("body", b""):
            done_delivered.set()

    # spec_version 2.3 makes Starlette cancel the stream on disconnect, as under uvicorn
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.3"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/chat",
        "raw_path": b"/api/chat",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"testserver"), (b"content-type", b"application/json")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    await app(scope, receive, send)

    assert done_delivered.is_set()
    assert [m.role for m in store.messages] == ["user", "assistant"]
    assert len(spawned) == 1


def test_chat_rejects_empty_message(client, store):
    resp = client.post("/api/chat", json={"model": "m1", "message": ""})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Message and model are required"}
    assert store.conversations == {}
    assert store.messages == []


def test_chat_unknown_conversation(client):
    resp = client.post("/api/chat", json={"conversation_id": "conv_nope", "model": "m1", "message": "hi"})

    assert resp.status_code == 404
    assert "error" in resp.json()


def test_chat_persistence_failure_returns_error(client, store):
    store.fail_on.add("create_message:user")

    resp = client.post("/api/chat", json={"model": "m1", "message": "hi"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to create_message:user"}


def test_chat_upstream_failure_is_in_band(client, store, upstream):
    upstream.chat_stream = lambda: httpx.Response(500, text="boom")

    resp = client.post("/api/chat", json={"model": "m1", "message": "hi"})

    assert resp.status_code == 200
    events = parse_sse(resp.text)
    assert [e["type"] for e in events] == ["init", "error"]
    assert [m.role for m in store.messages] == ["user"]


def test_conversation_crud(client, store):
    created = client.post("/api/conversations", json={"model": "m1"})
    assert created.status_code == 201
    conv = created.json()
    assert conv["title"] == "New Chat"
    assert conv["model"] == "m1"

    listed = client.get("/api/conversations").json()["conversations"]
    assert [c["id"] for c in listed] == [conv["id"]]

    resp = client.patch(f"/api/conversations/{conv['id']}", json={"title": "Renamed"})
    assert resp.json() == {"status": "updated"}

    detail = client.get(f"/api/conversations/{conv['id']}").json()
    assert detail["conversation"]["title"] == "Renamed"
    assert detail["messages"] == []

    assert client.delete(f"/api/conversations/{conv['id']}").json() == {"status": "deleted"}
    assert client.get(f"/api/conversations/{conv['id']}").status_code == 404
    assert client.delete(f"/api/conversations/{conv['id']}").status_code == 404


def test_delete_conversation_cascades(client, store):
    events = parse_sse(client.post("/api/chat", json={"model": "m1", "message": "hello"}).text)
    conversation_id = events[0]["conversation_id"]
    assert len(store.messages) == 2

    client.delete(f"/api/conversations/{conversation_id}")

    assert store.messages == []


def test_update_conversation_validation(client):
    conv = client.post("/api/conversations", json={"title": "Mine"}).json()
    assert conv["title"] == "Mine"

    assert client.patch(f"/api/conversations/{conv['id']}", json={"title": "  "}).status_code == 400
    assert client.patch("/api/conversations/conv_nope", json={"title": "x"}).status_code == 404


def test_health(client, upstream):
    assert client.get("/api/health").json() == {
        "status": "healthy",
        "ollama": True,
        "database": True,
        "version": "1.0.0",
    }

    upstream.tags_status = 503
    body = client.get("/api/health").json()
    assert body["status"] == "degraded"
    assert body["ollama"] is False


def test_stats(client):
    client.post("/api/chat", json={"model": "m1", "message": "hello"})

    assert client.get("/api/stats").json() == {
        "total_conversations": 1,
        "total_messages": 2,
        "total_tokens": 42,
        "ollama_connected": True,
        "models_count": 1,
    }


def test_list_models(client):
    models = client.get("/api/models").json()["models"]
    assert [m["name"] for m in models] == ["m1"]


def test_list_models_upstream_down(store):
    def refuse(request):
        raise httpx.ConnectError("connection refused")

    app.state.store = store
    app.state.ollama = OllamaClient("http://ollama.test", transport=httpx.MockTransport(refuse))

    resp = TestClient(app).get("/api/models")
    assert resp.status_code == 503
    assert "error" in resp.json()


def test_pull_model_streams_progress(client):
    resp = client.post("/api/models/pull", json={"name": "m2"})

    events = parse_sse(resp.text)
    assert events[0] == {"status": "pulling manifest"}
    assert events[-1] == {"status": "success"}


def test_pull_model_requires_name(client):
    assert client.post("/api/models/pull", json={}).status_code == 400


def test_delete_model(client, upstream):
    assert client.delete("/api/models/llama3:8b").json() == {"status": "deleted"}
    assert upstream.bodies("/api/delete") == [{"name": "llama3:8b"}]


def test_cors_preflight(client):
    resp = client.options(
        "/api/chat",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
