import json
from collections.abc import Callable
from datetime import datetime, timezone

import httpx
import pytest

from gateway.core.ollama import OllamaClient
from gateway.errors import PersistenceFailure
from gateway.models.chat import Conversation, Message


class MemoryStore:
    """In-memory stand-in for PostgresStore. ``fail_on`` names methods that raise."""

    def __init__(self) -> None:
        self.conversations: dict[str, Conversation] = {}
        self.messages: list[Message] = []
        self.fail_on: set[str] = set()

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise PersistenceFailure(f"Failed to {op}")

    def _bump(self, conversation_id: str, when: datetime) -> None:
        conv = self.conversations.get(conversation_id)
        if conv is not None:
            conv.updated_at = max(conv.updated_at, when)

    async def create_conversation(self, conversation_id, title, model, first_message=None):
        self._check("create_conversation")
        if first_message is not None:
            # Both rows or neither, like the Postgres transaction
            self._check(f"create_message:{first_message.role}")
        now = datetime.now(timezone.utc)
        conv = Conversation(id=conversation_id, title=title, model=model, created_at=now, updated_at=now)
        self.conversations[conversation_id] = conv
        if first_message is not None:
            self.messages.append(first_message)
            self._bump(conversation_id, first_message.created_at)
        return conv.model_copy()

    async def get_conversation(self, conversation_id):
        self._check("get_conversation")
        conv = self.conversations.get(conversation_id)
        return conv.model_copy() if conv else None

    async def list_conversations(self):
        return sorted(
            (c.model_copy() for c in self.conversations.values()),
            key=lambda c: c.updated_at,
            reverse=True,
        )

    async def update_title(self, conversation_id, title):
        self._check("update_title")
        conv = self.conversations.get(conversation_id)
        if conv is None:
            return False
        conv.title = title
        self._bump(conversation_id, datetime.now(timezone.utc))
        return True

    async def touch(self, conversation_id):
        self._check("touch")
        self._bump(conversation_id, datetime.now(timezone.utc))

    async def delete_conversation(self, conversation_id):
        if self.conversations.pop(conversation_id, None) is None:
            return False
        self.messages = [m for m in self.messages if m.conversation_id != conversation_id]
        return True

    async def create_message(self, message):
        self._check(f"create_message:{message.role}")
        if message.conversation_id not in self.conversations:
            raise PersistenceFailure("Failed to save message")
        self.messages.append(message)
        self._bump(message.conversation_id, message.created_at)

    async def get_messages(self, conversation_id):
        self._check("get_messages")
        return [m for m in self.messages if m.conversation_id == conversation_id]

    async def get_stats(self):
        self._check("get_stats")
        return {
            "total_conversations": len(self.conversations),
            "total_messages": len(self.messages),
            "total_tokens": sum(m.tokens_used or 0 for m in self.messages),
        }


def ndjson(*objs) -> bytes:
    return b"".join(json.dumps(o).encode() + b"\n" for o in objs)


def chunk(content: str, done: bool = False, **extra) -> dict:
    return {
        "model": "m1",
        "created_at": "2024-05-01T12:00:00Z",
        "message": {"role": "assistant", "content": content},
        "done": done,
        **extra,
    }


def final_chunk(content: str = "") -> dict:
    return chunk(
        content,
        done=True,
        total_duration=2_500_000_000,
        prompt_eval_count=12,
        eval_count=30,
    )


def parse_sse(body: str) -> list[dict]:
    events = []
    for frame in body.split("\n\n"):
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


class FakeOllama:
    """
    Routes MockTransport requests by path and records every JSON body sent.

    ``chat_stream`` answers streaming /api/chat calls: raw NDJSON bytes, or a
    zero-argument factory returning an httpx.Response. ``chat_response`` does the
    same for non-streaming calls; when unset they reply with ``title``.
    """

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict]] = []
        self.chat_stream: Callable[[], httpx.Response] | bytes = ndjson(
            chunk("Hel"), chunk("lo"), chunk(" there"), final_chunk()
        )
        self.chat_response: Callable[[], httpx.Response] | None = None
        self.title = "Friendly Greeting"
        self.tags_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, request.url.path, body))

        if request.url.path == "/api/tags":
            return httpx.Response(
                self.tags_status,
                json={"models": [{"name": "m1", "model": "m1", "size": 4_000_000_000}]},
            )
        if request.url.path == "/api/chat" and body.get("stream"):
            if callable(self.chat_stream):
                return self.chat_stream()
            return httpx.Response(200, content=self.chat_stream)
        if request.url.path == "/api/chat":
            if self.chat_response is not None:
                return self.chat_response()
            return httpx.Response(200, json=chunk(self.title, done=True))
        if request.url.path == "/api/pull":
            return httpx.Response(
                200,
                content=ndjson(
                    {"status": "pulling manifest"},
                    {"status": "downloading", "digest": "sha256:abc", "total": 100, "completed": 50},
                    {"status": "success"},
                ),
            )
        if request.url.path == "/api/delete":
            return httpx.Response(200)
        return httpx.Response(404, text="not found")

    def bodies(self, path: str, stream: bool | None = None) -> list[dict]:
        return [
            body
            for _, p, body in self.requests
            if p == path and (stream is None or body.get("stream") is stream)
        ]


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def upstream() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def ollama(upstream: FakeOllama) -> OllamaClient:
    return OllamaClient(
        "http://ollama.test",
        timeout=5.0,
        max_malformed_lines=3,
        transport=httpx.MockTransport(upstream),
    )
