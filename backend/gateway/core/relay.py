"""
Streaming chat relay.

One chat turn moves through Validating -> Initializing -> Streaming ->
Finalizing -> Completed/Failed. ``prepare_turn`` covers the synchronous part,
where errors are still ordinary exceptions (nothing has been sent yet).
``stream_turn`` covers the rest; once the event stream is open every failure
becomes a single terminal ``error`` event.

Turns share no state. Two turns racing on the same conversation are not
guarded against here; serializing them is up to the caller.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger

from gateway.core.events import chunk_event, error_event, format_sse, init_event
from gateway.core.ollama import OllamaClient
from gateway.core.titles import schedule_title_task
from gateway.db.store import ConversationStore
from gateway.errors import ConversationNotFound, GatewayError, InvalidInput, PersistenceFailure
from gateway.models.chat import DEFAULT_TITLE, ChatRequest, Message
from gateway.models.ollama import ChatMessage, ChatPayload, StreamChunk

TitleSpawner = Callable[[OllamaClient, ConversationStore, str, str, str], object]


def new_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex[:16]}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class PreparedTurn:
    conversation_id: str
    model: str
    message: str
    history: tuple[ChatMessage, ...]
    options: dict | None = None
    system_prompt: str | None = None
    first_exchange: bool = False

    def payload(self) -> ChatPayload:
        messages = list(self.history)
        if self.system_prompt:
            messages.insert(0, ChatMessage(role="system", content=self.system_prompt))
        return ChatPayload(model=self.model, messages=messages, options=self.options)


# ── Validating / Initializing ───────────────────────────────────────────────────

def validate_request(body: ChatRequest) -> None:
    if not body.message.strip() or not body.model.strip():
        raise InvalidInput("Message and model are required")


async def prepare_turn(store: ConversationStore, body: ChatRequest) -> PreparedTurn:
    """
    Validate the request, make sure the conversation exists, persist the user
    message and load the history that will be sent upstream.

    Raises InvalidInput, ConversationNotFound or PersistenceFailure before any
    stream is opened.
    """
    validate_request(body)

    conversation_id = body.conversation_id
    if conversation_id and await store.get_conversation(conversation_id) is None:
        raise ConversationNotFound(conversation_id)

    is_new = not conversation_id
    if is_new:
        conversation_id = new_conversation_id()

    user_message = Message(
        id=new_message_id(),
        conversation_id=conversation_id,
        role="user",
        content=body.message,
        created_at=datetime.now(timezone.utc),
    )
    if is_new:
        # Conversation and first message land together or not at all
        await store.create_conversation(conversation_id, DEFAULT_TITLE, body.model, first_message=user_message)
        logger.info("[relay] created conversation {} ({})", conversation_id, body.model)
    else:
        await store.create_message(user_message)

    history = await store.get_messages(conversation_id)
    return PreparedTurn(
        conversation_id=conversation_id,
        model=body.model,
        message=body.message,
        history=tuple(ChatMessage(role=m.role, content=m.content) for m in history),
        options=body.options.to_upstream() if body.options else None,
        system_prompt=body.system_prompt,
        first_exchange=len(history) <= 1,
    )


# ── Streaming / Finalizing ──────────────────────────────────────────────────────

# Strong references to finalizers that outlive a cancelled stream
_finalizing: set[asyncio.Task] = set()


async def finalize_turn(store: ConversationStore, turn: PreparedTurn, content: str, final: StreamChunk) -> None:
    """Persist the assistant reply. Failures are logged; the client still gets the content."""
    try:
        await store.create_message(
            Message(
                id=new_message_id(),
                conversation_id=turn.conversation_id,
                role="assistant",
                content=content,
                model=turn.model,
                tokens_used=final.total_tokens,
                duration=final.duration_seconds,
                created_at=datetime.now(timezone.utc),
            )
        )
    except PersistenceFailure as e:
        logger.error("[relay] could not save assistant message for {}: {}", turn.conversation_id, e)

    try:
        await store.touch(turn.conversation_id)
    except PersistenceFailure as e:
        logger.error("[relay] could not touch conversation {}: {}", turn.conversation_id, e)


async def _complete_turn(
    client: OllamaClient,
    store: ConversationStore,
    turn: PreparedTurn,
    content: str,
    final: StreamChunk,
    spawn_title: TitleSpawner | None,
) -> None:
    await finalize_turn(store, turn, content, final)
    logger.info(
        "[relay] turn complete for {}: {} tokens in {:.2f}s",
        turn.conversation_id,
        final.total_tokens,
        final.duration_seconds,
    )

    if turn.first_exchange:
        spawn = spawn_title or schedule_title_task
        spawn(client, store, turn.conversation_id, turn.model, turn.message)


async def stream_turn(
    client: OllamaClient,
    store: ConversationStore,
    turn: PreparedTurn,
    spawn_title: TitleSpawner | None = None,
) -> AsyncIterator[str]:
    """
    Yield server-sent events for one prepared turn.

    The ``done`` chunk is held back until the reply is persisted, so a client
    that hangs up after seeing it can never lose the assistant message. If the
    consumer stops iterating earlier (client disconnect), the upstream
    connection is released and nothing more is persisted.
    """
    yield format_sse(init_event(turn.conversation_id))

    parts: list[str] = []
    final: StreamChunk | None = None
    stream = client.stream_chat(turn.payload())
    try:
        async for chunk in stream:
            parts.append(chunk.content)
            if chunk.done:
                final = chunk
                break
            yield format_sse(chunk_event(chunk))
    except GatewayError as e:
        logger.error("[relay] stream failed for {}: {}", turn.conversation_id, e)
        yield format_sse(error_event(e.message))
        return
    finally:
        await stream.aclose()

    if final is None:
        logger.error("[relay] upstream closed the stream early for {}", turn.conversation_id)
        yield format_sse(error_event("Stream ended before the model finished"))
        return

    # Runs to completion even if the transport cancels this generator
    task = asyncio.create_task(
        _complete_turn(client, store, turn, "".join(parts), final, spawn_title),
        name=f"finalize-{turn.conversation_id}",
    )
    _finalizing.add(task)
    task.add_done_callback(_finalizing.discard)
    await asyncio.shield(task)

    yield format_sse(chunk_event(final))
