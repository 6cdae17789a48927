import asyncio

from loguru import logger

from gateway.core.ollama import OllamaClient
from gateway.db.store import ConversationStore
from gateway.errors import GatewayError
from gateway.models.ollama import ChatMessage, ChatPayload

TITLE_INSTRUCTION = (
    "Generate a very short title (max 6 words) for a conversation that starts "
    "with the following message. Reply with ONLY the title, no quotes, "
    "no punctuation at the end."
)
TITLE_OPTIONS = {"temperature": 0.3, "num_predict": 20}
MAX_TITLE_LENGTH = 80

# Strong references so pending tasks are not garbage collected mid-flight
_pending: set[asyncio.Task] = set()


def clean_title(raw: str) -> str:
    return raw.strip()[:MAX_TITLE_LENGTH].rstrip()


async def generate_title(
    client: OllamaClient,
    store: ConversationStore,
    conversation_id: str,
    model: str,
    user_message: str,
) -> str | None:
    """
    Ask the model for a short title and rename the conversation with it.

    Cosmetic only: every failure is logged and swallowed. Returns the stored
    title, or None when nothing was written.
    """
    payload = ChatPayload(
        model=model,
        messages=[
            ChatMessage(role="system", content=TITLE_INSTRUCTION),
            ChatMessage(role="user", content=user_message),
        ],
        stream=False,
        options=TITLE_OPTIONS,
    )
    try:
        result = await client.chat(payload)
    except GatewayError as e:
        logger.warning("[title] generation failed for {}: {}", conversation_id, e)
        return None

    title = clean_title(result.content)
    if not title:
        logger.warning("[title] model returned an empty title for {}", conversation_id)
        return None

    try:
        updated = await store.update_title(conversation_id, title)
    except GatewayError as e:
        logger.warning("[title] could not save title for {}: {}", conversation_id, e)
        return None

    if not updated:
        logger.debug("[title] conversation {} is gone, title dropped", conversation_id)
        return None

    logger.info("[title] {} -> {!r}", conversation_id, title)
    return title


def schedule_title_task(
    client: OllamaClient,
    store: ConversationStore,
    conversation_id: str,
    model: str,
    user_message: str,
) -> asyncio.Task:
    """Fire-and-forget: the caller never awaits the returned task."""
    task = asyncio.create_task(
        generate_title(client, store, conversation_id, model, user_message),
        name=f"title-{conversation_id}",
    )
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task
