from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from gateway.api.deps import get_ollama, get_store
from gateway.core import relay
from gateway.core.ollama import OllamaClient
from gateway.db.store import ConversationStore
from gateway.models.chat import ChatRequest

router = APIRouter(prefix="/api/chat", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


@router.post("")
async def chat(
    body: ChatRequest,
    store: ConversationStore = Depends(get_store),
    client: OllamaClient = Depends(get_ollama),
):
    # Raises before the response commits to a 200 event stream
    turn = await relay.prepare_turn(store, body)

    return StreamingResponse(
        relay.stream_turn(client, store, turn),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
