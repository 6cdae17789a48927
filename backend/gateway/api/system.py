import asyncio

from fastapi import APIRouter, Depends

from gateway import __version__
from gateway.api.deps import get_ollama, get_store
from gateway.core.ollama import OllamaClient
from gateway.db.store import ConversationStore
from gateway.errors import GatewayError
from gateway.models.system import HealthResponse, StatsResponse

router = APIRouter(prefix="/api", tags=["system"])


async def check_store(store: ConversationStore) -> bool:
    try:
        await store.get_stats()
        return True
    except GatewayError:
        return False


@router.get("/health", response_model=HealthResponse)
async def health(
    store: ConversationStore = Depends(get_store),
    client: OllamaClient = Depends(get_ollama),
):
    ollama_ok, database_ok = await asyncio.gather(
        client.is_healthy(),
        check_store(store),
    )
    return HealthResponse(
        status="healthy" if ollama_ok and database_ok else "degraded",
        ollama=ollama_ok,
        database=database_ok,
        version=__version__,
    )


@router.get("/stats", response_model=StatsResponse)
async def stats(
    store: ConversationStore = Depends(get_store),
    client: OllamaClient = Depends(get_ollama),
):
    totals = await store.get_stats()
    ollama_ok = await client.is_healthy()

    models_count = None
    if ollama_ok:
        try:
            models_count = len(await client.list_models())
        except GatewayError:
            pass

    return StatsResponse(**totals, ollama_connected=ollama_ok, models_count=models_count)
