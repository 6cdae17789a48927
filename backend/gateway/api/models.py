from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from loguru import logger

from gateway.api.chat import SSE_HEADERS
from gateway.api.deps import get_ollama
from gateway.core.events import format_sse
from gateway.core.ollama import OllamaClient
from gateway.errors import GatewayError, InvalidInput
from gateway.models.system import PullRequest

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("")
async def list_models(client: OllamaClient = Depends(get_ollama)):
    models = await client.list_models()
    return {"models": [m.model_dump() for m in models]}


@router.post("/pull")
async def pull_model(body: PullRequest, client: OllamaClient = Depends(get_ollama)):
    name = body.name.strip()
    if not name:
        raise InvalidInput("Model name is required")

    async def stream_progress():
        try:
            async for progress in client.pull_model(name):
                yield format_sse(progress.model_dump(exclude_none=True))
        except GatewayError as e:
            logger.error("[models] pull {} failed: {}", name, e)
            yield format_sse({"error": e.message})
            return
        yield format_sse({"status": "success"})

    return StreamingResponse(stream_progress(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.delete("/{name:path}")
async def delete_model(name: str, client: OllamaClient = Depends(get_ollama)):
    await client.delete_model(name)
    return {"status": "deleted"}
