import asyncio
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from gateway import __version__
from gateway.config import get_settings
from gateway.core.ollama import OllamaClient
from gateway.db import postgres
from gateway.db.store import PostgresStore
from gateway.errors import GatewayError
from gateway.api import chat, conversations, models, system


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


async def connect_database() -> None:
    for attempt in range(10):
        try:
            await postgres.create_pool()
            return
        except Exception as e:
            if attempt < 9:
                logger.warning(
                    f"DB connection attempt {attempt + 1} failed: {e}. Retrying in 2s..."
                )
                await asyncio.sleep(2)
            else:
                logger.error("Failed to connect to database after 10 attempts")
                raise


async def log_upstream(client: OllamaClient) -> None:
    if not await client.is_healthy():
        logger.warning("Ollama is not reachable at {}", client.base_url)
        logger.warning("Start Ollama first: ollama serve")
        return

    logger.info("Ollama connected at {}", client.base_url)
    try:
        available = await client.list_models()
    except GatewayError as e:
        logger.warning("Could not list models: {}", e)
        return
    logger.info("{} model(s) available", len(available))
    for m in available:
        logger.info("  model {} ({:.1f}GB)", m.name, m.size / 1e9)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting chat gateway...")
    logger.info(
        f"Connecting to PostgreSQL at {settings.postgres_host}:{settings.postgres_port}"
    )

    await connect_database()
    store = PostgresStore()
    await store.ensure_schema()

    client = OllamaClient(
        settings.ollama_base_url,
        timeout=settings.ollama_timeout,
        max_malformed_lines=settings.max_malformed_lines,
    )
    await log_upstream(client)

    app.state.store = store
    app.state.ollama = client
    logger.info("Chat gateway ready")
    yield

    await postgres.close_pool()
    logger.info("Chat gateway shut down")


app = FastAPI(
    title="Chat Gateway API",
    version=__version__,
    description="Self-hosted chat gateway in front of a local Ollama server",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    max_age=86400,
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    # The chat stream logs its own lifecycle
    if not request.url.path.startswith("/api/chat"):
        logger.info(
            "{} {} -> {} ({:.1f}ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000,
        )
    return response


app.include_router(chat.router)
app.include_router(conversations.router)
app.include_router(models.router)
app.include_router(system.router)


@app.get("/")
async def root():
    return {"message": "Chat Gateway API", "version": __version__, "docs": "/docs"}
