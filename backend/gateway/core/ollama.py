"""
Async client for the Ollama HTTP API.

Every call opens its own httpx.AsyncClient, so an OllamaClient carries nothing
but its configuration and can be shared freely between requests. Errors are
translated into the gateway taxonomy and never retried here.
"""

from collections.abc import AsyncIterator

import httpx
from loguru import logger
from pydantic import ValidationError

from gateway.errors import UpstreamProtocolError, UpstreamUnavailable
from gateway.models.ollama import ChatPayload, ChatResult, ModelInfo, PullProgress, StreamChunk

HEALTH_TIMEOUT = 2.0
CONNECT_TIMEOUT = 10.0


async def _raise_for_status(resp: httpx.Response, action: str) -> None:
    if resp.is_success:
        return
    body = (await resp.aread()).decode("utf-8", errors="replace")
    logger.error("[ollama] {} failed with {}: {}", action, resp.status_code, body)
    raise UpstreamProtocolError(f"{action} error", resp.status_code, body)


class ChunkStream:
    """
    Forward-only, single-consumer sequence of StreamChunks for one /api/chat call.

    The upstream request is sent lazily on first iteration. A second iteration
    raises RuntimeError instead of silently yielding nothing. ``aclose()``
    releases the connection when the consumer stops early.
    """

    def __init__(self, client: "OllamaClient", payload: ChatPayload) -> None:
        self._client = client
        self._payload = payload.model_copy(update={"stream": True})
        self._chunks = self._iterate()
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        if self._consumed:
            raise RuntimeError("chunk stream can only be consumed once")
        self._consumed = True
        return self._chunks

    async def aclose(self) -> None:
        await self._chunks.aclose()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        max_malformed = self._client.max_malformed_lines
        try:
            async with self._client.http() as http:
                async with http.stream(
                    "POST",
                    "/api/chat",
                    json=self._payload.model_dump(exclude_none=True),
                ) as resp:
                    await _raise_for_status(resp, "chat")

                    malformed = 0
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            chunk = StreamChunk.model_validate_json(line)
                        except ValidationError:
                            malformed += 1
                            logger.debug("[ollama] skipping malformed stream line: {!r}", line[:200])
                            if malformed >= max_malformed:
                                raise UpstreamProtocolError(
                                    f"chat stream corrupted: {malformed} consecutive unparseable lines"
                                )
                            continue
                        malformed = 0

                        if chunk.error:
                            raise UpstreamProtocolError(f"chat stream error: {chunk.error}")

                        yield chunk

                        if chunk.done:
                            break
        except httpx.RequestError as exc:
            logger.error("[ollama] chat stream transport failure: {}", exc)
            raise UpstreamUnavailable(f"Cannot reach Ollama: {exc}") from exc


class OllamaClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 600.0,
        max_malformed_lines: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_malformed_lines = max_malformed_lines
        self._transport = transport

    def http(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout or self.timeout, connect=CONNECT_TIMEOUT),
            transport=self._transport,
        )

    def stream_chat(self, payload: ChatPayload) -> ChunkStream:
        return ChunkStream(self, payload)

    async def chat(self, payload: ChatPayload) -> ChatResult:
        """Single non-streaming completion."""
        body = payload.model_copy(update={"stream": False}).model_dump(exclude_none=True)
        try:
            async with self.http() as http:
                resp = await http.post("/api/chat", json=body)
                await _raise_for_status(resp, "chat")
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Cannot reach Ollama: {exc}") from exc

        try:
            result = ChatResult.model_validate_json(resp.content)
        except ValidationError as exc:
            raise UpstreamProtocolError(f"chat decode error: {exc}") from exc
        if result.error:
            raise UpstreamProtocolError(f"chat error: {result.error}")
        return result

    async def list_models(self) -> list[ModelInfo]:
        try:
            async with self.http() as http:
                resp = await http.get("/api/tags")
                await _raise_for_status(resp, "list models")
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Cannot reach Ollama: {exc}") from exc

        try:
            return [ModelInfo.model_validate(m) for m in resp.json().get("models") or []]
        except (ValueError, ValidationError) as exc:
            raise UpstreamProtocolError(f"decode models: {exc}") from exc

    async def pull_model(self, name: str) -> AsyncIterator[PullProgress]:
        """Yield download progress until the upstream closes the stream."""
        logger.info("[ollama] pulling model {}", name)
        try:
            async with self.http() as http:
                async with http.stream("POST", "/api/pull", json={"name": name, "stream": True}) as resp:
                    await _raise_for_status(resp, "pull model")
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            progress = PullProgress.model_validate_json(line)
                        except ValidationError:
                            continue
                        if progress.error:
                            raise UpstreamProtocolError(f"pull model error: {progress.error}")
                        yield progress
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Cannot reach Ollama: {exc}") from exc

    async def delete_model(self, name: str) -> None:
        try:
            async with self.http() as http:
                resp = await http.request("DELETE", "/api/delete", json={"name": name})
                await _raise_for_status(resp, "delete model")
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Cannot reach Ollama: {exc}") from exc
        logger.info("[ollama] deleted model {}", name)

    async def is_healthy(self) -> bool:
        try:
            async with self.http(timeout=HEALTH_TIMEOUT) as http:
                resp = await http.get("/api/tags")
                return resp.status_code == 200
        except Exception as e:
            logger.debug("[ollama] health check failed: {}", e)
            return False
