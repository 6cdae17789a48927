from fastapi import Request

from gateway.core.ollama import OllamaClient
from gateway.db.store import ConversationStore


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_ollama(request: Request) -> OllamaClient:
    return request.app.state.ollama
