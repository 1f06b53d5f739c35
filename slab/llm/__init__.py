from collections.abc import AsyncIterator
from typing import Protocol

from slab.llm.ollama import ModelInfo, OllamaClient


class ChatBackend(Protocol):
    def stream_chat(self, model: str, messages: list[dict], options: dict | None = None) -> AsyncIterator[str]: ...

    async def chat(self, model: str, messages: list[dict], options: dict | None = None) -> str: ...

    async def list_models(self) -> list[ModelInfo]: ...


__all__ = ["ChatBackend", "ModelInfo", "OllamaClient"]
