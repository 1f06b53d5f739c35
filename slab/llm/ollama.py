import json
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx

from slab.constants import DEFAULT_OLLAMA_HOST, REQUEST_TIMEOUT, STREAM_TIMEOUT
from slab.errors import ModelNotFoundError, TransportError
from slab.llm.retry import with_retry
from slab.logging import get_logger

_logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelInfo:
    name: str
    size: int = 0
    modified_at: str = ""
    family: str | None = None
    parameter_size: str | None = None

    @property
    def size_gb(self) -> float:
        return self.size / 1024**3


def _status_error(status: int, body: str, model: str) -> Exception:
    lowered = body.lower()
    if "model" in lowered and "not found" in lowered:
        return ModelNotFoundError(model)
    return TransportError(f"Ollama returned HTTP {status}: {body.strip()[:500]}")


def _chunk_content(line: str) -> tuple[str, bool]:
    data = json.loads(line)
    if "error" in data:
        raise TransportError(f"Ollama error: {data['error']}")
    message = data.get("message") or {}
    return message.get("content") or "", bool(data.get("done"))


class OllamaClient:
    """Async client for the Ollama HTTP API (`/api/chat`, `/api/tags`)."""

    def __init__(
        self,
        host: str = DEFAULT_OLLAMA_HOST,
        timeout: float = REQUEST_TIMEOUT,
        stream_timeout: float = STREAM_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.host,
            timeout=httpx.Timeout(timeout, read=stream_timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _payload(model: str, messages: list[dict], options: dict | None, stream: bool) -> dict:
        payload: dict = {"model": model, "messages": messages, "stream": stream}
        if options:
            payload["options"] = options
        return payload

    async def stream_chat(
        self,
        model: str,
        messages: list[dict],
        options: dict | None = None,
    ) -> AsyncIterator[str]:
        """Yield response text chunks as they arrive from the NDJSON stream."""
        payload = self._payload(model, messages, options, stream=True)
        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode(errors="replace")
                    raise _status_error(resp.status_code, body, model)
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    content, done = _chunk_content(line)
                    if content:
                        yield content
                    if done:
                        return
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out waiting for {self.host}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Connection to {self.host} failed: {e}") from e
        except json.JSONDecodeError as e:
            raise TransportError(f"Malformed stream chunk from {self.host}") from e

    async def _post_chat(self, payload: dict) -> dict:
        resp = await self._client.post("/api/chat", json=payload)
        resp.raise_for_status()
        return resp.json()

    async def chat(self, model: str, messages: list[dict], options: dict | None = None) -> str:
        payload = self._payload(model, messages, options, stream=False)
        try:
            data = await with_retry(self._post_chat, payload)
        except httpx.HTTPStatusError as e:
            raise _status_error(e.response.status_code, e.response.text, model) from None
        except httpx.HTTPError as e:
            raise TransportError(f"Connection to {self.host} failed: {e}") from e
        except json.JSONDecodeError as e:
            raise TransportError(f"Malformed response from {self.host}") from e
        return (data.get("message") or {}).get("content") or ""

    async def _get_tags(self) -> dict:
        resp = await self._client.get("/api/tags")
        resp.raise_for_status()
        return resp.json()

    async def list_models(self) -> list[ModelInfo]:
        try:
            data = await with_retry(self._get_tags)
        except httpx.HTTPError as e:
            raise TransportError(f"Could not list models from {self.host}: {e}") from e
        except json.JSONDecodeError as e:
            raise TransportError(f"Malformed model list from {self.host}") from e

        models = []
        for item in data.get("models", []):
            details = item.get("details") or {}
            models.append(
                ModelInfo(
                    name=item["name"],
                    size=item.get("size", 0),
                    modified_at=item.get("modified_at", ""),
                    family=details.get("family"),
                    parameter_size=details.get("parameter_size"),
                )
            )
        _logger.debug("Found %d model(s) at %s", len(models), self.host)
        return models
