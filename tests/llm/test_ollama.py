import json

import httpx
import pytest

from slab.errors import ModelNotFoundError, TransportError
from slab.llm import OllamaClient
from slab.llm.retry import _is_retryable


def ndjson(*chunks: dict) -> bytes:
    return b"".join(json.dumps(c).encode() + b"\n" for c in chunks)


def make_client(handler) -> OllamaClient:
    return OllamaClient(host="http://ollama.test", transport=httpx.MockTransport(handler))


async def collect(client: OllamaClient, model: str = "llama3") -> list[str]:
    return [chunk async for chunk in client.stream_chat(model, [{"role": "user", "content": "hi"}])]


class TestStreamChat:
    @pytest.mark.asyncio
    async def test_yields_chunks_until_done(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            body = ndjson(
                {"message": {"content": "Hel"}, "done": False},
                {"message": {"content": "lo"}, "done": False},
                {"message": {"content": ""}, "done": True},
            )
            return httpx.Response(200, content=body)

        async with make_client(handler) as client:
            chunks = await collect(client)

        assert chunks == ["Hel", "lo"]
        assert requests[0]["stream"] is True
        assert requests[0]["model"] == "llama3"
        assert "options" not in requests[0]

    @pytest.mark.asyncio
    async def test_options_are_forwarded(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, content=ndjson({"done": True}))

        async with make_client(handler) as client:
            async for _ in client.stream_chat("m", [], options={"num_ctx": 8192}):
                pass

        assert seen["options"] == {"num_ctx": 8192}

    @pytest.mark.asyncio
    async def test_model_not_found(self):
        def handler(request):
            return httpx.Response(404, json={"error": "model 'nope' not found"})

        async with make_client(handler) as client:
            with pytest.raises(ModelNotFoundError) as exc_info:
                await collect(client, "nope")

        assert exc_info.value.model == "nope"
        assert "ollama pull nope" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        async with make_client(handler) as client:
            with pytest.raises(TransportError, match="HTTP 500"):
                await collect(client)

    @pytest.mark.asyncio
    async def test_error_chunk(self):
        def handler(request):
            return httpx.Response(200, content=ndjson({"error": "out of memory"}))

        async with make_client(handler) as client:
            with pytest.raises(TransportError, match="out of memory"):
                await collect(client)

    @pytest.mark.asyncio
    async def test_connection_drop_mid_stream(self):
        async def body():
            yield ndjson({"message": {"content": "partial"}, "done": False})
            raise httpx.ReadError("connection reset")

        def handler(request):
            return httpx.Response(200, content=body())

        received = []
        async with make_client(handler) as client:
            with pytest.raises(TransportError):
                async for chunk in client.stream_chat("m", []):
                    received.append(chunk)

        assert received == ["partial"]

    @pytest.mark.asyncio
    async def test_unreachable_host(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        async with make_client(handler) as client:
            with pytest.raises(TransportError, match="ollama.test"):
                await collect(client)


class TestChat:
    @pytest.mark.asyncio
    async def test_non_streaming(self):
        def handler(request):
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"message": {"role": "assistant", "content": "done"}})

        async with make_client(handler) as client:
            assert await client.chat("m", []) == "done"

    @pytest.mark.asyncio
    async def test_not_found(self):
        def handler(request):
            return httpx.Response(404, json={"error": "model 'x' not found, try pulling it first"})

        async with make_client(handler) as client:
            with pytest.raises(ModelNotFoundError):
                await client.chat("x", [])

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>proxy error</html>")

        async with make_client(handler) as client:
            with pytest.raises(TransportError, match="Malformed response"):
                await client.chat("m", [])


class TestListModels:
    @pytest.mark.asyncio
    async def test_parses_tags(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(
                200,
                json={
                    "models": [
                        {
                            "name": "qwen2.5-coder:7b",
                            "size": 2 * 1024**3,
                            "modified_at": "2024-05-01T10:00:00Z",
                            "details": {"family": "qwen2", "parameter_size": "7.6B"},
                        },
                        {"name": "tiny"},
                    ]
                },
            )

        async with make_client(handler) as client:
            models = await client.list_models()

        assert [m.name for m in models] == ["qwen2.5-coder:7b", "tiny"]
        assert models[0].size_gb == 2.0
        assert models[0].parameter_size == "7.6B"
        assert models[1].family is None

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        def handler(request):
            return httpx.Response(200, content=b"not json")

        async with make_client(handler) as client:
            with pytest.raises(TransportError, match="Malformed model list"):
                await client.list_models()


class TestRetryPolicy:
    def make_status_error(self, status: int) -> httpx.HTTPStatusError:
        request = httpx.Request("GET", "http://ollama.test/api/tags")
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError("err", request=request, response=response)

    def test_retryable(self):
        assert _is_retryable(self.make_status_error(503))
        assert _is_retryable(self.make_status_error(429))
        assert _is_retryable(httpx.ConnectError("refused"))

    def test_not_retryable(self):
        assert not _is_retryable(self.make_status_error(404))
        assert not _is_retryable(ValueError("x"))
