import httpx
import orjson
import pytest

from ollama_client import OllamaClient, TransportError, iter_fragments
from settings import OLLAMA_HOST, SettingsStore


def _line(content: str, done: bool = False) -> bytes:
    return orjson.dumps({"message": {"role": "assistant", "content": content}, "done": done}) + b"\n"


async def _chunks(*parts: bytes):
    for p in parts:
        yield p


def _client(handler) -> OllamaClient:
    transport = httpx.MockTransport(handler)
    return OllamaClient(SettingsStore(None), httpx.AsyncClient(transport=transport))


@pytest.mark.asyncio
async def test_stream_deltas_arrive_in_order():
    body = _line("\\para") + _line("graph{Structure}") + _line(" Good.") + _line("", done=True)
    # split mid-line to exercise the framer
    parts = [body[:7], body[7:40], body[40:]]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(*parts))

    seen = []
    out = await _client(handler).chat_stream("sys", "user", 100, 2048, seen.append)
    assert seen == ["\\para", "graph{Structure}", " Good."]
    assert out == "\\paragraph{Structure} Good."


@pytest.mark.asyncio
async def test_malformed_lines_are_skipped():
    body = _line("Hello") + b"{not json\n" + b"garbage\n" + _line(" world.")

    def handler(request):
        return httpx.Response(200, content=body)

    out = await _client(handler).chat_stream("s", "u", 10, 512)
    assert out == "Hello world."


@pytest.mark.asyncio
async def test_response_field_is_accepted():
    body = orjson.dumps({"response": "From generate."}) + b"\n"

    def handler(request):
        return httpx.Response(200, content=body)

    assert await _client(handler).chat_stream("s", "u", 10, 512) == "From generate."


@pytest.mark.asyncio
async def test_http_500_fails_both_variants_without_deltas():
    def handler(request):
        return httpx.Response(500, json={"error": "model crashed"})

    client = _client(handler)
    seen = []
    with pytest.raises(TransportError) as exc:
        await client.chat_stream("s", "u", 10, 512, seen.append)
    assert "500" in str(exc.value)
    assert seen == []
    with pytest.raises(TransportError):
        await client.chat("s", "u", 10, 512)


@pytest.mark.asyncio
async def test_empty_stream_body_is_a_transport_error():
    def handler(request):
        return httpx.Response(200, content=b"")

    with pytest.raises(TransportError):
        await _client(handler).chat_stream("s", "u", 10, 512)


@pytest.mark.asyncio
async def test_connection_error_is_a_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError):
        await _client(handler).chat("s", "u", 10, 512)


@pytest.mark.asyncio
async def test_request_body_carries_fixed_options():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = orjson.loads(request.content)
        return httpx.Response(200, json={"message": {"content": "ok"}})

    out = await _client(handler).chat("system text", "user text", 320, 2048)
    assert out == "ok"
    assert captured["url"] == f"{OLLAMA_HOST.rstrip('/')}/api/chat"
    body = captured["body"]
    assert body["stream"] is False
    assert body["keep_alive"] == "30m"
    assert body["messages"] == [
        {"role": "system", "content": "system text"},
        {"role": "user", "content": "user text"},
    ]
    opts = body["options"]
    assert opts["num_predict"] == 320 and opts["num_ctx"] == 2048
    assert opts["temperature"] <= 0.3 and opts["top_p"] == 0.9
    assert opts["repeat_penalty"] > 1.0 and opts["stop"]


@pytest.mark.asyncio
async def test_endpoint_change_applies_to_next_call():
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, json={"message": {"content": "ok"}})

    client = _client(handler)
    await client.settings.set({"endpoint": "http://gpu-box:11434", "model": "mistral:instruct"})
    await client.chat("s", "u", 10, 512)
    assert urls == ["http://gpu-box:11434/api/chat"]


@pytest.mark.asyncio
async def test_ping_uses_tags():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "gpt-oss:20b"}]})

    client = _client(handler)
    assert await client.ping() is True
    assert await client.list_models() == ["gpt-oss:20b"]


@pytest.mark.asyncio
async def test_ping_is_false_when_host_is_down():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    assert await _client(handler).ping() is False


@pytest.mark.asyncio
async def test_framer_parses_unterminated_last_line():
    frames = [f async for f in iter_fragments(_chunks(b'{"response": "a"}\n{"resp', b'onse": "b"}'))]
    assert [f["response"] for f in frames] == ["a", "b"]
