import inspect
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Optional

import httpx
import orjson

from settings import SettingsStore

LOGGER = logging.getLogger(__name__)

KEEP_ALIVE = "30m"
TEMPERATURE = 0.2
TOP_P = 0.9
REPEAT_PENALTY = 1.1
STOP = ["\n\n\n\n", "<|end|>", "\nQuestion:"]
PING_TIMEOUT = 3.0


class TransportError(RuntimeError):
    """Non-success status, missing stream body, or a failed connection to the model host."""


# may return an awaitable; it is awaited before the next fragment is read
DeltaCallback = Callable[[str], Any]


def build_options(max_tokens: int, num_ctx: int) -> Dict[str, Any]:
    return {
        "num_predict": int(max_tokens),
        "num_ctx": int(num_ctx),
        "temperature": TEMPERATURE,
        "top_p": TOP_P,
        "repeat_penalty": REPEAT_PENALTY,
        "stop": list(STOP),
    }


def fragment_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    msg = data.get("message")
    if isinstance(msg, dict) and isinstance(msg.get("content"), str):
        return msg["content"]
    resp = data.get("response")
    return resp if isinstance(resp, str) else ""


async def iter_fragments(chunks: AsyncIterable[bytes]) -> AsyncIterator[Dict[str, Any]]:
    """
    Frame a byte stream into newline-delimited JSON objects.
    Garbled lines are skipped; a trailing unterminated line is parsed at EOF.
    """
    buffer = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            data = _parse_line(line)
            if data is not None:
                yield data
    data = _parse_line(buffer)
    if data is not None:
        yield data


def _parse_line(line: bytes) -> Optional[Dict[str, Any]]:
    line = line.strip()
    if not line:
        return None
    try:
        data = orjson.loads(line)
    except orjson.JSONDecodeError:
        LOGGER.debug("skipping malformed stream line: %r", line[:120])
        return None
    return data if isinstance(data, dict) else None


async def _error_detail(resp: httpx.Response) -> str:
    try:
        raw = await resp.aread()
    except httpx.HTTPError:
        raw = b""
    text = raw.decode("utf-8", "ignore").strip()
    msg = f"HTTP {resp.status_code} from model host"
    if not text:
        return msg
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError:
        return f"HTTP {resp.status_code}: {text[:200]}"
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("message") or payload.get("detail")
        if detail:
            return f"HTTP {resp.status_code}: {detail}"
    return msg


class OllamaClient:
    """
    Chat against a local Ollama host.
    Endpoint and model come from the settings store on every call so a changed
    configuration applies to the next request.
    """

    def __init__(self, settings: SettingsStore, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
            self._client = httpx.AsyncClient(limits=limits)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, system: str, user: str, max_tokens: int, num_ctx: int, stream: bool):
        cfg = await self.settings.get()
        url = f"{cfg.endpoint.rstrip('/')}/api/chat"
        req = {
            "model": cfg.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "stream": stream,
            "keep_alive": KEEP_ALIVE,
            "options": build_options(max_tokens, num_ctx),
        }
        return url, req

    async def chat(self, system: str, user: str, max_tokens: int, num_ctx: int) -> str:
        url, req = await self._request(system, user, max_tokens, num_ctx, stream=False)
        try:
            resp = await self.client.post(url, json=req, timeout=None)
        except httpx.RequestError as e:
            raise TransportError(f"Backend request failed: {e}") from e
        if resp.status_code >= 400:
            raise TransportError(await _error_detail(resp))
        try:
            data = orjson.loads(resp.content)
        except orjson.JSONDecodeError as e:
            raise TransportError("Model host returned a non-JSON response") from e
        return fragment_text(data)

    async def chat_stream(
        self,
        system: str,
        user: str,
        max_tokens: int,
        num_ctx: int,
        on_delta: Optional[DeltaCallback] = None,
    ) -> str:
        url, req = await self._request(system, user, max_tokens, num_ctx, stream=True)
        parts: List[str] = []
        received = 0

        async def counted(resp: httpx.Response) -> AsyncIterator[bytes]:
            nonlocal received
            async for chunk in resp.aiter_bytes():
                received += len(chunk)
                yield chunk

        try:
            async with self.client.stream("POST", url, json=req, timeout=None) as resp:
                if resp.status_code >= 400:
                    raise TransportError(await _error_detail(resp))
                async for data in iter_fragments(counted(resp)):
                    if data.get("error"):
                        raise TransportError(str(data["error"]))
                    delta = fragment_text(data)
                    if delta:
                        parts.append(delta)
                        if on_delta is not None:
                            res = on_delta(delta)
                            if inspect.isawaitable(res):
                                await res
                    if data.get("done"):
                        break
        except httpx.RequestError as e:
            raise TransportError(f"Backend request failed: {e}") from e
        if not received:
            raise TransportError("Model host returned an empty stream")
        return "".join(parts)

    async def ping(self) -> bool:
        cfg = await self.settings.get()
        try:
            r = await self.client.get(f"{cfg.endpoint.rstrip('/')}/api/tags", timeout=PING_TIMEOUT)
        except httpx.HTTPError:
            return False
        return r.status_code == 200

    async def list_models(self) -> List[str]:
        cfg = await self.settings.get()
        try:
            r = await self.client.get(f"{cfg.endpoint.rstrip('/')}/api/tags", timeout=10.0)
        except httpx.RequestError as e:
            raise TransportError(f"Backend request failed: {e}") from e
        if r.status_code >= 400:
            raise TransportError(await _error_detail(r))
        models = r.json().get("models") or []
        return [m.get("name") for m in models if isinstance(m, dict) and m.get("name")]
