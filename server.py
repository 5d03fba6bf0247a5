# server.py
import os
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from contextlib import asynccontextmanager

import httpx
import orjson
from fastapi import FastAPI, HTTPException, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from engine import Engine
from extractor import PageSnapshot, Scope, Viewport
from ollama_client import DeltaCallback, OllamaClient, TransportError
from scheduler import Scheduler
from settings import MODEL, SETTINGS_PATH, SettingsStore, clamp_interval, normalize_endpoint
from summary_cache import SUMMARY_DB_PATH, SummaryCache
from views import SnapshotView, ViewRegistry

# Configure via env if you want
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("WRITETANK_PORT", "8765"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
LOGGER = logging.getLogger("writetank")

DATA = b"data: "
END = b"\n\n"
HEARTBEAT = b": ping\n\n"
EVENTS_HEARTBEAT_S = 15.0
SHUTDOWN_GRACE_S = float(os.getenv("WRITETANK_SHUTDOWN_GRACE", "10"))


async def _drain(tasks, timeout: float) -> None:
    """Let in-flight work finish before its resources close; cancel whatever overruns."""
    tasks = [t for t in tasks if not t.done()]
    if not tasks:
        return
    _, late = await asyncio.wait(tasks, timeout=timeout)
    for t in late:
        t.cancel()
    if late:
        LOGGER.warning("shutdown: cancelled %d unfinished task(s)", len(late))
        await asyncio.gather(*late, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
    app.state.client = httpx.AsyncClient(limits=limits)
    app.state.settings = SettingsStore(SETTINGS_PATH)
    app.state.model = OllamaClient(app.state.settings, app.state.client)
    app.state.cache = SummaryCache(app.state.model, SUMMARY_DB_PATH)
    app.state.views = ViewRegistry()
    app.state.flows = set()
    app.state.engine = Engine(app.state.model, app.state.cache)
    app.state.scheduler = Scheduler(app.state.settings, app.state.engine, app.state.views)
    await app.state.scheduler.start()
    yield
    # Shutdown
    app.state.scheduler.disarm()
    # flows and ticks may still queue summary writes, so they go first
    await _drain(app.state.flows | app.state.scheduler.pending(), SHUTDOWN_GRACE_S)
    await _drain(app.state.cache.pending(), SHUTDOWN_GRACE_S)
    app.state.cache.close()
    await app.state.client.aclose()

app = FastAPI(title="WriteTank", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------- Request helpers --------
def _scope(value: Any, default: Scope) -> Scope:
    if value in (None, ""):
        return default
    try:
        return Scope(str(value).lower())
    except ValueError:
        raise HTTPException(status_code=422, detail=f"unknown scope: {value}")


def _snapshot(data: Dict[str, Any]) -> PageSnapshot:
    url = (data.get("url") or "").strip()
    if not url:
        raise HTTPException(status_code=422, detail="snapshot url is required")
    vp = data.get("viewport")
    viewport = None
    if isinstance(vp, dict):
        try:
            viewport = Viewport(top=float(vp.get("top", 0)), height=float(vp.get("height", 0)))
        except (TypeError, ValueError):
            viewport = None
    return PageSnapshot(
        url=url,
        html=data.get("html") or "",
        selection=data.get("selection") or "",
        editor_selection=data.get("editor_selection") or "",
        viewport=viewport,
    )


def _view_for(payload: Dict[str, Any]) -> SnapshotView:
    snap = payload.get("snapshot")
    if isinstance(snap, dict):
        return app.state.views.post(_snapshot(snap))
    key = payload.get("doc_key") or ""
    view = app.state.views.get(key)
    if view is None:
        raise HTTPException(status_code=404, detail="No document")
    return view


def _sse(event: Dict[str, Any]) -> bytes:
    return DATA + orjson.dumps(event) + END


def _stream_flow(run: Callable[[DeltaCallback], Awaitable[Dict[str, Any]]]) -> StreamingResponse:
    """Run an engine flow, forwarding deltas as SSE events in arrival order."""

    async def event_gen():
        queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()

        async def on_delta(delta: str) -> None:
            await queue.put(_sse({"type": "delta", "delta": delta}))

        async def runner() -> None:
            try:
                res = await run(on_delta)
                if res.get("ok"):
                    await queue.put(_sse({"type": "done", **res}))
                else:
                    await queue.put(_sse({"type": "error", "message": res.get("error") or "Model error"}))
            except Exception as e:
                LOGGER.exception("stream flow failed")
                await queue.put(_sse({"type": "error", "message": f"Unexpected error: {e.__class__.__name__}: {e}"}))
            finally:
                await queue.put(None)

        # not cancelled if the page disconnects; the model call runs to completion
        task = asyncio.create_task(runner())
        app.state.flows.add(task)
        task.add_done_callback(app.state.flows.discard)
        while True:
            item = await queue.get()
            if item is None:
                break
            yield item

    return StreamingResponse(event_gen(), media_type="text/event-stream")


# -------- Health & settings --------
@app.get("/api/health")
async def health():
    ok = await app.state.model.ping()
    cfg = await app.state.settings.get()
    return {"ok": ok, "ollama": cfg.endpoint, "model": cfg.model, "scheduler": app.state.scheduler.state}


@app.get("/api/settings")
async def get_settings():
    cfg = await app.state.settings.get()
    return cfg.to_dict()


@app.post("/api/settings")
async def set_settings(patch: Dict[str, Any] = Body(...)):
    clean: Dict[str, Any] = {}
    if "endpoint" in patch:
        clean["endpoint"] = normalize_endpoint(patch.get("endpoint"))
    if "model" in patch:
        clean["model"] = (patch.get("model") or "").strip() or MODEL
    if "interval_min" in patch:
        clean["interval_min"] = clamp_interval(patch.get("interval_min"))
    if "paused" in patch:
        clean["paused"] = bool(patch.get("paused"))
    cfg = await app.state.settings.set(clean)
    return {"ok": True, "settings": cfg.to_dict(), "scheduler": app.state.scheduler.state}


@app.get("/api/models")
async def list_models():
    try:
        return {"ok": True, "models": await app.state.model.list_models()}
    except TransportError as e:
        return {"ok": False, "error": str(e)}


# -------- Documents --------
@app.post("/api/docs")
async def post_snapshot(snapshot: Dict[str, Any] = Body(...)):
    view = app.state.views.post(_snapshot(snapshot))
    return {"ok": True, "doc_key": view.key}


@app.delete("/api/docs/{doc_key}")
async def close_doc(doc_key: str):
    return {"ok": app.state.views.remove(doc_key)}


@app.get("/api/docs/{doc_key}/events")
async def doc_events(doc_key: str):
    view = app.state.views.get(doc_key)
    if view is None:
        raise HTTPException(status_code=404, detail="No document")

    async def event_gen():
        while not view.closed:
            try:
                event = await asyncio.wait_for(view.events.get(), timeout=EVENTS_HEARTBEAT_S)
            except asyncio.TimeoutError:
                yield HEARTBEAT
                continue
            yield _sse(event)

    return StreamingResponse(event_gen(), media_type="text/event-stream")


# -------- Q&A and coaching --------
@app.post("/api/ask")
async def ask(payload: Dict[str, Any] = Body(...)):
    view = _view_for(payload)
    scope = _scope(payload.get("scope"), Scope.SELECTION)
    question = payload.get("question") or ""
    if payload.get("stream", True):
        return _stream_flow(lambda on_delta: app.state.engine.ask(view, question, scope, on_delta))
    return await app.state.engine.ask(view, question, scope)


@app.post("/api/coach")
async def coach(payload: Dict[str, Any] = Body(...)):
    view = _view_for(payload)
    scope = _scope(payload.get("scope"), Scope.VISIBLE)
    if payload.get("stream", True):
        return _stream_flow(lambda on_delta: app.state.engine.run_coaching_pass(view, scope, on_delta))
    return await app.state.engine.run_coaching_pass(view, scope)


@app.post("/api/run-now")
async def run_now():
    view = app.state.views.active()
    if view is None:
        return {"ok": False, "error": "No document"}
    try:
        text = await app.state.engine.coach_view(view)
    except TransportError as e:
        await view.status_update(f"(error) {e}")
        return {"ok": False, "error": str(e) or "Model error"}
    if text is None:
        return {"ok": False, "error": "No text"}
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",  # module_name:app_instance
        host="127.0.0.1",
        port=PORT,
        reload=False,
    )
