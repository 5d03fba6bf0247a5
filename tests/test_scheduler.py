import asyncio

import pytest

from conftest import FakeModel, RecordingView
from engine import Engine
from extractor import Scope, TextSample
from ollama_client import TransportError
from scheduler import ARMED, DISARMED, Scheduler
from summary_cache import SummaryCache
from views import ViewRegistry


class _Registry(ViewRegistry):
    def __init__(self, view=None):
        super().__init__()
        self.view = view

    def active(self):
        return self.view


def _scheduler(settings_store, model=None, view=None):
    model = model or FakeModel()
    engine = Engine(model, SummaryCache(model, db_path=":memory:"))
    return Scheduler(settings_store, engine, _Registry(view))


@pytest.mark.asyncio
async def test_armed_when_unpaused_and_disarmed_when_paused(settings_store):
    sched = _scheduler(settings_store)
    assert await sched.start() == DISARMED  # paused by default

    await settings_store.set({"paused": False, "interval_min": 5})
    assert sched.state == ARMED
    task = sched._task

    await settings_store.set({"paused": True})
    assert sched.state == DISARMED
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert task.cancelled()


@pytest.mark.asyncio
async def test_rearm_keeps_a_single_timer(settings_store):
    sched = _scheduler(settings_store)
    await settings_store.set({"paused": False, "interval_min": 5})
    first = sched._task
    await settings_store.set({"interval_min": 10})
    second = sched._task
    assert first is not second
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert first.cancelled()
    assert not second.done()
    sched.disarm()


@pytest.mark.asyncio
async def test_zero_interval_disarms(settings_store):
    sched = _scheduler(settings_store)
    await settings_store.set({"paused": False, "interval_min": 0})
    assert sched.state == DISARMED


@pytest.mark.asyncio
async def test_tick_coaches_visible_text(settings_store):
    view = RecordingView({Scope.VISIBLE: TextSample(body_text="We study X.")})
    model = FakeModel(fragments=["\\paragraph{Structure} Fine.", " Trailing"])
    sched = _scheduler(settings_store, model, view)
    await settings_store.set({"paused": False})
    await sched.tick()
    sched.disarm()

    assert view.requests == [Scope.VISIBLE]
    finals = [e for e in view.events if e[0] == "final"]
    assert finals == [("final", "\\paragraph{Structure} Fine.")]
    assert ("delta", " Trailing") in view.events


@pytest.mark.asyncio
async def test_tick_falls_back_to_whole_then_noops(settings_store):
    view = RecordingView({Scope.WHOLE: TextSample(body_text="Whole doc.")})
    model = FakeModel()
    sched = _scheduler(settings_store, model, view)
    await settings_store.set({"paused": False})
    await sched.tick()
    assert view.requests == [Scope.VISIBLE, Scope.WHOLE]
    assert len(model.stream_calls) == 1

    empty = RecordingView()
    sched.views.view = empty
    await sched.tick()
    sched.disarm()
    assert len(model.stream_calls) == 1
    assert empty.events == []


@pytest.mark.asyncio
async def test_tick_failure_becomes_status_and_stays_armed(settings_store):
    view = RecordingView({Scope.VISIBLE: TextSample(body_text="Text.")})
    model = FakeModel(error=TransportError("HTTP 500 from model host"))
    sched = _scheduler(settings_store, model, view)
    await settings_store.set({"paused": False, "interval_min": 5})
    await sched.tick()
    assert sched.state == ARMED
    assert view.events[-1] == ("status", "(error) HTTP 500 from model host")
    sched.disarm()


@pytest.mark.asyncio
async def test_tick_does_nothing_while_paused(settings_store):
    view = RecordingView({Scope.VISIBLE: TextSample(body_text="Text.")})
    sched = _scheduler(settings_store, view=view)
    await sched.tick()
    assert view.requests == []


class _HeldModel(FakeModel):
    """Streams only after the test releases it."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def chat_stream(self, *args, **kw):
        self.started.set()
        await self.release.wait()
        return await super().chat_stream(*args, **kw)


@pytest.mark.asyncio
async def test_settings_change_lets_running_tick_finish(settings_store):
    view = RecordingView({Scope.VISIBLE: TextSample(body_text="We study X.")})
    model = _HeldModel(fragments=["Tighten the intro."])
    sched = _scheduler(settings_store, model, view)
    await settings_store.set({"paused": False, "interval_min": 5})
    sched.disarm()
    sched._task = asyncio.get_running_loop().create_task(sched._run(0.01))

    await asyncio.wait_for(model.started.wait(), timeout=2)
    await settings_store.set({"interval_min": 10})
    model.release.set()
    await asyncio.wait_for(asyncio.gather(*sched.pending()), timeout=2)
    sched.disarm()

    assert ("final", "Tighten the intro.") in view.events
    assert not any(e[0] == "status" and e[1].startswith("(error)") for e in view.events)
