import asyncio
import logging
from typing import Optional, Set

from engine import Engine
from settings import Configuration, SettingsStore
from views import ViewRegistry

LOGGER = logging.getLogger(__name__)

ARMED = "armed"
DISARMED = "disarmed"


def should_arm(cfg: Configuration) -> bool:
    return not cfg.paused and cfg.interval_min > 0


class Scheduler:
    """
    Periodic coaching against the active document.
    At most one timer task exists; every settings change re-arms from scratch.
    """

    def __init__(self, settings: SettingsStore, engine: Engine, views: ViewRegistry):
        self.settings = settings
        self.engine = engine
        self.views = views
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._interval_s: float = 0.0
        settings.on_change(self.rearm)

    @property
    def state(self) -> str:
        return ARMED if self._task is not None and not self._task.done() else DISARMED

    def rearm(self, cfg: Configuration) -> str:
        self.disarm()
        if should_arm(cfg):
            self._interval_s = cfg.interval_min * 60.0
            self._task = asyncio.get_running_loop().create_task(self._run(self._interval_s))
            LOGGER.info("scheduler armed: every %d min", cfg.interval_min)
        else:
            LOGGER.info("scheduler disarmed")
        return self.state

    async def start(self) -> str:
        return self.rearm(await self.settings.get())

    def disarm(self) -> None:
        # only the timer; a tick already running finishes on its own
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            task = asyncio.get_running_loop().create_task(self.tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)

    def pending(self) -> Set[asyncio.Task]:
        return set(self._ticks)

    async def tick(self) -> None:
        """One firing. Never raises; failures become a status message on the view."""
        cfg = await self.settings.get()
        if cfg.paused:
            return
        view = self.views.active()
        if view is None:
            LOGGER.debug("tick: no active document")
            return
        try:
            text = await self.engine.coach_view(view)
            if text is None:
                LOGGER.debug("tick: no text in %s", view.key)
        except Exception as e:
            LOGGER.warning("scheduled coaching failed for %s: %s", view.key, e)
            try:
                await view.status_update(f"(error) {e or 'Model unavailable'}")
            except Exception:
                LOGGER.debug("could not report tick failure to %s", view.key)
