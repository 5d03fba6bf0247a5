import os
import asyncio
import logging
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Callable, Dict, List, Optional

import orjson

LOGGER = logging.getLogger(__name__)

OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
MODEL = os.getenv("MODEL", "gpt-oss:20b")
WRITETANK_HOME = os.path.expanduser(os.getenv("WRITETANK_HOME", "~/.writetank"))
SETTINGS_PATH = os.path.join(WRITETANK_HOME, "settings.json")

MIN_INTERVAL_MIN = 1
MAX_INTERVAL_MIN = 60


@dataclass(frozen=True)
class Configuration:
    endpoint: str = OLLAMA_HOST
    model: str = MODEL
    interval_min: int = 5
    paused: bool = True  # user opts in

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ChangeListener = Callable[[Configuration], None]


def clamp_interval(value: Any, default: int = 5) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        v = default
    return max(MIN_INTERVAL_MIN, min(MAX_INTERVAL_MIN, v))


def normalize_endpoint(value: Optional[str]) -> str:
    s = (value or "").strip() or OLLAMA_HOST
    return s.rstrip("/")


class SettingsStore:
    """
    Process-wide configuration persisted as JSON.
    - get(): defaults merged with stored overrides
    - set(patch): merge, persist, notify listeners (the scheduler re-arms here)
    Values are stored as given; sanitizing is the caller's job.
    """

    def __init__(self, path: Optional[str] = SETTINGS_PATH):
        self.path = path
        self._lock = asyncio.Lock()
        self._listeners: List[ChangeListener] = []
        self._current: Optional[Configuration] = None

    def on_change(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def get(self) -> Configuration:
        async with self._lock:
            if self._current is None:
                self._current = self._load()
            return self._current

    async def set(self, patch: Optional[Dict[str, Any]] = None) -> Configuration:
        async with self._lock:
            prev = self._current if self._current is not None else self._load()
            known = {f.name for f in fields(Configuration)}
            updates = {k: v for k, v in (patch or {}).items() if k in known}
            cfg = replace(prev, **updates)
            self._save(cfg)
            self._current = cfg
        LOGGER.debug("settings updated: %s", updates)
        for listener in list(self._listeners):
            listener(cfg)
        return cfg

    # -------- persistence --------
    def _load(self) -> Configuration:
        if not self.path or not os.path.exists(self.path):
            return Configuration()
        try:
            with open(self.path, "rb") as f:
                stored = orjson.loads(f.read())
        except (OSError, orjson.JSONDecodeError) as e:
            LOGGER.warning("could not read settings from %s: %s", self.path, e)
            return Configuration()
        if not isinstance(stored, dict):
            return Configuration()
        known = {f.name for f in fields(Configuration)}
        return replace(Configuration(), **{k: v for k, v in stored.items() if k in known})

    def _save(self, cfg: Configuration) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with open(self.path, "wb") as f:
            f.write(orjson.dumps(cfg.to_dict(), option=orjson.OPT_INDENT_2))
