import asyncio
import hashlib
import itertools
import logging
from typing import Any, Dict, Optional

from extractor import PageSnapshot, Scope, TextSample, extract

LOGGER = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 256


def doc_key_for(url: str) -> str:
    """Stable document identity derived from the page URL (query and fragment ignored)."""
    base = (url or "").split("#", 1)[0].split("?", 1)[0].rstrip("/")
    h = hashlib.sha1()
    h.update(base.encode("utf-8"))
    return h.hexdigest()[:12]


class DocumentView:
    """What the engine needs from a document: text on request, and somewhere to report."""

    key: str = ""

    async def request_extraction(self, scope: Scope) -> TextSample:
        raise NotImplementedError

    async def status_update(self, text: str) -> None:
        raise NotImplementedError

    async def result_delta(self, text: str) -> None:
        raise NotImplementedError

    async def final_result(self, text: str, timestamp_ms: int) -> None:
        raise NotImplementedError


class SnapshotView(DocumentView):
    """
    A view backed by the last snapshot the browser posted.
    Outbound events queue up until the page drains them; once the view is
    closed deliveries are dropped.
    """

    def __init__(self, snapshot: PageSnapshot):
        self.key = doc_key_for(snapshot.url)
        self.snapshot = snapshot
        self.closed = False
        self.events: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

    def update(self, snapshot: PageSnapshot) -> None:
        self.snapshot = snapshot

    def close(self) -> None:
        self.closed = True

    async def request_extraction(self, scope: Scope) -> TextSample:
        return extract(self.snapshot, scope)

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.closed:
            LOGGER.debug("view %s closed; dropping %s event", self.key, event.get("type"))
            return
        if self.events.full():
            # oldest first; a stalled page should not block the engine
            self.events.get_nowait()
        self.events.put_nowait(event)

    async def status_update(self, text: str) -> None:
        self._emit({"type": "status", "text": text})

    async def result_delta(self, text: str) -> None:
        self._emit({"type": "delta", "delta": text})

    async def final_result(self, text: str, timestamp_ms: int) -> None:
        self._emit({"type": "final", "text": text, "updated_at": timestamp_ms})


class ViewRegistry:
    """Open documents by key; the most recently touched one is active."""

    def __init__(self):
        self._views: Dict[str, SnapshotView] = {}
        self._touched: Dict[str, int] = {}
        self._clock = itertools.count()

    def post(self, snapshot: PageSnapshot) -> SnapshotView:
        key = doc_key_for(snapshot.url)
        view = self._views.get(key)
        if view is None or view.closed:
            view = SnapshotView(snapshot)
            self._views[key] = view
        else:
            view.update(snapshot)
        self._touched[key] = next(self._clock)
        return view

    def get(self, key: str) -> Optional[SnapshotView]:
        view = self._views.get(key)
        if view is None or view.closed:
            return None
        return view

    def remove(self, key: str) -> bool:
        view = self._views.pop(key, None)
        self._touched.pop(key, None)
        if view is None:
            return False
        view.close()
        return True

    def active(self) -> Optional[SnapshotView]:
        live = [k for k, v in self._views.items() if not v.closed]
        if not live:
            return None
        return self._views[max(live, key=lambda k: self._touched.get(k, -1))]
