import inspect
from typing import Any, Dict, List, Optional

import pytest

from extractor import Scope, TextSample
from settings import SettingsStore
from views import DocumentView


class FakeModel:
    """Stands in for OllamaClient: scripted stream fragments, recorded calls."""

    def __init__(self, fragments: Optional[List[str]] = None, summary: str = "A digest.", error: Optional[Exception] = None):
        self.fragments = list(fragments or ["Looks good."])
        self.summary = summary
        self.error = error
        self.chat_calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []

    async def chat(self, system, user, max_tokens, num_ctx):
        self.chat_calls.append({"system": system, "user": user, "max_tokens": max_tokens, "num_ctx": num_ctx})
        if self.error:
            raise self.error
        return self.summary

    async def chat_stream(self, system, user, max_tokens, num_ctx, on_delta=None):
        self.stream_calls.append({"system": system, "user": user, "max_tokens": max_tokens, "num_ctx": num_ctx})
        if self.error:
            raise self.error
        for frag in self.fragments:
            if on_delta is not None:
                res = on_delta(frag)
                if inspect.isawaitable(res):
                    await res
        return "".join(self.fragments)


class RecordingView(DocumentView):
    def __init__(self, samples: Optional[Dict[Scope, TextSample]] = None, key: str = "doc1"):
        self.key = key
        self.samples = samples or {}
        self.requests: List[Scope] = []
        self.events: List[tuple] = []

    async def request_extraction(self, scope):
        self.requests.append(Scope(scope))
        return self.samples.get(Scope(scope), TextSample())

    async def status_update(self, text):
        self.events.append(("status", text))

    async def result_delta(self, text):
        self.events.append(("delta", text))

    async def final_result(self, text, timestamp_ms):
        self.events.append(("final", text))


@pytest.fixture
def settings_store(tmp_path) -> SettingsStore:
    return SettingsStore(str(tmp_path / "settings.json"))


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()
