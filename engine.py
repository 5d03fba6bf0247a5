"""
Q&A and coaching flows.

Both flows: extract a snippet from the document view, enrich it with the best
cached summary, schedule a cache update, stream the model call, repair the
output. Results use the {"ok": ..., "error": ...} shape the HTTP layer returns.
"""

import time
import logging
from typing import Any, Dict, Optional

from extractor import Scope, TextSample
from ollama_client import DeltaCallback, OllamaClient, TransportError
from prompts import COACH_BUDGET, QA_BUDGET, SYSTEM_PROMPT, coach_prompt, qa_prompt
from repair import repair
from summary_cache import SummaryCache
from views import DocumentView

LOGGER = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _ok(payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"ok": True}
    if payload:
        data.update(payload)
    return data


def _err(msg: str, **extra) -> Dict[str, Any]:
    out = {"ok": False, "error": str(msg)}
    if extra:
        out.update(extra)
    return out


class Engine:
    def __init__(self, model: OllamaClient, cache: SummaryCache):
        self.model = model
        self.cache = cache

    def _digest(self, doc_key: str, text: str) -> Optional[str]:
        try:
            best = self.cache.get_best(doc_key, text)
        except Exception as e:
            LOGGER.warning("summary lookup failed for %s: %s", doc_key, e)
            return None
        return best.digest if best else None

    async def ask(
        self,
        view: DocumentView,
        question: str,
        scope: Scope = Scope.SELECTION,
        on_delta: Optional[DeltaCallback] = None,
    ) -> Dict[str, Any]:
        question = (question or "").strip()
        if not question:
            return _err("Enter a question")
        sample = await view.request_extraction(Scope(scope))
        digest = self._digest(view.key, f"{question}\n{sample.body_text}")
        if not sample.empty:
            self.cache.schedule_update(view.key, sample.body_text)

        started = time.monotonic()
        max_tokens, num_ctx = QA_BUDGET
        try:
            raw = await self.model.chat_stream(
                SYSTEM_PROMPT, qa_prompt(sample.body_text, question, digest), max_tokens, num_ctx, on_delta
            )
        except TransportError as e:
            LOGGER.info("ask failed for %s: %s", view.key, e)
            return _err(str(e) or "Model error")
        LOGGER.debug("ask on %s finished in %.2fs", view.key, time.monotonic() - started)
        return _ok({
            "text": repair(raw) or "(no answer)",
            "updated_at": _now_ms(),
            "empty": sample.empty,
            "truncated": sample.was_truncated,
        })

    async def _coach(self, view: DocumentView, sample: TextSample, on_delta: Optional[DeltaCallback]) -> str:
        digest = self._digest(view.key, sample.body_text)
        self.cache.schedule_update(view.key, sample.body_text)
        max_tokens, num_ctx = COACH_BUDGET
        raw = await self.model.chat_stream(
            SYSTEM_PROMPT, coach_prompt(sample.body_text, digest), max_tokens, num_ctx, on_delta
        )
        return repair(raw)

    async def run_coaching_pass(
        self,
        view: DocumentView,
        scope: Scope = Scope.VISIBLE,
        on_delta: Optional[DeltaCallback] = None,
    ) -> Dict[str, Any]:
        sample = await view.request_extraction(Scope(scope))
        if sample.empty:
            return _ok({"text": "", "empty": True})
        try:
            text = await self._coach(view, sample, on_delta)
        except TransportError as e:
            LOGGER.info("coaching pass failed for %s: %s", view.key, e)
            return _err(str(e) or "Model error")
        return _ok({
            "text": text or "(no suggestions)",
            "updated_at": _now_ms(),
            "empty": False,
            "truncated": sample.was_truncated,
        })

    async def coach_view(self, view: DocumentView) -> Optional[str]:
        """
        Background flow: visible text, else the whole document; stream deltas to
        the view and push the repaired result. Returns None when there was
        nothing to coach. Model errors propagate to the caller.
        """
        sample = await view.request_extraction(Scope.VISIBLE)
        if sample.empty:
            sample = await view.request_extraction(Scope.WHOLE)
        if sample.empty:
            return None
        await view.status_update("Coaching…")
        text = await self._coach(view, sample, view.result_delta)
        await view.final_result(text, _now_ms())
        return text
