import os
import re
import time
import asyncio
import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from typing import List, Optional, Set

from ollama_client import OllamaClient
from prompts import SUMMARY_BUDGET, SUMMARY_SYSTEM, summary_prompt
from settings import WRITETANK_HOME

LOGGER = logging.getLogger(__name__)

SUMMARY_DB_PATH = os.path.join(WRITETANK_HOME, "summaries.db")
MAX_ENTRIES = 12
FINGERPRINT_CHARS = 800
_TOKEN_RE = re.compile(r"[a-z0-9]{3,}")


def fingerprint(text: str) -> str:
    h = hashlib.sha1()
    h.update((text or "")[:FINGERPRINT_CHARS].encode("utf-8"))
    return h.hexdigest()[:16]


def tokenize(text: str) -> Set[str]:
    return set(_TOKEN_RE.findall((text or "").lower()))


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SummaryEntry:
    key: str
    digest: str
    updated_at_ms: int


class SummaryCache:
    """
    Per-document digests of previously seen text, keyed by a fingerprint of the
    first 800 characters. Entries are write-once; each document keeps the 12
    most recently written.
    """

    def __init__(self, model: OllamaClient, db_path: str = SUMMARY_DB_PATH, max_entries: int = MAX_ENTRIES):
        self.model = model
        self.db_path = db_path
        self.max_entries = max_entries
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._pending: Set[asyncio.Task] = set()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS summaries (
                  doc_key TEXT NOT NULL,
                  key TEXT NOT NULL,
                  digest TEXT NOT NULL,
                  updated_at_ms INTEGER NOT NULL,
                  PRIMARY KEY (doc_key, key)
                )
                """
            )

    def close(self) -> None:
        self._conn.close()

    # -------- reads --------
    def entries(self, doc_key: str) -> List[SummaryEntry]:
        rows = self._conn.execute(
            "SELECT key, digest, updated_at_ms FROM summaries WHERE doc_key=? ORDER BY updated_at_ms DESC",
            (doc_key,),
        ).fetchall()
        return [SummaryEntry(r["key"], r["digest"], int(r["updated_at_ms"])) for r in rows]

    def has(self, doc_key: str, key: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM summaries WHERE doc_key=? AND key=?", (doc_key, key)
        ).fetchone()
        return row is not None

    def get_best(self, doc_key: str, text: str) -> Optional[SummaryEntry]:
        entries = self.entries(doc_key)
        if not entries:
            return None
        wanted = tokenize(text)
        if not wanted:
            return entries[0]
        best: Optional[SummaryEntry] = None
        best_score = -1
        for e in entries:
            score = len(wanted & tokenize(e.digest))
            if score > best_score or (score == best_score and best is not None and e.updated_at_ms > best.updated_at_ms):
                best, best_score = e, score
        return best

    # -------- writes --------
    def put(self, doc_key: str, key: str, digest: str, updated_at_ms: Optional[int] = None) -> bool:
        ts = _now_ms() if updated_at_ms is None else int(updated_at_ms)
        with self._conn:
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO summaries(doc_key, key, digest, updated_at_ms) VALUES(?,?,?,?)",
                (doc_key, key, digest, ts),
            )
            self._conn.execute(
                """
                DELETE FROM summaries WHERE doc_key=? AND key NOT IN (
                  SELECT key FROM summaries WHERE doc_key=?
                  ORDER BY updated_at_ms DESC LIMIT ?
                )
                """,
                (doc_key, doc_key, self.max_entries),
            )
        return cur.rowcount > 0

    async def consider_update(self, doc_key: str, text: str) -> None:
        """Summarize text once per fingerprint. Never raises."""
        try:
            if not (text or "").strip():
                return
            key = fingerprint(text)
            if self.has(doc_key, key):
                return
            max_tokens, num_ctx = SUMMARY_BUDGET
            digest = await self.model.chat(SUMMARY_SYSTEM, summary_prompt(text), max_tokens, num_ctx)
            digest = (digest or "").strip()
            if not digest:
                return
            if self.put(doc_key, key, digest):
                LOGGER.debug("cached summary %s for %s", key, doc_key)
        except Exception as e:
            LOGGER.warning("summary cache update failed for %s: %s", doc_key, e)

    def schedule_update(self, doc_key: str, text: str) -> asyncio.Task:
        task = asyncio.create_task(self.consider_update(doc_key, text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def pending(self) -> Set[asyncio.Task]:
        return set(self._pending)
