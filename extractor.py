"""
Text extraction from an editor page snapshot.

The browser posts the editor's rendered HTML plus what it knows about the
selection and scroll viewport; everything here works on that snapshot.

  selection  -> platform selection, editor selection, contenteditable active range
  visible    -> blocks intersecting the viewport, padded downward only
  whole      -> every editor block, else the page's rendered text

Results are newline-normalized and cut to MAX_CHARS.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Tag

MAX_CHARS = 1500
VISIBLE_PAD_BLOCKS = 8
FALLBACK_WINDOW_BLOCKS = 20


class Scope(str, Enum):
    SELECTION = "selection"
    VISIBLE = "visible"
    WHOLE = "whole"


@dataclass(frozen=True)
class Viewport:
    top: float
    height: float

    @property
    def bottom(self) -> float:
        return self.top + self.height


@dataclass(frozen=True)
class PageSnapshot:
    url: str
    html: str = ""
    selection: str = ""
    editor_selection: str = ""
    viewport: Optional[Viewport] = None


@dataclass(frozen=True)
class TextSample:
    selection_text: str = ""
    body_text: str = ""
    was_truncated: bool = False

    @property
    def empty(self) -> bool:
        return not self.body_text.strip()


@dataclass
class _Block:
    text: str
    top: Optional[float] = None
    height: Optional[float] = None


SelectionProbe = Callable[[PageSnapshot, BeautifulSoup], Optional[str]]
SurfaceProbe = Callable[[BeautifulSoup], Optional[List[Tag]]]


# -------- selection probes (first non-empty wins) --------
def _platform_selection(snap: PageSnapshot, soup: BeautifulSoup) -> Optional[str]:
    return (snap.selection or "").strip() or None


def _editor_selection(snap: PageSnapshot, soup: BeautifulSoup) -> Optional[str]:
    return (snap.editor_selection or "").strip() or None


def _editable_active_range(snap: PageSnapshot, soup: BeautifulSoup) -> Optional[str]:
    for region in soup.select("[contenteditable]"):
        if region.get("contenteditable") == "false":
            continue
        marked = region.select("[data-active-range]")
        text = "\n".join(el.get_text() for el in marked).strip()
        if text:
            return text
    return None


SELECTION_PROBES: List[SelectionProbe] = [
    _platform_selection,
    _editor_selection,
    _editable_active_range,
]


# -------- editor surface probes --------
def _codemirror_blocks(soup: BeautifulSoup) -> Optional[List[Tag]]:
    root = soup.select_one(".cm-content")
    if root is None:
        return None
    return root.select(".cm-line, .cm-lineWrapping")


def _ace_blocks(soup: BeautifulSoup) -> Optional[List[Tag]]:
    root = soup.select_one(".ace_content")
    if root is None:
        return None
    return root.select(".ace_line")


SURFACE_PROBES: List[SurfaceProbe] = [_codemirror_blocks, _ace_blocks]

_STYLE_PX = re.compile(r"(?<![-\w])(top|height)\s*:\s*(-?[\d.]+)px", re.IGNORECASE)


def _num(v: Optional[str]) -> Optional[float]:
    if v in (None, ""):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _geometry(el: Tag) -> Tuple[Optional[float], Optional[float]]:
    top = _num(el.get("data-top"))
    height = _num(el.get("data-height"))
    style = el.get("style") or ""
    for name, val in _STYLE_PX.findall(style):
        if name.lower() == "top" and top is None:
            top = float(val)
        elif name.lower() == "height" and height is None:
            height = float(val)
    return top, height


def _find_blocks(soup: BeautifulSoup) -> Optional[List[_Block]]:
    for probe in SURFACE_PROBES:
        found = probe(soup)
        if found is None:
            continue
        blocks: List[_Block] = []
        for el in found:
            top, height = _geometry(el)
            blocks.append(_Block(text=el.get_text(), top=top, height=height))
        return blocks
    return None


def _join(blocks: Sequence[_Block]) -> str:
    return "\n".join(b.text for b in blocks)


def normalize_newlines(text: str) -> str:
    text = (text or "").replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def truncate(text: str, limit: int = MAX_CHARS) -> Tuple[str, bool]:
    if len(text) > limit:
        return text[:limit], True
    return text, False


# -------- scopes --------
def _visible_slice(blocks: List[_Block], viewport: Optional[Viewport]) -> List[_Block]:
    if viewport is None:
        return []
    first = last = None
    for i, b in enumerate(blocks):
        if b.top is None:
            continue
        bottom = b.top + (b.height or 0.0)
        if bottom > viewport.top and b.top < viewport.bottom:
            if first is None:
                first = i
            last = i
    if first is None:
        return []
    # pad downward only; text above the viewport has already been read
    return blocks[first: min(len(blocks), last + 1 + VISIBLE_PAD_BLOCKS)]


def _top_window(blocks: List[_Block], viewport: Optional[Viewport]) -> List[_Block]:
    start = 0
    if viewport is not None:
        for i, b in enumerate(blocks):
            if b.top is not None and b.top + (b.height or 0.0) > viewport.top:
                start = i
                break
    return blocks[start: start + FALLBACK_WINDOW_BLOCKS]


def _page_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    body = soup.body or soup
    return body.get_text("\n")


def _finish(selection: str, body: str) -> TextSample:
    body, cut = truncate(normalize_newlines(body))
    selection, _ = truncate(normalize_newlines(selection))
    return TextSample(selection_text=selection, body_text=body, was_truncated=cut)


def extract(snapshot: PageSnapshot, scope: Scope | str) -> TextSample:
    """Best-effort text for the requested scope of a page snapshot."""
    scope = Scope(scope)
    soup = BeautifulSoup(snapshot.html or "", "html.parser")

    if scope is Scope.SELECTION:
        for probe in SELECTION_PROBES:
            found = probe(snapshot, soup)
            if found:
                return _finish(found, found)
        # explicit "no selection"; never the whole document
        return TextSample()

    blocks = _find_blocks(soup)
    if scope is Scope.VISIBLE:
        if not blocks:
            return TextSample()
        text = _join(_visible_slice(blocks, snapshot.viewport))
        if not text.strip():
            text = _join(_top_window(blocks, snapshot.viewport))
        return _finish("", text)

    if blocks:
        return _finish("", _join(blocks))
    return _finish("", _page_text(soup))
