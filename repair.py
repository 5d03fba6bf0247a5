"""
Post-processing for model output cut short by the token budget.

  1) complete_sentences: drop a trailing partial sentence.
  2) close_environments: append any missing \\end{...} for known LaTeX blocks.

Both passes are deterministic and repair() is idempotent.
"""

from __future__ import annotations

import re
from typing import List

TERMINALS = ".!?"
CLOSERS = "\"')]}’”»"
ENVIRONMENTS = ("itemize", "enumerate", "description", "equation", "align", "quote")
_MARKER = re.compile(r"\\(begin|end)\{(" + "|".join(ENVIRONMENTS) + r")\}")


def complete_sentences(text: str) -> str:
    cut = max(text.rfind(ch) for ch in TERMINALS)
    if cut < 0:
        return text
    end = cut + 1
    while end < len(text) and text[end] in CLOSERS:
        end += 1
    return text[:end]


def missing_closers(text: str) -> List[str]:
    """Closers for unmatched \\begin markers, innermost first."""
    stack: List[str] = []
    for kind, env in _MARKER.findall(text):
        if kind == "begin":
            stack.append(env)
        elif env in stack:
            # drop the most recent open of this environment
            del stack[len(stack) - 1 - stack[::-1].index(env)]
    return [f"\\end{{{env}}}" for env in reversed(stack)]


def close_environments(text: str) -> str:
    closers = missing_closers(text)
    if not closers:
        return text
    return text + "".join("\n" + c for c in closers)


def repair(text: str) -> str:
    return close_environments(complete_sentences(text or ""))
