from typing import Optional

# (num_predict, num_ctx)
QA_BUDGET = (320, 2048)
COACH_BUDGET = (480, 3072)
SUMMARY_BUDGET = (96, 1536)

SYSTEM_PROMPT = (
    "You are WriteTank, a concise LaTeX writing assistant for academic papers. "
    "Answer directly with the final result only. Never show reasoning. "
    "Write valid LaTeX and close every environment you open."
)

SUMMARY_SYSTEM = (
    "You summarize excerpts of a LaTeX paper. Reply with 2-3 plain sentences "
    "naming the topic, the claims and any open gaps. No LaTeX, no preamble."
)


def qa_prompt(context: str, question: str, digest: Optional[str] = None) -> str:
    parts = [
        "Answer directly and only with the final result (no reasoning).",
        "Respond in LaTeX. Keep to at most 10 lines.",
        "Prefer \\begin{itemize}...\\end{itemize} or \\paragraph{} where suitable.",
        "Use \\cite{TODO} and \\ref{TODO} placeholders if needed.",
        "",
    ]
    if digest:
        parts += ["Earlier in this document:", digest.strip(), ""]
    parts += [
        "Context:",
        context.strip() or "(no document text available)",
        "",
        "Question:",
        question.strip(),
        "",
        "Answer (LaTeX only):",
    ]
    return "\n".join(parts)


def coach_prompt(snippet: str, digest: Optional[str] = None) -> str:
    parts = [
        "No reasoning. Return these exact blocks in LaTeX:",
        "",
        "1) \\paragraph{Structure} One sentence describing the recommended paragraph plan.",
        "2) \\begin{itemize} 3-6 concrete details to add \\end{itemize}",
        "3) A polished paragraph (at most 12 lines).",
        "",
        "Flag missing \\label/\\ref/\\cite with TODO placeholders.",
        "",
    ]
    if digest:
        parts += ["Earlier in this document:", digest.strip(), ""]
    parts += ["Snippet:", snippet.strip()]
    return "\n".join(parts)


def summary_prompt(text: str) -> str:
    return f"Excerpt:\n{text.strip()}\n\nSummary:"
