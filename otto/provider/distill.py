"""CI log distillation: strip ANSI codes and keep only the context around errors.

Both Azure Pipelines and GitHub Actions mark failures with ``##[error]``.
"""

import re
from typing import List

ANSI_RE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

ERROR_MARKER = "##[error]"
CONTEXT_LINES = 5
TAIL_LINES = 50


def strip_ansi(text: str) -> str:
    """Remove ANSI CSI escape sequences."""
    return ANSI_RE.sub("", text)


def extract_error_context(log: str, context: int = CONTEXT_LINES, tail: int = TAIL_LINES) -> str:
    """Keep +-context lines around every error marker; gaps are shown as "...".

    Without any marker the last tail lines are returned (whole log if shorter).
    """
    lines = log.split("\n")
    keep: List[bool] = [False] * len(lines)
    found = False
    for i, line in enumerate(lines):
        if ERROR_MARKER not in line:
            continue
        found = True
        for j in range(max(0, i - context), min(len(lines), i + context + 1)):
            keep[j] = True

    if not found:
        return "\n".join(lines[-tail:])

    out: List[str] = []
    for i, line in enumerate(lines):
        if not keep[i]:
            continue
        if i > 0 and not keep[i - 1]:
            out.append("...")
        out.append(line)
    return "\n".join(out)


def distill(raw: str) -> str:
    """strip_ansi + extract_error_context."""
    return extract_error_context(strip_ansi(raw))
