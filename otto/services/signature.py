"""Marker appended to every comment Otto posts, so triage skips its own replies."""

OTTO_MARKER = "<!-- otto -->"


def sign(body: str) -> str:
    return f"{body}\n\n{OTTO_MARKER}"


def is_own_comment(body: str) -> bool:
    return OTTO_MARKER in (body or "")
