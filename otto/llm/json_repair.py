"""Decode LLM output as JSON: strict parse, then cleanup, then corrective prompts."""

import json
import logging
import re
from typing import Any, Type, TypeVar

from pydantic import BaseModel, ValidationError

from otto.llm.base import LLMClient, LLMError

MAX_REPAIR_PROMPTS = 2

CORRECTIVE_PROMPT = (
    "Your previous response was not valid JSON. Please return ONLY the JSON object, "
    "with no markdown code fences, no explanation and no text before or after it."
)

FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)

T = TypeVar("T", bound=BaseModel)

LOG = logging.getLogger("otto.llm.json_repair")


class JSONDecodeFailure(Exception):
    """Output stayed undecodable after cleanup and every corrective prompt."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(message)
        self.raw = raw


def strip_markdown_json(text: str) -> str:
    """Remove code fences and any prose around the outermost JSON object or array."""
    text = text.strip()
    m = FENCE_RE.search(text)
    if m:
        return m.group(1).strip()
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return text
    start = min(starts)
    end = text.rfind("}" if text[start] == "{" else "]")
    if end <= start:
        return text
    return text[start : end + 1]


def _decode(text: str, model: Type[T] | None) -> Any:
    """Strict decode; raises ValueError (json or validation) on failure."""
    data = json.loads(text)
    if model is not None:
        return model.model_validate(data)
    return data


def _try_decode(text: str, model: Type[T] | None) -> Any:
    for candidate in (text, strip_markdown_json(text)):
        try:
            return _decode(candidate, model)
        except (ValueError, ValidationError):
            continue
    raise ValueError("not valid JSON")


def parse_json_response(
    raw: str,
    model: Type[T] | None = None,
    client: LLMClient | None = None,
    session_id: str | None = None,
    max_retries: int = MAX_REPAIR_PROMPTS,
) -> Any:
    """Return the decoded payload (validated into model when given).

    With a live session, up to max_retries corrective prompts are sent before
    giving up with JSONDecodeFailure.
    """
    try:
        return _try_decode(raw, model)
    except ValueError:
        pass
    if client is None or not session_id:
        raise JSONDecodeFailure("failed to parse JSON response", raw)

    last = raw
    for attempt in range(1, max_retries + 1):
        LOG.info("LLM output is not valid JSON, corrective prompt %s/%s", attempt, max_retries)
        try:
            last = client.send_prompt(session_id, CORRECTIVE_PROMPT).content
        except LLMError as e:
            raise JSONDecodeFailure(f"failed to parse JSON response: corrective prompt failed: {e}", last) from e
        try:
            return _try_decode(last, model)
        except ValueError:
            continue
    raise JSONDecodeFailure(f"failed to parse JSON response after {max_retries} corrective prompts", raw)
