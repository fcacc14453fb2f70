"""LLM capability used by the fixer and the comment evaluator."""

from otto.llm.base import LLMClient, LLMError, PromptResponse, SessionInfo
from otto.llm.cursor_cli import CursorCLIClient, make_cursor_cli_client
from otto.llm.json_repair import JSONDecodeFailure, parse_json_response, strip_markdown_json

__all__ = [
    "CursorCLIClient",
    "JSONDecodeFailure",
    "LLMClient",
    "LLMError",
    "PromptResponse",
    "SessionInfo",
    "make_cursor_cli_client",
    "parse_json_response",
    "strip_markdown_json",
]
