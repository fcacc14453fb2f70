"""LLM capability contract: sessions scoped to a working directory, text prompts."""

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field


class LLMError(Exception):
    """Raised when the LLM backend fails (process error, timeout, abort)."""


class SessionInfo(BaseModel):
    id: str
    title: str = ""
    workdir: str = Field(default=".", description="Directory the agent may read and edit")


class PromptResponse(BaseModel):
    content: str = ""


class LLMClient(ABC):
    """Interface for the coding agent used by the fixer and comment evaluator."""

    @abstractmethod
    def create_session(self, title: str, workdir: str) -> SessionInfo:
        ...

    @abstractmethod
    def send_prompt(self, session_id: str, prompt: str) -> PromptResponse:
        ...

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    def abort_session(self, session_id: str) -> None:
        """Stop an in-flight prompt of the session."""
        ...
