"""Abstract base for PR backends and the provider error taxonomy."""

import threading
from abc import ABC, abstractmethod
from typing import List

from otto.provider.models import (
    Comment,
    CommentResolution,
    InlineComment,
    PipelineStatus,
    PRInfo,
    WorkflowAction,
)


class ProviderError(Exception):
    """Raised when a provider API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Rate limited and the in-backend retry budget is spent."""


class AuthExpiredError(ProviderError):
    """Credentials expired or rejected; callers stop the current operation."""


class NotFoundError(ProviderError):
    """PR, thread or comment does not exist."""


class UnsupportedOperationError(ProviderError):
    """The backend cannot perform the requested workflow action."""


class MalformedResponseError(ProviderError):
    """Provider returned a body that could not be decoded."""


class BackendNotFoundError(ProviderError):
    """No registered backend matches the URL or name."""


class OperationCancelledError(Exception):
    """Shutdown was requested while waiting."""


def reject_unknown(resolution: CommentResolution) -> CommentResolution:
    """Validate a resolution argument; unknown is never accepted."""
    resolution = CommentResolution(resolution)
    if resolution == CommentResolution.UNKNOWN:
        raise ValueError("comment resolution 'unknown' is not a valid argument")
    return resolution


def wait_or_cancel(cancel: threading.Event | None, seconds: float) -> None:
    """Sleep for seconds, aborting early with OperationCancelledError on shutdown."""
    if cancel is None:
        threading.Event().wait(seconds)
        return
    if cancel.wait(seconds):
        raise OperationCancelledError("operation cancelled during back-off")


class PRBackend(ABC):
    """Interface for PR hosting systems (Azure DevOps, GitHub)."""

    name: str = ""

    @abstractmethod
    def matches_url(self, url: str) -> bool:
        """Return True if url belongs to this provider."""
        ...

    @abstractmethod
    def get_pr(self, id_or_url: str) -> PRInfo:
        """Fetch a PR by bare numeric id (uses backend defaults) or full URL."""
        ...

    @abstractmethod
    def get_pipeline_status(self, pr: PRInfo) -> PipelineStatus:
        """Aggregate CI state for the PR."""
        ...

    @abstractmethod
    def get_comments(self, pr: PRInfo) -> List[Comment]:
        """All comments on the PR, flattened."""
        ...

    @abstractmethod
    def post_comment(self, pr: PRInfo, body: str) -> None:
        """Post a general (non-anchored) comment."""
        ...

    @abstractmethod
    def post_inline_comment(self, pr: PRInfo, comment: InlineComment) -> None:
        """Post a comment anchored to a file line."""
        ...

    @abstractmethod
    def reply_to_comment(self, pr: PRInfo, thread_id: str, body: str) -> None:
        """Reply inside an existing thread."""
        ...

    @abstractmethod
    def resolve_comment(self, pr: PRInfo, thread_id: str, resolution: CommentResolution) -> None:
        """Resolve a thread. Raises ValueError for CommentResolution.UNKNOWN."""
        ...

    @abstractmethod
    def get_build_logs(self, pr: PRInfo, build_id: str) -> str:
        """Return the distilled failure logs of a build."""
        ...

    @abstractmethod
    def run_workflow(self, pr: PRInfo, action: WorkflowAction) -> None:
        """Run a provider workflow; raises UnsupportedOperationError when not available."""
        ...

    def retry_build(self, pr: PRInfo, build_id: str) -> None:
        """Re-queue a failed build. Backends that cannot retry raise UnsupportedOperationError."""
        raise UnsupportedOperationError(f"{self.name} cannot retry builds")
