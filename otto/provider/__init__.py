"""PR providers: shared contract, models, registry and log distillation."""

from otto.provider.base import (
    AuthExpiredError,
    BackendNotFoundError,
    MalformedResponseError,
    NotFoundError,
    OperationCancelledError,
    PRBackend,
    ProviderError,
    RateLimitError,
    UnsupportedOperationError,
)
from otto.provider.models import (
    BuildInfo,
    Comment,
    CommentResolution,
    InlineComment,
    PipelineState,
    PipelineStatus,
    PRInfo,
    WorkflowAction,
)
from otto.provider.registry import Registry, build_registry

__all__ = [
    "AuthExpiredError",
    "BackendNotFoundError",
    "BuildInfo",
    "Comment",
    "CommentResolution",
    "InlineComment",
    "MalformedResponseError",
    "NotFoundError",
    "OperationCancelledError",
    "PRBackend",
    "PRInfo",
    "PipelineState",
    "PipelineStatus",
    "ProviderError",
    "RateLimitError",
    "Registry",
    "UnsupportedOperationError",
    "WorkflowAction",
    "build_registry",
]
