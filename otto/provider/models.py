"""Provider-neutral models shared by every PR backend."""

from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class PRInfo(BaseModel):
    """Snapshot of a pull request as fetched from a provider. Never persisted."""

    id: str = Field(..., description="PR id (ADO pullRequestId / GitHub number)")
    title: str = Field(default="", description="PR title")
    description: str = Field(default="", description="PR description / body")
    status: str = Field(default="active", description="active, completed, abandoned")
    merge_status: str = Field(default="", description="Provider merge status; \"conflicts\" on both backends")
    source_branch: str = Field(default="", description="Source branch, refs/heads/ stripped")
    target_branch: str = Field(default="", description="Target branch, refs/heads/ stripped")
    author: str = Field(default="", description="Author display name or login")
    url: str = Field(default="", description="Web URL of the PR")
    repo_id: str = Field(default="", description="ADO repository name / GitHub repo name")
    project: str = Field(default="", description="ADO project")
    organization: str = Field(default="", description="ADO organization / GitHub owner")
    head_sha: str = Field(default="", description="Head commit SHA (GitHub)")


class Comment(BaseModel):
    """A single PR comment, flattened across providers."""

    id: str = Field(..., description="Comment id")
    thread_id: str = Field(..., description="Thread (resolution unit) id")
    author: str = Field(default="", description="Author display name or login")
    body: str = Field(default="", description="Comment text")
    file_path: str = Field(default="", description="File path for inline comments")
    line: int = Field(default=0, description="Line for inline comments, 0 if none")
    is_resolved: bool = Field(default=False, description="Thread already resolved")
    comment_type: str = Field(default="text", description="text, system, review, issue")
    created_at: datetime | None = Field(default=None, description="Creation time")

    @property
    def seen_key(self) -> str:
        """Key stored in seen_comment_ids ("{thread}:{comment}")."""
        return f"{self.thread_id}:{self.id}"


class InlineComment(BaseModel):
    """Outbound comment anchored to a file line."""

    file_path: str
    line: int
    body: str
    side: str = Field(default="right", description="right (new code) or left (deleted code)")


class CommentResolution(str, Enum):
    FIXED = "fixed"
    WONT_FIX = "wontFix"
    BY_DESIGN = "byDesign"
    UNKNOWN = "unknown"


class WorkflowAction(str, Enum):
    SUBMIT = "submit"
    AUTO_COMPLETE = "autoComplete"
    CREATE_WORK_ITEM = "createWorkItem"
    ADDRESS_BOT = "addressBot"


class PipelineState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    UNKNOWN = "unknown"


class BuildInfo(BaseModel):
    id: str
    name: str = ""
    status: str = ""
    result: str = ""
    url: str = ""


class PipelineStatus(BaseModel):
    state: PipelineState = PipelineState.UNKNOWN
    builds: List[BuildInfo] = Field(default_factory=list)
