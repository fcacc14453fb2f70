"""PR document as stored in {store_dir}/{provider}__{id}.md."""

from typing import List

from pydantic import BaseModel, Field, computed_field, field_validator

STATUS_WATCHING = "watching"
STATUS_FIXING = "fixing"
STATUS_GREEN = "green"
STATUS_FAILED = "failed"
STATUS_ABANDONED = "abandoned"
STATUS_MERGED = "merged"

STATUSES = (
    STATUS_WATCHING,
    STATUS_FIXING,
    STATUS_GREEN,
    STATUS_FAILED,
    STATUS_ABANDONED,
    STATUS_MERGED,
)

# Front matter keys in file order
FRONT_MATTER_FIELDS = (
    "id",
    "title",
    "provider",
    "repo",
    "branch",
    "target",
    "status",
    "url",
    "created",
    "last_checked",
    "fix_attempts",
    "max_fix_attempts",
    "seen_comment_ids",
    "pipeline_state",
    "merlinbot_done",
    "feedback_done",
    "has_conflicts",
    "waiting_on",
)

PENDING_PIPELINE_STATES = ("pending", "inProgress", "unknown", "")


class PRDocument(BaseModel):
    """Tracked PR: YAML front matter plus a markdown activity log (body)."""

    id: str = Field(..., description="PR id within the provider")
    provider: str = Field(..., description="Backend name: ado, github")
    title: str = Field(default="", description="PR title")
    repo: str = Field(default="", description="Repository name")
    branch: str = Field(default="", description="Source branch")
    target: str = Field(default="", description="Target branch")
    status: str = Field(default=STATUS_WATCHING, description="watching, fixing, green, failed, abandoned, merged")
    url: str = Field(default="", description="Web URL of the PR")
    created: str = Field(default="", description="ISO timestamp when tracking started")
    last_checked: str = Field(default="", description="ISO timestamp of the last poll")
    fix_attempts: int = Field(default=0, ge=0, description="Fix commits pushed so far")
    max_fix_attempts: int = Field(default=5, ge=1, description="Fix attempts before status becomes failed")
    seen_comment_ids: List[str] = Field(default_factory=list, description="Processed comment keys")
    pipeline_state: str = Field(default="", description="Last observed pipeline state")
    merlinbot_done: bool = Field(default=False, description="Review bot feedback handled")
    feedback_done: bool = Field(default=False, description="No unresolved human review comments")
    has_conflicts: bool = Field(default=False, description="Merge conflicts with the target branch")
    body: str = Field(default="", description="Markdown activity log (append-only)")

    model_config = {"extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("created", "last_checked", mode="before")
    @classmethod
    def _timestamp_to_str(cls, v):
        # Hand-edited files may hold unquoted timestamps that YAML loads as datetime
        return v.isoformat() if hasattr(v, "isoformat") else (v or "")

    @field_validator("seen_comment_ids", mode="before")
    @classmethod
    def _seen_to_str(cls, v):
        return [str(x) for x in v] if isinstance(v, list) else (v or [])

    @property
    def key(self) -> str:
        return f"{self.provider}__{self.id}"

    def mark_seen(self, comment_key: str) -> None:
        if comment_key not in self.seen_comment_ids:
            self.seen_comment_ids.append(comment_key)

    def append_entry(self, entry: str) -> None:
        """Append an activity-log section to the body."""
        head = self.body.rstrip("\n") + "\n\n" if self.body.strip() else ""
        self.body = head + entry.strip("\n") + "\n"

    def front_matter(self) -> dict:
        data = self.model_dump(mode="json")
        return {k: data[k] for k in FRONT_MATTER_FIELDS}

    @computed_field
    @property
    def waiting_on(self) -> str:
        """What blocks the PR, e.g. "feedback, pipelines"; derived on every save."""
        by_status = {
            STATUS_MERGED: "merged",
            STATUS_ABANDONED: "abandoned",
            STATUS_FAILED: "manual intervention",
            STATUS_FIXING: "fix in progress",
        }
        if self.status in by_status:
            return by_status[self.status]
        blockers = []
        if not self.merlinbot_done:
            blockers.append("merlinbot")
        if not self.feedback_done:
            blockers.append("feedback")
        if self.pipeline_state == "failed":
            blockers.append("pipelines (failed)")
        elif self.pipeline_state in PENDING_PIPELINE_STATES:
            blockers.append("pipelines")
        if self.has_conflicts:
            blockers.append("merge conflicts")
        return ", ".join(blockers) or "all clear"
