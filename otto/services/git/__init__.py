"""Git operations: checkout, commit, rebase and push."""

from otto.services.git._run import GitRunnerError
from otto.services.git.branches import discard_local_changes, fetch_and_checkout_branch, fetch_branch
from otto.services.git.commits import NoChangesError, commit_all_and_push, has_changes
from otto.services.git.rebase import (
    abort_rebase,
    branch_summary,
    conflicted_files,
    force_push,
    rebase_in_progress,
    rebase_onto,
)

__all__ = [
    "GitRunnerError",
    "NoChangesError",
    "abort_rebase",
    "branch_summary",
    "commit_all_and_push",
    "conflicted_files",
    "discard_local_changes",
    "fetch_and_checkout_branch",
    "fetch_branch",
    "force_push",
    "has_changes",
    "rebase_in_progress",
    "rebase_onto",
]
