"""Bring a local checkout onto the PR branch."""

import logging
from pathlib import Path

from otto.services.git._run import _run_git


def fetch_branch(branch_name: str, repo_dir: Path, log: logging.Logger | None = None) -> None:
    """Update origin/{branch_name} from the remote."""
    _run_git(["fetch", "origin", branch_name], cwd=Path(repo_dir), log=log)


def fetch_and_checkout_branch(
    branch_name: str,
    repo_dir: Path,
    log: logging.Logger | None = None,
) -> None:
    """Fetch the branch from origin, check it out and reset it to the remote tip."""
    cwd = Path(repo_dir)
    fetch_branch(branch_name, cwd, log=log)
    _run_git(["checkout", "-B", branch_name, f"origin/{branch_name}"], cwd=cwd, log=log)
    if log:
        log.info("Checked out branch %s in %s", branch_name, cwd)


def discard_local_changes(repo_dir: Path, log: logging.Logger | None = None) -> None:
    """Drop uncommitted edits and untracked files, aborting a half-done rebase first."""
    cwd = Path(repo_dir)
    if (cwd / ".git" / "rebase-merge").exists() or (cwd / ".git" / "rebase-apply").exists():
        _run_git(["rebase", "--abort"], cwd=cwd, log=log)
    _run_git(["reset", "--hard"], cwd=cwd, log=log)
    _run_git(["clean", "-fd"], cwd=cwd, log=log)
