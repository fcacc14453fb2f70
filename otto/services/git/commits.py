"""Stage, commit with bot identity and push the PR branch."""

import logging
from pathlib import Path

from otto.services.git._run import GitRunnerError, _run_git

SHORT_HASH_LEN = 8


class NoChangesError(GitRunnerError):
    """Working tree is clean; there is nothing to commit."""


def has_changes(repo_dir: Path, log: logging.Logger | None = None) -> bool:
    """True if `git status --porcelain` reports anything."""
    return bool(_run_git(["status", "--porcelain"], cwd=Path(repo_dir), log=log).strip())


def _push_refspec(branch: str) -> str:
    if branch.startswith("refs/heads/"):
        branch = branch[len("refs/heads/") :]
    return f"HEAD:refs/heads/{branch}"


def commit_all_and_push(
    branch_name: str,
    commit_message: str,
    bot_name: str,
    bot_email: str,
    repo_dir: Path,
    log: logging.Logger | None = None,
) -> str:
    """Stage all changes, commit with bot identity and push HEAD to the PR branch.

    Args:
        branch_name: Remote branch to push to (refs/heads/ prefix allowed).
        commit_message: Commit message.
        bot_name: Git user.name for the commit.
        bot_email: Git user.email for the commit.
        repo_dir: Working directory of the PR checkout.
        log: Optional logger.

    Returns:
        The first 8 characters of the new commit hash.

    Raises:
        NoChangesError: Nothing to commit.
        GitRunnerError: Any git failure.
    """
    cwd = Path(repo_dir)
    if not has_changes(cwd, log=log):
        raise NoChangesError("no changes to commit")
    _run_git(["add", "-A"], cwd=cwd, log=log)
    _run_git(
        [
            "-c",
            f"user.name={bot_name}",
            "-c",
            f"user.email={bot_email}",
            "commit",
            "-m",
            commit_message,
        ],
        cwd=cwd,
        log=log,
    )
    commit = _run_git(["rev-parse", "HEAD"], cwd=cwd, log=log).strip()
    _run_git(["push", "origin", _push_refspec(branch_name)], cwd=cwd, log=log)
    if log:
        log.info("Pushed %s to origin/%s", commit[:SHORT_HASH_LEN], branch_name)
    return commit[:SHORT_HASH_LEN]
