"""Rebase the PR branch onto its target and push the rewritten history."""

import logging
from pathlib import Path
from typing import List, Tuple

from otto.services.git._run import GitRunnerError, _run_git
from otto.services.git.commits import _push_refspec


def branch_summary(target: str, repo_dir: Path, log: logging.Logger | None = None) -> Tuple[str, str]:
    """(commit list, diff stat) of the branch relative to origin/target; empty on failure."""
    cwd = Path(repo_dir)
    try:
        commits = _run_git(["log", "--oneline", f"origin/{target}..HEAD"], cwd=cwd, log=log)
        stat = _run_git(["diff", "--stat", f"origin/{target}...HEAD"], cwd=cwd, log=log)
    except GitRunnerError as e:
        if log:
            log.warning("Could not summarize branch against %s: %s", target, e)
        return "", ""
    return commits.strip(), stat.strip()


def rebase_onto(
    target: str,
    bot_name: str,
    bot_email: str,
    repo_dir: Path,
    log: logging.Logger | None = None,
) -> bool:
    """Rebase HEAD onto origin/target. False when the rebase stopped on conflicts."""
    cwd = Path(repo_dir)
    try:
        _run_git(
            ["-c", f"user.name={bot_name}", "-c", f"user.email={bot_email}", "rebase", f"origin/{target}"],
            cwd=cwd,
            log=log,
        )
    except GitRunnerError as e:
        if log:
            log.info("Rebase onto origin/%s stopped: %s", target, e)
        return False
    return True


def conflicted_files(repo_dir: Path, log: logging.Logger | None = None) -> List[str]:
    out = _run_git(["diff", "--name-only", "--diff-filter=U"], cwd=Path(repo_dir), log=log)
    return [line for line in out.splitlines() if line.strip()]


def rebase_in_progress(repo_dir: Path) -> bool:
    try:
        _run_git(["rev-parse", "--verify", "--quiet", "REBASE_HEAD"], cwd=Path(repo_dir))
    except GitRunnerError:
        return False
    return True


def abort_rebase(repo_dir: Path, log: logging.Logger | None = None) -> None:
    try:
        _run_git(["rebase", "--abort"], cwd=Path(repo_dir), log=log)
    except GitRunnerError as e:
        if log:
            log.debug("rebase --abort: %s", e)


def force_push(branch_name: str, repo_dir: Path, log: logging.Logger | None = None) -> None:
    """Push HEAD over the PR branch unless someone else pushed in the meantime."""
    _run_git(["push", "--force-with-lease", "origin", _push_refspec(branch_name)], cwd=Path(repo_dir), log=log)
    if log:
        log.info("Force-pushed rebased %s", branch_name)
