"""Run git non-interactively in a PR checkout."""

import logging
import os
import subprocess
from pathlib import Path

GIT_TIMEOUT = 120

# Never block the daemon on a credential or editor prompt
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}


class GitRunnerError(Exception):
    """A git command exited non-zero, timed out or git is missing."""


def _run_git(args: list[str], cwd: Path, log: logging.Logger | None = None) -> str:
    """Run ``git *args`` in cwd; returns stdout."""
    if log:
        log.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            env={**os.environ, **_GIT_ENV},
            check=True,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
        )
    except subprocess.CalledProcessError as e:
        err = (e.stderr or e.stdout or "").strip()
        if log:
            log.warning("git %s failed: %s", args[0], err)
        raise GitRunnerError(f"git {' '.join(args)}: {err}") from e
    except subprocess.TimeoutExpired as e:
        raise GitRunnerError(f"git {' '.join(args)}: timed out after {GIT_TIMEOUT}s") from e
    except FileNotFoundError as e:
        raise GitRunnerError("git executable not found") from e
    return result.stdout or ""
