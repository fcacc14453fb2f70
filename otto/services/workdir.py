"""Local checkouts for PR branches.

Repositories are mapped by name to a local clone in config (``repos:``); the
clone is fetched and switched to the PR branch before the agent runs in it.
"""

import logging
from pathlib import Path
from typing import Dict

from otto.services.git import discard_local_changes, fetch_and_checkout_branch


class WorkdirError(Exception):
    """No usable working directory for the repository."""


class WorkdirResolver:
    """Repository name -> checked-out working directory."""

    def __init__(self, repos: Dict[str, str], log: logging.Logger | None = None) -> None:
        self._repos = {name.lower(): path for name, path in repos.items()}
        self._log = log or logging.getLogger("otto.services.workdir")

    def path_for(self, repo: str) -> Path:
        path = self._repos.get(repo.lower()) or self._repos.get(repo.rsplit("/", 1)[-1].lower())
        if not path:
            raise WorkdirError(f"repository {repo!r} is not mapped to a local checkout (config: repos)")
        p = Path(path).expanduser()
        if not (p / ".git").exists():
            raise WorkdirError(f"{p} is not a git checkout")
        return p

    def prepare(self, repo: str, branch: str) -> Path:
        """Return the checkout for repo with branch checked out at the remote tip.

        Edits left over from an earlier agent run are discarded first.
        """
        path = self.path_for(repo)
        self.discard(path)
        fetch_and_checkout_branch(branch, repo_dir=path, log=self._log)
        return path

    def discard(self, path: Path) -> None:
        """Throw away uncommitted changes in a checkout."""
        discard_local_changes(path, log=self._log)
