"""Merge-conflict resolution: rebase the PR branch onto its target.

A clean rebase is pushed as is. When the rebase stops on conflicts the agent
resolves them in the checkout and continues the rebase itself; the result is
pushed with --force-with-lease. Every failure path aborts the rebase.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from otto.llm import LLMClient
from otto.provider import PRInfo
from otto.services.git import (
    abort_rebase,
    branch_summary,
    conflicted_files,
    fetch_branch,
    force_push,
    rebase_in_progress,
    rebase_onto,
)
from otto.services.workdir import WorkdirResolver
from otto.store import PRDocument, PRStore

RESOLVE_PROMPT = """You are resolving merge conflicts for PR #{pr_id}: "{title}".

The branch {branch} is being rebased onto {target} and the rebase stopped on conflicts.

## Commits on the branch

{commits}

## Changes on the branch

{diff_stat}

## Conflicted files

{files}

## Instructions

1. Open each conflicted file and resolve the conflict markers, keeping the intent
   of both the branch and {target}
2. `git add` every resolved file
3. Run `git rebase --continue` (repeat 1-3 if later commits conflict too)
4. Do not push; that is done for you"""


class ConflictError(Exception):
    """The branch could not be rebased onto its target."""


def _strip_ref(ref: str) -> str:
    return ref[len("refs/heads/") :] if ref.startswith("refs/heads/") else ref


class ConflictResolver:
    """Rebase a conflicted PR branch, with the agent resolving conflicts."""

    def __init__(
        self,
        store: PRStore,
        llm: LLMClient,
        workdirs: WorkdirResolver,
        bot_name: str,
        bot_email: str,
        log: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.workdirs = workdirs
        self.bot_name = bot_name
        self.bot_email = bot_email
        self._log = log or logging.getLogger("otto.services.conflicts")

    def resolve(self, doc: PRDocument, pr: PRInfo) -> PRDocument:
        """Rebase and push; clears has_conflicts. Raises ConflictError or GitRunnerError."""
        target = _strip_ref(doc.target or pr.target_branch)
        if not target:
            raise ConflictError("PR has no target branch")
        workdir = self.workdirs.prepare(doc.repo, doc.branch)
        try:
            method = self._rebase(doc, workdir, target)
        except BaseException:
            abort_rebase(workdir, log=self._log)
            raise
        force_push(doc.branch, workdir, log=self._log)
        self._log.info("PR %s rebased onto %s (%s)", doc.key, target, method)

        now = datetime.now(UTC).isoformat()

        def _resolved(d: PRDocument) -> None:
            d.has_conflicts = False
            d.append_entry(f"### Conflicts resolved - {now}\n- **Target**: {target}\n- **Method**: {method}")

        return self.store.update(doc.provider, doc.id, _resolved)

    def _rebase(self, doc: PRDocument, workdir: Path, target: str) -> str:
        fetch_branch(target, workdir, log=self._log)
        commits, diff_stat = branch_summary(target, workdir, log=self._log)
        if rebase_onto(target, self.bot_name, self.bot_email, workdir, log=self._log):
            return "clean rebase"

        files = conflicted_files(workdir, log=self._log)
        if not files:
            raise ConflictError(f"rebase onto {target} failed without conflicted files")
        self._log.info("PR %s: %s conflicted file(s), asking the agent to resolve", doc.key, len(files))

        session = self.llm.create_session(f"PR Conflicts #{doc.id}", str(workdir))
        try:
            self.llm.send_prompt(
                session.id,
                RESOLVE_PROMPT.format(
                    pr_id=doc.id,
                    title=doc.title,
                    branch=doc.branch,
                    target=target,
                    commits=commits or "(unknown)",
                    diff_stat=diff_stat or "(unknown)",
                    files="\n".join(f"- {f}" for f in files),
                ),
            )
        finally:
            self.llm.delete_session(session.id)

        if rebase_in_progress(workdir):
            raise ConflictError("rebase still in progress after the agent finished")
        return f"agent resolved {len(files)} file(s)"
