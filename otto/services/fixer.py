"""Two-phase CI fixer: diagnose distilled build logs, then patch the PR checkout.

One invocation makes at most one fix commit. The monitor decides whether a
fix may be attempted (fix_attempts < max_fix_attempts); the fixer only counts.
Failures the diagnosis classifies as infrastructure are retried instead of
patched and do not count as an attempt.
"""

import logging
from datetime import UTC, datetime
from typing import List

from otto.llm import LLMClient
from otto.provider import PipelineState, PipelineStatus, PRBackend, PRInfo, ProviderError
from otto.provider.base import AuthExpiredError, RateLimitError
from otto.services.git import commit_all_and_push
from otto.services.signature import sign
from otto.services.workdir import WorkdirResolver
from otto.store import PRDocument, PRNotFoundError, PRStore
from otto.store.schemas.pr_document import STATUS_FAILED, STATUS_FIXING, STATUS_WATCHING

FAILED_RESULTS = {"failed", "failure", "partiallySucceeded", "canceled", "cancelled", "timed_out"}

# Lines of the diagnosis searched for the classification header
CLASSIFICATION_LINES = 5

ANALYSIS_PROMPT = """You are analyzing CI/CD build failure logs for PR #{pr_id}: "{title}".

Start your answer with exactly one classification line:
CLASSIFICATION: CODE
or
CLASSIFICATION: INFRASTRUCTURE

INFRASTRUCTURE means the change itself is fine and a retry is likely to pass:
agent or pool unavailable ("No agent found"), network timeouts, flaky tests,
pipeline YAML template errors, artifact or package registry errors.
CODE means the change is broken: compile, syntax, type or logic errors, lint
failures, missing imports, failing tests caused by the change.

Then provide a structured failure summary:
1. Which tests/checks failed
2. The exact error messages
3. File and line locations where errors originate
4. Root cause analysis

## Build Logs

{logs}

## Output

Provide a concise, structured diagnosis that another engineer can use to fix the code.
Focus on actionable information only. Plain text, no JSON."""

FIX_PROMPT = """You are fixing CI/CD failures for PR #{pr_id}: "{title}".

## Failure Diagnosis

{diagnosis}

## Instructions

1. Read the relevant source files mentioned in the diagnosis
2. Fix the identified issues
3. Do NOT introduce unnecessary changes; fix only what's broken
4. Make sure your fixes are correct and complete
5. Do not commit or push; that is done for you"""


class FixError(Exception):
    """A fix attempt could not be completed."""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _is_classification(line: str) -> bool:
    return line.strip(" *#`").upper().startswith("CLASSIFICATION:")


def is_infra_failure(diagnosis: str) -> bool:
    """True when one of the first lines reads CLASSIFICATION: INFRASTRUCTURE."""
    for line in diagnosis.strip().splitlines()[:CLASSIFICATION_LINES]:
        if _is_classification(line):
            return "INFRASTRUCTURE" in line.upper()
    return False


def diagnosis_summary(diagnosis: str) -> str:
    """First meaningful line of the diagnosis, skipping the classification header."""
    for line in diagnosis.strip().splitlines():
        if line.strip() and not _is_classification(line):
            return line.strip()
    return ""


class Fixer:
    """Diagnose a failed pipeline and push one fix commit."""

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
        self._log = log or logging.getLogger("otto.services.fixer")

    def collect_logs(self, backend: PRBackend, pr: PRInfo, pipeline: PipelineStatus) -> str:
        """Distilled logs of every failed build, one section per build."""
        sections: List[str] = []
        for build in pipeline.builds:
            if build.result not in FAILED_RESULTS:
                continue
            try:
                logs = backend.get_build_logs(pr, build.id)
            except (AuthExpiredError, RateLimitError):
                raise
            except ProviderError as e:
                self._log.warning("Failed to get logs for build %s (%s): %s", build.id, build.name, e)
                continue
            if logs.strip():
                sections.append(f"### Build: {build.name} (ID: {build.id})\n\n{logs}")
        return "\n\n".join(sections)

    def _ask(self, title: str, workdir: str, prompt: str) -> str:
        session = self.llm.create_session(title, workdir)
        try:
            return self.llm.send_prompt(session.id, prompt).content
        finally:
            self.llm.delete_session(session.id)

    def fix(self, doc: PRDocument, pr: PRInfo, backend: PRBackend, pipeline: PipelineStatus) -> PRDocument:
        """Run one fix attempt. Returns the saved document.

        The document is persisted as "fixing" first; any error rolls it back to
        "watching" and is re-raised. PRNotFoundError means the PR was removed
        while the attempt ran.
        """

        def _start(d: PRDocument) -> None:
            d.status = STATUS_FIXING

        doc = self.store.update(doc.provider, doc.id, _start)
        try:
            return self._fix(doc, pr, backend, pipeline)
        except BaseException:
            self._rollback(doc)
            raise

    def _rollback(self, doc: PRDocument) -> None:
        def _watch(d: PRDocument) -> None:
            if d.status == STATUS_FIXING:
                d.status = STATUS_WATCHING

        try:
            self.store.update(doc.provider, doc.id, _watch)
        except PRNotFoundError:
            self._log.info("PR %s was removed during the fix attempt", doc.key)

    def _fix(self, doc: PRDocument, pr: PRInfo, backend: PRBackend, pipeline: PipelineStatus) -> PRDocument:
        logs = self.collect_logs(backend, pr, pipeline)
        if not logs:
            raise FixError("no failed build logs found")

        workdir = self.workdirs.prepare(doc.repo, doc.branch)
        attempt = doc.fix_attempts + 1

        self._log.info("PR %s fix phase 1: analyzing build logs", doc.key)
        diagnosis = self._ask(
            f"PR Fix Analysis #{doc.id}",
            str(workdir),
            ANALYSIS_PROMPT.format(pr_id=doc.id, title=doc.title, logs=logs),
        )
        if not diagnosis.strip():
            raise FixError("empty diagnosis from LLM")

        if is_infra_failure(diagnosis):
            return self._retry_builds(doc, pr, backend, pipeline, diagnosis)

        self._log.info("PR %s fix phase 2: applying fixes (attempt %s)", doc.key, attempt)
        self._ask(
            f"PR Fix #{doc.id} attempt {attempt}",
            str(workdir),
            FIX_PROMPT.format(pr_id=doc.id, title=doc.title, diagnosis=diagnosis),
        )

        commit = commit_all_and_push(
            doc.branch,
            f"fix CI failures (attempt {attempt})",
            self.bot_name,
            self.bot_email,
            repo_dir=workdir,
            log=self._log,
        )
        self._log.info("PR %s fix committed and pushed: %s", doc.key, commit)

        now = _now()

        def _record(d: PRDocument) -> None:
            d.fix_attempts = attempt
            d.last_checked = now
            d.append_entry(
                f"### Attempt {attempt} - {now}\n"
                f"- **Trigger**: Pipeline failure\n"
                f"- **Action**: {diagnosis_summary(diagnosis)}\n"
                f"- **Result**: Pending\n"
                f"- **Commit**: {commit}"
            )
            d.status = STATUS_FAILED if d.fix_attempts >= d.max_fix_attempts else STATUS_WATCHING

        doc = self.store.update(doc.provider, doc.id, _record)
        if doc.status == STATUS_FAILED:
            self._log.warning("PR %s exhausted %s fix attempts", doc.key, doc.max_fix_attempts)
            try:
                backend.post_comment(
                    pr,
                    sign(f"Exhausted {doc.max_fix_attempts} fix attempts for this PR. Manual intervention required."),
                )
            except ProviderError as e:
                self._log.warning("Failed to post exhaustion comment on %s: %s", doc.key, e)
        return doc

    def _retry_builds(
        self, doc: PRDocument, pr: PRInfo, backend: PRBackend, pipeline: PipelineStatus, diagnosis: str
    ) -> PRDocument:
        """Re-queue failed builds; does not count as a fix attempt."""
        failed = [b for b in pipeline.builds if b.result in FAILED_RESULTS]
        self._log.info("PR %s: infrastructure failure, retrying %s build(s)", doc.key, len(failed))
        errors: List[str] = []
        for build in failed:
            try:
                backend.retry_build(pr, build.id)
            except (AuthExpiredError, RateLimitError):
                raise
            except ProviderError as e:
                self._log.warning("Failed to retry build %s (%s): %s", build.id, build.name, e)
                errors.append(f"{build.name}: {e}")
        retried = len(failed) - len(errors)
        if not retried:
            raise FixError(f"infrastructure failure but no build could be retried: {'; '.join(errors)}")

        now = _now()

        def _record(d: PRDocument) -> None:
            d.status = STATUS_WATCHING
            d.pipeline_state = PipelineState.IN_PROGRESS.value
            d.last_checked = now
            d.append_entry(
                f"### Infra Retry - {now}\n"
                f"- **Trigger**: Infrastructure failure detected\n"
                f"- **Action**: Retried {retried} build(s)\n"
                f"- **Diagnosis**: {diagnosis_summary(diagnosis)}"
            )

        doc = self.store.update(doc.provider, doc.id, _record)
        if errors:
            raise FixError(f"retried {retried} of {len(failed)} build(s): {'; '.join(errors)}")
        return doc
