"""Poll loop driving tracked PRs through watching / fixing / green / failed.

One tick is a sequential pass over every tracked document. Merged and abandoned
documents past the retention window are deleted first. Per PR: refresh the live
PR (conflicts are rebased away once), check the pipeline (fixing on failure
while attempts remain), triage new review comments and the review bot's
threads, then stamp last_checked together with the stage flags.

Every write is a locked read-modify-write, so a PR removed with ``otto pr
remove`` mid-tick is never written back; PRNotFoundError ends its processing.
"""

import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import List, Set

from otto.provider import (
    AuthExpiredError,
    Comment,
    OperationCancelledError,
    PipelineState,
    PRBackend,
    PRInfo,
    ProviderError,
    Registry,
    WorkflowAction,
)
from otto.provider.ado.workflow import NO_FEEDBACK_MARKER
from otto.services.comment_evaluator import CommentEvaluator
from otto.services.conflicts import ConflictResolver
from otto.services.fixer import Fixer
from otto.services.signature import is_own_comment, sign
from otto.store import LockTimeoutError, PRDocument, PRNotFoundError, PRStore
from otto.store.schemas.pr_document import (
    STATUS_ABANDONED,
    STATUS_FIXING,
    STATUS_GREEN,
    STATUS_MERGED,
    STATUS_WATCHING,
)

GREEN_COMMENT = "All CI checks passed. This PR is ready for review."

ACTIVE_STATUSES = (STATUS_WATCHING, STATUS_GREEN)
TERMINAL_STATUSES = (STATUS_MERGED, STATUS_ABANDONED)

MERGE_CONFLICTS = "conflicts"

# Errors that end processing of a PR (or the tick) instead of being logged
_FATAL = (AuthExpiredError, OperationCancelledError, PRNotFoundError)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_timestamp(value: str) -> datetime | None:
    try:
        ts = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=UTC)


class MonitorLoop:
    """Periodic PR poller; owns no state beyond what is in the store."""

    def __init__(
        self,
        store: PRStore,
        registry: Registry,
        fixer: Fixer,
        evaluator: CommentEvaluator,
        conflicts: ConflictResolver | None = None,
        poll_interval: float = 120,
        reap_after_hours: float = 24,
        shutdown: threading.Event | None = None,
        poll_trigger: threading.Event | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.fixer = fixer
        self.evaluator = evaluator
        self.conflicts = conflicts
        self.poll_interval = poll_interval
        self.reap_after = timedelta(hours=reap_after_hours) if reap_after_hours else None
        self.shutdown = shutdown or threading.Event()
        self.poll_trigger = poll_trigger or threading.Event()
        self._log = log or logging.getLogger("otto.services.monitor")

    def reset_stuck_fixing(self) -> int:
        """Documents left in "fixing" by a crash go back to "watching"."""

        def _recover(doc: PRDocument) -> None:
            if doc.status == STATUS_FIXING:
                doc.status = STATUS_WATCHING
                doc.append_entry(f"### Recovered - {_now()}\n- Fix interrupted; back to watching")

        count = 0
        for doc in self.store.list():
            if doc.status != STATUS_FIXING:
                continue
            try:
                self.store.update(doc.provider, doc.id, _recover)
            except PRNotFoundError:
                continue
            self._log.warning("PR %s was stuck in fixing, reset to watching", doc.key)
            count += 1
        return count

    def reap_terminal(self, docs: List[PRDocument] | None = None) -> int:
        """Delete merged/abandoned documents last checked longer ago than reap_after."""
        if self.reap_after is None:
            return 0
        cutoff = datetime.now(UTC) - self.reap_after
        count = 0
        for doc in self.store.list() if docs is None else docs:
            if doc.status not in TERMINAL_STATUSES:
                continue
            checked = _parse_timestamp(doc.last_checked)
            if checked is None or checked > cutoff:
                continue
            try:
                self.store.delete(doc.provider, doc.id)
            except PRNotFoundError:
                continue
            except LockTimeoutError as e:
                self._log.warning("Could not remove %s PR %s: %s", doc.status, doc.key, e)
                continue
            self._log.info("Removed %s PR %s (last checked %s)", doc.status, doc.key, doc.last_checked)
            count += 1
        return count

    def run(self) -> None:
        """Poll now, then every poll_interval seconds or on trigger, until shutdown."""
        self._log.info("Monitor started (interval %ss)", self.poll_interval)
        self.reset_stuck_fixing()
        while not self.shutdown.is_set():
            self.tick()
            self.poll_trigger.wait(self.poll_interval)
            if self.poll_trigger.is_set():
                self._log.info("Poll triggered")
                self.poll_trigger.clear()
        self._log.info("Monitor stopped")

    def tick(self) -> None:
        docs = self.store.list()
        self.reap_terminal(docs)
        docs = [d for d in docs if d.status in ACTIVE_STATUSES]
        self._log.debug("Tick: %s active PR(s)", len(docs))
        auth_failed: Set[str] = set()
        for doc in docs:
            if self.shutdown.is_set():
                self._log.info("Shutdown requested, ending tick early")
                return
            if doc.provider in auth_failed:
                self._log.debug("Skipping PR %s: %s auth expired this tick", doc.key, doc.provider)
                continue
            try:
                self.process_pr(doc)
            except PRNotFoundError:
                self._log.info("PR %s was removed during processing", doc.key)
            except AuthExpiredError as e:
                auth_failed.add(doc.provider)
                self._log.error("Auth expired for %s, skipping its PRs this tick: %s", doc.provider, e)
            except OperationCancelledError:
                self._log.info("PR %s interrupted by shutdown", doc.key)
                return
            except Exception as e:
                self._log.exception("Failed to process PR %s: %s", doc.key, e)

    def _refresh(self, doc: PRDocument, backend: PRBackend) -> PRInfo | None:
        """Live PR, or None when the fetch fails."""
        try:
            return backend.get_pr(doc.url or doc.id)
        except (AuthExpiredError, OperationCancelledError):
            raise
        except ProviderError as e:
            self._log.warning("Could not refresh PR %s, using stored fields: %s", doc.key, e)
            return None

    @staticmethod
    def _snapshot(doc: PRDocument) -> PRInfo:
        return PRInfo(
            id=doc.id,
            title=doc.title,
            source_branch=doc.branch,
            target_branch=doc.target,
            url=doc.url,
            repo_id=doc.repo,
        )

    def process_pr(self, doc: PRDocument) -> None:
        """One PR's share of a tick. Raises PRNotFoundError when it was removed meanwhile."""
        backend = self.registry.get(doc.provider)
        live = self._refresh(doc, backend)
        if live is not None:
            if live.status in ("abandoned", "completed"):
                self._close(doc, live.status)
                return
            if live.title and live.title != doc.title:

                def _retitle(d: PRDocument) -> None:
                    d.title = live.title

                doc = self.store.update(doc.provider, doc.id, _retitle)
            doc = self._check_conflicts(doc, live)
        pr = live or self._snapshot(doc)

        if doc.status == STATUS_WATCHING:
            doc = self._check_pipeline(doc, pr, backend)
            if doc is None:
                return
        self._check_comments(doc, pr, backend)

    def _close(self, doc: PRDocument, pr_status: str) -> None:
        status = STATUS_ABANDONED if pr_status == "abandoned" else STATUS_MERGED
        now = _now()

        def _stop(d: PRDocument) -> None:
            d.status = status
            d.last_checked = now
            d.append_entry(f"### PR {pr_status} - {now}\n- Stopped watching")

        self.store.update(doc.provider, doc.id, _stop)
        self._log.info("PR %s is %s, status -> %s", doc.key, pr_status, status)

    def _check_conflicts(self, doc: PRDocument, pr: PRInfo) -> PRDocument:
        """Rebase once when conflicts appear; clear the flag when they are gone."""
        conflicted = pr.merge_status == MERGE_CONFLICTS
        if conflicted == doc.has_conflicts:
            if conflicted:
                self._log.debug("PR %s still has merge conflicts (already attempted)", doc.key)
            return doc

        if not conflicted:

            def _clear(d: PRDocument) -> None:
                d.has_conflicts = False

            self._log.info("PR %s no longer has merge conflicts", doc.key)
            return self.store.update(doc.provider, doc.id, _clear)

        now = _now()

        def _flag(d: PRDocument) -> None:
            d.has_conflicts = True
            d.append_entry(f"### Merge conflicts - {now}\n- Branch conflicts with {d.target or pr.target_branch}")

        doc = self.store.update(doc.provider, doc.id, _flag)
        self._log.warning("PR %s has merge conflicts", doc.key)
        if self.conflicts is None:
            return doc
        try:
            return self.conflicts.resolve(doc, pr)
        except _FATAL:
            raise
        except Exception as e:
            self._log.error("Conflict resolution for PR %s failed: %s", doc.key, e)
            return self._reload(doc)

    def _check_pipeline(self, doc: PRDocument, pr: PRInfo, backend: PRBackend) -> PRDocument | None:
        """Returns the reloaded document, or None when the PR went green."""
        pipeline = backend.get_pipeline_status(pr)
        state = pipeline.state.value
        self._log.info("PR %s pipeline: %s", doc.key, state)

        if pipeline.state == PipelineState.SUCCEEDED:
            now = _now()

            def _green(d: PRDocument) -> None:
                d.status = STATUS_GREEN
                d.pipeline_state = state
                d.last_checked = now
                d.append_entry(f"### Pipeline green - {now}\n- All builds succeeded")

            self.store.update(doc.provider, doc.id, _green)
            try:
                backend.post_comment(pr, sign(GREEN_COMMENT))
            except ProviderError as e:
                self._log.warning("Failed to post success comment on %s: %s", doc.key, e)
            return None

        def _observe(d: PRDocument) -> None:
            d.pipeline_state = state

        doc = self.store.update(doc.provider, doc.id, _observe)
        if pipeline.state != PipelineState.FAILED:
            return doc
        if doc.fix_attempts >= doc.max_fix_attempts:
            self._log.warning(
                "PR %s pipeline failed and all %s fix attempts are used; manual intervention required",
                doc.key,
                doc.max_fix_attempts,
            )
            return doc

        try:
            self.fixer.fix(doc, pr, backend, pipeline)
        except _FATAL:
            raise
        except Exception as e:
            self._log.error("Fix attempt for PR %s failed: %s", doc.key, e)
        return self._reload(doc)

    def _check_comments(self, doc: PRDocument, pr: PRInfo, backend: PRBackend) -> None:
        comments = backend.get_comments(pr)
        bots = set(getattr(backend, "bot_identities", []) or [])

        processed = self._triage_comments(doc, pr, backend, self._new_comments(doc, comments, bots))
        doc = self._reload(doc)
        if processed and doc.provider == "ado":
            self._address_bot(doc, pr, backend)

        bot_done = doc.merlinbot_done or self._review_bot_done(doc, pr, backend, comments, bots)
        doc = self._reload(doc)
        feedback_done = not self._new_comments(doc, comments, bots)
        now = _now()

        def _finish(d: PRDocument) -> None:
            d.merlinbot_done = bot_done
            d.feedback_done = feedback_done
            d.last_checked = now

        self.store.update(doc.provider, doc.id, _finish)

    def _new_comments(self, doc: PRDocument, comments: List[Comment], bots: Set[str]) -> List[Comment]:
        """Unresolved human comments not processed yet."""
        seen = set(doc.seen_comment_ids)
        result = []
        for c in comments:
            if c.is_resolved or c.comment_type == "system":
                continue
            if c.author in bots or is_own_comment(c.body):
                continue
            if c.seen_key in seen:
                continue
            result.append(c)
        return result

    def _triage_comments(self, doc: PRDocument, pr: PRInfo, backend: PRBackend, new: List[Comment]) -> int:
        """Evaluate every new comment; returns how many were processed."""
        if not new:
            return 0
        self._log.info("PR %s: %s new comment(s)", doc.key, len(new))
        processed = 0
        for comment in new:
            if self.shutdown.is_set():
                break
            try:
                doc = self.evaluator.evaluate(self._reload(doc), pr, backend, comment)
                processed += 1
            except _FATAL:
                raise
            except Exception as e:
                self._log.error("Failed to evaluate comment %s on PR %s: %s", comment.seen_key, doc.key, e)
        return processed

    def _address_bot(self, doc: PRDocument, pr: PRInfo, backend: PRBackend) -> None:
        try:
            backend.run_workflow(pr, WorkflowAction.ADDRESS_BOT)
        except (AuthExpiredError, OperationCancelledError):
            raise
        except ProviderError as e:
            self._log.warning("addressBot failed for PR %s: %s", doc.key, e)

    def _review_bot_done(
        self, doc: PRDocument, pr: PRInfo, backend: PRBackend, comments: List[Comment], bots: Set[str]
    ) -> bool:
        """ADO review-bot stage: done when the bot had nothing to say or its threads are answered.

        Unresolved, unanswered bot threads are evaluated like review comments.
        Until the bot has posted anything the stage stays open.
        """
        if doc.provider != "ado" or not bots:
            return True
        bot_comments = [c for c in comments if c.author in bots and c.comment_type != "system"]
        if not bot_comments:
            self._log.debug("PR %s: no review bot comments yet", doc.key)
            return False
        if any(NO_FEEDBACK_MARKER in c.body for c in bot_comments):
            if any(not c.is_resolved for c in bot_comments):
                self._address_bot(doc, pr, backend)
            return True

        seen = set(doc.seen_comment_ids)
        threads = {}
        for c in bot_comments:
            if not c.is_resolved and c.thread_id not in threads:
                threads[c.thread_id] = c
        pending = [c for c in threads.values() if c.seen_key not in seen]
        if pending:
            self._log.info("PR %s: evaluating %s review bot thread(s)", doc.key, len(pending))
        for comment in pending:
            if self.shutdown.is_set():
                return False
            try:
                doc = self.evaluator.evaluate(self._reload(doc), pr, backend, comment)
            except _FATAL:
                raise
            except Exception as e:
                self._log.error("Failed to evaluate review bot thread %s on PR %s: %s", comment.thread_id, doc.key, e)
                return False
        return True

    def _reload(self, doc: PRDocument) -> PRDocument:
        """Fresh copy from the store; PRNotFoundError if `otto pr remove` ran mid-tick."""
        return self.store.load(doc.provider, doc.id)
