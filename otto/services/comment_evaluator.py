"""Review comment triage: agree and fix, or answer by-design / won't-fix."""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Tuple

from pydantic import BaseModel, Field

from otto.llm import JSONDecodeFailure, LLMClient, parse_json_response
from otto.provider import Comment, CommentResolution, PRBackend, PRInfo, ProviderError
from otto.provider.base import AuthExpiredError
from otto.services.git import GitRunnerError, commit_all_and_push
from otto.services.signature import sign
from otto.services.workdir import WorkdirResolver
from otto.store import PRDocument, PRStore

CONTEXT_RADIUS = 10

DECISIONS = {
    "AGREE": CommentResolution.FIXED,
    "BY_DESIGN": CommentResolution.BY_DESIGN,
    "WONT_FIX": CommentResolution.WONT_FIX,
}

RESPOND_PROMPT = """You are responding to a code review comment on PR "{pr_title}" (branch {branch} -> {target}).

## Comment

Author: {author}
Location: {file}:{line}

{body}

## Code context

{code_context}

## Instructions

Decide whether the reviewer is right.
- AGREE: the comment points at a real problem. Make the code change now, in this
  working directory. Do not commit or push.
- BY_DESIGN: the code is intentional; explain why.
- WONT_FIX: valid point but out of scope for this PR; explain why.

Respond with ONLY a JSON object:
{{"decision": "AGREE" | "BY_DESIGN" | "WONT_FIX", "reply": "<reply to post to the reviewer>", "fix_description": "<what you changed, empty unless AGREE>"}}"""


class CommentDecision(BaseModel):
    decision: str = Field(..., description="AGREE, BY_DESIGN or WONT_FIX")
    reply: str = Field(default="", description="Text posted in the thread")
    fix_description: str = Field(default="", description="Summary of the code change for AGREE")


def read_code_context(workdir: Path, file_path: str, line: int, radius: int = CONTEXT_RADIUS) -> str:
    """Lines around line (1-based) as "%4d | text"; empty if the file or line is missing."""
    if not file_path or line <= 0:
        return ""
    path = Path(workdir) / file_path.lstrip("/")
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    except OSError:
        return ""
    start = max(0, line - radius - 1)
    end = min(len(lines), line + radius)
    return "".join("%4d | %s\n" % (i + 1, lines[i]) for i in range(start, end))


class CommentEvaluator:
    """Evaluate one new review comment and record the outcome in the PR document."""

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
        self._log = log or logging.getLogger("otto.services.comment_evaluator")

    def _reply(self, backend: PRBackend, pr: PRInfo, thread_id: str, body: str) -> None:
        try:
            backend.reply_to_comment(pr, thread_id, sign(body))
        except AuthExpiredError:
            raise
        except ProviderError as e:
            self._log.warning("Failed to reply to thread %s: %s", thread_id, e)

    def _resolve(self, backend: PRBackend, pr: PRInfo, thread_id: str, resolution: CommentResolution) -> None:
        try:
            backend.resolve_comment(pr, thread_id, resolution)
        except AuthExpiredError:
            raise
        except ProviderError as e:
            self._log.warning("Failed to resolve thread %s as %s: %s", thread_id, resolution.value, e)

    def evaluate(self, doc: PRDocument, pr: PRInfo, backend: PRBackend, comment: Comment) -> PRDocument:
        """Triage comment; marks it seen and appends a body entry.

        Raises PRNotFoundError when the PR was removed while the comment was evaluated.
        """
        workdir = self.workdirs.prepare(doc.repo, doc.branch)
        prompt = RESPOND_PROMPT.format(
            pr_title=doc.title,
            branch=doc.branch,
            target=doc.target,
            author=comment.author,
            file=comment.file_path or "(general)",
            line=comment.line,
            body=comment.body,
            code_context=read_code_context(workdir, comment.file_path, comment.line) or "(none)",
        )

        session = self.llm.create_session(f"Comment Response PR#{doc.id}", str(workdir))
        try:
            content = self.llm.send_prompt(session.id, prompt).content
            try:
                result = parse_json_response(content, CommentDecision, client=self.llm, session_id=session.id)
            except JSONDecodeFailure as e:
                result = None
                self._log.warning("Could not parse comment response JSON, posting raw reply: %s", e)
        finally:
            self.llm.delete_session(session.id)

        if result is None:
            decision, reply, committed = "UNPARSED", content, False
            self._reply(backend, pr, comment.thread_id, content)
        else:
            decision = result.decision.strip().upper()
            reply, committed = self._apply(doc, pr, backend, comment, decision, result.reply, workdir)
        if not committed:
            self._discard(workdir)

        entry = (
            f"### Comment by {comment.author} on {comment.file_path}:{comment.line} - {datetime.now(UTC).isoformat()}\n"
            f"- **Decision**: {decision}\n"
            f"- **Reply**: {reply}"
        )

        def _record(d: PRDocument) -> None:
            d.mark_seen(comment.seen_key)
            d.append_entry(entry)

        return self.store.update(doc.provider, doc.id, _record)

    def _discard(self, workdir: Path) -> None:
        """Drop agent edits that were not committed."""
        try:
            self.workdirs.discard(workdir)
        except GitRunnerError as e:
            self._log.warning("Failed to discard uncommitted changes in %s: %s", workdir, e)

    def _apply(
        self,
        doc: PRDocument,
        pr: PRInfo,
        backend: PRBackend,
        comment: Comment,
        decision: str,
        reply: str,
        workdir: Path,
    ) -> Tuple[str, bool]:
        """Reply and resolve per decision; returns the reply as posted and whether a commit was pushed."""
        resolution = DECISIONS.get(decision)
        if resolution is None:
            self._log.warning("Unknown comment decision %r, leaving thread %s open", decision, comment.thread_id)
            if reply:
                self._reply(backend, pr, comment.thread_id, reply)
            return reply, False

        committed = False
        if resolution == CommentResolution.FIXED:
            try:
                commit = commit_all_and_push(
                    doc.branch,
                    f"otto: address review comment on {comment.file_path}:{comment.line}",
                    self.bot_name,
                    self.bot_email,
                    repo_dir=workdir,
                    log=self._log,
                )
                reply = f"{reply}\n\nFixed in {commit}" if reply else f"Fixed in {commit}"
                committed = True
            except GitRunnerError as e:
                self._log.warning("No commit for AGREE on thread %s: %s", comment.thread_id, e)

        if reply:
            self._reply(backend, pr, comment.thread_id, reply)
        self._resolve(backend, pr, comment.thread_id, resolution)
        return reply, committed
