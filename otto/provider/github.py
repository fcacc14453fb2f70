"""GitHub backend: REST for PRs, comments and checks; GraphQL for thread resolution.

GitHub has three comment primitives: issue comments (unthreaded), review
comments (file/line anchored, threaded through in_reply_to_id) and reviews.
get_comments flattens the first two; a review comment's thread id is its
in_reply_to_id, or its own id when it is the root.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Dict, Iterator, List, Tuple
from urllib.parse import urlparse

import requests

from otto.provider.base import (
    AuthExpiredError,
    MalformedResponseError,
    NotFoundError,
    PRBackend,
    ProviderError,
    RateLimitError,
    UnsupportedOperationError,
    reject_unknown,
    wait_or_cancel,
)
from otto.provider.distill import distill
from otto.provider.models import (
    BuildInfo,
    Comment,
    CommentResolution,
    InlineComment,
    PipelineState,
    PipelineStatus,
    PRInfo,
    WorkflowAction,
)

PER_PAGE = 100
MAX_RETRIES = 3
MAX_RATE_LIMIT_WAIT = 60
MAX_LOG_BYTES = 10 * 1024 * 1024

FAILED_CONCLUSIONS = {"failure", "timed_out", "cancelled", "action_required"}

REVIEW_THREADS_QUERY = """
query($owner: String!, $repo: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      reviewThreads(first: 100, after: $cursor) {
        nodes { id isResolved comments(first: 1) { nodes { databaseId } } }
        pageInfo { hasNextPage endCursor }
      }
    }
  }
}
"""

RESOLVE_THREAD_MUTATION = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) { thread { id isResolved } }
}
"""

LOG = logging.getLogger("otto.provider.github")


def _parse_iso(s: str | None) -> datetime | None:
    if not s:
        return None
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def _pr_from_api(data: Dict[str, Any], owner: str, repo: str) -> PRInfo:
    head = data.get("head") or {}
    base = data.get("base") or {}
    user = data.get("user") or {}
    if data.get("merged") or data.get("merged_at"):
        status = "completed"
    elif data.get("state") == "closed":
        status = "abandoned"
    else:
        status = "active"
    return PRInfo(
        id=str(data["number"]),
        title=data.get("title") or "",
        description=data.get("body") or "",
        status=status,
        # "dirty" is GitHub's word for a merge conflict
        merge_status="conflicts" if data.get("mergeable_state") == "dirty" else data.get("mergeable_state") or "",
        source_branch=head.get("ref", ""),
        target_branch=base.get("ref", ""),
        author=user.get("login", ""),
        url=data.get("html_url") or "",
        repo_id=repo,
        organization=owner,
        head_sha=head.get("sha", ""),
    )


def _issue_comment_from_api(data: Dict[str, Any]) -> Comment:
    user = data.get("user") or {}
    return Comment(
        id=str(data["id"]),
        thread_id=str(data["id"]),
        author=user.get("login", ""),
        body=data.get("body") or "",
        comment_type="issue",
        created_at=_parse_iso(data.get("created_at")),
    )


def _review_comment_from_api(data: Dict[str, Any]) -> Comment:
    user = data.get("user") or {}
    root = data.get("in_reply_to_id") or data["id"]
    return Comment(
        id=str(data["id"]),
        thread_id=str(root),
        author=user.get("login", ""),
        body=data.get("body") or "",
        file_path=data.get("path") or "",
        line=data.get("line") or data.get("original_line") or 0,
        comment_type="review",
        created_at=_parse_iso(data.get("created_at")),
    )


def parse_pr_identifier(value: str, default_owner: str = "", default_repo: str = "") -> Tuple[str, str, int]:
    """Split a PR reference into (owner, repo, number).

    Accepts "123", "owner/repo#123" and https://github.com/owner/repo/pull/123.
    """
    value = value.strip()
    if value.isdigit():
        return default_owner, default_repo, int(value)
    if "#" in value and "://" not in value:
        owner_repo, _, num = value.partition("#")
        owner, _, repo = owner_repo.partition("/")
        if owner and repo and num.isdigit():
            return owner, repo, int(num)
    parts = [p for p in urlparse(value).path.split("/") if p]
    if len(parts) >= 4 and parts[2] == "pull":
        if not parts[3].isdigit():
            raise ProviderError(f"invalid PR number in URL: {parts[3]}")
        return parts[0], parts[1], int(parts[3])
    raise ProviderError(f"could not parse PR identifier: {value}")


def _update_state(state: PipelineState, status: str, conclusion: str) -> PipelineState:
    if conclusion in FAILED_CONCLUSIONS:
        return PipelineState.FAILED
    if status == "in_progress" and state != PipelineState.FAILED:
        return PipelineState.IN_PROGRESS
    if status == "queued" and state not in (PipelineState.FAILED, PipelineState.IN_PROGRESS):
        return PipelineState.PENDING
    return state


class GitHubBackend(PRBackend):
    """GitHub implementation of PRBackend."""

    name = "github"

    def __init__(
        self,
        token: str,
        owner: str = "",
        repository: str = "",
        api_url: str = "https://api.github.com",
        cancel: threading.Event | None = None,
        timeout: int = 30,
    ) -> None:
        self.owner = owner
        self.repository = repository
        self._api_url = api_url.rstrip("/")
        self._cancel = cancel
        self._timeout = timeout
        self._session = requests.Session()
        if token:
            self._session.headers["Authorization"] = f"token {token}"
        self._session.headers["Accept"] = "application/vnd.github+json"
        self._session.headers["X-GitHub-Api-Version"] = "2022-11-28"

    # -- HTTP -----------------------------------------------------------------

    @property
    def _graphql_url(self) -> str:
        if self._api_url.endswith("/api/v3"):
            return self._api_url[: -len("/v3")] + "/graphql"
        return f"{self._api_url}/graphql"

    def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        json: Any = None,
        stream: bool = False,
    ) -> requests.Response:
        url = path if path.startswith("http") else f"{self._api_url}{path}"
        attempt = 0
        while True:
            resp = self._session.request(
                method, url, params=params, json=json, timeout=self._timeout, stream=stream
            )
            if self._is_rate_limited(resp):
                if attempt >= MAX_RETRIES:
                    raise RateLimitError(f"rate limited after {MAX_RETRIES} retries", status_code=resp.status_code)
                delay = self._retry_delay(resp, attempt)
                attempt += 1
                LOG.warning("Rate limited by GitHub API, retry %s/%s in %ss", attempt, MAX_RETRIES, delay)
                wait_or_cancel(self._cancel, delay)
                continue
            if resp.status_code >= 400:
                msg = resp.text or resp.reason or str(resp.status_code)
                try:
                    msg = resp.json().get("message", msg)
                except (ValueError, AttributeError):
                    pass
                if resp.status_code == 401:
                    raise AuthExpiredError(f"{resp.status_code}: {msg}", status_code=401)
                if resp.status_code == 404:
                    raise NotFoundError(f"{resp.status_code}: {msg}", status_code=404)
                raise ProviderError(f"{resp.status_code}: {msg}", status_code=resp.status_code)
            return resp

    @staticmethod
    def _is_rate_limited(resp: requests.Response) -> bool:
        if resp.status_code == 429:
            return True
        return resp.status_code == 403 and (resp.headers or {}).get("X-RateLimit-Remaining") == "0"

    @staticmethod
    def _retry_delay(resp: requests.Response, attempt: int) -> float:
        headers = resp.headers or {}
        try:
            if headers.get("Retry-After"):
                return float(int(headers["Retry-After"]))
            if headers.get("X-RateLimit-Reset"):
                wait = int(headers["X-RateLimit-Reset"]) - int(time.time())
                return float(min(max(wait, 1), MAX_RATE_LIMIT_WAIT))
        except (TypeError, ValueError):
            pass
        return float(2**attempt)

    @staticmethod
    def _json(resp: requests.Response, what: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"failed to decode {what} response: {e}") from e

    def _paginate(self, path: str, key: str | None = None) -> List[Dict[str, Any]]:
        """Collect every page of a list endpoint (per_page=100)."""
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = self._json(self._request("GET", path, params={"per_page": PER_PAGE, "page": page}), path)
            batch = (data.get(key) if key else data) or []
            items.extend(batch)
            if len(batch) < PER_PAGE:
                return items
            page += 1

    def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        data = self._json(
            self._request("POST", self._graphql_url, json={"query": query, "variables": variables}),
            "GraphQL",
        )
        if data.get("errors"):
            messages = "; ".join(e.get("message", "") for e in data["errors"])
            if any(e.get("type") == "NOT_FOUND" for e in data["errors"]):
                raise NotFoundError(f"GraphQL: {messages}")
            raise ProviderError(f"GraphQL: {messages}")
        return data.get("data") or {}

    def _owner_repo(self, pr: PRInfo) -> Tuple[str, str]:
        return pr.organization or self.owner, pr.repo_id or self.repository

    def _repo_path(self, pr: PRInfo, suffix: str) -> str:
        owner, repo = self._owner_repo(pr)
        return f"/repos/{owner}/{repo}{suffix}"

    # -- PRBackend ------------------------------------------------------------

    def matches_url(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        if host == "github.com" or host == "www.github.com":
            return True
        api_host = (urlparse(self._api_url).hostname or "").lower()
        return api_host not in ("", "api.github.com") and host == api_host

    def get_pr(self, id_or_url: str) -> PRInfo:
        owner, repo, number = parse_pr_identifier(id_or_url, self.owner, self.repository)
        if not owner or not repo:
            raise ProviderError("owner/repository not specified and could not be determined from PR identifier")
        data = self._json(self._request("GET", f"/repos/{owner}/{repo}/pulls/{number}"), "PR")
        return _pr_from_api(data, owner, repo)

    def _head_sha(self, pr: PRInfo) -> str:
        if pr.head_sha:
            return pr.head_sha
        data = self._json(self._request("GET", self._repo_path(pr, f"/pulls/{pr.id}")), "PR")
        return (data.get("head") or {}).get("sha", "")

    def get_pipeline_status(self, pr: PRInfo) -> PipelineStatus:
        sha = self._head_sha(pr)
        status = PipelineStatus(state=PipelineState.SUCCEEDED)

        for run in self._paginate(self._repo_path(pr, f"/commits/{sha}/check-runs"), key="check_runs"):
            run_status = run.get("status") or ""
            conclusion = run.get("conclusion") or ""
            status.builds.append(
                BuildInfo(
                    id=str(run.get("id", "")),
                    name=run.get("name") or "",
                    status=run_status,
                    result=conclusion,
                    url=run.get("html_url") or "",
                )
            )
            status.state = _update_state(status.state, run_status, conclusion)

        combined = self._json(self._request("GET", self._repo_path(pr, f"/commits/{sha}/status")), "status")
        for st in combined.get("statuses") or []:
            state = st.get("state") or ""
            status.builds.append(
                BuildInfo(
                    id=str(st.get("id", "")),
                    name=st.get("context") or "",
                    status=state,
                    result=state,
                    url=st.get("target_url") or "",
                )
            )
            if state in ("failure", "error"):
                status.state = PipelineState.FAILED
            elif state == "pending" and status.state not in (PipelineState.FAILED, PipelineState.IN_PROGRESS):
                status.state = PipelineState.PENDING

        if not status.builds:
            status.state = PipelineState.PENDING
        return status

    def get_comments(self, pr: PRInfo) -> List[Comment]:
        comments = [_issue_comment_from_api(d) for d in self._paginate(self._repo_path(pr, f"/issues/{pr.id}/comments"))]
        review = [_review_comment_from_api(d) for d in self._paginate(self._repo_path(pr, f"/pulls/{pr.id}/comments"))]
        if review:
            resolved = self._resolved_roots(pr)
            for c in review:
                c.is_resolved = c.thread_id in resolved
        comments.extend(review)
        return comments

    def post_comment(self, pr: PRInfo, body: str) -> None:
        self._request("POST", self._repo_path(pr, f"/issues/{pr.id}/comments"), json={"body": body})

    def post_inline_comment(self, pr: PRInfo, comment: InlineComment) -> None:
        review = {
            "commit_id": self._head_sha(pr),
            "event": "COMMENT",
            "comments": [
                {
                    "path": comment.file_path.lstrip("/"),
                    "line": comment.line,
                    "side": "LEFT" if comment.side.lower() == "left" else "RIGHT",
                    "body": comment.body,
                }
            ],
        }
        self._request("POST", self._repo_path(pr, f"/pulls/{pr.id}/reviews"), json=review)

    def reply_to_comment(self, pr: PRInfo, thread_id: str, body: str) -> None:
        try:
            self._request(
                "POST",
                self._repo_path(pr, f"/pulls/{pr.id}/comments/{thread_id}/replies"),
                json={"body": body},
            )
        except NotFoundError:
            # Issue comments have no review thread; answer on the conversation instead.
            LOG.debug("No review thread %s on PR %s, replying as issue comment", thread_id, pr.id)
            self.post_comment(pr, body)

    def _review_threads(self, pr: PRInfo) -> Iterator[Tuple[str, str, bool]]:
        """Yield (root comment databaseId, thread node id, isResolved) for every review thread."""
        owner, repo = self._owner_repo(pr)
        cursor = None
        while True:
            data = self._graphql(
                REVIEW_THREADS_QUERY,
                {"owner": owner, "repo": repo, "number": int(pr.id), "cursor": cursor},
            )
            threads = (((data.get("repository") or {}).get("pullRequest") or {}).get("reviewThreads")) or {}
            for node in threads.get("nodes") or []:
                first = ((node.get("comments") or {}).get("nodes")) or []
                if first:
                    yield str(first[0].get("databaseId")), node["id"], bool(node.get("isResolved"))
            page_info = threads.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return
            cursor = page_info.get("endCursor")

    def _thread_node_id(self, pr: PRInfo, thread_id: str) -> str:
        """Map a numeric root review-comment id to its review thread node id."""
        if not thread_id.isdigit():
            return thread_id
        for root_id, node_id, _ in self._review_threads(pr):
            if root_id == thread_id:
                return node_id
        raise NotFoundError(f"no review thread for comment {thread_id} on PR {pr.id}")

    def _resolved_roots(self, pr: PRInfo) -> set[str]:
        try:
            return {root_id for root_id, _, resolved in self._review_threads(pr) if resolved}
        except (AuthExpiredError, RateLimitError):
            raise
        except ProviderError as e:
            LOG.warning("Could not read review thread state for PR %s: %s", pr.id, e)
            return set()

    def resolve_comment(self, pr: PRInfo, thread_id: str, resolution: CommentResolution) -> None:
        reject_unknown(resolution)
        node_id = self._thread_node_id(pr, thread_id)
        self._graphql(RESOLVE_THREAD_MUTATION, {"threadId": node_id})

    def _download_log(self, path: str) -> str:
        resp = self._request("GET", path, stream=True)
        chunks: List[bytes] = []
        size = 0
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            chunks.append(chunk)
            size += len(chunk)
            if size >= MAX_LOG_BYTES:
                LOG.warning("Job log exceeds %s bytes, truncating", MAX_LOG_BYTES)
                break
        resp.close()
        return b"".join(chunks)[:MAX_LOG_BYTES].decode("utf-8", errors="replace")

    def _failed_job_summary(self, pr: PRInfo, job: Dict[str, Any]) -> str:
        parts = [f"=== Failed Job: {job.get('name', '')} ===\n"]
        for step in job.get("steps") or []:
            if step.get("conclusion") == "failure":
                parts.append(f"  Failed Step: {step.get('name', '')}\n")
        try:
            log_text = self._download_log(self._repo_path(pr, f"/actions/jobs/{job['id']}/logs"))
        except (AuthExpiredError, RateLimitError):
            raise
        except ProviderError as e:
            LOG.warning("Failed to download log for job %s: %s", job.get("name"), e)
            return "".join(parts)
        parts.append(distill(log_text))
        parts.append("\n")
        return "".join(parts)

    def get_build_logs(self, pr: PRInfo, build_id: str) -> str:
        if not build_id.isdigit():
            raise ProviderError(f"invalid build/run ID: {build_id}")
        # A check-run id is the job id for Actions; anything else is treated as a workflow run id.
        try:
            jobs = [self._json(self._request("GET", self._repo_path(pr, f"/actions/jobs/{build_id}")), "job")]
        except NotFoundError:
            jobs = self._list_run_jobs(pr, build_id)
        summary = "".join(self._failed_job_summary(pr, job) for job in jobs if job.get("conclusion") == "failure")
        if not summary:
            return "No failed jobs found in workflow run."
        return summary

    def _list_run_jobs(self, pr: PRInfo, run_id: str) -> List[Dict[str, Any]]:
        jobs: List[Dict[str, Any]] = []
        page = 1
        while True:
            resp = self._request(
                "GET",
                self._repo_path(pr, f"/actions/runs/{run_id}/jobs"),
                params={"filter": "latest", "per_page": PER_PAGE, "page": page},
            )
            batch = self._json(resp, "jobs").get("jobs") or []
            jobs.extend(batch)
            if len(batch) < PER_PAGE:
                return jobs
            page += 1

    def run_workflow(self, pr: PRInfo, action: WorkflowAction) -> None:
        raise UnsupportedOperationError(f"workflow {WorkflowAction(action).value!r} is not supported by github")

    def retry_build(self, pr: PRInfo, build_id: str) -> None:
        """Re-run a check-run's job, or the failed jobs of a workflow run."""
        if not build_id.isdigit():
            raise ProviderError(f"invalid build/run ID: {build_id}")
        try:
            self._request("POST", self._repo_path(pr, f"/actions/jobs/{build_id}/rerun"))
        except NotFoundError:
            self._request("POST", self._repo_path(pr, f"/actions/runs/{build_id}/rerun-failed-jobs"))
