"""Azure DevOps REST backend (api-version 7.1).

Comments live in threads; resolution status belongs to the thread, so every
resolve targets a thread id. Pipeline status is derived from the builds of the
PR merge ref, keeping only the newest build per pipeline definition.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Tuple
from urllib.parse import quote, unquote, urlparse

import requests

from otto.provider.ado.auth import AdoAuth
from otto.provider.ado.workflow import AdoWorkflowMixin
from otto.provider.base import (
    AuthExpiredError,
    MalformedResponseError,
    NotFoundError,
    PRBackend,
    ProviderError,
    RateLimitError,
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
)

API_VERSION = "7.1"
DEFAULT_BASE_URL = "https://dev.azure.com"
MAX_RETRIES = 3

# Thread status values
THREAD_ACTIVE = 1
THREAD_FIXED = 2
THREAD_WONT_FIX = 3
THREAD_CLOSED = 4
THREAD_BY_DESIGN = 5
THREAD_PENDING = 6

RESOLVED_THREAD_STATUSES = {THREAD_FIXED, THREAD_WONT_FIX, THREAD_CLOSED, THREAD_BY_DESIGN}
RESOLVED_THREAD_NAMES = {"fixed", "wontfix", "closed", "bydesign"}

RESOLUTION_STATUS = {
    CommentResolution.FIXED: THREAD_FIXED,
    CommentResolution.WONT_FIX: THREAD_WONT_FIX,
    CommentResolution.BY_DESIGN: THREAD_BY_DESIGN,
}

FAILED_RESULTS = {"failed", "partiallySucceeded", "canceled"}

LOG = logging.getLogger("otto.provider.ado")


def _parse_iso(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def _strip_ref(ref: str) -> str:
    return ref[len("refs/heads/") :] if ref.startswith("refs/heads/") else ref


def is_thread_resolved(status: Any) -> bool:
    """Thread status arrives as an int or a name depending on the API version."""
    if isinstance(status, bool):
        return False
    if isinstance(status, (int, float)):
        return int(status) in RESOLVED_THREAD_STATUSES
    if isinstance(status, str):
        return status.lower() in RESOLVED_THREAD_NAMES
    return False


def parse_pr_identifier(value: str) -> Tuple[str, str, str, str]:
    """Split a PR id or URL into (id, repo, organization, project).

    Accepts a bare number, https://dev.azure.com/{org}/{project}/_git/{repo}/pullrequest/{id}
    and https://{org}.visualstudio.com/[DefaultCollection/]{project}/_git/{repo}/pullrequest/{id}.
    Returns empty strings for anything else.
    """
    value = value.strip()
    if value.isdigit():
        return value, "", "", ""
    u = urlparse(value)
    host = (u.hostname or "").lower()
    # Segments arrive percent-encoded; _pr_path re-quotes them
    parts = [unquote(p) for p in u.path.split("/") if p]
    if host.endswith(".visualstudio.com"):
        org = host[: -len(".visualstudio.com")]
        if parts and parts[0].lower() == "defaultcollection":
            parts = parts[1:]
        if len(parts) >= 5 and parts[1] == "_git" and parts[3] == "pullrequest":
            return parts[4], parts[2], org, parts[0]
        return "", "", "", ""
    if host == "dev.azure.com" and len(parts) >= 6 and parts[2] == "_git" and parts[4] == "pullrequest":
        return parts[5], parts[3], parts[0], parts[1]
    return "", "", "", ""


def aggregate_builds(builds: List[Dict[str, Any]]) -> PipelineStatus:
    """Reduce the ADO build list (newest first) to one PipelineStatus."""
    latest: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for build in builds:
        def_name = (build.get("definition") or {}).get("name", "")
        if def_name in seen:
            continue
        seen.add(def_name)
        latest.append(build)

    status = PipelineStatus(state=PipelineState.UNKNOWN)
    if not latest:
        status.state = PipelineState.PENDING
        return status

    all_succeeded = True
    for build in latest:
        result = build.get("result") or ""
        state = build.get("status") or ""
        status.builds.append(
            BuildInfo(
                id=str(build.get("id", "")),
                name=(build.get("definition") or {}).get("name", ""),
                status=state,
                result=result,
                url=((build.get("_links") or {}).get("web") or {}).get("href", ""),
            )
        )
        if result in FAILED_RESULTS:
            status.state = PipelineState.FAILED
            all_succeeded = False
        elif result == "succeeded":
            continue
        elif state == "notStarted":
            # Queued builds carry no result yet; checked before the no-result case
            if status.state not in (PipelineState.FAILED, PipelineState.IN_PROGRESS):
                status.state = PipelineState.PENDING
            all_succeeded = False
        elif state == "inProgress" or not result:
            if status.state != PipelineState.FAILED:
                status.state = PipelineState.IN_PROGRESS
            all_succeeded = False
        else:
            all_succeeded = False

    if all_succeeded:
        status.state = PipelineState.SUCCEEDED
    return status


def _comments_from_threads(threads: List[Dict[str, Any]]) -> List[Comment]:
    comments: List[Comment] = []
    for thread in threads:
        resolved = is_thread_resolved(thread.get("status"))
        ctx = thread.get("threadContext") or {}
        file_path = ctx.get("filePath") or ""
        start = ctx.get("rightFileStart") or ctx.get("leftFileStart") or {}
        line = start.get("line") or 0
        for c in thread.get("comments") or []:
            if c.get("isDeleted"):
                continue
            comments.append(
                Comment(
                    id=str(c.get("id", "")),
                    thread_id=str(thread.get("id", "")),
                    author=(c.get("author") or {}).get("displayName", ""),
                    body=c.get("content") or "",
                    file_path=file_path,
                    line=line,
                    is_resolved=resolved,
                    comment_type=c.get("commentType") or "text",
                    created_at=_parse_iso(c.get("publishedDate")),
                )
            )
    return comments


class AdoBackend(AdoWorkflowMixin, PRBackend):
    """Azure DevOps implementation of PRBackend."""

    name = "ado"

    def __init__(
        self,
        organization: str = "",
        project: str = "",
        repository: str = "",
        pat: str | None = None,
        auth: AdoAuth | None = None,
        bot_identities: List[str] | None = None,
        area_path: str = "",
        base_url: str = DEFAULT_BASE_URL,
        cancel: threading.Event | None = None,
        timeout: int = 120,
    ) -> None:
        self.organization = organization
        self.project = project
        self.repository = repository
        self.bot_identities = list(bot_identities) if bot_identities is not None else ["MerlinBot"]
        self.area_path = area_path
        self._auth = auth or AdoAuth(pat=pat)
        self._base_url = base_url.rstrip("/")
        self._cancel = cancel
        self._timeout = timeout
        self._session = requests.Session()

    # -- HTTP -----------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        json: Any = None,
        accept: str = "application/json",
        content_type: str = "application/json",
    ) -> requests.Response:
        """Send a request; handles 203/401 token refresh, 429 back-off and error mapping."""
        url = f"{self._base_url}{path}"
        query = dict(params or {})
        query["api-version"] = API_VERSION
        refreshed = False
        attempt = 0
        while True:
            headers = {"Authorization": self._auth.get_auth_header(), "Accept": accept}
            if json is not None:
                headers["Content-Type"] = content_type
            resp = self._session.request(
                method, url, params=query, json=json, headers=headers, timeout=self._timeout
            )
            if resp.status_code in (203, 401):
                if refreshed:
                    raise AuthExpiredError(
                        "ADO authentication expired; run 'az login' to refresh", status_code=resp.status_code
                    )
                refreshed = True
                LOG.warning("ADO returned %s, refreshing token and retrying: %s", resp.status_code, path)
                self._auth.invalidate_token()
                continue
            if resp.status_code == 429:
                if attempt >= MAX_RETRIES:
                    raise RateLimitError(f"rate limited after {MAX_RETRIES} retries", status_code=429)
                delay = self._retry_delay(resp, attempt)
                attempt += 1
                LOG.warning("Rate limited by ADO API, retry %s/%s in %ss", attempt, MAX_RETRIES, delay)
                wait_or_cancel(self._cancel, delay)
                continue
            if resp.status_code >= 400:
                raise self._error_from(resp)
            return resp

    @staticmethod
    def _retry_delay(resp: requests.Response, attempt: int) -> float:
        retry_after = (resp.headers or {}).get("Retry-After")
        if retry_after:
            try:
                return float(int(retry_after))
            except (TypeError, ValueError):
                pass
        return float(2**attempt)

    @staticmethod
    def _error_from(resp: requests.Response) -> ProviderError:
        cls = NotFoundError if resp.status_code == 404 else ProviderError
        try:
            data = resp.json()
        except ValueError:
            text = resp.text or resp.reason or ""
            if len(text) > 200:
                text = text[:200] + "... (truncated)"
            return cls(f"ADO API error (status {resp.status_code}): {text}", status_code=resp.status_code)
        if not isinstance(data, dict):
            data = {}
        return cls(
            f"ADO API error (status {resp.status_code}, {data.get('typeKey', '')}): {data.get('message', '')}",
            status_code=resp.status_code,
        )

    @staticmethod
    def _json(resp: requests.Response, what: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"failed to decode {what} response: {e}") from e

    def _resolve(self, pr: PRInfo) -> Tuple[str, str, str]:
        return (
            pr.organization or self.organization,
            pr.project or self.project,
            pr.repo_id or self.repository,
        )

    def _pr_path(self, pr: PRInfo, suffix: str = "") -> str:
        org, project, repo = self._resolve(pr)
        return (
            f"/{quote(org, safe='')}/{quote(project, safe='')}/_apis/git/repositories/"
            f"{quote(repo, safe='')}/pullrequests/{pr.id}{suffix}"
        )

    def _project_path(self, pr: PRInfo, suffix: str) -> str:
        org, project, _ = self._resolve(pr)
        return f"/{quote(org, safe='')}/{quote(project, safe='')}/_apis{suffix}"

    # -- PRBackend ------------------------------------------------------------

    def matches_url(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return host == "dev.azure.com" or host.endswith(".visualstudio.com")

    def get_pr(self, id_or_url: str) -> PRInfo:
        pr_id, repo, org, project = parse_pr_identifier(id_or_url)
        if not pr_id:
            raise ProviderError(f"could not parse PR identifier: {id_or_url}")
        pr = PRInfo(
            id=pr_id,
            repo_id=repo or self.repository,
            organization=org or self.organization,
            project=project or self.project,
        )
        if not pr.repo_id:
            raise ProviderError("repository not specified and could not be determined from PR identifier")
        data = self._json(self._request("GET", self._pr_path(pr)), "PR")
        repo_name = (data.get("repository") or {}).get("name") or pr.repo_id
        web_url = ((data.get("_links") or {}).get("web") or {}).get("href") or (
            f"{DEFAULT_BASE_URL}/{pr.organization}/{pr.project}/_git/{repo_name}/pullrequest/{pr_id}"
        )
        return PRInfo(
            id=str(data.get("pullRequestId", pr_id)),
            title=data.get("title") or "",
            description=data.get("description") or "",
            status=data.get("status") or "active",
            merge_status=data.get("mergeStatus") or "",
            source_branch=_strip_ref(data.get("sourceRefName") or ""),
            target_branch=_strip_ref(data.get("targetRefName") or ""),
            author=(data.get("createdBy") or {}).get("displayName", ""),
            url=web_url,
            repo_id=repo_name,
            project=pr.project,
            organization=pr.organization,
            head_sha=(data.get("lastMergeSourceCommit") or {}).get("commitId", ""),
        )

    def get_pipeline_status(self, pr: PRInfo) -> PipelineStatus:
        resp = self._request(
            "GET",
            self._project_path(pr, "/build/builds"),
            params={"branchName": f"refs/pull/{pr.id}/merge"},
        )
        data = self._json(resp, "builds")
        return aggregate_builds(data.get("value") or [])

    def get_comments(self, pr: PRInfo) -> List[Comment]:
        data = self._json(self._request("GET", self._pr_path(pr, "/threads")), "threads")
        return _comments_from_threads(data.get("value") or [])

    def post_comment(self, pr: PRInfo, body: str) -> None:
        self.post_comment_thread(pr, body)

    def post_comment_thread(self, pr: PRInfo, body: str) -> str:
        """Open a new active thread and return its id."""
        thread = {"comments": [{"content": body, "commentType": "text"}], "status": THREAD_ACTIVE}
        resp = self._request("POST", self._pr_path(pr, "/threads"), json=thread)
        try:
            return str(resp.json().get("id", ""))
        except ValueError:
            return ""

    def post_inline_comment(self, pr: PRInfo, comment: InlineComment) -> None:
        file_path = comment.file_path if comment.file_path.startswith("/") else f"/{comment.file_path}"
        position = {"line": comment.line, "offset": 1}
        context: Dict[str, Any] = {"filePath": file_path}
        if comment.side.lower() == "left":
            context["leftFileStart"] = position
            context["leftFileEnd"] = position
        else:
            context["rightFileStart"] = position
            context["rightFileEnd"] = position
        thread = {
            "comments": [{"content": comment.body, "commentType": "text"}],
            "threadContext": context,
            "status": THREAD_ACTIVE,
        }
        self._request("POST", self._pr_path(pr, "/threads"), json=thread)

    def reply_to_comment(self, pr: PRInfo, thread_id: str, body: str) -> None:
        payload = {"content": body, "commentType": "text", "parentCommentId": 1}
        self._request("POST", self._pr_path(pr, f"/threads/{thread_id}/comments"), json=payload)

    def resolve_comment(self, pr: PRInfo, thread_id: str, resolution: CommentResolution) -> None:
        status = RESOLUTION_STATUS[reject_unknown(resolution)]
        self.update_thread_status(pr, thread_id, status)

    def update_thread_status(self, pr: PRInfo, thread_id: str, status: int) -> None:
        self._request("PATCH", self._pr_path(pr, f"/threads/{thread_id}"), json={"status": status})

    def get_build_logs(self, pr: PRInfo, build_id: str) -> str:
        resp = self._request("GET", self._project_path(pr, f"/build/builds/{build_id}/timeline"))
        timeline = self._json(resp, "timeline") or {}
        parts: List[str] = []
        for record in timeline.get("records") or []:
            if record.get("type") != "Task" or record.get("result") != "failed":
                continue
            parts.append(f"=== Failed Task: {record.get('name', '')} ===\n")
            for issue in record.get("issues") or []:
                parts.append(f"[{issue.get('type', '')}] {issue.get('message', '')}\n")
            log_ref = record.get("log") or {}
            if not log_ref.get("id"):
                continue
            try:
                log_resp = self._request(
                    "GET",
                    self._project_path(pr, f"/build/builds/{build_id}/logs/{log_ref['id']}"),
                    accept="text/plain",
                )
            except (AuthExpiredError, RateLimitError):
                raise
            except ProviderError as e:
                LOG.warning("Failed to fetch build log for task %s: %s", record.get("name"), e)
                continue
            parts.append(distill(log_resp.text or ""))
            parts.append("\n")
        if not parts:
            return "No failed tasks found in build timeline."
        return "".join(parts)

    def retry_build(self, pr: PRInfo, build_id: str) -> None:
        """Re-run the failed jobs of a build in place."""
        self._request(
            "PATCH",
            self._project_path(pr, f"/build/builds/{build_id}"),
            params={"retry": "true"},
            json={"retry": True},
        )

    def get_current_user_id(self, pr: PRInfo) -> str:
        org = pr.organization or self.organization
        data = self._json(self._request("GET", f"/{quote(org, safe='')}/_apis/connectiondata"), "connection data")
        user_id = (data.get("authenticatedUser") or {}).get("id", "")
        if not user_id:
            raise MalformedResponseError("connection data has no authenticated user id")
        return user_id
