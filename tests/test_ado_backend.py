"""Unit tests for the Azure DevOps backend (mocked API)."""

from unittest.mock import Mock, patch

import pytest

from otto.provider import (
    AuthExpiredError,
    CommentResolution,
    InlineComment,
    NotFoundError,
    PipelineState,
    PRInfo,
    RateLimitError,
    UnsupportedOperationError,
    WorkflowAction,
)
from otto.provider.ado import AdoBackend, aggregate_builds, is_thread_resolved, parse_pr_identifier


def _resp(status: int = 200, data=None, text: str = "", headers=None) -> Mock:
    resp = Mock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.text = text
    resp.reason = ""
    if data is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = data
    return resp


@pytest.fixture
def auth() -> Mock:
    a = Mock()
    a.get_auth_header.return_value = "Basic dGVzdA=="
    return a


@pytest.fixture
def backend(auth: Mock) -> AdoBackend:
    return AdoBackend(organization="myorg", project="proj", repository="repo", auth=auth)


@pytest.fixture
def pr() -> PRInfo:
    return PRInfo(id="1234", organization="myorg", project="proj", repo_id="repo")


class TestParsePRIdentifier:
    def test_bare_id(self) -> None:
        """A bare number has no repo, org or project."""
        assert parse_pr_identifier("1234") == ("1234", "", "", "")

    def test_urls_round_trip_to_same_tuple(self) -> None:
        """dev.azure.com and visualstudio.com URLs (with/without DefaultCollection) agree."""
        expected = ("1234", "repo", "myorg", "proj")
        assert parse_pr_identifier("https://dev.azure.com/myorg/proj/_git/repo/pullrequest/1234") == expected
        assert parse_pr_identifier("https://myorg.visualstudio.com/proj/_git/repo/pullrequest/1234") == expected
        assert (
            parse_pr_identifier("https://myorg.visualstudio.com/DefaultCollection/proj/_git/repo/pullrequest/1234")
            == expected
        )

    def test_encoded_segments_are_decoded(self) -> None:
        """Percent-encoded project and repo names come back decoded from both URL forms."""
        expected = ("5", "My Repo", "org", "My Project")
        assert parse_pr_identifier("https://dev.azure.com/org/My%20Project/_git/My%20Repo/pullrequest/5") == expected
        assert parse_pr_identifier("https://org.visualstudio.com/My%20Project/_git/My%20Repo/pullrequest/5") == expected

    def test_unrecognized(self) -> None:
        """Other URLs give empty fields."""
        assert parse_pr_identifier("https://github.com/o/r/pull/1") == ("", "", "", "")


class TestAggregateBuilds:
    def test_dedup_keeps_newest_per_definition(self) -> None:
        """Only the first build of each definition counts."""
        builds = [
            {"id": 3, "definition": {"name": "CI"}, "status": "completed", "result": "succeeded"},
            {"id": 2, "definition": {"name": "CI"}, "status": "completed", "result": "failed"},
            {"id": 1, "definition": {"name": "Lint"}, "status": "completed", "result": "succeeded"},
        ]
        status = aggregate_builds(builds)
        assert [b.name for b in status.builds] == ["CI", "Lint"]
        assert status.builds[0].id == "3"
        assert status.state == PipelineState.SUCCEEDED

    def test_failed_when_surviving_build_failed(self) -> None:
        """A failing latest build makes the pipeline failed."""
        builds = [
            {"id": 3, "definition": {"name": "CI"}, "status": "completed", "result": "failed"},
            {"id": 2, "definition": {"name": "CI"}, "status": "completed", "result": "succeeded"},
            {"id": 1, "definition": {"name": "Lint"}, "status": "completed", "result": "succeeded"},
        ]
        assert aggregate_builds(builds).state == PipelineState.FAILED

    def test_empty_is_pending(self) -> None:
        """No builds at all means pending."""
        assert aggregate_builds([]).state == PipelineState.PENDING

    def test_running_is_in_progress(self) -> None:
        """A build without a result is in progress."""
        builds = [
            {"id": 1, "definition": {"name": "CI"}, "status": "inProgress"},
            {"id": 2, "definition": {"name": "Lint"}, "status": "completed", "result": "succeeded"},
        ]
        assert aggregate_builds(builds).state == PipelineState.IN_PROGRESS

    def test_queued_is_pending(self) -> None:
        """A notStarted build has no result yet and reports pending, not in progress."""
        builds = [
            {"id": 1, "definition": {"name": "CI"}, "status": "notStarted", "result": ""},
            {"id": 2, "definition": {"name": "Lint"}, "status": "completed", "result": "succeeded"},
        ]
        assert aggregate_builds(builds).state == PipelineState.PENDING

    def test_running_wins_over_queued(self) -> None:
        builds = [
            {"id": 1, "definition": {"name": "CI"}, "status": "notStarted"},
            {"id": 2, "definition": {"name": "Lint"}, "status": "inProgress"},
        ]
        assert aggregate_builds(builds).state == PipelineState.IN_PROGRESS


def test_is_thread_resolved() -> None:
    """Fixed, wontFix, closed and byDesign are resolved; active and pending are not."""
    assert is_thread_resolved(2)
    assert is_thread_resolved("byDesign")
    assert not is_thread_resolved(1)
    assert not is_thread_resolved(6)
    assert not is_thread_resolved("active")
    assert not is_thread_resolved(None)


class TestRequest:
    def test_429_twice_then_ok(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Two 429s then 200: exactly three requests and a result."""
        responses = [
            _resp(429, headers={"Retry-After": "1"}),
            _resp(429),
            _resp(200, {"value": []}),
        ]
        with patch("otto.provider.ado.backend.wait_or_cancel") as wait:
            with patch.object(backend._session, "request", side_effect=responses) as req:
                status = backend.get_pipeline_status(pr)
        assert req.call_count == 3
        assert status.state == PipelineState.PENDING
        assert [c.args[1] for c in wait.call_args_list] == [1.0, 2.0]

    def test_429_exhausted(self, backend: AdoBackend, pr: PRInfo) -> None:
        """After three retries RateLimitError is raised."""
        with patch("otto.provider.ado.backend.wait_or_cancel"):
            with patch.object(backend._session, "request", return_value=_resp(429)) as req:
                with pytest.raises(RateLimitError):
                    backend.get_comments(pr)
        assert req.call_count == 4

    def test_203_refreshes_token_once(self, backend: AdoBackend, auth: Mock, pr: PRInfo) -> None:
        """First 203 invalidates the token and retries."""
        responses = [_resp(203, text="<html>sign in</html>"), _resp(200, {"value": []})]
        with patch.object(backend._session, "request", side_effect=responses) as req:
            assert backend.get_comments(pr) == []
        assert req.call_count == 2
        auth.invalidate_token.assert_called_once()

    def test_second_203_is_auth_expired(self, backend: AdoBackend, pr: PRInfo) -> None:
        """A 203 after refresh raises AuthExpiredError."""
        with patch.object(backend._session, "request", return_value=_resp(203)):
            with pytest.raises(AuthExpiredError):
                backend.get_comments(pr)

    def test_401_twice_is_auth_expired(self, backend: AdoBackend, auth: Mock, pr: PRInfo) -> None:
        with patch.object(backend._session, "request", return_value=_resp(401)) as req:
            with pytest.raises(AuthExpiredError):
                backend.get_pr("1234")
        assert req.call_count == 2
        auth.invalidate_token.assert_called_once()

    def test_404_not_found(self, backend: AdoBackend, pr: PRInfo) -> None:
        """404 maps to NotFoundError with the ADO message."""
        data = {"typeKey": "GitPullRequestNotFoundException", "message": "TF401180"}
        with patch.object(backend._session, "request", return_value=_resp(404, data)):
            with pytest.raises(NotFoundError) as exc_info:
                backend.get_pr("1234")
        assert "TF401180" in str(exc_info.value)

    def test_api_version_sent(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Every request carries api-version=7.1."""
        with patch.object(backend._session, "request", return_value=_resp(200, {"value": []})) as req:
            backend.get_comments(pr)
        assert req.call_args.kwargs["params"]["api-version"] == "7.1"
        assert req.call_args.kwargs["headers"]["Authorization"] == "Basic dGVzdA=="


class TestPullRequests:
    def test_get_pr_from_url(self, backend: AdoBackend) -> None:
        """get_pr parses the URL and strips refs/heads/."""
        data = {
            "pullRequestId": 77,
            "title": "Add feature",
            "status": "active",
            "sourceRefName": "refs/heads/feature/x",
            "targetRefName": "refs/heads/main",
            "createdBy": {"displayName": "Alice"},
            "repository": {"name": "other"},
            "lastMergeSourceCommit": {"commitId": "abc123"},
        }
        with patch.object(backend._session, "request", return_value=_resp(200, data)) as req:
            pr = backend.get_pr("https://dev.azure.com/org2/p2/_git/other/pullrequest/77")
        assert pr.id == "77"
        assert pr.source_branch == "feature/x"
        assert pr.target_branch == "main"
        assert pr.organization == "org2"
        assert pr.project == "p2"
        assert pr.head_sha == "abc123"
        assert pr.url == "https://dev.azure.com/org2/p2/_git/other/pullrequest/77"
        assert "/org2/p2/_apis/git/repositories/other/pullrequests/77" in req.call_args.args[1]

    def test_get_pr_encodes_names_once(self, backend: AdoBackend) -> None:
        """Names with spaces are quoted exactly once in the API path."""
        data = {"pullRequestId": 5, "repository": {"name": "My Repo"}}
        with patch.object(backend._session, "request", return_value=_resp(200, data)) as req:
            pr = backend.get_pr("https://dev.azure.com/org/My%20Project/_git/My%20Repo/pullrequest/5")
        assert req.call_args.args[1] == (
            "https://dev.azure.com/org/My%20Project/_apis/git/repositories/My%20Repo/pullrequests/5"
        )
        assert pr.project == "My Project"
        assert pr.repo_id == "My Repo"

    def test_pipeline_uses_merge_ref(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Builds are queried for refs/pull/{id}/merge."""
        with patch.object(backend._session, "request", return_value=_resp(200, {"value": []})) as req:
            backend.get_pipeline_status(pr)
        assert req.call_args.kwargs["params"]["branchName"] == "refs/pull/1234/merge"
        assert req.call_args.args[1].endswith("/myorg/proj/_apis/build/builds")

    def test_get_comments_flattens_threads(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Thread status and context apply to every comment; deleted comments are dropped."""
        data = {
            "value": [
                {
                    "id": 10,
                    "status": "active",
                    "threadContext": {"filePath": "/src/a.py", "rightFileStart": {"line": 12, "offset": 1}},
                    "comments": [
                        {"id": 1, "author": {"displayName": "Bob"}, "content": "Fix this", "commentType": "text"},
                        {"id": 2, "author": {"displayName": "Bob"}, "content": "gone", "isDeleted": True},
                    ],
                },
                {
                    "id": 11,
                    "status": 2,
                    "comments": [{"id": 1, "author": {"displayName": "CI"}, "content": "x", "commentType": "system"}],
                },
            ]
        }
        with patch.object(backend._session, "request", return_value=_resp(200, data)):
            comments = backend.get_comments(pr)
        assert len(comments) == 2
        first, second = comments
        assert (first.thread_id, first.id, first.file_path, first.line) == ("10", "1", "/src/a.py", 12)
        assert not first.is_resolved
        assert first.seen_key == "10:1"
        assert second.is_resolved
        assert second.comment_type == "system"


class TestComments:
    def test_inline_comment_payload(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Inline comments get a leading slash and a right-side position."""
        with patch.object(backend._session, "request", return_value=_resp(200, {"id": 5})) as req:
            backend.post_inline_comment(pr, InlineComment(file_path="src/a.py", line=7, body="hm"))
        body = req.call_args.kwargs["json"]
        ctx = body["threadContext"]
        assert ctx["filePath"] == "/src/a.py"
        assert ctx["rightFileStart"] == {"line": 7, "offset": 1}
        assert "leftFileStart" not in ctx
        assert body["status"] == 1

    def test_inline_comment_left_side(self, backend: AdoBackend, pr: PRInfo) -> None:
        """side=left anchors to the deleted code."""
        with patch.object(backend._session, "request", return_value=_resp(200, {"id": 5})) as req:
            backend.post_inline_comment(pr, InlineComment(file_path="/a.py", line=3, body="x", side="left"))
        ctx = req.call_args.kwargs["json"]["threadContext"]
        assert ctx["leftFileStart"] == {"line": 3, "offset": 1}

    def test_reply_to_thread(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Replies post to the thread's comments."""
        with patch.object(backend._session, "request", return_value=_resp(200, {})) as req:
            backend.reply_to_comment(pr, "10", "Done")
        assert req.call_args.args[0] == "POST"
        assert req.call_args.args[1].endswith("/pullrequests/1234/threads/10/comments")
        assert req.call_args.kwargs["json"]["parentCommentId"] == 1

    @pytest.mark.parametrize(
        "resolution,status",
        [(CommentResolution.FIXED, 2), (CommentResolution.WONT_FIX, 3), (CommentResolution.BY_DESIGN, 5)],
    )
    def test_resolve_sets_thread_status(self, backend: AdoBackend, pr: PRInfo, resolution, status) -> None:
        """Resolution maps to the thread status code."""
        with patch.object(backend._session, "request", return_value=_resp(200, {})) as req:
            backend.resolve_comment(pr, "10", resolution)
        assert req.call_args.args[0] == "PATCH"
        assert req.call_args.args[1].endswith("/threads/10")
        assert req.call_args.kwargs["json"] == {"status": status}

    def test_resolve_unknown_rejected(self, backend: AdoBackend, pr: PRInfo) -> None:
        """unknown is not a valid resolution."""
        with patch.object(backend._session, "request") as req:
            with pytest.raises(ValueError):
                backend.resolve_comment(pr, "10", CommentResolution.UNKNOWN)
        req.assert_not_called()


class TestBuildLogs:
    def test_failed_tasks_distilled(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Failed task issues and distilled logs are returned."""
        timeline = {
            "records": [
                {"type": "Task", "result": "succeeded", "name": "Checkout", "log": {"id": 1}},
                {
                    "type": "Task",
                    "result": "failed",
                    "name": "Run tests",
                    "issues": [{"type": "error", "message": "3 tests failed"}],
                    "log": {"id": 7},
                },
            ]
        }
        log = _resp(200, text="\x1b[31m##[error]\x1b[0mAssertionError in test_x")
        with patch.object(backend._session, "request", side_effect=[_resp(200, timeline), log]) as req:
            out = backend.get_build_logs(pr, "99")
        assert "=== Failed Task: Run tests ===" in out
        assert "[error] 3 tests failed" in out
        assert "##[error]AssertionError in test_x" in out
        assert "\x1b" not in out
        assert req.call_args.args[1].endswith("/build/builds/99/logs/7")
        assert req.call_args.kwargs["headers"]["Accept"] == "text/plain"

    def test_no_failed_tasks(self, backend: AdoBackend, pr: PRInfo) -> None:
        """A clean timeline gives a fixed message."""
        with patch.object(backend._session, "request", return_value=_resp(200, {"records": []})):
            assert backend.get_build_logs(pr, "99") == "No failed tasks found in build timeline."

    def test_retry_build(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Retry PATCHes the build with retry=true."""
        with patch.object(backend._session, "request", return_value=_resp(200, {})) as req:
            backend.retry_build(pr, "99")
        method, url = req.call_args.args[:2]
        assert method == "PATCH"
        assert url.endswith("/myorg/proj/_apis/build/builds/99")
        assert req.call_args.kwargs["params"]["retry"] == "true"
        assert req.call_args.kwargs["json"] == {"retry": True}


class TestWorkflow:
    def test_submit_unsupported(self, backend: AdoBackend, pr: PRInfo) -> None:
        """submit raises UnsupportedOperationError."""
        with pytest.raises(UnsupportedOperationError):
            backend.run_workflow(pr, WorkflowAction.SUBMIT)

    def test_auto_complete(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Auto-complete is set by the authenticated user."""
        responses = [_resp(200, {"authenticatedUser": {"id": "user-guid"}}), _resp(200, {})]
        with patch.object(backend._session, "request", side_effect=responses) as req:
            backend.run_workflow(pr, WorkflowAction.AUTO_COMPLETE)
        method, url = req.call_args.args[:2]
        assert method == "PATCH"
        assert url.endswith("/pullrequests/1234")
        assert req.call_args.kwargs["json"]["autoCompleteSetBy"] == {"id": "user-guid"}

    def test_create_work_item_patch_document(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Work items are created with a JSON patch document."""
        backend.area_path = "proj\\Team"
        with patch.object(backend._session, "request", return_value=_resp(200, {"id": 42})) as req:
            backend.run_workflow(pr, WorkflowAction.CREATE_WORK_ITEM)
        assert req.call_args.args[1].endswith("/wit/workitems/$Task")
        assert req.call_args.kwargs["headers"]["Content-Type"] == "application/json-patch+json"
        paths = [op["path"] for op in req.call_args.kwargs["json"]]
        assert "/fields/System.AreaPath" in paths

    def test_address_bot_closes_empty_threads(self, backend: AdoBackend, pr: PRInfo) -> None:
        """Bot threads with no feedback are closed by-design; others are left open."""
        threads = {
            "value": [
                {
                    "id": 20,
                    "status": 1,
                    "comments": [
                        {"id": 1, "author": {"displayName": "MerlinBot"}, "content": "There is no AI feedback on this pull request."}
                    ],
                },
                {
                    "id": 21,
                    "status": 1,
                    "comments": [{"id": 1, "author": {"displayName": "MerlinBot"}, "content": "Consider a test"}],
                },
                {"id": 22, "status": 1, "comments": [{"id": 1, "author": {"displayName": "Bob"}, "content": "hi"}]},
            ]
        }
        with patch.object(backend._session, "request", side_effect=[_resp(200, threads), _resp(200, {})]) as req:
            backend.run_workflow(pr, WorkflowAction.ADDRESS_BOT)
        assert req.call_count == 2
        assert req.call_args.args[0] == "PATCH"
        assert req.call_args.args[1].endswith("/threads/20")
        assert req.call_args.kwargs["json"] == {"status": 5}


def test_matches_url(backend: AdoBackend) -> None:
    """ADO hosts match; others do not."""
    assert backend.matches_url("https://dev.azure.com/o/p/_git/r/pullrequest/1")
    assert backend.matches_url("https://o.visualstudio.com/p/_git/r/pullrequest/1")
    assert not backend.matches_url("https://github.com/o/r/pull/1")
