"""Tests for otto.services.fixer (two-phase CI fix)."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from otto.llm import PromptResponse, SessionInfo
from otto.provider import BuildInfo, PipelineState, PipelineStatus, PRInfo, ProviderError
from otto.services.fixer import Fixer, FixError, diagnosis_summary, is_infra_failure
from otto.services.git import NoChangesError
from otto.services.signature import OTTO_MARKER
from otto.store import PRDocument, PRNotFoundError, PRStore


@pytest.fixture
def store(tmp_path: Path) -> PRStore:
    return PRStore(tmp_path / "prs")


@pytest.fixture
def llm() -> MagicMock:
    llm = MagicMock()
    llm.create_session.return_value = SessionInfo(id="s1", title="t", workdir="/w")
    llm.send_prompt.side_effect = [
        PromptResponse(content="test_login fails: missing import in app/auth.py:12"),
        PromptResponse(content="Added the import."),
    ]
    return llm


@pytest.fixture
def workdirs(tmp_path: Path) -> MagicMock:
    w = MagicMock()
    w.prepare.return_value = tmp_path / "repo"
    return w


@pytest.fixture
def backend() -> MagicMock:
    b = MagicMock()
    b.get_build_logs.return_value = "##[error] ImportError: cannot import name 'x'"
    return b


@pytest.fixture
def pipeline() -> PipelineStatus:
    return PipelineStatus(
        state=PipelineState.FAILED,
        builds=[
            BuildInfo(id="1", name="CI", status="completed", result="failed"),
            BuildInfo(id="2", name="Lint", status="completed", result="succeeded"),
        ],
    )


def _doc(store: PRStore, **kwargs) -> PRDocument:
    doc = PRDocument(id="7", provider="ado", title="Feature", repo="repo", branch="feature/x", target="main", **kwargs)
    store.save(doc)
    return doc


def _fixer(store, llm, workdirs) -> Fixer:
    return Fixer(store, llm, workdirs, bot_name="Otto", bot_email="otto@localhost")


class TestFixer:
    def test_successful_attempt(self, store, llm, workdirs, backend, pipeline, mocker) -> None:
        """One commit, attempts incremented, back to watching, entry appended."""
        commit = mocker.patch("otto.services.fixer.commit_all_and_push", return_value="abcd1234")
        doc = _doc(store)
        _fixer(store, llm, workdirs).fix(doc, PRInfo(id="7"), backend, pipeline)

        saved = store.load("ado", "7")
        assert saved.fix_attempts == 1
        assert saved.status == "watching"
        assert "### Attempt 1" in saved.body
        assert "abcd1234" in saved.body
        backend.get_build_logs.assert_called_once()
        assert backend.get_build_logs.call_args.args[1] == "1"
        commit.assert_called_once()
        assert commit.call_args.args[0] == "feature/x"
        analysis_prompt = llm.send_prompt.call_args_list[0].args[1]
        assert "ImportError" in analysis_prompt
        fix_prompt = llm.send_prompt.call_args_list[1].args[1]
        assert "missing import in app/auth.py:12" in fix_prompt
        assert llm.delete_session.call_count == 2
        backend.post_comment.assert_not_called()

    def test_last_attempt_marks_failed(self, store, llm, workdirs, backend, pipeline, mocker) -> None:
        """Reaching the maximum sets failed and posts a signed notice."""
        mocker.patch("otto.services.fixer.commit_all_and_push", return_value="abcd1234")
        doc = _doc(store, fix_attempts=4, max_fix_attempts=5)
        _fixer(store, llm, workdirs).fix(doc, PRInfo(id="7"), backend, pipeline)

        saved = store.load("ado", "7")
        assert saved.fix_attempts == 5
        assert saved.status == "failed"
        body = backend.post_comment.call_args.args[1]
        assert "Exhausted 5 fix attempts" in body
        assert OTTO_MARKER in body

    def test_no_logs(self, store, llm, workdirs, pipeline, mocker) -> None:
        """No failed build logs is an error and nothing is committed."""
        commit = mocker.patch("otto.services.fixer.commit_all_and_push")
        backend = MagicMock()
        backend.get_build_logs.side_effect = ProviderError("gone")
        doc = _doc(store)
        with pytest.raises(FixError, match="no failed build logs found"):
            _fixer(store, llm, workdirs).fix(doc, PRInfo(id="7"), backend, pipeline)
        commit.assert_not_called()
        llm.create_session.assert_not_called()
        assert store.load("ado", "7").status == "watching"

    def test_no_changes_rolls_back(self, store, llm, workdirs, backend, pipeline, mocker) -> None:
        """Nothing to commit is a failure; status returns to watching, attempts unchanged."""
        mocker.patch("otto.services.fixer.commit_all_and_push", side_effect=NoChangesError("no changes to commit"))
        doc = _doc(store, fix_attempts=1)
        with pytest.raises(NoChangesError):
            _fixer(store, llm, workdirs).fix(doc, PRInfo(id="7"), backend, pipeline)
        saved = store.load("ado", "7")
        assert saved.status == "watching"
        assert saved.fix_attempts == 1

    def test_status_is_fixing_while_running(self, store, llm, workdirs, backend, pipeline, mocker) -> None:
        """The document is persisted as fixing before the LLM runs."""
        seen = []

        def commit(*args, **kwargs):
            seen.append(store.load("ado", "7").status)
            return "abcd1234"

        mocker.patch("otto.services.fixer.commit_all_and_push", side_effect=commit)
        _fixer(store, llm, workdirs).fix(_doc(store), PRInfo(id="7"), backend, pipeline)
        assert seen == ["fixing"]

    def test_removed_during_fix_not_recreated(self, store, llm, workdirs, backend, pipeline, mocker) -> None:
        """A PR removed while the fix runs stays removed, even on the error path."""

        def commit(*args, **kwargs):
            store.delete("ado", "7")
            return "abcd1234"

        mocker.patch("otto.services.fixer.commit_all_and_push", side_effect=commit)
        with pytest.raises(PRNotFoundError):
            _fixer(store, llm, workdirs).fix(_doc(store), PRInfo(id="7"), backend, pipeline)
        assert not store.exists("ado", "7")


def _infra_llm() -> MagicMock:
    llm = MagicMock()
    llm.create_session.return_value = SessionInfo(id="s1", title="t", workdir="/w")
    llm.send_prompt.return_value = PromptResponse(
        content="CLASSIFICATION: INFRASTRUCTURE\nNo agent found in pool Azure Pipelines."
    )
    return llm


class TestInfraRetry:
    def test_retries_failed_builds_without_counting(self, store, workdirs, backend, pipeline, mocker) -> None:
        """Infrastructure failures re-queue builds; no commit, no attempt used."""
        commit = mocker.patch("otto.services.fixer.commit_all_and_push")
        llm = _infra_llm()
        doc = _fixer(store, llm, workdirs).fix(_doc(store, fix_attempts=1), PRInfo(id="7"), backend, pipeline)

        backend.retry_build.assert_called_once()
        assert backend.retry_build.call_args.args[1] == "1"
        commit.assert_not_called()
        assert llm.send_prompt.call_count == 1
        saved = store.load("ado", "7")
        assert saved == doc
        assert saved.fix_attempts == 1
        assert saved.status == "watching"
        assert saved.pipeline_state == "inProgress"
        assert "### Infra Retry" in saved.body
        assert "Retried 1 build(s)" in saved.body
        assert "No agent found in pool Azure Pipelines." in saved.body

    def test_partial_retry_failure_raises_after_saving(self, store, workdirs, pipeline, mocker) -> None:
        mocker.patch("otto.services.fixer.commit_all_and_push")
        pipeline.builds.append(BuildInfo(id="3", name="Deploy", status="completed", result="failed"))
        backend = MagicMock()
        backend.get_build_logs.return_value = "agent lost"
        backend.retry_build.side_effect = [None, ProviderError("409 conflict")]
        with pytest.raises(FixError, match="retried 1 of 2"):
            _fixer(store, _infra_llm(), workdirs).fix(_doc(store), PRInfo(id="7"), backend, pipeline)
        saved = store.load("ado", "7")
        assert saved.status == "watching"
        assert "Retried 1 build(s)" in saved.body

    def test_no_build_retried_rolls_back(self, store, workdirs, backend, pipeline, mocker) -> None:
        mocker.patch("otto.services.fixer.commit_all_and_push")
        backend.retry_build.side_effect = ProviderError("unsupported")
        with pytest.raises(FixError, match="no build could be retried"):
            _fixer(store, _infra_llm(), workdirs).fix(_doc(store), PRInfo(id="7"), backend, pipeline)
        saved = store.load("ado", "7")
        assert saved.status == "watching"
        assert saved.pipeline_state == ""
        assert "Infra Retry" not in saved.body


class TestClassification:
    @pytest.mark.parametrize(
        "diagnosis,infra",
        [
            ("CLASSIFICATION: INFRASTRUCTURE\nagent offline", True),
            ("**Classification: infrastructure**\nflaky", True),
            ("Summary\n\nCLASSIFICATION: CODE\nsyntax error", False),
            ("No header at all\nImportError", False),
            ("1\n2\n3\n4\n5\nCLASSIFICATION: INFRASTRUCTURE", False),
        ],
    )
    def test_is_infra_failure(self, diagnosis: str, infra: bool) -> None:
        assert is_infra_failure(diagnosis) is infra

    def test_summary_skips_header(self) -> None:
        assert diagnosis_summary("CLASSIFICATION: CODE\n\nImportError in app.py") == "ImportError in app.py"


def test_collect_logs_only_failed_builds(store, llm, workdirs, backend) -> None:
    """Logs are collected per failed build, labelled by name."""
    pipeline = PipelineStatus(
        state=PipelineState.FAILED,
        builds=[
            BuildInfo(id="1", name="CI", result="failed"),
            BuildInfo(id="2", name="Checks", result="failure"),
            BuildInfo(id="3", name="Lint", result="succeeded"),
        ],
    )
    logs = _fixer(store, llm, workdirs).collect_logs(backend, PRInfo(id="7"), pipeline)
    assert "### Build: CI (ID: 1)" in logs
    assert "### Build: Checks (ID: 2)" in logs
    assert "Lint" not in logs
