"""Tests for otto.store (PRDocument, PRStore, FileLock)."""

from pathlib import Path

import pytest

from otto.store import (
    CorruptDocumentError,
    FileLock,
    LockTimeoutError,
    PRDocument,
    PRNotFoundError,
    PRStore,
    parse_document,
    render_document,
)


def _doc(pr_id: str = "1234", provider: str = "ado", **kwargs) -> PRDocument:
    fields = {
        "title": "Add feature",
        "repo": "repo",
        "branch": "feature/x",
        "target": "main",
        "url": f"https://dev.azure.com/o/p/_git/repo/pullrequest/{pr_id}",
        "created": "2026-01-05T10:00:00+00:00",
    }
    fields.update(kwargs)
    return PRDocument(id=pr_id, provider=provider, **fields)


class TestPRDocument:
    def test_defaults(self) -> None:
        """New documents start watching with no attempts."""
        doc = _doc()
        assert doc.status == "watching"
        assert doc.fix_attempts == 0
        assert doc.max_fix_attempts == 5
        assert doc.key == "ado__1234"

    def test_mark_seen_is_idempotent(self) -> None:
        """A key is recorded once."""
        doc = _doc()
        doc.mark_seen("10:1")
        doc.mark_seen("10:1")
        assert doc.seen_comment_ids == ["10:1"]

    def test_append_entry(self) -> None:
        """Entries are separated by a blank line."""
        doc = _doc()
        doc.append_entry("### One")
        doc.append_entry("### Two\n")
        assert doc.body == "### One\n\n### Two\n"

    def test_int_id_and_yaml_datetime_coerced(self) -> None:
        """Hand-edited files with an int id or bare timestamps still load."""
        text = "---\nid: 55\nprovider: github\ncreated: 2026-01-05 10:00:00\nseen_comment_ids: [1, 2]\n---\n\nbody\n"
        doc = parse_document(text)
        assert doc.id == "55"
        assert doc.created.startswith("2026-01-05")
        assert doc.seen_comment_ids == ["1", "2"]

    def test_waiting_on_lists_blockers(self) -> None:
        """Open stages are joined in order; a clean PR is all clear."""
        doc = _doc(pipeline_state="failed", has_conflicts=True)
        assert doc.waiting_on == "merlinbot, feedback, pipelines (failed), merge conflicts"
        doc = _doc(merlinbot_done=True, feedback_done=True, pipeline_state="inProgress")
        assert doc.waiting_on == "pipelines"
        doc.pipeline_state = "succeeded"
        assert doc.waiting_on == "all clear"

    @pytest.mark.parametrize(
        "status,expected",
        [("merged", "merged"), ("abandoned", "abandoned"), ("failed", "manual intervention"), ("fixing", "fix in progress")],
    )
    def test_waiting_on_by_status(self, status: str, expected: str) -> None:
        assert _doc(status=status, has_conflicts=True).waiting_on == expected

    def test_waiting_on_written_to_front_matter(self) -> None:
        """The derived value is rendered but not read back as a field."""
        doc = _doc(merlinbot_done=True, feedback_done=True, pipeline_state="succeeded")
        text = render_document(doc)
        assert "waiting_on: all clear\n" in text
        assert parse_document(text) == doc


class TestDocumentFormat:
    def test_render_front_matter_then_body(self) -> None:
        """Rendered file is front matter, blank line, body."""
        doc = _doc(body="# PR\n")
        text = render_document(doc)
        assert text.startswith("---\nid: '1234'\ntitle: Add feature\nprovider: ado\n")
        assert "\n---\n\n# PR\n" in text

    def test_round_trip(self) -> None:
        """parse_document inverts render_document."""
        doc = _doc(seen_comment_ids=["10:1", "11:3"], fix_attempts=2, body="### Attempt 1\n- ok\n")
        assert parse_document(render_document(doc)) == doc

    @pytest.mark.parametrize(
        "text",
        ["no front matter", "---\nid: 1\n", "---\n: [bad\n---\n", "---\n- a list\n---\n", "---\ntitle: x\n---\n"],
    )
    def test_corrupt(self, text: str) -> None:
        """Broken documents raise CorruptDocumentError."""
        with pytest.raises(CorruptDocumentError):
            parse_document(text)


class TestPRStore:
    def test_save_and_load(self, tmp_path: Path) -> None:
        """Documents are stored as {provider}__{id}.md."""
        store = PRStore(tmp_path)
        doc = _doc()
        path = store.save(doc)
        assert path == tmp_path / "ado__1234.md"
        assert store.exists("ado", "1234")
        assert store.load("ado", "1234") == doc
        assert not list(tmp_path.glob("*.tmp"))

    def test_load_missing(self, tmp_path: Path) -> None:
        """Unknown PRs raise PRNotFoundError."""
        with pytest.raises(PRNotFoundError):
            PRStore(tmp_path).load("ado", "1")

    def test_update(self, tmp_path: Path) -> None:
        """update applies fn under the lock and persists."""
        store = PRStore(tmp_path)
        store.save(_doc())

        def bump(d: PRDocument) -> None:
            d.fix_attempts += 1

        store.update("ado", "1234", bump)
        assert store.load("ado", "1234").fix_attempts == 1

    def test_delete(self, tmp_path: Path) -> None:
        """delete removes the document; deleting twice fails."""
        store = PRStore(tmp_path)
        store.save(_doc())
        store.delete("ado", "1234")
        assert not store.exists("ado", "1234")
        with pytest.raises(PRNotFoundError):
            store.delete("ado", "1234")

    def test_delete_removes_lock_file(self, tmp_path: Path) -> None:
        """No .lock sibling is left behind for a removed PR."""
        store = PRStore(tmp_path)
        store.save(_doc())
        assert (tmp_path / "ado__1234.md.lock").exists()
        store.delete("ado", "1234")
        assert list(tmp_path.iterdir()) == []

    def test_update_missing_does_not_recreate(self, tmp_path: Path) -> None:
        """update on a removed PR raises and writes nothing."""
        store = PRStore(tmp_path)
        store.save(_doc())
        store.delete("ado", "1234")
        with pytest.raises(PRNotFoundError):
            store.update("ado", "1234", lambda d: None)
        assert not store.exists("ado", "1234")
        assert list(tmp_path.iterdir()) == []

    def test_list_skips_corrupt(self, tmp_path: Path) -> None:
        """One corrupt file does not hide the others."""
        store = PRStore(tmp_path)
        store.save(_doc("1"))
        store.save(_doc("2", provider="github"))
        (tmp_path / "ado__3.md").write_text("garbage", encoding="utf-8")
        assert sorted(d.key for d in store.list()) == ["ado__1", "github__2"]

    def test_list_missing_dir(self, tmp_path: Path) -> None:
        """A store directory that does not exist is empty."""
        assert PRStore(tmp_path / "nope").list() == []

    def test_find(self, tmp_path: Path) -> None:
        """find locates an id across providers and rejects ambiguity."""
        store = PRStore(tmp_path)
        store.save(_doc("1"))
        store.save(_doc("2", provider="github"))
        store.save(_doc("2"))
        assert store.find("1").provider == "ado"
        with pytest.raises(PRNotFoundError):
            store.find("2")
        with pytest.raises(PRNotFoundError):
            store.find("9")

    def test_save_blocked_by_held_lock(self, tmp_path: Path) -> None:
        """A held exclusive lock makes save time out instead of writing."""
        store = PRStore(tmp_path, lock_timeout=0.2)
        doc = _doc()
        with FileLock(store.path_for("ado", "1234"), exclusive=True):
            with pytest.raises(LockTimeoutError):
                store.save(doc)
        assert not store.exists("ado", "1234")


class TestFileLock:
    def test_shared_locks_coexist(self, tmp_path: Path) -> None:
        """Two readers can hold the lock at once."""
        path = tmp_path / "x.md"
        with FileLock(path, exclusive=False):
            with FileLock(path, exclusive=False, timeout=0.2):
                pass

    def test_exclusive_blocks_reader(self, tmp_path: Path) -> None:
        """A writer blocks a reader until released."""
        path = tmp_path / "x.md"
        writer = FileLock(path, exclusive=True)
        writer.acquire()
        with pytest.raises(LockTimeoutError):
            FileLock(path, exclusive=False, timeout=0.2).acquire()
        writer.release()
        with FileLock(path, exclusive=False, timeout=0.2):
            pass
