"""Tests for the command line interface"""

import json
from unittest.mock import patch

import pytest

from booksync.book_store import BookStore
from booksync.main import drain_spool, main
from booksync.sync_manager import SyncManager


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "global:\n"
        f"  database: {tmp_path / 'books.db'}\n"
        "  timezone: Europe/London\n"
        f"  spool_file: {tmp_path / 'spool.jsonl'}\n"
    )
    return path


@pytest.fixture
def run(config_file):
    """Run the CLI against the temporary config without touching global logging"""

    def _run(*args: str) -> None:
        with patch("booksync.main.setup_logging"):
            main(["--config", str(config_file), *args])

    return _run


class TestObserveAndStatus:
    def test_observe_both_platforms(self, run, tmp_path, capsys) -> None:
        run("observe", "--source", "kindle", "--title", "Project Hail Mary", "--author", "Andy Weir", "--progress", "0.5")
        assert "Created" in capsys.readouterr().out

        run(
            "observe",
            "--source",
            "audible",
            "--title",
            "Project Hail Mary (Unabridged)",
            "--position-ms",
            "1800000",
            "--total-ms",
            "7200000",
        )
        assert "Merged" in capsys.readouterr().out

        run("status")
        output = capsys.readouterr().out
        assert "Project Hail Mary (Unabridged) by Andy Weir" in output
        assert "Continue on Audible: Resume at 1h 0m / 2h 0m" in output
        assert "Kindle is 25% ahead" in output

        assert len(BookStore(str(tmp_path / "books.db")).get_all_books()) == 1

    def test_observe_without_progress_fails(self, run) -> None:
        with pytest.raises(SystemExit) as exc_info:
            run("observe", "--source", "kindle", "--title", "Dune")
        assert exc_info.value.code == 1

    def test_dry_run_observe(self, run, tmp_path) -> None:
        run("--dry-run", "observe", "--source", "kindle", "--title", "Dune", "--progress", "0.3")
        assert BookStore(str(tmp_path / "books.db")).get_all_books() == []

    def test_unmatched(self, run, capsys) -> None:
        run("observe", "--source", "audible", "--title", "Dune", "--progress", "0.3")
        capsys.readouterr()

        run("unmatched")
        assert "Waiting for a match" in capsys.readouterr().out


class TestUserCommands:
    def test_match_unknown_book(self, run) -> None:
        with pytest.raises(SystemExit) as exc_info:
            run("match", "bksync_missing", "bksync_other")
        assert exc_info.value.code == 1

    def test_remove_unknown_book(self, run) -> None:
        with pytest.raises(SystemExit):
            run("remove", "bksync_missing")

    def test_export(self, run, tmp_path) -> None:
        run("observe", "--source", "kindle", "--title", "Dune", "--progress", "0.3")
        export_file = tmp_path / "export.json"

        run("export", str(export_file))
        assert len(json.loads(export_file.read_text())) == 1

    def test_no_command_prints_help(self) -> None:
        with pytest.raises(SystemExit):
            main([])


class TestIngest:
    def test_ingest_with_bad_line(self, run, tmp_path) -> None:
        observations = tmp_path / "observations.jsonl"
        observations.write_text(
            '{"source": "kindle", "title": "Dune", "progress": 0.4}\n'
            "\n"
            "not json\n"
            '{"source": "audible", "title": "Dune (Unabridged)", "progress": 0.3}\n'
        )

        with pytest.raises(SystemExit):
            run("ingest", str(observations))

        books = BookStore(str(tmp_path / "books.db")).get_all_books()
        assert len(books) == 1
        assert books[0].is_matched

    def test_drain_spool(self, tmp_path) -> None:
        store = BookStore(str(tmp_path / "books.db"))
        manager = SyncManager({}, store=store)
        spool = tmp_path / "spool.jsonl"

        assert drain_spool(manager, str(spool)) is None

        spool.write_text('{"source": "kindle", "title": "Dune", "page": 10, "total_pages": 100}\n')
        result = drain_spool(manager, str(spool))

        assert result["books_created"] == 1
        assert not spool.exists()
        assert not (tmp_path / "spool.jsonl.processing").exists()
        assert store.get_all_books()[0].kindle_progress == 0.1

    def test_drain_spool_survives_corrupt_lines(self, tmp_path) -> None:
        store = BookStore(str(tmp_path / "books.db"))
        manager = SyncManager({}, store=store)
        spool = tmp_path / "spool.jsonl"
        spool.write_bytes(
            b'{"source": "kindle", "title": "Dune", "progress": 0.4}\n'
            b"\xff\xfe not json\n"
            b'{"source": "kindle", "notification": 5}\n'
            b'{"source": "kindle", "title": "Dune", "author": ["Frank Herbert"], "progress": 0.4}\n'
            b'{"source": "audible", "title": "Dune (Unabridged)", "progress": 0.3}\n'
        )

        result = drain_spool(manager, str(spool))

        assert len(result["errors"]) == 3
        assert result["books_created"] == 1
        assert result["books_merged"] == 1
        assert not (tmp_path / "spool.jsonl.processing").exists()
        assert store.get_all_books()[0].is_matched

    def test_drain_spool_resumes_leftover_processing_file(self, tmp_path) -> None:
        store = BookStore(str(tmp_path / "books.db"))
        manager = SyncManager({}, store=store)
        spool = tmp_path / "spool.jsonl"
        leftover = tmp_path / "spool.jsonl.processing"
        leftover.write_text('{"source": "kindle", "title": "Dune", "progress": 0.4}')
        spool.write_text('{"source": "kindle", "title": "Emma", "progress": 0.2}\n')

        result = drain_spool(manager, str(spool))

        assert result["books_created"] == 2
        assert not leftover.exists()
        assert not spool.exists()
        assert {book.title for book in store.get_all_books()} == {"Dune", "Emma"}

        leftover.write_text('{"source": "kindle", "title": "Ulysses", "progress": 0.1}\n')
        assert drain_spool(manager, str(spool))["books_created"] == 1
