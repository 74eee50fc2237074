"""Tests for the observation pipeline"""

import concurrent.futures
import sqlite3
import time
from unittest.mock import patch

import pytest

from booksync.book_store import BookSession, BookStore
from booksync.models import BookSource, Observation
from booksync.sync_manager import SyncManager
from booksync.utils import generate_book_id


@pytest.fixture
def store(tmp_path) -> BookStore:
    return BookStore(str(tmp_path / "books.db"))


@pytest.fixture
def manager(store: BookStore) -> SyncManager:
    return SyncManager({"workers": 4}, store=store)


class TestRecordObservation:
    """Test create / update / merge routing"""

    def test_end_to_end_project_hail_mary(self, manager: SyncManager, store: BookStore) -> None:
        """Kindle first, then a noisier Audible title with no author"""
        first = manager.record_observation(
            Observation.for_kindle("Project Hail Mary", "Andy Weir", progress=0.10)
        )
        assert first["status"] == "created"
        assert len(store.get_unmatched()) == 1

        second = manager.record_observation(
            Observation.for_audible("Project Hail Mary: A Novel (Unabridged)", "", progress=0.08)
        )
        assert second["status"] == "merged"

        books = store.get_all_books()
        assert len(books) == 1
        merged = books[0]
        assert merged.title == "Project Hail Mary: A Novel (Unabridged)"
        assert merged.author == "Andy Weir"
        assert merged.id == generate_book_id("Project Hail Mary: A Novel (Unabridged)", "Andy Weir")
        assert merged.kindle_progress == 0.10
        assert merged.audible_progress == 0.08
        assert store.get_unmatched() == []

    def test_audible_first_then_kindle(self, manager: SyncManager, store: BookStore) -> None:
        manager.record_observation(
            Observation.for_audible(
                "Dune (Unabridged)",
                "Frank Herbert",
                position_ms=3_600_000,
                total_ms=36_000_000,
                cover_url="https://example.com/dune.jpg",
            )
        )
        result = manager.record_observation(Observation.for_kindle("Dune", "", page=100, total_pages=400))

        assert result["status"] == "merged"
        books = store.get_all_books()
        assert len(books) == 1
        assert books[0].title == "Dune (Unabridged)"
        assert books[0].author == "Frank Herbert"
        assert books[0].kindle_progress == 0.25
        assert books[0].audible_progress == 0.1
        assert books[0].cover_url == "https://example.com/dune.jpg"

    def test_refresh_after_merge(self, manager: SyncManager, store: BookStore) -> None:
        manager.record_observation(Observation.for_kindle("Project Hail Mary", "Andy Weir", progress=0.10))
        manager.record_observation(
            Observation.for_audible("Project Hail Mary: A Novel (Unabridged)", "", progress=0.08, total_ms=58_000_000)
        )

        result = manager.record_observation(
            Observation.for_kindle("Project Hail Mary", "", page=250, total_pages=500, chapter="Chapter 12")
        )
        assert result["status"] == "updated"

        books = store.get_all_books()
        assert len(books) == 1
        book = books[0]
        assert book.kindle_progress == 0.5
        assert book.kindle_last_page == 250
        assert book.kindle_chapter == "Chapter 12"
        assert book.audible_progress == 0.08
        assert book.audible_total_ms == 58_000_000

        status = manager.get_book_status(book)
        assert status["sync_delta"].ahead_platform == BookSource.KINDLE
        assert status["sync_delta"].delta_percent == 42
        assert status["audible_resume"].estimated_position_ms == 29_000_000
        assert status["kindle_resume"].estimated_page == 40

    def test_refresh_keeps_known_page_data(self, manager: SyncManager, store: BookStore) -> None:
        manager.record_observation(Observation.for_kindle("Emma", "Jane Austen", page=10, total_pages=400))
        manager.record_observation(Observation.for_kindle("Emma", "Jane Austen", progress=0.05))

        book = store.get_all_books()[0]
        assert book.kindle_progress == 0.05
        assert book.kindle_last_page == 10
        assert book.kindle_total_pages == 400

    def test_sequel_gets_its_own_record(self, manager: SyncManager, store: BookStore) -> None:
        manager.record_observation(Observation.for_kindle("Dune", "Frank Herbert", progress=0.95))
        result = manager.record_observation(Observation.for_kindle("Dune Messiah", "Frank Herbert", progress=0.02))

        assert result["status"] == "created"
        progress = {book.title: book.kindle_progress for book in store.get_all_books()}
        assert progress == {"Dune": 0.95, "Dune Messiah": 0.02}

    def test_near_title_gets_its_own_record(self, manager: SyncManager, store: BookStore) -> None:
        manager.record_observation(Observation.for_kindle("The Hobbit", "", progress=0.5))
        result = manager.record_observation(Observation.for_kindle("The Rabbit", "", progress=0.1))

        assert result["status"] == "created"
        progress = {book.title: book.kindle_progress for book in store.get_all_books()}
        assert progress == {"The Hobbit": 0.5, "The Rabbit": 0.1}

    def test_unrelated_books_stay_separate(self, manager: SyncManager, store: BookStore) -> None:
        manager.record_observation(Observation.for_kindle("Dune", "Frank Herbert", progress=0.3))
        result = manager.record_observation(
            Observation.for_audible("The Martian", "Andy Weir", progress=0.3)
        )

        assert result["status"] == "created"
        assert len(store.get_unmatched()) == 2

    def test_blank_title_is_skipped(self, manager: SyncManager, store: BookStore) -> None:
        result = manager.record_observation(Observation.for_kindle("  (Unabridged) ", "", progress=0.3))

        assert result["status"] == "skipped"
        assert store.get_all_books() == []

    def test_dry_run_does_not_write(self, store: BookStore) -> None:
        manager = SyncManager({}, store=store, dry_run=True)
        result = manager.record_observation(Observation.for_kindle("Dune", "", progress=0.3))

        assert result["status"] == "created"
        assert store.get_all_books() == []


class TestConcurrency:
    """Concurrent observations must not produce competing merges"""

    def test_parallel_observations_merge_once(self, manager: SyncManager, store: BookStore) -> None:
        manager.record_observation(Observation.for_kindle("Project Hail Mary", "Andy Weir", progress=0.1))
        observation = Observation.for_audible("Project Hail Mary (Unabridged)", "", progress=0.2)

        with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(manager.record_observation, [observation] * 8))

        statuses = sorted(result["status"] for result in results)
        assert statuses.count("merged") == 1
        assert statuses.count("updated") == 7
        books = store.get_all_books()
        assert len(books) == 1
        assert books[0].is_matched

    def test_simultaneous_platforms_end_matched(self, manager: SyncManager, store: BookStore) -> None:
        observations = [
            Observation.for_kindle("Leviathan Wakes", "James S. A. Corey", progress=0.4),
            Observation.for_audible("Leviathan Wakes (The Expanse, Book 1)", "James S.A. Corey", progress=0.35),
        ]

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(manager.record_observation, observations))

        assert sorted(result["status"] for result in results) == ["created", "merged"]
        books = store.get_all_books()
        assert len(books) == 1
        assert books[0].kindle_progress == 0.4
        assert books[0].audible_progress == 0.35

    def test_separate_managers_merge_candidate_once(self, tmp_path, monkeypatch) -> None:
        """Two processes on one database file must not both claim the same Kindle record"""
        db_file = str(tmp_path / "shared.db")
        first = SyncManager({}, store=BookStore(db_file))
        second = SyncManager({}, store=BookStore(db_file))
        first.record_observation(Observation.for_kindle("Dune", "", progress=0.5))

        read_all = BookSession.get_all_books

        def slow_read(session: BookSession):
            books = read_all(session)
            time.sleep(0.2)
            return books

        monkeypatch.setattr(BookSession, "get_all_books", slow_read)

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(first.record_observation, Observation.for_audible("Dune Chronicles", "", progress=0.3)),
                executor.submit(second.record_observation, Observation.for_audible("Dune Audio Drama", "", progress=0.4)),
            ]
            statuses = sorted(future.result()["status"] for future in futures)

        monkeypatch.undo()
        books = BookStore(db_file).get_all_books()
        assert statuses == ["created", "merged"]
        assert len(books) == 2
        assert sum(book.has_kindle_data for book in books) == 1


class TestProcessObservations:
    """Test batch processing"""

    def test_sequential_batch(self, manager: SyncManager, store: BookStore) -> None:
        result = manager.process_observations(
            [
                Observation.for_kindle("Dune", "Frank Herbert", progress=0.1),
                Observation.for_kindle("Dune", "Frank Herbert", progress=0.2),
                Observation.for_audible("Dune (Unabridged)", "Frank Herbert", progress=0.15),
                Observation.for_audible("", "", progress=0.5),
            ]
        )

        assert result["success"] is True
        assert result["observations_processed"] == 4
        assert result["books_created"] == 1
        assert result["books_updated"] == 1
        assert result["books_merged"] == 1
        assert result["observations_skipped"] == 1
        assert all("book" not in detail for detail in result["details"])
        assert len(store.get_all_books()) == 1

    def test_parallel_batch(self, store: BookStore) -> None:
        manager = SyncManager({"workers": 4, "parallel": True}, store=store)
        observations = [
            Observation.for_kindle(title, "", progress=0.1) for title in ["Dune", "Emma", "Ulysses", "Beloved"]
        ]

        result = manager.process_observations(observations)

        assert result["success"] is True
        assert result["books_created"] == 4
        assert len(store.get_all_books()) == 4

    def test_empty_batch(self, manager: SyncManager) -> None:
        result = manager.process_observations([])
        assert result["success"] is True
        assert result["observations_processed"] == 0

    def test_errors_are_collected(self, manager: SyncManager, store: BookStore) -> None:
        with patch.object(BookSession, "upsert_book", side_effect=sqlite3.OperationalError("disk I/O error")):
            result = manager.process_observations([Observation.for_kindle("Dune", "", progress=0.1)])

        assert result["success"] is False
        assert len(result["errors"]) == 1
        assert "disk I/O error" in result["errors"][0]
        assert result["details"][0]["status"] == "failed"


class TestUserActions:
    """Test manual match and removal"""

    def test_manual_match(self, manager: SyncManager, store: BookStore) -> None:
        kindle = manager.record_observation(
            Observation.for_kindle("The Fellowship of the Ring", "J.R.R. Tolkien", progress=0.3)
        )["book"]
        audible = manager.record_observation(
            Observation.for_audible("Lord of the Rings 1", "", progress=0.2)
        )["book"]
        assert len(store.get_unmatched()) == 2

        merged = manager.manual_match(kindle.id, audible.id)

        assert merged.manual_match is True
        assert merged.title == "The Fellowship of the Ring"
        books = store.get_all_books()
        assert len(books) == 1
        assert books[0].is_matched
        assert books[0].manual_match is True

    def test_manual_match_errors(self, manager: SyncManager) -> None:
        kindle = manager.record_observation(Observation.for_kindle("Dune", "", progress=0.3))["book"]
        audible = manager.record_observation(Observation.for_audible("Emma", "", progress=0.2))["book"]

        with pytest.raises(KeyError):
            manager.manual_match("bksync_missing", audible.id)
        with pytest.raises(ValueError):
            manager.manual_match(audible.id, kindle.id)

    def test_remove_book(self, manager: SyncManager, store: BookStore) -> None:
        book = manager.record_observation(Observation.for_kindle("Dune", "", progress=0.3))["book"]

        assert manager.remove_book(book.id) is True
        assert manager.remove_book(book.id) is False
        assert store.get_all_books() == []

    def test_out_of_sync_uses_threshold(self, store: BookStore) -> None:
        manager = SyncManager({}, {"sync_threshold": 0.5}, store=store)
        manager.record_observation(Observation.for_kindle("Dune", "", progress=0.6))
        manager.record_observation(Observation.for_audible("Dune", "", progress=0.2))

        assert manager.get_out_of_sync() == []
        assert manager.get_library_status()[0]["sync_delta"].is_synced is True
        assert SyncManager({}, store=store).get_out_of_sync()[0].title == "Dune"
