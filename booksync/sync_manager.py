"""
Sync Manager - Routes platform observations into the book store

Each observation either refreshes a record already tracked for its platform,
merges with the other platform's unmatched record for the same book, or
creates a new single-platform record.
"""

import concurrent.futures
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from tqdm import tqdm

from .book_matcher import MAX_EDIT_DISTANCE_RATIO, find_existing, find_match, merge_entries
from .book_store import BookStore
from .models import BookRecord, BookSource, Observation, utc_now
from .position_calculator import (
    SYNC_THRESHOLD,
    compute_sync_delta,
    estimate_audible_position,
    estimate_kindle_position,
)
from .utils import generate_book_id, normalize_title


class SyncManager:
    """Coordinates matching, merging and storage of Kindle and Audible progress"""

    def __init__(
        self,
        global_config: dict,
        matching_config: Optional[dict] = None,
        store: Optional[BookStore] = None,
        dry_run: bool = False,
    ) -> None:
        matching_config = matching_config or {}
        self.global_config = global_config
        self.dry_run = dry_run
        self.max_workers = global_config.get("workers", 3)
        self.enable_parallel = global_config.get("parallel", False)
        self.max_edit_distance_ratio = matching_config.get(
            "max_edit_distance_ratio", MAX_EDIT_DISTANCE_RATIO
        )
        self.sync_threshold = matching_config.get("sync_threshold", SYNC_THRESHOLD)
        self.logger = logging.getLogger("SyncManager")

        self.store = store or BookStore(global_config.get("database", "data/booksync.db"))

        # Queues this process's observations in front of the store's write lock.
        # The store transaction is what serializes writers across processes.
        self._lock = threading.Lock()

        self.logger.info(
            f"SyncManager initialized (dry_run: {dry_run}, parallel: {self.enable_parallel}, "
            f"workers: {self.max_workers}, edit ratio: {self.max_edit_distance_ratio}, "
            f"sync threshold: {self.sync_threshold})"
        )

    # Observations
    def record_observation(self, observation: Observation) -> Dict[str, Any]:
        """
        Record a title/author/progress signal from one platform

        Returns:
            Dict with "status" ("created", "updated", "merged" or "skipped"),
            "title" and, unless skipped, the resulting "book"
        """
        title = observation.title
        if not normalize_title(title):
            self.logger.warning(f"Skipping {observation.source.label} observation with blank title: {title!r}")
            return {"status": "skipped", "title": title, "reason": "blank title"}

        source = observation.source
        book_id = generate_book_id(title, observation.author)

        with self._lock, self.store.transaction() as session:
            books = session.get_all_books()
            now = utc_now()

            existing = next(
                (book for book in books if book.id == book_id and book.has_data_from(source)),
                None,
            ) or find_existing(title, observation.author, source, books)

            if existing is not None:
                updated = self._refresh(existing, observation, now)
                if not self.dry_run:
                    session.upsert_book(updated)
                self.logger.info(
                    f"{self._prefix()}Updated {source.label} progress for '{existing.title}' "
                    f"({existing.id}): {observation.progress:.1%}"
                )
                return {"status": "updated", "title": title, "book": updated}

            candidate = find_match(
                title, observation.author, source, books, self.max_edit_distance_ratio
            )
            observed = observation.to_record(book_id, now)

            if candidate is not None:
                if source is BookSource.KINDLE:
                    merged = merge_entries(observed, candidate, now)
                else:
                    merged = merge_entries(candidate, observed, now)
                if not self.dry_run:
                    session.replace_books(merged, {candidate.id, observed.id})
                self.logger.info(
                    f"{self._prefix()}Merged '{title}' ({source.label}) with '{candidate.title}' "
                    f"({source.other.label}) into {merged.id}"
                )
                return {"status": "merged", "title": title, "book": merged, "replaced": candidate.id}

            if not self.dry_run:
                session.upsert_book(observed)
            self.logger.info(f"{self._prefix()}Tracking new {source.label} book '{title}' ({book_id})")
            return {"status": "created", "title": title, "book": observed}

    def _refresh(self, book: BookRecord, observation: Observation, now: datetime) -> BookRecord:
        """Replace one platform's side of a record with a newer observation"""
        cover_url = book.cover_url or observation.cover_url

        if observation.source is BookSource.KINDLE:
            return book.copy(
                kindle_progress=observation.progress,
                kindle_last_page=_prefer(observation.page, book.kindle_last_page),
                kindle_total_pages=_prefer(observation.total_pages, book.kindle_total_pages),
                kindle_chapter=_prefer(observation.chapter, book.kindle_chapter),
                kindle_last_sync=now,
                cover_url=cover_url,
                last_updated=now,
            )

        return book.copy(
            audible_progress=observation.progress,
            audible_chapter=_prefer(observation.chapter, book.audible_chapter),
            audible_position_ms=_prefer(observation.position_ms, book.audible_position_ms),
            audible_total_ms=_prefer(observation.total_ms, book.audible_total_ms),
            audible_last_sync=now,
            cover_url=cover_url,
            last_updated=now,
        )

    def process_observations(self, observations: Iterable[Observation]) -> Dict[str, Any]:
        """
        Record a batch of observations
        Returns dictionary with batch results
        """
        observations = list(observations)
        self.logger.info(f"Processing {len(observations)} observations...")

        result: Dict[str, Any] = {
            "success": False,
            "observations_processed": 0,
            "books_created": 0,
            "books_updated": 0,
            "books_merged": 0,
            "observations_skipped": 0,
            "errors": [],
            "details": [],
        }

        if not observations:
            result["success"] = True
            return result

        if self.enable_parallel and len(observations) > 1:
            outcomes = self._process_parallel(observations)
        else:
            outcomes = self._process_sequential(observations)

        counters = {
            "created": "books_created",
            "updated": "books_updated",
            "merged": "books_merged",
            "skipped": "observations_skipped",
        }
        for outcome in outcomes:
            result["observations_processed"] += 1
            status = outcome["status"]
            if status in counters:
                result[counters[status]] += 1
            else:
                result["errors"].append(outcome["reason"])
            result["details"].append(
                {key: value for key, value in outcome.items() if key != "book"}
            )

        result["success"] = not result["errors"]
        self.logger.info(
            f"Batch completed: {result['books_created']} created, {result['books_updated']} updated, "
            f"{result['books_merged']} merged, {result['observations_skipped']} skipped, "
            f"{len(result['errors'])} errors"
        )
        return result

    def _safe_record(self, observation: Observation) -> Dict[str, Any]:
        try:
            return self.record_observation(observation)
        except Exception as e:
            error_msg = f"Error recording {observation.source.label} observation '{observation.title}': {str(e)}"
            self.logger.error(error_msg)
            return {"status": "failed", "title": observation.title, "reason": error_msg}

    def _process_sequential(self, observations: List[Observation]) -> List[Dict[str, Any]]:
        outcomes = []
        with tqdm(total=len(observations), desc="Recording observations", unit="obs") as pbar:
            for observation in observations:
                pbar.set_description(
                    f"{observation.source.label}: {observation.title[:30]}{'...' if len(observation.title) > 30 else ''}"
                )
                outcome = self._safe_record(observation)
                outcomes.append(outcome)
                pbar.set_postfix({"status": outcome["status"]})
                pbar.update(1)
        return outcomes

    def _process_parallel(self, observations: List[Observation]) -> List[Dict[str, Any]]:
        outcomes = []
        with tqdm(total=len(observations), desc="Recording observations (parallel)", unit="obs") as pbar:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [executor.submit(self._safe_record, obs) for obs in observations]
                # _safe_record turns exceptions into "failed" outcomes
                for future in concurrent.futures.as_completed(futures):
                    outcome = future.result()
                    outcomes.append(outcome)
                    pbar.set_postfix({"status": outcome["status"]})
                    pbar.update(1)
        return outcomes

    # User actions
    def manual_match(self, kindle_book_id: str, audible_book_id: str) -> BookRecord:
        """
        Merge two stored records the user has identified as the same book

        Raises:
            KeyError: if either ID is unknown
            ValueError: if the records do not carry Kindle and Audible data respectively
        """
        with self._lock, self.store.transaction() as session:
            kindle_entry = session.get_book(kindle_book_id)
            audible_entry = session.get_book(audible_book_id)
            if kindle_entry is None:
                raise KeyError(f"Book not found: {kindle_book_id}")
            if audible_entry is None:
                raise KeyError(f"Book not found: {audible_book_id}")
            if not kindle_entry.has_kindle_data:
                raise ValueError(f"{kindle_book_id} has no Kindle progress")
            if not audible_entry.has_audible_data:
                raise ValueError(f"{audible_book_id} has no Audible progress")

            merged = merge_entries(kindle_entry.copy(manual_match=True), audible_entry)
            if not self.dry_run:
                session.replace_books(merged, {kindle_entry.id, audible_entry.id})

        self.logger.info(
            f"{self._prefix()}Manually matched '{kindle_entry.title}' with '{audible_entry.title}' into {merged.id}"
        )
        return merged

    def remove_book(self, book_id: str) -> bool:
        """Stop tracking a book"""
        with self._lock, self.store.transaction() as session:
            if self.dry_run:
                return session.get_book(book_id) is not None
            return session.delete_book(book_id)

    # Queries
    def get_book_status(self, book: BookRecord) -> Dict[str, Any]:
        """Resume suggestions and sync status for one record, computed on demand"""
        return {
            "book": book,
            "audible_resume": estimate_audible_position(book),
            "kindle_resume": estimate_kindle_position(book),
            "sync_delta": compute_sync_delta(book, self.sync_threshold),
        }

    def get_library_status(self) -> List[Dict[str, Any]]:
        return [self.get_book_status(book) for book in self.store.get_all_books()]

    def get_unmatched(self) -> List[BookRecord]:
        return self.store.get_unmatched()

    def get_out_of_sync(self) -> List[BookRecord]:
        return self.store.get_out_of_sync(self.sync_threshold)

    def get_cache_stats(self) -> Dict[str, int]:
        """Get store statistics"""
        return self.store.get_stats()

    def clear_cache(self) -> None:
        """Clear every tracked book"""
        with self._lock:
            self.store.clear()

    def export_to_json(self, filename: str = "booksync_export.json") -> int:
        """Export store data to JSON for backup/debugging"""
        return self.store.export_to_json(filename)

    def _prefix(self) -> str:
        return "[DRY RUN] " if self.dry_run else ""


def _prefer(new_value: Any, old_value: Any) -> Any:
    return old_value if new_value is None else new_value
