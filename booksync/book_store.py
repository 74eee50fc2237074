"""
Book Store - SQLite persistence for Kindle/Audible sync records
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .models import TIMESTAMP_FIELDS, BookRecord
from .utils import retry_on_failure

COLUMNS = (
    "id",
    "title",
    "author",
    "kindle_progress",
    "kindle_last_page",
    "kindle_total_pages",
    "kindle_chapter",
    "kindle_last_sync",
    "audible_progress",
    "audible_chapter",
    "audible_position_ms",
    "audible_total_ms",
    "audible_last_sync",
    "cover_url",
    "manual_match",
    "last_updated",
)

_UPSERT_SQL = f"""
    INSERT OR REPLACE INTO books ({", ".join(COLUMNS)})
    VALUES ({", ".join("?" for _ in COLUMNS)})
"""

# Seconds a connection waits on another writer before "database is locked"
_BUSY_TIMEOUT = 10

# Retry writes that hit "database is locked" from a concurrent writer
_write_retry = retry_on_failure(max_retries=3, delay=0.2, exceptions=(sqlite3.OperationalError,))

logger = logging.getLogger(__name__)


def _to_row(book: BookRecord) -> tuple:
    values = []
    for column in COLUMNS:
        value = getattr(book, column)
        if isinstance(value, datetime):
            value = value.isoformat(timespec="microseconds")
        elif column == "manual_match":
            value = int(bool(value))
        values.append(value)
    return tuple(values)


def _from_row(row: sqlite3.Row) -> BookRecord:
    data: Dict[str, Any] = {column: row[column] for column in COLUMNS}
    for column in TIMESTAMP_FIELDS:
        if data[column] is not None:
            data[column] = datetime.fromisoformat(data[column])
    data["manual_match"] = bool(data["manual_match"])
    return BookRecord(**data)


class BookSession:
    """Record reads and writes bound to one open connection"""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[BookRecord]:
        rows = self.conn.execute(sql, tuple(params)).fetchall()
        return [_from_row(row) for row in rows]

    def get_all_books(self) -> List[BookRecord]:
        """All records, most recently updated first"""
        return self.query("SELECT * FROM books ORDER BY last_updated DESC, id")

    def get_book(self, book_id: str) -> Optional[BookRecord]:
        books = self.query("SELECT * FROM books WHERE id = ?", (book_id,))
        return books[0] if books else None

    def upsert_book(self, book: BookRecord) -> None:
        """Insert or replace a record by id"""
        self.conn.execute(_UPSERT_SQL, _to_row(book))
        logger.debug(f"Upserted {book.id} ('{book.title}')")

    def replace_books(self, book: BookRecord, remove_ids: Iterable[str]) -> None:
        """
        Write a merged record and delete the records it replaces

        Args:
            book: The merged record
            remove_ids: IDs of the source records; the merged ID is never removed
        """
        stale_ids = [book_id for book_id in remove_ids if book_id != book.id]
        self.conn.execute(_UPSERT_SQL, _to_row(book))
        for book_id in stale_ids:
            self.conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Stored merged record {book.id}, removed {stale_ids}")

    def delete_book(self, book_id: str) -> bool:
        deleted = self.conn.execute("DELETE FROM books WHERE id = ?", (book_id,)).rowcount
        logger.info(f"Deleted {book_id}" if deleted else f"No record to delete for {book_id}")
        return bool(deleted)


class BookStore:
    """SQLite-backed storage for book sync records. Every write is a full-record upsert."""

    def __init__(self, db_file: str = "data/booksync.db") -> None:
        self.db_file = db_file
        self.logger = logger
        abs_path = os.path.abspath(self.db_file)
        self.logger.info(f"BookStore: Database file path: {self.db_file} (absolute: {abs_path})")
        try:
            self._init_database()
        except Exception as e:
            self.logger.error(f"Failed to initialize database at {self.db_file}: {str(e)}")
            raise

    def _init_database(self) -> None:
        """Create the books table and indexes if missing"""
        db_dir = os.path.dirname(self.db_file)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            self.logger.info(f"Created database directory: {db_dir}")

        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL DEFAULT '',
                    kindle_progress REAL,
                    kindle_last_page INTEGER,
                    kindle_total_pages INTEGER,
                    kindle_chapter TEXT,
                    kindle_last_sync TIMESTAMP,
                    audible_progress REAL,
                    audible_chapter TEXT,
                    audible_position_ms INTEGER,
                    audible_total_ms INTEGER,
                    audible_last_sync TIMESTAMP,
                    cover_url TEXT,
                    manual_match INTEGER NOT NULL DEFAULT 0,
                    last_updated TIMESTAMP NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_last_updated ON books(last_updated)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_title ON books(title)")
        self.logger.debug(f"Database schema initialized at {self.db_file}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_file, timeout=_BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, roll back on error, always close"""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[BookSession]:
        """
        Hold the database write lock from the first read to the last write

        The transaction starts with BEGIN IMMEDIATE, so any other connection,
        in this process or another, waits until it commits or rolls back.
        """
        conn = self._connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield BookSession(conn)
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[BookRecord]:
        with self._connection() as conn:
            return BookSession(conn).query(sql, params)

    # Reads
    def get_all_books(self) -> List[BookRecord]:
        """All records, most recently updated first"""
        with self._connection() as conn:
            return BookSession(conn).get_all_books()

    def get_book(self, book_id: str) -> Optional[BookRecord]:
        with self._connection() as conn:
            return BookSession(conn).get_book(book_id)

    def get_unmatched(self) -> List[BookRecord]:
        """Records with progress from exactly one platform"""
        return self._query(
            """
            SELECT * FROM books
            WHERE (kindle_progress IS NULL AND audible_progress IS NOT NULL)
               OR (kindle_progress IS NOT NULL AND audible_progress IS NULL)
            ORDER BY last_updated DESC, id
            """
        )

    def get_out_of_sync(self, threshold: float = 0.05) -> List[BookRecord]:
        """Matched records whose Kindle and Audible progress differ by more than threshold"""
        return self._query(
            """
            SELECT * FROM books
            WHERE kindle_progress IS NOT NULL
              AND audible_progress IS NOT NULL
              AND ABS(kindle_progress - audible_progress) > ?
            ORDER BY last_updated DESC, id
            """,
            (threshold,),
        )

    # Writes
    @_write_retry
    def upsert_book(self, book: BookRecord) -> None:
        """Insert or replace a record by id"""
        with self.transaction() as session:
            session.upsert_book(book)

    @_write_retry
    def replace_books(self, book: BookRecord, remove_ids: Iterable[str]) -> None:
        """Write a merged record and delete the records it replaces in one transaction"""
        with self.transaction() as session:
            session.replace_books(book, remove_ids)

    @_write_retry
    def delete_book(self, book_id: str) -> bool:
        with self.transaction() as session:
            return session.delete_book(book_id)

    def clear(self) -> None:
        """Delete every record"""
        with self._connection() as conn:
            conn.execute("DELETE FROM books")
        self.logger.info("Book store cleared")

    # Maintenance
    def get_stats(self) -> Dict[str, int]:
        """Get store statistics"""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN kindle_progress IS NOT NULL AND audible_progress IS NOT NULL THEN 1 ELSE 0 END) AS matched,
                    SUM(CASE WHEN kindle_progress IS NOT NULL AND audible_progress IS NULL THEN 1 ELSE 0 END) AS kindle_only,
                    SUM(CASE WHEN kindle_progress IS NULL AND audible_progress IS NOT NULL THEN 1 ELSE 0 END) AS audible_only
                FROM books
                """
            ).fetchone()

        return {
            "total_books": row["total"] or 0,
            "matched_books": row["matched"] or 0,
            "kindle_only": row["kindle_only"] or 0,
            "audible_only": row["audible_only"] or 0,
            "db_file_size": os.path.getsize(self.db_file) if os.path.exists(self.db_file) else 0,
        }

    def export_to_json(self, filename: str = "booksync_export.json") -> int:
        """Export all records to JSON for backup/debugging. Returns the record count."""
        books = self.get_all_books()
        export_data = {book.id: book.to_dict() for book in books}

        with open(filename, "w") as f:
            json.dump(export_data, f, indent=2)

        self.logger.info(f"Exported {len(books)} records to {filename}")
        return len(books)
