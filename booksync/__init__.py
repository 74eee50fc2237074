"""
Kindle / Audible Book Sync

Tracks progress through the same book on Kindle (pages) and Audible (time),
matches the two platforms' records by fuzzy title/author comparison and
estimates where to resume on the other platform.
"""

__version__ = "1.0.0"

from .book_matcher import BookMatcher, merge_entries
from .book_store import BookStore
from .config import Config
from .models import BookRecord, BookSource, Observation
from .position_calculator import (
    compute_sync_delta,
    estimate_audible_position,
    estimate_kindle_position,
)
from .sync_manager import SyncManager
from .utils import generate_book_id, normalize_author, normalize_title

__all__ = [
    "BookMatcher",
    "BookRecord",
    "BookSource",
    "BookStore",
    "Config",
    "Observation",
    "SyncManager",
    "compute_sync_delta",
    "estimate_audible_position",
    "estimate_kindle_position",
    "generate_book_id",
    "merge_entries",
    "normalize_author",
    "normalize_title",
]
