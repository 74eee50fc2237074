"""
Utility functions for the sync tool
"""

import functools
import hashlib
import logging
import re
import time
from typing import Optional, Tuple, Type

BOOK_ID_PREFIX = "bksync_"
BOOK_ID_HEX_LENGTH = 16

# Suffixes and annotations Audible (and sometimes Kindle) add to a title.
# Applied in order, after lowercasing.
TITLE_NOISE_PATTERNS = [
    re.compile(r"\s*\(unabridged\)", re.IGNORECASE),
    re.compile(r"\s*\(abridged\)", re.IGNORECASE),
    re.compile(r"\s*:\s*a novel", re.IGNORECASE),
    re.compile(r"\s*\(.*?edition\)", re.IGNORECASE),
    re.compile(r"\s*\[.*?\]"),
    re.compile(r"\s*\(.*?book\s+\d+\)", re.IGNORECASE),
]

_NON_ALNUM = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def _strip_and_collapse(text: str) -> str:
    text = _NON_ALNUM.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize a book title for comparison

    Lowercases, drops noise such as "(Unabridged)", ": A Novel", edition and
    series tags, removes punctuation and collapses whitespace. Empty or None
    input gives an empty string.
    """
    if not title:
        return ""

    normalized = title.lower().strip()
    for pattern in TITLE_NOISE_PATTERNS:
        normalized = pattern.sub("", normalized)

    return _strip_and_collapse(normalized)


def normalize_author(author: Optional[str]) -> str:
    """Normalize an author name: lowercase, no punctuation, single spaces"""
    if not author:
        return ""

    return _strip_and_collapse(author.lower().strip())


def generate_book_id(title: Optional[str], author: Optional[str]) -> str:
    """
    Generate a deterministic book ID from title and author

    The composite key "normalized title|normalized author" is hashed with
    SHA-256 so the same book gets the same ID in every process and on every
    machine.
    """
    key = f"{normalize_title(title)}|{normalize_author(author)}"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{BOOK_ID_PREFIX}{digest[:BOOK_ID_HEX_LENGTH]}"


def clamp_progress(progress: float) -> float:
    """Clamp a progress fraction into [0.0, 1.0]"""
    return max(0.0, min(1.0, float(progress)))


def calculate_progress_fraction(current_page: int, total_pages: int) -> float:
    """
    Calculate progress fraction from current page and total pages
    Returns fraction as float (0.0 to 1.0)
    """
    if total_pages <= 0:
        return 0.0

    if current_page <= 0:
        return 0.0

    if current_page >= total_pages:
        return 1.0

    return current_page / total_pages


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values"""
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def retry_on_failure(
    max_retries: int = 3,
    delay: float = 0.5,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
):  # type: ignore
    """
    Decorator for retrying function calls on failure
    """

    def decorator(func):  # type: ignore
        @functools.wraps(func)
        def wrapper(*args, **kwargs):  # type: ignore
            logger = logging.getLogger(func.__module__)

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries - 1:
                        # Last attempt, re-raise the exception
                        raise

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries} failed for {func.__name__}: {str(e)}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)

        return wrapper

    return decorator
