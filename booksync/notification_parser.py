"""
Parsers that turn raw watcher output into observations

Kindle posts an ongoing notification while a book is open. Its text comes in
a few observed shapes:

- "Book Title — 42%"
- "42% · Book Title"
- "Reading: Book Title (Page 123 of 456)"

Watchers that cannot parse anything themselves append JSON lines to a spool
file; parse_observation_line reads one of those lines.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from .models import BookSource, Observation
from .utils import calculate_progress_fraction, clamp_progress

logger = logging.getLogger(__name__)

PERCENT_PREFIX_PATTERN = re.compile(r"^(\d{1,3})%\s*[·\-–—]\s*(.+)$")
PERCENT_SUFFIX_PATTERN = re.compile(r"^(.+?)\s*[·\-–—]\s*(\d{1,3})%$")
PAGE_PATTERN = re.compile(r"[Pp]age\s+(\d[\d,]*)\s+of\s+(\d[\d,]*)")
READING_PREFIX_PATTERN = re.compile(r"^Reading:\s*(.+)$")
CHAPTER_PATTERN = re.compile(r"[Cc]hapter\s*:?\s*(.+)")
TRAILING_PAGE_PATTERN = re.compile(r"\s*\(\s*[Pp]age\s+[\d,]+\s+of\s+[\d,]+\s*\)\s*$")


def _to_int(value: str) -> int:
    return int(value.replace(",", ""))


def parse_kindle_notification(text_fields: List[Optional[str]]) -> Optional[Observation]:
    """
    Parse Kindle notification text fields into an observation

    Args:
        text_fields: Title, text, sub-text and big-text of the notification;
            None entries are ignored

    Returns:
        Kindle observation, or None if no title or progress could be found
    """
    fields = [text.strip() for text in text_fields if text and text.strip()]
    if not fields:
        return None

    book_title: Optional[str] = None
    progress: Optional[float] = None
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    chapter: Optional[str] = None

    for text in fields:
        match = PERCENT_PREFIX_PATTERN.search(text)
        if match:
            progress = int(match.group(1)) / 100
            book_title = match.group(2).strip()

        if book_title is None:
            match = PERCENT_SUFFIX_PATTERN.search(text)
            if match:
                book_title = match.group(1).strip()
                progress = int(match.group(2)) / 100

        if book_title is None:
            match = READING_PREFIX_PATTERN.search(text)
            if match:
                book_title = TRAILING_PAGE_PATTERN.sub("", match.group(1)).strip()

        match = PAGE_PATTERN.search(text)
        if match:
            current_page = _to_int(match.group(1))
            total_pages = _to_int(match.group(2))
            if progress is None and total_pages > 0:
                progress = calculate_progress_fraction(current_page, total_pages)

        match = CHAPTER_PATTERN.search(text)
        if match:
            chapter = match.group(1).strip()

    # The notification title is usually the book name
    if book_title is None:
        book_title = fields[0]

    if progress is None:
        logger.debug(f"No progress found in Kindle notification: {fields}")
        return None

    return Observation.for_kindle(
        title=book_title,
        author="",
        progress=clamp_progress(progress),
        page=current_page,
        total_pages=total_pages,
        chapter=chapter,
    )


def _optional_number(data: Dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Observation field '{key}' must be a number, got {value!r}")
    try:
        return kind(value)
    except (ValueError, OverflowError):
        raise ValueError(f"Observation field '{key}' must be a number, got {value!r}") from None


def _optional_text(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"Observation field '{key}' must be a string, got {value!r}")
    return value


def parse_observation_line(line: str) -> Optional[Observation]:
    """
    Parse one JSON line of the observation spool file

    Blank lines give None. Kindle entries may carry "notification" (a list of
    raw notification strings) instead of structured fields.

    Raises:
        ValueError: for malformed JSON, an unknown source or missing data
    """
    line = line.strip()
    if not line:
        return None

    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid observation JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Observation must be a JSON object, got {type(data).__name__}")

    try:
        source = BookSource(str(data.get("source", "")).lower())
    except ValueError:
        raise ValueError(f"Unknown observation source: {data.get('source')!r}") from None

    if source is BookSource.KINDLE and "notification" in data:
        notification = data["notification"]
        if not isinstance(notification, list) or not all(
            text is None or isinstance(text, str) for text in notification
        ):
            raise ValueError(f"Kindle notification must be a list of strings, got {notification!r}")
        observation = parse_kindle_notification(notification)
        if observation is None:
            raise ValueError(f"Could not parse Kindle notification: {data['notification']!r}")
        author = _optional_text(data, "author")
        if author:
            observation.author = author
        return observation

    title = _optional_text(data, "title")
    if not title:
        raise ValueError("Observation has no title")

    if source is BookSource.KINDLE:
        return Observation.for_kindle(
            title=title,
            author=_optional_text(data, "author"),
            progress=_optional_number(data, "progress", float),
            page=_optional_number(data, "page", int),
            total_pages=_optional_number(data, "total_pages", int),
            chapter=_optional_text(data, "chapter"),
            cover_url=_optional_text(data, "cover_url"),
        )

    return Observation.for_audible(
        title=title,
        author=_optional_text(data, "author"),
        position_ms=_optional_number(data, "position_ms", int),
        total_ms=_optional_number(data, "total_ms", int),
        progress=_optional_number(data, "progress", float),
        chapter=_optional_text(data, "chapter"),
        cover_url=_optional_text(data, "cover_url"),
    )
