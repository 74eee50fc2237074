"""
Book Matcher - Pairs Kindle and Audible records for the same book

Neither platform exposes a shared identifier, so matching relies on fuzzy
comparison of the titles and authors scraped from each platform:

1. Exact match of the normalized titles
2. Substring match (handles subtitle differences)
3. Levenshtein distance within MAX_EDIT_DISTANCE_RATIO of the shorter title

The authors must also overlap. A blank author never blocks a match.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional

from .models import BookRecord, BookSource, utc_now
from .utils import generate_book_id, normalize_author, normalize_title

if TYPE_CHECKING:
    from .book_store import BookStore

# Tolerate up to 30% character difference relative to the shorter title
MAX_EDIT_DISTANCE_RATIO = 0.30

# Author tokens at least this long count as a shared surname
MIN_SHARED_AUTHOR_TOKEN = 4

logger = logging.getLogger(__name__)


def levenshtein_distance(a: str, b: str) -> int:
    """
    Compute the Levenshtein (edit) distance between two strings.
    Uses two rolling rows sized by the shorter string.
    """
    if len(a) > len(b):
        a, b = b, a

    previous_row = list(range(len(a) + 1))
    current_row = [0] * (len(a) + 1)

    for j in range(1, len(b) + 1):
        current_row[0] = j
        for i in range(1, len(a) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            current_row[i] = min(
                current_row[i - 1] + 1,  # insertion
                previous_row[i] + 1,  # deletion
                previous_row[i - 1] + cost,  # substitution
            )
        previous_row, current_row = current_row, previous_row

    return previous_row[len(a)]


def titles_match(a: str, b: str, max_ratio: float = MAX_EDIT_DISTANCE_RATIO) -> bool:
    """Check if two normalized titles match exactly, by containment or within the edit distance"""
    if a == b:
        return True
    if not a.strip() or not b.strip():
        return False

    if a in b or b in a:
        return True

    shorter = min(len(a), len(b))
    if shorter == 0:
        return False

    return levenshtein_distance(a, b) / shorter <= max_ratio


def authors_match(a: str, b: str) -> bool:
    """
    Check if two normalized author names overlap

    Authors match when either is blank, they are equal, one contains the
    other, or they share a word of MIN_SHARED_AUTHOR_TOKEN or more characters.
    """
    if not a.strip() or not b.strip():
        return True
    if a == b:
        return True
    if a in b or b in a:
        return True

    words_a = {word for word in a.split(" ") if len(word) >= MIN_SHARED_AUTHOR_TOKEN}
    words_b = {word for word in b.split(" ") if len(word) >= MIN_SHARED_AUTHOR_TOKEN}
    return bool(words_a & words_b)


def is_candidate(book: BookRecord, source: BookSource) -> bool:
    """A candidate has data only from the platform opposite to source"""
    return book.has_data_from(source.other) and not book.has_data_from(source)


def _matches(
    book: BookRecord,
    normalized_title: str,
    normalized_author: str,
    max_ratio: float,
) -> bool:
    candidate_title = normalize_title(book.title)
    candidate_author = normalize_author(book.author)

    title_match = titles_match(normalized_title, candidate_title, max_ratio)
    author_match = authors_match(normalized_author, candidate_author)
    logger.debug(
        f"Compared '{normalized_title}' with '{candidate_title}' ({book.id}): "
        f"title={title_match}, author={author_match}"
    )
    return title_match and author_match


def find_match(
    title: str,
    author: str,
    source: BookSource,
    books: Iterable[BookRecord],
    max_ratio: float = MAX_EDIT_DISTANCE_RATIO,
) -> Optional[BookRecord]:
    """
    Find the first unmatched record from the other platform that matches title and author

    Candidates are checked in iteration order and the first hit wins; there
    is no ranking by edit distance.
    """
    normalized_title = normalize_title(title)
    normalized_author = normalize_author(author)

    for candidate in books:
        if not is_candidate(candidate, source):
            continue
        if _matches(candidate, normalized_title, normalized_author, max_ratio):
            logger.info(f"Matched: '{title}' <-> '{candidate.title}' ({candidate.id})")
            return candidate

    return None


def find_existing(
    title: str,
    author: str,
    source: BookSource,
    books: Iterable[BookRecord],
) -> Optional[BookRecord]:
    """
    Find a record that already carries data from source for this exact book

    Only an identical normalized title with a compatible author counts.
    Substring and edit-distance matches are reserved for pairing across
    platforms, so a sequel such as "Dune Messiah" or a near title such as
    "The Rabbit" gets its own record instead of overwriting "Dune" or
    "The Hobbit".
    """
    normalized_title = normalize_title(title)
    normalized_author = normalize_author(author)

    for book in books:
        if not book.has_data_from(source):
            continue
        if normalize_title(book.title) == normalized_title and authors_match(
            normalized_author, normalize_author(book.author)
        ):
            return book

    return None


def merge_entries(
    kindle_entry: BookRecord,
    audible_entry: BookRecord,
    now: Optional[datetime] = None,
) -> BookRecord:
    """
    Merge a Kindle-only record and an Audible-only record into one

    The longer raw title wins (ties keep the Kindle title), the Kindle author
    wins unless blank, and the ID is re-derived from the chosen title and
    author. The result may have a different ID than either input.
    """
    if len(kindle_entry.title) >= len(audible_entry.title):
        base_title = kindle_entry.title
    else:
        base_title = audible_entry.title

    base_author = kindle_entry.author if kindle_entry.author.strip() else audible_entry.author

    return BookRecord(
        id=generate_book_id(base_title, base_author),
        title=base_title,
        author=base_author,
        kindle_progress=kindle_entry.kindle_progress,
        kindle_last_page=kindle_entry.kindle_last_page,
        kindle_total_pages=kindle_entry.kindle_total_pages,
        kindle_chapter=kindle_entry.kindle_chapter,
        kindle_last_sync=kindle_entry.kindle_last_sync,
        audible_progress=audible_entry.audible_progress,
        audible_chapter=audible_entry.audible_chapter,
        audible_position_ms=audible_entry.audible_position_ms,
        audible_total_ms=audible_entry.audible_total_ms,
        audible_last_sync=audible_entry.audible_last_sync,
        cover_url=audible_entry.cover_url or kindle_entry.cover_url,
        manual_match=kindle_entry.manual_match or audible_entry.manual_match,
        last_updated=now or utc_now(),
    )


class BookMatcher:
    """Matches newly observed books against the other platform's stored records"""

    def __init__(self, store: "BookStore", max_edit_distance_ratio: float = MAX_EDIT_DISTANCE_RATIO) -> None:
        self.store = store
        self.max_edit_distance_ratio = max_edit_distance_ratio
        self.logger = logging.getLogger(__name__)

    def attempt_match(self, title: str, author: str, source: BookSource) -> Optional[BookRecord]:
        """
        Attempt to match a newly detected book against unmatched records from the other platform

        Args:
            title: Raw title as observed
            author: Raw author as observed (may be blank)
            source: Platform the observation came from

        Returns:
            The first matching candidate, or None if nothing qualifies
        """
        all_books = self.store.get_all_books()
        candidates: List[BookRecord] = [book for book in all_books if is_candidate(book, source)]
        self.logger.debug(
            f"Matching '{title}' from {source.label} against {len(candidates)} {source.other.label} candidates"
        )
        return find_match(title, author, source, candidates, self.max_edit_distance_ratio)
