"""
Data model shared by the matcher, the calculator and the store
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import pytz

from .utils import calculate_progress_fraction, clamp_progress

KINDLE_FIELDS = (
    "kindle_progress",
    "kindle_last_page",
    "kindle_total_pages",
    "kindle_chapter",
    "kindle_last_sync",
)

AUDIBLE_FIELDS = (
    "audible_progress",
    "audible_chapter",
    "audible_position_ms",
    "audible_total_ms",
    "audible_last_sync",
)

TIMESTAMP_FIELDS = ("kindle_last_sync", "audible_last_sync", "last_updated")


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class BookSource(str, Enum):
    """Platform a book was observed on"""

    KINDLE = "kindle"
    AUDIBLE = "audible"

    @property
    def other(self) -> "BookSource":
        return BookSource.AUDIBLE if self is BookSource.KINDLE else BookSource.KINDLE

    @property
    def label(self) -> str:
        return self.name.capitalize()


@dataclass
class BookRecord:
    """
    A book tracked on Kindle, Audible or both.

    A record seen on only one platform has every field of the other platform
    set to None. After a match both sides are populated.
    """

    id: str
    title: str
    author: str = ""

    # Kindle progress
    kindle_progress: Optional[float] = None
    kindle_last_page: Optional[int] = None
    kindle_total_pages: Optional[int] = None
    kindle_chapter: Optional[str] = None
    kindle_last_sync: Optional[datetime] = None

    # Audible progress
    audible_progress: Optional[float] = None
    audible_chapter: Optional[str] = None
    audible_position_ms: Optional[int] = None
    audible_total_ms: Optional[int] = None
    audible_last_sync: Optional[datetime] = None

    cover_url: Optional[str] = None
    manual_match: bool = False
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def has_kindle_data(self) -> bool:
        return self.kindle_progress is not None

    @property
    def has_audible_data(self) -> bool:
        return self.audible_progress is not None

    def has_data_from(self, source: BookSource) -> bool:
        if source is BookSource.KINDLE:
            return self.has_kindle_data
        return self.has_audible_data

    @property
    def is_matched(self) -> bool:
        return self.has_kindle_data and self.has_audible_data

    def copy(self, **changes: Any) -> "BookRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in TIMESTAMP_FIELDS:
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class Observation:
    """A single title/author/progress signal reported by a platform watcher"""

    title: str
    author: str
    source: BookSource
    progress: float
    page: Optional[int] = None
    total_pages: Optional[int] = None
    chapter: Optional[str] = None
    position_ms: Optional[int] = None
    total_ms: Optional[int] = None
    cover_url: Optional[str] = None

    @classmethod
    def for_kindle(
        cls,
        title: str,
        author: Optional[str] = None,
        progress: Optional[float] = None,
        page: Optional[int] = None,
        total_pages: Optional[int] = None,
        chapter: Optional[str] = None,
        cover_url: Optional[str] = None,
    ) -> "Observation":
        """Build a Kindle observation, deriving progress from pages if needed"""
        if progress is None:
            if page is None or not total_pages:
                raise ValueError(f"Kindle observation for '{title}' has no progress or page data")
            progress = calculate_progress_fraction(page, total_pages)

        return cls(
            title=title,
            author=author or "",
            source=BookSource.KINDLE,
            progress=clamp_progress(progress),
            page=page,
            total_pages=total_pages,
            chapter=chapter,
            cover_url=cover_url,
        )

    @classmethod
    def for_audible(
        cls,
        title: str,
        author: Optional[str] = None,
        position_ms: Optional[int] = None,
        total_ms: Optional[int] = None,
        progress: Optional[float] = None,
        chapter: Optional[str] = None,
        cover_url: Optional[str] = None,
    ) -> "Observation":
        """Build an Audible observation, deriving progress from the playback position"""
        if progress is None:
            if position_ms is not None and total_ms and total_ms > 0:
                progress = position_ms / total_ms
            else:
                progress = 0.0

        return cls(
            title=title,
            author=author or "",
            source=BookSource.AUDIBLE,
            progress=clamp_progress(progress),
            chapter=chapter,
            position_ms=position_ms,
            total_ms=total_ms,
            cover_url=cover_url,
        )

    def to_record(self, book_id: str, now: Optional[datetime] = None) -> BookRecord:
        """Create a single-platform record from this observation"""
        now = now or utc_now()
        if self.source is BookSource.KINDLE:
            return BookRecord(
                id=book_id,
                title=self.title,
                author=self.author,
                kindle_progress=self.progress,
                kindle_last_page=self.page,
                kindle_total_pages=self.total_pages,
                kindle_chapter=self.chapter,
                kindle_last_sync=now,
                cover_url=self.cover_url,
                last_updated=now,
            )
        return BookRecord(
            id=book_id,
            title=self.title,
            author=self.author,
            audible_progress=self.progress,
            audible_chapter=self.chapter,
            audible_position_ms=self.position_ms,
            audible_total_ms=self.total_ms,
            audible_last_sync=now,
            cover_url=self.cover_url,
            last_updated=now,
        )


@dataclass
class AudibleResumePoint:
    """Estimated Audible position derived from Kindle progress"""

    estimated_position_ms: int
    estimated_progress: float
    based_on_kindle_progress: float
    description: str


@dataclass
class KindleResumePoint:
    """Estimated Kindle page derived from Audible progress"""

    estimated_page: Optional[int]
    estimated_total_pages: Optional[int]
    estimated_progress: float
    based_on_audible_progress: float
    description: str


@dataclass
class SyncDelta:
    """How far apart the Kindle and Audible positions are"""

    delta_percent: int
    ahead_platform: Optional[BookSource]
    description: str
    is_synced: bool
