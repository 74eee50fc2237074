"""
Resume-position and sync-delta calculations for matched books

Positions are linear interpolations: 42% through the Kindle book is taken to
be 42% through the audiobook. Narration pace varies by chapter, so these are
estimates only.
"""

from typing import Optional

from .models import (
    AudibleResumePoint,
    BookRecord,
    BookSource,
    KindleResumePoint,
    SyncDelta,
)
from .utils import round_half_up

# Positions closer than 5% are considered in sync
SYNC_THRESHOLD = 0.05


def format_time_ms(ms: int) -> str:
    """Format milliseconds as "Xh Ym", "Ym Zs" or "Zs" """
    total_seconds = ms // 1000
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60

    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def estimate_audible_position(book: BookRecord) -> Optional[AudibleResumePoint]:
    """
    Estimate where to resume in Audible from the current Kindle progress

    Returns None unless Kindle progress and a positive audiobook duration are known.
    """
    kindle_progress = book.kindle_progress
    audible_total_ms = book.audible_total_ms
    if kindle_progress is None or audible_total_ms is None or audible_total_ms <= 0:
        return None

    estimated_position_ms = round_half_up(kindle_progress * audible_total_ms)

    return AudibleResumePoint(
        estimated_position_ms=estimated_position_ms,
        estimated_progress=kindle_progress,
        based_on_kindle_progress=kindle_progress,
        description=f"Resume at {format_time_ms(estimated_position_ms)} / {format_time_ms(audible_total_ms)}",
    )


def estimate_kindle_position(book: BookRecord) -> Optional[KindleResumePoint]:
    """
    Estimate where to resume in Kindle from the current Audible progress

    Without a known page count the estimate is a percentage only.
    """
    audible_progress = book.audible_progress
    if audible_progress is None:
        return None

    total_pages = book.kindle_total_pages
    if total_pages is not None and total_pages > 0:
        estimated_page = max(1, round_half_up(audible_progress * total_pages))
        description = f"Resume at page {estimated_page} of {total_pages}"
    else:
        estimated_page = None
        description = f"Resume at ~{round_half_up(audible_progress * 100)}%"

    return KindleResumePoint(
        estimated_page=estimated_page,
        estimated_total_pages=total_pages,
        estimated_progress=audible_progress,
        based_on_audible_progress=audible_progress,
        description=description,
    )


def compute_sync_delta(book: BookRecord, threshold: float = SYNC_THRESHOLD) -> Optional[SyncDelta]:
    """
    Compare Kindle and Audible progress

    Args:
        book: Record with both progress values
        threshold: Absolute difference below which both sides count as in sync

    Returns:
        SyncDelta describing which platform is ahead, or None if either
        progress value is missing
    """
    if book.kindle_progress is None or book.audible_progress is None:
        return None

    delta = book.kindle_progress - book.audible_progress
    abs_delta = abs(delta)
    percent = round_half_up(abs_delta * 100)

    if abs_delta < threshold:
        return SyncDelta(
            delta_percent=percent,
            ahead_platform=None,
            description="In sync",
            is_synced=True,
        )
    if delta > 0:
        ahead = BookSource.KINDLE
    else:
        ahead = BookSource.AUDIBLE

    return SyncDelta(
        delta_percent=percent,
        ahead_platform=ahead,
        description=f"{ahead.label} is {percent}% ahead",
        is_synced=False,
    )
