"""
Speaking-time statistics from start/end markers.

The i-th start marker is paired with the i-th end marker in document order. Pairs
that are empty or inverted are discarded, the rest are merged so overlapping speech
is counted once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fluency.transcript.markers import END_RE, START_RE

logger = logging.getLogger(__name__)

# Empirical correction: recognition trims leading/trailing silence from each utterance
WPM_CORRECTION_FACTOR = 1.1


@dataclass(frozen=True)
class Interval:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class TimeStats:
    meeting_length_seconds: float = 0.0
    speaking_time_seconds: float = 0.0
    intervals: list[Interval] = field(default_factory=list)


def extract_intervals(text: str) -> list[Interval]:
    """Pair starts with ends by index; drop pairs where start >= end."""
    starts = [float(m.group(1)) for m in START_RE.finditer(text or "")]
    ends = [float(m.group(1)) for m in END_RE.finditer(text or "")]
    intervals = []
    for start, end in zip(starts, ends):
        if start < end:
            intervals.append(Interval(start, end))
        else:
            logger.debug("Discarding invalid interval %.1fs -> %.1fs", start, end)
    return intervals


def merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Standard sweep: a start at or before the current end extends it."""
    if not intervals:
        return []
    ordered = sorted(intervals, key=lambda iv: iv.start)
    merged: list[Interval] = []
    current = ordered[0]
    for nxt in ordered[1:]:
        if nxt.start <= current.end:
            current = Interval(current.start, max(current.end, nxt.end))
        else:
            merged.append(current)
            current = nxt
    merged.append(current)
    return merged


def time_stats(text: str) -> TimeStats:
    ends = [float(m.group(1)) for m in END_RE.finditer(text or "")]
    if not ends or not START_RE.search(text or ""):
        logger.info("No speaking times found in transcript")
        return TimeStats()
    merged = merge_intervals(extract_intervals(text))
    speaking = sum(iv.duration for iv in merged)
    return TimeStats(
        meeting_length_seconds=max(ends),
        speaking_time_seconds=round(speaking, 3),
        intervals=merged,
    )


def words_per_minute(total_words: int, speaking_time_seconds: float) -> float:
    """Corrected speaking rate; with no usable timing every word counts as one second."""
    if total_words <= 0:
        return 0.0
    if speaking_time_seconds > 0:
        return round(total_words / speaking_time_seconds * 60 * WPM_CORRECTION_FACTOR, 1)
    estimated_seconds = max(total_words, 1)
    return round(total_words / estimated_seconds * 60, 1)


def format_duration(total_seconds: float) -> str:
    """Display form "00h 00m 00s"."""
    total = int(max(0.0, total_seconds))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}h {minutes:02d}m {seconds:02d}s"
