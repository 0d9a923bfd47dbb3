"""
StatsEngine: lexical, temporal and filler statistics plus the fluency score.

Input is a reconciled annotated transcript. compute_stats() is a plain module-level
function over picklable arguments so the coordinator can run it in a separate
process; StatsEngine only binds the filler dictionary to it.
"""
from __future__ import annotations

import logging
from functools import partial
from typing import Callable

from fluency.config import get_settings
from fluency.schemas.records import GarbageWordStats, StatsRecord, TranscriptEntry
from fluency.stats.fillers import garbage_word_stats, load_filler_dictionary
from fluency.stats.lexical import word_stats
from fluency.stats.scoring import fluency_score
from fluency.stats.timing import format_duration, time_stats, words_per_minute

logger = logging.getLogger(__name__)


def compute_stats(
    text: str,
    fillers: dict[str, list[str]],
    session_id: str,
    transcript_id: str | None = None,
    meeting_id: str | None = None,
    timestamps_fixed: bool = False,
) -> StatsRecord:
    """Full stats for one reconciled transcript."""
    words = word_stats(text)
    timing = time_stats(text)
    wpm = words_per_minute(words.total_words, timing.speaking_time_seconds)

    garbage = garbage_word_stats(text, fillers)
    # No dictionary: filler density is unknown, not zero
    garbage_pct = garbage.garbage_percentage if fillers else None
    score = fluency_score(wpm, garbage_pct)
    logger.debug(
        "Stats for %s: %d words, %.1f wpm, %d%% garbage, penalties %.1f + %.1f",
        session_id,
        words.total_words,
        wpm,
        garbage.garbage_percentage,
        score.wpm_penalty,
        score.garbage_penalty,
    )

    return StatsRecord(
        session_id=session_id,
        transcript_id=transcript_id,
        meeting_id=meeting_id,
        unique_word_count=words.unique_words,
        total_word_count=words.total_words,
        words_per_minute=wpm,
        meeting_length_seconds=timing.meeting_length_seconds,
        speaking_time_seconds=timing.speaking_time_seconds,
        meeting_length=format_duration(timing.meeting_length_seconds),
        speaking_time=format_duration(timing.speaking_time_seconds),
        garbage_word_stats=GarbageWordStats(
            total_garbage_words=garbage.total_garbage_words,
            by_category=garbage.by_category,
            top_garbage_words=garbage.top_garbage_words,
            garbage_percentage=garbage.garbage_percentage,
        ),
        fluency_score=score.score,
        timestamps_fixed=timestamps_fixed,
    )


class StatsEngine:
    """Holds the filler dictionary; builds picklable stats tasks for transcript entries."""

    def __init__(self, fillers: dict[str, list[str]] | None = None, fillers_path: str | None = None) -> None:
        if fillers is None:
            path = fillers_path or get_settings().FILLERS_PATH
            fillers = load_filler_dictionary(path)
        self._fillers = fillers

    @property
    def fillers(self) -> dict[str, list[str]]:
        return self._fillers

    def task_for(self, entry: TranscriptEntry) -> Callable[[], StatsRecord]:
        """Zero-arg callable computing stats for entry, safe to ship to a worker process."""
        return partial(
            compute_stats,
            entry.text,
            self._fillers,
            entry.session_id,
            entry.id,
            entry.meeting_id,
            entry.timestamps_fixed,
        )

    def compute(self, entry: TranscriptEntry) -> StatsRecord:
        return self.task_for(entry)()
