"""
Fluency score: 100 minus a speaking-rate penalty and a filler-density penalty.

Inside the ideal rate band (115-140 wpm) and below the lowest filler threshold the
penalty is a small fixed constant, so identical transcripts always score the same.
"""
from __future__ import annotations

from dataclasses import dataclass

from fluency.stats.fillers import round_half_up

IDEAL_BAND_PENALTY = 2
LOW_GARBAGE_PENALTY = 2
MAX_PENALTY = 99

# (too_fast_above, too_slow_below, penalty), widest band first
_WPM_BANDS: list[tuple[float, float, float]] = [
    (200, 40, 59),
    (185, 50, 46),
    (170, 65, 33),
    (155, 90, 17),
    (145, 100, 9),
    (140, 115, 4),
]

# (percentage_above, weight), highest threshold first
_GARBAGE_WEIGHTS: list[tuple[float, float]] = [
    (10, 4.0),
    (7, 3.5),
    (4, 2.5),
    (2.5, 2.0),
]


@dataclass(frozen=True)
class FluencyScore:
    score: int
    wpm_penalty: float
    garbage_penalty: float
    total_penalty: int


def wpm_penalty(wpm: float) -> float:
    for too_fast, too_slow, penalty in _WPM_BANDS:
        if wpm > too_fast or wpm < too_slow:
            return penalty
    return IDEAL_BAND_PENALTY


def garbage_penalty(garbage_percentage: float | None) -> float:
    """None means no filler stats could be computed: no penalty at all."""
    if garbage_percentage is None:
        return 0.0
    for threshold, weight in _GARBAGE_WEIGHTS:
        if garbage_percentage > threshold:
            return garbage_percentage * weight
    return LOW_GARBAGE_PENALTY


def fluency_score(wpm: float, garbage_percentage: float | None) -> FluencyScore:
    wpm_pen = wpm_penalty(wpm)
    garbage_pen = garbage_penalty(garbage_percentage)
    total = min(MAX_PENALTY, round_half_up(wpm_pen + garbage_pen))
    return FluencyScore(
        score=max(1, 100 - total),
        wpm_penalty=wpm_pen,
        garbage_penalty=garbage_pen,
        total_penalty=total,
    )
