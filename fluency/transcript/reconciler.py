"""
Timestamp reconciliation for annotated transcripts.

A recognition restart resets the engine's time reference, so the next utterance can
start numerically before the previous one ended: "...[E:2.0s] [S:1.5s]...". Such an
end/start pair cannot be trusted, so both markers are dropped and the two utterances
fuse into one interval. Text is never removed; only markers are.

Best-effort: an unequal number of start and end markers afterwards is logged and the
text is returned anyway.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from fluency.transcript.markers import (
    LOOSE_END_START_RE,
    Marker,
    count_markers,
    normalize_whitespace,
    scan_markers,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciledTranscript:
    """Annotated transcript after overlap repair."""

    text: str
    was_fixed: bool
    start_markers: int
    end_markers: int

    @property
    def balanced(self) -> bool:
        return self.start_markers == self.end_markers


def find_overlaps(markers: list[Marker]) -> list[tuple[Marker, Marker]]:
    """Adjacent (end, start) pairs where the start precedes the end in time."""
    overlaps: list[tuple[Marker, Marker]] = []
    for current, following in zip(markers, markers[1:]):
        if current.kind == "E" and following.kind == "S" and following.time < current.time:
            overlaps.append((current, following))
    return overlaps


def _excise(text: str, end_marker: Marker, start_marker: Marker) -> str:
    """Drop both markers, keep whatever literal text sits between them."""
    between = text[end_marker.end : start_marker.position].strip()
    filler = f" {between} " if between else " "
    return text[: end_marker.position] + filler + text[start_marker.end :]


def _strip_residual(text: str) -> tuple[str, int]:
    """Catch non-monotonic end/start adjacency in non-canonical marker spellings."""
    removed = 0

    def _replace(match) -> str:
        nonlocal removed
        end_time, start_time = float(match.group(1)), float(match.group(3))
        if start_time < end_time:
            removed += 1
            return " "
        return match.group(0)

    return LOOSE_END_START_RE.sub(_replace, text), removed


def reconcile_timestamps(text: str) -> ReconciledTranscript:
    """Repair overlapping end/start marker pairs left behind by engine restarts."""
    if not text:
        return ReconciledTranscript(text=text or "", was_fixed=False, start_markers=0, end_markers=0)

    overlaps = find_overlaps(scan_markers(text))
    fixed = text
    # Rightmost first so pending positions stay valid
    for end_marker, start_marker in sorted(overlaps, key=lambda pair: pair[0].position, reverse=True):
        logger.debug(
            "Removing overlapping pair [E:%ss] -> [S:%ss] at %d",
            end_marker.time,
            start_marker.time,
            end_marker.position,
        )
        fixed = _excise(fixed, end_marker, start_marker)

    fixed, residual = _strip_residual(fixed)
    was_fixed = bool(overlaps) or residual > 0
    if was_fixed:
        fixed = normalize_whitespace(fixed)
        logger.info(
            "Reconciled transcript: %d overlapping pair(s), %d residual match(es)",
            len(overlaps),
            residual,
        )

    starts, ends = count_markers(fixed)
    if starts != ends:
        logger.warning("Marker count mismatch after reconciliation: %d start vs %d end", starts, ends)
    return ReconciledTranscript(text=fixed, was_fixed=was_fixed, start_markers=starts, end_markers=ends)
