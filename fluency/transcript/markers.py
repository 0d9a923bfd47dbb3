"""
Inline timing markers for annotated transcripts.

Each finalized utterance is written as "[S:<start>s] <text> [E:<end>s]", offsets in
seconds relative to session start with one decimal. Stats and reconciliation only
ever read the canonical form; the loose pattern exists to recognise hand-edited or
older transcripts ("[ S: 3 s ]", "[E:4]").
"""
from __future__ import annotations

import re
from dataclasses import dataclass

# Canonical marker: [S:1.5s] / [E:12.0s]
MARKER_RE = re.compile(r"\[([SE]):(\d+(?:\.\d+)?)s\]")
START_RE = re.compile(r"\[S:(\d+(?:\.\d+)?)s\]")
END_RE = re.compile(r"\[E:(\d+(?:\.\d+)?)s\]")

# Tolerant of inner whitespace and a missing "s" suffix
LOOSE_MARKER_RE = re.compile(r"\[\s*[SE]\s*:\s*\d+(?:\.\d+)?\s*s?\s*\]")
LOOSE_END_START_RE = re.compile(
    r"\[\s*E\s*:\s*(\d+(?:\.\d+)?)\s*s?\s*\]"
    r"(\s*)"
    r"\[\s*S\s*:\s*(\d+(?:\.\d+)?)\s*s?\s*\]"
)

_ANY_BRACKETED_RE = re.compile(r"\[[^\]]*\]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class Marker:
    """One marker occurrence: kind "S" or "E", time in seconds, span in the text."""

    kind: str
    time: float
    position: int
    length: int

    @property
    def end(self) -> int:
        return self.position + self.length


def format_offset(seconds: float) -> str:
    return f"{max(0.0, seconds):.1f}"


def format_utterance(text: str, start: float, end: float) -> str:
    """Wrap one utterance in its start/end markers."""
    return f"[S:{format_offset(start)}s] {text.strip()} [E:{format_offset(end)}s]"


def scan_markers(text: str) -> list[Marker]:
    """Single left-to-right scan; markers come back in document order."""
    return [
        Marker(kind=m.group(1), time=float(m.group(2)), position=m.start(), length=len(m.group(0)))
        for m in MARKER_RE.finditer(text or "")
    ]


def count_markers(text: str) -> tuple[int, int]:
    """Return (start_count, end_count) of canonical markers."""
    return len(START_RE.findall(text or "")), len(END_RE.findall(text or ""))


def strip_markers(text: str) -> str:
    """Remove timing markers and any other bracketed annotation; collapse whitespace."""
    cleaned = LOOSE_MARKER_RE.sub(" ", text or "")
    cleaned = _ANY_BRACKETED_RE.sub(" ", cleaned)
    return normalize_whitespace(cleaned)


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def count_words(text: str) -> int:
    """Words spoken so far, markers excluded."""
    cleaned = strip_markers(text)
    return len(cleaned.split(" ")) if cleaned else 0


def last_words(text: str, n: int) -> str:
    """Last n words of the marker-free transcript."""
    words = strip_markers(text).split()
    return " ".join(words[-n:]) if n > 0 else ""
