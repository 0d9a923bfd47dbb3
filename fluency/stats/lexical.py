"""Word counts over a marker-free transcript."""
from __future__ import annotations

import re
from dataclasses import dataclass

from fluency.transcript.markers import strip_markers

_PUNCTUATION_RE = re.compile(r"[.,!?;:()\"'-]")


@dataclass(frozen=True)
class WordStats:
    total_words: int
    unique_words: int


def tokenize(text: str) -> list[str]:
    """Whitespace tokens of the transcript with all bracketed markers removed."""
    cleaned = strip_markers(text)
    return cleaned.split(" ") if cleaned else []


def clean_token(token: str) -> str:
    """Lower-case and strip punctuation, keeping contractions ("don't") intact."""
    lowered = token.lower()
    if "'" in lowered:
        return lowered
    return _PUNCTUATION_RE.sub("", lowered)


def strip_punctuation(token: str) -> str:
    """Lower-case, every listed punctuation character removed (apostrophes too)."""
    return _PUNCTUATION_RE.sub("", token.lower())


def word_stats(text: str) -> WordStats:
    tokens = tokenize(text)
    unique = {cleaned for cleaned in (clean_token(t) for t in tokens) if cleaned}
    return WordStats(total_words=len(tokens), unique_words=len(unique))
