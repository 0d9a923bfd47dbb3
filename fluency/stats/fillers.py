"""
Filler ("garbage") word statistics.

The dictionary is a static JSON resource mapping category -> list of lowercase words,
optionally wrapped as {"fillerWords": {...}}. Every token is classified into the first
category that lists it. The catch-all "others" category holds words that are only
fillers when overused, so an "others" word counts once it recurs.

A missing or unreadable dictionary degrades to empty stats instead of failing the
whole computation.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field

from fluency.stats.lexical import strip_punctuation, tokenize

logger = logging.getLogger(__name__)

OTHERS_CATEGORY = "others"
OTHERS_MIN_REPEATS = 2  # an "others" word counts only from its second occurrence on
CATEGORY_DISPLAY_MIN = 3  # a category is shown once it reaches this count
TOP_GARBAGE_LIMIT = 3


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class GarbageStats:
    total_garbage_words: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    top_garbage_words: dict[str, int] = field(default_factory=dict)
    garbage_percentage: int = 0


def load_filler_dictionary(path: str) -> dict[str, list[str]]:
    """Read the dictionary; returns {} (and logs) when the resource is missing or malformed."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Filler dictionary unavailable at %s: %s", path, e)
        return {}
    if isinstance(data, dict) and isinstance(data.get("fillerWords"), dict):
        data = data["fillerWords"]
    if not isinstance(data, dict):
        logger.warning("Filler dictionary at %s is not a category map", path)
        return {}
    return {
        str(category): [str(w).lower() for w in words]
        for category, words in data.items()
        if isinstance(words, list)
    }


def _classify(word: str, fillers: dict[str, list[str]]) -> str | None:
    for category, words in fillers.items():
        if word in words:
            return category
    return None


def garbage_word_stats(text: str, fillers: dict[str, list[str]]) -> GarbageStats:
    tokens = tokenize(text)
    total_words = len(tokens)
    if not fillers:
        return GarbageStats()

    by_category = {category: 0 for category in fillers}
    others_counts: dict[str, int] = {}
    first_seen: dict[str, int] = {}

    for index, token in enumerate(tokens):
        word = strip_punctuation(token)
        if not word:
            continue
        category = _classify(word, fillers)
        if category is None:
            continue
        by_category[category] += 1
        first_seen.setdefault(category, index)
        if category == OTHERS_CATEGORY:
            others_counts[word] = others_counts.get(word, 0) + 1
            first_seen.setdefault(word, index)

    frequent = sum(count for category, count in by_category.items() if category != OTHERS_CATEGORY)
    frequent += sum(count for count in others_counts.values() if count >= OTHERS_MIN_REPEATS)

    candidates = [
        (category, count)
        for category, count in by_category.items()
        if category != OTHERS_CATEGORY and count >= CATEGORY_DISPLAY_MIN
    ]
    candidates += [(word, count) for word, count in others_counts.items() if count >= OTHERS_MIN_REPEATS]
    candidates.sort(key=lambda item: (-item[1], first_seen[item[0]]))

    percentage = round_half_up(frequent / total_words * 100) if total_words else 0
    return GarbageStats(
        total_garbage_words=frequent,
        by_category=by_category,
        top_garbage_words=dict(candidates[:TOP_GARBAGE_LIMIT]),
        garbage_percentage=percentage,
    )
