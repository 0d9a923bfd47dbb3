"""Speech metrics: word counts, speaking time, filler density, fluency score."""
from .engine import StatsEngine, compute_stats
from .fillers import GarbageStats, garbage_word_stats, load_filler_dictionary
from .scoring import FluencyScore, fluency_score

__all__ = [
    "FluencyScore",
    "GarbageStats",
    "StatsEngine",
    "compute_stats",
    "fluency_score",
    "garbage_word_stats",
    "load_filler_dictionary",
]
