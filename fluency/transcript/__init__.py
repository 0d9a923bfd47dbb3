"""Annotated transcripts: inline timing markers and restart-overlap repair."""
from .markers import format_utterance, strip_markers
from .reconciler import ReconciledTranscript, reconcile_timestamps

__all__ = ["ReconciledTranscript", "format_utterance", "reconcile_timestamps", "strip_markers"]
