"""Tests for the session coordinator: dedup, language gate, fallback, salvage, stats."""

from __future__ import annotations

import asyncio
from typing import Any

from fluency.schemas import SegmentSnapshot
from fluency.services import IsolatedWorker, Notifier, SessionCoordinator
from fluency.stats import StatsEngine
from fluency.storage import FallbackWriter, MemoryGateway
from fluency.storage.gateway import STATS_KEY, TRANSCRIPTS_KEY, segment_key

OVERLAP_TEXT = "[S:1.0s]hello[E:2.0s] [S:1.5s]world[E:3.0s]"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))


class FailingGateway(MemoryGateway):
    async def set(self, items: dict[str, Any]) -> None:
        raise OSError("quota exceeded")


def _coordinator(tmp_path, gateway=None, clock=None, notifier=None) -> SessionCoordinator:
    return SessionCoordinator(
        gateway=gateway if gateway is not None else MemoryGateway(),
        engine=StatsEngine(fillers={"hesitations": ["um"], "others": ["so"]}),
        fallback=FallbackWriter(str(tmp_path / "fallback")),
        worker=IsolatedWorker(mode="thread", timeout=5),
        notifier=notifier or RecordingNotifier(),
        clock=clock or FakeClock(),
    )


def _utt(text: str, start: float = 0.0, end: float = 2.0) -> str:
    return f"[S:{start:.1f}s] {text} [E:{end:.1f}s]"


def _transcripts(gateway: MemoryGateway) -> list[dict]:
    return gateway.snapshot().get(TRANSCRIPTS_KEY, [])


# ── idempotency ──────────────────────────────────────────────────────

class TestAcceptFinal:
    def test_same_session_saved_once(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            first = await coordinator.accept_final("s1", _utt("hello"), language_confirmed=True)
            second = await coordinator.accept_final("s1", _utt("hello"), language_confirmed=True, trigger="meeting-ended")
            await coordinator.drain()
            return first, second

        first, second = asyncio.run(scenario())
        assert first is not None
        assert second is None
        assert len(_transcripts(gateway)) == 1

    def test_racing_triggers_saved_once(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            results = await asyncio.gather(
                coordinator.accept_final("s1", _utt("hi"), language_confirmed=True, trigger="stop"),
                coordinator.accept_final("s1", _utt("hi"), language_confirmed=True, trigger="liveness"),
                coordinator.accept_final("s1", _utt("hi"), language_confirmed=True, trigger="meeting-ended"),
            )
            await coordinator.drain()
            return results

        results = asyncio.run(scenario())
        assert sum(r is not None for r in results) == 1
        assert len(_transcripts(gateway)) == 1

    def test_entry_fields(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            entry = await coordinator.accept_final(
                "s1", "  " + _utt("hi") + " ", meeting_code="abc-defg-hij", language_confirmed=True
            )
            await coordinator.drain()
            return entry

        entry = asyncio.run(scenario())
        assert entry.id == entry.session_id == "s1"
        assert entry.meeting_id == "abc-defg-hij"
        assert entry.text == _utt("hi")
        assert entry.is_english is True
        assert entry.timestamps_fixed is False
        assert entry.recovered is False
        assert entry.timestamp.startswith("2023-11-14")

    def test_default_meeting_id(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            entry = await coordinator.accept_final("s1", _utt("hi"), language_confirmed=True)
            await coordinator.drain()
            return entry

        assert asyncio.run(scenario()).meeting_id == "unknown-meeting"

    def test_overlap_reconciled_before_save(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            entry = await coordinator.accept_final("m1", OVERLAP_TEXT, language_confirmed=True)
            await coordinator.drain()
            return entry

        entry = asyncio.run(scenario())
        assert entry.timestamps_fixed is True
        assert entry.text == "[S:1.0s]hello world[E:3.0s]"


# ── language gate ────────────────────────────────────────────────────

class TestLanguageGate:
    def test_unconfirmed_never_written(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            a = await coordinator.accept_final("s1", _utt("hola"), language_confirmed=None)
            b = await coordinator.accept_final("s2", _utt("hola"), language_confirmed=False)
            return a, b

        assert asyncio.run(scenario()) == (None, None)
        assert gateway.snapshot() == {}

    def test_rejection_does_not_consume_session(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            await coordinator.accept_final("s1", _utt("hi"), language_confirmed=None)
            entry = await coordinator.accept_final("s1", _utt("hi"), language_confirmed=True)
            await coordinator.drain()
            return entry

        assert asyncio.run(scenario()) is not None

    def test_empty_text_rejected(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)
        assert asyncio.run(coordinator.accept_final("s1", "   ", language_confirmed=True)) is None
        assert gateway.snapshot() == {}


# ── store-level duplicates ───────────────────────────────────────────

class TestStoreDuplicates:
    def test_session_already_in_store(self, tmp_path):
        gateway = MemoryGateway({TRANSCRIPTS_KEY: [{"session_id": "s1", "text": "x", "timestamp": "2020-01-01T00:00:00+00:00"}]})
        coordinator = _coordinator(tmp_path, gateway)
        assert asyncio.run(coordinator.accept_final("s1", _utt("hi"), language_confirmed=True)) is None
        assert len(_transcripts(gateway)) == 1

    def test_identical_text_within_window(self, tmp_path):
        gateway = MemoryGateway()
        clock = FakeClock()
        coordinator = _coordinator(tmp_path, gateway, clock=clock)

        async def scenario():
            await coordinator.accept_final("s1", _utt("same words"), language_confirmed=True)
            clock.now += 10
            dup = await coordinator.accept_final("s2", _utt("same words"), language_confirmed=True)
            clock.now += 120
            later = await coordinator.accept_final("s3", _utt("same words"), language_confirmed=True)
            await coordinator.drain()
            return dup, later

        dup, later = asyncio.run(scenario())
        assert dup is None
        assert later is not None
        assert [t["session_id"] for t in _transcripts(gateway)] == ["s1", "s3"]


# ── persistence failure ──────────────────────────────────────────────

class TestPersistenceFailure:
    def test_falls_back_and_continues(self, tmp_path):
        gateway = FailingGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            entry = await coordinator.accept_final("s1", _utt("hello"), language_confirmed=True)
            await coordinator.drain()
            return entry

        entry = asyncio.run(scenario())
        assert entry is None
        fallback = FallbackWriter(str(tmp_path / "fallback")).read_all()
        assert [e.session_id for e in fallback] == ["s1"]
        assert gateway.snapshot() == {}

    def test_failed_session_not_retried(self, tmp_path):
        coordinator = _coordinator(tmp_path, FailingGateway())

        async def scenario():
            await coordinator.accept_final("s1", _utt("hello"), language_confirmed=True)
            return await coordinator.accept_final("s1", _utt("hello"), language_confirmed=True)

        assert asyncio.run(scenario()) is None
        assert len(FallbackWriter(str(tmp_path / "fallback")).read_all()) == 1


# ── stats ────────────────────────────────────────────────────────────

class TestStats:
    def test_stats_stored_under_session(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            await coordinator.accept_final("s1", _utt("um hello world"), language_confirmed=True)
            await coordinator.drain()
            return await coordinator.get_stats("s1")

        record = asyncio.run(scenario())
        assert record.session_id == "s1"
        assert record.total_word_count == 3
        assert 1 <= record.fluency_score <= 100

    def test_overlapping_sessions_keep_their_own_stats(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            await coordinator.accept_final("s1", _utt("one two three"), language_confirmed=True)
            await coordinator.accept_final("s2", _utt("four five"), language_confirmed=True)
            await coordinator.drain()

        asyncio.run(scenario())
        stats = gateway.snapshot()[STATS_KEY]
        assert set(stats) == {"s1", "s2"}
        assert stats["s1"]["total_word_count"] == 3
        assert stats["s2"]["total_word_count"] == 2

    def test_unknown_session_has_no_stats(self, tmp_path):
        assert asyncio.run(_coordinator(tmp_path).get_stats("nope")) is None

    def test_list_transcripts_newest_first(self, tmp_path):
        clock = FakeClock()
        coordinator = _coordinator(tmp_path, clock=clock)

        async def scenario():
            await coordinator.accept_final("s1", _utt("first"), language_confirmed=True)
            clock.now += 5
            await coordinator.accept_final("s2", _utt("second"), language_confirmed=True)
            await coordinator.drain()
            return await coordinator.list_transcripts()

        assert [e.session_id for e in asyncio.run(scenario())] == ["s2", "s1"]


# ── notifications ────────────────────────────────────────────────────

class TestNotifications:
    def test_cooldown_suppresses_repeat(self, tmp_path):
        clock = FakeClock()
        notifier = RecordingNotifier()
        coordinator = _coordinator(tmp_path, clock=clock, notifier=notifier)

        async def scenario():
            await coordinator.accept_final("s1", _utt("hi"), language_confirmed=True)
            clock.now += 5
            await coordinator.accept_final("s1", _utt("hi"), language_confirmed=True, trigger="liveness")
            await coordinator.drain()
            saved_before = [e for e, _ in notifier.events if e == "transcriptSaved"]
            clock.now += 60
            await coordinator.accept_final("s1", _utt("hi"), language_confirmed=True, trigger="meeting-ended")
            await coordinator.drain()
            return saved_before

        saved_before = asyncio.run(scenario())
        assert len(saved_before) == 1
        assert [e for e, _ in notifier.events].count("transcriptSaved") == 2
        assert [e for e, _ in notifier.events].count("statsReady") == 1

    def test_expired_cooldowns_forgotten(self, tmp_path):
        clock = FakeClock()
        coordinator = _coordinator(tmp_path, clock=clock)

        async def scenario():
            await coordinator.accept_final("s1", _utt("first"), language_confirmed=True)
            clock.now += 60
            await coordinator.accept_final("s2", _utt("second"), language_confirmed=True)
            await coordinator.drain()

        asyncio.run(scenario())
        assert set(coordinator._notified_at) == {"s2"}

    def test_notifier_failure_swallowed(self, tmp_path):
        class BrokenNotifier(Notifier):
            async def notify(self, event, payload):
                raise ConnectionError("no listeners")

        coordinator = _coordinator(tmp_path, notifier=BrokenNotifier())

        async def scenario():
            entry = await coordinator.accept_final("s1", _utt("hi"), language_confirmed=True)
            await coordinator.drain()
            return entry

        assert asyncio.run(scenario()) is not None


# ── segments, salvage, recovery ──────────────────────────────────────

def _segment(session_id: str = "s1", text: str | None = None, **kwargs) -> SegmentSnapshot:
    return SegmentSnapshot(session_id=session_id, meeting_code="abc", text=text or _utt("saved words"), **kwargs)


class TestSegments:
    def test_salvage_saves_incomplete_segment(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            await coordinator.save_segment(_segment(is_english=True))
            entry = await coordinator.salvage("s1")
            await coordinator.drain()
            return entry

        entry = asyncio.run(scenario())
        assert entry.recovered is True
        assert entry.trigger == "salvage"
        assert entry.meeting_id == "abc"

    def test_salvage_after_stop_is_noop(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            await coordinator.save_segment(_segment(is_english=True))
            await coordinator.accept_final("s1", _utt("saved words"), language_confirmed=True)
            salvaged = await coordinator.salvage("s1")
            fresh = _coordinator(tmp_path, gateway)
            salvaged_later = await fresh.salvage("s1")
            await coordinator.drain()
            return salvaged, salvaged_later

        assert asyncio.run(scenario()) == (None, None)
        assert len(_transcripts(gateway)) == 1
        assert gateway.snapshot()[segment_key("s1")]["is_complete"] is True

    def test_salvage_without_language_rejected(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            await coordinator.save_segment(_segment())
            return await coordinator.salvage("s1")

        assert asyncio.run(scenario()) is None

    def test_salvage_unknown_session(self, tmp_path):
        assert asyncio.run(_coordinator(tmp_path).salvage("missing")) is None

    def test_non_english_segment_erased(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            await coordinator.save_segment(_segment(is_english=None))
            return await coordinator.save_segment(_segment(is_english=False))

        assert asyncio.run(scenario()) is False
        assert segment_key("s1") not in gateway.snapshot()

    def test_segment_not_saved_after_final(self, tmp_path):
        coordinator = _coordinator(tmp_path)

        async def scenario():
            await coordinator.accept_final("s1", _utt("hi"), language_confirmed=True)
            saved = await coordinator.save_segment(_segment(is_english=True))
            await coordinator.drain()
            return saved

        assert asyncio.run(scenario()) is False

    def test_unfinished_sessions(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            await coordinator.save_segment(_segment(is_english=True))
            before = await coordinator.unfinished_sessions()
            await coordinator.accept_final("s1", _utt("saved words"), language_confirmed=True)
            after = await coordinator.unfinished_sessions()
            await coordinator.drain()
            return before, after

        before, after = asyncio.run(scenario())
        assert [s.session_id for s in before] == ["s1"]
        assert after == []

    def test_recover(self, tmp_path):
        gateway = MemoryGateway()
        first = _coordinator(tmp_path, gateway)
        asyncio.run(first.save_segment(_segment(is_english=True)))

        restarted = _coordinator(tmp_path, gateway)

        async def scenario():
            pending = await restarted.unfinished_sessions()
            entry = await restarted.recover(pending[0].session_id)
            await restarted.drain()
            return entry

        entry = asyncio.run(scenario())
        assert entry.trigger == "recovery"
        assert entry.recovered is True
        assert asyncio.run(restarted.unfinished_sessions()) == []
