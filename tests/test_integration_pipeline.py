"""End-to-end: recognition session -> coordinator -> reconciled entry -> stats."""

from __future__ import annotations

import asyncio

from fluency.config import Settings
from fluency.recognition import RecognitionSession, SpeechResult, SpeechResultBatch, SpeechSource
from fluency.services import IsolatedWorker, LogNotifier, SessionCoordinator, StaticLanguageDetector
from fluency.stats import StatsEngine
from fluency.storage import FallbackWriter, MemoryGateway
from fluency.storage.gateway import STATS_KEY, TRANSCRIPTS_KEY


class NullSource(SpeechSource):
    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _coordinator(tmp_path, gateway) -> SessionCoordinator:
    return SessionCoordinator(
        gateway=gateway,
        engine=StatsEngine(),
        fallback=FallbackWriter(str(tmp_path / "fallback")),
        worker=IsolatedWorker(mode="thread", timeout=5),
        notifier=LogNotifier(),
    )


class TestPipeline:
    def test_overlap_session_end_to_end(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)

        async def scenario():
            entry = await coordinator.accept_final(
                "m1", "[S:1.0s]hello[E:2.0s] [S:1.5s]world[E:3.0s]", language_confirmed=True
            )
            await coordinator.drain()
            return entry, await coordinator.get_stats("m1")

        entry, stats = asyncio.run(scenario())
        assert entry.timestamps_fixed is True
        assert stats.total_word_count == 2
        assert stats.unique_word_count == 2
        assert stats.timestamps_fixed is True
        stored = gateway.snapshot()
        assert [t["id"] for t in stored[TRANSCRIPTS_KEY]] == ["m1"]
        assert set(stored[STATS_KEY]) == {"m1"}

    def test_live_session_feeds_coordinator(self, tmp_path):
        gateway = MemoryGateway()
        coordinator = _coordinator(tmp_path, gateway)
        clock = FakeClock()

        async def on_final(final):
            await coordinator.accept_final(
                final.session_id,
                final.text,
                meeting_code=final.meeting_id,
                language_confirmed=final.language_confirmed,
                trigger=final.trigger,
            )

        async def scenario():
            session = RecognitionSession(
                NullSource(),
                meeting_id="abc-defg-hij",
                on_final=on_final,
                language_detector=StaticLanguageDetector(True),
                clock=clock,
                settings=Settings(LANGUAGE_WORD_THRESHOLD=4, RETRY_DELAY_SECONDS=0.01),
                id_factory=lambda: "live-1",
            )
            session.start()
            session.on_engine_start()
            clock.now = 1.0
            session.on_sound_start()
            clock.now = 2.5
            session.handle_result(SpeechResultBatch(0, [SpeechResult("um I think", True)]))
            session.on_engine_error("aborted")
            session.on_engine_end()
            await asyncio.sleep(0.05)
            session.on_engine_start()
            clock.now = 3.0
            session.on_sound_start()
            clock.now = 5.0
            session.handle_result(SpeechResultBatch(0, [SpeechResult("it works well", True)]))
            session.stop()
            await session.wait_idle()
            await coordinator.drain()
            return await coordinator.get_stats("live-1")

        stats = asyncio.run(scenario())
        entries = gateway.snapshot()[TRANSCRIPTS_KEY]
        assert len(entries) == 1
        assert entries[0]["meeting_id"] == "abc-defg-hij"
        assert entries[0]["text"] == "[S:1.0s] um I think [E:2.5s] [S:3.0s] it works well [E:5.0s]"
        assert entries[0]["timestamps_fixed"] is False
        assert stats.total_word_count == 6
        assert stats.speaking_time_seconds == 3.5
        assert stats.garbage_word_stats.by_category["hesitations"] == 1
