"""Tests for the HTTP and WebSocket surface."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from fluency.main import app


@pytest.fixture
def client(monkeypatch, tmp_path):
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("FALLBACK_DIR", str(tmp_path / "fallback"))
    monkeypatch.setenv("LANGUAGE_DETECTION_URL", "")
    monkeypatch.setenv("LOG_FILE", "")
    monkeypatch.setenv("WORKER_MODE", "thread")
    with TestClient(app) as c:
        yield c


def _final(session_id: str = "s1", text: str = "[S:0.0s] hello world [E:2.0s]", **kwargs) -> dict:
    body = {"session_id": session_id, "text": text, "meeting_code": "abc-defg-hij", "is_english": True}
    body.update(kwargs)
    return body


def _wait_for_stats(client: TestClient, session_id: str, attempts: int = 100):
    for _ in range(attempts):
        resp = client.get(f"/api/stats/{session_id}")
        if resp.status_code == 200:
            return resp.json()
        time.sleep(0.02)
    raise AssertionError(f"no stats for {session_id}")


def _receive_until(ws, message_type: str, limit: int = 20) -> dict:
    for _ in range(limit):
        message = ws.receive_json()
        if message.get("type") == message_type:
            return message
    raise AssertionError(f"no {message_type!r} message")


# ── HTTP ─────────────────────────────────────────────────────────────

class TestHttp:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_final_saved_once(self, client):
        first = client.post("/api/sessions/final", json=_final())
        second = client.post("/api/sessions/final", json=_final(trigger="meeting-ended"))
        assert first.status_code == 200
        assert first.json()["saved"] is True
        assert first.json()["entry"]["meeting_id"] == "abc-defg-hij"
        assert second.json()["saved"] is False
        assert len(client.get("/api/transcripts").json()) == 1

    def test_unconfirmed_language_not_saved(self, client):
        resp = client.post("/api/sessions/final", json=_final(is_english=None))
        assert resp.json()["saved"] is False
        assert client.get("/api/transcripts").json() == []

    def test_missing_session_id_rejected(self, client):
        resp = client.post("/api/sessions/final", json={"text": "hi", "is_english": True})
        assert resp.status_code == 422

    def test_stats_available_after_save(self, client):
        client.post("/api/sessions/final", json=_final())
        stats = _wait_for_stats(client, "s1")
        assert stats["total_word_count"] == 2
        assert stats["speaking_time"] == "00h 00m 02s"

    def test_unknown_stats_404(self, client):
        assert client.get("/api/stats/nope").status_code == 404

    def test_segment_salvage_flow(self, client):
        segment = {"session_id": "s9", "meeting_code": "abc", "text": "[S:0.0s] salvaged [E:1.0s]", "is_english": True}
        assert client.post("/api/sessions/segment", json=segment).json()["saved"] is True
        unfinished = client.get("/api/sessions/unfinished").json()
        assert [s["session_id"] for s in unfinished] == ["s9"]

        resp = client.post("/api/sessions/s9/salvage")
        assert resp.json()["saved"] is True
        assert resp.json()["entry"]["recovered"] is True
        assert client.post("/api/sessions/s9/salvage").json()["saved"] is False
        assert client.get("/api/sessions/unfinished").json() == []

    def test_salvage_unknown_404(self, client):
        assert client.post("/api/sessions/nope/salvage").status_code == 404
        assert client.post("/api/sessions/nope/recover").status_code == 404


# ── WebSocket ────────────────────────────────────────────────────────

class TestSessionSocket:
    def test_confirmed_session_saved(self, client):
        with client.websocket_connect("/ws/session?meeting=abc-defg-hij") as ws:
            session = _receive_until(ws, "session")
            assert session["meeting_id"] == "abc-defg-hij"
            ws.send_json({"type": "start"})
            ws.send_json({"type": "language", "is_english": True})
            ws.send_json({"type": "soundstart"})
            ws.send_json({"type": "result", "resultIndex": 0, "results": [{"transcript": "hello world", "isFinal": True}]})
            ws.send_json({"type": "stop"})
            final = _receive_until(ws, "final")

        assert final["session_id"] == session["session_id"]
        assert final["saved"] is True
        assert final["trigger"] == "stop"
        transcripts = client.get("/api/transcripts").json()
        assert [t["session_id"] for t in transcripts] == [session["session_id"]]
        assert "hello world" in transcripts[0]["text"]

    def test_unconfirmed_session_not_saved(self, client):
        with client.websocket_connect("/ws/session") as ws:
            _receive_until(ws, "session")
            ws.send_json({"type": "start"})
            ws.send_json({"type": "result", "resultIndex": 0, "results": [{"transcript": "hola", "isFinal": True}]})
            ws.send_json({"type": "stop"})
            final = _receive_until(ws, "final")

        assert final["saved"] is False
        assert client.get("/api/transcripts").json() == []

    def test_retry_exhaustion_reported(self, client, monkeypatch):
        monkeypatch.setenv("RETRY_DELAY_SECONDS", "0")
        with client.websocket_connect("/ws/session") as ws:
            _receive_until(ws, "session")
            ws.send_json({"type": "start"})
            for _ in range(4):
                ws.send_json({"type": "error", "error": "aborted"})
            error = _receive_until(ws, "error")

        assert error["error"] == "aborted"
