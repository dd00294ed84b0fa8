"""
Coach Service - API smoke tests

Exercises the REST endpoints and the session WebSocket with FastAPI's
TestClient. Image frames go through a stand-in detector, so MediaPipe is never
loaded.
"""

import base64
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.config import settings
from coach_service.models import CoachSessionHandler
from coach_service.models import ruleset as ruleset_module
from coach_service.models import session as session_module
from coach_service.router import router as coach_router
from shared import storage as storage_module
from shared.storage import LocalStorageManager

from tests.coach.helpers import FAST_TUNING, knee_step, make_pose, make_ruleset


RULESET = make_ruleset(
    knee_step(1, 0.0, 10.0, 80, 100),
    knee_step(2, 10.0, 20.0, 160, 180),
    camera={"min_z": -0.3, "max_z": -0.1},
)


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(ruleset_module, "_ruleset_instance", RULESET)
    monkeypatch.setattr(session_module, "_handler_instance", CoachSessionHandler(RULESET, FAST_TUNING))
    monkeypatch.setattr(storage_module, "_storage_manager", LocalStorageManager(base_path=str(tmp_path / "media")))
    monkeypatch.setattr(settings, "VIDEO_DIR", str(tmp_path / "media" / "videos"))

    app = FastAPI()
    app.include_router(coach_router, prefix="/api/coach")
    return TestClient(app)


def landmarks_message(**pose_kwargs):
    return {
        "type": "landmarks",
        "landmarks": make_pose(**pose_kwargs).to_list(),
        "video": {"available": True, "current_time": 0.0, "paused": True},
        "timestamp": 0,
    }


def start_session(client) -> str:
    response = client.post("/api/coach/session/start", json={"voice_enabled": True})
    assert response.status_code == 200
    return response.json()["session_id"]


# ═══════════════════════════════════════════════════════════════════════════════
# REST
# ═══════════════════════════════════════════════════════════════════════════════

def test_ruleset_includes_acceptable_ranges(client):
    response = client.get("/api/coach/ruleset")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["exercise_name"] == "Test Exercise"
    assert data["steps"][0]["display_name"] == "step 1"
    assert data["steps"][0]["acceptable_ranges"]["left_knee_angle"] == {"min": 77.0, "max": 103.0}


def test_reference_video_missing(client):
    response = client.get("/api/coach/reference-video")

    assert response.status_code == 200
    assert response.json()["found"] is False


def test_reference_video_asset_is_found(client, tmp_path):
    (tmp_path / "media" / "videos" / "demo.mp4").write_bytes(b"\x00\x01")

    data = client.get("/api/coach/reference-video").json()

    assert data["found"] is True
    assert data["filename"] == "demo.mp4"
    assert data["url"] == "/media/videos/demo.mp4"


def test_upload_becomes_reference_video(client):
    response = client.post(
        "/api/coach/reference-video",
        files={"video": ("my_exercise.mp4", b"fake-video-bytes", "video/mp4")},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "uploaded"

    data = client.get("/api/coach/reference-video").json()
    assert data["found"] is True
    assert data["source"] == "upload"
    assert data["url"].startswith("/media/uploads/")


def test_upload_rejects_non_video(client):
    response = client.post(
        "/api/coach/reference-video",
        files={"video": ("notes.txt", b"hello", "text/plain")},
    )
    assert response.status_code == 400


def test_session_lifecycle(client):
    session_id = start_session(client)

    status = client.get(f"/api/coach/session/{session_id}").json()
    assert status["session_id"] == session_id
    assert status["total_steps"] == 2
    assert status["state"]["current_step_index"] == 0

    restarted = client.post(f"/api/coach/session/{session_id}/restart").json()
    assert restarted["epoch"] == 1
    assert [e["type"] for e in restarted["effects"]] == ["cancel_speech", "seek_video", "pause_video", "speak"]

    ended = client.delete(f"/api/coach/session/{session_id}").json()
    assert ended["status"] == "ended"
    assert client.get(f"/api/coach/session/{session_id}").status_code == 404


def test_unknown_session_is_404(client):
    assert client.get("/api/coach/session/nope").status_code == 404
    assert client.post("/api/coach/session/nope/restart").status_code == 404
    assert client.delete("/api/coach/session/nope").status_code == 404


# ═══════════════════════════════════════════════════════════════════════════════
# WEBSOCKET
# ═══════════════════════════════════════════════════════════════════════════════

def test_websocket_frames_and_commands(client):
    session_id = start_session(client)

    with client.websocket_connect(f"/api/coach/ws/session/{session_id}") as ws:
        assert ws.receive_json()["type"] == "SESSION_STARTED"

        ws.send_json(landmarks_message())
        result = ws.receive_json()
        assert result["type"] == "FRAME_RESULT"
        assert result["phase"] == "confirming"
        assert result["effects"][0]["type"] == "render_skeleton"
        assert len(result["effects"][0]["landmarks"]) == 33

        ws.send_json(landmarks_message(z=-0.9))
        result = ws.receive_json()
        assert result["distance_status"] == "too_close"

        for _ in range(FAST_TUNING.confirm_frames_required):
            ws.send_json(landmarks_message())
            result = ws.receive_json()
        assert result["phase"] == "active"
        assert "play_video" in [e["type"] for e in result["effects"]]

        ws.send_json({"type": "ack", "epoch": result["epoch"], "command": "play", "ok": False, "error": "blocked"})
        ws.send_json({"type": "restart"})
        restarted = ws.receive_json()
        assert restarted["type"] == "RESTARTED"
        assert restarted["epoch"] == result["epoch"] + 1

        ws.send_json({"type": "end"})
        ended = ws.receive_json()
        assert ended["type"] == "SESSION_ENDED"


def test_websocket_reports_bad_messages(client):
    session_id = start_session(client)

    with client.websocket_connect(f"/api/coach/ws/session/{session_id}") as ws:
        ws.receive_json()

        ws.send_text("not json")
        assert ws.receive_json()["type"] == "ERROR"

        ws.send_json({"type": "dance"})
        error = ws.receive_json()
        assert error["type"] == "ERROR"
        assert "dance" in error["message"]

        ws.send_json({"type": "landmarks", "landmarks": [{"x": "left"}]})
        assert ws.receive_json()["type"] == "ERROR"


def test_websocket_unknown_session(client):
    with client.websocket_connect("/api/coach/ws/session/nope") as ws:
        message = ws.receive_json()

    assert message["type"] == "ERROR"


def test_disconnect_ends_the_session(client):
    session_id = start_session(client)
    handler = session_module.get_session_handler()
    session = handler.get_session(session_id)

    with client.websocket_connect(f"/api/coach/ws/session/{session_id}") as ws:
        ws.receive_json()
        ws.send_json(landmarks_message())
        ws.receive_json()

    assert handler.get_session(session_id) is None
    assert session.ended
    assert client.get(f"/api/coach/session/{session_id}").status_code == 404


class FakeDetector:
    def __init__(self):
        self.calls = []
        self.closed = False

    def detect(self, image_bytes, timestamp_ms):
        self.calls.append((image_bytes, timestamp_ms))
        return make_pose(timestamp=timestamp_ms / 1000.0)

    def close(self):
        self.closed = True


def test_image_frames_use_the_session_detector(client):
    first_id, second_id = start_session(client), start_session(client)
    handler = session_module.get_session_handler()
    first, second = FakeDetector(), FakeDetector()
    handler.get_session(first_id).detector = first
    handler.get_session(second_id).detector = second

    with client.websocket_connect(f"/api/coach/ws/session/{first_id}") as ws:
        ws.receive_json()
        ws.send_json({
            "type": "image",
            "image": "data:image/jpeg;base64," + base64.b64encode(b"jpeg-bytes").decode(),
            "video": {"available": True, "current_time": 0.0, "paused": True},
            "timestamp": 1500,
        })
        result = ws.receive_json()

    assert result["type"] == "FRAME_RESULT"
    assert result["phase"] == "confirming"
    assert first.calls == [(b"jpeg-bytes", 1500)]
    assert second.calls == []
    # Closing the socket released this session's detector only
    assert first.closed
    assert not second.closed


def test_invalid_image_payload_is_reported(client):
    session_id = start_session(client)
    session_module.get_session_handler().get_session(session_id).detector = FakeDetector()

    with client.websocket_connect(f"/api/coach/ws/session/{session_id}") as ws:
        ws.receive_json()
        ws.send_json({"type": "image", "image": "not base64!"})
        error = ws.receive_json()

    assert error["type"] == "ERROR"
    assert "base64" in error["message"]


# ═══════════════════════════════════════════════════════════════════════════════
# VOICE AND VIDEO REMOVAL
# ═══════════════════════════════════════════════════════════════════════════════

def test_voice_toggle_endpoint(client):
    session_id = start_session(client)

    muted = client.post(f"/api/coach/session/{session_id}/voice").json()
    assert muted["voice_enabled"] is False
    assert [e["type"] for e in muted["effects"]] == ["cancel_speech"]

    unmuted = client.post(f"/api/coach/session/{session_id}/voice", json={"enabled": True}).json()
    assert unmuted["voice_enabled"] is True
    assert unmuted["effects"] == []

    assert client.post("/api/coach/session/nope/voice").status_code == 404


def test_muted_session_sends_no_speech(client):
    session_id = start_session(client)

    with client.websocket_connect(f"/api/coach/ws/session/{session_id}") as ws:
        ws.receive_json()
        ws.send_json({"type": "voice", "enabled": False})
        reply = ws.receive_json()
        assert reply["type"] == "VOICE"
        assert reply["voice_enabled"] is False

        for _ in range(FAST_TUNING.confirm_frames_required):
            ws.send_json(landmarks_message())
            result = ws.receive_json()

    effect_names = [e["type"] for e in result["effects"]]
    assert result["phase"] == "active"
    assert "play_video" in effect_names
    assert "speak" not in effect_names


def test_remove_uploaded_reference_video(client):
    client.post(
        "/api/coach/reference-video",
        files={"video": ("my_exercise.mp4", b"fake-video-bytes", "video/mp4")},
    )
    uploaded = storage_module.get_storage().latest_upload

    response = client.delete("/api/coach/reference-video")

    assert response.json()["status"] == "removed"
    assert not Path(uploaded.path).exists()
    assert client.get("/api/coach/reference-video").json()["found"] is False
    assert client.delete("/api/coach/reference-video").json()["status"] == "not_found"
