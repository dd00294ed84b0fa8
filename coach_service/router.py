"""
STEPSYNC Coach Service Router

Endpoints for the active exercise ruleset, the reference video and live
coaching sessions. The browser plays the reference video and runs the returned
effects; frames arrive over the session WebSocket either as landmark lists or
as camera images for server-side MediaPipe detection.
"""

import asyncio
import base64
import binascii
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from core.config import settings
from shared.storage import get_storage
from shared.utils import handle_exceptions, log_execution_time, success_response

from .models import (
    CoachSession,
    CoachSessionHandler,
    CriteriaEvaluator,
    PoseFrame,
    VideoClockSnapshot,
    get_ruleset,
    get_session_handler,
    resolve_reference_video,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============= Pydantic Models =============

class StartSessionRequest(BaseModel):
    voice_enabled: bool = True


class VideoState(BaseModel):
    """Reference video clock as reported by the client at frame time."""
    available: bool = False
    current_time: float = 0.0
    paused: bool = True

    def to_snapshot(self) -> VideoClockSnapshot:
        return VideoClockSnapshot(
            available=self.available,
            current_time=self.current_time,
            paused=self.paused,
        )


class LandmarksMessage(BaseModel):
    landmarks: List[Optional[Dict[str, float]]] = []
    video: VideoState = VideoState()
    timestamp: float = 0.0


class ImageMessage(BaseModel):
    image: str
    video: VideoState = VideoState()
    timestamp: Optional[float] = None


class VoiceRequest(BaseModel):
    """Omit `enabled` to toggle."""
    enabled: Optional[bool] = None


class AckMessage(BaseModel):
    epoch: int
    command: str
    ok: bool = True
    error: Optional[str] = None


def _require_session(session_id: str) -> CoachSession:
    session = get_session_handler().get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _media_url(path: Optional[Path]) -> Optional[str]:
    """Public /media URL for files served from the media directory."""
    if path is None:
        return None
    try:
        return get_storage().url_for(path)
    except ValueError:
        return None


# ============= REST Endpoints =============

@router.get("/ruleset")
@handle_exceptions
async def get_active_ruleset():
    """
    Active exercise ruleset with the buffered scoring window of every criterion.
    """
    ruleset = get_ruleset()
    evaluator = CriteriaEvaluator(get_session_handler().tuning)

    steps = []
    for step in ruleset.steps:
        steps.append({
            **step.model_dump(),
            "display_name": step.display_name,
            "acceptable_ranges": evaluator.acceptable_ranges(step),
        })

    return success_response({
        "exercise_name": ruleset.exercise_name,
        "ideal_camera_distance": (
            ruleset.ideal_camera_distance.model_dump() if ruleset.ideal_camera_distance else None
        ),
        "steps": steps,
    })


@router.get("/reference-video")
async def get_reference_video():
    """Resolve the demonstration video: conventional filenames first, then the last upload."""
    latest = get_storage().latest_upload
    video = resolve_reference_video(
        settings.VIDEO_DIR,
        settings.VIDEO_CANDIDATES,
        uploaded=latest.path if latest else None,
    )
    return video.to_dict(url=_media_url(video.path))


@router.post("/reference-video")
@handle_exceptions
async def upload_reference_video(video: UploadFile = File(...)):
    """Upload a reference video, used when no conventional asset exists."""
    content = await video.read()
    stored = get_storage().save_video(content, video.filename or "upload.mp4")
    return {
        "status": "uploaded",
        "file_id": stored.file_id,
        "filename": stored.filename,
        "url": stored.url,
        "size_bytes": stored.size_bytes,
    }


@router.delete("/reference-video")
async def remove_reference_video():
    """Forget the uploaded reference video and delete its file."""
    removed = get_storage().remove_latest_upload()
    return {"status": "removed" if removed else "not_found"}


@router.post("/session/start")
@handle_exceptions
async def start_coaching_session(request: Optional[StartSessionRequest] = None):
    """
    Start a new coaching session.

    Returns a session ID for use with the WebSocket stream.
    """
    request = request or StartSessionRequest()
    session = get_session_handler().create_session(voice_enabled=request.voice_enabled)

    return {
        "status": "created",
        "session_id": session.session_id,
        "exercise_name": session.machine.ruleset.exercise_name,
        "total_steps": len(session.machine.ruleset.steps),
        "epoch": session.epoch,
        "websocket_url": f"/api/coach/ws/session/{session.session_id}"
    }


@router.get("/session/{session_id}")
async def get_session_status(session_id: str):
    """Current step, counters and progress of a session."""
    return _require_session(session_id).status()


@router.post("/session/{session_id}/restart")
async def restart_session(session_id: str):
    """Reset the session; the returned effects rewind and pause the client's video."""
    session = _require_session(session_id)
    effects = session.restart()
    return {
        "status": "restarted",
        "session_id": session_id,
        "epoch": session.epoch,
        "effects": [e.to_dict() for e in effects],
    }


@router.post("/session/{session_id}/voice")
async def set_session_voice(session_id: str, request: Optional[VoiceRequest] = None):
    """Turn spoken feedback on or off for a running session."""
    session = _require_session(session_id)
    effects = session.set_voice((request or VoiceRequest()).enabled)
    return {
        "session_id": session_id,
        "voice_enabled": session.voice_enabled,
        "effects": [e.to_dict() for e in effects],
    }


@router.delete("/session/{session_id}")
async def end_session(session_id: str):
    """Tear down a session and forget it."""
    effects = get_session_handler().end_session(session_id)
    if effects is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {
        "status": "ended",
        "session_id": session_id,
        "effects": [e.to_dict() for e in effects],
    }


# ============= WebSocket Endpoints =============

@log_execution_time
async def _detect_pose(session: CoachSession, message: ImageMessage) -> Optional[PoseFrame]:
    """Decode a base64 camera image and run the session's MediaPipe detector off the event loop."""
    payload = message.image.split(",", 1)[-1]  # tolerate data: URLs
    try:
        image_bytes = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image: {e}") from e

    timestamp_ms = message.timestamp if message.timestamp is not None else time.time() * 1000.0
    if session.detector is None:
        # Imported here so the landmark path never loads MediaPipe
        from .models.pose_detector import create_pose_detector
        session.detector = create_pose_detector()
    return await asyncio.to_thread(session.detector.detect, image_bytes, timestamp_ms)


async def _handle_message(
    handler: CoachSessionHandler,
    session: CoachSession,
    data: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    """Dispatch one client message; returns the reply to send, if any."""
    kind = data.get("type")

    if kind == "landmarks":
        message = LandmarksMessage.model_validate(data)
        frame = PoseFrame.from_sequence(message.landmarks, timestamp=message.timestamp)
        outcome = session.process(frame, message.video.to_snapshot())
        return {"type": "FRAME_RESULT", **outcome.to_dict()}

    if kind == "image":
        message = ImageMessage.model_validate(data)
        frame = await _detect_pose(session, message)
        outcome = session.process(frame, message.video.to_snapshot())
        return {"type": "FRAME_RESULT", **outcome.to_dict()}

    if kind == "ack":
        message = AckMessage.model_validate(data)
        session.acknowledge(message.epoch, message.command, message.ok, message.error)
        return None

    if kind == "voice":
        message = VoiceRequest.model_validate(data)
        effects = session.set_voice(message.enabled)
        return {
            "type": "VOICE",
            "voice_enabled": session.voice_enabled,
            "effects": [e.to_dict() for e in effects],
        }

    if kind == "restart":
        effects = session.restart()
        return {
            "type": "RESTARTED",
            "epoch": session.epoch,
            "effects": [e.to_dict() for e in effects],
        }

    if kind == "end":
        effects = handler.end_session(session.session_id) or []
        return {
            "type": "SESSION_ENDED",
            "session_id": session.session_id,
            "effects": [e.to_dict() for e in effects],
        }

    raise ValueError(f"Unknown message type: {kind}")


@router.websocket("/ws/session/{session_id}")
async def coach_session_stream(websocket: WebSocket, session_id: str):
    """
    Real-time coaching stream.

    Client messages: landmarks, image, ack, voice, restart, end.
    Server replies: SESSION_STARTED, FRAME_RESULT, VOICE, RESTARTED, SESSION_ENDED, ERROR.
    The session is torn down when the socket closes.
    """
    await websocket.accept()
    handler = get_session_handler()

    session = handler.get_session(session_id)
    if not session:
        await websocket.send_json({
            "type": "ERROR",
            "message": f"Session {session_id} not found"
        })
        await websocket.close()
        return

    try:
        await websocket.send_json({
            "type": "SESSION_STARTED",
            **session.status()
        })

        while True:
            raw = await websocket.receive_text()

            try:
                reply = await _handle_message(handler, session, json.loads(raw))
                if reply is not None:
                    await websocket.send_json(reply)
                if session.ended:
                    await websocket.close()
                    break
            except WebSocketDisconnect:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Session {session_id} message failed: {e}")
                await websocket.send_json({
                    "type": "ERROR",
                    "message": str(e)
                })

    except WebSocketDisconnect:
        logger.info(f"🔌 Session {session_id} disconnected")
    finally:
        # Leaving the page ends the run; late completions become no-ops
        handler.end_session(session_id)
