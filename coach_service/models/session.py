"""
STEPSYNC Coach Service - Coaching Session

Owns one StepProgressionStateMachine and carries out the effects it returns:
speech (with video volume ducking), asynchronous play/pause on the reference
video, seeking and skeleton rendering. Every asynchronous completion is tagged
with the session epoch, so anything that lands after a restart or teardown is
a no-op.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from .effects import (
    CancelSpeechEffect,
    Effect,
    PauseVideoEffect,
    PlayVideoEffect,
    RenderSkeletonEffect,
    SeekVideoEffect,
    SpeakEffect,
)
from .landmarks import PoseFrame
from .progression import (
    FrameOutcome,
    StepProgressionStateMachine,
    VideoClockSnapshot,
    VideoCommand,
)
from .ruleset import ValidationRuleset, get_ruleset
from .tuning import CoachingTuning

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# EXTERNAL COLLABORATORS
# ═══════════════════════════════════════════════════════════════════════════════

class VideoPlayer(Protocol):
    """HTML-media-like reference video."""
    current_time: float
    paused: bool
    volume: float

    async def play(self) -> None: ...

    async def pause(self) -> None: ...

    def seek(self, position: float) -> None: ...


class SpeechOutput(Protocol):
    """Best-effort text-to-speech engine."""

    def speak(
        self,
        text: str,
        rate: float,
        volume: float,
        on_done: Callable[[Optional[Exception]], None]
    ) -> None: ...

    def cancel(self) -> None: ...


class FrameDetector(Protocol):
    """Per-session pose detector fed with encoded camera images."""

    def detect(self, image_bytes: bytes, timestamp_ms: float) -> Optional[PoseFrame]: ...

    def close(self) -> None: ...


RenderCallback = Callable[[RenderSkeletonEffect], None]


class CoachSession:
    """
    One user's coaching run against one ruleset.

    `process()` only advances the state machine (the caller runs the effects,
    e.g. a browser client). `handle_frame()` also runs them against the local
    video player and speech engine.
    """

    def __init__(
        self,
        session_id: str,
        ruleset: ValidationRuleset,
        tuning: Optional[CoachingTuning] = None,
        video: Optional[VideoPlayer] = None,
        speech: Optional[SpeechOutput] = None,
        on_render: Optional[RenderCallback] = None,
        voice_enabled: bool = True,
        detector: Optional[FrameDetector] = None
    ):
        self.session_id = session_id
        self.tuning = tuning or CoachingTuning()
        self.machine = StepProgressionStateMachine(ruleset, self.tuning)
        self.video = video
        self.speech = speech
        self.on_render = on_render
        self.voice_enabled = voice_enabled
        self.detector = detector
        self.created_at = time.time()

        self._tasks: Set[asyncio.Task] = set()
        self._speech_token = 0
        self._volume_before_speech: Optional[float] = None

    @property
    def epoch(self) -> int:
        return self.machine.state.epoch

    @property
    def ended(self) -> bool:
        return self.machine.state.ended

    # ═══════════════════════════════════════════════════════════════════════════
    # FRAME HANDLING
    # ═══════════════════════════════════════════════════════════════════════════

    def snapshot_video(self) -> VideoClockSnapshot:
        if self.video is None:
            return VideoClockSnapshot(available=False)
        return VideoClockSnapshot(
            available=True,
            current_time=float(self.video.current_time),
            paused=bool(self.video.paused),
        )

    def process(
        self,
        frame: Optional[PoseFrame],
        video: Optional[VideoClockSnapshot] = None,
        now: Optional[float] = None
    ) -> FrameOutcome:
        """Advance the state machine without running effects."""
        outcome = self.machine.process_frame(frame, video, now)
        if not self.voice_enabled:
            outcome.effects = [e for e in outcome.effects if not isinstance(e, SpeakEffect)]
        return outcome

    async def handle_frame(self, frame: Optional[PoseFrame], now: Optional[float] = None) -> FrameOutcome:
        """Detector callback: snapshot the video clock, process, then run effects."""
        outcome = self.machine.process_frame(frame, self.snapshot_video(), now)
        self.execute(outcome.effects, outcome.epoch)
        return outcome

    def acknowledge(self, epoch: int, command: str, ok: bool, error: Optional[str] = None) -> bool:
        """Apply a play/pause acknowledgment reported by a remote client."""
        try:
            video_command = VideoCommand(command)
        except ValueError:
            logger.warning(f"Unknown video command in acknowledgment: {command}")
            return False
        if not ok:
            logger.warning(f"⚠️ Video {command} rejected by client: {error}")
        return self.machine.acknowledge_command(epoch, video_command, ok)

    def set_voice(self, enabled: Optional[bool] = None) -> List[Effect]:
        """
        Turn spoken feedback on or off (toggle when `enabled` is None).

        Turning it off silences the current utterance; the returned effects
        let a remote client do the same.
        """
        self.voice_enabled = (not self.voice_enabled) if enabled is None else enabled
        logger.info(f"🔊 Session {self.session_id} voice {'on' if self.voice_enabled else 'off'}")
        if self.voice_enabled:
            return []
        self._cancel_speech()
        return [CancelSpeechEffect()]

    # ═══════════════════════════════════════════════════════════════════════════
    # EFFECT EXECUTION
    # ═══════════════════════════════════════════════════════════════════════════

    def execute(self, effects: List[Effect], epoch: int):
        """Run effects produced for `epoch`. Must be called from the event loop."""
        if epoch != self.epoch:
            logger.debug(f"Dropping {len(effects)} effects from stale epoch {epoch}")
            return

        for effect in effects:
            if isinstance(effect, SpeakEffect):
                self._speak(effect)
            elif isinstance(effect, CancelSpeechEffect):
                self._cancel_speech()
            elif isinstance(effect, PlayVideoEffect):
                self._schedule_video_command(VideoCommand.PLAY, epoch)
            elif isinstance(effect, PauseVideoEffect):
                self._schedule_video_command(VideoCommand.PAUSE, epoch)
            elif isinstance(effect, SeekVideoEffect):
                if self.video is not None:
                    self.video.seek(effect.position)
            elif isinstance(effect, RenderSkeletonEffect):
                if self.on_render is not None:
                    self.on_render(effect)

    def _speak(self, effect: SpeakEffect):
        if not self.voice_enabled or self.speech is None:
            logger.debug(f"Speech unavailable, skipping: {effect.text}")
            return

        self.speech.cancel()
        self._speech_token += 1
        token = self._speech_token

        if self.video is not None:
            if self._volume_before_speech is None:
                self._volume_before_speech = self.video.volume
            self.video.volume = self.tuning.video_duck_volume

        def on_done(error: Optional[Exception] = None):
            if error is not None:
                logger.debug(f"Speech ended with error: {error}")
            # A newer utterance owns the ducked volume
            if token == self._speech_token:
                self._restore_volume()

        try:
            self.speech.speak(effect.text, effect.rate, effect.volume, on_done)
        except Exception as e:
            logger.warning(f"⚠️ Speech engine failed: {e}")
            on_done(e)

    def _cancel_speech(self):
        self._speech_token += 1
        if self.speech is not None:
            self.speech.cancel()
        self._restore_volume()

    def _restore_volume(self):
        if self.video is not None and self._volume_before_speech is not None:
            self.video.volume = self._volume_before_speech
        self._volume_before_speech = None

    def _schedule_video_command(self, command: VideoCommand, epoch: int):
        if self.video is None:
            return
        task = asyncio.get_running_loop().create_task(self._run_video_command(command, epoch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_video_command(self, command: VideoCommand, epoch: int):
        ok = True
        try:
            if command == VideoCommand.PLAY:
                await self.video.play()
            else:
                await self.video.pause()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ok = False
            logger.warning(f"⚠️ Video {command.value} failed: {e}")

        if epoch != self.epoch:
            logger.debug(f"Late video {command.value} completion after epoch {epoch} ignored")
            return
        self.machine.acknowledge_command(epoch, command, ok)

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def _cancel_pending(self):
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def restart(self) -> List[Effect]:
        """Reset the run. Local effects are executed; the list is also returned."""
        self._cancel_pending()
        effects = self.machine.restart()
        if self.video is not None or self.speech is not None:
            self._run_sync_effects(effects)
        return effects

    def teardown(self) -> List[Effect]:
        """Stop speech and video now; later completions become no-ops."""
        self._cancel_pending()
        effects = self.machine.teardown()
        self._run_sync_effects(effects)
        if self.detector is not None:
            self.detector.close()
            self.detector = None
        logger.info(f"👋 Coaching session {self.session_id} ended")
        return effects

    def _run_sync_effects(self, effects: List[Effect]):
        """Halt speech and video without waiting on the event loop."""
        for effect in effects:
            if isinstance(effect, CancelSpeechEffect):
                self._cancel_speech()
            elif isinstance(effect, SeekVideoEffect) and self.video is not None:
                self.video.seek(effect.position)
            elif isinstance(effect, PauseVideoEffect) and self.video is not None:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = None
                if loop is not None:
                    # Fire-and-forget: the epoch has already moved on
                    task = loop.create_task(self._pause_quietly())
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            elif isinstance(effect, SpeakEffect):
                self._speak(effect)

    async def _pause_quietly(self):
        try:
            await self.video.pause()
        except Exception as e:
            logger.warning(f"⚠️ Video pause failed during reset: {e}")

    def status(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "voice_enabled": self.voice_enabled,
            "created_at": self.created_at,
            **self.machine.status(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION REGISTRY
# ═══════════════════════════════════════════════════════════════════════════════

class CoachSessionHandler:
    """Keeps the active coaching sessions of this process."""

    def __init__(self, ruleset: Optional[ValidationRuleset] = None, tuning: Optional[CoachingTuning] = None):
        self._ruleset = ruleset
        self.tuning = tuning or CoachingTuning.from_settings()
        self.active_sessions: Dict[str, CoachSession] = {}

    @property
    def ruleset(self) -> ValidationRuleset:
        if self._ruleset is None:
            self._ruleset = get_ruleset()
        return self._ruleset

    def create_session(self, voice_enabled: bool = True, **kwargs) -> CoachSession:
        session_id = str(uuid.uuid4())[:8]
        session = CoachSession(
            session_id=session_id,
            ruleset=self.ruleset,
            tuning=self.tuning,
            voice_enabled=voice_enabled,
            **kwargs
        )
        self.active_sessions[session_id] = session
        logger.info(f"🆕 Coaching session {session_id} created for '{self.ruleset.exercise_name}'")
        return session

    def get_session(self, session_id: str) -> Optional[CoachSession]:
        return self.active_sessions.get(session_id)

    def end_session(self, session_id: str) -> Optional[List[Effect]]:
        """Tear down and forget a session. Returns None if it does not exist."""
        session = self.active_sessions.pop(session_id, None)
        if session is None:
            return None
        return session.teardown()


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_handler_instance: Optional[CoachSessionHandler] = None

def get_session_handler() -> CoachSessionHandler:
    """Get or create the global session handler instance."""
    global _handler_instance
    if _handler_instance is None:
        _handler_instance = CoachSessionHandler()
    return _handler_instance
