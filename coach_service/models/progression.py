"""
STEPSYNC Coach Service - Step Progression

Owns the coaching session state and reconciles two clocks: the stream of
user pose frames and the externally playing reference video. The user is
always scored against the step the video is showing right now.

Side effects (speech, play/pause, skeleton overlay) are never performed
here; they are returned in the FrameOutcome for the session shell to run.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .effects import (
    NOT_VISIBLE_COLOR,
    VISIBLE_COLOR,
    CancelSpeechEffect,
    Effect,
    PauseVideoEffect,
    PlayVideoEffect,
    RenderSkeletonEffect,
    SeekVideoEffect,
    SpeakEffect,
)
from .evaluator import CriteriaEvaluator, EvaluationResult
from .feedback import BACK_FLAT_MESSAGE, FeedbackSelector, NotificationThrottle
from .landmarks import PoseFrame
from .metrics import MetricsExtractor
from .ruleset import StepDefinition, ValidationRuleset
from .smoother import LandmarkSmoother
from .tuning import CoachingTuning
from .visibility import DistanceStatus, GateResult, VisibilityGate

logger = logging.getLogger(__name__)


INITIAL_INSTRUCTION = "Please position yourself so your shoulders, hips, and knees are visible."


class CoachPhase(str, Enum):
    """Where the session is in the positioning -> confirming -> active flow."""
    POSITIONING = "positioning"
    CONFIRMING = "confirming"
    ACTIVE = "active"
    COMPLETE = "complete"
    ENDED = "ended"


class InstructionType(str, Enum):
    POSITIONING = "positioning"
    CONFIRMING = "confirming"
    READY = "ready"
    FEEDBACK = "feedback"


class VideoCommand(str, Enum):
    PLAY = "play"
    PAUSE = "pause"


@dataclass(frozen=True)
class VideoClockSnapshot:
    """Reference video state read once at the start of a frame."""
    available: bool = False
    current_time: float = 0.0
    paused: bool = True


@dataclass
class SessionState:
    """Mutable per-session state. Only StepProgressionStateMachine writes it."""
    current_step_index: int = 0
    stable_frame_count: int = 0
    exercise_started: bool = False
    ready_to_start: bool = False
    visibility_confirm_frames: int = 0
    last_feedback_timestamp: Optional[float] = None
    last_visibility_warning_timestamp: Optional[float] = None
    exercise_started_at: Optional[float] = None
    completed: bool = False
    ended: bool = False
    pending_video_command: Optional[VideoCommand] = None
    epoch: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_step_index": self.current_step_index,
            "stable_frame_count": self.stable_frame_count,
            "exercise_started": self.exercise_started,
            "ready_to_start": self.ready_to_start,
            "visibility_confirm_frames": self.visibility_confirm_frames,
            "completed": self.completed,
            "ended": self.ended,
            "epoch": self.epoch,
        }


@dataclass
class FrameOutcome:
    """Everything one processed frame produced: UI state plus effects to run."""
    epoch: int
    phase: CoachPhase
    instruction_type: InstructionType = InstructionType.POSITIONING
    instruction_message: str = INITIAL_INSTRUCTION
    feedback: str = ""
    visible: bool = False
    distance_status: DistanceStatus = DistanceStatus.UNKNOWN
    camera_distance: float = 0.0
    confirm_progress: float = 0.0
    current_step_index: int = 0
    video_step_index: Optional[int] = None
    evaluation: Optional[EvaluationResult] = None
    effects: List[Effect] = field(default_factory=list)

    def set_instruction(self, kind: InstructionType, message: str):
        self.instruction_type = kind
        self.instruction_message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epoch": self.epoch,
            "phase": self.phase.value,
            "instruction_type": self.instruction_type.value,
            "instruction_message": self.instruction_message,
            "feedback": self.feedback,
            "visible": self.visible,
            "distance_status": self.distance_status.value,
            "camera_distance": round(self.camera_distance, 4),
            "confirm_progress": round(self.confirm_progress, 3),
            "current_step_index": self.current_step_index,
            "video_step_index": self.video_step_index,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "effects": [e.to_dict() for e in self.effects],
        }


class StepProgressionStateMachine:
    """
    Per-frame coaching state machine.

    Features:
    - Visibility / camera-distance gating with a debounced start
    - Scoring against the video-current step
    - Catch-up when the video runs ahead of the user
    - Hold-to-advance gated on the next step's start time
    - Flat-back enforcement by pausing the reference video
    - Throttled spoken feedback
    """

    def __init__(self, ruleset: ValidationRuleset, tuning: Optional[CoachingTuning] = None):
        self.ruleset = ruleset
        self.tuning = tuning or CoachingTuning()

        self.gate = VisibilityGate(
            ideal_distance=ruleset.ideal_camera_distance,
            visibility_threshold=self.tuning.visibility_threshold,
            distance_buffer=self.tuning.distance_buffer,
        )
        self.smoother = LandmarkSmoother(self.tuning.smoothing_window)
        self.extractor = MetricsExtractor()
        self.evaluator = CriteriaEvaluator(self.tuning)
        self.feedback_selector = FeedbackSelector(self.tuning)
        self.throttle = NotificationThrottle(self.tuning)

        self.state = SessionState()

    @property
    def current_step(self) -> StepDefinition:
        return self.ruleset.steps[self.state.current_step_index]

    # ═══════════════════════════════════════════════════════════════════════════
    # EFFECT HELPERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _speak(self, out: FrameOutcome, text: str):
        out.effects.append(SpeakEffect(text, rate=self.tuning.speech_rate, volume=self.tuning.speech_volume))

    def _request_video(self, out: FrameOutcome, command: VideoCommand):
        """Emit play/pause unless the same command is still awaiting acknowledgment."""
        if self.state.pending_video_command == command:
            return
        self.state.pending_video_command = command
        out.effects.append(PlayVideoEffect() if command == VideoCommand.PLAY else PauseVideoEffect())

    def _reconcile_video(self, video: VideoClockSnapshot):
        pending = self.state.pending_video_command
        if pending == VideoCommand.PLAY and not video.paused:
            self.state.pending_video_command = None
        elif pending == VideoCommand.PAUSE and video.paused:
            self.state.pending_video_command = None

    def _speak_feedback(self, out: FrameOutcome, text: str, now: float):
        if self.throttle.allow_feedback(self.state.last_feedback_timestamp, now):
            self._speak(out, text)
            self.state.last_feedback_timestamp = now

    def _speak_warning(self, out: FrameOutcome, text: str, now: float):
        if self.throttle.allow_visibility_warning(self.state.last_visibility_warning_timestamp, now):
            self._speak(out, text)
            self.state.last_visibility_warning_timestamp = now

    # ═══════════════════════════════════════════════════════════════════════════
    # FRAME PROCESSING
    # ═══════════════════════════════════════════════════════════════════════════

    def process_frame(
        self,
        frame: Optional[PoseFrame],
        video: Optional[VideoClockSnapshot] = None,
        now: Optional[float] = None
    ) -> FrameOutcome:
        """
        Run one frame through gate -> smoother -> metrics -> scoring -> progression.

        Args:
            frame: Raw detector frame, or None when no pose was detected
            video: Reference video clock snapshot taken at callback entry
            now: Wall-clock seconds (defaults to time.time())

        Returns:
            FrameOutcome with the instruction to show and effects to run
        """
        video = video or VideoClockSnapshot()
        now = time.time() if now is None else now
        state = self.state

        out = FrameOutcome(epoch=state.epoch, phase=CoachPhase.POSITIONING)

        if state.ended:
            out.phase = CoachPhase.ENDED
            out.set_instruction(InstructionType.POSITIONING, "Session ended")
            return out

        self._reconcile_video(video)

        if frame is None or len(frame) == 0:
            gate = GateResult(visible=False, distance=DistanceStatus.UNKNOWN)
        else:
            gate = self.gate.evaluate(frame)
            out.effects.append(RenderSkeletonEffect(
                landmarks=frame.to_list(),
                color=VISIBLE_COLOR if gate.visible else NOT_VISIBLE_COLOR,
            ))

        out.visible = gate.visible
        out.distance_status = gate.distance
        out.camera_distance = gate.average_z

        if state.completed:
            self._finish_outcome(out, CoachPhase.COMPLETE)
            out.set_instruction(InstructionType.READY, "🏆 Exercise complete! Great job!")
            return out

        if not gate.visible:
            self._handle_not_visible(out, video, now)
        elif not gate.distance_ok:
            self._handle_bad_distance(out, gate.distance, video, now)
        else:
            state.visibility_confirm_frames += 1
            if not state.exercise_started:
                self._handle_confirming(out, video, now)
            else:
                if not state.ready_to_start:
                    self._handle_resume(out, video)
                self._handle_active(out, frame, video, now)

        out.current_step_index = state.current_step_index
        return out

    def _finish_outcome(self, out: FrameOutcome, phase: CoachPhase):
        out.phase = phase
        out.current_step_index = self.state.current_step_index

    def _block_progression(self, out: FrameOutcome, video: VideoClockSnapshot):
        state = self.state
        state.visibility_confirm_frames = 0
        state.ready_to_start = False
        out.phase = CoachPhase.POSITIONING
        if state.exercise_started and video.available and not video.paused:
            self._request_video(out, VideoCommand.PAUSE)

    def _handle_not_visible(self, out: FrameOutcome, video: VideoClockSnapshot, now: float):
        self._block_progression(out, video)
        if self.state.exercise_started:
            out.set_instruction(
                InstructionType.POSITIONING,
                "⚠ Key body parts not visible - Please adjust your position",
            )
        else:
            out.set_instruction(
                InstructionType.POSITIONING,
                "⚠ Step Back - Upper body and knees need to be visible",
            )
        self._speak_warning(
            out, "Please adjust your position. Your upper body and knees need to be visible.", now
        )

    def _handle_bad_distance(
        self,
        out: FrameOutcome,
        distance: DistanceStatus,
        video: VideoClockSnapshot,
        now: float
    ):
        self._block_progression(out, video)
        if distance == DistanceStatus.TOO_CLOSE:
            out.set_instruction(InstructionType.POSITIONING, "⚠ Please step back - You're too close to the camera")
            self._speak_warning(out, "Please step back. You are too close to the camera.", now)
        else:
            out.set_instruction(InstructionType.POSITIONING, "⚠ Please move closer - You're too far from the camera")
            self._speak_warning(out, "Please move closer to the camera.", now)

    def _handle_confirming(self, out: FrameOutcome, video: VideoClockSnapshot, now: float):
        state = self.state
        required = self.tuning.confirm_frames_required
        progress = min(state.visibility_confirm_frames / required, 1.0)
        out.confirm_progress = progress
        out.phase = CoachPhase.CONFIRMING

        if state.visibility_confirm_frames < required:
            out.set_instruction(InstructionType.CONFIRMING, f"Hold still... {round(progress * 100)}% confirmed")
            return

        first = self.ruleset.steps[0]
        state.exercise_started = True
        state.ready_to_start = True
        state.exercise_started_at = now
        out.phase = CoachPhase.ACTIVE
        out.set_instruction(InstructionType.READY, f"Starting: {first.display_name}")
        self._speak(out, f"Good! Let's start. Step 1: {first.display_name}")
        if video.available:
            self._request_video(out, VideoCommand.PLAY)
        logger.info(f"▶️ Exercise '{self.ruleset.exercise_name}' started (epoch {state.epoch})")

    def _handle_resume(self, out: FrameOutcome, video: VideoClockSnapshot):
        self.state.ready_to_start = True
        out.set_instruction(InstructionType.READY, f"Continuing: {self.current_step.display_name}")
        if video.available and video.paused:
            self._request_video(out, VideoCommand.PLAY)

    def _video_step_index(self, video: VideoClockSnapshot) -> int:
        if not video.available:
            return self.state.current_step_index
        idx = self.ruleset.step_index_at(video.current_time)
        return self.state.current_step_index if idx is None else idx

    def _handle_active(
        self,
        out: FrameOutcome,
        frame: PoseFrame,
        video: VideoClockSnapshot,
        now: float
    ):
        state = self.state
        out.phase = CoachPhase.ACTIVE

        smoothed = self.smoother.push(frame)
        if smoothed is None:
            if out.instruction_type != InstructionType.READY:
                out.set_instruction(InstructionType.READY, "Exercise in progress...")
            return

        steps = self.ruleset.steps
        synced = video.available
        tracked = state.current_step_index
        video_idx = self._video_step_index(video)
        video_step = steps[video_idx]

        result = self.evaluator.score(self.extractor.extract(smoothed), video_step)
        out.evaluation = result
        out.video_step_index = video_idx

        if result.back_flat_failed:
            if synced and not video.paused:
                self._request_video(out, VideoCommand.PAUSE)
        elif synced and video.paused:
            self._request_video(out, VideoCommand.PLAY)

        # Sitting up never counts toward a step, however well the joints score
        if result.back_flat_failed:
            state.stable_frame_count = 0
            out.feedback = BACK_FLAT_MESSAGE
            out.set_instruction(InstructionType.FEEDBACK, BACK_FLAT_MESSAGE)
            self._speak_feedback(out, BACK_FLAT_MESSAGE, now)
            return

        # Video ran ahead of the user
        if synced and video_idx > tracked and not video.paused:
            name = video_step.display_name
            if not result.passed:
                out.set_instruction(
                    InstructionType.FEEDBACK,
                    f"⚠️ Follow the video! {name} - Your pose doesn't match yet.",
                )
                self._speak_feedback(out, f"Follow the video. {name}. Your pose doesn't match yet.", now)
            else:
                out.set_instruction(InstructionType.READY, f"✓ Good! You're matching the video: {name}")
                state.current_step_index = video_idx
                state.stable_frame_count = 0
                logger.info(f"⏩ Caught up with the video at step {video_step.step_number} ({name})")
            return

        started_at = state.exercise_started_at if state.exercise_started_at is not None else now
        if (now - started_at) * 1000.0 < self.tuning.grace_period_ms:
            out.set_instruction(InstructionType.READY, "Exercise in progress...")
            return

        if result.passed:
            state.stable_frame_count += 1
            out.set_instruction(InstructionType.READY, "✓ Great form! Keep holding...")
            if tracked == video_idx and state.stable_frame_count >= self.tuning.stable_frames_required:
                self._try_advance(out, video_idx, video)
            elif tracked < video_idx:
                state.stable_frame_count = 0
            return

        state.stable_frame_count = 0
        message = self.feedback_selector.select(result.metrics, video_step)
        out.feedback = message
        if message:
            out.set_instruction(InstructionType.FEEDBACK, message)
            self._speak_feedback(out, message, now)
        elif self.evaluator.is_improving(result):
            out.set_instruction(InstructionType.READY, "Keep going, you're doing well!")

    def _try_advance(self, out: FrameOutcome, step_idx: int, video: VideoClockSnapshot):
        state = self.state
        steps = self.ruleset.steps

        if step_idx >= self.ruleset.last_index:
            state.completed = True
            state.stable_frame_count = 0
            out.phase = CoachPhase.COMPLETE
            out.set_instruction(InstructionType.READY, "🏆 Exercise complete! Great job!")
            self._speak(out, "Great job! You have completed the exercise.")
            logger.info(f"🏆 Exercise '{self.ruleset.exercise_name}' completed")
            return

        next_step = steps[step_idx + 1]
        # Without a reference video there is no time boundary to wait for
        if video.available and video.current_time < next_step.start_time:
            # Half-up rounding; under half a second left keeps the holding message
            time_left = math.floor(next_step.start_time - video.current_time + 0.5)
            if time_left > 0:
                out.set_instruction(InstructionType.READY, f"✓ Perfect! Hold for {time_left} more seconds...")
            return

        state.current_step_index = step_idx + 1
        state.stable_frame_count = 0
        out.set_instruction(InstructionType.READY, f"Next: {next_step.display_name}")
        self._speak(out, f"Good job! Now {next_step.display_name}")
        logger.info(f"➡️ Advanced to step {next_step.step_number} ({next_step.step_name})")

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def acknowledge_command(self, epoch: int, command: VideoCommand, ok: bool) -> bool:
        """
        Record the asynchronous result of a play/pause effect.

        Acknowledgments from an earlier epoch (before a restart or teardown)
        are ignored. Returns True when the acknowledgment was applied.
        """
        if epoch != self.state.epoch or self.state.ended:
            logger.debug(f"Ignoring stale {command.value} acknowledgment (epoch {epoch} != {self.state.epoch})")
            return False
        if not ok and self.state.pending_video_command == command:
            # Allow the command to be issued again on a later frame
            self.state.pending_video_command = None
        return True

    def restart(self) -> List[Effect]:
        """Reset all counters and rewind the reference video."""
        epoch = self.state.epoch + 1
        self.state = SessionState(epoch=epoch)
        self.smoother.reset()
        logger.info(f"🔄 Session restarted (epoch {epoch})")
        return [
            CancelSpeechEffect(),
            SeekVideoEffect(position=0.0),
            PauseVideoEffect(),
            SpeakEffect(
                "Restarting. Please ensure your upper body and knees are visible.",
                rate=self.tuning.speech_rate,
                volume=self.tuning.speech_volume,
            ),
        ]

    def teardown(self) -> List[Effect]:
        """End the session; later frames and acknowledgments become no-ops."""
        self.state.epoch += 1
        self.state.ended = True
        self.state.pending_video_command = None
        self.smoother.reset()
        return [CancelSpeechEffect(), PauseVideoEffect()]

    def status(self) -> Dict[str, Any]:
        steps = self.ruleset.steps
        idx = self.state.current_step_index
        return {
            "exercise_name": self.ruleset.exercise_name,
            "total_steps": len(steps),
            "current_step": {
                "step_number": steps[idx].step_number,
                "step_name": steps[idx].step_name,
                "start_time": steps[idx].start_time,
                "end_time": steps[idx].end_time,
            },
            "progress_percent": round((idx + 1) / len(steps) * 100),
            "state": self.state.to_dict(),
        }
