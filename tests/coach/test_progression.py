"""
Coach Service - Step Progression tests

Drives the state machine frame by frame with synthetic poses and a scripted
reference video clock.
"""

import pytest

from coach_service.models import (
    CoachPhase,
    CoachingTuning,
    InstructionType,
    StepProgressionStateMachine,
    VideoClockSnapshot,
    VideoCommand,
)
from coach_service.models.effects import (
    CancelSpeechEffect,
    PauseVideoEffect,
    PlayVideoEffect,
    RenderSkeletonEffect,
    SeekVideoEffect,
    SpeakEffect,
)
from coach_service.models.feedback import BACK_FLAT_MESSAGE

from tests.coach.helpers import FAST_TUNING, knee_step, make_pose, make_ruleset


BENT = 90.0
STRAIGHT = 170.0


def playing(t: float) -> VideoClockSnapshot:
    return VideoClockSnapshot(available=True, current_time=t, paused=False)


def paused(t: float = 0.0) -> VideoClockSnapshot:
    return VideoClockSnapshot(available=True, current_time=t, paused=True)


def effect_types(outcome):
    return [type(e) for e in outcome.effects]


def spoken(outcome):
    return [e.text for e in outcome.effects if isinstance(e, SpeakEffect)]


def start(machine, video=None, now=0.0):
    """Feed confirm frames until the exercise starts; returns the starting outcome."""
    for _ in range(machine.tuning.confirm_frames_required):
        outcome = machine.process_frame(make_pose(BENT), video, now=now)
    assert machine.state.exercise_started
    return outcome


@pytest.fixture
def three_steps():
    """Bent knees, then straight legs twice (steps 2 and 3 look the same)."""
    return make_ruleset(
        knee_step(1, 0.0, 10.0, 80, 100),
        knee_step(2, 10.0, 20.0, 160, 180),
        knee_step(3, 20.0, 30.0, 160, 180),
    )


@pytest.fixture
def machine(three_steps):
    return StepProgressionStateMachine(three_steps, FAST_TUNING)


# ═══════════════════════════════════════════════════════════════════════════════
# POSITIONING AND START
# ═══════════════════════════════════════════════════════════════════════════════

def test_confirming_counts_up_before_start(machine):
    outcome = machine.process_frame(make_pose(), paused(), now=0.0)

    assert outcome.phase == CoachPhase.CONFIRMING
    assert outcome.instruction_type == InstructionType.CONFIRMING
    assert outcome.instruction_message == "Hold still... 33% confirmed"
    assert outcome.confirm_progress == pytest.approx(1 / 3)
    assert PlayVideoEffect not in effect_types(outcome)


def test_start_speaks_and_plays(machine):
    outcome = start(machine, paused())

    assert outcome.phase == CoachPhase.ACTIVE
    assert outcome.instruction_message == "Starting: step 1"
    assert spoken(outcome) == ["Good! Let's start. Step 1: step 1"]
    assert PlayVideoEffect in effect_types(outcome)
    assert machine.state.pending_video_command == VideoCommand.PLAY


def test_default_tuning_needs_thirty_frames(three_steps):
    machine = StepProgressionStateMachine(three_steps, CoachingTuning())
    for _ in range(29):
        machine.process_frame(make_pose(), paused(), now=0.0)
    assert not machine.state.exercise_started

    machine.process_frame(make_pose(), paused(), now=0.0)
    assert machine.state.exercise_started


def test_losing_visibility_resets_confirmation(machine):
    machine.process_frame(make_pose(), paused(), now=0.0)
    machine.process_frame(make_pose(), paused(), now=0.0)
    outcome = machine.process_frame(make_pose(visibility=0.1), paused(), now=0.0)

    assert outcome.phase == CoachPhase.POSITIONING
    assert outcome.instruction_message == "⚠ Step Back - Upper body and knees need to be visible"
    assert machine.state.visibility_confirm_frames == 0
    assert not machine.state.exercise_started


def test_skeleton_color_follows_visibility(machine):
    visible = machine.process_frame(make_pose(), paused(), now=0.0)
    hidden = machine.process_frame(make_pose(visibility=0.1), paused(), now=0.0)

    render = [e for e in visible.effects if isinstance(e, RenderSkeletonEffect)][0]
    assert render.color == "#00FF00"
    render = [e for e in hidden.effects if isinstance(e, RenderSkeletonEffect)][0]
    assert render.color == "#FF9800"


def test_no_pose_is_not_visible(machine):
    outcome = machine.process_frame(None, paused(), now=0.0)

    assert not outcome.visible
    assert outcome.phase == CoachPhase.POSITIONING
    assert not any(isinstance(e, RenderSkeletonEffect) for e in outcome.effects)


def test_visibility_warning_is_throttled(machine):
    first = machine.process_frame(make_pose(visibility=0.1), paused(), now=100.0)
    second = machine.process_frame(make_pose(visibility=0.1), paused(), now=110.0)
    third = machine.process_frame(make_pose(visibility=0.1), paused(), now=116.0)

    assert len(spoken(first)) == 1
    assert spoken(second) == []
    assert len(spoken(third)) == 1


def test_too_close_blocks_start():
    ruleset = make_ruleset(knee_step(1, 0.0, 10.0, 80, 100), camera={"min_z": -0.3, "max_z": -0.1})
    machine = StepProgressionStateMachine(ruleset, FAST_TUNING)

    for _ in range(5):
        outcome = machine.process_frame(make_pose(z=-0.9), paused(), now=0.0)

    assert not machine.state.exercise_started
    assert outcome.instruction_message == "⚠ Please step back - You're too close to the camera"
    assert outcome.distance_status.value == "too_close"


def test_losing_visibility_mid_exercise_pauses_video(machine):
    start(machine, paused())
    machine.process_frame(make_pose(BENT), playing(2.0), now=1.0)

    outcome = machine.process_frame(make_pose(visibility=0.1), playing(2.1), now=1.1)

    assert PauseVideoEffect in effect_types(outcome)
    assert outcome.instruction_message == "⚠ Key body parts not visible - Please adjust your position"
    assert not machine.state.ready_to_start

    resumed = machine.process_frame(make_pose(BENT), paused(2.1), now=1.2)
    assert PlayVideoEffect in effect_types(resumed)


# ═══════════════════════════════════════════════════════════════════════════════
# VIDEO SYNCHRONIZATION
# ═══════════════════════════════════════════════════════════════════════════════

def test_follow_the_video_when_behind_and_failing(machine):
    """Video already in step 3, user still on step 1 and not matching: no advance."""
    start(machine, paused())

    outcome = machine.process_frame(make_pose(BENT), playing(25.0), now=1.0)

    assert outcome.video_step_index == 2
    assert outcome.instruction_type == InstructionType.FEEDBACK
    assert outcome.instruction_message.startswith("⚠️ Follow the video! step 3")
    assert spoken(outcome) == ["Follow the video. step 3. Your pose doesn't match yet."]
    assert machine.state.current_step_index == 0


def test_catch_up_when_matching_the_video(machine):
    start(machine, paused())

    outcome = machine.process_frame(make_pose(STRAIGHT), playing(12.0), now=1.0)

    assert machine.state.current_step_index == 1
    assert outcome.instruction_message == "✓ Good! You're matching the video: step 2"
    assert machine.state.stable_frame_count == 0


def test_hold_until_video_reaches_next_step(three_steps):
    """Step 2 held before the video reaches step 3: report the remaining hold time."""
    machine = StepProgressionStateMachine(three_steps, CoachingTuning(
        smoothing_window=1,
        confirm_frames_required=3,
        grace_period_ms=0,
    ))
    start(machine, paused())
    machine.process_frame(make_pose(STRAIGHT), playing(12.0), now=1.0)
    assert machine.state.current_step_index == 1

    for i in range(10):
        outcome = machine.process_frame(make_pose(STRAIGHT), playing(17.0 + i * 0.03), now=2.0 + i * 0.03)

    assert machine.state.stable_frame_count == 10
    assert outcome.instruction_message == "✓ Perfect! Hold for 3 more seconds..."
    assert machine.state.current_step_index == 1

    outcome = machine.process_frame(make_pose(STRAIGHT), playing(19.9), now=3.0)
    assert machine.state.current_step_index == 1

    outcome = machine.process_frame(make_pose(STRAIGHT), playing(20.2), now=3.5)
    assert machine.state.current_step_index == 2


def test_completing_the_last_step(machine):
    start(machine, paused())
    machine.process_frame(make_pose(STRAIGHT), playing(25.0), now=1.0)
    assert machine.state.current_step_index == 2

    for i in range(FAST_TUNING.stable_frames_required):
        outcome = machine.process_frame(make_pose(STRAIGHT), playing(25.5 + i), now=2.0 + i)

    assert outcome.phase == CoachPhase.COMPLETE
    assert machine.state.completed
    assert spoken(outcome) == ["Great job! You have completed the exercise."]

    after = machine.process_frame(make_pose(STRAIGHT), playing(28.0), now=10.0)
    assert after.phase == CoachPhase.COMPLETE
    assert spoken(after) == []


def test_step_index_never_decreases(machine):
    start(machine, paused())
    machine.process_frame(make_pose(STRAIGHT), playing(25.0), now=1.0)
    seen = [machine.state.current_step_index]

    for t, pose in ((5.0, BENT), (1.0, STRAIGHT), (12.0, BENT), (8.0, BENT)):
        machine.process_frame(make_pose(pose), playing(t), now=2.0)
        seen.append(machine.state.current_step_index)

    assert seen == sorted(seen)
    assert seen[-1] == 2


def test_grace_period_suppresses_feedback(three_steps):
    machine = StepProgressionStateMachine(three_steps, CoachingTuning(
        smoothing_window=1,
        confirm_frames_required=3,
        stable_frames_required=2,
        grace_period_ms=5000,
    ))
    start(machine, paused(), now=100.0)

    early = machine.process_frame(make_pose(STRAIGHT), playing(1.0), now=101.0)
    late = machine.process_frame(make_pose(STRAIGHT), playing(6.0), now=106.0)

    assert early.instruction_message == "Exercise in progress..."
    assert spoken(early) == []
    assert late.instruction_type == InstructionType.FEEDBACK
    assert late.feedback == "Straighten your left knee!"


def test_failing_pose_gets_throttled_feedback(machine):
    start(machine, paused())

    first = machine.process_frame(make_pose(STRAIGHT), playing(1.0), now=1.0)
    second = machine.process_frame(make_pose(STRAIGHT), playing(1.5), now=2.0)

    assert first.feedback == "Straighten your left knee!"
    assert spoken(first) == ["Straighten your left knee!"]
    assert second.feedback == "Straighten your left knee!"
    assert spoken(second) == []


def test_back_not_flat_pauses_the_video():
    flat_step = knee_step(1, 0.0, 10.0, 0, 180, back_flat={"should_be_flat": True, "max_deviation": 0.1})
    machine = StepProgressionStateMachine(make_ruleset(flat_step), FAST_TUNING)
    start(machine, paused())

    outcome = machine.process_frame(make_pose(shoulder_y=0.3, hip_y=0.75), playing(2.0), now=1.0)

    assert outcome.evaluation.back_flat_failed
    assert PauseVideoEffect in effect_types(outcome)
    # The correction replaces the pause notice as the instruction shown
    assert outcome.feedback == BACK_FLAT_MESSAGE
    assert outcome.instruction_type == InstructionType.FEEDBACK

    flat_again = machine.process_frame(make_pose(), paused(2.0), now=2.0)
    assert PlayVideoEffect in effect_types(flat_again)


def sitting_up_ruleset():
    """Two steps whose joint criteria all pass while the user sits up."""
    steps = []
    for number, (begin, end) in enumerate([(0.0, 10.0), (10.0, 20.0)], start=1):
        step = knee_step(number, begin, end, 0, 180, back_flat={"should_be_flat": True, "max_deviation": 0.1})
        step["criteria"]["left_elbow_angle"] = {"min": 0, "max": 180}
        steps.append(step)
    return make_ruleset(*steps)


def test_sitting_up_with_good_joints_never_holds_the_step():
    machine = StepProgressionStateMachine(sitting_up_ruleset(), FAST_TUNING)
    start(machine, paused())

    outcomes = []
    for i in range(5):
        outcome = machine.process_frame(make_pose(shoulder_y=0.3, hip_y=0.75), playing(9.5), now=1.0 + i)
        outcomes.append(outcome)

        # 3 of 3 joints pass, the penalty leaves 2 of 4 which would clear the bar
        assert outcome.evaluation.back_flat_failed
        assert outcome.feedback == BACK_FLAT_MESSAGE
        assert outcome.instruction_message == BACK_FLAT_MESSAGE
        assert machine.state.stable_frame_count == 0

    assert machine.state.current_step_index == 0
    assert PauseVideoEffect in effect_types(outcomes[0])


def test_sitting_up_does_not_complete_without_video():
    machine = StepProgressionStateMachine(sitting_up_ruleset(), FAST_TUNING)
    start(machine, None)

    for i in range(6):
        outcome = machine.process_frame(make_pose(shoulder_y=0.3, hip_y=0.75), None, now=1.0 + i)

    assert machine.state.current_step_index == 0
    assert not machine.state.completed
    assert outcome.phase == CoachPhase.ACTIVE


def test_flatness_warning_is_spoken_once_per_cooldown():
    machine = StepProgressionStateMachine(sitting_up_ruleset(), FAST_TUNING)
    start(machine, None)

    first = machine.process_frame(make_pose(shoulder_y=0.3, hip_y=0.75), None, now=1.0)
    second = machine.process_frame(make_pose(shoulder_y=0.3, hip_y=0.75), None, now=2.0)

    assert spoken(first) == [BACK_FLAT_MESSAGE]
    assert spoken(second) == []


# ═══════════════════════════════════════════════════════════════════════════════
# NO REFERENCE VIDEO
# ═══════════════════════════════════════════════════════════════════════════════

def test_fallback_progression_without_video(machine):
    outcome = start(machine, None)
    assert PlayVideoEffect not in effect_types(outcome)

    outcome = machine.process_frame(make_pose(BENT), None, now=1.0)
    assert outcome.video_step_index == 0
    outcome = machine.process_frame(make_pose(BENT), None, now=1.1)

    assert machine.state.current_step_index == 1
    assert outcome.instruction_message == "Next: step 2"
    assert spoken(outcome) == ["Good job! Now step 2"]


# ═══════════════════════════════════════════════════════════════════════════════
# COMMANDS, RESTART, TEARDOWN
# ═══════════════════════════════════════════════════════════════════════════════

def test_pending_play_is_not_reissued(machine):
    start(machine, paused())

    still_paused = machine.process_frame(make_pose(BENT), paused(0.0), now=1.0)
    assert PlayVideoEffect not in effect_types(still_paused)

    assert machine.acknowledge_command(machine.state.epoch, VideoCommand.PLAY, ok=False)
    retried = machine.process_frame(make_pose(BENT), paused(0.0), now=1.1)
    assert PlayVideoEffect in effect_types(retried)


def test_snapshot_confirms_pending_command(machine):
    start(machine, paused())
    machine.process_frame(make_pose(BENT), playing(0.5), now=1.0)

    assert machine.state.pending_video_command is None


def test_restart_resets_and_rewinds(machine):
    start(machine, paused())
    machine.process_frame(make_pose(STRAIGHT), playing(12.0), now=1.0)
    old_epoch = machine.state.epoch

    effects = machine.restart()

    assert [type(e) for e in effects] == [CancelSpeechEffect, SeekVideoEffect, PauseVideoEffect, SpeakEffect]
    assert effects[1].position == 0.0
    assert machine.state.epoch == old_epoch + 1
    assert machine.state.current_step_index == 0
    assert not machine.state.exercise_started
    assert len(machine.smoother) == 0


def test_stale_acknowledgment_is_ignored(machine):
    start(machine, paused())
    old_epoch = machine.state.epoch
    machine.restart()
    start(machine, paused())

    assert not machine.acknowledge_command(old_epoch, VideoCommand.PLAY, ok=False)
    assert machine.state.pending_video_command == VideoCommand.PLAY


def test_teardown_ends_session(machine):
    start(machine, paused())
    epoch = machine.state.epoch

    effects = machine.teardown()
    outcome = machine.process_frame(make_pose(), playing(3.0), now=5.0)

    assert [type(e) for e in effects] == [CancelSpeechEffect, PauseVideoEffect]
    assert outcome.phase == CoachPhase.ENDED
    assert outcome.effects == []
    assert not machine.acknowledge_command(epoch, VideoCommand.PLAY, ok=True)
