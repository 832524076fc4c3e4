import math
import threading
import time

import numpy as np
import pytest

from coax_align.alignment import (
    AlignmentConfig,
    AlignmentStateMachine,
    AlignmentWorker,
    LatestFrameSlot,
    SystemState,
)
from coax_align.calibration import CalibrationData, CalibrationStore
from coax_align.controller import PidGains
from coax_align.hardware import SimulatedFrameSource, SimulatedScene, SimulatedStage
from coax_align.interfaces import Axis, Frame, StateTransitionError

SCENE = SimulatedScene()


class _RecordingSink:
    def __init__(self) -> None:
        self.calls = []

    def apply_correction(self, axis, delta_um) -> None:
        self.calls.append((axis, delta_um))


class _FailingSink:
    def apply_correction(self, axis, delta_um) -> None:
        raise TimeoutError("stage busy")


def _machine(sink=None, events=None, units_per_pixel=2.0, **config_kwargs):
    config_kwargs.setdefault("x_gains", PidGains(kp=0.5))
    config_kwargs.setdefault("y_gains", PidGains(kp=0.5))
    return AlignmentStateMachine(
        store=CalibrationStore(CalibrationData(units_per_pixel=units_per_pixel)),
        sink=sink if sink is not None else _RecordingSink(),
        config=AlignmentConfig(**config_kwargs),
        on_event=None if events is None else events.append,
    )


def _valid_frame(ts: float) -> Frame:
    return Frame(image=SCENE.render((100.0, 100.0), (103.0, 97.0)), timestamp_s=ts)


def _blank_frame(ts: float) -> Frame:
    return Frame(image=np.full((200, 200), 180, dtype=np.uint8), timestamp_s=ts)


def test_idle_machine_discards_frames() -> None:
    sink = _RecordingSink()
    machine = _machine(sink)

    outcome = machine.process_frame(_valid_frame(0.0))

    assert outcome.control_applied is False
    assert outcome.detection is None
    assert machine.state is SystemState.IDLE
    assert sink.calls == []


def test_first_valid_frame_enters_tracking_and_emits_corrections() -> None:
    sink = _RecordingSink()
    events = []
    machine = _machine(sink, events)

    machine.start()
    assert machine.state is SystemState.ACQUIRING

    outcome = machine.process_frame(_valid_frame(0.0))

    assert machine.state is SystemState.TRACKING
    assert outcome.control_applied is True
    assert outcome.error.x_um == pytest.approx(-6.0, abs=2.0)
    assert outcome.error.y_um == pytest.approx(6.0, abs=2.0)
    # Proportional only on the first update; sign flips towards the beam.
    assert outcome.correction_um == pytest.approx((-0.5 * outcome.error.x_um, -0.5 * outcome.error.y_um))
    assert [axis for axis, _ in sink.calls] == [Axis.X, Axis.Y]
    assert [kind for kind in (e.kind for e in events)] == ["state_changed", "state_changed"]


def test_miss_while_tracking_coasts_without_correction() -> None:
    sink = _RecordingSink()
    machine = _machine(sink, max_consecutive_misses=3)
    machine.start()
    machine.process_frame(_valid_frame(0.0))
    calls_before = len(sink.calls)

    outcome = machine.process_frame(_blank_frame(0.1))

    assert outcome.control_applied is False
    assert outcome.correction_um is None
    assert outcome.detection is not None
    assert len(sink.calls) == calls_before
    assert machine.state is SystemState.TRACKING
    assert machine.status().consecutive_misses == 1

    machine.process_frame(_valid_frame(0.2))
    assert machine.status().consecutive_misses == 0


def test_consecutive_misses_fault_and_fault_is_sticky() -> None:
    events = []
    machine = _machine(events=events, max_consecutive_misses=3)
    machine.start()
    machine.process_frame(_valid_frame(0.0))

    for i in range(3):
        machine.process_frame(_blank_frame(0.1 * (i + 1)))

    assert machine.state is SystemState.FAULT
    assert "lock lost" in machine.status().fault_reason
    assert "lock_lost" in [e.kind for e in events]

    outcome = machine.process_frame(_valid_frame(1.0))
    assert outcome.control_applied is False
    assert machine.state is SystemState.FAULT

    with pytest.raises(StateTransitionError):
        machine.start()
    assert machine.state is SystemState.FAULT

    machine.stop()
    assert machine.state is SystemState.IDLE
    machine.start()
    assert machine.state is SystemState.ACQUIRING


def test_start_without_any_detection_faults_past_miss_threshold() -> None:
    machine = _machine(max_consecutive_misses=4)
    machine.start()

    states = []
    for i in range(6):
        machine.process_frame(_blank_frame(0.1 * i))
        states.append(machine.state)

    assert states[:3] == [SystemState.ACQUIRING] * 3
    assert states[3:] == [SystemState.FAULT] * 3
    assert SystemState.TRACKING not in states


def test_source_disconnect_faults_immediately() -> None:
    events = []
    machine = _machine(events=events)
    machine.start()

    machine.on_source_disconnected("cable pulled")

    assert machine.state is SystemState.FAULT
    assert "cable pulled" in machine.status().fault_reason
    assert "source_failure" in [e.kind for e in events]


def test_source_timeout_is_a_skipped_cycle() -> None:
    machine = _machine()
    machine.start()
    machine.on_source_timeout()
    assert machine.state is SystemState.ACQUIRING


def test_sink_failure_is_reported_but_not_escalated() -> None:
    events = []
    machine = _machine(_FailingSink(), events)
    machine.start()

    outcome = machine.process_frame(_valid_frame(0.0))
    machine.process_frame(_valid_frame(0.1))

    status = machine.status()
    assert machine.state is SystemState.TRACKING
    assert outcome.correction_um is not None
    assert status.sink_failures == 4
    assert status.last_correction_um is not None
    assert [e.kind for e in events].count("sink_failure") == 4


def test_stop_resets_controllers_and_discards_frames() -> None:
    sink = _RecordingSink()
    machine = _machine(sink, x_gains=PidGains(kp=0.5, ki=1.0), y_gains=PidGains(kp=0.5, ki=1.0))
    machine.start()
    for i in range(4):
        machine.process_frame(_valid_frame(0.1 * i))
    assert machine.controller(Axis.X).state.integral != 0.0

    machine.stop()
    calls_after_stop = len(sink.calls)
    outcome = machine.process_frame(_valid_frame(1.0))

    assert machine.state is SystemState.IDLE
    assert outcome.control_applied is False
    assert len(sink.calls) == calls_after_stop
    for axis in (Axis.X, Axis.Y):
        assert machine.controller(axis).state.integral == 0.0
        assert machine.controller(axis).state.previous_error is None


def test_restart_first_correction_is_proportional_only() -> None:
    machine = _machine(x_gains=PidGains(kp=0.5, ki=2.0, kd=1.0), y_gains=PidGains(kp=0.5, ki=2.0, kd=1.0))
    machine.start()
    for i in range(3):
        machine.process_frame(_valid_frame(0.1 * i))
    machine.stop()
    machine.start()

    outcome = machine.process_frame(_valid_frame(5.0))

    assert outcome.correction_um[0] == pytest.approx(-0.5 * outcome.error.x_um)


def test_status_reports_frame_rate_from_timestamps() -> None:
    machine = _machine()
    machine.start()
    for i in range(5):
        machine.process_frame(_valid_frame(0.1 * i))

    status = machine.status()
    assert status.frame_rate_hz == pytest.approx(10.0)
    assert status.state is SystemState.TRACKING
    assert status.last_error is not None


def test_closed_loop_converges_on_simulated_stage() -> None:
    stage = SimulatedStage(12.0, -8.0)
    source = SimulatedFrameSource(stage, um_per_px=1.0, frame_hz=1000.0)
    machine = _machine(stage, units_per_pixel=1.0)
    machine.start()

    before = math.hypot(*stage.position_um)
    with source:
        for _ in range(30):
            frame = source.next_frame(100)
            machine.process_frame(frame)
    after = math.hypot(*stage.position_um)

    assert after < before
    assert after < 1.5
    assert machine.status().last_error.is_centered is True


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"max_consecutive_misses": 0}, "max_consecutive_misses"),
        ({"frame_timeout_ms": 0}, "frame_timeout_ms"),
        ({"correction_sign": 0.5}, "correction_sign"),
        ({"centered_tolerance_um": -1.0}, "centered_tolerance_um"),
    ],
)
def test_invalid_config_rejected(kwargs, match) -> None:
    with pytest.raises(ValueError, match=match):
        _machine(**kwargs)


def test_latest_frame_slot_keeps_only_newest_frame() -> None:
    slot = LatestFrameSlot()

    assert slot.put(_blank_frame(1.0)) is False
    assert slot.put(_blank_frame(2.0)) is True

    frame = slot.take(timeout_s=0.01)
    assert frame.timestamp_s == 2.0
    assert slot.dropped == 1
    assert slot.take(timeout_s=0.01) is None


def test_latest_frame_slot_clear() -> None:
    slot = LatestFrameSlot()
    slot.put(_blank_frame(1.0))
    slot.clear()
    assert slot.take(timeout_s=0.0) is None


def _wait_for(predicate, timeout_s: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_alignment_worker_runs_and_stops() -> None:
    stage = SimulatedStage(6.0, 4.0)
    source = SimulatedFrameSource(stage, frame_hz=200.0)
    machine = _machine(stage, units_per_pixel=1.0, frame_timeout_ms=20)
    outcomes = []
    worker = AlignmentWorker(source, machine, on_outcome=outcomes.append)

    source.start()
    machine.start()
    worker.start()
    worker.start()  # idempotent start should be safe
    assert _wait_for(lambda: machine.state is SystemState.TRACKING)
    machine.stop()
    worker.stop()
    source.stop()

    assert worker.running is False
    assert len(outcomes) >= 1
    assert any(o.control_applied for o in outcomes)
    assert worker.last_error is None


def test_alignment_worker_faults_on_disconnect() -> None:
    source = SimulatedFrameSource(SimulatedStage(), frame_hz=500.0, disconnect_after=3)
    machine = _machine(units_per_pixel=1.0, frame_timeout_ms=20)
    worker = AlignmentWorker(source, machine)

    source.start()
    machine.start()
    worker.start()
    assert _wait_for(lambda: machine.state is SystemState.FAULT)
    worker.stop()

    assert "unplugged" in machine.status().fault_reason


def test_alignment_worker_records_unexpected_source_errors() -> None:
    class _BrokenSource:
        def start(self) -> None:
            pass

        def stop(self) -> None:
            pass

        def next_frame(self, timeout_ms):
            raise ValueError("bad frame buffer")

    machine = _machine()
    worker = AlignmentWorker(_BrokenSource(), machine)
    machine.start()
    worker.start()
    assert _wait_for(lambda: machine.state is SystemState.FAULT)
    worker.stop()

    assert isinstance(worker.last_error, ValueError)
    assert "bad frame buffer" in machine.status().fault_reason


def test_alignment_worker_keeps_latest_frame_when_processing_is_slow() -> None:
    stage = SimulatedStage()
    source = SimulatedFrameSource(stage, frame_hz=200.0)
    machine = _machine(stage, units_per_pixel=1.0, frame_timeout_ms=20)
    outcomes = []

    def _slow_consumer(outcome) -> None:
        outcomes.append(outcome)
        time.sleep(0.05)

    worker = AlignmentWorker(source, machine, on_outcome=_slow_consumer)
    source.start()
    machine.start()
    worker.start()
    try:
        assert _wait_for(lambda: worker.dropped_frames >= 5 and len(outcomes) >= 3)
    finally:
        machine.stop()
        worker.stop()
        source.stop()

    # Acquisition kept its own pace while processing lagged behind.
    assert source.frames_delivered >= 2 * len(outcomes)
    # Processed frames are the newest available, not a backlog at 5 ms spacing.
    stamps = [o.timestamp_s for o in outcomes]
    assert stamps == sorted(stamps)
    assert (stamps[-1] - stamps[0]) / (len(stamps) - 1) > 0.02


class _StuckSource:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    def next_frame(self, timeout_ms):
        self.entered.set()
        if self.release.wait(5.0):
            time.sleep(timeout_ms / 1000.0)
        return None


def test_alignment_worker_refuses_restart_while_old_threads_linger() -> None:
    source = _StuckSource()
    machine = _machine(frame_timeout_ms=20)
    worker = AlignmentWorker(source, machine, join_timeout_s=0.05)

    machine.start()
    worker.start()
    assert source.entered.wait(1.0)
    worker.stop()
    assert worker.running is True

    with pytest.raises(RuntimeError, match="previous run"):
        worker.start()

    source.release.set()
    assert _wait_for(lambda: not worker.running)
    worker.start()
    assert worker.running is True
    worker.stop()
