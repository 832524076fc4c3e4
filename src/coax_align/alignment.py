from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger

from .calibration import CalibrationStore
from .controller import AxisController, PidGains
from .estimator import DEFAULT_TOLERANCE_UM, AlignmentError, estimate
from .interfaces import (
    Axis,
    CorrectionSink,
    Frame,
    FrameSource,
    SourceDisconnectedError,
    StateTransitionError,
)
from .vision import DetectionResult, Roi, detect


class SystemState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    TRACKING = "tracking"
    FAULT = "fault"


_ACTIVE_STATES = (SystemState.ACQUIRING, SystemState.TRACKING)


@dataclass(slots=True)
class AlignmentConfig:
    x_gains: PidGains = field(default_factory=PidGains)
    y_gains: PidGains = field(default_factory=PidGains)
    centered_tolerance_um: float = DEFAULT_TOLERANCE_UM
    # Consecutive frames without both features before declaring loss of lock.
    max_consecutive_misses: int = 5
    # Bounded to roughly one frame interval so a stop is seen promptly.
    frame_timeout_ms: int = 100
    max_correction_um: float | None = None
    # Applied to the controller output before it reaches the sink. -1 suits a
    # stage whose positive move shifts the nozzle image towards +pixels.
    correction_sign: float = -1.0
    roi: Roi | None = None
    frame_rate_window: int = 30


@dataclass(frozen=True, slots=True)
class AlignmentEvent:
    kind: str
    message: str
    timestamp_s: float


@dataclass(slots=True)
class FrameOutcome:
    timestamp_s: float
    state: SystemState
    detection: DetectionResult | None
    error: AlignmentError | None
    correction_um: tuple[float, float] | None
    control_applied: bool


@dataclass(frozen=True, slots=True)
class AlignmentStatus:
    state: SystemState
    last_error: AlignmentError | None
    last_correction_um: tuple[float, float] | None
    frame_rate_hz: float
    consecutive_misses: int = 0
    sink_failures: int = 0
    dropped_frames: int = 0
    fault_reason: str | None = None


class AlignmentStateMachine:
    """Supervised nozzle-to-beam alignment loop.

    Per frame:
    1) Detect nozzle and beam with the current calibration snapshot.
    2) Convert the offset into a physical error; coast when either is missing.
    3) Run one PID update per axis and hand the corrections to the sink.

    State only changes through `start`, `stop`, `process_frame`,
    `on_source_disconnected` and `fault`. FAULT is left only by `stop`.
    """

    def __init__(
        self,
        store: CalibrationStore,
        sink: CorrectionSink,
        config: AlignmentConfig,
        on_event: Callable[[AlignmentEvent], None] | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._config = config
        self._validate_config()
        self._on_event = on_event
        self._controllers = {
            Axis.X: AxisController(config.x_gains, max_correction_um=config.max_correction_um),
            Axis.Y: AxisController(config.y_gains, max_correction_um=config.max_correction_um),
        }
        self._lock = threading.RLock()
        self._state = SystemState.IDLE
        self._run_id = 0
        self._misses = 0
        self._sink_failures = 0
        self._fault_reason: str | None = None
        self._last_error: AlignmentError | None = None
        self._last_correction: tuple[float, float] | None = None
        self._frame_times: deque[float] = deque(maxlen=config.frame_rate_window)

    @property
    def config(self) -> AlignmentConfig:
        return self._config

    @property
    def state(self) -> SystemState:
        return self._state

    def controller(self, axis: Axis) -> AxisController:
        return self._controllers[axis]

    def _validate_config(self) -> None:
        if self._config.max_consecutive_misses < 1:
            raise ValueError("max_consecutive_misses must be >= 1")
        if self._config.frame_timeout_ms <= 0:
            raise ValueError("frame_timeout_ms must be > 0")
        if self._config.centered_tolerance_um < 0:
            raise ValueError("centered_tolerance_um must be >= 0")
        if self._config.correction_sign not in (-1.0, 1.0):
            raise ValueError("correction_sign must be +1 or -1")
        if self._config.frame_rate_window < 2:
            raise ValueError("frame_rate_window must be >= 2")

    def _emit(self, kind: str, message: str) -> None:
        if self._on_event is not None:
            self._on_event(AlignmentEvent(kind=kind, message=message, timestamp_s=time.time()))

    def _transition(self, new_state: SystemState, reason: str) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        if new_state is SystemState.FAULT:
            logger.error(f"Alignment {old_state.value} -> {new_state.value}: {reason}")
        else:
            logger.info(f"Alignment {old_state.value} -> {new_state.value}: {reason}")
        self._emit("state_changed", f"{old_state.value} -> {new_state.value}: {reason}")

    def _reset_controllers(self) -> None:
        for controller in self._controllers.values():
            controller.reset()

    def start(self) -> None:
        with self._lock:
            if self._state in _ACTIVE_STATES:
                return
            if self._state is SystemState.FAULT:
                raise StateTransitionError("Alignment is faulted; stop before starting again")
            calibration = self._store.current()
            self._reset_controllers()
            self._run_id += 1
            self._misses = 0
            self._sink_failures = 0
            self._fault_reason = None
            self._last_error = None
            self._last_correction = None
            self._frame_times.clear()
            self._transition(
                SystemState.ACQUIRING,
                f"start requested ({calibration.units_per_pixel:.4f} um/px)",
            )

    def stop(self) -> None:
        """Return to IDLE from any state. No correction is emitted afterwards."""

        with self._lock:
            self._run_id += 1
            self._reset_controllers()
            self._misses = 0
            self._fault_reason = None
            self._transition(SystemState.IDLE, "stop requested")

    def fault(self, reason: str) -> None:
        with self._lock:
            if self._state not in _ACTIVE_STATES:
                return
            self._reset_controllers()
            self._fault_reason = reason
            self._transition(SystemState.FAULT, reason)

    def on_source_timeout(self) -> None:
        logger.debug("Frame source timed out; skipping cycle")

    def on_source_disconnected(self, reason: str) -> None:
        self._emit("source_failure", reason)
        self.fault(f"frame source disconnected: {reason}")

    def status(self) -> AlignmentStatus:
        with self._lock:
            return AlignmentStatus(
                state=self._state,
                last_error=self._last_error,
                last_correction_um=self._last_correction,
                frame_rate_hz=self._frame_rate_hz(),
                consecutive_misses=self._misses,
                sink_failures=self._sink_failures,
                fault_reason=self._fault_reason,
            )

    def _frame_rate_hz(self) -> float:
        if len(self._frame_times) < 2:
            return 0.0
        span = self._frame_times[-1] - self._frame_times[0]
        if span <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / span

    def _discarded(self, frame: Frame, state: SystemState) -> FrameOutcome:
        return FrameOutcome(
            timestamp_s=frame.timestamp_s,
            state=state,
            detection=None,
            error=None,
            correction_um=None,
            control_applied=False,
        )

    def process_frame(self, frame: Frame) -> FrameOutcome:
        with self._lock:
            state = self._state
            run_id = self._run_id
        if state not in _ACTIVE_STATES:
            return self._discarded(frame, state)

        # Detection runs outside the lock so a stop is never held up by it;
        # the run id check below drops the result if a stop/start intervened.
        calibration = self._store.current()
        detection = detect(frame, calibration, self._config.roi)
        error = estimate(detection, calibration, tolerance_um=self._config.centered_tolerance_um)

        with self._lock:
            if self._run_id != run_id or self._state not in _ACTIVE_STATES:
                return self._discarded(frame, self._state)
            self._frame_times.append(frame.timestamp_s)

            if error is None:
                self._register_miss(detection)
                return FrameOutcome(
                    timestamp_s=frame.timestamp_s,
                    state=self._state,
                    detection=detection,
                    error=None,
                    correction_um=None,
                    control_applied=False,
                )

            self._misses = 0
            self._last_error = error
            if self._state is SystemState.ACQUIRING:
                self._reset_controllers()
                self._transition(
                    SystemState.TRACKING,
                    f"lock acquired (error {error.x_um:+.2f}, {error.y_um:+.2f} um)",
                )
            correction = self._apply_corrections(error, frame.timestamp_s)
            return FrameOutcome(
                timestamp_s=frame.timestamp_s,
                state=self._state,
                detection=detection,
                error=error,
                correction_um=correction,
                control_applied=True,
            )

    def _register_miss(self, detection: DetectionResult) -> None:
        self._misses += 1
        logger.debug(
            f"Detection miss {self._misses}/{self._config.max_consecutive_misses} "
            f"(nozzle={detection.nozzle_valid}, beam={detection.beam_valid})"
        )
        if self._misses >= self._config.max_consecutive_misses:
            reason = f"lock lost: {self._misses} consecutive frames without nozzle and beam"
            self._emit("lock_lost", reason)
            self.fault(reason)

    def _apply_corrections(self, error: AlignmentError, timestamp_s: float) -> tuple[float, float]:
        deltas: dict[Axis, float] = {}
        for axis, axis_error in ((Axis.X, error.x_um), (Axis.Y, error.y_um)):
            output = self._controllers[axis].update_at(axis_error, timestamp_s)
            delta = self._config.correction_sign * output
            deltas[axis] = delta
            try:
                self._sink.apply_correction(axis, delta)
            except Exception as exc:
                # Reported, not escalated: the next frame recomputes anyway.
                self._sink_failures += 1
                message = f"correction {delta:+.3f} um on axis {axis.value} failed: {exc}"
                logger.warning(message)
                self._emit("sink_failure", message)
        self._last_correction = (deltas[Axis.X], deltas[Axis.Y])
        return self._last_correction


class LatestFrameSlot:
    """One-deep frame handoff where a newer frame replaces an unconsumed one."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._frame: Frame | None = None
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    def put(self, frame: Frame) -> bool:
        """Publish *frame*; return True if an unconsumed frame was dropped."""

        with self._cond:
            replaced = self._frame is not None
            if replaced:
                self._dropped += 1
            self._frame = frame
            self._cond.notify()
            return replaced

    def take(self, timeout_s: float) -> Frame | None:
        with self._cond:
            if self._frame is None:
                self._cond.wait(timeout=timeout_s)
            frame = self._frame
            self._frame = None
            return frame

    def clear(self) -> None:
        with self._cond:
            self._frame = None


class AlignmentWorker:
    """Background acquisition and processing threads joined by a LatestFrameSlot.

    Acquisition never waits for processing: when processing falls behind, the
    newest frame overwrites the pending one.
    """

    def __init__(
        self,
        source: FrameSource,
        machine: AlignmentStateMachine,
        on_outcome: Callable[[FrameOutcome], None] | None = None,
        *,
        join_timeout_s: float = 2.0,
    ) -> None:
        self._source = source
        self._machine = machine
        self._on_outcome = on_outcome
        self._join_timeout_s = join_timeout_s
        self._slot = LatestFrameSlot()
        self._stop_evt = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._last_error: Exception | None = None

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def dropped_frames(self) -> int:
        return self._slot.dropped

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Start both threads; a no-op while they are already running.

        Raises RuntimeError if threads from a stopped run have still not
        exited (e.g. a source blocked past the join timeout).
        """

        with self._lock:
            if self.running:
                if not self._stop_evt.is_set():
                    return
                for thread in self._threads:
                    thread.join(timeout=self._join_timeout_s)
                if self.running:
                    raise RuntimeError("Alignment worker threads from the previous run have not exited")
            self._stop_evt.clear()
            self._last_error = None
            self._slot.clear()
            self._threads = [
                threading.Thread(target=self._acquire_loop, name="coax-align-acquire", daemon=True),
                threading.Thread(target=self._process_loop, name="coax-align-process", daemon=True),
            ]
            for thread in self._threads:
                thread.start()

    def request_stop(self) -> None:
        self._stop_evt.set()

    def stop(self, *, wait: bool = True) -> None:
        self._stop_evt.set()
        if not wait:
            return
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=self._join_timeout_s)
        if any(thread.is_alive() for thread in threads):
            logger.warning(f"Alignment worker threads still running after {self._join_timeout_s:.1f} s")
        self._slot.clear()

    def _acquire_loop(self) -> None:
        timeout_ms = self._machine.config.frame_timeout_ms
        while not self._stop_evt.is_set():
            try:
                frame = self._source.next_frame(timeout_ms)
            except SourceDisconnectedError as exc:
                self._machine.on_source_disconnected(str(exc))
                return
            except Exception as exc:
                self._last_error = exc
                self._machine.on_source_disconnected(f"frame source error: {exc}")
                return
            if frame is None:
                self._machine.on_source_timeout()
                continue
            if self._slot.put(frame):
                logger.debug("Processing behind acquisition; dropped a pending frame")

    def _process_loop(self) -> None:
        timeout_s = self._machine.config.frame_timeout_ms / 1000.0
        while not self._stop_evt.is_set():
            frame = self._slot.take(timeout_s)
            if frame is None or self._stop_evt.is_set():
                continue
            try:
                outcome = self._machine.process_frame(frame)
                if self._on_outcome is not None:
                    self._on_outcome(outcome)
            except Exception as exc:
                self._last_error = exc
                logger.exception("Alignment processing failed")
                self._machine.fault(f"processing error: {exc}")
                return
