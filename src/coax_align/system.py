from __future__ import annotations

import threading
from dataclasses import replace
from typing import Callable

from loguru import logger

from .alignment import (
    AlignmentConfig,
    AlignmentEvent,
    AlignmentStateMachine,
    AlignmentStatus,
    AlignmentWorker,
    FrameOutcome,
    SystemState,
)
from .calibration import (
    CalibrationData,
    CalibrationReport,
    CalibrationStore,
    calibration_quality_issues,
    run_calibration_pass,
)
from .interfaces import CalibrationRejectedError, CorrectionSink, FrameSource, StateTransitionError


class AlignmentSystem:
    """Operator control surface: start, stop, calibrate and status."""

    def __init__(
        self,
        source: FrameSource,
        sink: CorrectionSink,
        config: AlignmentConfig | None = None,
        *,
        calibration: CalibrationData | None = None,
        on_event: Callable[[AlignmentEvent], None] | None = None,
        on_outcome: Callable[[FrameOutcome], None] | None = None,
    ) -> None:
        self._source = source
        self._store = CalibrationStore(calibration)
        self._machine = AlignmentStateMachine(
            store=self._store,
            sink=sink,
            config=config or AlignmentConfig(),
            on_event=on_event,
        )
        self._worker = AlignmentWorker(source, self._machine, on_outcome=on_outcome)
        self._source_started = False
        # Serializes start, stop and calibrate so a pass never overlaps a run.
        self._op_lock = threading.Lock()
        self._calibrating = False

    @property
    def machine(self) -> AlignmentStateMachine:
        return self._machine

    @property
    def calibration_store(self) -> CalibrationStore:
        return self._store

    def start(self) -> None:
        with self._op_lock:
            if self._calibrating:
                raise StateTransitionError("Cannot start while a calibration pass is running")
            if self._machine.state in (SystemState.ACQUIRING, SystemState.TRACKING):
                return
            self._machine.start()
            if not self._source_started:
                self._source.start()
                self._source_started = True
            try:
                self._worker.start()
            except RuntimeError:
                self._machine.stop()
                raise

    def stop(self) -> None:
        with self._op_lock:
            # Order matters: flag the threads, park the machine (which waits out
            # any in-flight correction), then join and release buffered frames.
            self._worker.request_stop()
            self._machine.stop()
            self._worker.stop(wait=True)
            if self._source_started:
                self._source.stop()
                self._source_started = False

    def status(self) -> AlignmentStatus:
        return replace(self._machine.status(), dropped_frames=self._worker.dropped_frames)

    def calibrate(
        self,
        reference_target_spacing_um: float,
        *,
        source: FrameSource | None = None,
        n_frames: int = 5,
    ) -> CalibrationReport:
        """Run a calibration pass against a reference target and publish the result.

        Only allowed while IDLE, and `start` is refused until the pass ends.
        *source* defaults to the alignment camera; pass a different one when the
        reference target is imaged elsewhere.
        """

        with self._op_lock:
            state = self._machine.state
            if state is not SystemState.IDLE:
                raise CalibrationRejectedError(f"Calibration requires IDLE state (current: {state.value})")
            if self._calibrating:
                raise CalibrationRejectedError("A calibration pass is already running")
            self._calibrating = True

        try:
            cal_source = source or self._source
            cal_source.start()
            try:
                report = run_calibration_pass(
                    cal_source,
                    reference_target_spacing_um,
                    self._store.current(),
                    n_frames=n_frames,
                )
            finally:
                cal_source.stop()

            for issue in calibration_quality_issues(report):
                logger.warning(f"Calibration: {issue}")
            self._store.publish(report.calibration)
            return report
        finally:
            with self._op_lock:
                self._calibrating = False

    def export_calibration(self) -> CalibrationData:
        return self._store.current()

    def import_calibration(self, data: CalibrationData) -> None:
        self._store.publish(data)
