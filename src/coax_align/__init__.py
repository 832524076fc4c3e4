"""Closed-loop coaxial nozzle-to-beam alignment."""

from .alignment import (
    AlignmentConfig,
    AlignmentEvent,
    AlignmentStateMachine,
    AlignmentStatus,
    AlignmentWorker,
    FrameOutcome,
    LatestFrameSlot,
    SystemState,
)
from .calibration import (
    CalibrationData,
    CalibrationReport,
    CalibrationStore,
    calibration_quality_issues,
    measure_reference_spacing,
    run_calibration_pass,
)
from .controller import AxisController, AxisControllerState, PidGains
from .estimator import AlignmentError, estimate
from .hardware import (
    CallbackFrameSource,
    SimulatedFrameSource,
    SimulatedReferenceTarget,
    SimulatedScene,
    SimulatedStage,
)
from .interfaces import (
    Axis,
    CalibrationRejectedError,
    CorrectionSink,
    Frame,
    FrameSource,
    SourceDisconnectedError,
    StateTransitionError,
)
from .system import AlignmentSystem
from .vision import Detection, DetectionResult, Roi, detect

__all__ = [
    "AlignmentConfig",
    "AlignmentEvent",
    "AlignmentStateMachine",
    "AlignmentStatus",
    "AlignmentWorker",
    "FrameOutcome",
    "LatestFrameSlot",
    "SystemState",
    "CalibrationData",
    "CalibrationReport",
    "CalibrationStore",
    "calibration_quality_issues",
    "measure_reference_spacing",
    "run_calibration_pass",
    "AxisController",
    "AxisControllerState",
    "PidGains",
    "AlignmentError",
    "estimate",
    "CallbackFrameSource",
    "SimulatedFrameSource",
    "SimulatedReferenceTarget",
    "SimulatedScene",
    "SimulatedStage",
    "Axis",
    "CalibrationRejectedError",
    "CorrectionSink",
    "Frame",
    "FrameSource",
    "SourceDisconnectedError",
    "StateTransitionError",
    "AlignmentSystem",
    "Detection",
    "DetectionResult",
    "Roi",
    "detect",
]
