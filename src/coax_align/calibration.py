from __future__ import annotations

import math
import threading
from dataclasses import dataclass, replace
from typing import Callable

from loguru import logger

from .interfaces import Frame, FrameSource
from .vision import find_dark_regions, smooth


@dataclass(frozen=True, slots=True)
class CalibrationData:
    """Pixel-to-physical scale and detection thresholds.

    Instances are immutable snapshots: a calibration pass builds a new value
    and publishes it as a whole, so the vision pipeline never sees a new scale
    next to an old threshold.
    """

    units_per_pixel: float = 1.0
    nozzle_threshold: float = 60.0
    beam_threshold: float = 200.0
    min_nozzle_area: float = 100.0
    min_beam_area: float = 10.0

    def __post_init__(self) -> None:
        if not self.units_per_pixel > 0:
            raise ValueError("units_per_pixel must be > 0")
        if self.min_nozzle_area < 0:
            raise ValueError("min_nozzle_area must be >= 0")
        if self.min_beam_area < 0:
            raise ValueError("min_beam_area must be >= 0")


class CalibrationStore:
    """Holds the active calibration snapshot.

    `current` is a plain attribute read and `publish` a single reference swap,
    so concurrent readers get either the previous or the new snapshot.
    """

    def __init__(self, initial: CalibrationData | None = None) -> None:
        self._current = initial if initial is not None else CalibrationData()
        self._generation = 0
        self._publish_lock = threading.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    def current(self) -> CalibrationData:
        return self._current

    def publish(self, calibration: CalibrationData) -> None:
        if not isinstance(calibration, CalibrationData):
            raise TypeError("publish expects a CalibrationData snapshot")
        with self._publish_lock:
            self._current = calibration
            self._generation += 1
        logger.info(
            f"Published calibration #{self._generation}: "
            f"{calibration.units_per_pixel:.4f} um/px, "
            f"nozzle<{calibration.nozzle_threshold:g}, beam>{calibration.beam_threshold:g}"
        )


@dataclass(slots=True)
class CalibrationReport:
    calibration: CalibrationData
    mean_spacing_px: float
    std_spacing_px: float
    n_frames_used: int
    n_frames_requested: int


def measure_reference_spacing(frame: Frame, calibration: CalibrationData) -> float | None:
    """Return the pixel distance between the two dominant fiducials, if both are found.

    The reference target carries two dark dots; they are found with the same
    inverted threshold and circle fit used for the nozzle.
    """

    dots = find_dark_regions(
        smooth(frame.image),
        calibration.nozzle_threshold,
        calibration.min_nozzle_area,
        limit=2,
    )
    if len(dots) < 2:
        return None
    a, b = dots
    return math.hypot(a.x - b.x, a.y - b.y)


def run_calibration_pass(
    source: FrameSource,
    reference_target_spacing_um: float,
    base: CalibrationData,
    *,
    n_frames: int = 5,
    frame_timeout_ms: int = 500,
    should_stop: Callable[[], bool] | None = None,
) -> CalibrationReport:
    """Derive units_per_pixel from frames of a reference target with known spacing.

    Thresholds and minimum areas are carried over from *base*. Frames that time
    out or do not show both fiducials are skipped.
    """

    if reference_target_spacing_um <= 0:
        raise ValueError("reference_target_spacing_um must be > 0")
    if n_frames < 2:
        raise ValueError("n_frames must be at least 2")

    spacings: list[float] = []
    for i in range(n_frames):
        if should_stop is not None and should_stop():
            raise RuntimeError("Calibration cancelled")
        frame = source.next_frame(frame_timeout_ms)
        if frame is None:
            logger.debug(f"Calibration frame {i + 1}/{n_frames} timed out")
            continue
        spacing_px = measure_reference_spacing(frame, base)
        if spacing_px is None or spacing_px <= 0:
            logger.debug(f"Calibration frame {i + 1}/{n_frames}: fiducials not found")
            continue
        spacings.append(spacing_px)

    if len(spacings) < 2:
        raise RuntimeError(
            "Calibration pass could not collect enough valid frames: "
            f"{len(spacings)} of {n_frames} showed both reference fiducials."
        )

    mean_px = sum(spacings) / len(spacings)
    std_px = (sum((s - mean_px) ** 2 for s in spacings) / len(spacings)) ** 0.5
    calibration = replace(base, units_per_pixel=reference_target_spacing_um / mean_px)
    return CalibrationReport(
        calibration=calibration,
        mean_spacing_px=mean_px,
        std_spacing_px=std_px,
        n_frames_used=len(spacings),
        n_frames_requested=n_frames,
    )


def calibration_quality_issues(
    report: CalibrationReport,
    *,
    max_relative_spread: float = 0.02,
    min_spacing_px: float = 10.0,
) -> list[str]:
    """Return human-readable issues when a calibration pass looks unreliable."""

    issues: list[str] = []
    if report.mean_spacing_px < min_spacing_px:
        issues.append(
            f"fiducial spacing is only {report.mean_spacing_px:0.1f} px; "
            "use a wider reference target or more magnification"
        )
    spread = report.std_spacing_px / report.mean_spacing_px
    if spread > max_relative_spread:
        issues.append(
            f"fiducial spacing varies by {spread:0.1%} between frames; "
            "check focus, vibration and thresholds"
        )
    if report.n_frames_used < report.n_frames_requested:
        issues.append(
            f"only {report.n_frames_used}/{report.n_frames_requested} frames showed both fiducials"
        )
    return issues
