from __future__ import annotations

import math
from dataclasses import dataclass

from .calibration import CalibrationData
from .vision import DetectionResult

DEFAULT_TOLERANCE_UM = 1.0


@dataclass(frozen=True, slots=True)
class AlignmentError:
    """Nozzle-minus-beam offset in physical units."""

    x_um: float
    y_um: float
    is_centered: bool

    @property
    def magnitude_um(self) -> float:
        return math.hypot(self.x_um, self.y_um)


def estimate(
    detection: DetectionResult,
    calibration: CalibrationData,
    *,
    tolerance_um: float = DEFAULT_TOLERANCE_UM,
) -> AlignmentError | None:
    """Convert a detection into a physical alignment error.

    Returns None unless both nozzle and beam were found. Axes are scaled
    independently with no rotation term: the optical axes are taken to be
    aligned with the sensor axes.
    """

    nozzle = detection.nozzle
    beam = detection.beam
    if nozzle is None or beam is None:
        return None

    x_um = (nozzle.x - beam.x) * calibration.units_per_pixel
    y_um = (nozzle.y - beam.y) * calibration.units_per_pixel
    return AlignmentError(
        x_um=x_um,
        y_um=y_um,
        is_centered=abs(x_um) < tolerance_um and abs(y_um) < tolerance_um,
    )
