from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import numpy as np


class SourceDisconnectedError(RuntimeError):
    """Frame source lost its connection; the alignment loop must fault."""


class StateTransitionError(RuntimeError):
    pass


class CalibrationRejectedError(RuntimeError):
    """Calibration was requested while the alignment loop is not idle."""


class Axis(str, Enum):
    X = "x"
    Y = "y"


@dataclass(frozen=True, slots=True)
class Frame:
    """Single monochrome camera frame and its capture timestamp.

    The image is copied on construction and marked read-only, so a frame can be
    handed between threads without anyone mutating it underneath a consumer.
    """

    image: np.ndarray
    timestamp_s: float

    def __post_init__(self) -> None:
        image = np.array(self.image, copy=True)
        if image.ndim != 2:
            raise ValueError("Frame image must be 2D")
        if image.size == 0:
            raise ValueError("Empty image")
        image.setflags(write=False)
        object.__setattr__(self, "image", image)
        object.__setattr__(self, "timestamp_s", float(self.timestamp_s))

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


class FrameSource(Protocol):
    """Interface for a streaming camera source."""

    def start(self) -> None:
        """Start acquisition."""

    def stop(self) -> None:
        """Stop acquisition."""

    def next_frame(self, timeout_ms: int) -> Frame | None:
        """Return the next frame, or None if none arrived within *timeout_ms*.

        Raises SourceDisconnectedError when the source is gone for good.
        """


class CorrectionSink(Protocol):
    """Interface for a motion stage accepting relative XY corrections."""

    def apply_correction(self, axis: Axis, delta_um: float) -> None:
        """Move *axis* by *delta_um* physical units. Must not block for long."""

