from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from .interfaces import Frame

if TYPE_CHECKING:
    from .calibration import CalibrationData

# Kept small so the nozzle edge used by the circle fit stays sharp.
SMOOTHING_KERNEL = (3, 3)


@dataclass(slots=True)
class Roi:
    """Axis-aligned region of interest in image coordinates."""

    x: int
    y: int
    width: int
    height: int

    def clamp(self, image_shape: tuple[int, int]) -> "Roi":
        h, w = image_shape
        x = min(max(0, self.x), max(0, w - 1))
        y = min(max(0, self.y), max(0, h - 1))
        width = min(self.width, w - x)
        height = min(self.height, h - y)
        if width <= 0 or height <= 0:
            raise ValueError("ROI does not intersect image")
        return Roi(x=x, y=y, width=width, height=height)


@dataclass(frozen=True, slots=True)
class Detection:
    """Sub-pixel feature position in full-frame pixels; area is the confidence."""

    x: float
    y: float
    area: float


@dataclass(frozen=True, slots=True)
class DetectionResult:
    nozzle: Detection | None
    beam: Detection | None
    timestamp_s: float

    @property
    def nozzle_valid(self) -> bool:
        return self.nozzle is not None

    @property
    def beam_valid(self) -> bool:
        return self.beam is not None

    @property
    def is_complete(self) -> bool:
        return self.nozzle is not None and self.beam is not None


def smooth(image: np.ndarray) -> np.ndarray:
    return cv2.GaussianBlur(np.ascontiguousarray(image, dtype=np.float32), SMOOTHING_KERNEL, 0)


def _binarize(smoothed: np.ndarray, threshold: float, *, inverted: bool) -> np.ndarray:
    mode = cv2.THRESH_BINARY_INV if inverted else cv2.THRESH_BINARY
    _, mask = cv2.threshold(smoothed, float(threshold), 1.0, mode)
    return mask.astype(np.uint8)


def _ranked_regions(mask: np.ndarray, min_area: float) -> tuple[np.ndarray, list[tuple[int, int]]]:
    """Label *mask* and return (labels, [(label, area), ...]) largest first.

    Only regions with area strictly above *min_area* are returned. A mask that
    covers the whole image has no background to contrast against and yields
    nothing, which is how a fully dark or saturated frame ends up empty.
    """

    if int(mask.sum()) == mask.size:
        return np.zeros(mask.shape, dtype=np.int32), []
    n_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=8)
    regions = [
        (label, int(stats[label, cv2.CC_STAT_AREA]))
        for label in range(1, n_labels)
        if stats[label, cv2.CC_STAT_AREA] > min_area
    ]
    # Stable sort keeps raster order between regions of equal area.
    regions.sort(key=lambda item: item[1], reverse=True)
    return labels, regions


def _enclosing_circle_center(region_mask: np.ndarray) -> tuple[float, float]:
    contours, _ = cv2.findContours(region_mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    points = np.vstack(contours)
    (cx, cy), _radius = cv2.minEnclosingCircle(points)
    return float(cx), float(cy)


def find_dark_regions(smoothed: np.ndarray, threshold: float, min_area: float, limit: int) -> list[Detection]:
    """Return up to *limit* dark regions, largest first, located by circle fit."""

    mask = _binarize(smoothed, threshold, inverted=True)
    labels, regions = _ranked_regions(mask, min_area)
    out: list[Detection] = []
    for label, area in regions[:limit]:
        region_mask = (labels == label).astype(np.uint8)
        cx, cy = _enclosing_circle_center(region_mask)
        out.append(Detection(x=cx, y=cy, area=float(area)))
    return out


def detect_nozzle(smoothed: np.ndarray, threshold: float, min_area: float) -> Detection | None:
    """Locate the nozzle as the largest region darker than *threshold*.

    The nozzle blocks the back-lit field, so it is binarized with an inverted
    rule. Its position is the centre of the minimal enclosing circle of the
    region's outer boundary; holes (e.g. the beam spot sitting on the tip) do
    not move it.
    """

    found = find_dark_regions(smoothed, threshold, min_area, limit=1)
    return found[0] if found else None


def detect_beam(smoothed: np.ndarray, threshold: float, min_area: float) -> Detection | None:
    """Locate the beam as the intensity-weighted centroid of the largest bright region."""

    mask = _binarize(smoothed, threshold, inverted=False)
    labels, regions = _ranked_regions(mask, min_area)
    if not regions:
        return None
    label, area = regions[0]
    weights = np.where(labels == label, smoothed, 0.0).astype(np.float32)
    moments = cv2.moments(weights)
    if moments["m00"] <= 0:
        return None
    return Detection(
        x=float(moments["m10"] / moments["m00"]),
        y=float(moments["m01"] / moments["m00"]),
        area=float(area),
    )


def _offset(detection: Detection | None, dx: int, dy: int) -> Detection | None:
    if detection is None or (dx == 0 and dy == 0):
        return detection
    return Detection(x=detection.x + dx, y=detection.y + dy, area=detection.area)


def detect(frame: Frame, calibration: CalibrationData, roi: Roi | None = None) -> DetectionResult:
    """Run smoothing, nozzle detection and beam detection on one frame.

    Absence of a feature is not an error: the matching position is left as
    None and nothing is carried over from earlier frames. When several
    candidate regions pass the area threshold the largest one wins, which can
    lock onto a big enough piece of debris or a specular reflection.
    """

    image = frame.image
    dx = dy = 0
    if roi is not None:
        safe_roi = roi.clamp((frame.height, frame.width))
        image = image[safe_roi.y : safe_roi.y + safe_roi.height, safe_roi.x : safe_roi.x + safe_roi.width]
        dx, dy = safe_roi.x, safe_roi.y

    smoothed = smooth(image)
    nozzle = detect_nozzle(smoothed, calibration.nozzle_threshold, calibration.min_nozzle_area)
    beam = detect_beam(smoothed, calibration.beam_threshold, calibration.min_beam_area)
    return DetectionResult(
        nozzle=_offset(nozzle, dx, dy),
        beam=_offset(beam, dx, dy),
        timestamp_s=frame.timestamp_s,
    )
