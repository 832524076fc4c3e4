from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from .interfaces import Axis, Frame, SourceDisconnectedError


@dataclass(slots=True)
class SimulatedScene:
    """Back-lit coaxial view: dark nozzle disk, bright beam disk, optional noise.

    Defaults give a nozzle of about 500 px and a beam of about 50 px area on an
    8-bit scale, inside the default calibration thresholds.
    """

    width: int = 200
    height: int = 200
    background: float = 180.0
    nozzle_level: float = 20.0
    nozzle_radius_px: float = 12.6
    beam_level: float = 250.0
    beam_radius_px: float = 4.0
    noise_sigma: float = 0.0
    seed: int | None = None
    _rng: np.random.Generator = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._rng = np.random.default_rng(self.seed)

    def _grid(self) -> tuple[np.ndarray, np.ndarray]:
        y, x = np.mgrid[0 : self.height, 0 : self.width]
        return x.astype(np.float64), y.astype(np.float64)

    def _finish(self, image: np.ndarray) -> np.ndarray:
        if self.noise_sigma > 0:
            image = image + self._rng.normal(0.0, self.noise_sigma, image.shape)
        return np.clip(image, 0.0, 255.0).astype(np.uint8)

    def render(
        self,
        nozzle_xy: tuple[float, float] | None,
        beam_xy: tuple[float, float] | None,
    ) -> np.ndarray:
        x, y = self._grid()
        image = np.full((self.height, self.width), self.background, dtype=np.float64)
        if nozzle_xy is not None:
            nx, ny = nozzle_xy
            nozzle = (x - nx) ** 2 + (y - ny) ** 2 <= self.nozzle_radius_px**2
            image[nozzle] = self.nozzle_level
        if beam_xy is not None:
            bx, by = beam_xy
            beam = (x - bx) ** 2 + (y - by) ** 2 <= self.beam_radius_px**2
            image[beam] = self.beam_level
        return self._finish(image)

    def render_reference_target(self, spacing_px: float, dot_radius_px: float | None = None) -> np.ndarray:
        """Two dark fiducial dots centred in the field, *spacing_px* apart along X."""

        radius = self.nozzle_radius_px if dot_radius_px is None else dot_radius_px
        x, y = self._grid()
        cx = (self.width - 1) / 2.0
        cy = (self.height - 1) / 2.0
        image = np.full((self.height, self.width), self.background, dtype=np.float64)
        for dot_x in (cx - spacing_px / 2.0, cx + spacing_px / 2.0):
            image[(x - dot_x) ** 2 + (y - cy) ** 2 <= radius**2] = self.nozzle_level
        return self._finish(image)


class SimulatedStage:
    """In-memory XY stage used as a correction sink.

    Set `fail_with` to an exception to make every correction raise it. Only
    the last `history` corrections are kept in `applied`; `corrections_applied`
    counts all of them.
    """

    def __init__(self, x_um: float = 0.0, y_um: float = 0.0, *, history: int = 1000) -> None:
        if history < 0:
            raise ValueError("history must be >= 0")
        self._position = {Axis.X: float(x_um), Axis.Y: float(y_um)}
        self._lock = threading.Lock()
        self.fail_with: Exception | None = None
        self.applied: deque[tuple[Axis, float]] = deque(maxlen=history)
        self.corrections_applied = 0

    @property
    def position_um(self) -> tuple[float, float]:
        with self._lock:
            return self._position[Axis.X], self._position[Axis.Y]

    def apply_correction(self, axis: Axis, delta_um: float) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self._position[axis] += float(delta_um)
            self.applied.append((axis, float(delta_um)))
            self.corrections_applied += 1


class _PacedSource:
    def __init__(self, frame_hz: float) -> None:
        if frame_hz <= 0:
            raise ValueError("frame_hz must be > 0")
        self._interval_s = 1.0 / frame_hz
        self._next_due: float | None = None
        self._running = False

    def start(self) -> None:
        self._running = True
        self._next_due = time.monotonic()

    def stop(self) -> None:
        self._running = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.stop()

    def _wait_for_slot(self, timeout_ms: int) -> bool:
        """Sleep until the next frame is due; False if that exceeds the timeout."""

        if not self._running:
            raise SourceDisconnectedError("Simulated source not started")
        now = time.monotonic()
        due = self._next_due if self._next_due is not None else now
        wait_s = due - now
        timeout_s = timeout_ms / 1000.0
        if wait_s > timeout_s:
            time.sleep(timeout_s)
            return False
        if wait_s > 0:
            time.sleep(wait_s)
        self._next_due = max(due, now) + self._interval_s
        return True


class SimulatedFrameSource(_PacedSource):
    """Renders the nozzle at beam position + stage offset, at *frame_hz*.

    `disconnect_after` makes the source raise SourceDisconnectedError after that
    many frames, for exercising the fault path.
    """

    def __init__(
        self,
        stage: SimulatedStage,
        scene: SimulatedScene | None = None,
        *,
        beam_xy: tuple[float, float] | None = None,
        um_per_px: float = 1.0,
        frame_hz: float = 60.0,
        show_nozzle: bool = True,
        show_beam: bool = True,
        disconnect_after: int | None = None,
    ) -> None:
        super().__init__(frame_hz)
        self._stage = stage
        self._scene = scene or SimulatedScene()
        self._beam_xy = beam_xy or ((self._scene.width - 1) / 2.0, (self._scene.height - 1) / 2.0)
        self._um_per_px = um_per_px
        self.show_nozzle = show_nozzle
        self.show_beam = show_beam
        self._disconnect_after = disconnect_after
        self._frames = 0

    @property
    def frames_delivered(self) -> int:
        return self._frames

    def nozzle_xy(self) -> tuple[float, float]:
        sx, sy = self._stage.position_um
        bx, by = self._beam_xy
        return bx + sx / self._um_per_px, by + sy / self._um_per_px

    def next_frame(self, timeout_ms: int) -> Frame | None:
        if self._disconnect_after is not None and self._frames >= self._disconnect_after:
            raise SourceDisconnectedError("Simulated camera unplugged")
        if not self._wait_for_slot(timeout_ms):
            return None
        image = self._scene.render(
            self.nozzle_xy() if self.show_nozzle else None,
            self._beam_xy if self.show_beam else None,
        )
        self._frames += 1
        return Frame(image=image, timestamp_s=time.monotonic())


class SimulatedReferenceTarget(_PacedSource):
    """Frame source showing a two-dot calibration target of known spacing."""

    def __init__(
        self,
        spacing_um: float,
        um_per_px: float,
        scene: SimulatedScene | None = None,
        *,
        frame_hz: float = 60.0,
    ) -> None:
        super().__init__(frame_hz)
        self._scene = scene or SimulatedScene()
        self._spacing_px = spacing_um / um_per_px

    def next_frame(self, timeout_ms: int) -> Frame | None:
        if not self._wait_for_slot(timeout_ms):
            return None
        image = self._scene.render_reference_target(self._spacing_px)
        return Frame(image=image, timestamp_s=time.monotonic())


class CallbackFrameSource:
    """Frame source adapter that can wrap any frame callback.

    The callable returns an image (2D array or nested lists), an
    `(image, timestamp_s)` pair, or None when no frame is ready. This is the
    seam for a vendor SDK or an existing acquisition loop. A callback raising
    ConnectionError or OSError is treated as a disconnect.
    """

    def __init__(
        self,
        frame_source: Callable[[], Any],
        control_source_lifecycle: bool = False,
        poll_interval_s: float = 0.001,
    ) -> None:
        self._frame_source = frame_source
        self._control_source_lifecycle = control_source_lifecycle
        self._poll_interval_s = poll_interval_s
        self._running = False

    def start(self) -> None:
        self._running = True
        if self._control_source_lifecycle:
            start = getattr(self._frame_source, "start", None)
            if callable(start):
                start()

    def stop(self) -> None:
        if self._control_source_lifecycle:
            stop = getattr(self._frame_source, "stop", None)
            if callable(stop):
                stop()
        self._running = False

    def __enter__(self) -> "CallbackFrameSource":
        self.start()
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.stop()

    def next_frame(self, timeout_ms: int) -> Frame | None:
        if not self._running:
            raise SourceDisconnectedError("Frame source not started")
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            try:
                result = self._frame_source()
            except (ConnectionError, OSError) as exc:
                raise SourceDisconnectedError(str(exc)) from exc
            if result is not None:
                break
            if time.monotonic() >= deadline:
                return None
            time.sleep(self._poll_interval_s)

        if isinstance(result, tuple) and len(result) == 2:
            image, timestamp_s = result
        else:
            image, timestamp_s = result, time.monotonic()
        return Frame(image=np.asarray(image), timestamp_s=timestamp_s)
