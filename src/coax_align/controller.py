from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class PidGains:
    # Units: correction um per um of error (kp), per um*s (ki), per um/s (kd).
    kp: float = 0.5
    ki: float = 0.0
    kd: float = 0.0


@dataclass(slots=True)
class AxisControllerState:
    integral: float = 0.0
    previous_error: float | None = None
    previous_timestamp_s: float | None = None


class AxisController:
    """PID controller for a single stage axis.

    correction = kp*error + ki*integral + kd*(error - previous_error)/dt

    The integral is neither clamped nor decayed, so a sustained error keeps
    growing it until the owner calls `reset`. Only the final correction is
    limited when `max_correction_um` is set.
    """

    def __init__(self, gains: PidGains, *, max_correction_um: float | None = None) -> None:
        if max_correction_um is not None and max_correction_um < 0:
            raise ValueError("max_correction_um must be >= 0 when provided")
        self._gains = gains
        self._max_correction_um = max_correction_um
        self._state = AxisControllerState()

    @property
    def gains(self) -> PidGains:
        return self._gains

    @property
    def state(self) -> AxisControllerState:
        return self._state

    def reset(self) -> None:
        self._state = AxisControllerState()

    def update(self, error: float, dt: float) -> float:
        gains = self._gains
        state = self._state

        # No previous sample (or no elapsed time): derivative undefined and
        # nothing to integrate over.
        if dt <= 0 or state.previous_error is None:
            state.previous_error = error
            return self._limit(gains.kp * error)

        state.integral += error * dt
        derivative = (error - state.previous_error) / dt
        state.previous_error = error
        correction = gains.kp * error + gains.ki * state.integral + gains.kd * derivative
        return self._limit(correction)

    def update_at(self, error: float, timestamp_s: float) -> float:
        """Update using the time elapsed since the previous timestamped sample."""

        previous = self._state.previous_timestamp_s
        dt = 0.0 if previous is None else timestamp_s - previous
        self._state.previous_timestamp_s = timestamp_s
        return self.update(error, dt)

    def _limit(self, correction: float) -> float:
        if self._max_correction_um is None:
            return correction
        limit = self._max_correction_um
        return max(-limit, min(limit, correction))
