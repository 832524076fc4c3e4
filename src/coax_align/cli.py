from __future__ import annotations

import argparse
import sys
import threading
import time

from loguru import logger

from .alignment import AlignmentConfig, AlignmentStatus, SystemState
from .calibration import CalibrationData
from .controller import PidGains
from .hardware import SimulatedFrameSource, SimulatedReferenceTarget, SimulatedScene, SimulatedStage
from .monitor import run_status_monitor
from .system import AlignmentSystem


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the coaxial nozzle-to-beam alignment loop")
    parser.add_argument("--duration", type=float, default=2.0, help="Loop runtime in seconds")
    parser.add_argument("--frame-hz", type=float, default=60.0, help="Simulated camera frame rate")
    parser.add_argument("--kp", type=float, default=0.5, help="Proportional gain (both axes)")
    parser.add_argument("--ki", type=float, default=0.0, help="Integral gain (both axes)")
    parser.add_argument("--kd", type=float, default=0.0, help="Derivative gain (both axes)")
    parser.add_argument(
        "--max-correction-um",
        type=float,
        default=None,
        help="Clamp on each per-frame correction in µm (default: unclamped)",
    )
    parser.add_argument("--tolerance-um", type=float, default=1.0, help="Centred tolerance per axis in µm")
    parser.add_argument(
        "--max-misses",
        type=int,
        default=5,
        help="Consecutive frames without nozzle and beam before faulting",
    )
    parser.add_argument("--units-per-pixel", type=float, default=1.0, help="Initial µm per pixel")
    parser.add_argument("--nozzle-threshold", type=float, default=60.0, help="Nozzle (dark) threshold")
    parser.add_argument("--beam-threshold", type=float, default=200.0, help="Beam (bright) threshold")
    parser.add_argument("--min-nozzle-area", type=float, default=100.0, help="Minimum nozzle area in px")
    parser.add_argument("--min-beam-area", type=float, default=10.0, help="Minimum beam area in px")
    parser.add_argument(
        "--calibrate-spacing-um",
        type=float,
        default=None,
        help="Run a calibration pass on a two-dot reference target of this spacing before starting",
    )
    parser.add_argument(
        "--sim-um-per-px",
        type=float,
        default=1.0,
        help="True scale of the simulated optics (what calibration should recover)",
    )
    parser.add_argument(
        "--initial-offset-um",
        type=float,
        nargs=2,
        default=(12.0, -8.0),
        metavar=("X", "Y"),
        help="Starting nozzle offset from the beam in µm",
    )
    parser.add_argument("--noise", type=float, default=2.0, help="Simulated sensor noise sigma")
    parser.add_argument("--status-hz", type=float, default=5.0, help="Status log rate")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"],
        help="Log level for stderr output",
    )
    return parser


def format_status(status: AlignmentStatus) -> str:
    parts = [f"state={status.state.value}", f"rate={status.frame_rate_hz:0.1f}Hz"]
    if status.last_error is not None:
        err = status.last_error
        parts.append(
            f"error=({err.x_um:+0.2f}, {err.y_um:+0.2f}) um centered={err.is_centered}"
        )
    if status.last_correction_um is not None:
        cx, cy = status.last_correction_um
        parts.append(f"correction=({cx:+0.3f}, {cy:+0.3f}) um")
    if status.consecutive_misses:
        parts.append(f"misses={status.consecutive_misses}")
    if status.sink_failures:
        parts.append(f"sink_failures={status.sink_failures}")
    if status.dropped_frames:
        parts.append(f"dropped={status.dropped_frames}")
    if status.fault_reason:
        parts.append(f"fault={status.fault_reason}")
    return " ".join(parts)


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


def main() -> int:
    args = build_parser().parse_args()
    _configure_logging(args.log_level)

    config = AlignmentConfig(
        x_gains=PidGains(kp=args.kp, ki=args.ki, kd=args.kd),
        y_gains=PidGains(kp=args.kp, ki=args.ki, kd=args.kd),
        centered_tolerance_um=args.tolerance_um,
        max_consecutive_misses=args.max_misses,
        frame_timeout_ms=int(1000.0 / args.frame_hz) + 1,
        max_correction_um=args.max_correction_um,
    )
    calibration = CalibrationData(
        units_per_pixel=args.units_per_pixel,
        nozzle_threshold=args.nozzle_threshold,
        beam_threshold=args.beam_threshold,
        min_nozzle_area=args.min_nozzle_area,
        min_beam_area=args.min_beam_area,
    )

    scene = SimulatedScene(noise_sigma=args.noise)
    stage = SimulatedStage(*args.initial_offset_um)
    source = SimulatedFrameSource(stage, scene, um_per_px=args.sim_um_per_px, frame_hz=args.frame_hz)
    system = AlignmentSystem(source, stage, config, calibration=calibration)

    if args.calibrate_spacing_um is not None:
        target = SimulatedReferenceTarget(
            args.calibrate_spacing_um,
            args.sim_um_per_px,
            scene,
            frame_hz=args.frame_hz,
        )
        try:
            report = system.calibrate(args.calibrate_spacing_um, source=target)
        except RuntimeError as exc:
            logger.error(f"Calibration failed: {exc}")
            return 1
        logger.info(
            f"Calibrated {report.calibration.units_per_pixel:.4f} um/px from "
            f"{report.n_frames_used}/{report.n_frames_requested} frames "
            f"(spacing {report.mean_spacing_px:.2f} ± {report.std_spacing_px:.2f} px)"
        )

    stop_monitor = threading.Event()
    monitor = threading.Thread(
        target=run_status_monitor,
        args=(system, lambda s: logger.info(format_status(s)), stop_monitor, args.status_hz),
        daemon=True,
    )

    system.start()
    monitor.start()
    try:
        end = time.monotonic() + args.duration
        while time.monotonic() < end:
            if system.status().state is SystemState.FAULT:
                break
            time.sleep(0.01)
        final = system.status()
    finally:
        stop_monitor.set()
        system.stop()
        monitor.join(timeout=1.0)

    print(f"{format_status(final)} stage=({stage.position_um[0]:+0.3f}, {stage.position_um[1]:+0.3f}) um")
    return 1 if final.state is SystemState.FAULT else 0


if __name__ == "__main__":
    raise SystemExit(main())
