import argparse
import logging
import sys
from pathlib import Path

from .alignment import align_streams
from .config import Config, ScaleSplineType
from .errors import CalibrationError
from .io import RecordReader, PLYWriter, TrajWriter
from .registry import load_registry
from .solver import CalibSolver, LogViewer

logger = logging.getLogger("stcalib")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="stcalib: targetless spatiotemporal calibration of IMU, radar, LiDAR and camera rigs."
    )
    parser.add_argument("--config", type=str, required=True, help="Path to the YAML configuration file.")
    parser.add_argument("--input", type=str, required=True, help="Path to the JSON-lines record log.")
    parser.add_argument("--output-param", type=str, default=None,
                        help="Path of the calibrated parameters (default: <output_path>/calib_param.<fmt>).")
    parser.add_argument("--output-traj", type=str, default=None,
                        help="Path to save the body trajectory (TXT, 'timestamp tx ty tz qx qy qz qw').")
    parser.add_argument("--output-map", type=str, default=None, help="Path to save the visual landmarks (PLY).")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level.")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    parser.add_argument("--profile", action="store_true", help="Enable cProfile for performance profiling.")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )

    profiler = None
    if args.profile:
        import cProfile
        profiler = cProfile.Profile()
        logger.info("performance profiling enabled.")
        profiler.enable()

    try:
        status = run(args)
    except (CalibrationError, OSError) as e:
        logger.error(str(e))
        status = 1
    finally:
        if profiler is not None:
            import pstats
            profiler.disable()
            pstats.Stats(profiler).sort_stats('cumulative').print_stats(20)

    return status


def load_visual_structures(solver, topics):
    """
    Registers the reconstruction of every camera topic with the solver, exporting
    the images of those not reconstructed yet.

    Returns:
        list: Topics still waiting for their reconstruction.
    """
    pending = []
    for topic in topics:
        structure = solver.load_visual_data(topic)
        if structure is None:
            solver.prepare_visual_data(topic)
            logger.info(
                f"the reconstruction of camera '{topic}' is not available yet, run the commands in "
                f"'{solver.sfm_workspace(topic) / 'sfm-command-line.txt'}'."
            )
            pending.append(topic)
            continue
        solver.downsample_visual_structure(structure)
        solver.add_visual_structure(topic, structure)
    return pending


def run(args):
    """Load, align, (prepare or load visual data,) solve and save."""
    config = Config.from_yaml(args.config)
    output_path = Path(config.data_stream.output_path)
    output_path.mkdir(parents=True, exist_ok=True)

    with RecordReader(args.input) as reader:
        registry = load_registry(reader.records(), config, progress=not args.no_progress)
    registry, window = align_streams(registry, config)

    viewer = LogViewer() if config.preference.use_viewer else None
    with CalibSolver(registry, window, config, viewer=viewer) as solver:
        pending = load_visual_structures(solver, config.data_stream.camera_topics)
        if pending:
            logger.info(f"restart the calibration once the reconstructions of {pending} are available.")
            return 0

        summary = solver.solve()
        logger.info(f"calibration finished: {summary.brief_report()}")

        param_path = Path(args.output_param) if args.output_param else \
            output_path / f"calib_param{config.format_extension()}"
        solver.params.save(param_path, config.preference.output_format)
        logger.info(f"calibrated parameters saved to '{param_path}'.")

        if args.output_traj:
            if solver.bundle.scale_type == ScaleSplineType.LIN_POS_SPLINE:
                count = TrajWriter(args.output_traj).write_se3(solver.export_trajectory())
                logger.info(f"trajectory saved to '{args.output_traj}' with {count} poses.")
            else:
                logger.warning("the scale spline carries no position, no trajectory is written.")

        if args.output_map:
            count = PLYWriter(args.output_map).write_landmarks(solver.visual_structures.values())
            logger.info(f"landmarks saved to '{args.output_map}' with {count} points.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
