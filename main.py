"""Heliotrace — CLI entry point.

Builds one of the demo CSP scenes, traces it and writes hit points,
a scene summary and plots.

Usage
-----
    python main.py parabolic --rays 100000
    python main.py dynamic --frames 40 --rays 1000
    python main.py transmissivity --rays 1000 --output out_transmissivity
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

DEMOS = ("parabolic", "dynamic", "transmissivity")


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    fmt = "%(name)s [%(levelname)s] %(message)s"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt,
        stream=sys.stdout,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="heliotrace",
        description="Heliotrace — CSP optical scene tracing demos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python main.py parabolic --rays 100000\n"
            "  python main.py dynamic --frames 40 --sun-step 0 1 0\n"
            "  python main.py transmissivity --sun-angle 0.00465\n"
        ),
    )
    parser.add_argument(
        "demo",
        choices=DEMOS,
        help="Demo scene to trace",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration YAML (default: config/default_config.yaml)",
    )
    parser.add_argument(
        "--rays",
        type=int,
        default=None,
        help="Rays per run (default: from config)",
    )
    parser.add_argument(
        "--sun-angle",
        type=float,
        default=None,
        help="Solar disk half-angle in rad (default: demo-specific)",
    )
    parser.add_argument(
        "--frames",
        type=int,
        default=40,
        help="Frames for the dynamic demo (default: 40)",
    )
    parser.add_argument(
        "--sun-step",
        type=float,
        nargs=3,
        default=(0.0, 1.0, 0.0),
        metavar=("DX", "DY", "DZ"),
        help="Per-frame sun vector increment for the dynamic demo (default: 0 1 0)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Output directory (default: from config)",
    )
    parser.add_argument(
        "--no-plots",
        action="store_true",
        default=False,
        help="Skip figure generation",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Demo scenes
# ---------------------------------------------------------------------------


def build_parabolic_scene(scene) -> None:
    """Parabolic dish at the origin with a small flat receiver above the dish."""
    from core_engine.element import Element
    from core_engine.surfaces import FlatSurface, ParabolicSurface, RectangleAperture

    dish = ParabolicSurface(c1=0.05, c2=0.05)
    scene.set_sun_vector((0.0, 0.0, 1.0))
    scene.add_element(Element(
        origin=(0.0, 0.0, 0.0),
        aim_point=(0.0, 0.0, 10.0),
        surface=dish,
        aperture=RectangleAperture(1.0, 1.0),
        name="dish",
    ))
    scene.add_element(Element(
        origin=(0.0, 0.0, 8.0),
        aim_point=(0.0, 0.0, -1.0),
        surface=FlatSurface(),
        aperture=RectangleAperture(0.4, 0.4),
        receiver=True,
        name="receiver",
    ))
    logging.getLogger(__name__).info("Dish focal length: %.2f m", dish.focal_length_x)


def build_dynamic_scene(scene) -> None:
    """Parabolic heliostat aimed at a flat receiver; the sun moves per frame."""
    from core_engine.element import Element
    from core_engine.surfaces import FlatSurface, ParabolicSurface, RectangleAperture

    scene.set_sun_vector((0.0, -20.0, 100.0))
    scene.add_element(Element(
        origin=(0.0, 5.0, 0.0),
        aim_point=(0.0, -17.360680, 94.721360),
        surface=ParabolicSurface(c1=0.0170679, c2=0.0370679),
        aperture=RectangleAperture(1.0, 1.95),
        name="heliostat",
    ))
    scene.add_element(Element(
        origin=(0.0, 0.0, 10.0),
        aim_point=(0.0, 5.0, 0.0),
        surface=FlatSurface(),
        aperture=RectangleAperture(2.0, 4.0),
        receiver=True,
        name="receiver",
    ))


def build_transmissivity_scene(scene) -> None:
    """Flat heliostat below two stacked receivers; the lower one transmits half."""
    from core_engine.element import Element
    from core_engine.surfaces import FlatSurface, RectangleAperture

    scene.set_sun_vector((0.0, 0.0, 100.0))
    scene.add_element(Element(
        origin=(0.0, 5.0, 0.0),
        aim_point=(0.0, -17.360680, 94.721360),
        surface=FlatSurface(),
        aperture=RectangleAperture(1.0, 1.95),
        name="heliostat",
    ))

    upper = Element(
        origin=(0.0, 0.0, 9.5),
        aim_point=(0.0, 5.0, 0.0),
        surface=FlatSurface(),
        aperture=RectangleAperture(2.0, 2.0),
        receiver=True,
        name="receiver_upper",
    )
    lower = upper.copy(name="receiver_lower")
    lower.origin = (0.0, 1.0, 7.5)
    lower.use_refraction = True
    lower.transmissivity = 0.5

    scene.add_element(upper)
    scene.add_element(lower)


_BUILDERS = {
    "parabolic": build_parabolic_scene,
    "dynamic": build_dynamic_scene,
    "transmissivity": build_transmissivity_scene,
}

# Demos traced with a collimated sun unless --sun-angle is given
_COLLIMATED = ("dynamic",)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    logger = logging.getLogger("heliotrace")
    logger.info("=" * 60)
    logger.info("  Heliotrace — %s demo", args.demo)
    logger.info("=" * 60)

    from core_engine.constants import DEFAULT_CONFIG_PATH, load_config, log_platform_info
    from core_engine.exceptions import HeliotraceError
    from core_engine.scene import Scene
    from simulation.io_manager import save_results
    from simulation.runner import SimulationRunner

    config = load_config(Path(args.config) if args.config else DEFAULT_CONFIG_PATH)
    log_platform_info()

    scene = Scene.from_config(config, num_rays=args.rays)
    _BUILDERS[args.demo](scene)

    if args.sun_angle is not None:
        scene.set_sun_angle(args.sun_angle)
    elif args.demo in _COLLIMATED:
        scene.set_sun_angle(0.0)

    output_dir = Path(args.output or config.output.directory)
    saved: list[Path] = []
    receiver_hits: list[int] | None = None

    try:
        if args.demo == "dynamic":
            runner = SimulationRunner(scene, output_dir=output_dir,
                                      write_json=config.output.write_json)
            results = runner.run(frames=args.frames, sun_step=args.sun_step)
            saved.extend(results.saved_files)
            receiver_hits = results.receiver_hits
        else:
            scene.initialize()
            scene.run()
            saved.extend(save_results(
                output_dir,
                scene.hit_point_records(),
                scene.summary(),
                write_json=config.output.write_json,
            ))

        hits = scene.get_num_hits_receiver()

        if not args.no_plots:
            from visualization.plotter import generate_all_plots

            logger.info("Generating plots → %s/", output_dir)
            saved.extend(generate_all_plots(scene, output_dir=output_dir,
                                            receiver_hits=receiver_hits))
    except HeliotraceError as exc:
        logger.error("Simulation failed: %s", exc)
        return 1
    finally:
        scene.clean_up()

    logger.info("=" * 60)
    logger.info("  SIMULATION COMPLETE")
    logger.info("=" * 60)
    logger.info("  Rays per run: %d", scene.num_rays)
    logger.info("  Rays hitting a receiver (last run): %d", hits)
    logger.info("  Output files (%d):", len(saved))
    for p in saved:
        logger.info("    → %s", p)
    logger.info("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(main())
