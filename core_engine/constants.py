"""Simulation configuration loader.

All run parameters (sun model, tracer limits, ray counts, output layout)
are loaded from YAML configuration files into frozen dataclasses. This
module provides a typed, validated interface to the configuration.

References
----------
- Rabl, A. (1985). "Active Solar Collectors and Their Applications."
  Oxford University Press (solar half-angle 4.65 mrad).
- Wendelin, T. (2003). "SolTRACE: A New Optical Modeling Tool for
  Concentrating Solar Optics." ASME ISEC (slope/specularity errors in mrad).
"""

from __future__ import annotations

import hashlib
import logging
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numba
import numpy as np
import yaml

from core_engine.solar_disk import SAMPLING_METHODS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default_config.yaml"

# ---------------------------------------------------------------------------
# Configuration Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SunConfig:
    """Sun model parameters.

    Attributes
    ----------
    vector : tuple[float, float, float]
        Direction from the scene toward the sun (normalized on use).
    angle_rad : float
        Angular half-width of the solar disk [rad]; 0 = collimated.
    sampling_method : str
        Disk sampling pattern ('random' or 'fibonacci').
    seed : int | None
        Seed for ray sampling; None draws fresh entropy.
    """

    vector: tuple[float, float, float]
    angle_rad: float
    sampling_method: str
    seed: int | None


@dataclass(frozen=True)
class TracerConfig:
    """Tracing backend configuration.

    Attributes
    ----------
    max_depth : int
        Maximum recorded hit points per ray.
    epsilon : float
        Zero-test and aperture clipping tolerance.
    min_distance : float
        Self-intersection guard distance [m].
    backend : str
        Backend name ('cpu').
    """

    max_depth: int
    epsilon: float
    min_distance: float
    backend: str


@dataclass(frozen=True)
class SceneConfig:
    """Scene-level defaults.

    Attributes
    ----------
    num_rays : int
        Rays traced per ``run()``.
    receiver_tolerance : float
        Distance within which a terminal hit counts as on a receiver [m].
    """

    num_rays: int
    receiver_tolerance: float


@dataclass(frozen=True)
class OutputConfig:
    """Output writer settings.

    Attributes
    ----------
    directory : str
        Output directory for CSV/JSON files.
    write_json : bool
        Also write the scene summary JSON.
    """

    directory: str
    write_json: bool


@dataclass(frozen=True)
class SimulationConfig:
    """Top-level configuration loaded from YAML."""

    sun: SunConfig
    tracer: TracerConfig
    scene: SceneConfig
    output: OutputConfig


# ---------------------------------------------------------------------------
# Configuration Loader
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path = DEFAULT_CONFIG_PATH) -> SimulationConfig:
    """Load and validate a simulation configuration from a YAML file.

    Parameters
    ----------
    config_path : str or Path
        Path to the YAML configuration file.

    Returns
    -------
    SimulationConfig
        Fully populated, typed configuration object.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    ValueError
        If required configuration keys are missing or values are invalid.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f)

    logger.info("Loading configuration from: %s", config_path)
    config = config_from_dict(raw)
    logger.info("Configuration loaded successfully.")
    return config


def config_from_dict(raw: dict[str, Any]) -> SimulationConfig:
    """Build and validate a configuration from a parsed YAML mapping.

    Raises
    ------
    ValueError
        If required keys are missing or values are invalid.
    """
    if not isinstance(raw, dict):
        raise ValueError("Configuration root must be a mapping")

    try:
        # --- Parse sun model ---
        s = raw["sun"]
        seed = s.get("seed")
        sun = SunConfig(
            vector=tuple(float(v) for v in s["vector"]),
            angle_rad=float(s["angle_rad"]),
            sampling_method=str(s.get("sampling_method", "random")),
            seed=None if seed is None else int(seed),
        )

        # --- Parse tracer ---
        t = raw["tracer"]
        tracer = TracerConfig(
            max_depth=int(t["max_depth"]),
            epsilon=float(t["epsilon"]),
            min_distance=float(t["min_distance"]),
            backend=str(t.get("backend", "cpu")),
        )

        # --- Parse scene defaults ---
        sc = raw["scene"]
        scene = SceneConfig(
            num_rays=int(sc["num_rays"]),
            receiver_tolerance=float(sc["receiver_tolerance"]),
        )

        # --- Parse output ---
        o = raw.get("output", {})
        output = OutputConfig(
            directory=str(o.get("directory", "output")),
            write_json=bool(o.get("write_json", True)),
        )
    except KeyError as exc:
        raise ValueError(f"Missing configuration key: {exc.args[0]}") from exc
    except TypeError as exc:
        raise ValueError(f"Malformed configuration value: {exc}") from exc

    config = SimulationConfig(sun=sun, tracer=tracer, scene=scene, output=output)
    _validate_config(config)
    return config


def _validate_config(config: SimulationConfig) -> None:
    """Validate physical constraints on configuration values.

    Raises
    ------
    ValueError
        If any value is physically invalid.
    """
    if len(config.sun.vector) != 3:
        raise ValueError(f"Sun vector must have 3 components, got {config.sun.vector}")
    if float(np.linalg.norm(config.sun.vector)) <= 0.0:
        raise ValueError("Sun vector must be non-zero.")
    if config.sun.angle_rad < 0.0:
        raise ValueError(f"Sun angle must be >= 0, got {config.sun.angle_rad}")
    if config.sun.sampling_method not in SAMPLING_METHODS:
        raise ValueError(
            f"Sampling method must be one of {SAMPLING_METHODS}, "
            f"got {config.sun.sampling_method!r}"
        )
    if config.tracer.max_depth < 1:
        raise ValueError("Tracer max_depth must be >= 1.")
    if config.tracer.epsilon <= 0:
        raise ValueError("Tracer epsilon must be positive.")
    if config.tracer.min_distance <= 0:
        raise ValueError("Tracer min_distance must be positive.")
    if config.tracer.backend != "cpu":
        raise ValueError(f"Unknown tracer backend: {config.tracer.backend!r}")
    if config.scene.num_rays < 1:
        raise ValueError("Scene num_rays must be >= 1.")
    if config.scene.receiver_tolerance <= 0:
        raise ValueError("Receiver tolerance must be positive.")

    logger.debug("Configuration validation passed.")


def log_platform_info() -> None:
    """Log platform and library version information for reproducibility."""
    logger.info("=" * 70)
    logger.info("PLATFORM INFORMATION (for reproducibility)")
    logger.info("=" * 70)
    logger.info("  Python:    %s", sys.version)
    logger.info("  Platform:  %s", platform.platform())
    logger.info("  Processor: %s", platform.processor())
    logger.info("  NumPy:     %s", np.__version__)
    logger.info("  Numba:     %s", numba.__version__)
    logger.info("  Float64 eps: %e", np.finfo(np.float64).eps)
    logger.info("=" * 70)


def hash_array(arr: np.ndarray) -> str:
    """SHA-256 hex digest of an array's bytes (reproducibility check)."""
    return hashlib.sha256(np.ascontiguousarray(arr).tobytes()).hexdigest()
