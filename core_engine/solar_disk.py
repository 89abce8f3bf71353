"""Sun model: ray-direction sampling on the solar disk.

Each traced ray gets its own propagation direction, drawn from a
pillbox sun of angular half-width θ_sun around the sun vector. Two
patterns are available:

- ``random``: uniform over the spherical cap, cos θ ~ U[cos θ_sun, 1],
  φ ~ U[0, 2π). Monte-Carlo estimate, seeded for reproducibility.
- ``fibonacci``: deterministic golden-angle spiral,

      θ_i = θ_sun · √(i / (N−1)),   φ_i = i · π(3 − √5)

  which spreads N points with roughly equal solid-angle weight.

Both are generated with ẑ as the disk center and rotated onto the sun
vector. θ_sun = 0 degenerates to a collimated beam.

Solid angle of the disk: Ω = 2π(1 − cos θ_sun).
"""

from __future__ import annotations

import logging

import numpy as np

from core_engine.exceptions import DegenerateDirection

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GOLDEN_ANGLE: float = np.pi * (3.0 - np.sqrt(5.0))  # ≈ 2.39996 rad

# Solar angular radius at 1 AU, 4.65 mrad
DEFAULT_SUN_HALF_ANGLE_RAD: float = 0.00465

SAMPLING_METHODS: tuple[str, ...] = ("random", "fibonacci")


def normalize_sun_vector(sun_vector: np.ndarray) -> np.ndarray:
    """Unit copy of ``sun_vector``; raises ``DegenerateDirection`` on zero."""
    v = np.asarray(sun_vector, dtype=np.float64).reshape(3)
    norm = float(np.linalg.norm(v))
    if norm < 1e-12 or not np.isfinite(norm):
        raise DegenerateDirection(f"Sun vector must be non-zero and finite, got {v.tolist()}")
    return v / norm


# ---------------------------------------------------------------------------
# Core: Generate Solar Disk Sample Directions
# ---------------------------------------------------------------------------


def generate_solar_disk_samples(
    sun_center_dir: np.ndarray,
    angular_radius_rad: float = DEFAULT_SUN_HALF_ANGLE_RAD,
    num_samples: int = 64,
    method: str = "random",
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Sample unit directions toward points on the solar disk.

    Parameters
    ----------
    sun_center_dir : np.ndarray
        Vector pointing toward the sun center (normalized here). Shape: (3,).
    angular_radius_rad : float
        Angular half-width of the disk [rad]. 0 gives identical samples.
    num_samples : int
        Number of samples, ≥ 1.
    method : str
        ``"random"`` or ``"fibonacci"``.
    rng : np.random.Generator, optional
        Random source for ``"random"``. A fresh default generator if None.

    Returns
    -------
    samples : np.ndarray
        Unit vectors toward the disk. Shape: (num_samples, 3), dtype: float64.

    Raises
    ------
    ValueError
        If num_samples < 1, angular_radius_rad < 0, or method is unknown.
    DegenerateDirection
        If the sun vector is zero.
    """
    if num_samples < 1:
        raise ValueError(f"num_samples must be ≥ 1, got {num_samples}")
    if angular_radius_rad < 0.0:
        raise ValueError(
            f"angular_radius_rad must be ≥ 0, got {angular_radius_rad}"
        )
    if method not in SAMPLING_METHODS:
        raise ValueError(f"Unknown sampling method {method!r}, expected one of {SAMPLING_METHODS}")

    sun_dir = normalize_sun_vector(sun_center_dir)

    # Collimated beam or single sample: every direction is the center
    if angular_radius_rad == 0.0 or num_samples == 1:
        return np.tile(sun_dir, (num_samples, 1))

    # Step 1: sample (θ, φ) in the LOCAL frame (z-axis = center)
    if method == "random":
        if rng is None:
            rng = np.random.default_rng()
        cos_max = np.cos(angular_radius_rad)
        cos_theta = 1.0 - rng.random(num_samples) * (1.0 - cos_max)
        theta = np.arccos(np.clip(cos_theta, -1.0, 1.0))
        phi = rng.random(num_samples) * 2.0 * np.pi
    else:
        i = np.arange(num_samples, dtype=np.float64)
        theta = angular_radius_rad * np.sqrt(i / (num_samples - 1))
        phi = i * _GOLDEN_ANGLE

    sin_theta = np.sin(theta)
    local_dirs = np.column_stack([
        sin_theta * np.cos(phi),
        sin_theta * np.sin(phi),
        np.cos(theta),
    ])

    # Step 2: rotate LOCAL frame so z-axis aligns with sun_dir
    rotation_matrix = _rotation_z_to_direction(sun_dir)
    samples = local_dirs @ rotation_matrix.T

    norms = np.linalg.norm(samples, axis=1, keepdims=True)
    samples /= norms

    logger.debug(
        "Generated %d solar disk samples (%s, angular_radius=%.4f mrad, Ω=%.3e sr)",
        num_samples,
        method,
        angular_radius_rad * 1e3,
        compute_solar_solid_angle(angular_radius_rad),
    )

    return samples


def sample_ray_directions(
    sun_vector: np.ndarray,
    half_angle_rad: float,
    ray_count: int,
    method: str = "random",
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Propagation directions of sun rays (pointing away from the sun).

    Returns
    -------
    np.ndarray
        Shape: (ray_count, 3).
    """
    return -generate_solar_disk_samples(
        sun_vector, half_angle_rad, ray_count, method=method, rng=rng
    )


# ---------------------------------------------------------------------------
# Rotation: Align z-axis to an arbitrary direction
# ---------------------------------------------------------------------------


def _rotation_z_to_direction(target_dir: np.ndarray) -> np.ndarray:
    """Compute rotation matrix that maps ẑ = (0, 0, 1) to `target_dir`.

    Uses Rodrigues' rotation formula. Handles the singular cases where
    target_dir ≈ +ẑ (identity) or ≈ −ẑ (180° flip around x-axis).

    Parameters
    ----------
    target_dir : np.ndarray
        Unit target direction. Shape: (3,).

    Returns
    -------
    R : np.ndarray
        3×3 rotation matrix. Shape: (3, 3).
    """
    z_axis = np.array([0.0, 0.0, 1.0])
    dot = float(np.dot(z_axis, target_dir))

    if dot > 1.0 - 1e-12:
        return np.eye(3, dtype=np.float64)

    if dot < -1.0 + 1e-12:
        return np.diag([1.0, -1.0, -1.0])

    k = np.cross(z_axis, target_dir)
    sin_theta = np.linalg.norm(k)
    k /= sin_theta

    K = np.array([
        [0.0, -k[2], k[1]],
        [k[2], 0.0, -k[0]],
        [-k[1], k[0], 0.0],
    ], dtype=np.float64)

    # R = I + sin(θ)·K + (1 − cos(θ))·K²
    return np.eye(3) + sin_theta * K + (1.0 - dot) * (K @ K)


def compute_solar_solid_angle(angular_radius_rad: float = DEFAULT_SUN_HALF_ANGLE_RAD) -> float:
    """Exact solid angle of the solar disk, Ω = 2π(1 − cos θ_sun) [sr]."""
    return 2.0 * np.pi * (1.0 - np.cos(angular_radius_rad))
