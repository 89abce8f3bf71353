"""Element orientation and bounding-volume geometry.

Pure functions: every result depends only on the arguments, so the
element layer can cache them and recompute on demand.

Orientation
-----------
Given origin O, aim point A and twist ``zrot`` [deg]:

    d      = (A − O) / |A − O|                 local +z (faces A)
    up     = ŷ, or ẑ when |d · ŷ| > 1 − 1e-9  reference up-vector
    x₀     = (up × d) / |up × d|
    y₀     = d × x₀
    x      =  cos γ · x₀ + sin γ · y₀          twist by γ = zrot about d
    y      = −sin γ · x₀ + cos γ · y₀
    R      = [x | y | d]                        local → global

R is orthonormal with det(R) = +1 by construction (x₀ × y₀ = d).

Euler angles (radians, storage/debugging only), read back from R so
that R = R_y(α) · R_x(−β) · R_z(γ) holds exactly:

    α = atan2(−x₀_z, x₀_x),  β = asin(d_y),  γ = radians(zrot)

Away from the tie-break α = atan2(d_x, d_z). For d = ±ŷ the direction
alone leaves α undefined; the +z fallback fixes x₀ = ∓x̂, so α = π
when aiming along +y and α = 0 along −y.

Bounding boxes
--------------
The aperture footprint corners are swept over the surface's local-z
range, transformed with ``R · p + O`` and reduced componentwise. The box
is conservative (contains every point of the clipped surface) but not
necessarily tight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from core_engine.exceptions import DegenerateDirection
from core_engine.surfaces import (
    Aperture,
    CircleAperture,
    CylinderSurface,
    FlatSurface,
    ParabolicSurface,
    RectangleAperture,
    Surface,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DIRECTION_EPSILON: float = 1e-12
_PARALLEL_TOLERANCE: float = 1e-9

_UP_REFERENCE = np.array([0.0, 1.0, 0.0], dtype=np.float64)
_UP_FALLBACK = np.array([0.0, 0.0, 1.0], dtype=np.float64)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box.

    Attributes
    ----------
    lower : np.ndarray
        Minimum corner. Shape: (3,).
    upper : np.ndarray
        Maximum corner. Shape: (3,).
    """

    lower: np.ndarray
    upper: np.ndarray

    def contains(self, points: np.ndarray, tolerance: float = 0.0) -> np.ndarray | bool:
        """Inclusive containment test for one point (3,) or many (N, 3)."""
        pts = np.asarray(points, dtype=np.float64)
        inside = (pts >= self.lower - tolerance) & (pts <= self.upper + tolerance)
        return inside.all(axis=-1)

    @property
    def extent(self) -> np.ndarray:
        return self.upper - self.lower

    @property
    def center(self) -> np.ndarray:
        return 0.5 * (self.lower + self.upper)

    def corners(self) -> np.ndarray:
        """The eight corners. Shape: (8, 3)."""
        lo, hi = self.lower, self.upper
        return np.array(
            [[x, y, z] for x in (lo[0], hi[0]) for y in (lo[1], hi[1]) for z in (lo[2], hi[2])],
            dtype=np.float64,
        )

    @staticmethod
    def union(boxes: list[BoundingBox]) -> BoundingBox:
        """Smallest box enclosing every box in ``boxes`` (non-empty)."""
        lower = np.min(np.stack([b.lower for b in boxes]), axis=0)
        upper = np.max(np.stack([b.upper for b in boxes]), axis=0)
        return BoundingBox(lower=lower, upper=upper)


# ---------------------------------------------------------------------------
# Orientation
# ---------------------------------------------------------------------------


def aim_direction(origin: np.ndarray, aim_point: np.ndarray) -> np.ndarray:
    """Unit vector from ``origin`` toward ``aim_point``.

    Raises
    ------
    DegenerateDirection
        If the two points coincide (|A − O| < ``DIRECTION_EPSILON``).
    """
    delta = np.asarray(aim_point, dtype=np.float64) - np.asarray(origin, dtype=np.float64)
    norm = float(np.linalg.norm(delta))
    if norm < DIRECTION_EPSILON:
        raise DegenerateDirection(
            f"Aim point {np.asarray(aim_point).tolist()} coincides with origin "
            f"{np.asarray(origin).tolist()}"
        )
    return delta / norm


def rotation_from_direction(direction: np.ndarray, zrot_deg: float = 0.0) -> np.ndarray:
    """Local-to-global rotation matrix whose third column is ``direction``.

    Parameters
    ----------
    direction : np.ndarray
        Unit aim direction (local +z in global coordinates). Shape: (3,).
    zrot_deg : float
        Twist about ``direction`` [deg].

    Returns
    -------
    R : np.ndarray
        Orthonormal rotation matrix, columns (x, y, d). Shape: (3, 3).

    Raises
    ------
    DegenerateDirection
        If ``direction`` is (near) zero.
    """
    d = np.asarray(direction, dtype=np.float64)
    d_norm = float(np.linalg.norm(d))
    if d_norm < DIRECTION_EPSILON:
        raise DegenerateDirection("Cannot orient an element along a zero vector")
    d = d / d_norm

    # Tie-break: d parallel to +y (either sign) uses +z as the up reference
    up = _UP_REFERENCE
    if abs(float(np.dot(d, up))) > 1.0 - _PARALLEL_TOLERANCE:
        up = _UP_FALLBACK

    x0 = np.cross(up, d)
    x0 /= np.linalg.norm(x0)
    y0 = np.cross(d, x0)

    gamma = np.radians(zrot_deg)
    cos_g = np.cos(gamma)
    sin_g = np.sin(gamma)
    x_axis = cos_g * x0 + sin_g * y0
    y_axis = -sin_g * x0 + cos_g * y0

    return np.column_stack([x_axis, y_axis, d])


def compute_orientation(
    origin: np.ndarray,
    aim_point: np.ndarray,
    zrot_deg: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Rotation matrix and Euler angles for an element.

    Returns
    -------
    rotation : np.ndarray
        Local-to-global rotation matrix. Shape: (3, 3).
    euler_angles : np.ndarray
        (α, β, γ) in radians. Shape: (3,).
    """
    d = aim_direction(origin, aim_point)
    rotation = rotation_from_direction(d, zrot_deg)
    return rotation, euler_angles_from_rotation(rotation, zrot_deg)


def euler_angles_from_rotation(rotation: np.ndarray, zrot_deg: float) -> np.ndarray:
    """(α, β, γ) of a rotation matrix built by ``rotation_from_direction``.

    β = asin(d_y) and γ = zrot; α is read from the untwisted local x axis
    x₀ = (cos α, 0, −sin α), which equals atan2(d_x, d_z) away from the
    ±y tie-break and stays consistent with R inside it.
    """
    rotation = np.asarray(rotation, dtype=np.float64)
    gamma = np.radians(zrot_deg)
    x0 = np.cos(gamma) * rotation[:, 0] - np.sin(gamma) * rotation[:, 1]
    # + 0.0 folds −0.0 so α stays in (−π, π]
    alpha = np.arctan2(-x0[2] + 0.0, x0[0])
    beta = np.arcsin(np.clip(rotation[1, 2], -1.0, 1.0))
    return np.array([alpha, beta, gamma], dtype=np.float64)


def rotation_from_euler_angles(angles: np.ndarray) -> np.ndarray:
    """Rebuild R = R_y(α) · R_x(−β) · R_z(γ) from (α, β, γ)."""
    alpha, beta, gamma = (float(a) for a in angles)
    ca, sa = np.cos(alpha), np.sin(alpha)
    cb, sb = np.cos(beta), np.sin(beta)
    cg, sg = np.cos(gamma), np.sin(gamma)
    r_y = np.array([[ca, 0.0, sa], [0.0, 1.0, 0.0], [-sa, 0.0, ca]])
    r_x = np.array([[1.0, 0.0, 0.0], [0.0, cb, sb], [0.0, -sb, cb]])
    r_z = np.array([[cg, -sg, 0.0], [sg, cg, 0.0], [0.0, 0.0, 1.0]])
    return r_y @ r_x @ r_z


def local_to_global(points: np.ndarray, rotation: np.ndarray, origin: np.ndarray) -> np.ndarray:
    """Map local points (3,) or (N, 3) to global: R · p + O."""
    pts = np.asarray(points, dtype=np.float64)
    return pts @ rotation.T + origin


def global_to_local(points: np.ndarray, rotation: np.ndarray, origin: np.ndarray) -> np.ndarray:
    """Map global points (3,) or (N, 3) to local: Rᵀ · (p − O)."""
    pts = np.asarray(points, dtype=np.float64)
    return (pts - origin) @ rotation


# ---------------------------------------------------------------------------
# Bounding boxes
# ---------------------------------------------------------------------------


def footprint_half_extents(surface: Surface, aperture: Aperture) -> tuple[float, float]:
    """Half extents of the local (x, y) footprint of a clipped surface."""
    half_x, half_y = aperture.half_extents()
    if isinstance(surface, CylinderSurface):
        # The shell never reaches beyond its radius, whatever the aperture
        half_x = min(half_x, surface.radius)
        half_y = min(half_y, surface.radius)
    return half_x, half_y


def surface_z_range(surface: Surface, half_x: float, half_y: float) -> tuple[float, float]:
    """Local z range of ``surface`` over the footprint box."""
    if isinstance(surface, FlatSurface):
        return 0.0, 0.0
    if isinstance(surface, ParabolicSurface):
        return surface.sag_range(half_x, half_y)
    if isinstance(surface, CylinderSurface):
        return -surface.half_height, surface.half_height
    raise TypeError(f"Unhandled surface variant: {type(surface).__name__}")


def local_extremal_points(surface: Surface, aperture: Aperture) -> np.ndarray:
    """Local-frame corner points that bound the clipped surface.

    Four footprint corners at each end of the surface's z range.

    Returns
    -------
    np.ndarray
        Shape: (8, 3).
    """
    if not isinstance(aperture, (RectangleAperture, CircleAperture)):
        raise TypeError(f"Unhandled aperture variant: {type(aperture).__name__}")

    half_x, half_y = footprint_half_extents(surface, aperture)
    z_min, z_max = surface_z_range(surface, half_x, half_y)
    return np.array(
        [
            [sx * half_x, sy * half_y, z]
            for z in (z_min, z_max)
            for sx in (-1.0, 1.0)
            for sy in (-1.0, 1.0)
        ],
        dtype=np.float64,
    )


def compute_bounding_box(
    surface: Surface,
    aperture: Aperture,
    rotation: np.ndarray,
    origin: np.ndarray,
) -> BoundingBox:
    """Conservative global AABB of a placed surface/aperture pair.

    Parameters
    ----------
    surface : Surface
        Surface variant.
    aperture : Aperture
        Aperture variant.
    rotation : np.ndarray
        Local-to-global rotation matrix. Shape: (3, 3).
    origin : np.ndarray
        Element origin. Shape: (3,).

    Returns
    -------
    BoundingBox
        Box with ``upper >= lower`` componentwise.
    """
    local_pts = local_extremal_points(surface, aperture)
    global_pts = local_to_global(local_pts, rotation, np.asarray(origin, dtype=np.float64))
    return BoundingBox(lower=global_pts.min(axis=0), upper=global_pts.max(axis=0))


def is_orthonormal(rotation: np.ndarray, tolerance: float = 1e-9) -> bool:
    """True if ``rotation`` is a proper rotation (RᵀR = I, det = +1)."""
    r = np.asarray(rotation, dtype=np.float64)
    if r.shape != (3, 3):
        return False
    if not np.allclose(r.T @ r, np.eye(3), atol=tolerance):
        return False
    return abs(float(np.linalg.det(r)) - 1.0) < tolerance
