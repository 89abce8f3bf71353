"""Reference CPU tracing backend with analytic surface intersection.

Implements the ``TracingEngine`` interface on the CPU. All inner-loop
functions are compiled with Numba ``@njit(cache=True)``; the per-ray loop
runs in parallel with ``prange``.

Design Notes
------------
- **Flat arrays**: element records are packed into contiguous float64 /
  int64 arrays (no Python objects in the kernel) indexed by the scene's
  element order.
- **Per-bounce search**: each ray tests every element whose AABB it
  crosses (slab method), intersects the surface analytically in the
  element's local frame, clips against the aperture and keeps the
  closest hit. Element counts are small, so no hierarchy is built.
- **Interaction**: with ``use_refraction`` the ray passes straight
  through with probability ``transmissivity`` and is absorbed otherwise,
  receiver or not. Without it a receiver absorbs the ray and any other
  element reflects it with probability ``reflectivity``.
  Slope error perturbs the normal, specularity error perturbs the
  reflected direction; both are Gaussian with σ in mrad.
- **Reproducibility**: ray origins, survival draws and Gaussian errors
  are pre-drawn from a seeded ``numpy.random.Generator`` before the
  kernel runs, so the parallel loop is deterministic.
- **Ray origins** lie on a plane perpendicular to the central sun
  direction, upstream of the scene AABB, covering its projection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import count

import numpy as np
from numba import njit, prange

from core_engine.engine import (
    DEFAULT_MAX_DEPTH,
    SceneRecord,
    SunParameters,
    TraceResult,
    TracingEngine,
    bounding_box_from_record,
)
from core_engine.exceptions import EngineError
from core_engine.geometry import BoundingBox

logger = logging.getLogger(__name__)

# ===================================================================
# Constants
# ===================================================================

_INF: float = 1e30
_DEFAULT_EPSILON: float = 1e-9
_DEFAULT_MIN_DISTANCE: float = 1e-6

# Shape codes, must match core_engine.surfaces
_FLAT = 0
_PARABOLIC = 1
_CYLINDER = 2
_RECTANGLE = 0
_CIRCLE = 1

# Material column layout
_REFLECTIVITY = 0
_TRANSMISSIVITY = 1
_SLOPE_ERROR = 2
_SPECULARITY_ERROR = 3
_NUM_MATERIAL = 4

_MRAD = 1e-3


# ===================================================================
# RAY-AABB INTERSECTION — Slab Method (Numba JIT)
# ===================================================================


@njit(cache=True, fastmath=False)
def ray_aabb_intersect(
    ray_origin: np.ndarray,
    inv_dir: np.ndarray,
    bbox_min: np.ndarray,
    bbox_max: np.ndarray,
    t_max_limit: float,
) -> bool:
    """Test if a ray intersects an axis-aligned bounding box.

    Uses the slab method with precomputed inverse direction to avoid
    division. Rays parallel to a slab use a large finite inverse.

    Parameters
    ----------
    ray_origin : np.ndarray
        Ray origin [x, y, z]. Shape: (3,).
    inv_dir : np.ndarray
        Precomputed 1.0 / ray_dir for each axis. Shape: (3,).
    bbox_min, bbox_max : np.ndarray
        AABB corners. Shape: (3,).
    t_max_limit : float
        Maximum parametric distance (for early culling).

    Returns
    -------
    bool
        True if the ray intersects the AABB within [0, t_max_limit].
    """
    t_min = 0.0
    t_max = t_max_limit

    for axis in range(3):
        t1 = (bbox_min[axis] - ray_origin[axis]) * inv_dir[axis]
        t2 = (bbox_max[axis] - ray_origin[axis]) * inv_dir[axis]

        if t1 > t2:
            t1, t2 = t2, t1

        if t1 > t_min:
            t_min = t1
        if t2 < t_max:
            t_max = t2

        if t_min > t_max:
            return False

    return True


# ===================================================================
# LOCAL-FRAME SURFACE INTERSECTION (Numba JIT)
# ===================================================================


@njit(cache=True, fastmath=False)
def _aperture_contains(
    aperture_type: int,
    aperture_params: np.ndarray,
    x: float,
    y: float,
    epsilon: float,
) -> bool:
    if aperture_type == _RECTANGLE:
        return (
            abs(x) <= 0.5 * aperture_params[0] + epsilon
            and abs(y) <= 0.5 * aperture_params[1] + epsilon
        )
    r = 0.5 * aperture_params[0] + epsilon
    return x * x + y * y <= r * r


@njit(cache=True, fastmath=False)
def _accept_hit(
    t: float,
    surface_type: int,
    surface_params: np.ndarray,
    aperture_type: int,
    aperture_params: np.ndarray,
    p: np.ndarray,
    d: np.ndarray,
    t_min: float,
    epsilon: float,
) -> bool:
    """True if parameter ``t`` is a valid clipped hit."""
    if t <= t_min:
        return False
    x = p[0] + t * d[0]
    y = p[1] + t * d[1]
    if surface_type == _CYLINDER:
        z = p[2] + t * d[2]
        if abs(z) > surface_params[1] + epsilon:
            return False
    return _aperture_contains(aperture_type, aperture_params, x, y, epsilon)


@njit(cache=True, fastmath=False)
def _solve_quadratic(a: float, b: float, c: float) -> tuple[float, float, bool]:
    """Real roots of a·t² + b·t + c = 0 in ascending order.

    Uses the cancellation-free form q = −(b + sign(b)·√Δ)/2.
    """
    disc = b * b - 4.0 * a * c
    if disc < 0.0:
        return -1.0, -1.0, False
    sq = np.sqrt(disc)
    if b >= 0.0:
        q = -0.5 * (b + sq)
    else:
        q = -0.5 * (b - sq)
    t1 = q / a
    if q != 0.0:
        t2 = c / q
    else:
        t2 = t1
    if t1 > t2:
        t1, t2 = t2, t1
    return t1, t2, True


@njit(cache=True, fastmath=False)
def intersect_local(
    surface_type: int,
    surface_params: np.ndarray,
    aperture_type: int,
    aperture_params: np.ndarray,
    p: np.ndarray,
    d: np.ndarray,
    t_min: float,
    epsilon: float,
) -> float:
    """Closest clipped intersection of a local-frame ray with a surface.

    Parameters
    ----------
    surface_type : int
        Surface code (flat, parabolic, cylinder).
    surface_params : np.ndarray
        Surface parameters. Shape: (2,).
    aperture_type : int
        Aperture code (rectangle, circle).
    aperture_params : np.ndarray
        Aperture parameters. Shape: (2,).
    p, d : np.ndarray
        Ray origin and direction in the element's local frame. Shape: (3,).
    t_min : float
        Minimum accepted distance (self-intersection guard).
    epsilon : float
        Zero-test and clipping tolerance.

    Returns
    -------
    float
        Parametric distance t > t_min, or -1.0 on miss.
    """
    if surface_type == _FLAT:
        if abs(d[2]) < epsilon:
            return -1.0
        t = -p[2] / d[2]
        if _accept_hit(t, surface_type, surface_params, aperture_type,
                       aperture_params, p, d, t_min, epsilon):
            return t
        return -1.0

    a = 0.0
    b = 0.0
    c = 0.0
    if surface_type == _PARABOLIC:
        c1 = surface_params[0]
        c2 = surface_params[1]
        # f(t) = c1·x(t)² + c2·y(t)² − z(t)
        a = c1 * d[0] * d[0] + c2 * d[1] * d[1]
        b = 2.0 * (c1 * p[0] * d[0] + c2 * p[1] * d[1]) - d[2]
        c = c1 * p[0] * p[0] + c2 * p[1] * p[1] - p[2]
        if abs(a) < epsilon:
            if abs(b) < epsilon:
                return -1.0
            t = -c / b
            if _accept_hit(t, surface_type, surface_params, aperture_type,
                           aperture_params, p, d, t_min, epsilon):
                return t
            return -1.0
    else:
        # Cylinder shell x² + y² = r² about local z
        r = surface_params[0]
        a = d[0] * d[0] + d[1] * d[1]
        b = 2.0 * (p[0] * d[0] + p[1] * d[1])
        c = p[0] * p[0] + p[1] * p[1] - r * r
        if a < epsilon * epsilon:
            return -1.0

    t1, t2, real = _solve_quadratic(a, b, c)
    if not real:
        return -1.0
    if _accept_hit(t1, surface_type, surface_params, aperture_type,
                   aperture_params, p, d, t_min, epsilon):
        return t1
    if _accept_hit(t2, surface_type, surface_params, aperture_type,
                   aperture_params, p, d, t_min, epsilon):
        return t2
    return -1.0


@njit(cache=True, fastmath=False)
def _local_normal(
    surface_type: int,
    surface_params: np.ndarray,
    x: float,
    y: float,
) -> tuple[float, float, float]:
    """Unnormalized local surface normal at local (x, y)."""
    if surface_type == _FLAT:
        return 0.0, 0.0, 1.0
    if surface_type == _PARABOLIC:
        return -2.0 * surface_params[0] * x, -2.0 * surface_params[1] * y, 1.0
    return x, y, 0.0


@njit(cache=True, fastmath=False)
def _perturb(v: np.ndarray, sigma: float, g1: float, g2: float) -> None:
    """Tilt unit vector ``v`` in place by Gaussian angles (σ in radians)."""
    if sigma <= 0.0:
        return
    # Orthonormal basis (e1, e2) perpendicular to v
    if abs(v[0]) < 0.9:
        ax, ay, az = 1.0, 0.0, 0.0
    else:
        ax, ay, az = 0.0, 1.0, 0.0
    e1x = ay * v[2] - az * v[1]
    e1y = az * v[0] - ax * v[2]
    e1z = ax * v[1] - ay * v[0]
    n1 = np.sqrt(e1x * e1x + e1y * e1y + e1z * e1z)
    e1x /= n1
    e1y /= n1
    e1z /= n1
    e2x = v[1] * e1z - v[2] * e1y
    e2y = v[2] * e1x - v[0] * e1z
    e2z = v[0] * e1y - v[1] * e1x

    a1 = sigma * g1
    a2 = sigma * g2
    v[0] += a1 * e1x + a2 * e2x
    v[1] += a1 * e1y + a2 * e2y
    v[2] += a1 * e1z + a2 * e2z
    norm = np.sqrt(v[0] * v[0] + v[1] * v[1] + v[2] * v[2])
    v[0] /= norm
    v[1] /= norm
    v[2] /= norm


# ===================================================================
# PER-RAY TRACE LOOP (Numba JIT, parallel)
# ===================================================================


@njit(cache=True, parallel=True, fastmath=False)
def trace_rays(
    ray_origins: np.ndarray,
    ray_dirs: np.ndarray,
    surface_types: np.ndarray,
    surface_params: np.ndarray,
    aperture_types: np.ndarray,
    aperture_params: np.ndarray,
    rotations: np.ndarray,
    origins: np.ndarray,
    bbox_min: np.ndarray,
    bbox_max: np.ndarray,
    materials: np.ndarray,
    use_refraction: np.ndarray,
    receivers: np.ndarray,
    survival_draws: np.ndarray,
    error_draws: np.ndarray,
    max_depth: int,
    t_min: float,
    epsilon: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Trace every ray through the element list.

    Parameters
    ----------
    ray_origins, ray_dirs : np.ndarray
        Ray start points and unit directions. Shape: (N, 3).
    surface_types, aperture_types : np.ndarray
        Shape codes per element. Shape: (M,), int64.
    surface_params, aperture_params : np.ndarray
        Shape parameters per element. Shape: (M, 2).
    rotations : np.ndarray
        Local-to-global matrices. Shape: (M, 3, 3).
    origins : np.ndarray
        Element origins. Shape: (M, 3).
    bbox_min, bbox_max : np.ndarray
        Padded element AABBs. Shape: (M, 3).
    materials : np.ndarray
        (reflectivity, transmissivity, slope_error, specularity_error).
        Shape: (M, 4).
    use_refraction, receivers : np.ndarray
        Per-element flags. Shape: (M,), bool.
    survival_draws : np.ndarray
        U[0, 1) per ray and bounce. Shape: (N, max_depth).
    error_draws : np.ndarray
        N(0, 1) per ray and bounce. Shape: (N, max_depth, 4).
    max_depth : int
        Maximum recorded bounces per ray.
    t_min : float
        Self-intersection guard distance.
    epsilon : float
        Zero-test / clipping tolerance.

    Returns
    -------
    hit_points : np.ndarray
        Shape: (N, max_depth, 3), NaN where unused.
    num_hits : np.ndarray
        Shape: (N,), int64.
    hit_elements : np.ndarray
        Shape: (N, max_depth), int64, -1 where unused.
    """
    num_rays = ray_origins.shape[0]
    num_elements = origins.shape[0]

    hit_points = np.full((num_rays, max_depth, 3), np.nan)
    hit_elements = np.full((num_rays, max_depth), -1, dtype=np.int64)
    num_hits = np.zeros(num_rays, dtype=np.int64)

    for i in prange(num_rays):
        pos = ray_origins[i].copy()
        direction = ray_dirs[i].copy()
        inv_dir = np.empty(3, dtype=np.float64)
        p_local = np.empty(3, dtype=np.float64)
        d_local = np.empty(3, dtype=np.float64)
        normal = np.empty(3, dtype=np.float64)

        for depth in range(max_depth):
            for axis in range(3):
                if direction[axis] == 0.0:
                    inv_dir[axis] = _INF
                else:
                    inv_dir[axis] = 1.0 / direction[axis]

            best_t = _INF
            best_k = -1
            for k in range(num_elements):
                if not ray_aabb_intersect(pos, inv_dir, bbox_min[k], bbox_max[k], _INF):
                    continue

                # Local frame: p_l = Rᵀ (p − O), d_l = Rᵀ d
                for a in range(3):
                    p_local[a] = (
                        rotations[k, 0, a] * (pos[0] - origins[k, 0])
                        + rotations[k, 1, a] * (pos[1] - origins[k, 1])
                        + rotations[k, 2, a] * (pos[2] - origins[k, 2])
                    )
                    d_local[a] = (
                        rotations[k, 0, a] * direction[0]
                        + rotations[k, 1, a] * direction[1]
                        + rotations[k, 2, a] * direction[2]
                    )

                t = intersect_local(
                    surface_types[k], surface_params[k],
                    aperture_types[k], aperture_params[k],
                    p_local, d_local, t_min, epsilon,
                )
                if t > 0.0 and t < best_t:
                    best_t = t
                    best_k = k

            if best_k < 0:
                break  # Miss: sequence ends here

            for a in range(3):
                pos[a] = pos[a] + best_t * direction[a]
                hit_points[i, depth, a] = pos[a]
            hit_elements[i, depth] = best_k
            num_hits[i] = depth + 1

            u = survival_draws[i, depth]
            if use_refraction[best_k]:
                if u >= materials[best_k, _TRANSMISSIVITY]:
                    break
                continue  # Straight through

            if receivers[best_k]:
                break  # Absorbed by a receiver

            if u >= materials[best_k, _REFLECTIVITY]:
                break

            # Global normal at the hit, facing the incoming ray
            for a in range(3):
                p_local[a] = (
                    rotations[best_k, 0, a] * (pos[0] - origins[best_k, 0])
                    + rotations[best_k, 1, a] * (pos[1] - origins[best_k, 1])
                    + rotations[best_k, 2, a] * (pos[2] - origins[best_k, 2])
                )
            nx, ny, nz = _local_normal(
                surface_types[best_k], surface_params[best_k], p_local[0], p_local[1]
            )
            for a in range(3):
                normal[a] = (
                    rotations[best_k, a, 0] * nx
                    + rotations[best_k, a, 1] * ny
                    + rotations[best_k, a, 2] * nz
                )
            n_norm = np.sqrt(normal[0] ** 2 + normal[1] ** 2 + normal[2] ** 2)
            for a in range(3):
                normal[a] /= n_norm
            if normal[0] * direction[0] + normal[1] * direction[1] + normal[2] * direction[2] > 0.0:
                for a in range(3):
                    normal[a] = -normal[a]

            _perturb(
                normal, materials[best_k, _SLOPE_ERROR] * _MRAD,
                error_draws[i, depth, 0], error_draws[i, depth, 1],
            )

            # r = d − 2(d·n)n
            d_dot_n = direction[0] * normal[0] + direction[1] * normal[1] + direction[2] * normal[2]
            for a in range(3):
                direction[a] = direction[a] - 2.0 * d_dot_n * normal[a]

            _perturb(
                direction, materials[best_k, _SPECULARITY_ERROR] * _MRAD,
                error_draws[i, depth, 2], error_draws[i, depth, 3],
            )

    return hit_points, num_hits, hit_elements


# ===================================================================
# SUN PLANE — Python (one-time cost per submission)
# ===================================================================


def generate_ray_origins(
    ray_dirs: np.ndarray,
    sun_vector: np.ndarray,
    half_angle_rad: float,
    scene_bounds: BoundingBox,
    rng: np.random.Generator,
) -> np.ndarray:
    """Uniform ray start points on a plane upstream of the scene.

    The plane is perpendicular to the central propagation direction
    (−sun_vector), placed before the nearest scene-box corner, and sized
    to the projection of the scene box widened by the angular spread.

    Returns
    -------
    np.ndarray
        Shape: (N, 3).
    """
    central = -np.asarray(sun_vector, dtype=np.float64)
    central /= np.linalg.norm(central)

    helper = np.array([1.0, 0.0, 0.0]) if abs(central[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    e1 = np.cross(helper, central)
    e1 /= np.linalg.norm(e1)
    e2 = np.cross(central, e1)

    center = scene_bounds.center
    rel = scene_bounds.corners() - center
    u = rel @ e1
    v = rel @ e2
    w = rel @ central

    diag = float(np.linalg.norm(scene_bounds.extent))
    offset = 0.1 * diag + 1.0
    depth_span = float(w.max() - w.min()) + offset
    pad = np.tan(half_angle_rad) * depth_span + 1e-6 * (diag + 1.0)

    plane_center = center + central * (float(w.min()) - offset)
    num_rays = ray_dirs.shape[0]
    us = rng.uniform(u.min() - pad, u.max() + pad, num_rays)
    vs = rng.uniform(v.min() - pad, v.max() + pad, num_rays)

    return plane_center + us[:, None] * e1 + vs[:, None] * e2


# ===================================================================
# ENGINE
# ===================================================================


@dataclass
class _SubmittedScene:
    """Packed arrays for one submitted scene."""

    ray_origins: np.ndarray
    ray_dirs: np.ndarray
    surface_types: np.ndarray
    surface_params: np.ndarray
    aperture_types: np.ndarray
    aperture_params: np.ndarray
    rotations: np.ndarray
    origins: np.ndarray
    bbox_min: np.ndarray
    bbox_max: np.ndarray
    materials: np.ndarray
    use_refraction: np.ndarray
    receivers: np.ndarray
    survival_draws: np.ndarray
    error_draws: np.ndarray


class CpuTracingEngine(TracingEngine):
    """Numba CPU implementation of ``TracingEngine``.

    Parameters
    ----------
    max_depth : int
        Maximum recorded bounces per ray.
    epsilon : float
        Zero-test and aperture clipping tolerance.
    min_distance : float
        Minimum travel between successive hits (self-intersection guard).
    """

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        epsilon: float = _DEFAULT_EPSILON,
        min_distance: float = _DEFAULT_MIN_DISTANCE,
    ) -> None:
        if max_depth < 1:
            raise ValueError(f"max_depth must be ≥ 1, got {max_depth}")
        self.max_depth = int(max_depth)
        self._epsilon = float(epsilon)
        self._min_distance = float(min_distance)
        self._scenes: dict[int, _SubmittedScene] = {}
        self._handles = count(1)

    @property
    def active_handles(self) -> list[int]:
        return sorted(self._scenes)

    def submit_scene(
        self,
        records: list[SceneRecord],
        sun_params: SunParameters,
        ray_count: int,
    ) -> int:
        """Pack records and pre-draw all random numbers for a trace."""
        if not records:
            raise EngineError("Cannot submit an empty scene")
        if ray_count < 1:
            raise EngineError(f"ray_count must be ≥ 1, got {ray_count}")
        ray_dirs = np.ascontiguousarray(sun_params.ray_directions, dtype=np.float64)
        if ray_dirs.shape != (ray_count, 3):
            raise EngineError(
                f"Expected ray directions of shape ({ray_count}, 3), got {ray_dirs.shape}"
            )

        num_elements = len(records)
        surface_types = np.array([r.surface_type for r in records], dtype=np.int64)
        surface_params = np.array([r.surface_params for r in records], dtype=np.float64)
        aperture_types = np.array([r.aperture_type for r in records], dtype=np.int64)
        aperture_params = np.array([r.aperture_params for r in records], dtype=np.float64)
        rotations = np.ascontiguousarray(np.stack([r.rotation for r in records]), dtype=np.float64)
        origins = np.ascontiguousarray(np.stack([r.origin for r in records]), dtype=np.float64)
        materials = np.array(
            [
                (r.reflectivity, r.transmissivity, r.slope_error, r.specularity_error)
                for r in records
            ],
            dtype=np.float64,
        ).reshape(num_elements, _NUM_MATERIAL)
        use_refraction = np.array([r.use_refraction for r in records], dtype=np.bool_)
        receivers = np.array([r.receiver for r in records], dtype=np.bool_)

        # Element boxes, padded so zero-thickness boxes survive rounding
        boxes = [bounding_box_from_record(r) for r in records]
        pad = 10.0 * self._min_distance
        bbox_min = np.stack([b.lower for b in boxes]) - pad
        bbox_max = np.stack([b.upper for b in boxes]) + pad

        rng = np.random.default_rng(sun_params.seed)
        ray_origins = generate_ray_origins(
            ray_dirs, sun_params.vector, sun_params.half_angle_rad,
            sun_params.scene_bounds, rng,
        )
        survival_draws = rng.random((ray_count, self.max_depth))
        error_draws = rng.standard_normal((ray_count, self.max_depth, 4))

        handle = next(self._handles)
        self._scenes[handle] = _SubmittedScene(
            ray_origins=ray_origins,
            ray_dirs=ray_dirs,
            surface_types=surface_types,
            surface_params=surface_params,
            aperture_types=aperture_types,
            aperture_params=aperture_params,
            rotations=rotations,
            origins=origins,
            bbox_min=np.ascontiguousarray(bbox_min),
            bbox_max=np.ascontiguousarray(bbox_max),
            materials=materials,
            use_refraction=use_refraction,
            receivers=receivers,
            survival_draws=survival_draws,
            error_draws=error_draws,
        )

        logger.info(
            "Scene submitted: handle=%d, %d elements (%d receivers), %d rays, max_depth=%d",
            handle, num_elements, int(receivers.sum()), ray_count, self.max_depth,
        )
        return handle

    def _lookup(self, handle: int) -> _SubmittedScene:
        try:
            return self._scenes[handle]
        except KeyError:
            raise EngineError(f"Unknown or released scene handle: {handle}") from None

    def trace(self, handle: int) -> TraceResult:
        """Run the JIT kernel for a submitted scene (blocking)."""
        s = self._lookup(handle)
        logger.info("Tracing %d rays (handle=%d)...", s.ray_dirs.shape[0], handle)
        hit_points, num_hits, hit_elements = trace_rays(
            s.ray_origins,
            s.ray_dirs,
            s.surface_types,
            s.surface_params,
            s.aperture_types,
            s.aperture_params,
            s.rotations,
            s.origins,
            s.bbox_min,
            s.bbox_max,
            s.materials,
            s.use_refraction,
            s.receivers,
            s.survival_draws,
            s.error_draws,
            self.max_depth,
            self._min_distance,
            self._epsilon,
        )
        logger.info(
            "Trace complete: %d/%d rays hit, %d hit points",
            int(np.count_nonzero(num_hits)), num_hits.shape[0], int(num_hits.sum()),
        )
        return TraceResult(hit_points=hit_points, num_hits=num_hits, hit_elements=hit_elements)

    def teardown(self, handle: int) -> None:
        self._lookup(handle)
        del self._scenes[handle]
        logger.debug("Scene handle %d released", handle)
