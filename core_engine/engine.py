"""Tracing-engine interface.

The scene controller hands a geometry + material snapshot to an engine
and gets back per-ray hit-point sequences:

    handle  = engine.submit_scene(records, sun_params, ray_count)
    result  = engine.trace(handle)
    engine.teardown(handle)

Records are in the scene's element order; that order is the object
index the engine reports hits against.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass

import numpy as np

from core_engine.geometry import BoundingBox, compute_bounding_box
from core_engine.surfaces import aperture_from_params, surface_from_params

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH: int = 5


# ---------------------------------------------------------------------------
# Data carried across the interface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SceneRecord:
    """Engine-facing description of one element.

    Attributes
    ----------
    surface_type : int
        ``SurfaceType`` code.
    surface_params : tuple[float, float]
        (c1, c2) for parabolic, (radius, half_height) for cylinder.
    aperture_type : int
        ``ApertureType`` code.
    aperture_params : tuple[float, float]
        (dim_x, dim_y) for rectangle, (diameter, 0) for circle.
    rotation : np.ndarray
        Local-to-global rotation matrix. Shape: (3, 3).
    origin : np.ndarray
        Element origin. Shape: (3,).
    reflectivity, transmissivity : float
        Probabilities in [0, 1].
    slope_error, specularity_error : float
        Gaussian errors [mrad].
    use_refraction : bool
        Pass-through instead of reflection.
    receiver : bool
        Terminal target flag.
    """

    surface_type: int
    surface_params: tuple[float, float]
    aperture_type: int
    aperture_params: tuple[float, float]
    rotation: np.ndarray
    origin: np.ndarray
    reflectivity: float
    transmissivity: float
    slope_error: float
    specularity_error: float
    use_refraction: bool
    receiver: bool


def bounding_box_from_record(record: SceneRecord) -> BoundingBox:
    """Recompute an element's bounding box from its record alone."""
    surface = surface_from_params(record.surface_type, record.surface_params)
    aperture = aperture_from_params(record.aperture_type, record.aperture_params)
    return compute_bounding_box(surface, aperture, record.rotation, record.origin)


@dataclass(frozen=True)
class SunParameters:
    """Illumination snapshot for one trace.

    Attributes
    ----------
    vector : np.ndarray
        Unit vector pointing from the scene toward the sun. Shape: (3,).
    half_angle_rad : float
        Angular half-width of the solar disk [rad]; 0 = collimated.
    ray_directions : np.ndarray
        Sampled propagation directions (toward the scene), one per ray.
        Shape: (ray_count, 3).
    scene_bounds : BoundingBox
        Aggregate scene AABB, used to place ray origins upstream.
    seed : int | None
        Seed for any engine-side sampling.
    """

    vector: np.ndarray
    half_angle_rad: float
    ray_directions: np.ndarray
    scene_bounds: BoundingBox
    seed: int | None = None


@dataclass
class TraceResult:
    """Hit-point sequences returned by an engine.

    Attributes
    ----------
    hit_points : np.ndarray
        Hit positions, NaN beyond each ray's last bounce.
        Shape: (ray_count, max_depth, 3).
    num_hits : np.ndarray
        Number of recorded bounces per ray (0 = miss). Shape: (ray_count,).
    hit_elements : np.ndarray
        Element index per bounce, -1 where unused.
        Shape: (ray_count, max_depth).
    """

    hit_points: np.ndarray
    num_hits: np.ndarray
    hit_elements: np.ndarray

    @property
    def ray_count(self) -> int:
        return int(self.num_hits.shape[0])

    @property
    def max_depth(self) -> int:
        return int(self.hit_points.shape[1])

    def __len__(self) -> int:
        return self.ray_count

    def sequence(self, ray_index: int) -> np.ndarray:
        """Ordered hit points of one ray. Shape: (num_hits[i], 3)."""
        n = int(self.num_hits[ray_index])
        return self.hit_points[ray_index, :n].copy()

    def sequences(self) -> list[np.ndarray]:
        return [self.sequence(i) for i in range(self.ray_count)]

    def final_points(self) -> tuple[np.ndarray, np.ndarray]:
        """Terminal hit point of every ray that hit anything.

        Returns
        -------
        ray_indices : np.ndarray
            Indices of rays with at least one hit. Shape: (M,).
        points : np.ndarray
            Their last hit points. Shape: (M, 3).
        """
        ray_indices = np.flatnonzero(self.num_hits > 0)
        last = self.num_hits[ray_indices] - 1
        return ray_indices, self.hit_points[ray_indices, last]

    def validate(self, expected_rays: int) -> None:
        """Check shape consistency; raises ``ValueError`` on mismatch."""
        if self.hit_points.ndim != 3 or self.hit_points.shape[2] != 3:
            raise ValueError(f"hit_points must be (N, depth, 3), got {self.hit_points.shape}")
        if self.ray_count != expected_rays:
            raise ValueError(f"Expected {expected_rays} ray sequences, got {self.ray_count}")
        if self.hit_points.shape[0] != self.ray_count:
            raise ValueError("hit_points and num_hits disagree on the ray count")
        if np.any(self.num_hits < 0) or np.any(self.num_hits > self.max_depth):
            raise ValueError("num_hits outside [0, max_depth]")


# ---------------------------------------------------------------------------
# Engine contract
# ---------------------------------------------------------------------------


class TracingEngine(abc.ABC):
    """Interface of a ray-tracing backend.

    Implementations raise ``EngineError`` on failure, including unknown
    or already torn-down handles.
    """

    max_depth: int = DEFAULT_MAX_DEPTH

    @abc.abstractmethod
    def submit_scene(
        self,
        records: list[SceneRecord],
        sun_params: SunParameters,
        ray_count: int,
    ) -> int:
        """Upload a scene snapshot and return an opaque handle."""

    @abc.abstractmethod
    def trace(self, handle: int) -> TraceResult:
        """Trace all rays of a submitted scene (blocking)."""

    @abc.abstractmethod
    def teardown(self, handle: int) -> None:
        """Release the resources held for ``handle``."""
