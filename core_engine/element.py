"""Optical element: placement, orientation, shape and optical coefficients.

An element is configured standalone and then registered into exactly one
``Scene``. Its derived state (rotation matrix, Euler angles, bounding
box) is a pure function of (origin, aim point, zrot, surface, aperture):

- every setter on those inputs marks the cache stale;
- ``update_geometry()`` is the explicit recomputation step the scene
  invokes after configuration changes;
- every derived-state accessor recomputes first if the cache is stale,
  so no query ever returns geometry derived from old inputs.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from itertools import count

import numpy as np

from core_engine.engine import SceneRecord
from core_engine.exceptions import ConfigurationError
from core_engine.geometry import (
    BoundingBox,
    compute_bounding_box,
    compute_orientation,
    global_to_local,
)
from core_engine.surfaces import (
    Aperture,
    CylinderSurface,
    FlatSurface,
    ParabolicSurface,
    Surface,
)

logger = logging.getLogger(__name__)

_element_ids = count()


def _as_point(value) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64).reshape(-1)
    if arr.shape != (3,) or not np.all(np.isfinite(arr)):
        raise ConfigurationError(f"Expected a finite 3-vector, got {value!r}")
    return arr.copy()


def _unit_interval(name: str, value: float) -> float:
    value = float(value)
    if not (0.0 <= value <= 1.0):
        raise ConfigurationError(f"{name} must be in [0, 1], got {value}")
    return value


def _non_negative(name: str, value: float) -> float:
    value = float(value)
    if value < 0.0 or not np.isfinite(value):
        raise ConfigurationError(f"{name} must be finite and >= 0, got {value}")
    return value


class Element:
    """One optical body of the scene (heliostat, receiver, ...).

    Parameters
    ----------
    origin : array-like
        Element origin in global coordinates [m]. Shape: (3,).
    aim_point : array-like
        Global point the local +z axis faces [m]. Shape: (3,).
    zrot : float
        Twist about the aim axis [deg].
    surface : Surface, optional
        Surface variant. Required before ``Scene.initialize()``.
    aperture : Aperture, optional
        Aperture variant. Required before ``Scene.initialize()``.
    reflectivity, transmissivity : float
        Probabilities in [0, 1].
    slope_error, specularity_error : float
        Gaussian optical errors [mrad], >= 0.
    use_refraction : bool
        If True, rays pass through the element instead of reflecting.
    receiver : bool
        Marks a terminal target of the optical path.
    name : str, optional
        Label used in logs and summaries.
    """

    def __init__(
        self,
        origin=(0.0, 0.0, 0.0),
        aim_point=(0.0, 0.0, 1.0),
        zrot: float = 0.0,
        surface: Surface | None = None,
        aperture: Aperture | None = None,
        reflectivity: float = 1.0,
        transmissivity: float = 0.0,
        slope_error: float = 0.0,
        specularity_error: float = 0.0,
        use_refraction: bool = False,
        receiver: bool = False,
        name: str | None = None,
    ) -> None:
        self._id = next(_element_ids)
        self.name = name if name is not None else f"element_{self._id}"

        self._origin = _as_point(origin)
        self._aim_point = _as_point(aim_point)
        self._zrot = float(zrot)
        self._surface = surface
        self._aperture = aperture

        self._reflectivity = _unit_interval("reflectivity", reflectivity)
        self._transmissivity = _unit_interval("transmissivity", transmissivity)
        self._slope_error = _non_negative("slope_error", slope_error)
        self._specularity_error = _non_negative("specularity_error", specularity_error)
        self.use_refraction = bool(use_refraction)
        self.receiver = bool(receiver)

        # Derived state
        self._rotation: np.ndarray | None = None
        self._euler_angles: np.ndarray | None = None
        self._bounding_box: BoundingBox | None = None
        self._dirty = True

        # Owning scene (single ownership)
        self._owner: object | None = None

    def __repr__(self) -> str:
        return (
            f"Element(name={self.name!r}, origin={self._origin.tolist()}, "
            f"aim_point={self._aim_point.tolist()}, zrot={self._zrot}, "
            f"surface={self._surface!r}, aperture={self._aperture!r}, "
            f"receiver={self.receiver})"
        )

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @property
    def owner(self) -> object | None:
        """Scene this element is registered in, or None."""
        return self._owner

    def _register(self, owner: object) -> None:
        if self._owner is not None:
            raise ConfigurationError(f"{self.name} is already owned by a scene")
        self._owner = owner

    def _release(self) -> None:
        self._owner = None

    # ------------------------------------------------------------------
    # Placement inputs
    # ------------------------------------------------------------------

    @property
    def origin(self) -> np.ndarray:
        return self._origin.copy()

    @origin.setter
    def origin(self, value) -> None:
        self._origin = _as_point(value)
        self._invalidate()

    @property
    def aim_point(self) -> np.ndarray:
        return self._aim_point.copy()

    @aim_point.setter
    def aim_point(self, value) -> None:
        self._aim_point = _as_point(value)
        self._invalidate()

    @property
    def zrot(self) -> float:
        return self._zrot

    @zrot.setter
    def zrot(self, value: float) -> None:
        self._zrot = float(value)
        self._invalidate()

    @property
    def surface(self) -> Surface | None:
        return self._surface

    @surface.setter
    def surface(self, value: Surface | None) -> None:
        self._surface = value
        self._invalidate()

    @property
    def aperture(self) -> Aperture | None:
        return self._aperture

    @aperture.setter
    def aperture(self, value: Aperture | None) -> None:
        self._aperture = value
        self._invalidate()

    def update_element(self, aim_point, zrot: float) -> None:
        """Re-aim the element and recompute its geometry in one step."""
        self._aim_point = _as_point(aim_point)
        self._zrot = float(zrot)
        self._invalidate()
        self.update_geometry()

    # ------------------------------------------------------------------
    # Optical coefficients
    # ------------------------------------------------------------------

    @property
    def reflectivity(self) -> float:
        return self._reflectivity

    @reflectivity.setter
    def reflectivity(self, value: float) -> None:
        self._reflectivity = _unit_interval("reflectivity", value)

    @property
    def transmissivity(self) -> float:
        return self._transmissivity

    @transmissivity.setter
    def transmissivity(self, value: float) -> None:
        self._transmissivity = _unit_interval("transmissivity", value)

    @property
    def slope_error(self) -> float:
        return self._slope_error

    @slope_error.setter
    def slope_error(self, value: float) -> None:
        self._slope_error = _non_negative("slope_error", value)

    @property
    def specularity_error(self) -> float:
        return self._specularity_error

    @specularity_error.setter
    def specularity_error(self, value: float) -> None:
        self._specularity_error = _non_negative("specularity_error", value)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def is_stale(self) -> bool:
        """True if derived geometry must be recomputed before use."""
        return self._dirty

    def _invalidate(self) -> None:
        self._dirty = True
        self._rotation = None
        self._euler_angles = None
        self._bounding_box = None

    def validate(self) -> None:
        """Raise ``ConfigurationError`` if surface or aperture is missing."""
        if self._surface is None:
            raise ConfigurationError(f"{self.name}: no surface set")
        if self._aperture is None:
            raise ConfigurationError(f"{self.name}: no aperture set")

    def update_geometry(self) -> None:
        """Recompute orientation and bounding box from the current inputs.

        Raises
        ------
        ConfigurationError
            If surface or aperture is missing.
        DegenerateDirection
            If the aim point coincides with the origin.
        """
        self.validate()
        rotation, euler = compute_orientation(self._origin, self._aim_point, self._zrot)
        box = compute_bounding_box(self._surface, self._aperture, rotation, self._origin)

        self._rotation = rotation
        self._euler_angles = euler
        self._bounding_box = box
        self._dirty = False

        logger.debug(
            "%s geometry: d=(%.4f, %.4f, %.4f), box=[%s, %s]",
            self.name,
            rotation[0, 2], rotation[1, 2], rotation[2, 2],
            np.array2string(box.lower, precision=3),
            np.array2string(box.upper, precision=3),
        )

    def _ensure_current(self) -> None:
        if self._dirty:
            self.update_geometry()

    @property
    def rotation_matrix(self) -> np.ndarray:
        """Local-to-global rotation matrix, columns (x, y, d). Shape: (3, 3)."""
        self._ensure_current()
        return self._rotation.copy()

    @property
    def euler_angles(self) -> np.ndarray:
        """(α, β, γ) [rad]; see ``core_engine.geometry``."""
        self._ensure_current()
        return self._euler_angles.copy()

    @property
    def bounding_box(self) -> BoundingBox:
        self._ensure_current()
        return self._bounding_box

    @property
    def upper_bounding_box(self) -> np.ndarray:
        return self.bounding_box.upper.copy()

    @property
    def lower_bounding_box(self) -> np.ndarray:
        return self.bounding_box.lower.copy()

    # ------------------------------------------------------------------
    # Point queries
    # ------------------------------------------------------------------

    def to_local(self, points: np.ndarray) -> np.ndarray:
        """Global points (3,) or (N, 3) in this element's local frame."""
        self._ensure_current()
        return global_to_local(points, self._rotation, self._origin)

    def in_plane(self, points: np.ndarray) -> np.ndarray | bool:
        """Aperture containment of the local (x, y) projection of ``points``."""
        local = self.to_local(points)
        return self._aperture.contains(local[..., 0], local[..., 1])

    def on_surface(self, points: np.ndarray, tolerance: float = 1e-6) -> np.ndarray | bool:
        """True where ``points`` lie on the (unclipped) surface within ``tolerance``."""
        local = self.to_local(points)
        x, y, z = local[..., 0], local[..., 1], local[..., 2]
        surface = self._surface
        if isinstance(surface, FlatSurface):
            return np.abs(z) <= tolerance
        if isinstance(surface, ParabolicSurface):
            return np.abs(z - surface.sag(x, y)) <= tolerance
        if isinstance(surface, CylinderSurface):
            radial = np.sqrt(x * x + y * y)
            return (np.abs(radial - surface.radius) <= tolerance) & (
                np.abs(z) <= surface.half_height + tolerance
            )
        raise TypeError(f"Unhandled surface variant: {type(surface).__name__}")

    def contains_hit(self, points: np.ndarray, tolerance: float = 1e-6) -> np.ndarray | bool:
        """True where ``points`` lie on the surface inside the aperture."""
        return self.on_surface(points, tolerance) & self.in_plane(points)

    # ------------------------------------------------------------------
    # Export / copy
    # ------------------------------------------------------------------

    def to_record(self) -> SceneRecord:
        """Flattened engine-facing description of this element."""
        self._ensure_current()
        return SceneRecord(
            surface_type=int(self._surface.surface_type),
            surface_params=self._surface.params(),
            aperture_type=int(self._aperture.aperture_type),
            aperture_params=self._aperture.params(),
            rotation=self._rotation.copy(),
            origin=self._origin.copy(),
            reflectivity=self._reflectivity,
            transmissivity=self._transmissivity,
            slope_error=self._slope_error,
            specularity_error=self._specularity_error,
            use_refraction=self.use_refraction,
            receiver=self.receiver,
        )

    def copy(self, name: str | None = None) -> Element:
        """Unregistered clone with its own surface and aperture instances."""
        return Element(
            origin=self._origin,
            aim_point=self._aim_point,
            zrot=self._zrot,
            surface=replace(self._surface) if self._surface is not None else None,
            aperture=replace(self._aperture) if self._aperture is not None else None,
            reflectivity=self._reflectivity,
            transmissivity=self._transmissivity,
            slope_error=self._slope_error,
            specularity_error=self._specularity_error,
            use_refraction=self.use_refraction,
            receiver=self.receiver,
            name=name,
        )
