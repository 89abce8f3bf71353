"""Surface and aperture shape descriptors.

Both hierarchies are small tagged variants: immutable dataclasses that
carry only their own parameters plus an integer type tag. The tag values
double as the shape codes of the engine-facing records, so they must not
be renumbered.

Surfaces
--------
- ``FlatSurface``: the local z = 0 plane.
- ``ParabolicSurface(c1, c2)``: sag z = c1·x² + c2·y², opening along +z.
- ``CylinderSurface(radius, half_height)``: shell x² + y² = r² about the
  local z axis, capped at |z| ≤ half_height.

Apertures
---------
- ``RectangleAperture(dim_x, dim_y)``: |x| ≤ dim_x/2 and |y| ≤ dim_y/2.
- ``CircleAperture(diameter)``: x² + y² ≤ (diameter/2)².

No intersection math lives here; see ``core_engine.raytracer``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Union

import numpy as np

from core_engine.exceptions import ConfigurationError


class SurfaceType(IntEnum):
    """Surface shape tag (engine shape code)."""

    FLAT = 0
    PARABOLIC = 1
    CYLINDER = 2


class ApertureType(IntEnum):
    """Aperture shape tag (engine shape code)."""

    RECTANGLE = 0
    CIRCLE = 1


# ---------------------------------------------------------------------------
# Surfaces
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlatSurface:
    """Plane surface, no parameters."""

    surface_type: ClassVar[SurfaceType] = SurfaceType.FLAT

    def params(self) -> tuple[float, float]:
        return (0.0, 0.0)


@dataclass(frozen=True)
class ParabolicSurface:
    """Paraboloid with independent curvatures along local x and y.

    Attributes
    ----------
    c1 : float
        Curvature coefficient along local x [1/m].
    c2 : float
        Curvature coefficient along local y [1/m].
    """

    c1: float
    c2: float

    surface_type: ClassVar[SurfaceType] = SurfaceType.PARABOLIC

    def __post_init__(self) -> None:
        if not (np.isfinite(self.c1) and np.isfinite(self.c2)):
            raise ConfigurationError(
                f"Parabolic curvatures must be finite, got ({self.c1}, {self.c2})"
            )

    def params(self) -> tuple[float, float]:
        return (float(self.c1), float(self.c2))

    def sag(self, x: np.ndarray | float, y: np.ndarray | float) -> np.ndarray | float:
        """Local z of the surface at local (x, y)."""
        return self.c1 * np.square(x) + self.c2 * np.square(y)

    def sag_range(self, half_x: float, half_y: float) -> tuple[float, float]:
        """Exact (min, max) sag over the box |x| ≤ half_x, |y| ≤ half_y.

        Each term is monotonic in |x| or |y|, so its extremes sit at 0 or
        at the box edge; the two terms are independent.
        """
        term_x = self.c1 * half_x * half_x
        term_y = self.c2 * half_y * half_y
        z_min = min(0.0, term_x) + min(0.0, term_y)
        z_max = max(0.0, term_x) + max(0.0, term_y)
        return z_min, z_max

    @property
    def focal_length_x(self) -> float:
        """Focal length along x, 1 / (4·c1) (inf for zero curvature)."""
        return np.inf if self.c1 == 0.0 else 1.0 / (4.0 * self.c1)


@dataclass(frozen=True)
class CylinderSurface:
    """Finite cylindrical shell about the local z axis.

    Attributes
    ----------
    radius : float
        Shell radius [m].
    half_height : float
        Half of the shell length along local z [m].
    """

    radius: float = 1.0
    half_height: float = 1.0

    surface_type: ClassVar[SurfaceType] = SurfaceType.CYLINDER

    def __post_init__(self) -> None:
        if self.radius <= 0.0:
            raise ConfigurationError(f"Cylinder radius must be > 0, got {self.radius}")
        if self.half_height <= 0.0:
            raise ConfigurationError(
                f"Cylinder half_height must be > 0, got {self.half_height}"
            )

    def params(self) -> tuple[float, float]:
        return (float(self.radius), float(self.half_height))


Surface = Union[FlatSurface, ParabolicSurface, CylinderSurface]


# ---------------------------------------------------------------------------
# Apertures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RectangleAperture:
    """Axis-aligned rectangle centered on the local origin.

    Attributes
    ----------
    dim_x : float
        Full width along local x [m].
    dim_y : float
        Full height along local y [m].
    """

    dim_x: float
    dim_y: float

    aperture_type: ClassVar[ApertureType] = ApertureType.RECTANGLE

    def __post_init__(self) -> None:
        if self.dim_x <= 0.0 or self.dim_y <= 0.0:
            raise ConfigurationError(
                f"Rectangle dimensions must be > 0, got ({self.dim_x}, {self.dim_y})"
            )

    def params(self) -> tuple[float, float]:
        return (float(self.dim_x), float(self.dim_y))

    def half_extents(self) -> tuple[float, float]:
        return 0.5 * self.dim_x, 0.5 * self.dim_y

    def contains(self, x: np.ndarray | float, y: np.ndarray | float) -> np.ndarray | bool:
        """Closed containment test in local (x, y)."""
        return (np.abs(x) <= 0.5 * self.dim_x) & (np.abs(y) <= 0.5 * self.dim_y)


@dataclass(frozen=True)
class CircleAperture:
    """Disk centered on the local origin.

    Attributes
    ----------
    diameter : float
        Disk diameter [m].
    """

    diameter: float

    aperture_type: ClassVar[ApertureType] = ApertureType.CIRCLE

    def __post_init__(self) -> None:
        if self.diameter <= 0.0:
            raise ConfigurationError(f"Circle diameter must be > 0, got {self.diameter}")

    def params(self) -> tuple[float, float]:
        return (float(self.diameter), 0.0)

    def half_extents(self) -> tuple[float, float]:
        r = 0.5 * self.diameter
        return r, r

    def contains(self, x: np.ndarray | float, y: np.ndarray | float) -> np.ndarray | bool:
        r = 0.5 * self.diameter
        return np.square(x) + np.square(y) <= r * r


Aperture = Union[RectangleAperture, CircleAperture]


# ---------------------------------------------------------------------------
# Record codecs
# ---------------------------------------------------------------------------


def surface_from_params(surface_type: int, params: tuple[float, float]) -> Surface:
    """Rebuild a surface from its engine-record tag and parameters."""
    tag = SurfaceType(surface_type)
    if tag is SurfaceType.FLAT:
        return FlatSurface()
    if tag is SurfaceType.PARABOLIC:
        return ParabolicSurface(c1=params[0], c2=params[1])
    if tag is SurfaceType.CYLINDER:
        return CylinderSurface(radius=params[0], half_height=params[1])
    raise ConfigurationError(f"Unhandled surface type: {tag!r}")


def aperture_from_params(aperture_type: int, params: tuple[float, float]) -> Aperture:
    """Rebuild an aperture from its engine-record tag and parameters."""
    tag = ApertureType(aperture_type)
    if tag is ApertureType.RECTANGLE:
        return RectangleAperture(dim_x=params[0], dim_y=params[1])
    if tag is ApertureType.CIRCLE:
        return CircleAperture(diameter=params[0])
    raise ConfigurationError(f"Unhandled aperture type: {tag!r}")
