"""Tests for surface and aperture variants."""

from __future__ import annotations

import numpy as np
import pytest

from core_engine.exceptions import ConfigurationError
from core_engine.surfaces import (
    ApertureType,
    CircleAperture,
    CylinderSurface,
    FlatSurface,
    ParabolicSurface,
    RectangleAperture,
    SurfaceType,
    aperture_from_params,
    surface_from_params,
)


class TestSurfaces:

    def test_type_tags(self) -> None:
        assert FlatSurface().surface_type is SurfaceType.FLAT
        assert ParabolicSurface(0.1, 0.2).surface_type is SurfaceType.PARABOLIC
        assert CylinderSurface(1.0, 2.0).surface_type is SurfaceType.CYLINDER

    def test_parabolic_sag(self) -> None:
        surface = ParabolicSurface(0.05, 0.1)
        assert surface.sag(0.0, 0.0) == 0.0
        assert surface.sag(2.0, 1.0) == pytest.approx(0.05 * 4.0 + 0.1)

    def test_parabolic_focal_length(self) -> None:
        assert ParabolicSurface(0.05, 0.05).focal_length_x == pytest.approx(5.0)
        assert np.isinf(ParabolicSurface(0.0, 0.05).focal_length_x)

    def test_parabolic_rejects_non_finite(self) -> None:
        with pytest.raises(ConfigurationError):
            ParabolicSurface(np.nan, 0.0)

    @pytest.mark.parametrize("radius, half_height", [(0.0, 1.0), (1.0, -1.0)])
    def test_cylinder_rejects_non_positive(self, radius: float, half_height: float) -> None:
        with pytest.raises(ConfigurationError):
            CylinderSurface(radius, half_height)

    def test_surfaces_are_immutable(self) -> None:
        surface = ParabolicSurface(0.1, 0.1)
        with pytest.raises(AttributeError):
            surface.c1 = 0.2

    def test_rebuild_from_record_params(self) -> None:
        for surface in (FlatSurface(), ParabolicSurface(0.1, -0.3), CylinderSurface(0.5, 2.0)):
            assert surface_from_params(int(surface.surface_type), surface.params()) == surface


class TestApertures:
    """Containment predicates in local (x, y)."""

    @pytest.fixture
    def rect(self) -> RectangleAperture:
        return RectangleAperture(2.0, 4.0)

    def test_rectangle_center_inside(self, rect: RectangleAperture) -> None:
        assert rect.contains(0.0, 0.0)

    def test_rectangle_just_outside(self, rect: RectangleAperture) -> None:
        assert not rect.contains(1.01, 0.0)
        assert not rect.contains(0.0, 2.01)

    def test_rectangle_edge_is_inside(self, rect: RectangleAperture) -> None:
        assert rect.contains(1.0, -2.0)

    def test_rectangle_vectorized(self, rect: RectangleAperture) -> None:
        x = np.array([0.0, 0.99, 1.5, -0.5])
        y = np.array([0.0, 1.99, 0.0, -2.5])
        np.testing.assert_array_equal(rect.contains(x, y), [True, True, False, False])

    def test_circle(self) -> None:
        circle = CircleAperture(2.0)
        assert circle.aperture_type is ApertureType.CIRCLE
        assert circle.contains(0.7, 0.7)
        assert not circle.contains(0.8, 0.8)
        assert circle.half_extents() == (1.0, 1.0)

    @pytest.mark.parametrize("dims", [(0.0, 1.0), (1.0, -2.0)])
    def test_rectangle_rejects_non_positive(self, dims: tuple[float, float]) -> None:
        with pytest.raises(ConfigurationError):
            RectangleAperture(*dims)

    def test_circle_rejects_non_positive(self) -> None:
        with pytest.raises(ConfigurationError):
            CircleAperture(0.0)

    def test_rebuild_from_record_params(self) -> None:
        for aperture in (RectangleAperture(1.0, 2.0), CircleAperture(3.0)):
            rebuilt = aperture_from_params(int(aperture.aperture_type), aperture.params())
            assert rebuilt == aperture
