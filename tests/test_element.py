"""Tests for Element cached geometry, point queries and record export."""

from __future__ import annotations

import numpy as np
import pytest

from core_engine.element import Element
from core_engine.engine import bounding_box_from_record
from core_engine.exceptions import ConfigurationError, DegenerateDirection
from core_engine.geometry import is_orthonormal
from core_engine.surfaces import (
    CircleAperture,
    CylinderSurface,
    FlatSurface,
    ParabolicSurface,
    RectangleAperture,
    SurfaceType,
)


@pytest.fixture
def flat_element() -> Element:
    """Flat 2 m × 4 m element at the origin facing +z."""
    return Element(
        origin=(0.0, 0.0, 0.0),
        aim_point=(0.0, 0.0, 10.0),
        surface=FlatSurface(),
        aperture=RectangleAperture(2.0, 4.0),
    )


class TestDerivedState:
    """Setters invalidate; accessors never return stale geometry."""

    def test_new_element_is_stale(self, flat_element: Element) -> None:
        assert flat_element.is_stale

    def test_update_geometry_clears_stale(self, flat_element: Element) -> None:
        flat_element.update_geometry()
        assert not flat_element.is_stale
        np.testing.assert_allclose(flat_element.rotation_matrix[:, 2], [0.0, 0.0, 1.0])

    @pytest.mark.parametrize(
        "attr, value",
        [
            ("origin", (1.0, 2.0, 3.0)),
            ("aim_point", (5.0, 0.0, 5.0)),
            ("zrot", 45.0),
            ("surface", ParabolicSurface(0.1, 0.1)),
            ("aperture", CircleAperture(1.0)),
        ],
    )
    def test_setters_invalidate(self, flat_element: Element, attr: str, value) -> None:
        flat_element.update_geometry()
        setattr(flat_element, attr, value)
        assert flat_element.is_stale

    def test_optical_setters_do_not_invalidate(self, flat_element: Element) -> None:
        flat_element.update_geometry()
        flat_element.reflectivity = 0.9
        flat_element.slope_error = 1.5
        assert not flat_element.is_stale

    def test_query_after_move_reflects_new_inputs(self, flat_element: Element) -> None:
        box_before = flat_element.bounding_box
        flat_element.origin = (10.0, 0.0, 0.0)
        box_after = flat_element.bounding_box
        assert box_after.lower[0] == pytest.approx(box_before.lower[0] + 10.0)
        assert not flat_element.is_stale

    def test_reaim_changes_rotation(self, flat_element: Element) -> None:
        flat_element.aim_point = (10.0, 0.0, 0.0)
        np.testing.assert_allclose(flat_element.rotation_matrix[:, 2], [1.0, 0.0, 0.0], atol=1e-12)
        assert flat_element.euler_angles[0] == pytest.approx(np.pi / 2)

    def test_update_element_reaims_in_one_call(self, flat_element: Element) -> None:
        flat_element.update_element((0.0, 10.0, 10.0), 30.0)
        assert not flat_element.is_stale
        assert flat_element.zrot == 30.0
        rotation = flat_element.rotation_matrix
        assert is_orthonormal(rotation)
        np.testing.assert_allclose(rotation[:, 2], np.array([0.0, 1.0, 1.0]) / np.sqrt(2.0))

    def test_bounds_ordered(self, flat_element: Element) -> None:
        flat_element.aim_point = (3.0, -4.0, 1.0)
        flat_element.zrot = 20.0
        assert np.all(flat_element.upper_bounding_box >= flat_element.lower_bounding_box)

    def test_returned_arrays_are_copies(self, flat_element: Element) -> None:
        flat_element.origin[0] = 99.0
        assert flat_element.origin[0] == 0.0


class TestValidation:

    def test_missing_surface(self) -> None:
        element = Element(aperture=RectangleAperture(1.0, 1.0))
        with pytest.raises(ConfigurationError):
            element.update_geometry()

    def test_missing_aperture(self) -> None:
        element = Element(surface=FlatSurface())
        with pytest.raises(ConfigurationError):
            element.validate()

    def test_degenerate_aim(self) -> None:
        element = Element(
            origin=(1.0, 1.0, 1.0),
            aim_point=(1.0, 1.0, 1.0),
            surface=FlatSurface(),
            aperture=RectangleAperture(1.0, 1.0),
        )
        with pytest.raises(DegenerateDirection):
            element.update_geometry()

    @pytest.mark.parametrize("attr", ["reflectivity", "transmissivity"])
    def test_coefficients_in_unit_interval(self, flat_element: Element, attr: str) -> None:
        with pytest.raises(ConfigurationError):
            setattr(flat_element, attr, 1.5)

    def test_negative_slope_error(self, flat_element: Element) -> None:
        with pytest.raises(ConfigurationError):
            flat_element.slope_error = -0.1

    def test_non_finite_origin(self, flat_element: Element) -> None:
        with pytest.raises(ConfigurationError):
            flat_element.origin = (np.inf, 0.0, 0.0)


class TestPointQueries:
    """in_plane / on_surface in the element's local frame."""

    def test_in_plane_rectangle_2x4(self, flat_element: Element) -> None:
        assert flat_element.in_plane(np.array([0.0, 0.0, 0.0]))
        assert not flat_element.in_plane(np.array([1.01, 0.0, 0.0]))
        assert not flat_element.in_plane(np.array([0.0, 2.01, 0.0]))

    def test_in_plane_ignores_height(self, flat_element: Element) -> None:
        assert flat_element.in_plane(np.array([0.5, 1.5, 7.0]))
        assert not flat_element.contains_hit(np.array([0.5, 1.5, 7.0]))

    def test_in_plane_uses_local_frame(self) -> None:
        # Facing +x: local x = ŷ × x̂ = −ẑ, local y = +ŷ
        element = Element(
            origin=(0.0, 0.0, 0.0),
            aim_point=(10.0, 0.0, 0.0),
            surface=FlatSurface(),
            aperture=RectangleAperture(2.0, 4.0),
        )
        local = element.to_local(np.array([0.0, 1.9, 0.9]))
        np.testing.assert_allclose(local, [-0.9, 1.9, 0.0], atol=1e-12)
        assert element.in_plane(np.array([0.0, 1.9, 0.9]))
        assert not element.in_plane(np.array([0.0, 2.1, 0.0]))
        assert not element.in_plane(np.array([0.0, 0.0, 1.1]))

    def test_parabolic_on_surface(self) -> None:
        element = Element(
            aim_point=(0.0, 0.0, 1.0),
            surface=ParabolicSurface(0.05, 0.05),
            aperture=RectangleAperture(1.0, 1.0),
        )
        pts = np.array([[0.4, 0.0, 0.008], [0.4, 0.0, 0.0]])
        np.testing.assert_array_equal(element.contains_hit(pts, 1e-9), [True, False])

    def test_cylinder_on_surface(self) -> None:
        element = Element(
            surface=CylinderSurface(radius=1.0, half_height=1.0),
            aperture=RectangleAperture(4.0, 4.0),
        )
        pts = np.array([[1.0, 0.0, 0.5], [0.5, 0.0, 0.5], [1.0, 0.0, 1.5]])
        np.testing.assert_array_equal(element.on_surface(pts, 1e-9), [True, False, False])


class TestRecordExport:

    @pytest.mark.parametrize(
        "surface, aperture",
        [
            (FlatSurface(), RectangleAperture(2.0, 4.0)),
            (ParabolicSurface(0.0170679, 0.0370679), RectangleAperture(1.0, 1.95)),
            (CylinderSurface(0.5, 2.0), CircleAperture(3.0)),
        ],
    )
    def test_box_from_record_matches(self, surface, aperture) -> None:
        element = Element(
            origin=(0.0, 5.0, 0.0),
            aim_point=(0.0, -17.360680, 94.721360),
            zrot=-90.0,
            surface=surface,
            aperture=aperture,
        )
        box = bounding_box_from_record(element.to_record())
        np.testing.assert_allclose(box.lower, element.lower_bounding_box, atol=1e-12)
        np.testing.assert_allclose(box.upper, element.upper_bounding_box, atol=1e-12)

    def test_record_fields(self) -> None:
        element = Element(
            surface=ParabolicSurface(0.1, 0.2),
            aperture=RectangleAperture(1.0, 2.0),
            reflectivity=0.9,
            transmissivity=0.3,
            slope_error=0.5,
            receiver=True,
        )
        record = element.to_record()
        assert record.surface_type == SurfaceType.PARABOLIC
        assert record.surface_params == (0.1, 0.2)
        assert record.aperture_params == (1.0, 2.0)
        assert record.reflectivity == 0.9
        assert record.receiver is True
        np.testing.assert_allclose(record.rotation, element.rotation_matrix)

    def test_copy_is_independent(self, flat_element: Element) -> None:
        flat_element.receiver = True
        clone = flat_element.copy(name="clone")
        clone.origin = (0.0, 1.0, 7.5)
        assert clone.name == "clone"
        assert clone.receiver
        assert clone.owner is None
        np.testing.assert_allclose(flat_element.origin, [0.0, 0.0, 0.0])
        assert clone.surface == flat_element.surface

    def test_single_owner(self, flat_element: Element) -> None:
        owner = object()
        flat_element._register(owner)
        assert flat_element.owner is owner
        with pytest.raises(ConfigurationError):
            flat_element._register(object())
        flat_element._release()
        assert flat_element.owner is None
