"""Tests for element orientation and bounding-box geometry."""

from __future__ import annotations

import numpy as np
import pytest

from core_engine.exceptions import DegenerateDirection
from core_engine.geometry import (
    BoundingBox,
    aim_direction,
    compute_bounding_box,
    compute_orientation,
    euler_angles_from_rotation,
    global_to_local,
    is_orthonormal,
    local_extremal_points,
    local_to_global,
    rotation_from_direction,
    rotation_from_euler_angles,
)
from core_engine.surfaces import (
    CircleAperture,
    CylinderSurface,
    FlatSurface,
    ParabolicSurface,
    RectangleAperture,
)


# ===================================================================
# FIXTURES
# ===================================================================


@pytest.fixture
def random_placements() -> list[tuple[np.ndarray, np.ndarray, float]]:
    """(origin, aim_point, zrot) triples, seeded."""
    rng = np.random.default_rng(2024)
    placements = []
    for _ in range(200):
        origin = rng.uniform(-50.0, 50.0, 3)
        aim = origin + rng.normal(size=3) * rng.uniform(0.1, 100.0)
        placements.append((origin, aim, float(rng.uniform(-360.0, 360.0))))
    return placements


# ===================================================================
# ORIENTATION
# ===================================================================


class TestOrientation:
    """Rotation matrix from aim direction plus twist."""

    def test_orthonormal_for_random_placements(
        self, random_placements: list[tuple[np.ndarray, np.ndarray, float]]
    ) -> None:
        for origin, aim, zrot in random_placements:
            rotation, _ = compute_orientation(origin, aim, zrot)
            assert is_orthonormal(rotation, 1e-9), f"Not orthonormal for aim={aim}"

    def test_third_column_is_aim_direction(
        self, random_placements: list[tuple[np.ndarray, np.ndarray, float]]
    ) -> None:
        for origin, aim, zrot in random_placements:
            rotation, _ = compute_orientation(origin, aim, zrot)
            expected = (aim - origin) / np.linalg.norm(aim - origin)
            np.testing.assert_allclose(rotation[:, 2], expected, atol=1e-12)

    def test_aim_straight_up(self) -> None:
        rotation, _ = compute_orientation(np.zeros(3), np.array([0.0, 0.0, 10.0]), 0.0)
        np.testing.assert_allclose(rotation[:, 2], [0.0, 0.0, 1.0], atol=1e-15)
        np.testing.assert_allclose(rotation, np.eye(3), atol=1e-15)

    def test_twist_rotates_local_axes(self) -> None:
        rotation = rotation_from_direction(np.array([0.0, 0.0, 1.0]), 90.0)
        np.testing.assert_allclose(rotation[:, 0], [0.0, 1.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(rotation[:, 1], [-1.0, 0.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(rotation[:, 2], [0.0, 0.0, 1.0], atol=1e-12)

    def test_idempotent(self) -> None:
        origin = np.array([1.0, -2.0, 3.0])
        aim = np.array([-4.0, 7.5, 20.0])
        r1, e1 = compute_orientation(origin, aim, 33.0)
        r2, e2 = compute_orientation(origin, aim, 33.0)
        np.testing.assert_allclose(r1, r2, atol=1e-15)
        np.testing.assert_allclose(e1, e2, atol=1e-15)

    def test_coincident_points_raise(self) -> None:
        with pytest.raises(DegenerateDirection):
            aim_direction(np.ones(3), np.ones(3))

    def test_zero_direction_raises(self) -> None:
        with pytest.raises(DegenerateDirection):
            rotation_from_direction(np.zeros(3))


class TestUpReferenceTieBreak:
    """Aim directions parallel to +y fall back to +z as the up reference."""

    def test_aim_along_plus_y(self) -> None:
        rotation = rotation_from_direction(np.array([0.0, 1.0, 0.0]))
        assert is_orthonormal(rotation)
        np.testing.assert_allclose(rotation[:, 0], [-1.0, 0.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(rotation[:, 1], [0.0, 0.0, 1.0], atol=1e-12)
        np.testing.assert_allclose(rotation[:, 2], [0.0, 1.0, 0.0], atol=1e-12)

    def test_aim_along_minus_y(self) -> None:
        rotation = rotation_from_direction(np.array([0.0, -1.0, 0.0]))
        assert is_orthonormal(rotation)
        np.testing.assert_allclose(rotation[:, 0], [1.0, 0.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(rotation[:, 1], [0.0, 0.0, 1.0], atol=1e-12)

    def test_nearly_parallel_stays_orthonormal(self) -> None:
        d = np.array([1e-11, 1.0, 0.0])
        d /= np.linalg.norm(d)
        assert is_orthonormal(rotation_from_direction(d, 12.0))

    def test_just_outside_tolerance_uses_plus_y(self) -> None:
        d = np.array([0.0, 1.0, 1e-3])
        d /= np.linalg.norm(d)
        rotation = rotation_from_direction(d)
        assert is_orthonormal(rotation)
        # up = +y gives x₀ = ŷ × d ∝ +x
        assert rotation[0, 0] > 0.99


class TestEulerAngles:
    """α, β, γ read back from R; R_y(α) · R_x(−β) · R_z(γ) rebuilds R."""

    @staticmethod
    def _angles(aim: list[float], zrot: float) -> tuple[np.ndarray, np.ndarray]:
        return compute_orientation(np.zeros(3), np.array(aim), zrot)

    def test_along_z(self) -> None:
        _, angles = self._angles([0.0, 0.0, 1.0], 0.0)
        np.testing.assert_allclose(angles, [0.0, 0.0, 0.0], atol=1e-15)

    def test_along_x_with_twist(self) -> None:
        _, angles = self._angles([1.0, 0.0, 0.0], 180.0)
        np.testing.assert_allclose(angles, [np.pi / 2, 0.0, np.pi], atol=1e-12)

    def test_matches_direction_formula_off_axis(self) -> None:
        d = np.array([3.0, -2.0, 5.0]) / np.linalg.norm([3.0, -2.0, 5.0])
        _, angles = self._angles(d.tolist(), 25.0)
        assert angles[0] == pytest.approx(np.arctan2(d[0], d[2]))
        assert angles[1] == pytest.approx(np.arcsin(d[1]))

    def test_along_plus_y_agrees_with_matrix(self) -> None:
        rotation, angles = self._angles([0.0, 5.0, 0.0], 0.0)
        np.testing.assert_allclose(angles, [np.pi, np.pi / 2, 0.0], atol=1e-12)
        np.testing.assert_allclose(rotation_from_euler_angles(angles), rotation, atol=1e-12)

    def test_along_minus_y_agrees_with_matrix(self) -> None:
        rotation, angles = self._angles([0.0, -5.0, 0.0], 0.0)
        np.testing.assert_allclose(angles, [0.0, -np.pi / 2, 0.0], atol=1e-12)
        np.testing.assert_allclose(rotation_from_euler_angles(angles), rotation, atol=1e-12)

    @pytest.mark.parametrize(
        "aim, zrot",
        [
            ([0.0, 0.0, 1.0], 0.0),
            ([1.0, 2.0, 3.0], 40.0),
            ([-4.0, 1.0, -2.0], -75.0),
            ([0.0, -17.36068, 94.72136], -90.0),
            ([0.0, 1.0, 0.0], 30.0),
            ([0.0, -1.0, 0.0], 200.0),
        ],
    )
    def test_angles_rebuild_rotation(self, aim: list[float], zrot: float) -> None:
        rotation, angles = self._angles(aim, zrot)
        np.testing.assert_allclose(rotation_from_euler_angles(angles), rotation, atol=1e-12)
        np.testing.assert_allclose(
            euler_angles_from_rotation(rotation, zrot), angles, atol=1e-15
        )


class TestFrameTransforms:

    def test_local_global_inverse(self) -> None:
        rotation, _ = compute_orientation(np.array([2.0, 3.0, 4.0]), np.array([-1.0, 9.0, 0.5]), 17.0)
        origin = np.array([2.0, 3.0, 4.0])
        pts = np.random.default_rng(1).normal(size=(20, 3))
        back = global_to_local(local_to_global(pts, rotation, origin), rotation, origin)
        np.testing.assert_allclose(back, pts, atol=1e-12)


# ===================================================================
# BOUNDING BOXES
# ===================================================================


class TestBoundingBox:
    """Conservative AABBs of placed surface/aperture pairs."""

    def test_flat_rectangle_facing_up(self) -> None:
        box = compute_bounding_box(FlatSurface(), RectangleAperture(2.0, 4.0), np.eye(3), np.zeros(3))
        np.testing.assert_allclose(box.lower, [-1.0, -2.0, 0.0])
        np.testing.assert_allclose(box.upper, [1.0, 2.0, 0.0])

    def test_parabolic_sag_included(self) -> None:
        box = compute_bounding_box(
            ParabolicSurface(0.05, 0.05), RectangleAperture(1.0, 1.0), np.eye(3), np.zeros(3)
        )
        assert box.lower[2] == pytest.approx(0.0)
        assert box.upper[2] == pytest.approx(0.025)

    def test_saddle_paraboloid_spans_both_signs(self) -> None:
        box = compute_bounding_box(
            ParabolicSurface(0.1, -0.2), RectangleAperture(2.0, 2.0), np.eye(3), np.zeros(3)
        )
        assert box.lower[2] == pytest.approx(-0.2)
        assert box.upper[2] == pytest.approx(0.1)

    def test_cylinder_footprint_clamped_to_radius(self) -> None:
        box = compute_bounding_box(
            CylinderSurface(radius=1.0, half_height=2.0),
            RectangleAperture(4.0, 4.0),
            np.eye(3),
            np.array([0.0, 0.0, 5.0]),
        )
        np.testing.assert_allclose(box.lower, [-1.0, -1.0, 3.0])
        np.testing.assert_allclose(box.upper, [1.0, 1.0, 7.0])

    def test_circle_aperture_uses_bounding_square(self) -> None:
        box = compute_bounding_box(FlatSurface(), CircleAperture(3.0), np.eye(3), np.zeros(3))
        np.testing.assert_allclose(box.upper[:2], [1.5, 1.5])

    @pytest.mark.parametrize(
        "surface",
        [FlatSurface(), ParabolicSurface(0.3, -0.1), CylinderSurface(0.5, 1.5)],
    )
    def test_contains_extremal_points(
        self,
        surface,
        random_placements: list[tuple[np.ndarray, np.ndarray, float]],
    ) -> None:
        aperture = RectangleAperture(1.5, 2.5)
        for origin, aim, zrot in random_placements[:50]:
            rotation, _ = compute_orientation(origin, aim, zrot)
            box = compute_bounding_box(surface, aperture, rotation, origin)
            assert np.all(box.upper >= box.lower)
            pts = local_to_global(local_extremal_points(surface, aperture), rotation, origin)
            assert np.all(box.contains(pts, tolerance=1e-9))

    def test_contains_sampled_surface_points(self) -> None:
        surface = ParabolicSurface(0.2, 0.4)
        aperture = RectangleAperture(2.0, 1.0)
        origin = np.array([3.0, -1.0, 2.0])
        rotation, _ = compute_orientation(origin, np.array([10.0, 4.0, 9.0]), 45.0)

        rng = np.random.default_rng(5)
        x = rng.uniform(-1.0, 1.0, 500)
        y = rng.uniform(-0.5, 0.5, 500)
        local = np.column_stack([x, y, surface.sag(x, y)])

        box = compute_bounding_box(surface, aperture, rotation, origin)
        assert np.all(box.contains(local_to_global(local, rotation, origin), tolerance=1e-9))

    def test_union(self) -> None:
        a = BoundingBox(np.array([0.0, 0.0, 0.0]), np.array([1.0, 1.0, 1.0]))
        b = BoundingBox(np.array([-2.0, 0.5, 0.0]), np.array([0.0, 3.0, 0.5]))
        u = BoundingBox.union([a, b])
        np.testing.assert_allclose(u.lower, [-2.0, 0.0, 0.0])
        np.testing.assert_allclose(u.upper, [1.0, 3.0, 1.0])
        assert u.corners().shape == (8, 3)
