"""Pytest configuration and shared fixtures for Heliotrace tests."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest


# Add project root to path so imports work
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core_engine.element import Element  # noqa: E402
from core_engine.engine import TraceResult, TracingEngine  # noqa: E402
from core_engine.scene import Scene  # noqa: E402
from core_engine.surfaces import FlatSurface, ParabolicSurface, RectangleAperture  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s [%(levelname)s] %(message)s",
    )


# ===================================================================
# STUB ENGINE
# ===================================================================


class StubEngine(TracingEngine):
    """Deterministic in-memory engine.

    Even-numbered rays hit the first element's origin and then the first
    receiver's origin; odd-numbered rays miss.

    Parameters
    ----------
    fail_with : Exception, optional
        Raised from ``trace()``.
    drop_rays : int
        Return this many fewer ray sequences than requested.
    """

    def __init__(self, fail_with: Exception | None = None, drop_rays: int = 0) -> None:
        self.max_depth = 3
        self.fail_with = fail_with
        self.drop_rays = drop_rays
        self.submissions: list[tuple] = []
        self.torn_down: list[int] = []
        self._next = 0
        self._live: dict[int, tuple] = {}

    def submit_scene(self, records, sun_params, ray_count) -> int:
        self._next += 1
        self._live[self._next] = (records, sun_params, ray_count)
        self.submissions.append((records, sun_params, ray_count))
        return self._next

    def trace(self, handle: int) -> TraceResult:
        if self.fail_with is not None:
            raise self.fail_with
        records, _, ray_count = self._live[handle]
        n = ray_count - self.drop_rays
        receiver_index = next(i for i, r in enumerate(records) if r.receiver)

        hit_points = np.full((n, self.max_depth, 3), np.nan)
        hit_elements = np.full((n, self.max_depth), -1, dtype=np.int64)
        num_hits = np.zeros(n, dtype=np.int64)
        hit_points[0::2, 0] = records[0].origin
        hit_points[0::2, 1] = records[receiver_index].origin
        hit_elements[0::2, 0] = 0
        hit_elements[0::2, 1] = receiver_index
        num_hits[0::2] = 2
        return TraceResult(hit_points=hit_points, num_hits=num_hits, hit_elements=hit_elements)

    def teardown(self, handle: int) -> None:
        del self._live[handle]
        self.torn_down.append(handle)


# ===================================================================
# FIXTURES
# ===================================================================


@pytest.fixture
def stub_engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def mirror() -> Element:
    """Parabolic 1 m × 1 m dish at the origin facing +z."""
    return Element(
        origin=(0.0, 0.0, 0.0),
        aim_point=(0.0, 0.0, 10.0),
        surface=ParabolicSurface(0.05, 0.05),
        aperture=RectangleAperture(1.0, 1.0),
        name="mirror",
    )


@pytest.fixture
def receiver() -> Element:
    """Flat 0.4 m × 0.4 m receiver at z = 8 facing down."""
    return Element(
        origin=(0.0, 0.0, 8.0),
        aim_point=(0.0, 0.0, -1.0),
        surface=FlatSurface(),
        aperture=RectangleAperture(0.4, 0.4),
        receiver=True,
        name="receiver",
    )


@pytest.fixture
def stub_scene(stub_engine: StubEngine, mirror: Element, receiver: Element) -> Scene:
    """Mirror + receiver scene on the stub engine (10 rays)."""
    scene = Scene(num_rays=10, engine=stub_engine, seed=3)
    scene.add_element(mirror)
    scene.add_element(receiver)
    return scene
