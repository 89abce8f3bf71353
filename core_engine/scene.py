"""Scene controller — owns the elements and drives the tracing lifecycle.

The scene is the "conductor" that connects the element geometry, the
sun model and a tracing engine:

    Uninitialized ──initialize()──▶ Initialized ──clean_up()──▶ CleanedUp
                                     │   ▲
                               run() │   │ update()
                                     ▼   │
                              (results) ─┘

- ``initialize()`` validates the element set and caches every element's
  geometry plus the aggregate scene box.
- ``run()`` samples sun rays, hands a record snapshot to the engine and
  stores the returned hit sequences.
- ``update()`` recomputes invalidated element geometry and drops the
  previous results; it does not re-run ``initialize()``. Adding an
  element after ``initialize()`` returns the scene to Uninitialized.
- ``clean_up()`` releases engine resources and is terminal.

Element order is the engine-facing object index and is preserved
exactly as registered.
"""

from __future__ import annotations

import enum
import logging

import numpy as np

from core_engine.constants import SimulationConfig
from core_engine.element import Element
from core_engine.engine import SceneRecord, SunParameters, TraceResult, TracingEngine
from core_engine.exceptions import (
    ConfigurationError,
    EngineError,
    InvalidScene,
    NotInitialized,
)
from core_engine.geometry import BoundingBox
from core_engine.raytracer import CpuTracingEngine
from core_engine.solar_disk import (
    DEFAULT_SUN_HALF_ANGLE_RAD,
    SAMPLING_METHODS,
    normalize_sun_vector,
    sample_ray_directions,
)

logger = logging.getLogger(__name__)

HIT_RECORD_DTYPE = np.dtype([
    ("ray_index", np.int64),
    ("stage", np.int64),
    ("x", np.float64),
    ("y", np.float64),
    ("z", np.float64),
])


class SceneState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    CLEANED_UP = "cleaned_up"


class Scene:
    """Ordered collection of elements plus sun parameters.

    Parameters
    ----------
    num_rays : int
        Rays traced per ``run()``.
    engine : TracingEngine, optional
        Tracing backend. Defaults to ``CpuTracingEngine()``.
    sun_vector : array-like
        Direction toward the sun (normalized on set).
    sun_angle : float
        Angular half-width of the solar disk [rad]; 0 = collimated.
    sampling_method : str
        Solar disk sampling pattern ('random' or 'fibonacci').
    seed : int, optional
        Seed for sun sampling and engine-side draws.
    receiver_tolerance : float
        Distance within which a terminal hit counts as on a receiver [m].

    Raises
    ------
    ConfigurationError
        If ``num_rays`` < 1, ``sampling_method`` is unknown or
        ``sun_angle`` is negative.
    """

    def __init__(
        self,
        num_rays: int,
        engine: TracingEngine | None = None,
        sun_vector=(0.0, 0.0, 1.0),
        sun_angle: float = DEFAULT_SUN_HALF_ANGLE_RAD,
        sampling_method: str = "random",
        seed: int | None = None,
        receiver_tolerance: float = 1e-5,
    ) -> None:
        if int(num_rays) < 1:
            raise ConfigurationError(f"num_rays must be >= 1, got {num_rays}")
        self._num_rays = int(num_rays)
        if sampling_method not in SAMPLING_METHODS:
            raise ConfigurationError(
                f"sampling_method must be one of {SAMPLING_METHODS}, got {sampling_method!r}"
            )
        self._engine = engine if engine is not None else CpuTracingEngine()
        self._sampling_method = sampling_method
        self._rng = np.random.default_rng(seed)
        self._receiver_tolerance = float(receiver_tolerance)

        self._elements: list[Element] = []
        self._sun_vector = normalize_sun_vector(sun_vector)
        self._sun_angle = 0.0
        self.set_sun_angle(sun_angle)

        self._state = SceneState.UNINITIALIZED
        self._scene_bounds: BoundingBox | None = None
        self._handle: int | None = None
        self._results: TraceResult | None = None
        self._frame = 0

    @classmethod
    def from_config(
        cls,
        config: SimulationConfig,
        engine: TracingEngine | None = None,
        num_rays: int | None = None,
    ) -> Scene:
        """Build a scene (and a CPU engine, unless given) from configuration."""
        if engine is None:
            engine = CpuTracingEngine(
                max_depth=config.tracer.max_depth,
                epsilon=config.tracer.epsilon,
                min_distance=config.tracer.min_distance,
            )
        return cls(
            num_rays=config.scene.num_rays if num_rays is None else num_rays,
            engine=engine,
            sun_vector=config.sun.vector,
            sun_angle=config.sun.angle_rad,
            sampling_method=config.sun.sampling_method,
            seed=config.sun.seed,
            receiver_tolerance=config.scene.receiver_tolerance,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> SceneState:
        return self._state

    @property
    def elements(self) -> tuple[Element, ...]:
        return tuple(self._elements)

    @property
    def num_rays(self) -> int:
        return self._num_rays

    @property
    def engine(self) -> TracingEngine:
        return self._engine

    @property
    def sun_vector(self) -> np.ndarray:
        return self._sun_vector.copy()

    @property
    def sun_angle(self) -> float:
        return self._sun_angle

    @property
    def frame(self) -> int:
        """Number of ``update()`` calls since ``initialize()``."""
        return self._frame

    @property
    def scene_bounds(self) -> BoundingBox:
        """Aggregate bounding box cached at ``initialize()``/``update()``."""
        self._require_initialized("scene_bounds")
        return self._scene_bounds

    @property
    def has_results(self) -> bool:
        return self._results is not None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add_element(self, element: Element) -> int:
        """Append ``element``; returns its engine-facing index.

        Raises
        ------
        ConfigurationError
            If the element is already registered here or in another scene.
        NotInitialized
            If the scene has been cleaned up.
        """
        if self._state is SceneState.CLEANED_UP:
            raise NotInitialized("Cannot add elements to a cleaned-up scene")
        if not isinstance(element, Element):
            raise TypeError(f"Expected an Element, got {type(element).__name__}")
        if element.owner is self:
            raise ConfigurationError(f"{element.name} is already registered in this scene")
        if element.owner is not None:
            raise ConfigurationError(f"{element.name} is owned by another scene")

        element._register(self)
        self._elements.append(element)
        index = len(self._elements) - 1

        if self._state is SceneState.INITIALIZED:
            logger.warning(
                "Element set changed after initialize(); re-initialize before run()"
            )
            self._state = SceneState.UNINITIALIZED
            self._results = None

        logger.debug("Added %s at index %d (receiver=%s)", element.name, index, element.receiver)
        return index

    def set_sun_vector(self, sun_vector) -> None:
        """Set the direction toward the sun; effective from the next run()."""
        self._sun_vector = normalize_sun_vector(sun_vector)

    def set_sun_angle(self, sun_angle: float) -> None:
        """Set the solar disk half-width [rad]; effective from the next run()."""
        sun_angle = float(sun_angle)
        if sun_angle < 0.0 or not np.isfinite(sun_angle):
            raise ConfigurationError(f"Sun angle must be finite and >= 0, got {sun_angle}")
        self._sun_angle = sun_angle

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _require_initialized(self, operation: str) -> None:
        if self._state is SceneState.CLEANED_UP:
            raise NotInitialized(f"{operation}() called after clean_up()")
        if self._state is not SceneState.INITIALIZED:
            raise NotInitialized(f"{operation}() requires initialize() first")

    def initialize(self) -> None:
        """Validate the element set and cache all derived geometry.

        Raises
        ------
        InvalidScene
            No elements, or no receiver-flagged element.
        ConfigurationError
            An element is missing its surface or aperture.
        DegenerateDirection
            An element's aim point coincides with its origin.
        NotInitialized
            The scene has been cleaned up.
        """
        if self._state is SceneState.CLEANED_UP:
            raise NotInitialized("initialize() called after clean_up()")
        if not self._elements:
            raise InvalidScene("Scene has no elements")
        if not any(e.receiver for e in self._elements):
            raise InvalidScene("Scene has no receiver-flagged element")

        for element in self._elements:
            element.validate()
        for element in self._elements:
            element.update_geometry()

        self._scene_bounds = BoundingBox.union([e.bounding_box for e in self._elements])
        self._results = None
        self._frame = 0
        self._state = SceneState.INITIALIZED

        logger.info(
            "Scene initialized: %d elements (%d receivers), bounds=[%s, %s]",
            len(self._elements),
            sum(1 for e in self._elements if e.receiver),
            np.array2string(self._scene_bounds.lower, precision=3),
            np.array2string(self._scene_bounds.upper, precision=3),
        )

    def _snapshot(self) -> tuple[list[SceneRecord], BoundingBox]:
        records = [e.to_record() for e in self._elements]
        bounds = BoundingBox.union([e.bounding_box for e in self._elements])
        return records, bounds

    def run(self) -> TraceResult:
        """Trace ``num_rays`` sun rays through the current scene.

        Returns
        -------
        TraceResult
            One hit sequence per ray (possibly empty).

        Raises
        ------
        NotInitialized
            The scene is not initialized.
        EngineError
            The engine failed or returned malformed results. Not retried.
        """
        self._require_initialized("run")

        records, bounds = self._snapshot()
        directions = sample_ray_directions(
            self._sun_vector,
            self._sun_angle,
            self._num_rays,
            method=self._sampling_method,
            rng=self._rng,
        )
        sun_params = SunParameters(
            vector=self._sun_vector.copy(),
            half_angle_rad=self._sun_angle,
            ray_directions=directions,
            scene_bounds=bounds,
            seed=int(self._rng.integers(0, 2**32)),
        )

        self._results = None
        try:
            if self._handle is not None:
                handle, self._handle = self._handle, None
                self._engine.teardown(handle)
            self._handle = self._engine.submit_scene(records, sun_params, self._num_rays)
            result = self._engine.trace(self._handle)
        except EngineError:
            logger.error("Tracing engine failed (frame %d)", self._frame)
            raise
        except Exception as exc:
            raise EngineError(f"Tracing engine failed: {exc}") from exc

        if not isinstance(result, TraceResult):
            raise EngineError(
                f"Engine returned {type(result).__name__}, expected TraceResult"
            )
        try:
            result.validate(self._num_rays)
        except ValueError as exc:
            raise EngineError(f"Malformed engine result: {exc}") from exc

        self._results = result
        logger.info(
            "Run complete (frame %d): %d rays, %d with hits",
            self._frame, result.ray_count, int(np.count_nonzero(result.num_hits)),
        )
        return result

    def update(self) -> None:
        """Apply placement/sun changes and drop the previous results.

        Recomputes geometry for every element whose inputs changed and
        refreshes the aggregate scene box. Does not re-validate the
        element set; call ``initialize()`` after adding elements.
        """
        self._require_initialized("update")

        refreshed = 0
        for element in self._elements:
            if element.is_stale:
                element.update_geometry()
                refreshed += 1

        self._scene_bounds = BoundingBox.union([e.bounding_box for e in self._elements])
        self._results = None
        self._frame += 1

        logger.info(
            "Scene updated (frame %d): %d element(s) recomputed, sun=(%.4f, %.4f, %.4f)",
            self._frame, refreshed, *self._sun_vector,
        )

    def clean_up(self) -> None:
        """Release engine resources. Idempotent and terminal."""
        if self._state is SceneState.CLEANED_UP:
            return
        handle, self._handle = self._handle, None
        self._results = None
        self._state = SceneState.CLEANED_UP
        for element in self._elements:
            element._release()
        if handle is not None:
            self._engine.teardown(handle)
        logger.info("Scene cleaned up")

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _require_results(self, operation: str) -> TraceResult:
        if self._state is SceneState.CLEANED_UP:
            raise NotInitialized(f"{operation}() called after clean_up()")
        if self._results is None:
            raise NotInitialized(f"{operation}() requires results from run()")
        return self._results

    @property
    def results(self) -> TraceResult:
        """Hit sequences of the last ``run()``."""
        return self._require_results("results")

    def get_hit_points(self) -> list[np.ndarray]:
        """Per-ray hit sequences of the last ``run()``, in ray order."""
        return self._require_results("get_hit_points").sequences()

    def receiver_hit_mask(self) -> np.ndarray:
        """Per-ray flag: terminal hit lies on a receiver, inside its aperture."""
        result = self._require_results("receiver_hit_mask")
        mask = np.zeros(result.ray_count, dtype=bool)
        ray_indices, points = result.final_points()
        if ray_indices.size == 0:
            return mask

        on_receiver = np.zeros(ray_indices.size, dtype=bool)
        for element in self._elements:
            if element.receiver:
                on_receiver |= element.contains_hit(points, self._receiver_tolerance)
        mask[ray_indices] = on_receiver
        return mask

    def get_num_hits_receiver(self) -> int:
        """Number of rays whose terminal hit lands on a receiver aperture."""
        return int(self.receiver_hit_mask().sum())

    def hit_point_records(self) -> np.ndarray:
        """Flat hit list in ray/bounce order.

        Returns
        -------
        np.ndarray
            Structured array with fields ``ray_index`` (0-based),
            ``stage`` (1-based bounce number), ``x``, ``y``, ``z``.
        """
        result = self._require_results("hit_point_records")
        ray_idx, stage_idx = np.nonzero(
            np.arange(result.max_depth)[None, :] < result.num_hits[:, None]
        )
        records = np.empty(ray_idx.size, dtype=HIT_RECORD_DTYPE)
        records["ray_index"] = ray_idx
        records["stage"] = stage_idx + 1
        pts = result.hit_points[ray_idx, stage_idx]
        records["x"] = pts[:, 0]
        records["y"] = pts[:, 1]
        records["z"] = pts[:, 2]
        return records

    def summary(self) -> dict:
        """Scene summary for output writers."""
        receiver_hits = self.get_num_hits_receiver() if self._results is not None else None
        return {
            "num_elements": len(self._elements),
            "num_receivers": sum(1 for e in self._elements if e.receiver),
            "elements": [e.name for e in self._elements],
            "num_rays": self._num_rays,
            "sun_vector": self._sun_vector.tolist(),
            "sun_angle_rad": self._sun_angle,
            "sampling_method": self._sampling_method,
            "frame": self._frame,
            "receiver_hits": receiver_hits,
        }
