"""Simulation Runner — multi-frame (time-varying) tracing loop.

Orchestrates a dynamic scene:
1. Initialize the scene (if not already initialized)
2. Frame loop: run() → record receiver hits → save hit points
3. Between frames: advance the sun vector and/or element poses, update()
4. Return per-frame results for plotting

Notes
-----
The sun vector is advanced additively in its un-normalized form,

    s_{k+1} = s_k + Δs

so a step of (0, 1, 0) on s_0 = (0, −20, 100) sweeps the sun across the
y-z plane. The scene normalizes the vector on every set.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from core_engine.scene import Scene, SceneState

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result Container
# ---------------------------------------------------------------------------


@dataclass
class FrameResult:
    """Outcome of one traced frame.

    Attributes
    ----------
    frame : int
        Frame number (0-based).
    sun_vector : np.ndarray
        Normalized sun vector used for the frame. Shape: (3,).
    receiver_hits : int
        Rays whose terminal hit landed on a receiver.
    num_hit_points : int
        Total recorded hit points over all rays.
    records : np.ndarray
        Hit-point records of the frame (``HIT_RECORD_DTYPE``).
    wall_time_s : float
        Wall time of the trace.
    """

    frame: int
    sun_vector: np.ndarray
    receiver_hits: int
    num_hit_points: int
    records: np.ndarray
    wall_time_s: float


@dataclass
class SimulationResults:
    """Container for multi-frame output.

    Attributes
    ----------
    frames : list[FrameResult]
        One entry per traced frame, in order.
    saved_files : list[Path]
        Files written during the run.
    metadata : dict
        Run metadata (frame count, rays per frame, timing).
    """

    frames: list[FrameResult] = field(default_factory=list)
    saved_files: list[Path] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def receiver_hits(self) -> list[int]:
        return [f.receiver_hits for f in self.frames]


# ---------------------------------------------------------------------------
# Simulation Runner
# ---------------------------------------------------------------------------


class SimulationRunner:
    """Drives ``run()``/``update()`` over a sequence of frames.

    Parameters
    ----------
    scene : Scene
        Scene with its elements registered.
    output_dir : Path or str
        Directory for per-frame CSV/JSON output.
    write_json : bool
        Also write a summary JSON per frame.
    """

    def __init__(
        self,
        scene: Scene,
        output_dir: Path | str = "output",
        write_json: bool = True,
    ) -> None:
        self._scene = scene
        self._output_dir = Path(output_dir)
        self._write_json = write_json

        logger.info(
            "SimulationRunner initialized: %d elements, %d rays/frame, output=%s",
            len(scene.elements), scene.num_rays, self._output_dir,
        )

    @property
    def scene(self) -> Scene:
        return self._scene

    def run(
        self,
        frames: int = 1,
        sun_vector=None,
        sun_step=None,
        on_frame: Callable[[Scene, int], None] | None = None,
        save_data: bool = True,
    ) -> SimulationResults:
        """Execute the frame loop.

        Parameters
        ----------
        frames : int
            Number of frames to trace, ≥ 1.
        sun_vector : array-like, optional
            Un-normalized starting sun vector. Default: the scene's.
        sun_step : array-like, optional
            Per-frame additive increment of the sun vector.
        on_frame : callable, optional
            ``on_frame(scene, next_frame)`` called between frames, before
            ``update()``; used to re-aim elements.
        save_data : bool
            Write ``hit_points_frame_<n>.csv`` (and JSON) per frame.

        Returns
        -------
        SimulationResults
            Per-frame results.
        """
        if frames < 1:
            raise ValueError(f"frames must be >= 1, got {frames}")

        scene = self._scene
        current_sun = np.asarray(
            scene.sun_vector if sun_vector is None else sun_vector, dtype=np.float64
        ).copy()
        step = None if sun_step is None else np.asarray(sun_step, dtype=np.float64)

        scene.set_sun_vector(current_sun)
        if scene.state is not SceneState.INITIALIZED:
            scene.initialize()

        results = SimulationResults(metadata={
            "frames": frames,
            "num_rays": scene.num_rays,
            "num_elements": len(scene.elements),
            "sun_step": None if step is None else step.tolist(),
        })

        logger.info("Running frame loop (%d frames)...", frames)
        wall_start = time.perf_counter()

        for frame_i in range(frames):
            t0 = time.perf_counter()
            scene.run()
            records = scene.hit_point_records()
            receiver_hits = scene.get_num_hits_receiver()
            elapsed = time.perf_counter() - t0

            results.frames.append(FrameResult(
                frame=frame_i,
                sun_vector=scene.sun_vector,
                receiver_hits=receiver_hits,
                num_hit_points=int(records.shape[0]),
                records=records,
                wall_time_s=elapsed,
            ))

            if save_data:
                from simulation.io_manager import save_results

                results.saved_files.extend(save_results(
                    self._output_dir,
                    records,
                    scene.summary(),
                    frame=frame_i,
                    write_json=self._write_json,
                ))

            logger.info(
                "  Frame %d/%d: receiver_hits=%d/%d, hit_points=%d (%.2fs)",
                frame_i + 1, frames, receiver_hits, scene.num_rays,
                records.shape[0], elapsed,
            )

            if frame_i == frames - 1:
                break

            if step is not None:
                current_sun = current_sun + step
                scene.set_sun_vector(current_sun)
            if on_frame is not None:
                on_frame(scene, frame_i + 1)
            scene.update()

        wall_elapsed = time.perf_counter() - wall_start
        results.metadata["wall_time_s"] = wall_elapsed

        logger.info(
            "Frame loop complete: %.1f seconds wall time (%.2f frames/s)",
            wall_elapsed,
            frames / wall_elapsed if wall_elapsed > 0 else float("inf"),
        )
        return results
