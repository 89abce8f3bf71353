"""Visualization module for traced hit points.

Generates figures using matplotlib:
- Hit-point scatter (global x-z / y-z projections, colored by bounce stage)
- Receiver flux map (terminal hits in the receiver's local frame)
- Receiver hits vs. frame for multi-frame runs
"""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")  # Non-interactive backend for headless rendering

import matplotlib.pyplot as plt
import numpy as np

from core_engine.element import Element

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Color Configuration
# ---------------------------------------------------------------------------

_STAGE_CMAP = "viridis"
_FLUX_CMAP = "inferno"
_FACE_COLOR = "#0f0f1a"
_DPI = 150


def _style_axes(ax: plt.Axes, title: str, xlabel: str, ylabel: str) -> None:
    ax.set_facecolor(_FACE_COLOR)
    ax.set_xlabel(xlabel, color="white")
    ax.set_ylabel(ylabel, color="white")
    ax.set_title(title, fontsize=12, fontweight="bold", color="white")
    ax.tick_params(colors="white")
    for spine in ax.spines.values():
        spine.set_edgecolor("#444")


def _save(fig: plt.Figure, output_path: Path | str | None, dpi: int, label: str) -> None:
    fig.tight_layout()
    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=dpi, facecolor=fig.get_facecolor())
        logger.info("%s saved: %s", label, output_path)
    plt.close(fig)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def plot_hit_points(
    records: np.ndarray,
    title: str = "Hit Points",
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Scatter all hit points in two global projections.

    Parameters
    ----------
    records : np.ndarray
        Hit-point records (``HIT_RECORD_DTYPE``).
    title : str
        Figure title.
    output_path : Path or str, optional
        If provided, save figure to this path.
    dpi : int
        Figure resolution.

    Returns
    -------
    matplotlib.figure.Figure
        The generated figure.
    """
    fig, axes = plt.subplots(1, 2, figsize=(14, 6), facecolor=_FACE_COLOR)

    stages = records["stage"] if records.shape[0] else np.array([1])
    vmax = max(int(stages.max()), 2)

    scatter = None
    for ax, (h, label) in zip(axes, [("x", "X [m]"), ("y", "Y [m]")]):
        scatter = ax.scatter(
            records[h], records["z"],
            c=records["stage"],
            cmap=_STAGE_CMAP,
            s=1.0,
            vmin=1,
            vmax=vmax,
            edgecolors="none",
            rasterized=True,
        )
        _style_axes(ax, f"{title} ({h}-z)", label, "Z [m]")
        ax.set_aspect("equal", adjustable="datalim")

    cbar = fig.colorbar(scatter, ax=axes, label="Bounce Stage", shrink=0.8)
    cbar.ax.yaxis.label.set_color("white")
    cbar.ax.tick_params(colors="white")

    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=dpi, facecolor=fig.get_facecolor())
        logger.info("Hit-point scatter saved: %s", output_path)
    plt.close(fig)
    return fig


def plot_receiver_flux(
    receiver: Element,
    points: np.ndarray,
    bins: int = 50,
    title: str = "Receiver Flux Map",
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """2-D histogram of hit points in a receiver's local (x, y) frame.

    Parameters
    ----------
    receiver : Element
        Receiver element; its aperture sets the histogram extent.
    points : np.ndarray
        Global hit points on the receiver. Shape: (M, 3).
    bins : int
        Histogram bins per axis.

    Returns
    -------
    matplotlib.figure.Figure
        The generated figure.
    """
    half_x, half_y = receiver.aperture.half_extents()
    local = receiver.to_local(np.asarray(points, dtype=np.float64).reshape(-1, 3))

    counts, x_edges, y_edges = np.histogram2d(
        local[:, 0], local[:, 1],
        bins=bins,
        range=[[-half_x, half_x], [-half_y, half_y]],
    )

    fig, ax = plt.subplots(1, 1, figsize=(8, 7), facecolor=_FACE_COLOR)
    mesh = ax.pcolormesh(x_edges, y_edges, counts.T, cmap=_FLUX_CMAP, shading="auto")

    cbar = fig.colorbar(mesh, ax=ax, label="Rays per Bin", shrink=0.8)
    cbar.ax.yaxis.label.set_color("white")
    cbar.ax.tick_params(colors="white")

    _style_axes(ax, f"{title} ({local.shape[0]} rays)", "Local X [m]", "Local Y [m]")
    ax.set_aspect("equal")

    _save(fig, output_path, dpi, "Receiver flux map")
    return fig


def plot_receiver_hits(
    receiver_hits: list[int],
    num_rays: int,
    title: str = "Receiver Hits vs. Frame",
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Plot the receiver hit fraction per frame."""
    fig, ax = plt.subplots(1, 1, figsize=(12, 4), facecolor=_FACE_COLOR)

    frames = np.arange(len(receiver_hits))
    fraction = np.asarray(receiver_hits, dtype=np.float64) / max(num_rays, 1)
    ax.plot(frames, fraction, color="#ffd43b", linewidth=2.0, marker="o", markersize=3)
    ax.fill_between(frames, fraction, 0, color="#ffd43b", alpha=0.15)
    ax.set_ylim(0.0, 1.05)
    ax.grid(True, alpha=0.2, color="white")

    _style_axes(ax, title, "Frame", "Receiver Hit Fraction")
    _save(fig, output_path, dpi, "Receiver hit plot")
    return fig


def generate_all_plots(
    scene,
    output_dir: Path | str = "output",
    receiver_hits: list[int] | None = None,
    dpi: int = _DPI,
) -> list[Path]:
    """Generate the standard plots for a scene's last run.

    Parameters
    ----------
    scene : Scene
        Scene holding results from ``run()``.
    output_dir : Path or str
        Directory for output plots.
    receiver_hits : list[int], optional
        Per-frame receiver hits of a multi-frame run.

    Returns
    -------
    list[Path]
        Paths to all generated plot files.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    saved: list[Path] = []

    records = scene.hit_point_records()
    p = output_dir / "hit_points.png"
    plot_hit_points(records, output_path=p, dpi=dpi)
    saved.append(p)

    result = scene.results
    ray_indices, final_points = result.final_points()
    for index, element in enumerate(scene.elements):
        if not element.receiver:
            continue
        last = result.num_hits[ray_indices] - 1
        on_element = result.hit_elements[ray_indices, last] == index
        p = output_dir / f"receiver_flux_{index}.png"
        plot_receiver_flux(
            element,
            final_points[on_element],
            title=f"Receiver Flux Map ({element.name})",
            output_path=p,
            dpi=dpi,
        )
        saved.append(p)

    if receiver_hits:
        p = output_dir / "receiver_hits.png"
        plot_receiver_hits(receiver_hits, scene.num_rays, output_path=p, dpi=dpi)
        saved.append(p)

    logger.info("Generated %d plots in %s", len(saved), output_dir)
    return saved
