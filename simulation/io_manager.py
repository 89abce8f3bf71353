"""Data I/O manager — persist traced hit points and scene summaries.

Writes the flat hit-point record list and the scene summary so figures
can be re-rendered without re-tracing.

File layout under output_dir/:
    hit_points.csv               — number,stage,loc_x,loc_y,loc_z (1-based)
    hit_points_frame_<n>.csv     — same, one file per frame (multi-frame runs)
    summary.json                 — scene summary (element count, sun, hits)

Numbers and stages in the CSV are 1-based; the in-memory records use a
0-based ray index.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import numpy as np

from core_engine.scene import HIT_RECORD_DTYPE

logger = logging.getLogger(__name__)

CSV_HEADER = "number,stage,loc_x,loc_y,loc_z"


def write_hit_points_csv(path: Path | str, records: np.ndarray) -> Path:
    """Write hit-point records to CSV.

    Parameters
    ----------
    path : Path or str
        Output file (parent directory created if needed).
    records : np.ndarray
        Structured array with ``HIT_RECORD_DTYPE`` fields, as returned by
        ``Scene.hit_point_records()``.

    Returns
    -------
    Path
        The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    table = np.empty((records.shape[0], 5), dtype=np.float64)
    table[:, 0] = records["ray_index"] + 1
    table[:, 1] = records["stage"]
    table[:, 2] = records["x"]
    table[:, 3] = records["y"]
    table[:, 4] = records["z"]

    np.savetxt(
        path,
        table,
        delimiter=",",
        header=CSV_HEADER,
        comments="",
        fmt=["%d", "%d", "%.9g", "%.9g", "%.9g"],
    )

    if records.shape[0] == 0:
        logger.warning("No hit points to write; %s contains only the header", path)
    else:
        logger.info("Saved %d hit points to %s", records.shape[0], path)
    return path


def load_hit_points_csv(path: Path | str) -> np.ndarray:
    """Load a hit-point CSV back into ``HIT_RECORD_DTYPE`` records.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Hit-point file not found: {path}")

    table = np.loadtxt(path, delimiter=",", skiprows=1, ndmin=2)
    records = np.empty(table.shape[0], dtype=HIT_RECORD_DTYPE)
    if table.shape[0]:
        records["ray_index"] = table[:, 0].astype(np.int64) - 1
        records["stage"] = table[:, 1].astype(np.int64)
        records["x"] = table[:, 2]
        records["y"] = table[:, 3]
        records["z"] = table[:, 4]

    logger.debug("Loaded %d hit points from %s", records.shape[0], path)
    return records


def write_summary_json(path: Path | str, summary: dict) -> Path:
    """Write a scene summary (``Scene.summary()``) as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(_sanitize_for_json(summary), f, indent=2, ensure_ascii=False)

    logger.info("Saved scene summary to %s", path)
    return path


def load_summary_json(path: Path | str) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Summary file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_results(
    output_dir: Path | str,
    records: np.ndarray,
    summary: dict,
    frame: int | None = None,
    write_json: bool = True,
) -> list[Path]:
    """Save one run's hit points (and optionally its summary).

    Parameters
    ----------
    output_dir : Path or str
        Output directory (created if needed).
    records : np.ndarray
        Hit-point records of the run.
    summary : dict
        Scene summary of the run.
    frame : int, optional
        Frame number; selects ``hit_points_frame_<n>.csv`` and
        ``summary_frame_<n>.json`` instead of the single-run names.
    write_json : bool
        Also write the summary JSON.

    Returns
    -------
    list[Path]
        Paths to all saved files.
    """
    output_dir = Path(output_dir)
    suffix = "" if frame is None else f"_frame_{frame}"

    saved = [write_hit_points_csv(output_dir / f"hit_points{suffix}.csv", records)]
    if write_json:
        saved.append(write_summary_json(output_dir / f"summary{suffix}.json", summary))
    return saved


def load_results(output_dir: Path | str, frame: int | None = None) -> dict:
    """Load hit points and summary written by ``save_results``.

    Returns
    -------
    dict
        Keys: 'records', 'summary' (empty dict if no JSON was written).
    """
    output_dir = Path(output_dir)
    if not output_dir.exists():
        raise FileNotFoundError(f"Output directory not found: {output_dir}")

    suffix = "" if frame is None else f"_frame_{frame}"
    data: dict = {"records": load_hit_points_csv(output_dir / f"hit_points{suffix}.csv")}

    summary_path = output_dir / f"summary{suffix}.json"
    if summary_path.exists():
        data["summary"] = load_summary_json(summary_path)
    else:
        logger.warning("Missing file: %s", summary_path)
        data["summary"] = {}
    return data


def _sanitize_for_json(obj: object) -> object:
    """Recursively convert NumPy types and other non-JSON types to Python natives."""
    if isinstance(obj, dict):
        return {k: _sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize_for_json(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    return obj
