# src/pixel_phenology/summary.py
"""
Read-only aggregate views over a PixelPhenologyResult, plus tabular / JSON outputs.

Input: PixelPhenologyResult (and the ObservationGrid it was fit from, for the
       composite series). Nothing here modifies the result.
Output: per-pixel CSV, parameter uncertainty CSV, composite series CSV and a
        single phenology_summary__{run_id}.json (counts + median fit + manifest).
"""
from __future__ import annotations

import hashlib
import json
import math
import subprocess
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .fitting.core import DL_PARAM_NAMES, REJECTION_CODES, FitQuality
from .fitting.preprocessing import ObservationGrid
from .fitting.result import PixelPhenology, PixelPhenologyResult


class PhenologyParameter(str, Enum):
    MN = "mn"
    MX = "mx"
    SOS = "sos"
    RSP = "rsp"
    EOS = "eos"
    RAU = "rau"
    DELTA = "delta"
    SEASON_LENGTH = "season_length"
    RMSE = "rmse"


def _param_value(px: PixelPhenology, parameter: PhenologyParameter) -> float:
    return float(getattr(px.params, parameter.value))


def parameter_map(result: PixelPhenologyResult, parameter: str | PhenologyParameter) -> np.ndarray:
    """(height, width) float map of one parameter; NaN where the pixel is not good."""
    p = PhenologyParameter(parameter)
    out = np.full((result.height, result.width), np.nan, dtype=float)
    for px in result.with_quality(FitQuality.GOOD):
        out[px.row, px.col] = _param_value(px, p)
    return out


def rejection_reason_map(result: PixelPhenologyResult) -> np.ndarray:
    """(height, width) map: good=0, poor=1, outlier=2, skipped=3, NaN outside AOI."""
    out = np.full((result.height, result.width), np.nan, dtype=float)
    for px in result:
        out[px.row, px.col] = float(REJECTION_CODES[px.fit_quality])
    return out


def parameter_uncertainty(
    result: PixelPhenologyResult,
    parameters: Sequence[str | PhenologyParameter] = DL_PARAM_NAMES,
) -> pd.DataFrame:
    """
    Spatial spread of each parameter across good pixels.

    Quartiles are index-based on the sorted values: q1 = v[n // 4],
    q3 = v[min(n - 1, 3n // 4)], iqr = q3 - q1. Fewer than 3 good pixels
    gives an empty frame.
    """
    cols = ["parameter", "median", "iqr"]
    good = result.with_quality(FitQuality.GOOD)
    if len(good) < 3:
        return pd.DataFrame(columns=cols)

    rows: List[Dict[str, Any]] = []
    for name in parameters:
        p = PhenologyParameter(name)
        v = np.array([_param_value(px, p) for px in good], dtype=float)
        v = np.sort(v[np.isfinite(v)])
        n = int(v.size)
        if n < 3:
            continue
        q1 = float(v[n // 4])
        q3 = float(v[min(n - 1, 3 * n // 4)])
        rows.append({"parameter": p.value, "median": float(np.median(v)), "iqr": q3 - q1})
    return pd.DataFrame(rows, columns=cols)


def _frame_medians(grid: ObservationGrid, mask: np.ndarray) -> pd.DataFrame:
    med = np.full(grid.n_frames, np.nan, dtype=float)
    n_pix = np.zeros(grid.n_frames, dtype=int)
    for i in range(grid.n_frames):
        v = grid.values[i][mask]
        v = v[np.isfinite(v)]
        n_pix[i] = int(v.size)
        if v.size > 0:
            med[i] = float(np.median(v))
    return pd.DataFrame({"t": np.asarray(grid.times, dtype=float), "median": med, "n_pixels": n_pix})


def composite_series(grid: ObservationGrid) -> pd.DataFrame:
    """Per-frame median over all AOI pixels (t, median, n_pixels); NaN where a frame has no valid sample."""
    return _frame_medians(grid, grid.aoi_mask)


def filtered_composite_series(result: PixelPhenologyResult, grid: ObservationGrid) -> pd.DataFrame:
    """Same as composite_series, restricted to good pixels of result."""
    if (result.height, result.width) != (grid.height, grid.width):
        raise ValueError(
            f"result grid {result.height}x{result.width} does not match observations {grid.height}x{grid.width}"
        )
    mask = np.zeros((grid.height, grid.width), dtype=bool)
    for px in result.with_quality(FitQuality.GOOD):
        mask[px.row, px.col] = True
    return _frame_medians(grid, mask)


def quality_counts(result: PixelPhenologyResult) -> Dict[str, int]:
    out = {q.value: result.count(q) for q in FitQuality}
    out["total"] = len(result)
    return out


def _dominant_z(z: Optional[dict]) -> Optional[str]:
    if not z:
        return None
    finite = {k: v for k, v in z.items() if v is not None and np.isfinite(v)}
    if not finite:
        return None
    return max(finite, key=lambda k: finite[k])


def result_to_frame(result: PixelPhenologyResult) -> pd.DataFrame:
    """One row per AOI pixel, in (row, col) order."""
    rows: List[Dict[str, Any]] = []
    for px in result:
        p = px.params
        d = px.rejection_detail
        rows.append(
            {
                "row": px.row,
                "col": px.col,
                "fit_quality": px.fit_quality.value,
                "n_valid_obs": px.n_valid_obs,
                "mn": p.mn,
                "mx": p.mx,
                "sos": p.sos,
                "rsp": p.rsp,
                "eos": p.eos,
                "rau": p.rau,
                "delta": p.delta,
                "season_length": p.season_length,
                "rmse": p.rmse,
                "rejection_reason": d.human_readable if d is not None else "",
                "cluster_distance": d.cluster_distance if d is not None else np.nan,
                "dominant_z_param": _dominant_z(d.param_z_scores) if d is not None else None,
            }
        )
    cols = [
        "row", "col", "fit_quality", "n_valid_obs",
        "mn", "mx", "sos", "rsp", "eos", "rau", "delta", "season_length", "rmse",
        "rejection_reason", "cluster_distance", "dominant_z_param",
    ]
    return pd.DataFrame(rows, columns=cols)


def _file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def _git_commit(repo_root: Optional[Path] = None) -> Optional[str]:
    try:
        root = Path(repo_root or Path.cwd())
        out = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=5,
        )
        if out.returncode == 0 and out.stdout.strip():
            return out.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass
    return None


def build_run_manifest_dict(
    run_id: str,
    input_paths: List[Path],
    *,
    git_root: Optional[Path] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build manifest dict (run_id, timestamp, git commit, input file hashes/mtime/size).
    """
    input_paths = [Path(p) for p in input_paths]
    manifest: Dict[str, Any] = {
        "run_id": run_id,
        "timestamp_iso": datetime.now(timezone.utc).isoformat(),
        "git_commit": _git_commit(git_root),
        "input_files": [],
    }
    for p in input_paths:
        if not p.is_file():
            manifest["input_files"].append({"path": str(p), "error": "file not found"})
            continue
        stat = p.stat()
        manifest["input_files"].append({
            "path": str(p.resolve()),
            "sha256": _file_sha256(p),
            "mtime_iso": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            "size_bytes": stat.st_size,
        })
    if extra:
        manifest["extra"] = extra
    return manifest


def _clean_for_json(obj: Any) -> Any:
    """Recursively replace float/numpy NaN/Inf with None so JSON is valid."""
    if isinstance(obj, dict):
        return {k: _clean_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_clean_for_json(x) for x in obj]
    if hasattr(obj, "item"):  # numpy scalar
        try:
            obj = obj.item()
        except (ValueError, AttributeError, TypeError):
            pass
    if isinstance(obj, float) and (math.isnan(obj) or math.isinf(obj)):
        return None
    return obj


def build_summary_dict(
    result: PixelPhenologyResult,
    run_id: str,
    *,
    settings: Optional[Dict[str, Any]] = None,
    manifest: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    unc = parameter_uncertainty(result)
    out: Dict[str, Any] = {
        "run_id": run_id,
        "grid": {"width": result.width, "height": result.height},
        "counts": quality_counts(result),
        "compute_time_seconds": result.compute_time_seconds,
        "median_fit": result.median_fit.to_dict() if result.median_fit is not None else None,
        "parameter_uncertainty": unc.to_dict(orient="records"),
    }
    if settings is not None:
        out["settings"] = settings
    if manifest is not None:
        out["manifest"] = manifest
    return _clean_for_json(out)


def write_result_outputs(
    result: PixelPhenologyResult,
    out_dir: Path,
    run_id: str,
    *,
    grid: Optional[ObservationGrid] = None,
    settings: Optional[Dict[str, Any]] = None,
    input_paths_for_manifest: Optional[List[Path]] = None,
    git_root: Optional[Path] = None,
) -> Path:
    """
    Write per-run outputs into out_dir:

      - pixels__{run_id}.csv                (result_to_frame)
      - parameter_uncertainty__{run_id}.csv
      - composite_series__{run_id}.csv      (only with grid: all AOI vs good-only medians)
      - phenology_summary__{run_id}.json

    Returns path to the JSON summary.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    result_to_frame(result).to_csv(out_dir / f"pixels__{run_id}.csv", index=False)
    parameter_uncertainty(result).to_csv(out_dir / f"parameter_uncertainty__{run_id}.csv", index=False)

    if grid is not None:
        allc = composite_series(grid)
        filt = filtered_composite_series(result, grid)
        comp = allc.rename(columns={"median": "median_all", "n_pixels": "n_pixels_all"})
        comp["median_good"] = filt["median"].to_numpy()
        comp["n_pixels_good"] = filt["n_pixels"].to_numpy()
        comp.to_csv(out_dir / f"composite_series__{run_id}.csv", index=False)

    manifest = build_run_manifest_dict(run_id, input_paths_for_manifest or [], git_root=git_root)
    summary = build_summary_dict(result, run_id, settings=settings, manifest=manifest)
    out_path = out_dir / f"phenology_summary__{run_id}.json"
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2, ensure_ascii=False)
    return out_path
