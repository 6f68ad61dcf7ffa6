# src/pixel_phenology/fitting/outliers.py
"""
Spatially regularized robust outlier detection on per-pixel parameter grids.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .core import MAD_FLOOR, _median_and_mad

MIN_GOOD_PIXELS = 5

_NEIGHBOR_OFFSETS = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))


@dataclass(frozen=True)
class ClusterOutlierFlags:
    """
    Per-pixel arrays (height, width) from one filter pass.

    z_scores has shape (n_params, height, width). Arrays are 0/False outside
    the good mask.
    """

    medians: np.ndarray
    mads: np.ndarray
    z_scores: np.ndarray
    distance: np.ndarray
    candidate: np.ndarray
    outlier: np.ndarray


def _shifted(a: np.ndarray, dr: int, dc: int) -> np.ndarray:
    """a shifted so out[r, c] = a[r + dr, c + dc], False/0 beyond the edge."""
    h, w = a.shape
    out = np.zeros_like(a)
    r0, r1 = max(0, -dr), min(h, h - dr)
    c0, c1 = max(0, -dc), min(w, w - dc)
    if r0 < r1 and c0 < c1:
        out[r0:r1, c0:c1] = a[r0 + dr : r1 + dr, c0 + dc : c1 + dc]
    return out


def neighbor_support(good: np.ndarray, candidate: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    8-connected neighbour counts per pixel.

    Returns (n_good_neighbors, n_good_non_candidate_neighbors).
    """
    good = np.asarray(good, dtype=bool)
    calm = good & ~np.asarray(candidate, dtype=bool)
    total = np.zeros(good.shape, dtype=int)
    calm_n = np.zeros(good.shape, dtype=int)
    for dr, dc in _NEIGHBOR_OFFSETS:
        total += _shifted(good, dr, dc)
        calm_n += _shifted(calm, dr, dc)
    return total, calm_n


def cluster_outlier_flags(
    values: np.ndarray,
    good: np.ndarray,
    threshold: float = 4.0,
    spatial_rescue_fraction: float = 0.5,
    mad_floor: float = MAD_FLOOR,
) -> ClusterOutlierFlags:
    """
    Two-phase robust outlier pass.

    Phase 1 (whole grid): per-parameter median / MAD over good pixels,
    z_k = |v_k - median_k| / MAD_k, distance = RMS over parameters;
    distance > threshold marks a candidate.

    Phase 2 (whole grid, from phase-1 flags only): a candidate is rescued when
    the fraction of its good 8-neighbours that are not candidates is
    >= spatial_rescue_fraction. Candidates with no good neighbours stay
    outliers.

    values: (n_params, height, width), good: (height, width) bool.
    """
    values = np.asarray(values, dtype=float)
    good = np.asarray(good, dtype=bool)
    if values.ndim != 3 or values.shape[1:] != good.shape:
        raise ValueError(f"values {values.shape} and good mask {good.shape} do not line up")
    n_params = values.shape[0]

    medians = np.zeros(n_params)
    mads = np.zeros(n_params)
    for k in range(n_params):
        medians[k], mads[k] = _median_and_mad(values[k][good], floor=mad_floor)

    z = np.zeros(values.shape, dtype=float)
    for k in range(n_params):
        z[k] = np.where(good, np.abs(values[k] - medians[k]) / mads[k], 0.0)
    distance = np.where(good, np.sqrt(np.mean(z * z, axis=0)), 0.0)
    candidate = good & (distance > float(threshold))

    total, calm_n = neighbor_support(good, candidate)
    with np.errstate(invalid="ignore", divide="ignore"):
        frac = np.where(total > 0, calm_n / np.maximum(total, 1), 0.0)
    rescued = candidate & (total > 0) & (frac >= float(spatial_rescue_fraction))
    outlier = candidate & ~rescued

    return ClusterOutlierFlags(
        medians=medians,
        mads=mads,
        z_scores=z,
        distance=distance,
        candidate=candidate,
        outlier=outlier,
    )
