# src/pixel_phenology/fitting/solver.py
"""
Single-start constrained fit of the double logistic to one series.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
from scipy.optimize import least_squares

from .core import DLParams, InsufficientObservations, NonConvergent, rmse
from .settings import ParameterBounds, PhenologyFitSettings


# Typical step sizes in optimizer space [mn, delta, sos, rsp, season_length, rau]
_X_SCALE = np.array([0.1, 0.1, 20.0, 0.02, 20.0, 0.02])


def project_slope_symmetry(
    rsp: float,
    rau: float,
    symmetry_pct: Optional[float],
) -> tuple[float, float]:
    """
    Cap the relative rate difference |rsp - rau| / max(rsp, rau) at symmetry_pct.

    A violating pair is moved onto the cap, keeping (rsp + rau) / 2 fixed.
    """
    if symmetry_pct is None:
        return float(rsp), float(rau)
    cap = float(symmetry_pct) / 100.0
    hi = max(rsp, rau)
    lo = min(rsp, rau)
    if hi <= 0.0 or (hi - lo) / hi <= cap:
        return float(rsp), float(rau)
    mean = 0.5 * (rsp + rau)
    new_hi = 2.0 * mean / (2.0 - cap)
    new_lo = new_hi * (1.0 - cap)
    if rsp >= rau:
        return float(new_hi), float(new_lo)
    return float(new_lo), float(new_hi)


def _project(x: np.ndarray, bounds: ParameterBounds, symmetry_pct: Optional[float]) -> np.ndarray:
    x = bounds.clip(x)
    if symmetry_pct is None:
        return x
    rsp, rau = project_slope_symmetry(x[3], x[5], symmetry_pct)
    x[3] = min(max(rsp, bounds.rsp[0]), bounds.rsp[1])
    x[5] = min(max(rau, bounds.rau[0]), bounds.rau[1])
    return x


def baseline_rmse(y: np.ndarray) -> float:
    """RMSE of the constant-mean model (the trivial baseline a fit must beat)."""
    y = np.asarray(y, dtype=float)
    y = y[np.isfinite(y)]
    if y.size == 0:
        return float("inf")
    return float(np.sqrt(np.mean((y - float(np.mean(y))) ** 2)))


def fit_double_logistic(
    t: np.ndarray,
    y: np.ndarray,
    initial: DLParams,
    settings: PhenologyFitSettings,
    weights: Optional[np.ndarray] = None,
) -> DLParams:
    """
    Fit one series from one starting point.

    Trust-region reflective least squares with Huber loss in the
    reparameterized space [mn, delta, sos, rsp, season_length, rau], so the
    box constraints (and with them mx >= mn and the season-length range) hold
    at every iterate. The slope symmetry cap is applied by projection before
    each evaluation.

    weights (optional) scale squared residuals; the returned rmse is always
    unweighted.

    Raises:
      - InsufficientObservations: fewer than settings.min_observations valid points
      - NonConvergent: RMSE not finite or not below the constant-mean baseline
    """
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    if weights is None:
        w = np.ones_like(y)
    else:
        w = np.asarray(weights, dtype=float)
        if w.shape != y.shape:
            raise ValueError(f"weights shape {w.shape} does not match observations {y.shape}")
    mask = np.isfinite(t) & np.isfinite(y) & np.isfinite(w) & (w > 0)
    t = t[mask]
    y = y[mask]
    sqrt_w = np.sqrt(w[mask])

    n_valid = int(y.size)
    if n_valid < int(settings.min_observations):
        raise InsufficientObservations(n_valid, int(settings.min_observations))

    bounds = settings.bounds
    symmetry = settings.slope_symmetry
    x0 = _project(initial.as_opt_array(), bounds, symmetry)

    def _resid(x: np.ndarray) -> np.ndarray:
        p = DLParams.from_opt_array(_project(x, bounds, symmetry))
        return (p.evaluate(t) - y) * sqrt_w

    try:
        res = least_squares(
            _resid,
            x0,
            bounds=(bounds.lower, bounds.upper),
            method="trf",
            loss="huber",
            f_scale=float(settings.huber_delta),
            x_scale=_X_SCALE,
            max_nfev=int(settings.max_nfev),
        )
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
        raise NonConvergent(f"optimizer failed: {e}") from e

    x_best = _project(res.x, bounds, symmetry)
    fitted = DLParams.from_opt_array(x_best)
    fit_rmse = rmse(fitted, t, y)
    base = baseline_rmse(y)
    if not np.isfinite(fit_rmse) or not (fit_rmse < base):
        raise NonConvergent(
            f"fit RMSE {fit_rmse:.4g} did not improve on constant baseline {base:.4g} "
            f"(status={res.status}, nfev={res.nfev})"
        )
    return fitted.with_rmse(fit_rmse)
