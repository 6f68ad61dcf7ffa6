# src/pixel_phenology/fitting/ensemble.py
"""
Ensemble fitting: perturbed restarts of the single-fit solver, aggregated into
one robust parameter set per series, with an optional weighted second pass.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .core import DLParams, InsufficientObservations, NonConvergent, PhenologyFitError, rmse
from .preprocessing import filter_cycle_contamination, initial_guess
from .settings import PhenologyFitSettings
from .solver import _project, fit_double_logistic


@dataclass(frozen=True)
class EnsembleFit:
    params: DLParams
    n_runs: int
    n_converged: int
    runs: tuple  # converged per-run DLParams, in run order
    second_pass: bool = False


def perturb_guess(
    guess: DLParams,
    rng: np.random.Generator,
    perturbation: float,
    slope_perturbation: float,
) -> DLParams:
    """
    Multiplicative uniform perturbation: p * (1 + U(-f, f)).

    f = perturbation for mn, mx, sos, eos; slope_perturbation for rsp, rau.
    Bounds are not applied here (the solver clips the start point).
    """
    p = float(perturbation)
    sp = float(slope_perturbation)
    u = rng.uniform(-1.0, 1.0, size=6)
    mn = guess.mn * (1.0 + p * u[0])
    mx = guess.mx * (1.0 + p * u[1])
    if mx <= mn:
        mx = mn + 0.1
    return DLParams(
        mn=mn,
        mx=mx,
        sos=guess.sos * (1.0 + p * u[2]),
        rsp=guess.rsp * (1.0 + sp * u[3]),
        eos=guess.eos * (1.0 + p * u[4]),
        rau=guess.rau * (1.0 + sp * u[5]),
    )


def _aggregate(runs: list[DLParams], settings: PhenologyFitSettings) -> DLParams:
    if settings.ensemble_aggregate == "best":
        return min(runs, key=lambda p: p.rmse)
    # Median in optimizer space keeps delta >= 0 and the season-length range.
    stacked = np.vstack([p.as_opt_array() for p in runs])
    med = np.median(stacked, axis=0)
    return DLParams.from_opt_array(_project(med, settings.bounds, settings.slope_symmetry))


def second_pass_weights(
    first: DLParams,
    t: np.ndarray,
    weight_min: float,
    weight_max: float,
) -> np.ndarray:
    """
    Observation weights from the first-pass curve: linear in the curve's
    relative height, weight_min at the baseline and weight_max at the peak.
    """
    t = np.asarray(t, dtype=float)
    amp = first.mx - first.mn
    if not np.isfinite(amp) or amp <= 0.0:
        return np.full(t.shape, float(weight_max))
    rel = np.clip((first.evaluate(t) - first.mn) / amp, 0.0, 1.0)
    return float(weight_min) + (float(weight_max) - float(weight_min)) * rel


def _run_ensemble(
    t: np.ndarray,
    y: np.ndarray,
    guess: DLParams,
    settings: PhenologyFitSettings,
    rng: np.random.Generator,
    n_runs: int,
    weights: Optional[np.ndarray] = None,
) -> list[DLParams]:
    runs: list[DLParams] = []
    for i in range(int(n_runs)):
        start = guess if i == 0 else perturb_guess(guess, rng, settings.perturbation, settings.slope_perturbation)
        try:
            runs.append(fit_double_logistic(t, y, start, settings, weights=weights))
        except NonConvergent:
            continue
    return runs


def ensemble_fit(
    t: np.ndarray,
    y: np.ndarray,
    settings: PhenologyFitSettings,
    *,
    rng: np.random.Generator,
    initial: Optional[DLParams] = None,
    n_runs: Optional[int] = None,
) -> EnsembleFit:
    """
    Robust fit of one series.

    Run 0 starts from the baseline guess (initial, or one derived from the
    series); the remaining runs start from perturbed copies of it. Runs that
    fail to converge are dropped; the survivors are combined per component
    by median (or the lowest-RMSE run with ensemble_aggregate="best").

    With enable_second_pass, the ensemble is repeated with peak-weighted
    observations starting from the first-pass result; it replaces the first
    pass unless every weighted run fails. RMSE is always unweighted.

    Raises InsufficientObservations, or NonConvergent when every run fails.
    """
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    mask = np.isfinite(t) & np.isfinite(y)
    t = t[mask]
    y = y[mask]
    if y.size < int(settings.min_observations):
        raise InsufficientObservations(int(y.size), int(settings.min_observations))

    n = int(settings.ensemble_runs if n_runs is None else n_runs)
    guess = initial if initial is not None else initial_guess(t, y)

    runs = _run_ensemble(t, y, guess, settings, rng, n)
    if not runs:
        raise NonConvergent(f"all {n} ensemble runs failed to converge")
    first = _aggregate(runs, settings)
    first = first.with_rmse(rmse(first, t, y))

    if not settings.enable_second_pass:
        return EnsembleFit(params=first, n_runs=n, n_converged=len(runs), runs=tuple(runs))

    w = second_pass_weights(first, t, settings.second_pass_weight_min, settings.second_pass_weight_max)
    runs2 = _run_ensemble(t, y, first, settings, rng, n, weights=w)
    if not runs2:
        return EnsembleFit(params=first, n_runs=n, n_converged=len(runs), runs=tuple(runs))
    second = _aggregate(runs2, settings)
    second = second.with_rmse(rmse(second, t, y))
    return EnsembleFit(
        params=second,
        n_runs=n,
        n_converged=len(runs2),
        runs=tuple(runs2),
        second_pass=True,
    )


def fit_pixel_series(
    t: np.ndarray,
    y: np.ndarray,
    settings: PhenologyFitSettings,
    rng: np.random.Generator,
    initial: Optional[DLParams] = None,
) -> tuple[Optional[DLParams], int, Optional[PhenologyFitError]]:
    """
    Fit one pixel and never raise on data problems.

    Returns (params or None, n_valid_obs, error or None). n_valid_obs is the
    raw valid count; only that count decides InsufficientObservations. A series
    that the cycle-contamination filter trims below min_observations is
    reported as NonConvergent.
    """
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    mask = np.isfinite(t) & np.isfinite(y)
    t = t[mask]
    y = y[mask]
    n_valid = int(y.size)
    if n_valid < int(settings.min_observations):
        return None, n_valid, InsufficientObservations(n_valid, int(settings.min_observations))
    if settings.filter_cycle_contamination:
        t, y = filter_cycle_contamination(t, y)
    try:
        fit = ensemble_fit(t, y, settings, rng=rng, initial=initial)
    except InsufficientObservations as e:
        return None, n_valid, NonConvergent(
            f"{e.n_valid} of {n_valid} observations left after cycle-contamination filter"
        )
    except PhenologyFitError as e:
        return None, n_valid, e
    return fit.params, n_valid, None
