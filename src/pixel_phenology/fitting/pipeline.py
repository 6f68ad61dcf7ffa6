# src/pixel_phenology/fitting/pipeline.py
"""
Main pipeline: per-pixel ensemble fitting over an observation grid.
"""
from __future__ import annotations

import threading
import time
import warnings
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from typing import Callable, Optional

import numpy as np

from .core import DLParams, FitCancelled, FitQuality, InsufficientObservations, PhenologyFitError
from .ensemble import ensemble_fit, fit_pixel_series
from .preprocessing import ObservationGrid, filter_cycle_contamination, initial_guess
from .qc import classify_fit
from .result import PixelPhenology, PixelPhenologyResult
from .settings import PhenologyFitSettings

PROGRESS_EVERY = 50

# Stream key for the median fit; pixel streams use three-element keys (seed, row, col).
MEDIAN_STREAM_KEY = 2**32 - 1


def pixel_rng(seed: int, row: int, col: int) -> np.random.Generator:
    """Independent stream per pixel; results do not depend on scheduling order."""
    return np.random.default_rng([int(seed), int(row), int(col)])


def composite_values(grid: ObservationGrid) -> tuple[np.ndarray, np.ndarray]:
    """(t, per-frame median over AOI pixels) for frames with any valid AOI value."""
    t_out: list[float] = []
    y_out: list[float] = []
    for i in range(grid.n_frames):
        v = grid.values[i][grid.aoi_mask]
        v = v[np.isfinite(v)]
        if v.size == 0:
            continue
        t_out.append(float(grid.times[i]))
        y_out.append(float(np.median(v)))
    return np.asarray(t_out, dtype=float), np.asarray(y_out, dtype=float)


def fit_median_series(grid: ObservationGrid, settings: PhenologyFitSettings) -> Optional[DLParams]:
    """
    Ensemble fit of the AOI median series (the grid-level reference curve).

    Returns None when the composite series cannot be fit.
    """
    t, y = composite_values(grid)
    if settings.filter_cycle_contamination:
        t, y = filter_cycle_contamination(t, y)
    rng = np.random.default_rng([int(settings.random_seed), MEDIAN_STREAM_KEY])
    try:
        fit = ensemble_fit(t, y, settings, rng=rng, n_runs=settings.median_ensemble_runs)
    except PhenologyFitError as e:
        warnings.warn(f"median fit failed ({e}); pixels fall back to series-derived guesses", UserWarning)
        return None
    return fit.params


def fit_one_pixel(
    row: int,
    col: int,
    t: np.ndarray,
    y: np.ndarray,
    settings: PhenologyFitSettings,
    prior: Optional[DLParams] = None,
) -> PixelPhenology:
    """
    Fit and classify one pixel. Data problems become skipped / poor records.
    """
    rng = pixel_rng(settings.random_seed, row, col)
    start = prior if settings.initial_guess == "median_fit" else None
    params, n_valid, err = fit_pixel_series(t, y, settings, rng, initial=start)

    if params is None:
        placeholder = prior if prior is not None else initial_guess(t, y)
        if isinstance(err, InsufficientObservations):
            quality, detail = classify_fit(
                n_valid, None, min_observations=settings.min_observations, rmse_threshold=settings.rmse_threshold
            )
            return PixelPhenology(row, col, placeholder.with_rmse(float("nan")), n_valid, quality, detail)
        # every run non-convergent: treated as an unbounded RMSE
        params = placeholder.with_rmse(float("inf"))

    quality, detail = classify_fit(
        n_valid,
        params.rmse,
        min_observations=settings.min_observations,
        rmse_threshold=settings.rmse_threshold,
    )
    return PixelPhenology(row, col, params, n_valid, quality, detail)


def _fit_task(args: tuple) -> PixelPhenology:
    return fit_one_pixel(*args)


def fit_all_pixels(
    grid: ObservationGrid,
    settings: Optional[PhenologyFitSettings] = None,
    *,
    n_workers: int = 1,
    use_processes: bool = False,
    progress: Optional[Callable[[float], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> PixelPhenologyResult:
    """
    Fit every AOI pixel of grid.

    Steps:
      1. Median fit of the AOI composite series (grid-level reference, and the
         starting guess for every pixel when initial_guess="median_fit").
      2. Independent per-pixel ensemble fits + quality classification, serially
         or on a thread / process pool (n_workers > 1).

    cancel_event is polled between pixels; once set, pending work is dropped
    and FitCancelled is raised. progress receives the completed fraction.
    """
    settings = settings or PhenologyFitSettings()
    t0 = time.perf_counter()

    median_fit = fit_median_series(grid, settings)

    work = []
    for row, col in grid.iter_aoi_pixels():
        t, y = grid.pixel_series(row, col)
        work.append((row, col, t, y, settings, median_fit))
    total = len(work)

    def _check_cancel() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise FitCancelled(f"pixel fitting cancelled after {done} of {total} pixels")

    def _report() -> None:
        if progress is not None and total > 0 and (done % PROGRESS_EVERY == 0 or done == total):
            progress(done / total)

    pixels: dict[tuple[int, int], PixelPhenology] = {}
    done = 0
    if int(n_workers) <= 1:
        for item in work:
            _check_cancel()
            px = _fit_task(item)
            pixels[(px.row, px.col)] = px
            done += 1
            _report()
    else:
        pool_cls = ProcessPoolExecutor if use_processes else ThreadPoolExecutor
        executor: Executor = pool_cls(max_workers=int(n_workers))
        try:
            futures = [executor.submit(_fit_task, item) for item in work]
            for fut in as_completed(futures):
                _check_cancel()
                px = fut.result()
                pixels[(px.row, px.col)] = px
                done += 1
                _report()
        except BaseException:
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

    return PixelPhenologyResult(
        width=grid.width,
        height=grid.height,
        pixels=pixels,
        median_fit=median_fit,
        compute_time_seconds=time.perf_counter() - t0,
    )


def run_quality_control(
    result: PixelPhenologyResult,
    settings: PhenologyFitSettings,
    apply_cluster_filter: bool = True,
) -> PixelPhenologyResult:
    """Post-hoc QC with the configured thresholds (no refitting)."""
    out = result.reclassified(settings.rmse_threshold)
    if not apply_cluster_filter:
        return out
    if out.count(FitQuality.GOOD) < 5:
        warnings.warn(
            f"only {out.count(FitQuality.GOOD)} good pixels; spatial outlier filter skipped",
            UserWarning,
        )
        return out
    return out.cluster_filtered(
        threshold=settings.cluster_threshold,
        spatial_rescue_fraction=settings.spatial_rescue_fraction,
    )
