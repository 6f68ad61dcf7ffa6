# src/pixel_phenology/fitting/settings.py
"""
Run configuration for per-pixel phenology fitting.

All values are read-only inputs to one fitting run. Invalid combinations raise
ValueError at construction time, before any per-pixel work starts.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping, Optional, Tuple

import numpy as np


Range = Tuple[float, float]

INITIAL_GUESS_MODES = ("series", "median_fit")
AGGREGATE_MODES = ("median", "best")


def _check_range(name: str, rng: Range) -> Range:
    try:
        lo, hi = (float(rng[0]), float(rng[1]))
    except (TypeError, IndexError, ValueError) as e:
        raise ValueError(f"bound {name} must be a (min, max) pair, got {rng!r}") from e
    if not (math.isfinite(lo) and math.isfinite(hi)):
        raise ValueError(f"bound {name} must be finite, got ({lo}, {hi})")
    if lo >= hi:
        raise ValueError(f"bound {name}: min ({lo}) must be < max ({hi})")
    return (lo, hi)


@dataclass(frozen=True)
class ParameterBounds:
    """
    Box constraints in optimizer space [mn, delta, sos, rsp, season_length, rau].

    delta = mx - mn and season_length = eos - sos, so mx >= mn and the season
    length range hold for every iterate.
    """

    mn: Range = (-0.5, 0.8)
    delta: Range = (0.05, 1.5)
    sos: Range = (1.0, 365.0)
    rsp: Range = (0.02, 0.6)
    season_length: Range = (50.0, 150.0)
    rau: Range = (0.02, 0.6)

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, _check_range(f.name, getattr(self, f.name)))
        if self.delta[0] < 0.0:
            raise ValueError("bound delta: min must be >= 0 (mx >= mn)")
        for name in ("rsp", "rau"):
            if getattr(self, name)[0] <= 0.0:
                raise ValueError(f"bound {name}: rates must be positive")

    @property
    def lower(self) -> np.ndarray:
        return np.array([self.mn[0], self.delta[0], self.sos[0], self.rsp[0], self.season_length[0], self.rau[0]])

    @property
    def upper(self) -> np.ndarray:
        return np.array([self.mn[1], self.delta[1], self.sos[1], self.rsp[1], self.season_length[1], self.rau[1]])

    def clip(self, x) -> np.ndarray:
        return np.clip(np.asarray(x, dtype=float), self.lower, self.upper)

    @classmethod
    def from_mapping(cls, obj: Optional[Mapping[str, Any]]) -> "ParameterBounds":
        if not obj:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(obj) - known)
        if unknown:
            raise ValueError(f"unknown parameter bounds: {unknown}")
        return cls(**{k: tuple(v) for k, v in obj.items()})


@dataclass(frozen=True)
class PhenologyFitSettings:
    # ensemble
    ensemble_runs: int = 5
    perturbation: float = 0.50
    slope_perturbation: float = 0.10
    ensemble_aggregate: str = "median"
    initial_guess: str = "series"
    median_ensemble_runs: int = 50
    random_seed: int = 0

    # solver
    max_nfev: int = 2000
    huber_delta: float = 0.10
    slope_symmetry: Optional[float] = 20.0  # percent; None disables
    bounds: ParameterBounds = field(default_factory=ParameterBounds)
    filter_cycle_contamination: bool = True

    # second pass
    enable_second_pass: bool = False
    second_pass_weight_min: float = 0.5
    second_pass_weight_max: float = 2.0

    # quality control
    min_observations: int = 4
    rmse_threshold: float = 0.10
    cluster_threshold: float = 4.0
    spatial_rescue_fraction: float = 0.5

    def __post_init__(self) -> None:
        if isinstance(self.bounds, Mapping):
            object.__setattr__(self, "bounds", ParameterBounds.from_mapping(self.bounds))
        if not isinstance(self.bounds, ParameterBounds):
            raise ValueError(f"bounds must be ParameterBounds, got {type(self.bounds).__name__}")

        if int(self.ensemble_runs) < 1:
            raise ValueError("ensemble_runs must be >= 1")
        if int(self.median_ensemble_runs) < 1:
            raise ValueError("median_ensemble_runs must be >= 1")
        if int(self.min_observations) < 1:
            raise ValueError("min_observations must be >= 1")
        if int(self.max_nfev) < 1:
            raise ValueError("max_nfev must be >= 1")
        for name in ("perturbation", "slope_perturbation"):
            v = float(getattr(self, name))
            if not (0.0 <= v < 1.0):
                raise ValueError(f"{name} must be in [0, 1), got {v}")
        if not (float(self.huber_delta) > 0.0):
            raise ValueError("huber_delta must be > 0")
        if self.slope_symmetry is not None and not (0.0 <= float(self.slope_symmetry) <= 100.0):
            raise ValueError("slope_symmetry must be a percentage in [0, 100] or None")
        if not (float(self.rmse_threshold) > 0.0):
            raise ValueError("rmse_threshold must be > 0")
        if not (float(self.cluster_threshold) > 0.0):
            raise ValueError("cluster_threshold must be > 0")
        if not (0.0 <= float(self.spatial_rescue_fraction) <= 1.0):
            raise ValueError("spatial_rescue_fraction must be in [0, 1]")
        wmin = float(self.second_pass_weight_min)
        wmax = float(self.second_pass_weight_max)
        if wmin <= 0.0 or wmin > wmax:
            raise ValueError(
                f"second pass weights must satisfy 0 < weight_min <= weight_max, got ({wmin}, {wmax})"
            )
        if self.initial_guess not in INITIAL_GUESS_MODES:
            raise ValueError(f"initial_guess must be one of {INITIAL_GUESS_MODES}")
        if self.ensemble_aggregate not in AGGREGATE_MODES:
            raise ValueError(f"ensemble_aggregate must be one of {AGGREGATE_MODES}")

    def with_overrides(self, **kwargs: Any) -> "PhenologyFitSettings":
        return replace(self, **kwargs)

    @classmethod
    def from_mapping(cls, obj: Optional[Mapping[str, Any]]) -> "PhenologyFitSettings":
        if not obj:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(obj) - known)
        if unknown:
            raise ValueError(f"unknown phenology settings: {unknown}")
        kwargs = dict(obj)
        if "bounds" in kwargs:
            kwargs["bounds"] = ParameterBounds.from_mapping(kwargs["bounds"])
        return cls(**kwargs)

    def to_dict(self) -> dict:
        out = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "bounds"}
        out["bounds"] = {f.name: list(getattr(self.bounds, f.name)) for f in fields(self.bounds)}
        return out
