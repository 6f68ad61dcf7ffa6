# src/pixel_phenology/fitting/core.py
"""
Core data structures and the double-logistic curve model.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np
from matplotlib import font_manager as fm


# Order of the six curve parameters wherever they are stacked into arrays.
DL_PARAM_NAMES = ("mn", "mx", "sos", "rsp", "eos", "rau")

# Optimizer space: [mn, delta, sos, rsp, season_length, rau]
OPT_PARAM_NAMES = ("mn", "delta", "sos", "rsp", "season_length", "rau")

MAD_FLOOR = 1e-10


def _sigmoid(x: np.ndarray) -> np.ndarray:
    # exp overflow for large |x| is harmless here but noisy; clip keeps it quiet
    return 1.0 / (1.0 + np.exp(-np.clip(x, -500.0, 500.0)))


def double_logistic(
    t,
    mn: float,
    mx: float,
    sos: float,
    rsp: float,
    eos: float,
    rau: float,
):
    """
    Beck-style double logistic:

        VI(t) = mn + (mx - mn) * (sig(rsp * (t - sos)) - sig(rau * (t - eos)))

    t is a continuous day index (no wrapping at 365). Returns a float for
    scalar t, an ndarray otherwise.
    """
    t_arr = np.asarray(t, dtype=float)
    out = mn + (mx - mn) * (_sigmoid(rsp * (t_arr - sos)) - _sigmoid(rau * (t_arr - eos)))
    if out.ndim == 0:
        return float(out)
    return out


@dataclass(frozen=True)
class DLParams:
    mn: float
    mx: float
    sos: float
    rsp: float
    eos: float
    rau: float
    rmse: float = float("nan")

    @property
    def delta(self) -> float:
        return float(self.mx - self.mn)

    @property
    def season_length(self) -> float:
        return float(self.eos - self.sos)

    def evaluate(self, t):
        return double_logistic(t, self.mn, self.mx, self.sos, self.rsp, self.eos, self.rau)

    def as_array(self) -> np.ndarray:
        """[mn, mx, sos, rsp, eos, rau] (no rmse)."""
        return np.array([self.mn, self.mx, self.sos, self.rsp, self.eos, self.rau], dtype=float)

    def as_opt_array(self) -> np.ndarray:
        """Optimizer vector [mn, delta, sos, rsp, season_length, rau]."""
        return np.array(
            [self.mn, self.mx - self.mn, self.sos, self.rsp, self.eos - self.sos, self.rau],
            dtype=float,
        )

    @classmethod
    def from_opt_array(cls, x, rmse: float = float("nan")) -> "DLParams":
        a = np.asarray(x, dtype=float)
        return cls(
            mn=float(a[0]),
            mx=float(a[0] + a[1]),
            sos=float(a[2]),
            rsp=float(a[3]),
            eos=float(a[2] + a[4]),
            rau=float(a[5]),
            rmse=float(rmse),
        )

    def with_rmse(self, rmse: float) -> "DLParams":
        return DLParams(self.mn, self.mx, self.sos, self.rsp, self.eos, self.rau, float(rmse))

    def to_dict(self) -> dict:
        return {
            "mn": self.mn,
            "mx": self.mx,
            "sos": self.sos,
            "rsp": self.rsp,
            "eos": self.eos,
            "rau": self.rau,
            "rmse": self.rmse,
        }


def _valid_xy(t, y) -> tuple[np.ndarray, np.ndarray]:
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    mask = np.isfinite(t) & np.isfinite(y)
    return t[mask], y[mask]


def residuals(params: DLParams, t, y) -> np.ndarray:
    """observed - predicted, over finite observations only."""
    tv, yv = _valid_xy(t, y)
    return yv - params.evaluate(tv)


def rmse(params: DLParams, t, y) -> float:
    """Unweighted RMSE over finite observations; inf when there are none."""
    r = residuals(params, t, y)
    if r.size == 0:
        return float("inf")
    return float(np.sqrt(np.mean(r * r)))


def _median_and_mad(values: np.ndarray, floor: float = MAD_FLOOR) -> tuple[float, float]:
    """Median and raw (unscaled) MAD of finite values, MAD floored."""
    x = np.asarray(values, dtype=float)
    x = x[np.isfinite(x)]
    if x.size == 0:
        return float("nan"), float(floor)
    med = float(np.median(x))
    mad = float(np.median(np.abs(x - med)))
    return med, float(max(mad, floor))


class PhenologyFitError(RuntimeError):
    """Base class for per-pixel fitting failures."""


class InsufficientObservations(PhenologyFitError):
    """Raised when a series has fewer valid observations than min_observations."""

    def __init__(self, n_valid: int, min_observations: int):
        super().__init__(f"{n_valid} valid observations < min_observations={min_observations}")
        self.n_valid = int(n_valid)
        self.min_observations = int(min_observations)


class NonConvergent(PhenologyFitError):
    """Raised when the optimizer does not beat the constant-mean baseline."""


class FitCancelled(RuntimeError):
    """Raised when a grid fit is cancelled between pixels."""


class FitQuality(str, Enum):
    GOOD = "good"
    POOR = "poor"
    SKIPPED = "skipped"
    OUTLIER = "outlier"


# Codes used by the rejection-reason map.
REJECTION_CODES = {
    FitQuality.GOOD: 0,
    FitQuality.POOR: 1,
    FitQuality.OUTLIER: 2,
    FitQuality.SKIPPED: 3,
}


@dataclass(frozen=True)
class RejectionDetail:
    """Why a pixel is not good. Never attached to a good pixel."""

    reason: FitQuality
    observation_count: int
    rmse: Optional[float] = None
    rmse_threshold: Optional[float] = None
    min_observations: Optional[int] = None
    cluster_distance: Optional[float] = None
    cluster_threshold: Optional[float] = None
    param_z_scores: Optional[dict] = field(default=None, compare=True)

    @property
    def human_readable(self) -> str:
        def _fmt(v: Optional[float], fmt: str) -> str:
            return "?" if v is None else format(v, fmt)

        if self.reason == FitQuality.SKIPPED:
            return f"Insufficient observations ({self.observation_count})"
        if self.reason == FitQuality.POOR:
            return f"Poor fit (RMSE {_fmt(self.rmse, '.4f')} > {_fmt(self.rmse_threshold, '.4f')})"
        if self.reason == FitQuality.OUTLIER:
            return (
                f"Outlier parameters (distance {_fmt(self.cluster_distance, '.1f')}"
                f" > {_fmt(self.cluster_threshold, '.1f')})"
            )
        return "Good fit"


def apply_paper_style() -> dict:
    """
    matplotlib rcParams for report figures.

    Usage:
        with plt.rc_context(apply_paper_style()):
            fig, ax = plt.subplots(figsize=PAPER_FIGSIZE_SINGLE)
    """
    available = {f.name for f in fm.fontManager.ttflist}
    font_priority = ["Arial", "Helvetica", "Liberation Sans", "DejaVu Sans"]
    chosen = next((f for f in font_priority if f in available), "DejaVu Sans")

    return {
        "font.family": "sans-serif",
        "font.sans-serif": [chosen] + [f for f in font_priority if f != chosen],
        "font.size": 7,
        "axes.titlesize": 8,
        "axes.labelsize": 7,
        "xtick.labelsize": 6,
        "ytick.labelsize": 6,
        "legend.fontsize": 6,
        "lines.linewidth": 0.7,
        "lines.markersize": 3,
        "axes.linewidth": 0.6,
        "axes.edgecolor": "0.3",
        "axes.labelcolor": "0.15",
        "axes.facecolor": "white",
        "xtick.major.width": 0.5,
        "ytick.major.width": 0.5,
        "xtick.color": "0.3",
        "ytick.color": "0.3",
        "xtick.direction": "out",
        "ytick.direction": "out",
        "axes.grid": False,
        "legend.frameon": True,
        "legend.framealpha": 0.9,
        "legend.edgecolor": "0.7",
        "figure.facecolor": "white",
        "figure.dpi": 100,
        "savefig.dpi": 300,
        "savefig.facecolor": "white",
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.02,
        "savefig.format": "png",
    }


PAPER_FIGSIZE_SINGLE = (3.5, 2.6)
PAPER_FIGSIZE_SQUARE = (3.0, 3.0)
