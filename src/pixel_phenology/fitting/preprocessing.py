# src/pixel_phenology/fitting/preprocessing.py
"""
Observation grid construction and per-series preprocessing for fitting.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
import pandas as pd

from .core import DLParams


def add_day_index(df: pd.DataFrame, reference_year: Optional[int] = None, date_col: str = "date") -> pd.DataFrame:
    """
    Add 't': continuous day index from a date column.

    Day 1 is Jan 1 of reference_year (default: earliest year present), so a
    date in the following year maps past 365 instead of wrapping.
    Keeps original columns.
    """
    out = df.copy()
    dates = pd.to_datetime(out[date_col], errors="coerce")
    if reference_year is None:
        years = dates.dt.year.dropna()
        if years.empty:
            out["t"] = np.nan
            return out
        reference_year = int(years.min())
    origin = pd.Timestamp(year=int(reference_year), month=1, day=1)
    out["t"] = (dates - origin).dt.days.astype(float) + 1.0
    return out


@dataclass(frozen=True)
class ObservationGrid:
    """
    Stack of co-registered VI frames.

    times:    (n_frames,) continuous day index
    values:   (n_frames, height, width); NaN marks invalid (cloud-masked) samples
    aoi_mask: (height, width); False = outside AOI (no pixel record)
    """

    times: np.ndarray
    values: np.ndarray
    aoi_mask: np.ndarray

    def __post_init__(self) -> None:
        times = np.array(self.times, dtype=float)
        values = np.array(self.values, dtype=float)
        if values.ndim != 3:
            raise ValueError(f"values must be (n_frames, height, width), got shape {values.shape}")
        if times.shape != (values.shape[0],):
            raise ValueError(f"times must have shape ({values.shape[0]},), got {times.shape}")
        if self.aoi_mask is None:
            aoi = np.ones(values.shape[1:], dtype=bool)
        else:
            aoi = np.array(self.aoi_mask, dtype=bool)
        if aoi.shape != values.shape[1:]:
            raise ValueError(f"aoi_mask shape {aoi.shape} does not match frames {values.shape[1:]}")
        times.setflags(write=False)
        values.setflags(write=False)
        aoi.setflags(write=False)
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "aoi_mask", aoi)

    @property
    def n_frames(self) -> int:
        return int(self.values.shape[0])

    @property
    def height(self) -> int:
        return int(self.values.shape[1])

    @property
    def width(self) -> int:
        return int(self.values.shape[2])

    def pixel_series(self, row: int, col: int) -> tuple[np.ndarray, np.ndarray]:
        """Valid (t, y) for one pixel, sorted by t."""
        y = self.values[:, row, col]
        mask = np.isfinite(y) & np.isfinite(self.times)
        t = self.times[mask]
        y = y[mask]
        order = np.argsort(t, kind="stable")
        return t[order], y[order]

    def iter_aoi_pixels(self) -> Iterator[tuple[int, int]]:
        rows, cols = np.nonzero(self.aoi_mask)
        for r, c in zip(rows.tolist(), cols.tolist()):
            yield int(r), int(c)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        width: Optional[int] = None,
        height: Optional[int] = None,
        value_col: str = "value",
    ) -> "ObservationGrid":
        """
        Build a grid from a tidy table.

        Columns:
          - required: row, col, value, and either t or date
          - optional: valid (bool); rows with valid == False become NaN
        AOI = every (row, col) present in the table.
        """
        d = df.copy()
        if "t" not in d.columns:
            if "date" not in d.columns:
                raise ValueError(f"observation table needs a 't' or 'date' column, got: {d.columns.tolist()}")
            d = add_day_index(d)
        for c in ("row", "col", value_col):
            if c not in d.columns:
                raise ValueError(f"observation table must contain {c!r}, got: {d.columns.tolist()}")

        d["row"] = pd.to_numeric(d["row"], errors="coerce")
        d["col"] = pd.to_numeric(d["col"], errors="coerce")
        d["t"] = pd.to_numeric(d["t"], errors="coerce")
        d = d.dropna(subset=["row", "col", "t"])
        d["row"] = d["row"].astype(int)
        d["col"] = d["col"].astype(int)
        if (d["row"] < 0).any() or (d["col"] < 0).any():
            raise ValueError("row/col must be non-negative")

        vals = pd.to_numeric(d[value_col], errors="coerce").to_numpy(dtype=float)
        if "valid" in d.columns:
            valid = d["valid"].astype(str).str.strip().str.lower().isin({"1", "true", "yes"}).to_numpy()
            vals = np.where(valid, vals, np.nan)
        vals = np.where(np.isfinite(vals), vals, np.nan)

        h = int(height) if height is not None else int(d["row"].max()) + 1 if len(d) else 0
        w = int(width) if width is not None else int(d["col"].max()) + 1 if len(d) else 0
        if len(d) and (d["row"].max() >= h or d["col"].max() >= w):
            raise ValueError(f"row/col outside grid {h}x{w}")

        times = np.sort(d["t"].unique().astype(float))
        t_idx = np.searchsorted(times, d["t"].to_numpy(dtype=float))
        values = np.full((times.size, h, w), np.nan, dtype=float)
        values[t_idx, d["row"].to_numpy(), d["col"].to_numpy()] = vals
        aoi = np.zeros((h, w), dtype=bool)
        aoi[d["row"].to_numpy(), d["col"].to_numpy()] = True
        return cls(times=times, values=values, aoi_mask=aoi)


def initial_guess(t: np.ndarray, y: np.ndarray) -> DLParams:
    """
    Starting parameters derived from the series itself.

      - mn / mx: 10th / 90th rank values (robust to single spikes)
      - sos: first upward crossing of the mid-amplitude level
      - eos: last downward crossing of the mid-amplitude level
      - rsp / rau: 0.05 per day
    """
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    if y.size == 0:
        return DLParams(mn=0.1, mx=0.6, sos=120.0, rsp=0.05, eos=280.0, rau=0.05)

    ys = np.sort(y)
    n = int(ys.size)
    mn = float(ys[max(0, n // 10)])
    mx = float(ys[min(n - 1, n - 1 - n // 10)])
    mid = 0.5 * (mn + mx)

    order = np.argsort(t, kind="stable")
    ts = t[order]
    yt = y[order]
    sos = 120.0
    eos = 280.0
    for i in range(1, n):
        if yt[i - 1] < mid <= yt[i]:
            sos = float(ts[i])
            break
    for i in range(n - 1, 0, -1):
        if yt[i - 1] >= mid > yt[i]:
            eos = float(ts[i])
            break
    return DLParams(mn=mn, mx=mx, sos=sos, rsp=0.05, eos=eos, rau=0.05)


def filter_cycle_contamination(
    t: np.ndarray,
    y: np.ndarray,
    min_points: int = 6,
    margin_days: float = 30.0,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Trim observations that belong to adjacent growing cycles.

    Around the main peak (3-point moving average), leading points that are
    high and falling (tail of the previous season) and trailing points that
    are high and rising (start of the next season) are dropped. Series shorter
    than min_points are returned sorted but otherwise unchanged.
    """
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    order = np.argsort(t, kind="stable")
    t = t[order]
    y = y[order]
    n = int(t.size)
    if n < max(3, int(min_points)):
        return t, y

    smooth = (y[:-2] + y[1:-1] + y[2:]) / 3.0
    k = int(np.argmax(smooth))
    peak_val = float(smooth[k])
    peak_t = float(t[k + 1])

    baseline = float(np.sort(y)[max(0, n // 5)])
    threshold = baseline + (peak_val - baseline) * 0.4

    start = 0
    if y[0] > threshold and t[0] < peak_t - margin_days:
        for i in range(min(n // 3, n - 1)):
            if y[i] > threshold and y[i + 1] < y[i] and t[i] < peak_t - margin_days:
                start = i + 1
            else:
                break

    end = n - 1
    if y[-1] > threshold and t[-1] > peak_t + margin_days:
        for i in range(n - 1, max(n * 2 // 3, 1) - 1, -1):
            if y[i] > threshold and y[i - 1] < y[i] and t[i] > peak_t + margin_days:
                end = i - 1
            else:
                break

    return t[start : end + 1], y[start : end + 1]
