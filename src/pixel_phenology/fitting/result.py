# src/pixel_phenology/fitting/result.py
"""
Per-pixel fit records and the result grid.

Results are never modified in place: reclassified() and cluster_filtered()
return a new PixelPhenologyResult that shares every unchanged record with the
original, so callers can keep the prior result for comparison or undo.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterator, Mapping, Optional

import numpy as np

from .core import DL_PARAM_NAMES, DLParams, FitQuality, RejectionDetail
from .outliers import MIN_GOOD_PIXELS, cluster_outlier_flags
from .qc import classify_fit


@dataclass(frozen=True)
class PixelPhenology:
    row: int
    col: int
    params: DLParams
    n_valid_obs: int
    fit_quality: FitQuality
    rejection_detail: Optional[RejectionDetail] = None

    def __post_init__(self) -> None:
        if self.fit_quality == FitQuality.GOOD and self.rejection_detail is not None:
            raise ValueError("good pixels carry no rejection detail")
        if self.fit_quality != FitQuality.GOOD and self.rejection_detail is None:
            raise ValueError(f"{self.fit_quality.value} pixel ({self.row}, {self.col}) needs a rejection detail")


def _freeze(pixels: Mapping[tuple[int, int], PixelPhenology]) -> Mapping[tuple[int, int], PixelPhenology]:
    return MappingProxyType(dict(sorted(pixels.items())))


@dataclass(frozen=True)
class PixelPhenologyResult:
    """
    Grid of per-pixel fits.

    pixels maps (row, col) -> PixelPhenology; a missing key means the cell is
    outside the AOI. Iteration is in (row, col) order.
    """

    width: int
    height: int
    pixels: Mapping[tuple[int, int], PixelPhenology] = field(default_factory=dict)
    median_fit: Optional[DLParams] = None
    compute_time_seconds: float = 0.0

    def __post_init__(self) -> None:
        for (r, c), px in self.pixels.items():
            if not (0 <= r < self.height and 0 <= c < self.width):
                raise ValueError(f"pixel ({r}, {c}) outside {self.height}x{self.width} grid")
            if (px.row, px.col) != (r, c):
                raise ValueError(f"pixel record ({px.row}, {px.col}) stored under key ({r}, {c})")
        object.__setattr__(self, "pixels", _freeze(self.pixels))

    def get(self, row: int, col: int) -> Optional[PixelPhenology]:
        return self.pixels.get((int(row), int(col)))

    def __iter__(self) -> Iterator[PixelPhenology]:
        return iter(self.pixels.values())

    def __len__(self) -> int:
        return len(self.pixels)

    def with_quality(self, quality: FitQuality) -> list[PixelPhenology]:
        return [px for px in self.pixels.values() if px.fit_quality == quality]

    def count(self, quality: FitQuality) -> int:
        return sum(1 for px in self.pixels.values() if px.fit_quality == quality)

    @property
    def good_count(self) -> int:
        return self.count(FitQuality.GOOD)

    @property
    def poor_count(self) -> int:
        return self.count(FitQuality.POOR)

    @property
    def skipped_count(self) -> int:
        return self.count(FitQuality.SKIPPED)

    @property
    def outlier_count(self) -> int:
        return self.count(FitQuality.OUTLIER)

    def _derive(self, updates: Mapping[tuple[int, int], PixelPhenology]) -> "PixelPhenologyResult":
        pixels = dict(self.pixels)
        pixels.update(updates)
        return replace(self, pixels=pixels)

    def reclassified(self, rmse_threshold: float) -> "PixelPhenologyResult":
        """
        Redo the good/poor split against a new RMSE threshold using cached RMSE.

        Skipped and outlier pixels are left alone; no refitting happens.
        """
        updates: dict[tuple[int, int], PixelPhenology] = {}
        for key, px in self.pixels.items():
            if px.fit_quality not in (FitQuality.GOOD, FitQuality.POOR):
                continue
            # n_valid_obs passed as its own minimum: only the RMSE decides here
            quality, detail = classify_fit(
                px.n_valid_obs,
                px.params.rmse,
                min_observations=px.n_valid_obs,
                rmse_threshold=rmse_threshold,
            )
            if quality == px.fit_quality and (
                quality == FitQuality.GOOD or px.rejection_detail.rmse_threshold == detail.rmse_threshold
            ):
                continue
            updates[key] = replace(px, fit_quality=quality, rejection_detail=detail)
        if not updates:
            return replace(self)
        return self._derive(updates)

    def parameter_stack(self) -> tuple[np.ndarray, np.ndarray]:
        """
        (values, good): values (6, height, width) of mn, mx, sos, rsp, eos, rau
        with NaN where there is no record; good (height, width) bool.
        """
        values = np.full((len(DL_PARAM_NAMES), self.height, self.width), np.nan)
        good = np.zeros((self.height, self.width), dtype=bool)
        for (r, c), px in self.pixels.items():
            values[:, r, c] = px.params.as_array()
            good[r, c] = px.fit_quality == FitQuality.GOOD
        return values, good

    def cluster_filtered(
        self,
        threshold: float = 4.0,
        spatial_rescue_fraction: float = 0.5,
    ) -> "PixelPhenologyResult":
        """
        Flag good pixels whose parameters are robust outliers and that are not
        backed by their 8-neighbourhood (see outliers.cluster_outlier_flags).

        Fewer than 5 good pixels: returned unchanged.
        """
        if self.good_count < MIN_GOOD_PIXELS:
            return self
        values, good = self.parameter_stack()
        flags = cluster_outlier_flags(
            values,
            good,
            threshold=threshold,
            spatial_rescue_fraction=spatial_rescue_fraction,
        )
        updates: dict[tuple[int, int], PixelPhenology] = {}
        for r, c in zip(*np.nonzero(flags.outlier)):
            r, c = int(r), int(c)
            px = self.pixels[(r, c)]
            z = {name: float(flags.z_scores[k, r, c]) for k, name in enumerate(DL_PARAM_NAMES)}
            detail = RejectionDetail(
                reason=FitQuality.OUTLIER,
                observation_count=px.n_valid_obs,
                rmse=px.params.rmse,
                cluster_distance=float(flags.distance[r, c]),
                cluster_threshold=float(threshold),
                param_z_scores=z,
            )
            updates[(r, c)] = replace(px, fit_quality=FitQuality.OUTLIER, rejection_detail=detail)
        return self._derive(updates)
