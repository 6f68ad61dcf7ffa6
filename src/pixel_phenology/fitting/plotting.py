# src/pixel_phenology/fitting/plotting.py
"""
Diagnostic plotting: per-pixel fit curves, parameter maps and the rejection map.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.colors import BoundaryNorm, ListedColormap

from .core import REJECTION_CODES, DLParams, FitQuality, apply_paper_style, PAPER_FIGSIZE_SINGLE, PAPER_FIGSIZE_SQUARE
from .result import PixelPhenology, PixelPhenologyResult

# Colors: paper-grade palette
_C_POINT = "#0072B2"
_C_FIT = "#E07020"
_C_MEDIAN = "0.55"
_C_EDGE = "#2D2D2D"

# Rejection map colours, indexed by REJECTION_CODES
_QUALITY_COLORS = {
    FitQuality.GOOD: "#009E73",
    FitQuality.POOR: "#E69F00",
    FitQuality.OUTLIER: "#D55E00",
    FitQuality.SKIPPED: "#BBBBBB",
}


def _draw_pixel_fit_on_ax(
    *,
    ax: Any,
    t: np.ndarray,
    y: np.ndarray,
    pixel: PixelPhenology,
    median_fit: Optional[DLParams],
) -> None:
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)
    mask = np.isfinite(t) & np.isfinite(y)
    t = t[mask]
    y = y[mask]

    for spine in ax.spines.values():
        spine.set_visible(True)
        spine.set_color("0.3")
        spine.set_linewidth(0.6)

    if t.size > 0:
        ax.scatter(t, y, s=10, color=_C_POINT, edgecolors=_C_EDGE, linewidths=0.3, zorder=3)

    lo = float(t.min()) if t.size else float(pixel.params.sos) - 60.0
    hi = float(t.max()) if t.size else float(pixel.params.eos) + 60.0
    tt = np.linspace(lo, hi, 300)
    if median_fit is not None:
        ax.plot(tt, median_fit.evaluate(tt), color=_C_MEDIAN, linestyle=(0, (4, 2)), linewidth=0.6, label="median fit")
    # skipped pixels carry a placeholder curve only
    if pixel.fit_quality != FitQuality.SKIPPED:
        ax.plot(tt, pixel.params.evaluate(tt), color=_C_FIT, linewidth=0.8, label="pixel fit")
        for x in (pixel.params.sos, pixel.params.eos):
            if lo <= x <= hi:
                ax.axvline(x, color="0.6", linewidth=0.4, linestyle=":")

    ax.set_title(f"pixel ({pixel.row}, {pixel.col}) | {pixel.fit_quality.value}", pad=4)
    ax.set_xlabel("Day")
    ax.set_ylabel("VI")

    p = pixel.params
    info_lines = [f"n: {pixel.n_valid_obs}"]
    if pixel.fit_quality != FitQuality.SKIPPED:
        info_lines.append(f"SOS / EOS: {p.sos:.0f} / {p.eos:.0f}")
        info_lines.append(f"RMSE: {p.rmse:.4f}" if np.isfinite(p.rmse) else "RMSE: n/a")
    if pixel.rejection_detail is not None:
        info_lines.append(pixel.rejection_detail.human_readable)
    ax.annotate(
        "\n".join(info_lines),
        xy=(0, 1),
        xycoords="axes fraction",
        xytext=(4, -4),
        textcoords="offset points",
        ha="left",
        va="top",
        fontsize=6,
        bbox=dict(boxstyle="round,pad=0.3", facecolor="white", alpha=0.9, edgecolor="0.8"),
        zorder=10,
    )
    if median_fit is not None or pixel.fit_quality != FitQuality.SKIPPED:
        ax.legend(loc="upper right")


def plot_pixel_fit_diagnostic(
    t: np.ndarray,
    y: np.ndarray,
    pixel: PixelPhenology,
    out_png: Path,
    median_fit: Optional[DLParams] = None,
) -> Path:
    """
    Diagnostic plot for one pixel: observations, fitted curve (not drawn for
    skipped pixels), optional grid median fit, and an info box with the
    rejection reason when the pixel is not good.
    """
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    with plt.rc_context(apply_paper_style()):
        fig, ax = plt.subplots(figsize=PAPER_FIGSIZE_SINGLE)
        _draw_pixel_fit_on_ax(ax=ax, t=t, y=y, pixel=pixel, median_fit=median_fit)
        fig.tight_layout(pad=0.3)
        fig.savefig(out_png, bbox_inches="tight", pad_inches=0.02)
        plt.close(fig)
    return out_png


def _imshow_map(values: np.ndarray, out_png: Path, title: str, **kwargs: Any) -> None:
    with plt.rc_context(apply_paper_style()):
        fig, ax = plt.subplots(figsize=PAPER_FIGSIZE_SQUARE)
        im = ax.imshow(np.ma.masked_invalid(values), interpolation="nearest", **kwargs)
        ax.set_title(title)
        ax.set_xticks([])
        ax.set_yticks([])
        cbar = fig.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
        cbar.ax.tick_params(labelsize=5)
        if "norm" in kwargs and isinstance(kwargs["norm"], BoundaryNorm):
            order = sorted(REJECTION_CODES, key=REJECTION_CODES.get)
            cbar.set_ticks([REJECTION_CODES[q] for q in order])
            cbar.set_ticklabels([q.value for q in order])
        fig.tight_layout(pad=0.3)
        fig.savefig(out_png, bbox_inches="tight", pad_inches=0.02)
        plt.close(fig)


def write_parameter_maps(
    result: PixelPhenologyResult,
    out_dir: Path,
    prefix: str = "phenology",
    parameters: tuple = ("sos", "eos", "season_length", "mx", "rmse"),
) -> list[Path]:
    """
    Write one PNG per parameter map (good pixels only) and the rejection map.

    Returns written paths.
    """
    from ..summary import parameter_map, rejection_reason_map

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    for name in parameters:
        out_png = out_dir / f"{prefix}_{name}_map.png"
        _imshow_map(parameter_map(result, name), out_png, name, cmap="viridis")
        written.append(out_png)

    order = sorted(REJECTION_CODES, key=REJECTION_CODES.get)
    cmap = ListedColormap([_QUALITY_COLORS[q] for q in order])
    norm = BoundaryNorm(np.arange(len(order) + 1) - 0.5, cmap.N)
    out_png = out_dir / f"{prefix}_rejection_map.png"
    _imshow_map(rejection_reason_map(result), out_png, "fit quality", cmap=cmap, norm=norm)
    written.append(out_png)
    return written
