# src/pixel_phenology/fitting/qc.py
"""
Fit-quality classification and QC report generation.
"""
from __future__ import annotations

import math
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from .core import FitQuality, RejectionDetail, apply_paper_style, PAPER_FIGSIZE_SINGLE


def classify_fit(
    n_valid_obs: int,
    rmse: Optional[float],
    *,
    min_observations: int,
    rmse_threshold: float,
) -> tuple[FitQuality, Optional[RejectionDetail]]:
    """
    Quality from observation count and RMSE alone.

      - n_valid_obs < min_observations -> skipped
      - rmse > rmse_threshold (or not finite) -> poor
      - otherwise -> good (no detail)
    """
    n = int(n_valid_obs)
    if n < int(min_observations):
        return FitQuality.SKIPPED, RejectionDetail(
            reason=FitQuality.SKIPPED,
            observation_count=n,
            min_observations=int(min_observations),
        )
    r = float("inf") if rmse is None else float(rmse)
    if math.isnan(r) or r > float(rmse_threshold):
        return FitQuality.POOR, RejectionDetail(
            reason=FitQuality.POOR,
            observation_count=n,
            rmse=r,
            rmse_threshold=float(rmse_threshold),
        )
    return FitQuality.GOOD, None


def _rejection_bucket(row: pd.Series) -> str:
    """Coarse rejection bucket for one non-good pixel row of result_to_frame()."""
    q = str(row.get("fit_quality", ""))
    if q == FitQuality.SKIPPED.value:
        return "Insufficient observations"
    if q == FitQuality.POOR.value:
        r = pd.to_numeric(row.get("rmse"), errors="coerce")
        if pd.isna(r) or not np.isfinite(float(r)):
            return "Non-convergent"
        return "RMSE > threshold"
    if q == FitQuality.OUTLIER.value:
        p = row.get("dominant_z_param")
        if p is None or (isinstance(p, float) and np.isnan(p)) or str(p) == "":
            return "Outlier"
        return f"Outlier ({p})"
    return "Other"


def _hist_png(values: np.ndarray, out_png: Path, title: str, xlabel: str, vline: Optional[float] = None) -> None:
    v = np.asarray(values, dtype=float)
    v = v[np.isfinite(v)]
    with plt.rc_context(apply_paper_style()):
        fig, ax = plt.subplots(figsize=PAPER_FIGSIZE_SINGLE)
        if v.size > 0:
            ax.hist(v, bins=30, color="#0072B2", edgecolor="white", linewidth=0.3)
            if vline is not None and np.isfinite(float(vline)):
                ax.axvline(float(vline), linestyle=(0, (4, 2)), color="0.3", linewidth=0.7)
        else:
            ax.text(0.5, 0.5, "No good fits", ha="center", va="center", transform=ax.transAxes)
        ax.set_title(title)
        ax.set_xlabel(xlabel)
        ax.set_ylabel("Count")
        fig.tight_layout(pad=0.3)
        fig.savefig(out_png, bbox_inches="tight", pad_inches=0.02)
        plt.close(fig)


def write_phenology_qc_report(
    pixels: pd.DataFrame,
    out_dir: Path,
    rmse_threshold: Optional[float] = None,
    prefix: str = "phenology_qc",
) -> Path:
    """
    Write a lightweight QC report for a per-pixel fit table (summary.result_to_frame).

    Outputs (in out_dir):
      - {prefix}_summary_overall.csv
      - {prefix}_rmse_hist.png
      - {prefix}_sos_hist.png
      - {prefix}_season_length_hist.png
      - {prefix}_rejection_counts.csv
      - {prefix}_rejection_bar.png
      - {prefix}_report.md

    Returns path to the markdown report.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    md_path = out_dir / f"{prefix}_report.md"

    if "fit_quality" not in pixels.columns or len(pixels) == 0:
        pd.DataFrame([{"n_total": 0, "n_good": 0, "n_poor": 0, "n_outlier": 0, "n_skipped": 0, "good_rate": np.nan}]).to_csv(
            out_dir / f"{prefix}_summary_overall.csv", index=False
        )
        md_path.write_text("# Phenology QC Report\n\nNo pixels were processed.\n", encoding="utf-8")
        return md_path

    df = pixels.copy()
    quality = df["fit_quality"].astype(str)
    counts = {q.value: int((quality == q.value).sum()) for q in FitQuality}
    n_total = int(len(df))
    good_rate = float(counts["good"] / n_total) if n_total > 0 else np.nan

    overall = pd.DataFrame(
        [
            {
                "n_total": n_total,
                "n_good": counts["good"],
                "n_poor": counts["poor"],
                "n_outlier": counts["outlier"],
                "n_skipped": counts["skipped"],
                "good_rate": good_rate,
            }
        ]
    )
    overall_csv = out_dir / f"{prefix}_summary_overall.csv"
    overall.to_csv(overall_csv, index=False)

    fitted = df[quality.isin([FitQuality.GOOD.value, FitQuality.POOR.value])]
    good = df[quality == FitQuality.GOOD.value]

    png_rmse = out_dir / f"{prefix}_rmse_hist.png"
    _hist_png(
        pd.to_numeric(fitted.get("rmse"), errors="coerce").to_numpy(dtype=float) if len(fitted) else np.array([]),
        png_rmse,
        "Fit RMSE (good + poor)",
        "RMSE",
        vline=rmse_threshold,
    )
    png_sos = out_dir / f"{prefix}_sos_hist.png"
    _hist_png(pd.to_numeric(good.get("sos"), errors="coerce").to_numpy(dtype=float) if len(good) else np.array([]), png_sos, "SOS (good only)", "day")
    png_len = out_dir / f"{prefix}_season_length_hist.png"
    _hist_png(
        pd.to_numeric(good.get("season_length"), errors="coerce").to_numpy(dtype=float) if len(good) else np.array([]),
        png_len,
        "Season length (good only)",
        "days",
    )

    rej_lines: list[str] = []
    rej_csv = None
    png_rej = None
    rej = df[quality != FitQuality.GOOD.value].copy()
    if len(rej) > 0:
        rej["rejection_bucket"] = rej.apply(_rejection_bucket, axis=1)
        vc = rej["rejection_bucket"].value_counts(dropna=False)
        rej_counts = vc.rename_axis("rejection_bucket").reset_index(name="count")
        rej_counts["fraction"] = rej_counts["count"] / float(rej_counts["count"].sum())
        rej_csv = out_dir / f"{prefix}_rejection_counts.csv"
        rej_counts.to_csv(rej_csv, index=False)

        png_rej = out_dir / f"{prefix}_rejection_bar.png"
        with plt.rc_context(apply_paper_style()):
            fig, ax = plt.subplots(figsize=PAPER_FIGSIZE_SINGLE)
            ax.bar(
                rej_counts["rejection_bucket"].astype(str),
                rej_counts["count"].to_numpy(dtype=int),
                color="#D55E00",
                edgecolor="white",
                linewidth=0.3,
            )
            plt.setp(ax.get_xticklabels(), rotation=45, ha="right")
            ax.set_title("Rejection reasons")
            ax.set_ylabel("pixels")
            fig.tight_layout(pad=0.3)
            fig.savefig(png_rej, bbox_inches="tight", pad_inches=0.02)
            plt.close(fig)

        for _, r in rej_counts.iterrows():
            rej_lines.append(f"- {r['rejection_bucket']}: {int(r['count'])} ({float(r['fraction']) * 100.0:.1f}%)")

    def _q_lines(series: Optional[pd.Series], label: str) -> list[str]:
        s = pd.to_numeric(series, errors="coerce") if series is not None else pd.Series(dtype=float)
        s = s[np.isfinite(s)]
        if len(s) == 0:
            return [f"- {label}: no good fits"]
        qs = s.quantile([0.1, 0.25, 0.5, 0.75, 0.9]).to_dict()
        out = [f"- {label} min/max: {float(s.min()):.4g} / {float(s.max()):.4g}"]
        for k in [0.1, 0.25, 0.5, 0.75, 0.9]:
            out.append(f"- {label} q{int(k * 100):02d}: {float(qs[k]):.4g}")
        return out

    lines: list[str] = []
    lines.append("# Phenology QC Report")
    lines.append("")
    lines.append(f"- Generated: {pd.Timestamp.now()}")
    if rmse_threshold is not None:
        lines.append(f"- RMSE threshold: {float(rmse_threshold):g}")
    lines.append("")
    lines.append("## (a) Fit quality")
    lines.append(f"- Total pixels (inside AOI): {n_total}")
    for q in FitQuality:
        lines.append(f"- {q.value}: {counts[q.value]}")
    lines.append(f"- Good rate: {good_rate * 100:.1f}%")
    lines.append("")
    lines.append(f"- CSV: {overall_csv.name}")
    lines.append("")
    lines.append("## (b) RMSE")
    lines.extend(_q_lines(fitted.get("rmse") if len(fitted) else None, "RMSE"))
    lines.append("")
    lines.append(f"![rmse hist]({png_rmse.name})")
    lines.append("")
    lines.append("## (c) Timing (good only)")
    lines.extend(_q_lines(good.get("sos") if len(good) else None, "SOS"))
    lines.extend(_q_lines(good.get("eos") if len(good) else None, "EOS"))
    lines.extend(_q_lines(good.get("season_length") if len(good) else None, "Season length"))
    lines.append("")
    lines.append(f"![sos hist]({png_sos.name})")
    lines.append(f"![season length hist]({png_len.name})")
    lines.append("")
    lines.append("## (d) Rejection reasons")
    if rej_csv is None or png_rej is None:
        lines.append("- rejected pixels: 0")
    else:
        lines.append(f"- CSV: {rej_csv.name}")
        lines.extend(rej_lines)
        lines.append("")
        lines.append(f"![rejection reasons]({png_rej.name})")
    lines.append("")

    md_path.write_text("\n".join(lines), encoding="utf-8")
    return md_path
