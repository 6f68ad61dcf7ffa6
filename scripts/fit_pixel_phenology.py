#!/usr/bin/env python3
"""
Fit a double-logistic phenology curve to every AOI pixel of an observation table.

Outputs (under {out_dir}/{run_id}/):
  - pixels__{run_id}.csv, parameter_uncertainty__{run_id}.csv,
    composite_series__{run_id}.csv, phenology_summary__{run_id}.json
  - qc/phenology_qc_report.md (+ CSV / PNG)
  - maps/phenology_*_map.png
  - plots/pixel_r{row}_c{col}.png for --plot_pixels

Usage:
  python scripts/fit_pixel_phenology.py --observations data/raw/site.csv [--config meta/config.yml]
      [--run_id site] [--n_workers 4] [--rmse_threshold 0.12] [--no_cluster_filter] [--debug]
"""
from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path

# Ensure local src/ is used (avoid importing an older installed package)
REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# Use non-interactive backend so script does not block on display (headless / IDE / SSH)
import matplotlib
matplotlib.use("Agg")

from pixel_phenology.fitting import (  # noqa: E402
    FitCancelled,
    fit_all_pixels,
    plot_pixel_fit_diagnostic,
    run_quality_control,
    write_parameter_maps,
    write_phenology_qc_report,
)
from pixel_phenology.loader import (  # noqa: E402
    apply_aoi_mask,
    load_fit_settings,
    read_aoi_mask,
    read_observation_table,
)
from pixel_phenology.meta_paths import aoi_mask_path, get_meta_paths  # noqa: E402
from pixel_phenology.summary import result_to_frame, write_result_outputs  # noqa: E402

META = get_meta_paths(REPO_ROOT)


def _parse_pixel(s: str) -> tuple[int, int]:
    try:
        r, c = (int(x) for x in s.split(","))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"pixel must be 'row,col', got {s!r}") from e
    return r, c


def main() -> None:
    p = argparse.ArgumentParser(description="Per-pixel double-logistic phenology fitting and QC.")
    p.add_argument("--observations", required=True, help="Tidy CSV/TSV: row, col, t|date, value[, valid].")
    p.add_argument("--config", default=None, help="Config YAML with a phenology: mapping (default: meta/config.yml if present).")
    p.add_argument("--run_id", default=None, help="Run identifier (default: observation file stem).")
    p.add_argument("--out_dir", default="data/processed", help="Output root directory.")
    p.add_argument("--value_col", default="value", help="Column holding the vegetation index.")
    p.add_argument("--aoi_mask", default=None, help="0/1 AOI grid (default: meta/aoi/{run_id}.txt if present).")
    p.add_argument("--n_workers", type=int, default=1, help="Parallel workers (1 = serial).")
    p.add_argument("--use_processes", action="store_true", help="Use a process pool instead of threads.")
    p.add_argument("--ensemble_runs", type=int, default=None)
    p.add_argument("--rmse_threshold", type=float, default=None)
    p.add_argument("--cluster_threshold", type=float, default=None)
    p.add_argument("--min_observations", type=int, default=None)
    p.add_argument("--random_seed", type=int, default=None)
    p.add_argument("--second_pass", action="store_true", help="Enable the peak-weighted second pass.")
    p.add_argument("--no_cluster_filter", action="store_true", help="Skip the spatial outlier filter.")
    p.add_argument(
        "--plot_pixels",
        type=_parse_pixel,
        nargs="*",
        default=[],
        help="Pixels to write diagnostic plots for, as row,col (e.g. --plot_pixels 0,0 3,5).",
    )
    p.add_argument("--debug", action="store_true", help="Print per-stage details.")
    args = p.parse_args()

    obs_path = Path(args.observations)
    run_id = args.run_id or obs_path.stem
    config_path = Path(args.config) if args.config else (META.config if META.config.is_file() else None)

    settings = load_fit_settings(
        config_path,
        ensemble_runs=args.ensemble_runs,
        rmse_threshold=args.rmse_threshold,
        cluster_threshold=args.cluster_threshold,
        min_observations=args.min_observations,
        random_seed=args.random_seed,
        enable_second_pass=True if args.second_pass else None,
    )
    if args.debug:
        print(f"config: {config_path if config_path is not None else '(defaults)'}")
        for k, v in settings.to_dict().items():
            print(f"  {k}: {v}")

    grid = read_observation_table(obs_path, value_col=args.value_col)
    aoi_path = Path(args.aoi_mask) if args.aoi_mask else aoi_mask_path(REPO_ROOT, run_id)
    if args.aoi_mask or aoi_path.is_file():
        grid = apply_aoi_mask(grid, read_aoi_mask(aoi_path))
        print(f"AOI mask: {aoi_path}")
    n_aoi = int(grid.aoi_mask.sum())
    print(f"Grid: {grid.height}x{grid.width}, frames: {grid.n_frames}, AOI pixels: {n_aoi}")

    def _progress(frac: float) -> None:
        print(f"  fitted {frac * 100.0:5.1f}%")

    cancel = threading.Event()
    try:
        result = fit_all_pixels(
            grid,
            settings,
            n_workers=args.n_workers,
            use_processes=args.use_processes,
            progress=_progress if args.debug else None,
            cancel_event=cancel,
        )
    except KeyboardInterrupt:
        cancel.set()
        print("Cancelled.")
        sys.exit(130)
    except FitCancelled as e:
        print(f"Cancelled: {e}")
        sys.exit(130)
    print(f"Fitted {len(result)} pixels in {result.compute_time_seconds:.1f} s")
    if result.median_fit is None:
        print("Warning: median fit failed; no grid reference curve.")

    result = run_quality_control(result, settings, apply_cluster_filter=not args.no_cluster_filter)
    print(
        f"good: {result.good_count}, poor: {result.poor_count}, "
        f"outlier: {result.outlier_count}, skipped: {result.skipped_count}"
    )

    run_dir = Path(args.out_dir) / run_id
    summary_json = write_result_outputs(
        result,
        run_dir,
        run_id,
        grid=grid,
        settings=settings.to_dict(),
        input_paths_for_manifest=[obs_path] + ([config_path] if config_path is not None else []),
        git_root=REPO_ROOT,
    )
    print(f"Saved (summary): {summary_json}")

    qc_md = write_phenology_qc_report(
        result_to_frame(result),
        run_dir / "qc",
        rmse_threshold=settings.rmse_threshold,
    )
    print(f"Saved (QC): {qc_md}")

    maps = write_parameter_maps(result, run_dir / "maps")
    print(f"Saved (maps): {len(maps)} files in {run_dir / 'maps'}")

    for row, col in args.plot_pixels:
        px = result.get(row, col)
        if px is None:
            print(f"Warning: pixel ({row}, {col}) is outside the AOI, no plot.")
            continue
        t, y = grid.pixel_series(row, col)
        out_png = plot_pixel_fit_diagnostic(
            t, y, px, run_dir / "plots" / f"pixel_r{row}_c{col}.png", median_fit=result.median_fit
        )
        print(f"Saved (plot): {out_png}")


if __name__ == "__main__":
    main()
