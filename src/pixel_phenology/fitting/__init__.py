# src/pixel_phenology/fitting/__init__.py
"""
Fitting subpackage - modular organization of per-pixel phenology fitting.

This package provides all fitting-related functionality split into focused modules:
  - core: Curve model, DLParams, errors, FitQuality / RejectionDetail, plot style
  - settings: Run configuration (PhenologyFitSettings, ParameterBounds)
  - preprocessing: ObservationGrid, initial guess, cycle-contamination filter
  - solver: Single bounded robust fit
  - ensemble: Perturbed-restart ensemble and weighted second pass
  - qc: Quality classification and QC report generation
  - outliers: Spatially regularized MAD outlier filter
  - result: PixelPhenology / PixelPhenologyResult
  - plotting: Diagnostic plotting
  - pipeline: Main pipeline (fit_all_pixels)
"""

# Core types and utilities
from .core import (
    DL_PARAM_NAMES,
    DLParams,
    FitCancelled,
    FitQuality,
    InsufficientObservations,
    NonConvergent,
    PhenologyFitError,
    RejectionDetail,
    REJECTION_CODES,
    apply_paper_style,
    double_logistic,
    residuals,
    rmse,
    PAPER_FIGSIZE_SINGLE,
    PAPER_FIGSIZE_SQUARE,
)

# Settings
from .settings import (
    ParameterBounds,
    PhenologyFitSettings,
)

# Preprocessing
from .preprocessing import (
    ObservationGrid,
    add_day_index,
    filter_cycle_contamination,
    initial_guess,
)

# Solver
from .solver import (
    baseline_rmse,
    fit_double_logistic,
    project_slope_symmetry,
)

# Ensemble
from .ensemble import (
    EnsembleFit,
    ensemble_fit,
    fit_pixel_series,
    perturb_guess,
    second_pass_weights,
)

# QC
from .qc import (
    classify_fit,
    write_phenology_qc_report,
)

# Outliers
from .outliers import (
    ClusterOutlierFlags,
    cluster_outlier_flags,
    neighbor_support,
)

# Result
from .result import (
    PixelPhenology,
    PixelPhenologyResult,
)

# Plotting
from .plotting import (
    plot_pixel_fit_diagnostic,
    write_parameter_maps,
)

# Pipeline
from .pipeline import (
    fit_all_pixels,
    fit_median_series,
    fit_one_pixel,
    run_quality_control,
)

__all__ = [
    # Core
    "DL_PARAM_NAMES",
    "DLParams",
    "FitCancelled",
    "FitQuality",
    "InsufficientObservations",
    "NonConvergent",
    "PhenologyFitError",
    "RejectionDetail",
    "REJECTION_CODES",
    "apply_paper_style",
    "double_logistic",
    "residuals",
    "rmse",
    "PAPER_FIGSIZE_SINGLE",
    "PAPER_FIGSIZE_SQUARE",
    # Settings
    "ParameterBounds",
    "PhenologyFitSettings",
    # Preprocessing
    "ObservationGrid",
    "add_day_index",
    "filter_cycle_contamination",
    "initial_guess",
    # Solver
    "baseline_rmse",
    "fit_double_logistic",
    "project_slope_symmetry",
    # Ensemble
    "EnsembleFit",
    "ensemble_fit",
    "fit_pixel_series",
    "perturb_guess",
    "second_pass_weights",
    # QC
    "classify_fit",
    "write_phenology_qc_report",
    # Outliers
    "ClusterOutlierFlags",
    "cluster_outlier_flags",
    "neighbor_support",
    # Result
    "PixelPhenology",
    "PixelPhenologyResult",
    # Plotting
    "plot_pixel_fit_diagnostic",
    "write_parameter_maps",
    # Pipeline
    "fit_all_pixels",
    "fit_median_series",
    "fit_one_pixel",
    "run_quality_control",
]
