from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import yaml

from .fitting.preprocessing import ObservationGrid
from .fitting.settings import PhenologyFitSettings


def load_yaml(path: Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        obj = yaml.safe_load(f)
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValueError(f"YAML root must be a mapping: {path}")
    return obj


def load_fit_settings(path: Optional[Path], **overrides: Any) -> PhenologyFitSettings:
    """
    PhenologyFitSettings from the `phenology:` mapping of a config YAML.

    Missing file section -> defaults. Unknown keys raise ValueError.
    Keyword overrides (e.g. from CLI flags) win over the file; None values are ignored.
    """
    section: Dict[str, Any] = {}
    if path is not None:
        cfg = load_yaml(Path(path))
        raw = cfg.get("phenology", {})
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"'phenology' in {path} must be a mapping, got {type(raw).__name__}")
        section = dict(raw)
    section.update({k: v for k, v in overrides.items() if v is not None})
    return PhenologyFitSettings.from_mapping(section)


def _read_table(path: Path) -> pd.DataFrame:
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in {".tsv", ".tab"}:
        return pd.read_csv(path, sep="\t")
    return pd.read_csv(path)


def read_observation_table(
    path: Path,
    *,
    value_col: str = "value",
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> ObservationGrid:
    """
    Read a tidy observation table and build the ObservationGrid.

    Expected columns: row, col, (t | date), value; optional valid.
    Column names are matched case-insensitively after stripping whitespace.
    """
    df = _read_table(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    value_col = value_col.strip().lower()
    if value_col not in df.columns:
        raise ValueError(f"{path}: value column {value_col!r} not found, got: {df.columns.tolist()}")
    return ObservationGrid.from_frame(df, width=width, height=height, value_col=value_col)


def read_aoi_mask(path: Path) -> np.ndarray:
    """
    AOI presence bitmap from a whitespace/comma separated 0/1 text grid
    (one line per row). Non-zero = inside AOI.
    """
    path = Path(path)
    rows = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            s = line.strip()
            if not s or s.startswith("#"):
                continue
            rows.append([float(x) for x in s.replace(",", " ").split()])
    if not rows:
        raise ValueError(f"AOI mask is empty: {path}")
    widths = {len(r) for r in rows}
    if len(widths) != 1:
        raise ValueError(f"AOI mask rows have inconsistent lengths {sorted(widths)}: {path}")
    return np.asarray(rows, dtype=float) != 0.0


def apply_aoi_mask(grid: ObservationGrid, aoi_mask: np.ndarray) -> ObservationGrid:
    """Grid restricted to aoi_mask (intersected with the grid's own AOI)."""
    aoi = np.asarray(aoi_mask, dtype=bool)
    if aoi.shape != grid.aoi_mask.shape:
        raise ValueError(f"AOI mask shape {aoi.shape} does not match grid {grid.aoi_mask.shape}")
    return ObservationGrid(times=grid.times, values=grid.values, aoi_mask=grid.aoi_mask & aoi)
