"""
Central definitions for user-editable meta file paths.

All run inputs that users edit (fit config, AOI masks) live under meta/.
Scripts should use get_meta_paths(repo_root) so that moving files only
requires changing this module.

Layout:
  meta/
    config.yml     - phenology fit settings (phenology: mapping)
    aoi/           - optional AOI masks: {run_id}.txt (0/1 grid, one line per row)
"""
from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace


def get_meta_paths(repo_root: Path) -> SimpleNamespace:
    """Return paths to user-editable meta files under repo_root/meta/."""
    root = Path(repo_root)
    meta = root / "meta"
    return SimpleNamespace(
        config=meta / "config.yml",
        aoi_dir=meta / "aoi",
    )


def aoi_mask_path(repo_root: Path, run_id: str) -> Path:
    return get_meta_paths(repo_root).aoi_dir / f"{run_id}.txt"
