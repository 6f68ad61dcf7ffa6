from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pixel_phenology.fitting.preprocessing import ObservationGrid, add_day_index  # noqa: E402
from pixel_phenology.fitting.settings import ParameterBounds, PhenologyFitSettings  # noqa: E402
from pixel_phenology.loader import (  # noqa: E402
    apply_aoi_mask,
    load_fit_settings,
    load_yaml,
    read_aoi_mask,
    read_observation_table,
)


class TestSettingsValidation(unittest.TestCase):
    def test_defaults(self) -> None:
        s = PhenologyFitSettings()
        self.assertEqual(s.ensemble_runs, 5)
        self.assertEqual(s.min_observations, 4)
        self.assertAlmostEqual(s.rmse_threshold, 0.10)
        self.assertAlmostEqual(s.cluster_threshold, 4.0)
        self.assertAlmostEqual(s.spatial_rescue_fraction, 0.5)
        self.assertFalse(s.enable_second_pass)

    def test_invalid_values_raise(self) -> None:
        bad = [
            {"ensemble_runs": 0},
            {"perturbation": 1.5},
            {"slope_perturbation": -0.1},
            {"min_observations": 0},
            {"rmse_threshold": 0.0},
            {"spatial_rescue_fraction": 1.5},
            {"second_pass_weight_min": 3.0, "second_pass_weight_max": 2.0},
            {"slope_symmetry": 150.0},
            {"initial_guess": "random"},
            {"ensemble_aggregate": "mean"},
        ]
        for kwargs in bad:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ValueError):
                    PhenologyFitSettings(**kwargs)

    def test_bounds_min_must_be_below_max(self) -> None:
        with self.assertRaises(ValueError):
            ParameterBounds(sos=(200.0, 100.0))
        with self.assertRaises(ValueError):
            ParameterBounds(rsp=(0.0, 0.5))
        with self.assertRaises(ValueError):
            ParameterBounds(delta=(-0.1, 1.0))

    def test_unknown_keys_raise(self) -> None:
        with self.assertRaises(ValueError):
            PhenologyFitSettings.from_mapping({"ensemble_run": 5})
        with self.assertRaises(ValueError):
            ParameterBounds.from_mapping({"peak": [0, 1]})

    def test_with_overrides_validates(self) -> None:
        s = PhenologyFitSettings().with_overrides(rmse_threshold=0.2)
        self.assertAlmostEqual(s.rmse_threshold, 0.2)
        with self.assertRaises(ValueError):
            PhenologyFitSettings().with_overrides(cluster_threshold=-1.0)


class TestConfigLoading(unittest.TestCase):
    def test_load_fit_settings_from_yaml(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "config.yml"
            p.write_text(
                "phenology:\n"
                "  ensemble_runs: 7\n"
                "  rmse_threshold: 0.12\n"
                "  bounds:\n"
                "    season_length: [40, 200]\n",
                encoding="utf-8",
            )
            s = load_fit_settings(p, rmse_threshold=0.2, cluster_threshold=None)
        self.assertEqual(s.ensemble_runs, 7)
        self.assertAlmostEqual(s.rmse_threshold, 0.2)
        self.assertAlmostEqual(s.cluster_threshold, 4.0)
        self.assertEqual(s.bounds.season_length, (40.0, 200.0))
        self.assertEqual(s.bounds.sos, (1.0, 365.0))

    def test_missing_section_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "config.yml"
            p.write_text("other: 1\n", encoding="utf-8")
            self.assertEqual(load_fit_settings(p), PhenologyFitSettings())
        self.assertEqual(load_fit_settings(None), PhenologyFitSettings())

    def test_yaml_root_must_be_mapping(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "config.yml"
            p.write_text("- 1\n- 2\n", encoding="utf-8")
            with self.assertRaises(ValueError):
                load_yaml(p)

    def test_repository_example_config_loads(self) -> None:
        s = load_fit_settings(REPO_ROOT / "meta" / "config.yml")
        self.assertEqual(s, PhenologyFitSettings())


class TestObservationTable(unittest.TestCase):
    def test_day_index_continues_into_next_year(self) -> None:
        df = pd.DataFrame({"date": ["2020-01-01", "2020-12-31", "2021-01-01"]})
        out = add_day_index(df)
        self.assertEqual(out["t"].tolist(), [1.0, 366.0, 367.0])

    def test_grid_from_frame(self) -> None:
        df = pd.DataFrame(
            {
                "row": [0, 0, 1, 0, 1],
                "col": [0, 1, 0, 0, 0],
                "t": [10, 10, 10, 20, 20],
                "value": [0.2, 0.3, 0.4, 0.5, 0.6],
                "valid": [True, True, False, True, True],
            }
        )
        grid = ObservationGrid.from_frame(df)
        self.assertEqual((grid.n_frames, grid.height, grid.width), (2, 2, 2))
        np.testing.assert_array_equal(grid.times, [10.0, 20.0])
        self.assertFalse(grid.aoi_mask[1, 1])
        self.assertTrue(grid.aoi_mask[1, 0])
        self.assertTrue(np.isnan(grid.values[0, 1, 0]))
        t, y = grid.pixel_series(0, 0)
        np.testing.assert_array_equal(t, [10.0, 20.0])
        np.testing.assert_array_equal(y, [0.2, 0.5])

    def test_grid_arrays_are_read_only(self) -> None:
        grid = ObservationGrid(times=np.array([1.0]), values=np.zeros((1, 2, 2)), aoi_mask=None)
        with self.assertRaises(ValueError):
            grid.values[0, 0, 0] = 1.0

    def test_read_observation_table_and_aoi_mask(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            obs = Path(td) / "obs.csv"
            pd.DataFrame(
                {
                    "Row": [0, 0, 1, 1],
                    "Col": [0, 1, 0, 1],
                    "Date": ["2021-03-01"] * 4,
                    "NDVI": [0.1, 0.2, 0.3, 0.4],
                }
            ).to_csv(obs, index=False)
            grid = read_observation_table(obs, value_col="ndvi")
            self.assertEqual((grid.height, grid.width), (2, 2))
            self.assertEqual(grid.times.tolist(), [60.0])

            mask_path = Path(td) / "aoi.txt"
            mask_path.write_text("1 0\n1 1\n", encoding="utf-8")
            masked = apply_aoi_mask(grid, read_aoi_mask(mask_path))
            self.assertEqual(int(masked.aoi_mask.sum()), 3)
            self.assertFalse(masked.aoi_mask[0, 1])


if __name__ == "__main__":
    unittest.main()
