from __future__ import annotations

import sys
import unittest
from pathlib import Path

import numpy as np

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pixel_phenology.fitting.core import DL_PARAM_NAMES, DLParams, FitQuality, RejectionDetail  # noqa: E402
from pixel_phenology.fitting.outliers import cluster_outlier_flags, neighbor_support  # noqa: E402
from pixel_phenology.fitting.result import PixelPhenology, PixelPhenologyResult  # noqa: E402


def _good(row: int, col: int, sos: float = 10.0) -> PixelPhenology:
    params = DLParams(mn=0.15, mx=0.75, sos=sos, rsp=0.08, eos=200.0, rau=0.08, rmse=0.02)
    return PixelPhenology(row, col, params, 12, FitQuality.GOOD)


def _result(pixels: list[PixelPhenology], width: int, height: int) -> PixelPhenologyResult:
    return PixelPhenologyResult(width=width, height=height, pixels={(p.row, p.col): p for p in pixels})


class TestClusterFiltered(unittest.TestCase):
    def test_fewer_than_five_good_pixels_is_a_no_op(self) -> None:
        res = _result([_good(0, 0), _good(0, 1), _good(0, 2), _good(1, 0, sos=300.0)], width=3, height=2)
        self.assertIs(res.cluster_filtered(), res)

    def test_identical_parameters_give_no_outliers(self) -> None:
        res = _result([_good(r, c) for r in range(3) for c in range(3)], width=3, height=3)
        out = res.cluster_filtered()
        self.assertEqual(out.outlier_count, 0)
        self.assertEqual(out.good_count, 9)

    def test_isolated_outlier_is_flagged(self) -> None:
        # five good pixels on row 0; the deviant pixel has no good neighbours
        pixels = [_good(0, c) for c in range(5)] + [_good(2, 4, sos=100.0)]
        res = _result(pixels, width=5, height=3)
        out = res.cluster_filtered(threshold=4.0)

        self.assertEqual(out.get(2, 4).fit_quality, FitQuality.OUTLIER)
        for c in range(5):
            self.assertEqual(out.get(0, c).fit_quality, FitQuality.GOOD)
        self.assertEqual(out.outlier_count, 1)

        detail = out.get(2, 4).rejection_detail
        self.assertEqual(detail.reason, FitQuality.OUTLIER)
        self.assertEqual(detail.cluster_threshold, 4.0)
        self.assertGreater(detail.cluster_distance, 4.0)
        self.assertEqual(set(detail.param_z_scores), set(DL_PARAM_NAMES))
        self.assertEqual(max(detail.param_z_scores, key=detail.param_z_scores.get), "sos")
        # input result unchanged
        self.assertEqual(res.get(2, 4).fit_quality, FitQuality.GOOD)

    def test_deviant_pixel_surrounded_by_good_neighbours_is_rescued(self) -> None:
        pixels = [_good(r, c, sos=100.0 if (r, c) == (1, 1) else 10.0) for r in range(3) for c in range(3)]
        out = _result(pixels, width=3, height=3).cluster_filtered(threshold=4.0, spatial_rescue_fraction=0.5)
        self.assertEqual(out.get(1, 1).fit_quality, FitQuality.GOOD)
        self.assertEqual(out.outlier_count, 0)

    def test_rescue_fraction_above_one_half_can_fail(self) -> None:
        # two adjacent deviant pixels in a 2x4 block: each has 5 good neighbours, 1 of them a candidate
        pixels = [
            _good(r, c, sos=100.0 if (r, c) in {(0, 1), (0, 2)} else 10.0) for r in range(2) for c in range(4)
        ]
        res = _result(pixels, width=4, height=2)
        self.assertEqual(res.cluster_filtered(spatial_rescue_fraction=0.5).outlier_count, 0)
        out = res.cluster_filtered(spatial_rescue_fraction=0.9)
        self.assertEqual(out.outlier_count, 2)

    def test_non_good_pixels_are_ignored(self) -> None:
        pixels = [_good(0, c) for c in range(5)]
        poor = PixelPhenology(
            2,
            4,
            DLParams(0.15, 0.75, 300.0, 0.08, 400.0, 0.08, 0.5),
            12,
            FitQuality.POOR,
            RejectionDetail(reason=FitQuality.POOR, observation_count=12, rmse=0.5, rmse_threshold=0.1),
        )
        pixels.append(poor)
        out = _result(pixels, width=5, height=3).cluster_filtered()
        self.assertEqual(out.get(2, 4).fit_quality, FitQuality.POOR)
        self.assertEqual(out.outlier_count, 0)


class TestClusterOutlierFlags(unittest.TestCase):
    def test_mad_floor_keeps_distances_finite(self) -> None:
        values = np.zeros((6, 2, 3))
        good = np.ones((2, 3), dtype=bool)
        flags = cluster_outlier_flags(values, good)
        self.assertTrue(np.all(np.isfinite(flags.distance)))
        self.assertFalse(flags.candidate.any())

    def test_neighbor_support_counts(self) -> None:
        good = np.ones((3, 3), dtype=bool)
        candidate = np.zeros((3, 3), dtype=bool)
        candidate[0, 0] = True
        total, calm = neighbor_support(good, candidate)
        self.assertEqual(int(total[1, 1]), 8)
        self.assertEqual(int(calm[1, 1]), 7)
        self.assertEqual(int(total[0, 0]), 3)
        self.assertEqual(int(total[2, 2]), 3)

    def test_shape_mismatch_raises(self) -> None:
        with self.assertRaises(ValueError):
            cluster_outlier_flags(np.zeros((6, 2, 2)), np.ones((3, 3), dtype=bool))


if __name__ == "__main__":
    unittest.main()
