from __future__ import annotations

import math
import sys
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pixel_phenology.fitting.core import DLParams, FitQuality, RejectionDetail  # noqa: E402
from pixel_phenology.fitting.qc import classify_fit  # noqa: E402
from pixel_phenology.fitting.result import PixelPhenology, PixelPhenologyResult  # noqa: E402


def _fitted_pixel(row: int, col: int, rmse: float, threshold: float, n_valid: int = 10) -> PixelPhenology:
    params = DLParams(mn=0.15, mx=0.75, sos=120.0, rsp=0.08, eos=220.0, rau=0.08, rmse=rmse)
    quality, detail = classify_fit(n_valid, rmse, min_observations=4, rmse_threshold=threshold)
    return PixelPhenology(row, col, params, n_valid, quality, detail)


def _result(pixels: list[PixelPhenology], width: int = 3, height: int = 3) -> PixelPhenologyResult:
    return PixelPhenologyResult(width=width, height=height, pixels={(p.row, p.col): p for p in pixels})


class TestClassifyFit(unittest.TestCase):
    def test_too_few_observations_is_skipped(self) -> None:
        q, d = classify_fit(3, 0.01, min_observations=4, rmse_threshold=0.1)
        self.assertEqual(q, FitQuality.SKIPPED)
        self.assertEqual(d.observation_count, 3)
        self.assertEqual(d.min_observations, 4)

    def test_rmse_above_threshold_is_poor(self) -> None:
        q, d = classify_fit(10, 0.2, min_observations=4, rmse_threshold=0.15)
        self.assertEqual(q, FitQuality.POOR)
        self.assertEqual(d.rmse, 0.2)
        self.assertEqual(d.rmse_threshold, 0.15)

    def test_rmse_equal_to_threshold_is_good(self) -> None:
        q, d = classify_fit(10, 0.1, min_observations=4, rmse_threshold=0.1)
        self.assertEqual(q, FitQuality.GOOD)
        self.assertIsNone(d)

    def test_non_finite_rmse_is_poor(self) -> None:
        for r in (float("inf"), float("nan"), None):
            q, _ = classify_fit(10, r, min_observations=4, rmse_threshold=0.1)
            self.assertEqual(q, FitQuality.POOR)

    def test_good_pixel_cannot_carry_detail(self) -> None:
        detail = RejectionDetail(reason=FitQuality.POOR, observation_count=10, rmse=0.2, rmse_threshold=0.1)
        with self.assertRaises(ValueError):
            PixelPhenology(0, 0, DLParams(0.1, 0.7, 120.0, 0.08, 220.0, 0.08, 0.01), 10, FitQuality.GOOD, detail)

    def test_non_good_pixel_requires_detail(self) -> None:
        params = DLParams(0.1, 0.7, 120.0, 0.08, 220.0, 0.08, 0.5)
        for quality in (FitQuality.POOR, FitQuality.SKIPPED, FitQuality.OUTLIER):
            with self.subTest(quality=quality):
                with self.assertRaises(ValueError):
                    PixelPhenology(0, 0, params, 10, quality, None)


class TestThreeByThreeScenario(unittest.TestCase):
    def setUp(self) -> None:
        # corners outside AOI
        cells = [(0, 1), (1, 0), (1, 1), (1, 2), (2, 1)]
        self.pixels = [_fitted_pixel(r, c, 0.20 if (r, c) == (1, 1) else 0.05, threshold=0.15) for r, c in cells]
        self.result = _result(self.pixels)

    def test_center_is_poor_with_detail(self) -> None:
        center = self.result.get(1, 1)
        self.assertEqual(center.fit_quality, FitQuality.POOR)
        self.assertEqual(center.rejection_detail.rmse, 0.20)
        self.assertEqual(center.rejection_detail.rmse_threshold, 0.15)
        self.assertEqual(center.rejection_detail.observation_count, 10)

    def test_corners_have_no_record(self) -> None:
        for r, c in [(0, 0), (0, 2), (2, 0), (2, 2)]:
            self.assertIsNone(self.result.get(r, c))
        self.assertEqual(len(self.result), 5)

    def test_counts(self) -> None:
        self.assertEqual(self.result.good_count, 4)
        self.assertEqual(self.result.poor_count, 1)
        self.assertEqual(self.result.skipped_count, 0)
        self.assertEqual(self.result.outlier_count, 0)

    def test_iteration_is_row_major(self) -> None:
        self.assertEqual([(p.row, p.col) for p in self.result], [(0, 1), (1, 0), (1, 1), (1, 2), (2, 1)])

    def test_key_outside_grid_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            _result([_fitted_pixel(3, 0, 0.05, 0.1)])


class TestReclassification(unittest.TestCase):
    def setUp(self) -> None:
        params = DLParams(0.15, 0.75, 120.0, 0.08, 220.0, 0.08, float("nan"))
        skipped = PixelPhenology(
            1,
            1,
            params,
            2,
            FitQuality.SKIPPED,
            RejectionDetail(reason=FitQuality.SKIPPED, observation_count=2, min_observations=4),
        )
        outlier = PixelPhenology(
            1,
            2,
            params.with_rmse(0.01),
            10,
            FitQuality.OUTLIER,
            RejectionDetail(reason=FitQuality.OUTLIER, observation_count=10, cluster_distance=9.0, cluster_threshold=4.0),
        )
        self.result = _result(
            [
                _fitted_pixel(0, 0, 0.05, 0.10),
                _fitted_pixel(0, 1, 0.12, 0.10),
                _fitted_pixel(0, 2, 0.20, 0.10),
                _fitted_pixel(1, 0, float("inf"), 0.10),
                skipped,
                outlier,
            ]
        )

    def _qualities(self, result: PixelPhenologyResult) -> dict:
        return {k: p.fit_quality for k, p in result.pixels.items()}

    def test_raising_threshold_moves_poor_to_good(self) -> None:
        out = self.result.reclassified(0.15)
        q = self._qualities(out)
        self.assertEqual(q[(0, 0)], FitQuality.GOOD)
        self.assertEqual(q[(0, 1)], FitQuality.GOOD)
        self.assertEqual(q[(0, 2)], FitQuality.POOR)
        self.assertEqual(q[(1, 0)], FitQuality.POOR)
        self.assertIsNone(out.get(0, 1).rejection_detail)
        self.assertEqual(out.get(0, 2).rejection_detail.rmse_threshold, 0.15)

    def test_original_result_is_not_modified(self) -> None:
        before = self._qualities(self.result)
        self.result.reclassified(0.5)
        self.assertEqual(self._qualities(self.result), before)

    def test_raising_threshold_never_demotes(self) -> None:
        prev = self.result
        for thr in (0.06, 0.10, 0.13, 0.5, 10.0):
            nxt = self.result.reclassified(thr)
            for k, p in prev.pixels.items():
                if p.fit_quality == FitQuality.GOOD:
                    self.assertEqual(nxt.pixels[k].fit_quality, FitQuality.GOOD)
            prev = nxt

    def test_reclassification_is_idempotent(self) -> None:
        once = self.result.reclassified(0.15)
        twice = once.reclassified(0.15)
        self.assertEqual(dict(once.pixels), dict(twice.pixels))

    def test_skipped_and_outlier_are_untouched(self) -> None:
        out = self.result.reclassified(10.0)
        self.assertIs(out.get(1, 1), self.result.get(1, 1))
        self.assertIs(out.get(1, 2), self.result.get(1, 2))

    def test_unchanged_records_are_shared(self) -> None:
        out = self.result.reclassified(0.15)
        self.assertIs(out.get(0, 0), self.result.get(0, 0))

    def test_poor_pixel_with_nan_rmse_is_shared_at_same_threshold(self) -> None:
        res = _result([_fitted_pixel(0, 0, float("nan"), 0.10), _fitted_pixel(0, 1, float("inf"), 0.10)])
        out = res.reclassified(0.10)
        self.assertIs(out.get(0, 0), res.get(0, 0))
        self.assertIs(out.get(0, 1), res.get(0, 1))
        moved = res.reclassified(0.20)
        self.assertIsNot(moved.get(0, 0), res.get(0, 0))
        self.assertEqual(moved.get(0, 0).rejection_detail.rmse_threshold, 0.20)

    def test_non_convergent_pixel_stays_poor(self) -> None:
        out = self.result.reclassified(1e6)
        px = out.get(1, 0)
        self.assertEqual(px.fit_quality, FitQuality.POOR)
        self.assertTrue(math.isinf(px.rejection_detail.rmse))


if __name__ == "__main__":
    unittest.main()
