"""Tests for infbench.aggregate: per-group metrics."""

from __future__ import annotations

import math
import unittest

from infbench.aggregate import AggregateRecord, aggregate, success_rate

from bench_test_helpers import make_result


class TestSuccessRate(unittest.TestCase):
    def test_one_of_three(self) -> None:
        self.assertEqual(success_rate(1, 3), 33.3)

    def test_two_of_three(self) -> None:
        self.assertEqual(success_rate(2, 3), 66.7)

    def test_nothing_attempted(self) -> None:
        self.assertEqual(success_rate(0, 0), 0.0)


class TestAggregate(unittest.TestCase):
    def test_mean_of_samples(self) -> None:
        (record,) = aggregate([make_result(wall_times=[1.0, 2.0, 3.0])])
        self.assertAlmostEqual(record.avg_duration, 2.0)  # type: ignore[arg-type]
        self.assertEqual(record.success_rate, 100.0)
        self.assertEqual((record.attempted, record.succeeded, record.runs), (3, 3, 1))

    def test_one_success_in_three(self) -> None:
        (record,) = aggregate([make_result(wall_times=[2.5, None, None])])
        self.assertEqual(record.success_rate, 33.3)
        self.assertAlmostEqual(record.avg_duration, 2.5)  # type: ignore[arg-type]
        self.assertEqual(record.failures, ["objects: exit code 1"])

    def test_all_failed_has_no_average(self) -> None:
        (record,) = aggregate([make_result(wall_times=[None, None])])
        self.assertIsNone(record.avg_duration)
        self.assertEqual(record.success_rate, 0.0)
        self.assertEqual(record.attempted, 2)

    def test_tasks_pooled_per_group(self) -> None:
        results = [
            make_result("candle", "small", "objects", wall_times=[1.0, 1.0]),
            make_result("candle", "small", "description", wall_times=[4.0, None]),
        ]
        (record,) = aggregate(results)
        self.assertAlmostEqual(record.avg_duration, 2.0)  # type: ignore[arg-type]
        self.assertEqual(record.success_rate, 75.0)
        self.assertEqual(record.runs, 2)

    def test_matrix_rows_in_planner_order(self) -> None:
        results = [make_result("onnx", "medium", wall_times=[1.0])]
        records = aggregate(results, backends=["candle", "onnx"], sizes=["small", "medium"])
        self.assertEqual(
            [(r.backend, r.model_size) for r in records],
            [("candle", "small"), ("candle", "medium"), ("onnx", "small"), ("onnx", "medium")],
        )
        self.assertEqual(sum(r.avg_duration is None for r in records), 3)

    def test_empty_group_is_unavailable(self) -> None:
        (record,) = aggregate([], backends=["candle"], sizes=["small"])
        self.assertIsNone(record.avg_duration)
        self.assertEqual(record.success_rate, 0.0)
        self.assertEqual(record.attempted, 0)
        self.assertFalse(record.has_data)
        self.assertEqual(record.to_dict()["avg_duration"], "unavailable")

    def test_results_outside_matrix_ignored(self) -> None:
        results = [
            make_result("candle", "small", wall_times=[1.0]),
            make_result("tensorrt", "small", wall_times=[0.1]),
            make_result("candle", "large", wall_times=[9.0]),
        ]
        records = aggregate(results, backends=["candle"], sizes=["small"])
        self.assertEqual(len(records), 1)
        self.assertAlmostEqual(records[0].avg_duration, 1.0)  # type: ignore[arg-type]

    def test_task_filter(self) -> None:
        results = [
            make_result("candle", "small", "objects", wall_times=[1.0]),
            make_result("candle", "small", "ocr", wall_times=[5.0]),
        ]
        (record,) = aggregate(results, backends=["candle"], sizes=["small"], tasks=["objects"])
        self.assertAlmostEqual(record.avg_duration, 1.0)  # type: ignore[arg-type]

    def test_first_appearance_order_without_matrix(self) -> None:
        results = [
            make_result("onnx", "small", wall_times=[1.0]),
            make_result("candle", "small", wall_times=[1.0]),
            make_result("onnx", "small", "description", wall_times=[1.0]),
        ]
        self.assertEqual([r.backend for r in aggregate(results)], ["onnx", "candle"])

    def test_never_nan(self) -> None:
        records = aggregate(
            [make_result(wall_times=[None])], backends=["candle", "x"], sizes=["small"]
        )
        for r in records:
            self.assertFalse(math.isnan(r.success_rate))
            self.assertTrue(0.0 <= r.success_rate <= 100.0)


class TestAggregateRecord(unittest.TestCase):
    def test_to_dict(self) -> None:
        record = AggregateRecord("candle", "small", 1.23456789, 50.0, 2, 1, 1, ["x"])
        d = record.to_dict()
        self.assertEqual(d["avg_duration"], 1.234568)
        self.assertEqual(d["success_rate"], 50.0)
        self.assertEqual(d["failures"], ["x"])


if __name__ == "__main__":
    unittest.main()
