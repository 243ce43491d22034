"""Tests for discard annotations, quick_check, feature filtering and removal."""

import numpy as np
import pytest

from scensemble.core import InvalidParameterError, ShapeMismatchError
from scensemble.qc import (
    add_per_sample_metrics,
    apply_discard,
    combine_discards,
    detect_outliers,
    feature_filter,
    per_sample_metrics,
    quick_check,
)


class TestCombineDiscards:
    """Test OR-combination of criteria."""

    def test_or_of_flags(self):
        report = combine_discards(
            {
                "a": [True, False, False, False],
                "b": [True, True, False, False],
            }
        )
        assert report.discard.tolist() == [True, True, False, False]
        assert report.counts == {"a": 1, "b": 2}
        assert report.total == 2

    def test_summary_table(self):
        report = combine_discards({"a": [True, False], "b": [True, True]})
        df = report.to_dataframe()
        assert df["criterion"].to_list() == ["a", "b", "total"]
        assert df["n_discarded"].to_list() == [1, 2, 2]

    def test_accepts_outlier_results(self):
        res = detect_outliers([1, 1, 1, 1, 1, 100], log=True, direction="upper")
        report = combine_discards({"high": res})
        assert report.discard.tolist() == res.flags.tolist()
        assert report.outliers["high"] is res

    def test_writes_obs(self, small_container):
        combine_discards({"x": [False, True, False, False]}, container=small_container)
        assert small_container.obs["discard"].to_list() == [False, True, False, False]
        assert small_container.history[-1].action == "combine_discards"

    def test_length_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            combine_discards({"a": [True], "b": [True, False]})

    def test_container_length_mismatch(self, small_container):
        with pytest.raises(ShapeMismatchError):
            combine_discards({"a": [True, False]}, container=small_container)

    def test_empty(self):
        with pytest.raises(InvalidParameterError):
            combine_discards({})

    def test_non_boolean(self):
        with pytest.raises(InvalidParameterError):
            combine_discards({"a": [0, 1]})


class TestQuickCheck:
    """Test the one-step sample QC."""

    def test_equivalent_to_manual_sequence(self, synthetic_container):
        synthetic_container.extract_alt_experiment("ERCC", lambda fid: fid.startswith("ERCC-"))
        metrics = per_sample_metrics(synthetic_container)

        report = quick_check(metrics, alt_percent_fields=["ERCC_percent"])

        manual = combine_discards(
            {
                "low_lib_size": detect_outliers(
                    metrics["sum"], log=True, direction="lower", nmads=3
                ),
                "low_n_features": detect_outliers(
                    metrics["detected"], log=True, direction="lower", nmads=3
                ),
                "high_ERCC_percent": detect_outliers(
                    metrics["ERCC_percent"], log=True, direction="upper", nmads=3
                ),
            }
        )
        np.testing.assert_array_equal(report.discard, manual.discard)
        assert report.counts == manual.counts
        assert list(report.counts) == ["low_lib_size", "low_n_features", "high_ERCC_percent"]

    def test_flags_low_quality_samples(self, synthetic_container):
        synthetic_container.extract_alt_experiment("ERCC", lambda fid: fid.startswith("ERCC-"))
        add_per_sample_metrics(synthetic_container)
        report = quick_check(
            synthetic_container.obs,
            alt_percent_fields=["ERCC_percent"],
            container=synthetic_container,
        )
        expected = synthetic_container.obs["low_quality"].to_numpy()
        assert report.discard[expected].all()
        assert synthetic_container.obs["discard"].to_list() == report.discard.tolist()

    def test_missing_field(self, small_container):
        metrics = per_sample_metrics(small_container)
        with pytest.raises(InvalidParameterError):
            quick_check(metrics, alt_percent_fields=["ERCC_percent"])

    def test_accepts_mapping(self):
        report = quick_check({"sum": [100, 110, 105, 1], "detected": [50, 52, 51, 49]})
        assert report.discard.tolist() == [False, False, False, True]


class TestFeatureFilter:
    """Test detection-based feature flags."""

    def test_min_samples(self, small_container):
        report = feature_filter(small_container, detection_limit=1, min_samples=2)
        assert report.discard.tolist() == [False, False, True]
        assert report.counts == {"low_detection": 1}
        assert small_container.var["discard"].to_list() == [False, False, True]

    def test_sparse_matches_dense(self, small_container, sparse_container):
        for limit in (0.0, 1.0, 2.0):
            dense = feature_filter(small_container, detection_limit=limit, min_samples=2)
            sparse = feature_filter(sparse_container, detection_limit=limit, min_samples=2)
            assert dense.discard.tolist() == sparse.discard.tolist()

    def test_no_data_removed(self, small_container):
        feature_filter(small_container, detection_limit=10, min_samples=1)
        assert small_container.shape == (3, 4)

    def test_negative_min_samples(self, small_container):
        with pytest.raises(InvalidParameterError):
            feature_filter(small_container, min_samples=-1)


class TestApplyDiscard:
    """Test the explicit removal step."""

    def test_removes_flagged(self, small_container):
        combine_discards({"x": [False, True, False, False]}, container=small_container)
        feature_filter(small_container, detection_limit=1, min_samples=2)

        filtered = apply_discard(small_container)
        assert filtered.shape == (2, 3)
        assert filtered.sample_ids.to_list() == ["S1", "S3", "S4"]
        assert small_container.shape == (3, 4)

    def test_samples_only(self, small_container):
        combine_discards({"x": [True, False, False, False]}, container=small_container)
        filtered = apply_discard(small_container, features=False)
        assert filtered.shape == (3, 3)

    def test_requires_annotation(self, small_container):
        with pytest.raises(InvalidParameterError):
            apply_discard(small_container)


class TestEndToEnd:
    """The documented 4-sample x 3-feature example."""

    def test_small_example(self, small_container):
        metrics = per_sample_metrics(small_container)
        np.testing.assert_array_equal(metrics["sum"].to_numpy(), [4, 3, 1, 6])
        np.testing.assert_array_equal(metrics["detected"].to_numpy(), [2, 2, 1, 2])

        res = detect_outliers(metrics["sum"], log=False, direction="lower", nmads=1)
        # median 3.5, scaled MAD 2.22: only the sample with sum 1 is below 1.28
        assert res.flags.tolist() == [False, False, True, False]

        report = combine_discards({"low_sum": res}, container=small_container)
        assert report.total == 1
        filtered = apply_discard(small_container, features=False)
        assert filtered.sample_ids.to_list() == ["S1", "S2", "S4"]
