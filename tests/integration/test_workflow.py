"""
Integration tests for the complete analysis workflow.

This module tests the end-to-end workflow:
1. Alternative experiment extraction
2. Quality control metrics and discard annotations
3. Explicit filtering
4. Normalization
5. Consensus clustering
6. Marker detection
"""

import numpy as np
import pytest
from sklearn.metrics import adjusted_rand_score

from scensemble import (
    AnalysisConfig,
    AnalysisPipeline,
    ConsensusConfig,
    add_per_sample_metrics,
    apply_discard,
    consensus_cluster,
    feature_filter,
    find_markers,
    log_normalize,
    make_synthetic_counts,
    quick_check,
)


def _is_spike(fid: str) -> bool:
    return fid.startswith("ERCC-")


def _consensus_config(**kwargs) -> ConsensusConfig:
    params = {
        "dims": [2, 3],
        "distances": ["euclidean", "pearson"],
        "providers": ["pca"],
        "algorithms": ["kmeans"],
    }
    params.update(kwargs)
    return ConsensusConfig(**params)


class TestManualWorkflow:
    """Each step called explicitly."""

    def test_full_workflow(self, synthetic_container):
        container = synthetic_container
        n_features = container.n_features

        alt = container.extract_alt_experiment("ERCC", _is_spike)
        assert container.n_features + alt.n_features == n_features

        add_per_sample_metrics(container, "counts", subsets={"mito": lambda f: f.startswith("MT-")})
        report = quick_check(container.obs, alt_percent_fields=["ERCC_percent"], container=container)
        feature_filter(container, "counts", detection_limit=1, min_samples=2)

        low_quality = container.obs["low_quality"].to_numpy()
        assert report.discard[low_quality].all()

        filtered = apply_discard(container)
        assert filtered.n_samples == container.n_samples - report.total
        assert filtered.get_alt_experiment("ERCC").sample_ids.to_list() == filtered.sample_ids.to_list()

        log_normalize(filtered)
        result = consensus_cluster(filtered, k=2, config=_consensus_config())
        truth = filtered.obs["true_cluster"].to_numpy()
        assert adjusted_rand_score(truth, result.labels) == pytest.approx(1.0)

        markers = find_markers(filtered)
        marker_of = dict(zip(filtered.feature_ids.to_list(), filtered.var["marker_of"].to_list()))
        for c in (1, 2):
            true_cluster = truth[result.labels == c][0]
            assert marker_of[markers.markers_for(c)[0]] == true_cluster

        actions = [h.action for h in filtered.history]
        assert actions[-3:] == ["log_normalize", "consensus_cluster", "find_markers"]
        assert "select" in actions


class TestPipeline:
    """The config-driven pipeline."""

    def test_pipeline_run(self):
        container = make_synthetic_counts(
            n_samples=40,
            n_genes=60,
            n_clusters=2,
            n_markers_per_cluster=8,
            n_low_quality=2,
            marker_fold_change=20.0,
            random_seed=11,
        )
        config = AnalysisConfig(consensus=_consensus_config(n_clusters=2))
        pipeline = AnalysisPipeline(config, alt_experiments={"ERCC": _is_spike})

        result = pipeline.run(container)

        assert result.sample_qc.counts.keys() == {"low_lib_size", "low_n_features", "high_ERCC_percent"}
        assert not result.container.obs["low_quality"].any()
        assert result.consensus.n_clusters == 2
        assert set(result.consensus.labels.tolist()) == {1, 2}
        assert result.markers.is_marker.any()

        steps = [s["step"] for s in pipeline.get_execution_log()]
        assert steps == [
            "extract_ERCC",
            "metrics",
            "quick_check",
            "feature_filter",
            "apply_discard",
            "log_normalize",
            "consensus",
            "markers",
        ]
        assert all(s["runtime"] >= 0 for s in pipeline.get_execution_log())

    def test_pipeline_k_argument(self, synthetic_container):
        config = AnalysisConfig(consensus=_consensus_config())
        result = AnalysisPipeline(config).run(synthetic_container, k=2)
        assert np.unique(result.consensus.labels).size == 2
