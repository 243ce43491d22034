"""Tests for the ensemble consensus clustering engine."""

import threading

import numpy as np
import pytest
from sklearn.metrics import adjusted_rand_score

from scensemble.cluster import (
    ConsensusClusteringEngine,
    GridPoint,
    RunResult,
    aggregate_runs,
    build_grid,
    co_assignment,
    consensus_cluster,
    default_dims,
    finalize_consensus,
)
from scensemble.config import ConsensusConfig
from scensemble.core import DataContainer, InsufficientRunsError, InvalidParameterError
from scensemble.dim_reduction import pca_embedding


def _point(i: int) -> GridPoint:
    return GridPoint(index=i, n_dims=2, distance="euclidean", provider="pca", algorithm="kmeans", seed=i)


def _container(X: np.ndarray) -> DataContainer:
    return DataContainer(assays={"logcounts": X})


def _config(**kwargs) -> ConsensusConfig:
    params = {
        "dims": [2, 3],
        "distances": ["euclidean", "pearson"],
        "providers": ["pca"],
        "algorithms": ["kmeans"],
    }
    params.update(kwargs)
    return ConsensusConfig(**params)


# =============================================================================
# Grid construction
# =============================================================================


class TestGrid:
    """Test dimensionality defaults and grid expansion."""

    def test_default_dims_range(self):
        assert default_dims(100) == [4, 5, 6, 7]

    def test_default_dims_small(self):
        assert default_dims(10) == [1]
        assert default_dims(2) == [1]

    def test_default_dims_thinned(self):
        dims = default_dims(1000, max_dims=15)
        assert len(dims) == 15
        assert dims[0] == 40
        assert dims[-1] == 70

    def test_build_grid(self):
        grid = build_grid([2, 3], ["euclidean", "pearson"], ["pca"], ["kmeans", "hierarchical"], 10)
        assert len(grid) == 8
        assert [p.index for p in grid] == list(range(8))
        assert [p.seed for p in grid] == list(range(10, 18))
        assert grid[0].label == "euclidean_pca_d2_kmeans"

    def test_empty_grid(self):
        with pytest.raises(InvalidParameterError):
            build_grid([], ["euclidean"], ["pca"], ["kmeans"])


# =============================================================================
# Aggregation and finalization
# =============================================================================


class TestAggregate:
    """Test the consensus matrix reduction."""

    def test_co_assignment(self):
        C = co_assignment(np.array([1, 1, 2]))
        np.testing.assert_array_equal(C, [[1, 1, 0], [1, 1, 0], [0, 0, 1]])

    def test_divides_by_successful_runs(self):
        labels = [
            np.array([1, 1, 2, 2]),
            np.array([1, 1, 1, 2]),
            np.array([1, 2, 2, 2]),
        ]
        runs = [
            RunResult(_point(0), labels[0]),
            RunResult(_point(1), None, "did not converge"),
            RunResult(_point(2), labels[1]),
            RunResult(_point(3), None, "EmbeddingFailureError: boom"),
            RunResult(_point(4), labels[2]),
        ]

        consensus = aggregate_runs(runs, n_samples=4)

        expected = sum(co_assignment(lab) for lab in labels) / 3
        np.testing.assert_allclose(consensus, expected)
        assert consensus[0, 1] == pytest.approx(2 / 3)
        assert consensus[0, 3] == pytest.approx(0.0)

    def test_order_independent(self):
        rng = np.random.default_rng(1)
        runs = [RunResult(_point(i), rng.integers(0, 3, size=10)) for i in range(6)]
        np.testing.assert_allclose(aggregate_runs(runs, 10), aggregate_runs(runs[::-1], 10))

    def test_insufficient_runs(self):
        runs = [RunResult(_point(0), np.array([1, 2])), RunResult(_point(1), None, "x")]
        with pytest.raises(InsufficientRunsError) as exc_info:
            aggregate_runs(runs, n_samples=2)
        assert exc_info.value.n_successful == 1
        assert exc_info.value.n_required == 2

    def test_min_runs_at_least_two(self):
        runs = [RunResult(_point(0), np.array([1, 2]))]
        with pytest.raises(InsufficientRunsError):
            aggregate_runs(runs, n_samples=2, min_successful_runs=1)

    def test_finalize_blocks(self):
        C = np.array(
            [
                [1.0, 0.9, 0.1, 0.0],
                [0.9, 1.0, 0.0, 0.1],
                [0.1, 0.0, 1.0, 0.8],
                [0.0, 0.1, 0.8, 1.0],
            ]
        )
        np.testing.assert_array_equal(finalize_consensus(C, 2), [1, 1, 2, 2])

    def test_finalize_exactly_k(self):
        C = np.ones((5, 5))
        labels = finalize_consensus(C, 3)
        assert sorted(set(labels.tolist())) == [1, 2, 3]

    @pytest.mark.parametrize("k", [1, 5])
    def test_finalize_invalid_k(self, k):
        with pytest.raises(InvalidParameterError):
            finalize_consensus(np.eye(4), k)


# =============================================================================
# Engine
# =============================================================================


class TestEngine:
    """Test the full ENSEMBLE -> AGGREGATE -> FINALIZE run."""

    def test_recovers_clusters(self, separated_data):
        X, truth = separated_data
        container = _container(X)
        result = ConsensusClusteringEngine(_config()).run(container, "logcounts", k=3)

        assert adjusted_rand_score(truth, result.labels) == pytest.approx(1.0)
        assert sorted(set(result.labels.tolist())) == [1, 2, 3]
        assert result.n_runs == 4
        assert result.n_successful == 4
        assert container.obs["consensus_cluster"].to_list() == result.labels.tolist()
        assert (container.obs["consensus_cluster_silhouette"].to_numpy() > 0.5).all()
        assert container.history[-1].action == "consensus_cluster"

    def test_consensus_matrix_properties(self, separated_data):
        X, _ = separated_data
        result = ConsensusClusteringEngine(_config()).run(_container(X), "logcounts", k=4)
        C = result.consensus

        np.testing.assert_array_equal(C, C.T)
        np.testing.assert_array_equal(np.diag(C), np.ones(C.shape[0]))
        assert C.min() >= 0.0
        assert C.max() <= 1.0

    def test_deterministic(self, separated_data):
        X, _ = separated_data
        a = ConsensusClusteringEngine(_config()).run(_container(X), "logcounts", k=3)
        b = ConsensusClusteringEngine(_config()).run(_container(X), "logcounts", k=3)
        np.testing.assert_array_equal(a.consensus, b.consensus)
        np.testing.assert_array_equal(a.labels, b.labels)

    def test_parallel_matches_serial(self, separated_data):
        X, _ = separated_data
        serial = ConsensusClusteringEngine(_config()).run(_container(X), "logcounts", k=3)
        parallel = ConsensusClusteringEngine(_config(n_workers=3)).run(_container(X), "logcounts", k=3)
        np.testing.assert_array_equal(serial.consensus, parallel.consensus)
        assert [r.point for r in parallel.runs] == [r.point for r in serial.runs]

    def test_failed_runs_excluded(self, separated_data):
        X, _ = separated_data

        def flaky(distances, n_components, random_state):
            if n_components in (2, 3):
                raise RuntimeError("projection failed")
            return pca_embedding(distances, n_components, random_state)

        config = _config(dims=[1, 2, 3, 4, 5], distances=["euclidean"], providers=["flaky"])
        engine = ConsensusClusteringEngine(config, providers={"flaky": flaky})

        with pytest.warns(UserWarning, match="2 of 5 ensemble runs failed"):
            result = engine.run(_container(X), "logcounts", k=3)

        assert result.n_runs == 5
        assert result.n_successful == 3
        failed = [r for r in result.runs if not r.success]
        assert [r.point.n_dims for r in failed] == [2, 3]
        assert all("EmbeddingFailureError" in r.error for r in failed)

        successful = [r.labels for r in result.runs if r.success]
        expected = sum(co_assignment(lab) for lab in successful) / 3
        np.testing.assert_allclose(result.consensus, expected)

    def test_non_converged_runs_fail(self, separated_data):
        X, _ = separated_data

        def stalls(coords, k, seed):
            return np.zeros(coords.shape[0], dtype=int), False

        engine = ConsensusClusteringEngine(_config(algorithms=["stalls"]), algorithms={"stalls": stalls})
        with pytest.warns(UserWarning):
            with pytest.raises(InsufficientRunsError) as exc_info:
                engine.run(_container(X), "logcounts", k=3)
        assert exc_info.value.n_successful == 0

    def test_other_base_algorithms(self, separated_data):
        X, truth = separated_data
        config = _config(algorithms=["hierarchical", "spectral"], distances=["euclidean"])
        result = ConsensusClusteringEngine(config).run(_container(X), "logcounts", k=3)
        assert result.n_runs == 4
        assert result.n_successful >= 2

        hierarchical = [r for r in result.runs if r.point.algorithm == "hierarchical"]
        for run in hierarchical:
            assert adjusted_rand_score(truth, run.labels) == pytest.approx(1.0)

    @pytest.mark.parametrize("k", [1, 31])
    def test_invalid_k(self, separated_data, k):
        X, _ = separated_data
        with pytest.raises(InvalidParameterError) as exc_info:
            ConsensusClusteringEngine(_config()).run(_container(X), "logcounts", k=k)
        assert exc_info.value.parameter == "k"

    def test_missing_k(self, separated_data):
        X, _ = separated_data
        with pytest.raises(InvalidParameterError):
            ConsensusClusteringEngine(_config()).run(_container(X), "logcounts")

    def test_k_from_config(self, separated_data):
        X, _ = separated_data
        result = ConsensusClusteringEngine(_config(n_clusters=3)).run(_container(X), "logcounts")
        assert result.n_clusters == 3

    def test_invalid_dims(self, separated_data):
        X, _ = separated_data
        with pytest.raises(InvalidParameterError) as exc_info:
            ConsensusClusteringEngine(_config(dims=[2, 40])).run(_container(X), "logcounts", k=3)
        assert exc_info.value.parameter == "dims"

    def test_unknown_distance(self, separated_data):
        X, _ = separated_data
        with pytest.raises(InvalidParameterError):
            ConsensusClusteringEngine(_config(distances=["cosine"])).run(_container(X), "logcounts", k=3)

    def test_empty_grid(self, separated_data):
        X, _ = separated_data
        with pytest.raises(InvalidParameterError):
            ConsensusClusteringEngine(_config(algorithms=[])).run(_container(X), "logcounts", k=3)

    def test_cancelled_ensemble(self, separated_data):
        X, _ = separated_data
        cancel = threading.Event()
        cancel.set()
        container = _container(X)
        with pytest.raises(InsufficientRunsError):
            ConsensusClusteringEngine(_config()).run(container, "logcounts", k=3, cancel=cancel)
        assert "consensus_cluster" not in container.obs.columns

    def test_default_dims_used(self, separated_data):
        X, _ = separated_data
        engine = ConsensusClusteringEngine(ConsensusConfig())
        grid = engine.grid(30)
        # 30 samples -> d in [1, 3]; 3 distances x 2 providers x 3 dims x 1 algorithm
        assert len(grid) == 18
        assert sorted({p.n_dims for p in grid}) == [1, 2, 3]


class TestResult:
    """Test result tables and the functional shortcut."""

    def test_tables(self, separated_data):
        X, _ = separated_data
        container = _container(X)
        result = consensus_cluster(container, k=3, config=_config())

        df = result.to_dataframe()
        assert df.columns == ["sample_id", "cluster", "silhouette"]
        assert df.height == 30
        assert df["sample_id"].to_list() == container.sample_ids.to_list()

        runs = result.runs_dataframe()
        assert runs.height == 4
        assert runs["success"].all()

        assignment = result.assignment()
        assert set(assignment) == set(container.sample_ids.to_list())
        assert set(assignment.values()) == {1, 2, 3}
