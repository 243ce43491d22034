"""Ensemble consensus clustering.

The engine runs in three stages:

1. ENSEMBLE: for every point of a parameter grid (projection dimensionality,
   distance metric, embedding provider, base algorithm) compute a sample
   distance matrix, embed it, and partition the embedding into ``k`` groups.
   Runs that fail or do not converge are recorded and excluded.
2. AGGREGATE: sum the co-assignment matrices of the successful runs and
   divide by the number of successful runs, giving the consensus matrix.
3. FINALIZE: average-linkage hierarchical clustering of ``1 - consensus``
   cut into exactly ``k`` groups, labelled ``1..k``.

Grid points are independent and may run on a thread pool; aggregation
starts only after every run has finished or failed.

Examples
--------
>>> from scensemble.cluster import ConsensusClusteringEngine
>>> from scensemble.config import ConsensusConfig
>>> engine = ConsensusClusteringEngine(ConsensusConfig(n_clusters=3))
>>> result = engine.run(container, assay_name="logcounts")
>>> container.obs["consensus_cluster"]
"""

from __future__ import annotations

import itertools
import threading
import warnings
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import reduce
from typing import Any

import numpy as np
import polars as pl
import scipy.sparse as sp
from sklearn.cluster import AgglomerativeClustering, KMeans, SpectralClustering
from sklearn.metrics import silhouette_samples

from scensemble.config.loader import ConsensusConfig
from scensemble.core.exceptions import (
    InsufficientRunsError,
    InvalidParameterError,
    ScEnsembleError,
)
from scensemble.core.structures import DataContainer, Matrix
from scensemble.dim_reduction.providers import (
    DISTANCE_METRICS,
    EMBEDDING_PROVIDERS,
    EmbeddingProvider,
    compute_distance,
    embed,
)

# (coordinates, k, seed) -> (labels, converged)
BaseAlgorithm = Callable[[np.ndarray, int, int], tuple[np.ndarray, bool]]


def _kmeans(coords: np.ndarray, k: int, seed: int) -> tuple[np.ndarray, bool]:
    model = KMeans(n_clusters=k, random_state=seed, n_init=10)
    labels = model.fit_predict(coords)
    return labels, bool(model.n_iter_ < model.max_iter)


def _hierarchical(coords: np.ndarray, k: int, seed: int) -> tuple[np.ndarray, bool]:
    model = AgglomerativeClustering(n_clusters=k, linkage="average")
    return model.fit_predict(coords), True


def _spectral(coords: np.ndarray, k: int, seed: int) -> tuple[np.ndarray, bool]:
    model = SpectralClustering(
        n_clusters=k,
        affinity="nearest_neighbors",
        n_neighbors=min(10, coords.shape[0] - 1),
        random_state=seed,
        assign_labels="kmeans",
    )
    return model.fit_predict(coords), True


BASE_ALGORITHMS: dict[str, BaseAlgorithm] = {
    "kmeans": _kmeans,
    "hierarchical": _hierarchical,
    "spectral": _spectral,
}


@dataclass(frozen=True)
class GridPoint:
    """One ensemble run configuration. ``seed`` is derived from ``index``."""

    index: int
    n_dims: int
    distance: str
    provider: str
    algorithm: str
    seed: int

    @property
    def label(self) -> str:
        return f"{self.distance}_{self.provider}_d{self.n_dims}_{self.algorithm}"


@dataclass(frozen=True)
class RunResult:
    """Outcome of a single ensemble run; ``labels`` is None when it failed."""

    point: GridPoint
    labels: np.ndarray | None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.labels is not None


@dataclass(frozen=True)
class ConsensusResult:
    """
    Final consensus clustering.

    Attributes
    ----------
    consensus : np.ndarray
        Symmetric (n_samples, n_samples) co-assignment frequencies.
    labels : np.ndarray
        Cluster id in ``1..n_clusters`` per sample.
    sample_ids : list
        Sample identifiers in matrix order.
    n_clusters : int
        Number of clusters ``k``.
    runs : list[RunResult]
        Every ensemble run, successful or not, in grid order.
    silhouette : np.ndarray
        Per-sample silhouette width on ``1 - consensus``; NaN when undefined.
    """

    consensus: np.ndarray
    labels: np.ndarray
    sample_ids: list
    n_clusters: int
    runs: list[RunResult] = field(default_factory=list)
    silhouette: np.ndarray | None = None

    @property
    def n_runs(self) -> int:
        return len(self.runs)

    @property
    def n_successful(self) -> int:
        return sum(r.success for r in self.runs)

    def assignment(self) -> dict[Any, int]:
        """Mapping of sample id to cluster id."""
        return dict(zip(self.sample_ids, self.labels.tolist()))

    def to_dataframe(self) -> pl.DataFrame:
        data: dict[str, Any] = {"sample_id": self.sample_ids, "cluster": self.labels}
        if self.silhouette is not None:
            data["silhouette"] = self.silhouette
        return pl.DataFrame(data)

    def runs_dataframe(self) -> pl.DataFrame:
        """One row per ensemble run with its parameters and outcome."""
        return pl.DataFrame(
            {
                "run": [r.point.index for r in self.runs],
                "n_dims": [r.point.n_dims for r in self.runs],
                "distance": [r.point.distance for r in self.runs],
                "provider": [r.point.provider for r in self.runs],
                "algorithm": [r.point.algorithm for r in self.runs],
                "seed": [r.point.seed for r in self.runs],
                "success": [r.success for r in self.runs],
                "error": [r.error for r in self.runs],
            },
            schema_overrides={"error": pl.Utf8},
        )


def default_dims(n_samples: int, max_dims: int = 15) -> list[int]:
    """
    Projection dimensionalities covering 4% to 7% of the sample count.

    At least one value is returned; values are capped at ``n_samples - 1``
    and thinned to at most ``max_dims`` evenly spaced values.
    """
    upper_cap = max(1, n_samples - 1)
    # rounding keeps 0.07 * 100 from becoming 7.000000000000001
    lo = min(max(1, int(np.floor(round(0.04 * n_samples, 6)))), upper_cap)
    hi = min(max(lo, int(np.ceil(round(0.07 * n_samples, 6)))), upper_cap)
    dims = np.arange(lo, hi + 1)
    if dims.size > max_dims:
        dims = np.unique(np.round(np.linspace(lo, hi, max_dims)).astype(int))
    return dims.tolist()


def build_grid(
    dims: Sequence[int],
    distances: Sequence[str],
    providers: Sequence[str],
    algorithms: Sequence[str],
    random_seed: int = 42,
) -> list[GridPoint]:
    """Cartesian product of the parameter lists; seed = ``random_seed + index``."""
    combos = itertools.product(distances, providers, dims, algorithms)
    grid = [
        GridPoint(
            index=i,
            n_dims=int(d),
            distance=dist,
            provider=prov,
            algorithm=alg,
            seed=random_seed + i,
        )
        for i, (dist, prov, d, alg) in enumerate(combos)
    ]
    if not grid:
        raise InvalidParameterError("The ensemble parameter grid is empty", parameter="grid")
    return grid


def co_assignment(labels: np.ndarray) -> np.ndarray:
    """Binary matrix with 1 where two samples share a label."""
    labels = np.asarray(labels)
    return (labels[:, None] == labels[None, :]).astype(np.float64)


def aggregate_runs(
    runs: Sequence[RunResult],
    n_samples: int,
    min_successful_runs: int = 2,
) -> np.ndarray:
    """
    Build the consensus matrix from ensemble runs.

    Co-assignment matrices of the successful runs are summed (in any order)
    and divided by the number of successful runs, not the number attempted.

    Raises
    ------
    InsufficientRunsError
        If fewer than ``max(2, min_successful_runs)`` runs succeeded.
    """
    successful = [r.labels for r in runs if r.success]
    required = max(2, min_successful_runs)
    if len(successful) < required:
        raise InsufficientRunsError(len(successful), required, n_total=len(runs))

    agreement = reduce(np.add, (co_assignment(lab) for lab in successful), np.zeros((n_samples, n_samples)))
    consensus = agreement / len(successful)
    np.fill_diagonal(consensus, 1.0)
    return consensus


def _relabel(labels: np.ndarray) -> np.ndarray:
    """Renumber labels 1..k in order of first appearance."""
    order = {lab: i + 1 for i, lab in enumerate(dict.fromkeys(labels.tolist()))}
    return np.array([order[lab] for lab in labels.tolist()], dtype=np.int64)


def finalize_consensus(consensus: np.ndarray, n_clusters: int) -> np.ndarray:
    """Average-linkage clustering of ``1 - consensus`` cut into exactly ``n_clusters`` groups."""
    n = consensus.shape[0]
    if not 2 <= n_clusters <= n:
        raise InvalidParameterError(
            f"k must satisfy 2 <= k <= n_samples ({n}), got {n_clusters}", parameter="k"
        )
    model = AgglomerativeClustering(n_clusters=n_clusters, metric="precomputed", linkage="average")
    return _relabel(model.fit_predict(1.0 - consensus))


def _silhouette(consensus: np.ndarray, labels: np.ndarray) -> np.ndarray:
    n_labels = np.unique(labels).size
    if not 2 <= n_labels <= consensus.shape[0] - 1:
        return np.full(labels.shape, np.nan)
    return silhouette_samples(1.0 - consensus, labels, metric="precomputed")


class ConsensusClusteringEngine:
    """
    Ensemble consensus clustering engine.

    Parameters
    ----------
    config : ConsensusConfig, optional
        Grid and run settings. If None, uses defaults.
    providers : Mapping[str, EmbeddingProvider], optional
        Extra embedding providers, merged over the built-in ones.
    algorithms : Mapping[str, BaseAlgorithm], optional
        Extra base clustering algorithms, merged over the built-in ones.
        A base algorithm returns ``(labels, converged)``.
    """

    def __init__(
        self,
        config: ConsensusConfig | None = None,
        providers: Mapping[str, EmbeddingProvider] | None = None,
        algorithms: Mapping[str, BaseAlgorithm] | None = None,
    ):
        self.config = config or ConsensusConfig()
        self.providers: dict[str, EmbeddingProvider] = {**EMBEDDING_PROVIDERS, **(providers or {})}
        self.algorithms: dict[str, BaseAlgorithm] = {**BASE_ALGORITHMS, **(algorithms or {})}

    # ------------------------------------------------------------------

    def grid(self, n_samples: int) -> list[GridPoint]:
        """Build and validate the parameter grid for ``n_samples`` samples."""
        cfg = self.config
        dims = list(cfg.dims) if cfg.dims is not None else default_dims(n_samples, cfg.max_dims)
        bad_dims = [d for d in dims if not 1 <= d <= n_samples]
        if bad_dims:
            raise InvalidParameterError(
                f"Projection dimensions must be in [1, {n_samples}], got {bad_dims}",
                parameter="dims",
            )
        for name, known, param in (
            (cfg.distances, DISTANCE_METRICS, "distances"),
            (cfg.providers, self.providers, "providers"),
            (cfg.algorithms, self.algorithms, "algorithms"),
        ):
            unknown = [v for v in name if v not in known]
            if unknown:
                raise InvalidParameterError(f"Unknown {param}: {unknown}", parameter=param)
        return build_grid(dims, cfg.distances, cfg.providers, cfg.algorithms, cfg.random_seed)

    def _run_point(
        self,
        point: GridPoint,
        distances: Mapping[str, np.ndarray],
        k: int,
        cancel: threading.Event | None,
    ) -> RunResult:
        if cancel is not None and cancel.is_set():
            return RunResult(point, None, "cancelled")
        try:
            coords = embed(
                distances[point.distance],
                point.n_dims,
                provider=self.providers[point.provider],
                random_state=point.seed,
            )
            labels, converged = self.algorithms[point.algorithm](coords, k, point.seed)
        except (ScEnsembleError, ValueError, ArithmeticError, RuntimeError, np.linalg.LinAlgError) as e:
            return RunResult(point, None, f"{type(e).__name__}: {e}")
        if not converged:
            return RunResult(point, None, "did not converge")
        return RunResult(point, np.asarray(labels))

    def ensemble(
        self,
        X: Matrix,
        k: int,
        cancel: threading.Event | None = None,
    ) -> list[RunResult]:
        """
        ENSEMBLE stage: run every grid point on ``X``.

        Parameters
        ----------
        X : Matrix
            Features x samples matrix (an assay).
        k : int
            Number of clusters requested from each base algorithm.
        cancel : threading.Event, optional
            When set, pending runs are skipped and the whole ensemble is
            discarded with :class:`InsufficientRunsError`.

        Returns
        -------
        list[RunResult]
            One result per grid point, in grid order.

        Raises
        ------
        InvalidParameterError
            If ``k`` is out of range or the grid is invalid.
        InsufficientRunsError
            If the ensemble was cancelled.
        """
        n_samples = X.shape[1]
        if not 2 <= k <= n_samples:
            raise InvalidParameterError(
                f"k must satisfy 2 <= k <= n_samples ({n_samples}), got {k}", parameter="k"
            )
        points = self.grid(n_samples)

        data = X.T.toarray() if sp.issparse(X) else np.asarray(X, dtype=np.float64).T
        # one distance matrix per metric, shared read-only by all runs
        distances = {m: compute_distance(data, m) for m in dict.fromkeys(p.distance for p in points)}

        n_workers = max(1, int(self.config.n_workers))
        if n_workers == 1:
            runs = [self._run_point(p, distances, k, cancel) for p in points]
        else:
            with ThreadPoolExecutor(max_workers=n_workers) as executor:
                futures = [executor.submit(self._run_point, p, distances, k, cancel) for p in points]
                runs = [f.result() for f in futures]

        if cancel is not None and cancel.is_set():
            raise InsufficientRunsError(0, max(2, self.config.min_successful_runs), n_total=len(points))

        n_failed = sum(not r.success for r in runs)
        if n_failed:
            warnings.warn(
                f"{n_failed} of {len(runs)} ensemble runs failed and were excluded",
                stacklevel=2,
            )
        return runs

    def aggregate(self, runs: Sequence[RunResult], n_samples: int) -> np.ndarray:
        """AGGREGATE stage: consensus matrix over the successful runs."""
        return aggregate_runs(runs, n_samples, self.config.min_successful_runs)

    def finalize(self, consensus: np.ndarray, k: int) -> np.ndarray:
        """FINALIZE stage: labels ``1..k`` from the consensus matrix."""
        return finalize_consensus(consensus, k)

    # ------------------------------------------------------------------

    def run(
        self,
        container: DataContainer,
        assay_name: str = "logcounts",
        k: int | None = None,
        key_added: str = "consensus_cluster",
        cancel: threading.Event | None = None,
    ) -> ConsensusResult:
        """
        Run all stages on an assay and store the labels in ``obs``.

        Parameters
        ----------
        container : DataContainer
            Filtered container; its ``obs`` receives ``key_added`` (cluster
            ids) and ``{key_added}_silhouette``.
        assay_name : str, default="logcounts"
            Assay to cluster.
        k : int, optional
            Number of clusters; defaults to ``config.n_clusters``.
        key_added : str, default="consensus_cluster"
            Name of the ``obs`` column receiving the labels.
        cancel : threading.Event, optional
            Cancellation flag, see :meth:`ensemble`.

        Returns
        -------
        ConsensusResult
        """
        k = k if k is not None else self.config.n_clusters
        if k is None:
            raise InvalidParameterError(
                "Number of clusters not given and config.n_clusters is unset", parameter="k"
            )

        X = container.get_assay(assay_name)
        runs = self.ensemble(X, k, cancel=cancel)
        consensus = self.aggregate(runs, container.n_samples)
        labels = self.finalize(consensus, k)
        silhouette = _silhouette(consensus, labels)

        container.set_obs_column(key_added, labels)
        container.set_obs_column(f"{key_added}_silhouette", silhouette)

        result = ConsensusResult(
            consensus=consensus,
            labels=labels,
            sample_ids=container.sample_ids.to_list(),
            n_clusters=k,
            runs=list(runs),
            silhouette=silhouette,
        )
        container.log_operation(
            action="consensus_cluster",
            params={
                "assay": assay_name,
                "k": k,
                "n_runs": result.n_runs,
                "n_successful": result.n_successful,
                "key_added": key_added,
            },
            description=(
                f"Consensus clustering (k={k}) over {result.n_successful}/{result.n_runs} "
                f"successful runs on '{assay_name}'."
            ),
        )
        return result


def consensus_cluster(
    container: DataContainer,
    k: int,
    assay_name: str = "logcounts",
    config: ConsensusConfig | None = None,
    key_added: str = "consensus_cluster",
) -> ConsensusResult:
    """Functional shortcut for ``ConsensusClusteringEngine(config).run(...)``."""
    return ConsensusClusteringEngine(config).run(container, assay_name=assay_name, k=k, key_added=key_added)
