"""Cluster marker detection.

For every feature and every cluster, samples are split into in-cluster and
out-of-cluster groups and the feature's values are ranked across all
samples. The area under the ROC curve of that ranking as a classifier of
cluster membership is

    AUROC = U / (n_in * n_out)

where ``U`` is the Mann-Whitney statistic of the in-cluster group, and the
significance is the two-sided Wilcoxon rank-sum p-value. A feature is a
marker of a cluster when ``AUROC > auroc_threshold`` and
``p < pvalue_threshold``. Within each cluster, markers are ranked by AUROC
(descending) and the first ``top_n`` are retained.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import polars as pl
import scipy.sparse as sp
import scipy.stats as stats

from scensemble.core.exceptions import InvalidParameterError
from scensemble.core.structures import DataContainer, Matrix


@dataclass(frozen=True)
class MarkerResult:
    """
    Marker scores for every (feature, cluster) pair.

    Attributes
    ----------
    feature_ids : np.ndarray
        Feature identifiers, aligned with the rows of the score matrices.
    clusters : np.ndarray
        Sorted cluster labels, aligned with the columns.
    auroc : np.ndarray
        (n_features, n_clusters) AUROC values.
    p_values : np.ndarray
        (n_features, n_clusters) two-sided rank-sum p-values.
    is_marker : np.ndarray
        Boolean (n_features, n_clusters), both thresholds passed.
    params : dict[str, Any]
        Thresholds and ``top_n`` used.
    """

    feature_ids: np.ndarray
    clusters: np.ndarray
    auroc: np.ndarray
    p_values: np.ndarray
    is_marker: np.ndarray
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def top_n(self) -> int:
        return int(self.params.get("top_n", 10))

    def to_dataframe(self) -> pl.DataFrame:
        """
        Long table with one row per (feature, cluster).

        Returns
        -------
        pl.DataFrame
            Columns feature_id, cluster, auroc, p_value, is_marker.
        """
        n_features, n_clusters = self.auroc.shape
        return pl.DataFrame(
            {
                "feature_id": np.repeat(self.feature_ids, n_clusters),
                "cluster": np.tile(self.clusters, n_features).tolist(),
                "auroc": self.auroc.ravel(),
                "p_value": self.p_values.ravel(),
                "is_marker": self.is_marker.ravel(),
            }
        )

    def top_markers(self, cluster: Any = None) -> pl.DataFrame:
        """
        Retained markers: per cluster, markers sorted by AUROC descending and
        truncated to ``top_n``, with a 1-based ``rank`` column.

        Parameters
        ----------
        cluster : optional
            Restrict to one cluster label.
        """
        df = self.to_dataframe().filter(pl.col("is_marker"))
        if cluster is not None:
            df = df.filter(pl.col("cluster") == cluster)
        df = df.sort(
            ["cluster", "auroc", "p_value"], descending=[False, True, False], maintain_order=True
        )
        df = df.with_columns((pl.int_range(pl.len()).over("cluster") + 1).alias("rank"))
        return df.filter(pl.col("rank") <= self.top_n).drop("is_marker")

    def markers_for(self, cluster: Any) -> list:
        """Feature ids retained as markers of ``cluster``, best first."""
        return self.top_markers(cluster)["feature_id"].to_list()


def _auroc(ranks: np.ndarray, in_cluster: np.ndarray) -> np.ndarray:
    n_in = int(in_cluster.sum())
    n_out = in_cluster.size - n_in
    u = ranks[:, in_cluster].sum(axis=1) - n_in * (n_in + 1) / 2.0
    return u / (n_in * n_out)


def score_markers(X: Matrix, labels: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    AUROC and p-value of every feature for every cluster.

    Parameters
    ----------
    X : Matrix
        Features x samples values.
    labels : np.ndarray
        Cluster label per sample; at least two distinct labels.

    Returns
    -------
    clusters, auroc, p_values
        Sorted cluster labels and two (n_features, n_clusters) arrays.
        Features constant across all samples get AUROC 0.5 and p-value 1.
    """
    X = X.toarray() if sp.issparse(X) else np.asarray(X, dtype=np.float64)
    labels = np.asarray(labels)
    if labels.shape != (X.shape[1],):
        raise InvalidParameterError(
            f"Expected {X.shape[1]} cluster labels, got {labels.size}", parameter="labels"
        )
    clusters = np.unique(labels)
    if clusters.size < 2:
        raise InvalidParameterError(
            "Marker detection needs at least two clusters", parameter="labels"
        )

    ranks = stats.rankdata(X, axis=1)
    tied = np.any(np.diff(np.sort(X, axis=1), axis=1) == 0, axis=1)
    auroc = np.empty((X.shape[0], clusters.size))
    p_values = np.empty((X.shape[0], clusters.size))

    for j, c in enumerate(clusters):
        in_cluster = labels == c
        auroc[:, j] = _auroc(ranks, in_cluster)
        p_values[:, j] = _rank_sum_pvalues(X, in_cluster, tied)

    return clusters, auroc, p_values


def _rank_sum_pvalues(X: np.ndarray, in_cluster: np.ndarray, tied: np.ndarray) -> np.ndarray:
    # scipy picks the exact test only for small, tie-free batches, so rows
    # with ties are tested separately
    p = np.ones(X.shape[0])
    for rows in (~tied, tied):
        if not rows.any():
            continue
        sub = X[rows]
        with np.errstate(invalid="ignore", divide="ignore"):
            res = stats.mannwhitneyu(
                sub[:, in_cluster], sub[:, ~in_cluster], axis=1, alternative="two-sided"
            )
        p[rows] = np.nan_to_num(np.asarray(res.pvalue, dtype=np.float64), nan=1.0)
    return p


def find_markers(
    container: DataContainer,
    assay_name: str = "logcounts",
    cluster_key: str = "consensus_cluster",
    auroc_threshold: float = 0.85,
    pvalue_threshold: float = 0.01,
    top_n: int = 10,
) -> MarkerResult:
    """
    Detect marker features of each cluster.

    The per-feature best retained cluster is written to ``var``:
    ``marker_cluster`` (null for non-markers), ``marker_auroc`` and
    ``marker_pvalue`` (the scores for that cluster, or for the highest-AUROC
    cluster when the feature is not a retained marker).

    Parameters
    ----------
    container : DataContainer
        Container with cluster labels in ``obs[cluster_key]``.
    assay_name : str, default="logcounts"
        Assay whose values are ranked.
    cluster_key : str, default="consensus_cluster"
        ``obs`` column with the cluster label of each sample.
    auroc_threshold : float, default=0.85
        Minimum (exclusive) AUROC of a marker.
    pvalue_threshold : float, default=0.01
        Maximum (exclusive) p-value of a marker.
    top_n : int, default=10
        Markers retained per cluster.

    Returns
    -------
    MarkerResult

    Raises
    ------
    InvalidParameterError
        If ``cluster_key`` is missing, fewer than two clusters exist or
        ``top_n`` is not positive.
    MissingAssayError
        If the assay does not exist.
    """
    if cluster_key not in container.obs.columns:
        raise InvalidParameterError(
            f"Cluster column '{cluster_key}' not found in obs", parameter="cluster_key"
        )
    if top_n < 1:
        raise InvalidParameterError(f"top_n must be positive, got {top_n}", parameter="top_n")

    X = container.get_assay(assay_name)
    labels = container.obs[cluster_key].to_numpy()
    clusters, auroc, p_values = score_markers(X, labels)
    is_marker = (auroc > auroc_threshold) & (p_values < pvalue_threshold)

    result = MarkerResult(
        feature_ids=container.feature_ids.to_numpy(),
        clusters=clusters,
        auroc=auroc,
        p_values=p_values,
        is_marker=is_marker,
        params={
            "assay": assay_name,
            "cluster_key": cluster_key,
            "auroc_threshold": auroc_threshold,
            "pvalue_threshold": pvalue_threshold,
            "top_n": top_n,
        },
    )

    # mask out scores that did not make the per-cluster top list
    retained = np.zeros_like(is_marker)
    position = {fid: i for i, fid in enumerate(result.feature_ids.tolist())}
    cluster_list = clusters.tolist()
    column = {c: j for j, c in enumerate(cluster_list)}
    for row in result.top_markers().iter_rows(named=True):
        retained[position[row["feature_id"]], column[row["cluster"]]] = True

    masked = np.where(retained, auroc, -np.inf)
    best = np.argmax(np.where(retained.any(axis=1)[:, None], masked, auroc), axis=1)
    rows = np.arange(auroc.shape[0])
    has_marker = retained.any(axis=1)

    container.set_var_column(
        "marker_cluster",
        pl.Series([cluster_list[b] if m else None for b, m in zip(best, has_marker)]),
    )
    container.set_var_column("marker_auroc", auroc[rows, best])
    container.set_var_column("marker_pvalue", p_values[rows, best])

    container.log_operation(
        action="find_markers",
        params=dict(result.params),
        description=(
            f"Found {int(has_marker.sum())} retained markers across {clusters.size} clusters "
            f"(AUROC > {auroc_threshold}, p < {pvalue_threshold}, top {top_n})."
        ),
    )
    return result
