"""Synthetic single-cell count data for tutorials and testing.

Counts are drawn from a negative binomial distribution whose mean depends
on the cluster of each sample, so the generated data has a known cluster
structure, known marker genes, spike-in features and mitochondrial features.
"""

from __future__ import annotations

import numpy as np
import polars as pl

from scensemble.core.exceptions import InvalidParameterError
from scensemble.core.structures import DataContainer

SPIKE_PREFIX = "ERCC-"
MITO_PREFIX = "MT-"


def _nb_counts(rng: np.random.Generator, mu: np.ndarray, dispersion: float) -> np.ndarray:
    """Negative binomial draws with mean ``mu`` and size ``1 / dispersion``."""
    size = 1.0 / dispersion
    p = size / (size + mu)
    return rng.negative_binomial(size, p)


def make_synthetic_counts(
    n_samples: int = 60,
    n_genes: int = 200,
    n_clusters: int = 3,
    n_markers_per_cluster: int = 10,
    n_spike_ins: int = 10,
    n_mito: int = 5,
    n_low_quality: int = 0,
    n_batches: int = 1,
    marker_fold_change: float = 8.0,
    dispersion: float = 0.2,
    random_seed: int = 42,
) -> DataContainer:
    """
    Generate a seeded counts container with known clusters.

    Parameters
    ----------
    n_samples : int, default=60
        Number of samples (cells).
    n_genes : int, default=200
        Number of endogenous genes, mitochondrial genes excluded.
    n_clusters : int, default=3
        Number of clusters; samples are assigned round-robin.
    n_markers_per_cluster : int, default=10
        Genes up-regulated by ``marker_fold_change`` in each cluster.
    n_spike_ins : int, default=10
        Spike-in features named ``ERCC-00001``, ...
    n_mito : int, default=5
        Mitochondrial features named ``MT-1``, ...
    n_low_quality : int, default=0
        Samples (the last ones) given a tiny library and a high
        mitochondrial and spike-in fraction.
    n_batches : int, default=1
        Number of batches, assigned round-robin to ``obs["batch"]``.
    marker_fold_change : float, default=8.0
        Mean multiplier of marker genes in their cluster.
    dispersion : float, default=0.2
        Negative binomial dispersion (variance = mu + dispersion * mu**2).
    random_seed : int, default=42
        Seed of the random generator.

    Returns
    -------
    DataContainer
        Container with a ``counts`` assay (features x samples); ``obs`` holds
        ``true_cluster`` (1..k), ``batch`` and ``low_quality``; ``var`` holds
        ``feature_type`` (gene, mito or spike_in) and ``marker_of`` (cluster
        id or null).

    Examples
    --------
    >>> container = make_synthetic_counts(n_samples=30, random_seed=0)
    >>> container.shape
    (215, 30)
    """
    if n_clusters < 1 or n_samples < n_clusters:
        raise InvalidParameterError(
            f"Need 1 <= n_clusters <= n_samples, got {n_clusters} and {n_samples}",
            parameter="n_clusters",
        )
    if n_markers_per_cluster * n_clusters > n_genes:
        raise InvalidParameterError(
            "Not enough genes for the requested number of markers",
            parameter="n_markers_per_cluster",
        )
    if not 0 <= n_low_quality <= n_samples:
        raise InvalidParameterError(
            f"n_low_quality must be in [0, {n_samples}]", parameter="n_low_quality"
        )

    rng = np.random.default_rng(seed=random_seed)

    clusters = np.arange(n_samples) % n_clusters + 1
    batches = np.array([f"Batch_{i % n_batches}" for i in range(n_samples)])
    low_quality = np.zeros(n_samples, dtype=bool)
    if n_low_quality:
        low_quality[-n_low_quality:] = True

    # Baseline gene means, log-normal across genes
    base_mu = rng.lognormal(mean=1.0, sigma=1.0, size=n_genes)
    mu = np.repeat(base_mu[:, None], n_samples, axis=1)

    marker_of: list[int | None] = [None] * n_genes
    for c in range(1, n_clusters + 1):
        rows = slice((c - 1) * n_markers_per_cluster, c * n_markers_per_cluster)
        mu[rows, clusters == c] *= marker_fold_change
        for g in range(rows.start, rows.stop):
            marker_of[g] = c

    # Per-sample library size variation
    mu *= rng.lognormal(mean=0.0, sigma=0.2, size=n_samples)[None, :]

    mito_mu = np.full((n_mito, n_samples), 5.0)
    spike_mu = np.full((n_spike_ins, n_samples), 3.0)
    if n_low_quality:
        mu[:, low_quality] *= 0.02
        mito_mu[:, low_quality] *= 10.0
        spike_mu[:, low_quality] *= 10.0

    counts = np.vstack(
        [
            _nb_counts(rng, mu, dispersion),
            _nb_counts(rng, mito_mu, dispersion),
            _nb_counts(rng, spike_mu, dispersion),
        ]
    ).astype(np.float64)

    gene_ids = [f"Gene_{i + 1:04d}" for i in range(n_genes)]
    mito_ids = [f"{MITO_PREFIX}{i + 1}" for i in range(n_mito)]
    spike_ids = [f"{SPIKE_PREFIX}{i + 1:05d}" for i in range(n_spike_ins)]

    var = pl.DataFrame(
        {
            "_index": gene_ids + mito_ids + spike_ids,
            "feature_type": ["gene"] * n_genes + ["mito"] * n_mito + ["spike_in"] * n_spike_ins,
            "marker_of": pl.Series(marker_of + [None] * (n_mito + n_spike_ins), dtype=pl.Int64),
        }
    )
    obs = pl.DataFrame(
        {
            "_index": [f"Cell_{i + 1:04d}" for i in range(n_samples)],
            "true_cluster": clusters,
            "batch": batches,
            "low_quality": low_quality,
        }
    )

    container = DataContainer(assays={"counts": counts}, obs=obs, var=var)
    container.log_operation(
        action="make_synthetic_counts",
        params={
            "n_samples": n_samples,
            "n_genes": n_genes,
            "n_clusters": n_clusters,
            "n_low_quality": n_low_quality,
            "random_seed": random_seed,
        },
        description="Generated synthetic negative binomial counts.",
    )
    return container
