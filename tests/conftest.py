"""Shared pytest fixtures for scensemble tests.

Fixtures are organized by data structure: metadata, matrices and containers.
Matrices follow the library convention of features x samples.
"""

import numpy as np
import polars as pl
import pytest
from scipy import sparse

from scensemble.core import DataContainer
from scensemble.datasets import make_synthetic_counts


@pytest.fixture
def sample_obs() -> pl.DataFrame:
    """Create sample obs DataFrame with 4 samples.

    Returns
    -------
    pl.DataFrame
        DataFrame with sample IDs and batch assignments.
    """
    return pl.DataFrame({
        "_index": ["S1", "S2", "S3", "S4"],
        "batch": ["b1", "b1", "b2", "b2"],
    })


@pytest.fixture
def sample_var() -> pl.DataFrame:
    """Create sample var DataFrame with 3 features."""
    return pl.DataFrame({
        "_index": ["G1", "G2", "ERCC-1"],
        "symbol": ["ACTB", "GAPDH", None],
    })


@pytest.fixture
def small_counts() -> np.ndarray:
    """Create the 3 x 4 counts matrix used in end-to-end examples.

    Returns
    -------
    np.ndarray
        Per-sample sums are [4, 3, 1, 6] and detected counts [2, 2, 1, 2].
    """
    return np.array(
        [
            [0, 2, 0, 5],
            [1, 1, 1, 1],
            [3, 0, 0, 0],
        ],
        dtype=np.float64,
    )


@pytest.fixture
def small_container(small_counts, sample_obs, sample_var) -> DataContainer:
    """Create a 3 feature x 4 sample container with a dense counts assay."""
    return DataContainer(assays={"counts": small_counts}, obs=sample_obs, var=sample_var)


@pytest.fixture
def sparse_container(small_counts, sample_obs, sample_var) -> DataContainer:
    """Same data as ``small_container`` stored as a CSR matrix."""
    return DataContainer(
        assays={"counts": sparse.csr_matrix(small_counts)}, obs=sample_obs, var=sample_var
    )


@pytest.fixture
def synthetic_container() -> DataContainer:
    """Create a seeded synthetic counts container.

    Returns
    -------
    DataContainer
        40 samples in 2 well-separated clusters, 60 genes, 5 mitochondrial and
        5 spike-in features, with the last 2 samples of low quality.
    """
    return make_synthetic_counts(
        n_samples=40,
        n_genes=60,
        n_clusters=2,
        n_markers_per_cluster=8,
        n_spike_ins=5,
        n_mito=5,
        n_low_quality=2,
        marker_fold_change=20.0,
        random_seed=7,
    )


@pytest.fixture
def separated_data() -> tuple[np.ndarray, np.ndarray]:
    """Create a features x samples matrix with three compact groups.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        Data of shape (20, 30) and the true labels (1..3) per sample.
    """
    rng = np.random.default_rng(0)
    labels = np.repeat([1, 2, 3], 10)
    centers = rng.normal(0, 10, size=(3, 20))
    X = centers[labels - 1] + rng.normal(0, 0.5, size=(30, 20))
    return X.T, labels
