"""Sample distances and embedding providers for consensus clustering.

An embedding provider is any callable

    provider(distances, n_components, random_state) -> coordinates

taking a symmetric ``(n_samples, n_samples)`` distance matrix and returning
``(n_samples, n_components)`` coordinates. The built-in providers are thin
wrappers around scikit-learn estimators; the projection algorithms themselves
are not implemented here.

Built-in providers:
    - "pca": principal components of the distance matrix
    - "spectral": Laplacian eigenmaps of a Gaussian affinity ``exp(-D / max(D))``
    - "mds": classical scaling, i.e. kernel PCA of ``-D**2 / 2``
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal, Union

import numpy as np
import scipy.sparse as sp
from scipy.spatial.distance import pdist, squareform
from scipy.stats import rankdata
from sklearn.decomposition import PCA, KernelPCA
from sklearn.manifold import SpectralEmbedding

from scensemble.core.exceptions import EmbeddingFailureError, InvalidParameterError

DistanceMetric = Literal["euclidean", "pearson", "spearman"]
EmbeddingProvider = Callable[[np.ndarray, int, int], np.ndarray]

DISTANCE_METRICS: tuple[str, ...] = ("euclidean", "pearson", "spearman")


def _correlation_distance(X: np.ndarray) -> np.ndarray:
    with np.errstate(invalid="ignore", divide="ignore"):
        corr = np.corrcoef(X)
    # constant samples have undefined correlation; treat as uncorrelated
    corr = np.nan_to_num(np.atleast_2d(corr), nan=0.0)
    D = 1.0 - corr
    np.fill_diagonal(D, 0.0)
    return np.clip(D, 0.0, 2.0)


def compute_distance(X: np.ndarray, metric: DistanceMetric = "euclidean") -> np.ndarray:
    """
    Compute a samples x samples distance matrix.

    Parameters
    ----------
    X : np.ndarray or sparse matrix
        Data with samples in rows and features in columns.
    metric : {"euclidean", "pearson", "spearman"}
        ``pearson`` and ``spearman`` use ``1 - correlation``.

    Returns
    -------
    np.ndarray
        Symmetric distance matrix with a zero diagonal.
    """
    if metric not in DISTANCE_METRICS:
        raise InvalidParameterError(
            f"Unknown distance metric {metric!r}; choose from {DISTANCE_METRICS}",
            parameter="metric",
        )
    X = X.toarray() if sp.issparse(X) else np.asarray(X, dtype=np.float64)

    if metric == "euclidean":
        return squareform(pdist(X, metric="euclidean"))
    if metric == "pearson":
        return _correlation_distance(X)
    return _correlation_distance(rankdata(X, axis=1))


def pca_embedding(distances: np.ndarray, n_components: int, random_state: int = 0) -> np.ndarray:
    """Principal components of the (column-centred) distance matrix."""
    model = PCA(n_components=n_components, svd_solver="full", random_state=random_state)
    return model.fit_transform(distances)


def spectral_embedding(distances: np.ndarray, n_components: int, random_state: int = 0) -> np.ndarray:
    """Laplacian eigenmaps on ``exp(-D / max(D))``."""
    scale = distances.max()
    affinity = np.exp(-distances / scale) if scale > 0 else np.ones_like(distances)
    model = SpectralEmbedding(
        n_components=n_components,
        affinity="precomputed",
        random_state=random_state,
    )
    return model.fit_transform(affinity)


def mds_embedding(distances: np.ndarray, n_components: int, random_state: int = 0) -> np.ndarray:
    """Classical multidimensional scaling via kernel PCA."""
    kernel = -0.5 * distances**2
    model = KernelPCA(n_components=n_components, kernel="precomputed", random_state=random_state)
    return model.fit_transform(kernel)


EMBEDDING_PROVIDERS: dict[str, EmbeddingProvider] = {
    "pca": pca_embedding,
    "spectral": spectral_embedding,
    "mds": mds_embedding,
}


def get_embedding_provider(provider: Union[str, EmbeddingProvider]) -> EmbeddingProvider:
    """Resolve a provider name to its callable; callables are returned unchanged."""
    if callable(provider):
        return provider
    try:
        return EMBEDDING_PROVIDERS[provider]
    except KeyError:
        raise InvalidParameterError(
            f"Unknown embedding provider {provider!r}; available: {sorted(EMBEDDING_PROVIDERS)}",
            parameter="provider",
        ) from None


def embed(
    distances: np.ndarray,
    n_components: int,
    provider: Union[str, EmbeddingProvider] = "pca",
    random_state: int = 0,
) -> np.ndarray:
    """
    Project samples into ``n_components`` dimensions with an embedding provider.

    Args:
        distances: Symmetric (n_samples, n_samples) distance matrix.
        n_components: Target dimensionality, 1 <= d <= n_samples.
        provider: Provider name from ``EMBEDDING_PROVIDERS`` or a callable.
        random_state: Seed forwarded to the provider.

    Returns:
        Coordinates of shape (n_samples, n_components).

    Raises:
        InvalidParameterError: If ``n_components`` is out of range.
        EmbeddingFailureError: If the provider raises or returns an unusable
            result (wrong shape or non-finite values).
    """
    fn = get_embedding_provider(provider)
    name = provider if isinstance(provider, str) else getattr(fn, "__name__", repr(fn))
    n = distances.shape[0]
    if not 1 <= n_components <= n:
        raise InvalidParameterError(
            f"n_components must be in [1, {n}], got {n_components}", parameter="n_components"
        )

    try:
        coords = np.asarray(fn(distances, n_components, random_state), dtype=np.float64)
    except EmbeddingFailureError:
        raise
    except Exception as e:
        raise EmbeddingFailureError(f"Embedding provider '{name}' failed: {e}", provider=name) from e

    if coords.shape != (n, n_components):
        raise EmbeddingFailureError(
            f"Embedding provider '{name}' returned shape {coords.shape}, "
            f"expected {(n, n_components)}",
            provider=name,
        )
    if not np.all(np.isfinite(coords)):
        raise EmbeddingFailureError(
            f"Embedding provider '{name}' returned non-finite coordinates", provider=name
        )
    return coords
