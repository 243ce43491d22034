from .providers import (
    DISTANCE_METRICS,
    EMBEDDING_PROVIDERS,
    DistanceMetric,
    EmbeddingProvider,
    compute_distance,
    embed,
    get_embedding_provider,
    mds_embedding,
    pca_embedding,
    spectral_embedding,
)

__all__ = [
    "DISTANCE_METRICS",
    "EMBEDDING_PROVIDERS",
    "DistanceMetric",
    "EmbeddingProvider",
    "compute_distance",
    "embed",
    "get_embedding_provider",
    "pca_embedding",
    "spectral_embedding",
    "mds_embedding",
]
