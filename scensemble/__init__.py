"""scEnsemble: single-cell quality control and consensus clustering.

A Python library for the first analysis steps of single-cell count data:
adaptive, non-destructive quality control followed by ensemble consensus
clustering and marker detection.

Key Features:
    - Data structure: DataContainer with features x samples assays, polars
      metadata and alternative experiments (spike-ins, ...)
    - Quality control: per-sample/per-feature metrics, MAD outlier detection,
      discard annotations and explicit filtering
    - Normalization: library-size log normalization
    - Consensus clustering: parameter-grid ensemble over distances, embedding
      providers and base algorithms, averaged into a consensus matrix
    - Markers: AUROC and Wilcoxon rank-sum scoring per cluster

Quick Start:
    >>> from scensemble import make_synthetic_counts, add_per_sample_metrics, quick_check
    >>> container = make_synthetic_counts(n_samples=60, n_low_quality=3)
    >>> container.extract_alt_experiment("ERCC", lambda fid: fid.startswith("ERCC-"))
    >>> add_per_sample_metrics(container, "counts")
    >>> quick_check(container.obs, alt_percent_fields=["ERCC_percent"], container=container)
    >>> container = apply_discard(container, features=False)
    >>> log_normalize(container)
    >>> result = consensus_cluster(container, k=3)
    >>> markers = find_markers(container)
"""

from __future__ import annotations

__version__ = "0.1.0"

# Core data structures and exceptions
from scensemble.core import (
    AnnotationResolver,
    ConfigurationError,
    DataContainer,
    EmbeddingFailureError,
    EmptySelectionError,
    InsufficientRunsError,
    InvalidParameterError,
    MappingAnnotationResolver,
    MissingAssayError,
    ProvenanceLog,
    ScEnsembleError,
    ShapeMismatchError,
    UnknownSampleOrFeatureError,
    annotate_features,
)

# Clustering
from scensemble.cluster import (
    ConsensusClusteringEngine,
    ConsensusResult,
    MarkerResult,
    consensus_cluster,
    find_markers,
)

# Configuration
from scensemble.config import (
    AnalysisConfig,
    ConsensusConfig,
    MarkerConfig,
    QCConfig,
    get_default_config,
    load_config,
    save_config,
)

# Datasets
from scensemble.datasets import make_synthetic_counts

# Dimensionality reduction
from scensemble.dim_reduction import compute_distance, embed

# Normalization
from scensemble.normalization import log_normalize

# Pipeline
from scensemble.pipeline import AnalysisPipeline, AnalysisResult

# Quality control
from scensemble.qc import (
    DiscardReport,
    OutlierResult,
    add_per_feature_metrics,
    add_per_sample_metrics,
    apply_discard,
    combine_discards,
    detect_outliers,
    feature_filter,
    per_feature_metrics,
    per_sample_metrics,
    quick_check,
)

__all__ = [
    "__version__",
    # core
    "DataContainer",
    "ProvenanceLog",
    "AnnotationResolver",
    "MappingAnnotationResolver",
    "annotate_features",
    # exceptions
    "ScEnsembleError",
    "ShapeMismatchError",
    "MissingAssayError",
    "UnknownSampleOrFeatureError",
    "EmptySelectionError",
    "InvalidParameterError",
    "InsufficientRunsError",
    "EmbeddingFailureError",
    "ConfigurationError",
    # qc
    "per_sample_metrics",
    "per_feature_metrics",
    "add_per_sample_metrics",
    "add_per_feature_metrics",
    "detect_outliers",
    "OutlierResult",
    "combine_discards",
    "quick_check",
    "feature_filter",
    "apply_discard",
    "DiscardReport",
    # normalization
    "log_normalize",
    # dim_reduction
    "compute_distance",
    "embed",
    # cluster
    "ConsensusClusteringEngine",
    "ConsensusResult",
    "consensus_cluster",
    "MarkerResult",
    "find_markers",
    # config
    "AnalysisConfig",
    "QCConfig",
    "ConsensusConfig",
    "MarkerConfig",
    "get_default_config",
    "load_config",
    "save_config",
    # datasets
    "make_synthetic_counts",
    # pipeline
    "AnalysisPipeline",
    "AnalysisResult",
]
