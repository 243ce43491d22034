from .exceptions import (
    ConfigurationError,
    EmbeddingFailureError,
    EmptySelectionError,
    InsufficientRunsError,
    InvalidParameterError,
    MissingAssayError,
    ScEnsembleError,
    ShapeMismatchError,
    UnknownSampleOrFeatureError,
)
from .structures import DataContainer, FeatureSelector, Matrix, ProvenanceLog
from .annotation import AnnotationResolver, MappingAnnotationResolver, annotate_features

__all__ = [
    "DataContainer",
    "ProvenanceLog",
    "Matrix",
    "FeatureSelector",
    "AnnotationResolver",
    "MappingAnnotationResolver",
    "annotate_features",
    "ScEnsembleError",
    "ShapeMismatchError",
    "MissingAssayError",
    "UnknownSampleOrFeatureError",
    "EmptySelectionError",
    "InvalidParameterError",
    "InsufficientRunsError",
    "EmbeddingFailureError",
    "ConfigurationError",
]
