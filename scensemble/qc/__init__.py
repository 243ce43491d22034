"""Quality Control (QC) module.

This module provides a three-step, non-destructive QC workflow:
1. Metrics (metrics): per-sample and per-feature summary statistics.
2. Outliers (outlier): MAD-based adaptive thresholds.
3. Filtering (filtering): combine criteria into ``discard`` annotations;
   removal is an explicit :func:`apply_discard` call.

Common Usage:
    >>> from scensemble.qc import per_sample_metrics, quick_check, feature_filter
    >>>
    >>> metrics = per_sample_metrics(container, "counts", include_alt=True)
    >>> report = quick_check(metrics, alt_percent_fields=["ERCC_percent"], container=container)
    >>> feature_filter(container, "counts", detection_limit=1, min_samples=3)
    >>> container = apply_discard(container)
"""

from scensemble.qc.filtering import (
    DiscardReport,
    apply_discard,
    combine_discards,
    feature_filter,
    quick_check,
)
from scensemble.qc.metrics import (
    add_per_feature_metrics,
    add_per_sample_metrics,
    per_feature_metrics,
    per_sample_metrics,
)
from scensemble.qc.outlier import (
    MAD_SCALE,
    OutlierResult,
    OutlierThresholds,
    compute_mad,
    detect_outliers,
)

__all__ = [
    # metrics
    "per_sample_metrics",
    "per_feature_metrics",
    "add_per_sample_metrics",
    "add_per_feature_metrics",
    # outlier
    "MAD_SCALE",
    "compute_mad",
    "detect_outliers",
    "OutlierResult",
    "OutlierThresholds",
    # filtering
    "DiscardReport",
    "combine_discards",
    "quick_check",
    "feature_filter",
    "apply_discard",
]
