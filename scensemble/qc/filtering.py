"""Combine QC criteria into non-destructive discard annotations.

Nothing in this module removes data. Sample decisions are written to
``obs["discard"]`` and feature decisions to ``var["discard"]``; removal is a
separate, explicit call to :func:`apply_discard` (or
:meth:`DataContainer.select`) once the annotations have been reviewed.

Common Usage:
    >>> from scensemble.qc import add_per_sample_metrics, quick_check, apply_discard
    >>> add_per_sample_metrics(container, "counts")
    >>> report = quick_check(container.obs, alt_percent_fields=["ERCC_percent"],
    ...                      container=container)
    >>> print(report.to_dataframe())
    >>> filtered = apply_discard(container)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import polars as pl
import scipy.sparse as sp

from scensemble.core.exceptions import InvalidParameterError, ShapeMismatchError
from scensemble.core.structures import DataContainer
from scensemble.qc.outlier import OutlierResult, detect_outliers


@dataclass(frozen=True)
class DiscardReport:
    """
    Outcome of combining QC criteria.

    Attributes
    ----------
    discard : np.ndarray
        Boolean per element, the logical OR of all criteria.
    counts : dict[str, int]
        Number of elements flagged by each criterion on its own.
    outliers : dict[str, OutlierResult]
        Detector results (with thresholds) for criteria that came from
        :func:`detect_outliers`.
    """

    discard: np.ndarray
    counts: dict[str, int]
    outliers: dict[str, OutlierResult] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return int(self.discard.sum())

    def to_dataframe(self) -> pl.DataFrame:
        """Summary table: one row per criterion followed by a ``total`` row."""
        return pl.DataFrame(
            {
                "criterion": [*self.counts.keys(), "total"],
                "n_discarded": [*self.counts.values(), self.total],
            }
        )


def _as_flags(flags: Any) -> np.ndarray:
    if isinstance(flags, OutlierResult):
        return flags.flags
    arr = np.asarray(flags)
    if arr.dtype != bool:
        raise InvalidParameterError(
            f"QC criteria must be boolean, got dtype {arr.dtype}", parameter="flag_sets"
        )
    return arr.ravel()


def combine_discards(
    flag_sets: Mapping[str, Sequence[bool] | np.ndarray | OutlierResult],
    container: DataContainer | None = None,
    column: str = "discard",
) -> DiscardReport:
    """
    Combine named boolean criteria into one discard decision per sample.

    Parameters
    ----------
    flag_sets : Mapping[str, array-like of bool or OutlierResult]
        Criterion name to per-sample flags.
    container : DataContainer, optional
        If given, the combined decision is written to ``obs[column]``.
    column : str, default="discard"
        Name of the ``obs`` column to write.

    Returns
    -------
    DiscardReport
        ``discard = OR(criteria)`` plus per-criterion and total counts.

    Raises
    ------
    InvalidParameterError
        If no criteria are given or a criterion is not boolean.
    ShapeMismatchError
        If criteria lengths differ from each other or from the container.
    """
    if not flag_sets:
        raise InvalidParameterError("At least one QC criterion is required", parameter="flag_sets")

    arrays = {name: _as_flags(f) for name, f in flag_sets.items()}
    n = next(iter(arrays.values())).size
    for name, arr in arrays.items():
        if arr.size != n:
            raise ShapeMismatchError(
                f"Criterion '{name}' has {arr.size} values, expected {n}",
                expected=(n,),
                actual=(arr.size,),
            )

    discard = np.logical_or.reduce(list(arrays.values()))
    report = DiscardReport(
        discard=discard,
        counts={name: int(arr.sum()) for name, arr in arrays.items()},
        outliers={k: v for k, v in flag_sets.items() if isinstance(v, OutlierResult)},
    )

    if container is not None:
        container.set_obs_column(column, discard)
        container.log_operation(
            action="combine_discards",
            params={"criteria": list(arrays), "column": column},
            description=f"Flagged {report.total}/{n} samples for discard.",
        )
    return report


def _field(metrics: pl.DataFrame | Mapping[str, Any], name: str) -> np.ndarray:
    if name not in (metrics.columns if isinstance(metrics, pl.DataFrame) else metrics):
        raise InvalidParameterError(f"QC metric '{name}' not found", parameter=name)
    return np.asarray(metrics[name], dtype=np.float64)


def quick_check(
    metrics: pl.DataFrame | Mapping[str, Any],
    sum_field: str = "sum",
    detected_field: str = "detected",
    alt_percent_fields: Sequence[str] = (),
    nmads: float = 3.0,
    batch: Sequence[Any] | None = None,
    container: DataContainer | None = None,
) -> DiscardReport:
    """
    Standard sample QC in one step.

    Runs :func:`detect_outliers` with fixed choices and combines the results:

    - ``low_lib_size``: ``sum_field``, lower tail, log scale
    - ``low_n_features``: ``detected_field``, lower tail, log scale
    - ``high_{field}``: each of ``alt_percent_fields``, upper tail, log scale

    This is exactly the manual sequence of detector calls followed by
    :func:`combine_discards`, so both produce identical discard sets.

    Parameters
    ----------
    metrics : pl.DataFrame or Mapping
        Per-sample metrics, e.g. from :func:`per_sample_metrics` or ``obs``.
    sum_field, detected_field : str
        Columns holding library size and number of detected features.
    alt_percent_fields : Sequence[str]
        Columns holding alternative-experiment percentages (spike-ins, ...).
    nmads : float, default=3.0
        Number of MADs for every criterion.
    batch : array-like, optional
        Batch labels for per-batch thresholds.
    container : DataContainer, optional
        If given, ``obs["discard"]`` is written.
    """
    criteria: dict[str, OutlierResult] = {
        "low_lib_size": detect_outliers(
            _field(metrics, sum_field), log=True, direction="lower", nmads=nmads, batch=batch
        ),
        "low_n_features": detect_outliers(
            _field(metrics, detected_field), log=True, direction="lower", nmads=nmads, batch=batch
        ),
    }
    for name in alt_percent_fields:
        criteria[f"high_{name}"] = detect_outliers(
            _field(metrics, name), log=True, direction="upper", nmads=nmads, batch=batch
        )
    return combine_discards(criteria, container=container)


def feature_filter(
    container: DataContainer,
    assay_name: str = "counts",
    detection_limit: float = 0.0,
    min_samples: int = 1,
    column: str = "discard",
) -> DiscardReport:
    """
    Flag features detected in too few samples.

    A feature is kept when at least ``min_samples`` samples have a value
    ``>= detection_limit``; otherwise ``var[column]`` is True. No data is
    removed.

    Args:
        container: The DataContainer (annotated in place).
        assay_name: Assay to test. Defaults to "counts".
        detection_limit: Minimum value for a sample to count as expressing.
        min_samples: Minimum number of expressing samples.
        column: Name of the ``var`` column to write.

    Returns:
        DiscardReport with a single ``low_detection`` criterion.
    """
    if min_samples < 0:
        raise InvalidParameterError(
            f"min_samples must be non-negative, got {min_samples}", parameter="min_samples"
        )
    X = container.get_assay(assay_name)
    if sp.issparse(X):
        if detection_limit > 0:
            n_expr = np.asarray((X >= detection_limit).sum(axis=1)).ravel()
        else:
            # sparse >= 0 would densify; implicit zeros always qualify here
            n_expr = container.n_samples - np.asarray((X < detection_limit).sum(axis=1)).ravel()
    else:
        with np.errstate(invalid="ignore"):
            n_expr = np.sum(np.asarray(X) >= detection_limit, axis=1)

    discard = np.asarray(n_expr < min_samples, dtype=bool)
    container.set_var_column(column, discard)
    container.log_operation(
        action="feature_filter",
        params={
            "assay": assay_name,
            "detection_limit": detection_limit,
            "min_samples": min_samples,
        },
        description=f"Flagged {int(discard.sum())}/{discard.size} features for discard.",
    )
    return DiscardReport(discard=discard, counts={"low_detection": int(discard.sum())})


def apply_discard(
    container: DataContainer,
    samples: bool = True,
    features: bool = True,
    column: str = "discard",
) -> DataContainer:
    """
    Remove flagged samples and/or features, returning a new container.

    This is the explicit, destructive step that follows QC review. Missing
    (null) annotations count as keep.

    Raises
    ------
    InvalidParameterError
        If a requested axis has no ``column`` annotation.
    """

    def keep(df: pl.DataFrame, label: str) -> np.ndarray:
        if column not in df.columns:
            raise InvalidParameterError(
                f"No '{column}' column in {label}; run the QC step first", parameter="column"
            )
        return ~df[column].fill_null(False).cast(pl.Boolean).to_numpy()

    sample_keep = keep(container.obs, "obs") if samples else None
    feature_keep = keep(container.var, "var") if features else None
    return container.select(sample_indices=sample_keep, feature_indices=feature_keep)
