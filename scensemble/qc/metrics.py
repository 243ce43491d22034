"""Per-sample and per-feature summary statistics for quality control.

All functions here are pure with respect to their inputs: the ``per_*``
functions return a new :class:`polars.DataFrame` keyed by the sample or
feature identifiers, and the ``add_*`` variants store the same columns in
``obs`` / ``var`` of the container.

A value counts as *detected* when it is strictly greater than zero. This
threshold is fixed at this level; a configurable detection limit is applied
by :func:`scensemble.qc.filtering.feature_filter`.

Matrices are features x samples, so per-sample statistics reduce over axis 0
and per-feature statistics over axis 1.
"""

from __future__ import annotations

from collections.abc import Mapping

import numpy as np
import polars as pl
import scipy.sparse as sp

from scensemble.core.structures import DataContainer, FeatureSelector, Matrix


def _sum(X: Matrix, axis: int) -> np.ndarray:
    if sp.issparse(X):
        return np.asarray(X.sum(axis=axis), dtype=np.float64).ravel()
    return np.nansum(np.asarray(X, dtype=np.float64), axis=axis)


def _detected(X: Matrix, axis: int) -> np.ndarray:
    if sp.issparse(X):
        return np.asarray((X > 0).sum(axis=axis)).ravel().astype(np.int64)
    return np.sum(np.asarray(X) > 0, axis=axis).astype(np.int64)


def _rows(X: Matrix, mask: np.ndarray) -> Matrix:
    if sp.issparse(X):
        return X.tocsr()[np.flatnonzero(mask), :]
    return X[mask, :]


def _percent(part: np.ndarray, whole: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = 100.0 * part / whole
    pct[whole == 0] = np.nan
    return pct


def per_sample_metrics(
    container: DataContainer,
    assay_name: str = "counts",
    include_alt: bool = True,
    subsets: Mapping[str, FeatureSelector] | None = None,
) -> pl.DataFrame:
    """
    Compute per-sample QC metrics.

    Parameters
    ----------
    container : DataContainer
        Source container.
    assay_name : str, default="counts"
        Assay to summarise. Alternative experiments are read from their assay
        of the same name.
    include_alt : bool, default=True
        Whether to add one group of columns per alternative experiment.
    subsets : Mapping[str, FeatureSelector], optional
        Named feature subsets of the main assay (e.g. mitochondrial genes).

    Returns
    -------
    pl.DataFrame
        One row per sample, in container order, with columns:

        - ``sum``: total of the main assay
        - ``detected``: number of features with value > 0
        - ``subsets_{name}_sum`` / ``_detected`` / ``_percent`` per subset,
          the percentage taken relative to ``sum``
        - ``{alt}_sum`` / ``{alt}_detected`` / ``{alt}_percent`` per alternative
          experiment when ``include_alt``, the percentage taken relative to
          ``total``
        - ``total``: ``sum`` plus all alternative experiment sums

    Raises
    ------
    MissingAssayError
        If the assay is absent from the container or an alternative experiment.

    Examples
    --------
    >>> import numpy as np
    >>> from scensemble.core import DataContainer
    >>> X = np.array([[0, 2, 0, 5], [1, 1, 1, 1], [3, 0, 0, 0]])
    >>> c = DataContainer({"counts": X})
    >>> per_sample_metrics(c)["sum"].to_list()
    [4.0, 3.0, 1.0, 6.0]
    """
    X = container.get_assay(assay_name)
    main_sum = _sum(X, axis=0)

    columns: dict[str, np.ndarray] = {
        "sum": main_sum,
        "detected": _detected(X, axis=0),
    }

    for name, selector in (subsets or {}).items():
        mask = container.feature_mask(selector)
        sub = _rows(X, mask)
        sub_sum = _sum(sub, axis=0)
        columns[f"subsets_{name}_sum"] = sub_sum
        columns[f"subsets_{name}_detected"] = _detected(sub, axis=0)
        columns[f"subsets_{name}_percent"] = _percent(sub_sum, main_sum)

    total = main_sum.copy()
    if include_alt:
        alt_sums = {}
        for name, alt in container.alt_experiments.items():
            A = alt.get_assay(assay_name)
            alt_sums[name] = _sum(A, axis=0)
            columns[f"{name}_sum"] = alt_sums[name]
            columns[f"{name}_detected"] = _detected(A, axis=0)
            total = total + alt_sums[name]
        for name, s in alt_sums.items():
            columns[f"{name}_percent"] = _percent(s, total)
    columns["total"] = total

    df = pl.DataFrame({container.sample_id_col: container.sample_ids})
    return df.with_columns([pl.Series(k, v) for k, v in columns.items()])


def per_feature_metrics(
    container: DataContainer,
    assay_name: str = "counts",
) -> pl.DataFrame:
    """
    Compute per-feature QC metrics: ``mean`` across samples and ``detected``,
    the number of samples with a value > 0.
    """
    X = container.get_assay(assay_name)
    n = container.n_samples
    sums = _sum(X, axis=1)
    mean = sums / n if n else np.full(container.n_features, np.nan)

    return pl.DataFrame(
        {
            container.feature_id_col: container.feature_ids,
            "mean": mean,
            "detected": _detected(X, axis=1),
        }
    )


def add_per_sample_metrics(
    container: DataContainer,
    assay_name: str = "counts",
    include_alt: bool = True,
    subsets: Mapping[str, FeatureSelector] | None = None,
) -> DataContainer:
    """Compute :func:`per_sample_metrics` and store every column in ``obs``."""
    metrics = per_sample_metrics(container, assay_name, include_alt=include_alt, subsets=subsets)
    for col in metrics.columns:
        if col != container.sample_id_col:
            container.set_obs_column(col, metrics[col])

    container.log_operation(
        action="add_per_sample_metrics",
        params={
            "assay": assay_name,
            "include_alt": include_alt,
            "subsets": sorted(subsets or {}),
        },
        description=f"Added {metrics.width - 1} per-sample QC columns from '{assay_name}'.",
    )
    return container


def add_per_feature_metrics(
    container: DataContainer,
    assay_name: str = "counts",
) -> DataContainer:
    """Compute :func:`per_feature_metrics` and store the columns in ``var``."""
    metrics = per_feature_metrics(container, assay_name)
    for col in ("mean", "detected"):
        container.set_var_column(col, metrics[col])

    container.log_operation(
        action="add_per_feature_metrics",
        params={"assay": assay_name},
        description=f"Added per-feature QC columns from '{assay_name}'.",
    )
    return container
