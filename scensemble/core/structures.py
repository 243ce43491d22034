from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Union

import numpy as np
import polars as pl
import scipy.sparse as sp

from scensemble.core.exceptions import (
    EmptySelectionError,
    InvalidParameterError,
    MissingAssayError,
    ShapeMismatchError,
    UnknownSampleOrFeatureError,
)

Matrix = Union[np.ndarray, sp.spmatrix]

# Anything that picks features: polars expression over var, a predicate on
# the feature id, a boolean mask, integer positions or feature ids.
FeatureSelector = Union[pl.Expr, Callable[[str], bool], np.ndarray, Iterable[Any]]


@dataclass
class ProvenanceLog:
    """
    记录对容器执行的操作历史。
    Record of operations performed on the container.
    """
    timestamp: str
    action: str
    params: dict[str, Any]
    software_version: str | None = None
    description: str | None = None


def _as_matrix(matrix: Any) -> Matrix:
    if sp.issparse(matrix):
        return matrix.tocsr()
    arr = np.asarray(matrix)
    if not (np.issubdtype(arr.dtype, np.number) or arr.dtype == bool):
        raise InvalidParameterError(
            f"Assay matrices must be numeric, got dtype {arr.dtype}", parameter="matrix"
        )
    return arr


def _take(matrix: Matrix, rows: np.ndarray, cols: np.ndarray) -> Matrix:
    """Restrict a features x samples matrix to the given row and column positions."""
    if sp.issparse(matrix):
        return matrix.tocsr()[rows, :][:, cols]
    return matrix[np.ix_(rows, cols)].copy()


def _default_index(prefix: str, n: int) -> pl.DataFrame:
    return pl.DataFrame({"_index": [f"{prefix}{i + 1}" for i in range(n)]})


class DataContainer:
    """
    顶层容器: 特征 x 样本矩阵 (assays) 与样本/特征元数据。
    Top-level container holding features x samples assays plus metadata.

    All assays share the same shape ``(n_features, n_samples)``. Rows of
    ``var`` describe features, rows of ``obs`` describe samples. Alternative
    experiments are nested containers over the same samples with a disjoint
    feature set (e.g. spike-ins), created with
    :meth:`extract_alt_experiment`.

    Parameters
    ----------
    assays : Mapping[str, Matrix]
        Named matrices (dense or scipy sparse), features x samples.
    obs : pl.DataFrame, optional
        Sample metadata with a unique ``sample_id_col``. Generated as
        ``S1..Sn`` when omitted.
    var : pl.DataFrame, optional
        Feature metadata with a unique ``feature_id_col``. Generated as
        ``F1..Fm`` when omitted.
    alt_experiments : Mapping[str, DataContainer], optional
        Nested containers sharing the sample axis.
    history : list[ProvenanceLog], optional
        Provenance log carried over from a parent container.
    sample_id_col, feature_id_col : str
        Identifier columns in ``obs`` and ``var``. Default ``"_index"``.

    Raises
    ------
    ShapeMismatchError
        If an assay disagrees with the metadata row counts or another assay.
    InvalidParameterError
        If an identifier column is missing or not unique.
    """

    def __init__(
        self,
        assays: Mapping[str, Any] | None = None,
        obs: pl.DataFrame | None = None,
        var: pl.DataFrame | None = None,
        alt_experiments: Mapping[str, DataContainer] | None = None,
        history: list[ProvenanceLog] | None = None,
        sample_id_col: str = "_index",
        feature_id_col: str = "_index",
    ):
        self._lock = threading.RLock()
        self.sample_id_col = sample_id_col
        self.feature_id_col = feature_id_col

        self._assays: dict[str, Matrix] = {
            name: _as_matrix(m) for name, m in (assays or {}).items()
        }
        for name, m in self._assays.items():
            if m.ndim != 2:
                raise ShapeMismatchError(f"Assay '{name}' must be 2-dimensional, got {m.ndim}D")

        first = next(iter(self._assays.values()), None)
        if obs is None:
            if first is None:
                raise InvalidParameterError(
                    "Either obs or at least one assay is required", parameter="obs"
                )
            obs = _default_index("S", first.shape[1])
            self.sample_id_col = "_index"
        if var is None:
            if first is None:
                raise InvalidParameterError(
                    "Either var or at least one assay is required", parameter="var"
                )
            var = _default_index("F", first.shape[0])
            self.feature_id_col = "_index"

        self._check_index(obs, self.sample_id_col, "obs")
        self._check_index(var, self.feature_id_col, "var")
        self.obs: pl.DataFrame = obs
        self.var: pl.DataFrame = var

        for name, m in self._assays.items():
            self._check_shape(name, m)

        self._alt: dict[str, DataContainer] = {}
        for name, alt in (alt_experiments or {}).items():
            self._check_alt(name, alt)
            self._alt[name] = alt

        self.history: list[ProvenanceLog] = history if history is not None else []

    # ------------------------------------------------------------------
    # validation

    @staticmethod
    def _check_index(df: pl.DataFrame, col: str, label: str) -> None:
        if col not in df.columns:
            raise InvalidParameterError(f"ID column '{col}' not found in {label}.", parameter=label)
        if df[col].n_unique() != df.height:
            raise InvalidParameterError(f"ID column '{col}' in {label} is not unique.", parameter=label)

    def _check_shape(self, name: str, matrix: Matrix) -> None:
        expected = (self.var.height, self.obs.height)
        if tuple(matrix.shape) != expected:
            raise ShapeMismatchError(
                f"Assay '{name}' has shape {tuple(matrix.shape)}, expected "
                f"(n_features, n_samples) = {expected}",
                expected=expected,
                actual=tuple(matrix.shape),
            )

    def _check_alt(self, name: str, alt: DataContainer) -> None:
        if alt.sample_ids.to_list() != self.sample_ids.to_list():
            raise ShapeMismatchError(
                f"Alternative experiment '{name}' does not share the sample axis of its parent"
            )

    # ------------------------------------------------------------------
    # axes

    @property
    def n_samples(self) -> int:
        return self.obs.height

    @property
    def n_features(self) -> int:
        return self.var.height

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_features, self.n_samples)

    @property
    def sample_ids(self) -> pl.Series:
        return self.obs[self.sample_id_col]

    @property
    def feature_ids(self) -> pl.Series:
        return self.var[self.feature_id_col]

    # ------------------------------------------------------------------
    # assays

    @property
    def assay_names(self) -> list[str]:
        return list(self._assays.keys())

    def has_assay(self, name: str) -> bool:
        return name in self._assays

    def get_assay(self, name: str) -> Matrix:
        """Return the assay matrix ``name`` (features x samples)."""
        try:
            return self._assays[name]
        except KeyError:
            raise MissingAssayError(name, available_assays=self.assay_names) from None

    def set_assay(self, name: str, matrix: Any) -> None:
        """
        Add or explicitly replace an assay.

        Raises
        ------
        ShapeMismatchError
            If the matrix is not ``(n_features, n_samples)``.
        """
        m = _as_matrix(matrix)
        if m.ndim != 2:
            raise ShapeMismatchError(f"Assay '{name}' must be 2-dimensional, got {m.ndim}D")
        self._check_shape(name, m)
        with self._lock:
            self._assays[name] = m

    # ------------------------------------------------------------------
    # metadata columns

    def _column(self, df: pl.DataFrame, id_col: str, name: str, values: Any, label: str) -> pl.DataFrame:
        if name == id_col:
            raise InvalidParameterError(
                f"Cannot overwrite the identifier column '{id_col}' of {label}", parameter="name"
            )
        series = values.alias(name) if isinstance(values, pl.Series) else pl.Series(name, values)
        if series.len() != df.height:
            raise ShapeMismatchError(
                f"Column '{name}' has {series.len()} values, {label} has {df.height} rows",
                expected=(df.height,),
                actual=(series.len(),),
            )
        return df.with_columns(series)

    def set_obs_column(self, name: str, values: Any) -> None:
        """Add or replace a per-sample metadata column."""
        with self._lock:
            self.obs = self._column(self.obs, self.sample_id_col, name, values, "obs")

    def set_var_column(self, name: str, values: Any) -> None:
        """Add or replace a per-feature metadata column."""
        with self._lock:
            self.var = self._column(self.var, self.feature_id_col, name, values, "var")

    # ------------------------------------------------------------------
    # alternative experiments

    @property
    def alt_experiments(self) -> Mapping[str, DataContainer]:
        return MappingProxyType(self._alt)

    @property
    def alt_experiment_names(self) -> list[str]:
        return list(self._alt.keys())

    def get_alt_experiment(self, name: str) -> DataContainer:
        try:
            return self._alt[name]
        except KeyError:
            raise MissingAssayError(
                name,
                hint="No alternative experiment with this name.",
                available_assays=self.alt_experiment_names,
            ) from None

    def feature_mask(self, selector: FeatureSelector) -> np.ndarray:
        """
        Resolve a feature selector into a boolean mask over features.

        Accepts a polars expression evaluated on ``var``, a predicate called
        with each feature id, a boolean mask, integer positions or feature ids.
        """
        n = self.n_features
        if isinstance(selector, pl.Expr):
            mask = self.var.select(selector).to_series().fill_null(False).to_numpy()
            return mask.astype(bool)
        if callable(selector):
            return np.array([bool(selector(fid)) for fid in self.feature_ids.to_list()], dtype=bool)

        items = np.asarray(list(selector) if not isinstance(selector, np.ndarray) else selector)
        if items.dtype == bool:
            if items.shape != (n,):
                raise ShapeMismatchError(
                    f"Boolean feature mask has length {items.size}, expected {n}",
                    expected=(n,),
                    actual=items.shape,
                )
            return items.copy()
        mask = np.zeros(n, dtype=bool)
        mask[self._positions(items, self.feature_ids, "features")] = True
        return mask

    def extract_alt_experiment(self, name: str, feature_selector: FeatureSelector) -> DataContainer:
        """
        Move the selected features into a new alternative experiment.

        The selected features are removed from every assay and from ``var``
        of this container; the nested container gets the same sample axis and
        the same assay names restricted to the selected rows.

        Raises
        ------
        EmptySelectionError
            If the selector matches no feature.
        InvalidParameterError
            If an alternative experiment called ``name`` already exists.
        """
        if name in self._alt:
            raise InvalidParameterError(
                f"Alternative experiment '{name}' already exists", parameter="name"
            )
        mask = self.feature_mask(feature_selector)
        if not mask.any():
            raise EmptySelectionError(
                f"Feature selector for alternative experiment '{name}' matched no features"
            )

        all_samples = np.arange(self.n_samples)
        picked = np.flatnonzero(mask)
        kept = np.flatnonzero(~mask)

        with self._lock:
            alt = DataContainer(
                assays={k: _take(m, picked, all_samples) for k, m in self._assays.items()},
                obs=self.obs.clone(),
                var=self.var[picked, :],
                sample_id_col=self.sample_id_col,
                feature_id_col=self.feature_id_col,
            )
            self._assays = {k: _take(m, kept, all_samples) for k, m in self._assays.items()}
            self.var = self.var[kept, :]
            self._alt[name] = alt

        self.log_operation(
            action="extract_alt_experiment",
            params={"name": name, "n_features": int(picked.size)},
            description=f"Moved {picked.size} features into alternative experiment '{name}'.",
        )
        return alt

    # ------------------------------------------------------------------
    # subsetting

    @staticmethod
    def _positions(items: Any, ids: pl.Series, axis: str) -> np.ndarray:
        n = ids.len()
        arr = np.asarray(items)
        if arr.size == 0:
            return np.array([], dtype=np.int64)
        if arr.dtype == bool:
            if arr.shape != (n,):
                raise UnknownSampleOrFeatureError(
                    f"Boolean {axis} mask has length {arr.size}, expected {n}", axis=axis
                )
            return np.flatnonzero(arr)
        if np.issubdtype(arr.dtype, np.integer):
            bad = arr[(arr < 0) | (arr >= n)]
            if bad.size:
                raise UnknownSampleOrFeatureError(
                    f"{axis.capitalize()} positions out of range [0, {n}): {bad.tolist()[:5]}",
                    axis=axis,
                )
            pos = arr.astype(np.int64)
        else:
            lookup = {v: i for i, v in enumerate(ids.to_list())}
            missing = [v for v in arr.tolist() if v not in lookup]
            if missing:
                raise UnknownSampleOrFeatureError(
                    f"Unknown {axis}: {missing[:5]}", axis=axis
                )
            pos = np.array([lookup[v] for v in arr.tolist()], dtype=np.int64)
        if np.unique(pos).size != pos.size:
            raise InvalidParameterError(f"Duplicate {axis} in selection", parameter=axis)
        return pos

    def select(self, sample_indices: Any = None, feature_indices: Any = None) -> DataContainer:
        """
        Return a new container restricted to the given samples and features.

        Indices may be integer positions, boolean masks or identifiers;
        ``None`` keeps the whole axis. Both axes are validated before anything
        is copied. Alternative experiments follow the sample selection.

        Raises
        ------
        UnknownSampleOrFeatureError
            If an index on either axis does not exist.
        """
        samples = (
            np.arange(self.n_samples)
            if sample_indices is None
            else self._positions(sample_indices, self.sample_ids, "samples")
        )
        features = (
            np.arange(self.n_features)
            if feature_indices is None
            else self._positions(feature_indices, self.feature_ids, "features")
        )

        alts = {
            name: alt.select(sample_indices=samples) for name, alt in self._alt.items()
        }
        new = DataContainer(
            assays={k: _take(m, features, samples) for k, m in self._assays.items()},
            obs=self.obs[samples, :],
            var=self.var[features, :],
            alt_experiments=alts,
            history=[copy.deepcopy(log) for log in self.history],
            sample_id_col=self.sample_id_col,
            feature_id_col=self.feature_id_col,
        )
        new.log_operation(
            action="select",
            params={"n_samples": int(samples.size), "n_features": int(features.size)},
            description=(
                f"Selected {samples.size}/{self.n_samples} samples and "
                f"{features.size}/{self.n_features} features."
            ),
        )
        return new

    def copy(self, deep: bool = True) -> DataContainer:
        """
        Copy the container.

        Args:
            deep (bool): If True, copy matrices and metadata. If False, share them.
        """
        if not deep:
            return DataContainer(
                assays=dict(self._assays),
                obs=self.obs,
                var=self.var,
                alt_experiments=dict(self._alt),
                history=list(self.history),
                sample_id_col=self.sample_id_col,
                feature_id_col=self.feature_id_col,
            )
        return DataContainer(
            assays={k: m.copy() for k, m in self._assays.items()},
            obs=self.obs.clone(),
            var=self.var.clone(),
            alt_experiments={k: a.copy(deep=True) for k, a in self._alt.items()},
            history=[copy.deepcopy(log) for log in self.history],
            sample_id_col=self.sample_id_col,
            feature_id_col=self.feature_id_col,
        )

    # ------------------------------------------------------------------

    def log_operation(
        self,
        action: str,
        params: dict[str, Any],
        description: str | None = None,
        software_version: str | None = None,
    ) -> None:
        """
        记录操作日志。
        Log an operation to the history.
        """
        self.history.append(
            ProvenanceLog(
                timestamp=datetime.now().isoformat(),
                action=action,
                params=params,
                software_version=software_version,
                description=description,
            )
        )

    def __repr__(self) -> str:
        alts = ", ".join(f"{k}({v.n_features})" for k, v in self._alt.items())
        return (
            f"<DataContainer n_features={self.n_features}, n_samples={self.n_samples}, "
            f"assays={self.assay_names}, alt_experiments=[{alts}]>"
        )
