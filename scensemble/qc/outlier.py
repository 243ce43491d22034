"""Adaptive outlier detection based on the median absolute deviation.

Mathematical Background:
For values x with median m, the scaled MAD is

    MAD = 1.4826 * median(|x - m|)

which matches the standard deviation for normally distributed data. Values
are flagged when they fall more than ``nmads`` MADs below (``lower``) or
above (``upper``) the median. With ``log=True`` the statistics are computed
on ``log(x)``, which suits the heavy right tail of library sizes and
detected-feature counts.

Non-positive values under ``log=True``
--------------------------------------
``log(x)`` is undefined for ``x <= 0``. Such values are excluded from the
median and MAD, and are treated as lying below any lower threshold: they are
flagged whenever the lower tail is tested and never flagged as upper
outliers. A sample with zero library size is always a low-quality sample.

Zero spread
-----------
When the MAD is zero the thresholds collapse onto the median. Nothing is
flagged if all values are identical; values strictly beyond the median in a
tested direction are still flagged. No error is raised in either case.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np
import polars as pl

from scensemble.core.exceptions import InvalidParameterError, ShapeMismatchError

MAD_SCALE = 1.4826

Direction = Literal["both", "lower", "upper"]


def compute_mad(
    data: np.ndarray,
    scale_factor: float = MAD_SCALE,
) -> float:
    """Compute the Median Absolute Deviation (MAD).

    Parameters
    ----------
    data : np.ndarray
        Input array of numeric values. NaNs are ignored.
    scale_factor : float, default=1.4826
        Factor making the MAD consistent with the standard deviation for
        normal distributions. Use 1.0 for the raw MAD.

    Returns
    -------
    float
        The MAD value, or ``np.nan`` for an empty input.

    Examples
    --------
    >>> compute_mad(np.array([1, 2, 3, 4, 5]))
    1.4826
    """
    data = np.asarray(data, dtype=np.float64)
    data = data[~np.isnan(data)]
    if data.size == 0:
        return np.nan

    median = np.median(data)
    return float(np.median(np.abs(data - median)) * scale_factor)


@dataclass(frozen=True)
class OutlierThresholds:
    """Thresholds used for one group of values.

    ``lower`` and ``upper`` are on the original value scale (exponentiated
    back when ``log=True``); an untested side is reported as -inf / +inf.
    ``center`` and ``scale`` are on the transformed scale.
    """

    lower: float
    upper: float
    center: float
    scale: float
    n_used: int

    @property
    def degenerate(self) -> bool:
        return not np.isfinite(self.scale) or self.scale == 0


@dataclass(frozen=True)
class OutlierResult:
    """
    Boolean outlier flags together with the thresholds that produced them.

    Attributes
    ----------
    flags : np.ndarray
        Boolean array, True for outliers, aligned with the input values.
    thresholds : dict
        ``{batch: OutlierThresholds}``; the single key is ``None`` when no
        batch was given.
    direction : str
        Tail(s) tested.
    nmads : float
        Number of MADs used.
    log : bool
        Whether thresholds were computed on the log scale.
    """

    flags: np.ndarray
    thresholds: dict[Any, OutlierThresholds] = field(default_factory=dict)
    direction: Direction = "both"
    nmads: float = 3.0
    log: bool = False

    @property
    def n_outliers(self) -> int:
        return int(self.flags.sum())

    def _single(self) -> OutlierThresholds:
        if list(self.thresholds) != [None]:
            raise InvalidParameterError(
                "Result was computed per batch; use .thresholds[batch] instead",
                parameter="batch",
            )
        return self.thresholds[None]

    @property
    def lower(self) -> float:
        return self._single().lower

    @property
    def upper(self) -> float:
        return self._single().upper

    def to_dataframe(self) -> pl.DataFrame:
        """Thresholds as a table, one row per batch."""
        return pl.DataFrame(
            {
                "batch": [None if b is None else str(b) for b in self.thresholds],
                "lower": [t.lower for t in self.thresholds.values()],
                "upper": [t.upper for t in self.thresholds.values()],
                "center": [t.center for t in self.thresholds.values()],
                "scale": [t.scale for t in self.thresholds.values()],
                "n_used": [t.n_used for t in self.thresholds.values()],
            },
            schema_overrides={"batch": pl.Utf8},
        )


def _detect_group(
    x: np.ndarray,
    log: bool,
    direction: Direction,
    nmads: float,
) -> tuple[np.ndarray, OutlierThresholds]:
    if log:
        positive = x > 0
        with np.errstate(divide="ignore", invalid="ignore"):
            t = np.where(positive, np.log(np.where(positive, x, 1.0)), np.nan)
        # Non-positive values sit below every lower threshold
        sentinel_low = ~positive & ~np.isnan(x)
    else:
        t = x
        sentinel_low = np.zeros(x.shape, dtype=bool)

    used = t[~np.isnan(t)]
    flags = np.zeros(x.shape, dtype=bool)
    test_lower = direction in ("lower", "both")
    test_upper = direction in ("upper", "both")

    if used.size == 0:
        center, scale = np.nan, np.nan
        if test_lower:
            flags |= sentinel_low
        return flags, OutlierThresholds(-np.inf, np.inf, center, scale, 0)

    center = float(np.median(used))
    scale = compute_mad(used)
    lower_t = center - nmads * scale
    upper_t = center + nmads * scale

    with np.errstate(invalid="ignore"):
        if test_lower:
            flags |= (t < lower_t) | sentinel_low
        if test_upper:
            flags |= t > upper_t

    back = np.exp if log else float
    return flags, OutlierThresholds(
        lower=float(back(lower_t)) if test_lower else -np.inf,
        upper=float(back(upper_t)) if test_upper else np.inf,
        center=center,
        scale=scale,
        n_used=int(used.size),
    )


def detect_outliers(
    values: Sequence[float] | np.ndarray | pl.Series,
    log: bool = False,
    direction: Direction = "both",
    nmads: float = 3.0,
    batch: Sequence[Any] | np.ndarray | pl.Series | None = None,
) -> OutlierResult:
    """
    Flag outliers using median +/- ``nmads`` scaled MADs.

    Parameters
    ----------
    values : array-like
        Values to test, e.g. library sizes. NaNs are ignored and never flagged.
    log : bool, default=False
        Compute thresholds on ``log(values)``. See the module docstring for
        the handling of non-positive values.
    direction : {"both", "lower", "upper"}, default="both"
        Which tail(s) to test.
    nmads : float, default=3.0
        Number of MADs from the median beyond which a value is an outlier.
    batch : array-like, optional
        Batch label per value. Thresholds are then computed independently
        within each batch. Missing labels (None or NaN) are rejected.

    Returns
    -------
    OutlierResult
        Flags aligned with ``values`` plus the thresholds used.

    Raises
    ------
    InvalidParameterError
        If ``direction`` is unknown, ``nmads`` is negative or a batch label
        is missing.
    ShapeMismatchError
        If ``batch`` does not have one label per value.

    Examples
    --------
    >>> res = detect_outliers([1, 1, 1, 1, 1, 100], log=True, direction="upper")
    >>> res.flags.tolist()
    [False, False, False, False, False, True]
    """
    if direction not in ("both", "lower", "upper"):
        raise InvalidParameterError(
            f"direction must be 'both', 'lower' or 'upper', got {direction!r}",
            parameter="direction",
        )
    if not nmads >= 0:
        raise InvalidParameterError(f"nmads must be non-negative, got {nmads}", parameter="nmads")

    x = np.asarray(values, dtype=np.float64).ravel()

    if batch is None:
        flags, thr = _detect_group(x, log, direction, nmads)
        return OutlierResult(flags, {None: thr}, direction, nmads, log)

    labels = np.asarray(batch, dtype=object).ravel()
    if labels.shape != x.shape:
        raise ShapeMismatchError(
            f"batch has {labels.size} labels for {x.size} values",
            expected=x.shape,
            actual=labels.shape,
        )
    label_list = labels.tolist()
    if any(b is None or (isinstance(b, float) and np.isnan(b)) for b in label_list):
        raise InvalidParameterError("batch labels must not be missing", parameter="batch")

    flags = np.zeros(x.shape, dtype=bool)
    thresholds: dict[Any, OutlierThresholds] = {}
    # dict.fromkeys keeps first-appearance order
    for b in dict.fromkeys(label_list):
        idx = np.flatnonzero(labels == b)
        group_flags, thresholds[b] = _detect_group(x[idx], log, direction, nmads)
        flags[idx] = group_flags
    return OutlierResult(flags, thresholds, direction, nmads, log)
