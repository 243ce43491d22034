"""Synthetic datasets for examples and tests."""

from ._synthetic import MITO_PREFIX, SPIKE_PREFIX, make_synthetic_counts

__all__ = ["make_synthetic_counts", "SPIKE_PREFIX", "MITO_PREFIX"]
