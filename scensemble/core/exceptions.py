"""Exception hierarchy for scensemble.

Every error raised by the library derives from :class:`ScEnsembleError` so
callers can catch library failures with a single ``except`` clause.
"""

from __future__ import annotations

import difflib
from collections.abc import Sequence
from pathlib import Path


def _closest(name: str, candidates: Sequence[str] | None) -> str | None:
    if not candidates:
        return None
    matches = difflib.get_close_matches(name, list(candidates), n=1, cutoff=0.6)
    return matches[0] if matches else None


class ScEnsembleError(Exception):
    """Base class for exceptions in scensemble."""

    pass


class ShapeMismatchError(ScEnsembleError):
    """Raised when a matrix or metadata column disagrees with the container axes."""

    def __init__(
        self,
        message: str,
        expected: tuple[int, ...] | None = None,
        actual: tuple[int, ...] | None = None,
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class MissingAssayError(ScEnsembleError, KeyError):
    """Raised when a named assay is not present in a container.

    If ``available_assays`` is given, the closest name is offered as a
    suggestion; otherwise the optional ``hint`` is appended.
    """

    def __init__(
        self,
        assay_name: str,
        hint: str | None = None,
        available_assays: Sequence[str] | None = None,
    ) -> None:
        self.assay_name = assay_name
        self.suggestion = _closest(assay_name, available_assays)

        message = f"Assay '{assay_name}' not found."
        if self.suggestion is not None:
            message += f" Did you mean '{self.suggestion}'?"
        elif available_assays is not None:
            available = ", ".join(f"'{a}'" for a in available_assays)
            message += f" Available assays: {available}."
        if hint and self.suggestion is None:
            message += f" {hint}"

        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.message


class UnknownSampleOrFeatureError(ScEnsembleError, IndexError):
    """Raised when a selection references samples or features that do not exist."""

    def __init__(self, message: str, axis: str | None = None) -> None:
        super().__init__(message)
        self.axis = axis


class EmptySelectionError(ScEnsembleError):
    """Raised when a feature selector matches nothing."""

    pass


class InvalidParameterError(ScEnsembleError, ValueError):
    """Raised when an argument is outside its valid domain."""

    def __init__(self, message: str, parameter: str | None = None) -> None:
        super().__init__(message)
        self.parameter = parameter


class InsufficientRunsError(ScEnsembleError):
    """Raised when too few ensemble runs succeed to build a consensus."""

    def __init__(self, n_successful: int, n_required: int, n_total: int | None = None) -> None:
        message = (
            f"Only {n_successful} ensemble run(s) succeeded; "
            f"at least {n_required} are required to build a consensus"
        )
        if n_total is not None:
            message += f" ({n_total} attempted)"
        super().__init__(message + ".")
        self.n_successful = n_successful
        self.n_required = n_required
        self.n_total = n_total


class EmbeddingFailureError(ScEnsembleError):
    """Raised when an embedding provider cannot produce coordinates."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ConfigurationError(ScEnsembleError):
    """Exception raised for configuration-related errors.

    Attributes
    ----------
    config_path : Path | None
        Path to the configuration file that caused the error.
    """

    def __init__(self, message: str, config_path: Path | None = None) -> None:
        super().__init__(message)
        self.config_path = config_path
