import numpy as np
import scipy.sparse as sp

from scensemble.core.exceptions import InvalidParameterError
from scensemble.core.structures import DataContainer


def size_factors(X) -> np.ndarray:
    """Library-size factors: per-sample total divided by the mean total."""
    lib = np.asarray(X.sum(axis=0), dtype=np.float64).ravel()
    mean = lib.mean() if lib.size else 0.0
    if mean <= 0:
        raise InvalidParameterError("Cannot compute size factors: all library sizes are zero")
    sf = lib / mean
    # empty samples keep their zeros instead of dividing by zero
    sf[sf == 0] = 1.0
    return sf


def log_normalize(
    container: DataContainer,
    assay_name: str = "counts",
    new_assay_name: str = "logcounts",
    pseudocount: float = 1.0,
    base: float = 2.0,
) -> DataContainer:
    """
    Library-size normalize an assay and log-transform it.

    Each sample is divided by its size factor (library size over mean library
    size), then ``log_base(x + pseudocount)`` is applied. The result is stored
    as a new dense assay.

    Args:
        container: The DataContainer object.
        assay_name: Name of the counts assay to transform.
        new_assay_name: Name of the assay to create.
        pseudocount: Offset added before logging to handle zeros (default: 1.0).
        base: Log base (default: 2.0).

    Returns:
        The modified DataContainer (in-place, returned for chaining).
    """
    if pseudocount <= 0:
        raise InvalidParameterError(
            f"pseudocount must be positive, got {pseudocount}", parameter="pseudocount"
        )
    if base <= 0 or base == 1:
        raise InvalidParameterError(f"Invalid log base {base}", parameter="base")

    X = container.get_assay(assay_name)
    sf = size_factors(X)

    if sp.issparse(X):
        X = X.toarray()
    X_norm = np.asarray(X, dtype=np.float64) / sf[None, :]

    # log_b(x) = ln(x) / ln(b)
    X_log = np.log(X_norm + pseudocount) / np.log(base)
    container.set_assay(new_assay_name, X_log)

    container.log_operation(
        action="log_normalize",
        params={
            "assay": assay_name,
            "new_assay": new_assay_name,
            "pseudocount": pseudocount,
            "base": base,
        },
        description=f"Log{base} library-size normalization of '{assay_name}' into '{new_assay_name}'.",
    )
    return container
