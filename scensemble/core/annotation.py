"""Feature identifier to symbol annotation.

Symbol lookup is an external concern: the library only defines the
:class:`AnnotationResolver` protocol and a dictionary-backed implementation.
Resolvers are always passed in explicitly; nothing is cached globally.
"""

from __future__ import annotations

import warnings
from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from scensemble.core.structures import DataContainer


@runtime_checkable
class AnnotationResolver(Protocol):
    """Maps feature identifiers to symbols on a best-effort basis.

    Implementations return one entry per input identifier, in order, with
    ``None`` for identifiers they cannot map. Unmapped ids are not errors.
    """

    def resolve(self, feature_ids: Sequence[str]) -> list[str | None]: ...


class MappingAnnotationResolver:
    """Resolver backed by an in-memory ``{feature_id: symbol}`` mapping.

    Parameters
    ----------
    mapping : Mapping[str, str]
        Identifier to symbol table, e.g. Ensembl gene id to HGNC symbol.
    case_sensitive : bool, default=True
        If False, identifiers are matched ignoring case.
    strip_version : bool, default=False
        If True, a trailing ``.N`` version suffix (``ENSG00000141510.16``)
        is removed before lookup.
    """

    def __init__(
        self,
        mapping: Mapping[str, str],
        case_sensitive: bool = True,
        strip_version: bool = False,
    ):
        self.case_sensitive = case_sensitive
        self.strip_version = strip_version
        self._table = {self._key(k): v for k, v in mapping.items()}

    def _key(self, feature_id: str) -> str:
        key = str(feature_id)
        if self.strip_version and "." in key:
            key = key.rsplit(".", 1)[0]
        return key if self.case_sensitive else key.upper()

    def resolve(self, feature_ids: Sequence[str]) -> list[str | None]:
        return [self._table.get(self._key(fid)) for fid in feature_ids]


def annotate_features(
    container: DataContainer,
    resolver: AnnotationResolver,
    column: str = "symbol",
) -> DataContainer:
    """
    Store resolved symbols for every feature as a ``var`` column.

    Args:
        container: The DataContainer to annotate (modified in place).
        resolver: Any object implementing :class:`AnnotationResolver`.
        column: Name of the ``var`` column to write. Defaults to "symbol".

    Returns:
        The same container, for chaining. Unmapped features hold ``None``;
        a warning reports how many there were.
    """
    ids = container.feature_ids.cast(str).to_list()
    symbols = list(resolver.resolve(ids))
    container.set_var_column(column, symbols)

    n_missing = sum(s is None for s in symbols)
    if n_missing:
        warnings.warn(
            f"{n_missing} of {len(ids)} features could not be mapped to a symbol",
            stacklevel=2,
        )

    container.log_operation(
        action="annotate_features",
        params={"column": column, "n_unmapped": n_missing},
        description=f"Annotated {len(ids) - n_missing}/{len(ids)} features.",
    )
    return container
