"""Projection of raw source rows onto target entity metadata."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from EmxImporter.errors import InvalidValueError
from EmxImporter.meta import EntityMetaData, Row


def conform_row(raw: Mapping[str, Any], meta: EntityMetaData) -> Row:
    """Return a row holding exactly the attributes of ``meta``, converted.

    Columns are matched by exact name first and case-insensitively second;
    missing columns become ``None`` and unknown columns are dropped.
    """
    lowered: dict[str, Any] | None = None
    out: Row = {}
    for attr in meta.attributes:
        if attr.name in raw:
            value = raw[attr.name]
        else:
            if lowered is None:
                lowered = {str(k).lower(): v for k, v in raw.items()}
            value = lowered.get(attr.name.lower())
        try:
            out[attr.name] = attr.convert(value)
        except InvalidValueError as exc:
            raise InvalidValueError(f"Entity '{meta.name}': {exc}") from exc
    return out


class ConformingRows:
    """Re-iterable view of a source stream conformed to ``meta``."""

    def __init__(self, source: Iterable[Mapping[str, Any]], meta: EntityMetaData) -> None:
        self.source = source
        self.meta = meta

    def __iter__(self) -> Iterator[Row]:
        for raw in self.source:
            yield conform_row(raw, self.meta)
