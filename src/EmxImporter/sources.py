"""In-memory source collections: named, re-iterable row streams."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from typing import Any


class SourceRepository:
    """A named stream of raw rows that can be iterated any number of times.

    ``rows`` may be a sequence or a zero-argument callable returning a fresh
    iterable, e.g. a generator function reading a file.
    """

    def __init__(self, name: str, rows: Iterable[Mapping[str, Any]] | Any) -> None:
        self.name = name
        self._rows = rows

    def __iter__(self) -> Iterator[Mapping[str, Any]]:
        rows = self._rows() if callable(self._rows) else self._rows
        return iter(rows)

    def __repr__(self) -> str:
        return f"SourceRepository({self.name!r})"


class MappingSourceCollection:
    """Source collection over a mapping of stream name to rows.

    Stream names keep their insertion order.
    """

    def __init__(self, streams: Mapping[str, Iterable[Mapping[str, Any]]] | None = None) -> None:
        self._streams: dict[str, SourceRepository] = {}
        for name, rows in (streams or {}).items():
            self.add(name, rows)

    def add(self, name: str, rows: Iterable[Mapping[str, Any]] | Any) -> SourceRepository:
        repo = rows if isinstance(rows, SourceRepository) else SourceRepository(name, rows)
        self._streams[name] = repo
        return repo

    def get_entity_names(self) -> list[str]:
        return list(self._streams)

    def get_repository(self, name: str) -> SourceRepository | None:
        return self._streams.get(name)
