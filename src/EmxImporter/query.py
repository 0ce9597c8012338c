"""Disjunctive equality queries used to probe repositories for existing ids."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Final

MAX_DISJUNCTS: Final[int] = 100


class Query:
    """``(attr = v1) OR (attr = v2) OR ...`` on a single attribute.

    An empty query matches every row.
    """

    def __init__(self, attribute: str | None = None) -> None:
        self.attribute = attribute
        self._values: list[Any] = []

    @classmethod
    def any_of(cls, attribute: str, values: Iterable[Any]) -> "Query":
        q = cls(attribute)
        for value in values:
            q.eq(attribute, value)
        return q

    def eq(self, attribute: str, value: Any) -> "Query":
        if self.attribute is None:
            self.attribute = attribute
        elif attribute != self.attribute:
            raise ValueError(
                f"Query on '{self.attribute}' cannot also filter on '{attribute}'"
            )
        if len(self._values) >= MAX_DISJUNCTS:
            raise ValueError(f"Query exceeds {MAX_DISJUNCTS} disjuncts")
        self._values.append(value)
        return self

    @property
    def values(self) -> list[Any]:
        return list(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def matches(self, row: Mapping[str, Any]) -> bool:
        if not self._values:
            return True
        return row.get(self.attribute) in self._values

    def __repr__(self) -> str:
        if not self._values:
            return "Query(<all>)"
        return " OR ".join(f"({self.attribute} = {v!r})" for v in self._values)
