"""Interfaces of the importer's collaborators.

The importer only talks to these protocols; ``EmxImporter.store`` provides
the SQLAlchemy implementations and tests provide in-memory fakes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from EmxImporter.meta import (
    AttributeMetaData,
    AttributeTag,
    EntityMetaData,
    EntityTag,
    Package,
    Row,
)
from EmxImporter.query import Query


@dataclass(frozen=True)
class Principal:
    """The user on whose behalf an import runs."""

    username: str | None
    superuser: bool = False


class SourceCollection(Protocol):
    """Named row streams of a parsed EMX package.

    Streams returned by ``get_repository`` must be re-iterable; the merge
    engine walks them more than once.
    """

    def get_entity_names(self) -> Iterable[str]: ...

    def get_repository(self, name: str) -> Iterable[Mapping[str, Any]] | None: ...


class EntityRepository(Protocol):
    """Backing storage for all rows of one entity."""

    @property
    def name(self) -> str: ...

    @property
    def entity_meta_data(self) -> EntityMetaData: ...

    async def count(self) -> int: ...

    async def add(self, rows: Row | Iterable[Row]) -> int: ...

    async def update(self, rows: Row | Iterable[Row]) -> int: ...

    def find_all(self, query: Query) -> AsyncIterator[Row]: ...

    async def find_one(self, id_value: Any) -> Row | None: ...


@runtime_checkable
class IndexedRepository(Protocol):
    async def rebuild_index(self) -> None: ...


class MetaRegistry(Protocol):
    """Catalog of entity definitions plus access to their repositories."""

    async def get_entity_meta_data(self, name: str) -> EntityMetaData | None: ...

    async def add_entity_meta(self, meta: EntityMetaData) -> EntityRepository | None: ...

    async def update_entity_meta(self, meta: EntityMetaData) -> list[AttributeMetaData]: ...

    async def delete_entity_meta(self, name: str) -> None: ...

    async def delete_attribute(self, entity_name: str, attribute_name: str) -> None: ...

    async def add_package(self, package: Package) -> None: ...

    async def has_repository(self, name: str) -> bool: ...

    async def get_repository(self, name: str) -> EntityRepository | None: ...


class TagService(Protocol):
    async def add_entity_tag(self, tag: EntityTag) -> None: ...

    async def add_attribute_tag(self, entity_name: str, tag: AttributeTag) -> None: ...


class PermissionHook(Protocol):
    async def grant(self, principal: Principal, entity_names: list[str]) -> None: ...
