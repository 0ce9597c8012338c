# tests/importer/conftest.py
"""In-memory stand-ins for the importer's storage collaborators."""

from collections.abc import Iterable, Mapping
from typing import Any

import pytest

from EmxImporter.meta import AttributeMetaData, EntityMetaData, FieldType
from EmxImporter.query import Query


class FakeRepository:
    """Dict-backed repository that records every call made on it."""

    def __init__(self, meta: EntityMetaData, rows: Iterable[Mapping[str, Any]] = ()):
        self._meta = meta
        self.rows: dict[Any, dict[str, Any]] = {}
        for row in rows:
            self._store(dict(row))
        self.queries: list[Query] = []
        self.add_calls: list[list[dict[str, Any]]] = []
        self.update_calls: list[list[dict[str, Any]]] = []
        self.count_calls = 0
        self.reindexed = 0

    @property
    def name(self) -> str:
        return self._meta.name

    @property
    def entity_meta_data(self) -> EntityMetaData:
        return self._meta

    def _store(self, row: dict[str, Any]) -> None:
        self.rows[self._meta.convert_id(row.get(self._meta.id_attribute_name))] = row

    @staticmethod
    def _batch(rows) -> list[dict[str, Any]]:
        if isinstance(rows, Mapping):
            return [dict(rows)]
        return [dict(row) for row in rows]

    async def count(self) -> int:
        self.count_calls += 1
        return len(self.rows)

    async def add(self, rows) -> int:
        batch = self._batch(rows)
        self.add_calls.append(batch)
        for row in batch:
            self._store(row)
        return len(batch)

    async def update(self, rows) -> int:
        batch = self._batch(rows)
        self.update_calls.append(batch)
        for row in batch:
            self._store(row)
        return len(batch)

    async def find_all(self, query: Query):
        self.queries.append(query)
        for row in list(self.rows.values()):
            if query.matches(row):
                yield dict(row)

    async def find_one(self, id_value: Any):
        row = self.rows.get(self._meta.convert_id(id_value))
        return dict(row) if row is not None else None

    async def rebuild_index(self) -> None:
        self.reindexed += 1


class FakeMetaRegistry:
    """Meta registry keeping entities in dicts; ``fail_on`` names deletes that raise."""

    def __init__(self, metas: Iterable[EntityMetaData] = (), *, fail_on: Iterable[Any] = ()):
        self.metas: dict[str, EntityMetaData] = {}
        self.repos: dict[str, FakeRepository] = {}
        self.packages: list[Any] = []
        self.calls: list[tuple[Any, ...]] = []
        self.fail_on = set(fail_on)
        for meta in metas:
            self.metas[meta.name] = meta
            if not meta.abstract:
                self.repos[meta.name] = FakeRepository(meta)

    async def get_entity_meta_data(self, name: str):
        return self.metas.get(name)

    async def add_entity_meta(self, meta: EntityMetaData):
        self.calls.append(("add_entity_meta", meta.name))
        self.metas[meta.name] = meta
        if meta.abstract:
            return None
        repo = FakeRepository(meta)
        self.repos[meta.name] = repo
        return repo

    async def update_entity_meta(self, meta: EntityMetaData):
        self.calls.append(("update_entity_meta", meta.name))
        existing = self.metas[meta.name]
        added = [a for a in meta.attributes if existing.get_attribute(a.name) is None]
        existing.attributes = existing.attributes + added
        return added

    async def delete_entity_meta(self, name: str) -> None:
        self.calls.append(("delete_entity_meta", name))
        if name in self.fail_on:
            raise RuntimeError(f"cannot drop {name}")
        self.metas.pop(name, None)
        self.repos.pop(name, None)

    async def delete_attribute(self, entity_name: str, attribute_name: str) -> None:
        self.calls.append(("delete_attribute", entity_name, attribute_name))
        if (entity_name, attribute_name) in self.fail_on:
            raise RuntimeError(f"cannot drop {entity_name}.{attribute_name}")
        meta = self.metas[entity_name]
        meta.attributes = [a for a in meta.attributes if a.name != attribute_name]

    async def add_package(self, package) -> None:
        self.packages.append(package)

    async def has_repository(self, name: str) -> bool:
        return name in self.repos

    async def get_repository(self, name: str):
        return self.repos.get(name)


class FakeTagService:
    def __init__(self):
        self.entity_tags: list[Any] = []
        self.attribute_tags: list[tuple[str, Any]] = []

    async def add_entity_tag(self, tag) -> None:
        self.entity_tags.append(tag)

    async def add_attribute_tag(self, entity_name: str, tag) -> None:
        self.attribute_tags.append((entity_name, tag))


class FakePermissionHook:
    def __init__(self):
        self.grants: list[tuple[str, list[str]]] = []

    async def grant(self, principal, entity_names) -> None:
        self.grants.append((principal.username, list(entity_names)))


def simple_entity(
    name: str, id_type: FieldType = FieldType.STRING, *extra: AttributeMetaData
) -> EntityMetaData:
    return EntityMetaData(
        name,
        attributes=[AttributeMetaData("id", id_type, nillable=False), *extra],
        id_attribute_name="id",
    )


@pytest.fixture
def fake_repository():
    return FakeRepository


@pytest.fixture
def fake_registry():
    return FakeMetaRegistry


@pytest.fixture
def fake_tags():
    return FakeTagService()


@pytest.fixture
def fake_permissions():
    return FakePermissionHook()


@pytest.fixture
def entity():
    """Factory for entities with an ``id`` attribute plus extra attributes."""
    return simple_entity
