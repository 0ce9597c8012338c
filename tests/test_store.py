"""SQL store tests against the in-memory SQLite database."""

from datetime import date

import pytest
import sqlalchemy as sa

from EmxImporter.errors import (
    ErrorKind,
    PermissionFailureError,
    RepositoryIOError,
    SchemaConflictError,
)
from EmxImporter.meta import (
    AttributeMetaData,
    AttributeTag,
    EntityMetaData,
    EntityTag,
    FieldType,
    Package,
    SemanticTag,
)
from EmxImporter.models import (
    AttributeTagRecord,
    EntityPermissionRecord,
    EntityTagRecord,
    PackageRecord,
)
from EmxImporter.query import Query
from EmxImporter.repository import IndexedRepository, Principal
from EmxImporter.store import SqlDataService, SqlPermissionHook, SqlTagService


def person_meta(*extra: AttributeMetaData) -> EntityMetaData:
    return EntityMetaData(
        "Person",
        attributes=[
            AttributeMetaData("id", FieldType.INT, nillable=False),
            AttributeMetaData("name"),
            AttributeMetaData("born", FieldType.DATE),
            *extra,
        ],
        id_attribute_name="id",
        label="People",
    )


async def _all(repo, query=None):
    return [row async for row in repo.find_all(query or Query())]


@pytest.mark.asyncio
async def test_created_entity_stores_and_finds_rows(db):
    service = SqlDataService(db)
    repo = await service.add_entity_meta(person_meta())

    assert await repo.add(
        [
            {"id": 1, "name": "Ada", "born": date(1815, 12, 10)},
            {"id": 2, "name": "Alan", "born": None},
        ]
    ) == 2

    assert await repo.count() == 2
    assert await _all(repo, Query.any_of("id", [2, 3])) == [{"id": 2, "name": "Alan", "born": None}]
    assert (await repo.find_one(1))["born"] == date(1815, 12, 10)
    assert await repo.find_one(99) is None
    assert isinstance(repo, IndexedRepository)


@pytest.mark.asyncio
async def test_update_rewrites_non_id_columns(db):
    repo = await SqlDataService(db).add_entity_meta(person_meta())
    await repo.add({"id": 1, "name": "Ada"})

    await repo.update([{"id": 1, "name": "Ada Lovelace", "born": date(1815, 12, 10)}])

    assert await repo.find_one(1) == {"id": 1, "name": "Ada Lovelace", "born": date(1815, 12, 10)}


@pytest.mark.asyncio
async def test_entity_metadata_round_trips_through_catalog(db):
    service = SqlDataService(db)
    node = EntityMetaData("Node", id_attribute_name="key", package="graph")
    node.attributes = [
        AttributeMetaData("key", FieldType.STRING, nillable=False),
        AttributeMetaData("parent", FieldType.XREF, ref_entity=node),
        AttributeMetaData("tags", FieldType.MREF, ref_entity=node),
    ]
    await service.add_entity_meta(node)

    loaded = await service.get_entity_meta_data("Node")

    assert loaded.attribute_names == ["key", "parent", "tags"]
    assert loaded.id_attribute_name == "key"
    assert loaded.package == "graph"
    assert loaded.get_attribute("parent").ref_entity is loaded
    assert [a.name for a in loaded.self_reference_attributes()] == ["parent", "tags"]

    repo = await service.get_repository("Node")
    await repo.add([{"key": "root"}, {"key": "leaf", "parent": "root", "tags": ["root"]}])
    assert (await repo.find_one("leaf"))["tags"] == ["root"]


@pytest.mark.asyncio
async def test_update_entity_meta_adds_only_new_attributes(db):
    service = SqlDataService(db)
    await service.add_entity_meta(person_meta())

    added = await service.update_entity_meta(person_meta(AttributeMetaData("email", FieldType.EMAIL)))

    assert [a.name for a in added] == ["email"]
    assert await service.update_entity_meta(person_meta(AttributeMetaData("email", FieldType.EMAIL))) == []
    loaded = await service.get_entity_meta_data("Person")
    assert loaded.attribute_names == ["id", "name", "born", "email"]

    repo = await service.get_repository("Person")
    await repo.add({"id": 1, "email": "ada@example.org"})
    assert (await repo.find_one(1))["email"] == "ada@example.org"


@pytest.mark.asyncio
async def test_changing_attribute_type_is_a_conflict(db):
    service = SqlDataService(db)
    await service.add_entity_meta(person_meta())
    changed = person_meta()
    changed.attributes[1] = AttributeMetaData("name", FieldType.INT)

    with pytest.raises(SchemaConflictError, match="cannot change type"):
        await service.update_entity_meta(changed)


@pytest.mark.asyncio
async def test_existing_or_catalog_names_cannot_be_added(db):
    service = SqlDataService(db)
    await service.add_entity_meta(person_meta())

    with pytest.raises(SchemaConflictError, match="already exists"):
        await service.add_entity_meta(person_meta())
    with pytest.raises(SchemaConflictError) as exc_info:
        await service.add_entity_meta(
            EntityMetaData("packages", attributes=[AttributeMetaData("id")], id_attribute_name="id")
        )
    assert exc_info.value.kind is ErrorKind.SCHEMA_CONFLICT


@pytest.mark.asyncio
async def test_delete_attribute_and_entity(db):
    service = SqlDataService(db)
    await service.add_entity_meta(person_meta())
    await service.update_entity_meta(person_meta(AttributeMetaData("email")))

    await service.delete_attribute("Person", "email")
    assert (await service.get_entity_meta_data("Person")).attribute_names == ["id", "name", "born"]
    repo = await service.get_repository("Person")
    await repo.add({"id": 1, "name": "still works"})

    await service.delete_entity_meta("Person")
    assert await service.get_entity_meta_data("Person") is None
    assert not await service.has_repository("Person")
    tables = await db.run_sync(lambda s: sa.inspect(s.connection()).get_table_names())
    assert "Person" not in tables

    # Already gone: nothing to do
    await service.delete_entity_meta("Person")
    await service.delete_attribute("Person", "email")


@pytest.mark.asyncio
async def test_abstract_entities_have_no_repository(db):
    service = SqlDataService(db)
    base = EntityMetaData("Base", attributes=[AttributeMetaData("id")], abstract=True)

    assert await service.add_entity_meta(base) is None
    assert (await service.get_entity_meta_data("Base")).abstract
    assert not await service.has_repository("Base")
    assert await service.get_repository("Base") is None


@pytest.mark.asyncio
async def test_catalog_tables_serve_as_repositories(db):
    service = SqlDataService(db)
    assert await service.has_repository("tags")

    tags = await service.get_repository("tags")
    await tags.add({"identifier": "t1", "label": "Gene", "objectIRI": "http://x/gene"})
    assert (await tags.find_one("t1"))["label"] == "Gene"

    await service.add_package(Package("base", description="root"))
    await service.add_package(Package("base", description="replaced"))
    packages = (await db.execute(sa.select(PackageRecord))).scalars().all()
    assert [(p.name, p.description) for p in packages] == [("base", "replaced")]

    await service.add_entity_meta(person_meta())
    entities = await service.get_repository("entities")
    assert (await entities.find_one("Person"))["label"] == "People"


@pytest.mark.asyncio
async def test_duplicate_insert_is_a_repository_error(db):
    repo = await SqlDataService(db).add_entity_meta(person_meta())
    await repo.add({"id": 1})

    with pytest.raises(RepositoryIOError) as exc_info:
        await repo.add({"id": 1})
    assert exc_info.value.kind is ErrorKind.IO_FAILURE


@pytest.mark.asyncio
async def test_rebuild_index_on_sqlite(db):
    repo = await SqlDataService(db).add_entity_meta(person_meta())
    await repo.rebuild_index()


@pytest.mark.asyncio
async def test_tag_bindings_are_idempotent(db):
    service = SqlTagService(db)
    tag = SemanticTag(relation_iri="http://r/isA", object_iri="http://o/gene", object_label="gene")

    for _ in range(2):
        await service.add_entity_tag(EntityTag("Person", tag))
        await service.add_attribute_tag("Person", AttributeTag("name", tag))

    assert len((await db.execute(sa.select(EntityTagRecord))).all()) == 1
    attribute_tags = (await db.execute(sa.select(AttributeTagRecord))).scalars().all()
    assert [(t.entity, t.attribute, t.object_label) for t in attribute_tags] == [
        ("Person", "name", "gene")
    ]


@pytest.mark.asyncio
async def test_permission_grants(db):
    hook = SqlPermissionHook(db)

    await hook.grant(Principal("ada"), ["Person", "Node"])
    await hook.grant(Principal("ada"), ["Person"])

    grants = (await db.execute(sa.select(EntityPermissionRecord))).scalars().all()
    assert sorted((g.username, g.entity, g.permission) for g in grants) == [
        ("ada", "Node", "WRITEMETA"),
        ("ada", "Person", "WRITEMETA"),
    ]
    with pytest.raises(PermissionFailureError):
        await hook.grant(Principal(""), ["Person"])
