"""SQLAlchemy implementation of the importer's storage collaborators.

Entity definitions live in the catalog tables of ``EmxImporter.models``;
every non-abstract entity gets its own table with one column per attribute.
Schema changes at runtime go through Alembic's ``Operations`` so that
``ADD COLUMN`` / ``DROP COLUMN`` are rendered per dialect.

All classes share the caller's ``AsyncSession`` and never commit: the
transaction belongs to whoever opened the session.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from typing import Any, Final

import sqlalchemy as sa
import structlog
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from EmxImporter.db import Base
from EmxImporter.errors import (
    PermissionFailureError,
    RepositoryIOError,
    SchemaConflictError,
)
from EmxImporter.meta import (
    BUILTIN_META,
    AttributeMetaData,
    AttributeTag,
    EntityMetaData,
    EntityTag,
    FieldType,
    Package,
    Row,
)
from EmxImporter.models import (
    CATALOG_TABLES,
    AttributeRecord,
    AttributeTagRecord,
    EntityPermissionRecord,
    EntityRecord,
    EntityTagRecord,
    PackageRecord,
)
from EmxImporter.query import Query
from EmxImporter.repository import Principal

log = structlog.get_logger()

_WRITE_CHUNK: Final[int] = 500
WRITEMETA: Final[str] = "WRITEMETA"

_SQL_TYPES: Final[dict[FieldType, Callable[[], sa.types.TypeEngine]]] = {
    FieldType.STRING: lambda: sa.String(255),
    FieldType.TEXT: sa.Text,
    FieldType.EMAIL: lambda: sa.String(255),
    FieldType.HYPERLINK: lambda: sa.String(1024),
    FieldType.ENUM: lambda: sa.String(255),
    FieldType.INT: sa.Integer,
    FieldType.LONG: sa.BigInteger,
    FieldType.DECIMAL: sa.Float,
    FieldType.BOOL: sa.Boolean,
    FieldType.DATE: sa.Date,
    FieldType.DATE_TIME: sa.DateTime,
    FieldType.MREF: sa.JSON,
}


def _column_type(attr: AttributeMetaData) -> sa.types.TypeEngine:
    if attr.data_type is FieldType.XREF:
        ref_id = attr.ref_entity.id_attribute if attr.ref_entity is not None else None
        if ref_id is None or ref_id.data_type.is_reference:
            return sa.String(255)
        return _column_type(ref_id)
    return _SQL_TYPES[attr.data_type]()


def _column(attr: AttributeMetaData, meta: EntityMetaData, *, force_nullable: bool = False) -> sa.Column:
    is_id = attr.name == meta.id_attribute_name
    return sa.Column(
        attr.name,
        _column_type(attr),
        primary_key=is_id,
        autoincrement=False,
        nullable=True if force_nullable else (attr.nillable and not is_id),
    )


def build_table(meta: EntityMetaData) -> sa.Table:
    """Return the SQLAlchemy table for a non-abstract entity."""
    return sa.Table(meta.name, sa.MetaData(), *(_column(attr, meta) for attr in meta.attributes))


def _as_rows(rows: Row | Iterable[Row]) -> Iterable[Row]:
    if isinstance(rows, Mapping):
        return [rows]
    return rows


class SqlRepository:
    """Rows of one entity stored in one table."""

    def __init__(self, session: AsyncSession, meta: EntityMetaData, table: sa.Table) -> None:
        self._session = session
        self._meta = meta
        self._table = table

    @property
    def name(self) -> str:
        return self._meta.name

    @property
    def entity_meta_data(self) -> EntityMetaData:
        return self._meta

    @property
    def _id_column(self) -> sa.Column:
        return self._table.c[self._meta.id_attribute_name]

    async def _execute(self, stmt: Any, params: Any = None) -> sa.Result:
        try:
            if params is None:
                return await self._session.execute(stmt)
            return await self._session.execute(stmt, params)
        except SQLAlchemyError as exc:
            raise RepositoryIOError(f"Repository '{self.name}' failed: {exc}") from exc

    def _values(self, row: Row) -> dict[str, Any]:
        return {col.name: row.get(col.name) for col in self._table.columns}

    async def count(self) -> int:
        result = await self._execute(sa.select(sa.func.count()).select_from(self._table))
        return int(result.scalar_one())

    async def add(self, rows: Row | Iterable[Row]) -> int:
        total = 0
        batch: list[dict[str, Any]] = []
        for row in _as_rows(rows):
            batch.append(self._values(row))
            if len(batch) == _WRITE_CHUNK:
                await self._execute(sa.insert(self._table), batch)
                total += len(batch)
                batch = []
        if batch:
            await self._execute(sa.insert(self._table), batch)
            total += len(batch)
        return total

    async def update(self, rows: Row | Iterable[Row]) -> int:
        id_name = self._meta.id_attribute_name
        total = 0
        for row in _as_rows(rows):
            values = self._values(row)
            id_value = values.pop(id_name)
            await self._execute(
                sa.update(self._table).where(self._id_column == id_value).values(**values)
            )
            total += 1
        return total

    async def find_all(self, query: Query) -> AsyncIterator[Row]:
        stmt = sa.select(self._table)
        if len(query):
            column = self._table.c[query.attribute]
            stmt = stmt.where(sa.or_(*(column == value for value in query.values)))
        result = await self._execute(stmt)
        for mapping in result.mappings():
            yield dict(mapping)

    async def find_one(self, id_value: Any) -> Row | None:
        result = await self._execute(sa.select(self._table).where(self._id_column == id_value))
        mapping = result.mappings().first()
        return dict(mapping) if mapping is not None else None

    async def rebuild_index(self) -> None:
        dialect = self._session.get_bind().dialect
        quoted = dialect.identifier_preparer.quote(self._table.name)
        if dialect.name == "sqlite":
            await self._execute(sa.text(f"REINDEX {quoted}"))
        elif dialect.name == "postgresql":
            await self._execute(sa.text(f"REINDEX TABLE {quoted}"))
        else:
            log.info("store.reindex.unsupported", entity=self.name, dialect=dialect.name)
            return
        log.info("store.reindex.done", entity=self.name)


class SqlDataService:
    """Meta registry and repository lookup on top of the catalog tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _ddl(self, description: str, fn: Callable[[Operations], None]) -> None:
        def run(sync_session) -> None:
            conn: Connection = sync_session.connection()
            fn(Operations(MigrationContext.configure(conn)))

        try:
            await self._session.run_sync(run)
        except SQLAlchemyError as exc:
            raise SchemaConflictError(f"Could not {description}: {exc}") from exc

    async def _flush(self, description: str) -> None:
        try:
            await self._session.flush()
        except SQLAlchemyError as exc:
            raise SchemaConflictError(f"Could not {description}: {exc}") from exc

    async def _catalog(self, description: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fn()
        except SQLAlchemyError as exc:
            raise RepositoryIOError(f"Could not {description}: {exc}") from exc

    async def get_entity_meta_data(self, name: str) -> EntityMetaData | None:
        if name in BUILTIN_META:
            return BUILTIN_META[name]
        return await self._load_meta(name, {})

    async def _load_meta(
        self, name: str, memo: dict[str, EntityMetaData]
    ) -> EntityMetaData | None:
        if name in memo:
            return memo[name]
        if name in BUILTIN_META:
            return BUILTIN_META[name]
        record = await self._catalog(
            f"read entity '{name}'", lambda: self._session.get(EntityRecord, name)
        )
        if record is None:
            return None
        meta = EntityMetaData(
            record.full_name,
            id_attribute_name=record.id_attribute,
            simple_name=record.simple_name,
            package=record.package,
            abstract=record.abstract,
            label=record.label,
            description=record.description,
        )
        # Registered before the attributes so self references resolve to this object
        memo[name] = meta
        result = await self._catalog(
            f"read attributes of '{name}'",
            lambda: self._session.execute(
                sa.select(AttributeRecord)
                .where(AttributeRecord.entity == name)
                .order_by(AttributeRecord.ordinal)
            ),
        )
        for attr in result.scalars().all():
            ref = await self._load_meta(attr.ref_entity, memo) if attr.ref_entity else None
            meta.attributes.append(
                AttributeMetaData(
                    attr.name,
                    FieldType(attr.data_type),
                    ref_entity=ref,
                    nillable=attr.nillable,
                    label=attr.label,
                    description=attr.description,
                )
            )
        return meta

    def _attribute_record(
        self, entity_name: str, attr: AttributeMetaData, ordinal: int
    ) -> AttributeRecord:
        return AttributeRecord(
            identifier=f"{entity_name}.{attr.name}",
            entity=entity_name,
            name=attr.name,
            data_type=attr.data_type.value,
            ref_entity=attr.ref_entity_name,
            nillable=attr.nillable,
            label=attr.label,
            description=attr.description,
            ordinal=ordinal,
        )

    async def add_entity_meta(self, meta: EntityMetaData) -> SqlRepository | None:
        """Register ``meta`` and create its table.

        Returns:
            The new repository, or ``None`` for abstract entities.

        Raises:
            SchemaConflictError: if the entity exists, collides with a catalog
                table or violates the id invariant.
        """
        if meta.name in CATALOG_TABLES:
            raise SchemaConflictError(f"Entity name '{meta.name}' is reserved")
        meta.validate()
        if await self._session.get(EntityRecord, meta.name) is not None:
            raise SchemaConflictError(f"Entity '{meta.name}' already exists")

        self._session.add(
            EntityRecord(
                full_name=meta.name,
                simple_name=meta.simple_name,
                package=meta.package,
                id_attribute=meta.id_attribute_name,
                abstract=meta.abstract,
                label=meta.label,
                description=meta.description,
            )
        )
        for ordinal, attr in enumerate(meta.attributes):
            self._session.add(self._attribute_record(meta.name, attr, ordinal))
        await self._flush(f"register entity '{meta.name}'")

        if meta.abstract:
            log.info("store.entity.registered", entity=meta.name, abstract=True)
            return None

        await self._ddl(
            f"create table for '{meta.name}'",
            lambda op: op.create_table(
                meta.name, *(_column(attr, meta) for attr in meta.attributes)
            ),
        )
        log.info("store.entity.created", entity=meta.name, attributes=len(meta.attributes))
        return SqlRepository(self._session, meta, build_table(meta))

    async def update_entity_meta(self, meta: EntityMetaData) -> list[AttributeMetaData]:
        """Add attributes of ``meta`` missing from the registered entity.

        Raises:
            SchemaConflictError: if the entity is unknown or an attribute
                changes type.
        """
        existing = await self.get_entity_meta_data(meta.name)
        if existing is None:
            raise SchemaConflictError(f"Entity '{meta.name}' does not exist")

        added: list[AttributeMetaData] = []
        for attr in meta.attributes:
            current = existing.get_attribute(attr.name)
            if current is None:
                added.append(attr)
            elif current.data_type is not attr.data_type:
                raise SchemaConflictError(
                    f"Attribute '{meta.name}.{attr.name}' cannot change type from "
                    f"'{current.data_type.value}' to '{attr.data_type.value}'"
                )
        if not added:
            return []

        first_ordinal = len(existing.attributes)
        for offset, attr in enumerate(added):
            self._session.add(self._attribute_record(meta.name, attr, first_ordinal + offset))
        # Catalog rows first: pysqlite only opens the transaction on DML
        await self._flush(f"register attributes of '{meta.name}'")
        if not existing.abstract:
            for attr in added:
                # Existing rows have no value, so new columns are always nullable
                column = _column(attr, meta, force_nullable=True)
                await self._ddl(
                    f"add column '{meta.name}.{attr.name}'",
                    lambda op, column=column: op.add_column(meta.name, column),
                )
        log.info("store.entity.extended", entity=meta.name, added=[a.name for a in added])
        return added

    async def delete_entity_meta(self, name: str) -> None:
        """Drop the entity's table and catalog entries.

        An entity that is already gone (for instance because an aborted
        transaction took its DDL with it) is left alone.
        """
        record = await self._session.get(EntityRecord, name)
        if record is None:
            log.info("store.entity.absent", entity=name)
            return
        if not record.abstract:
            await self._ddl(f"drop table '{name}'", lambda op: op.drop_table(name))
        for model in (AttributeRecord, EntityTagRecord, AttributeTagRecord):
            await self._session.execute(sa.delete(model).where(model.entity == name))
        await self._session.delete(record)
        await self._flush(f"unregister entity '{name}'")
        log.info("store.entity.deleted", entity=name)

    async def delete_attribute(self, entity_name: str, attribute_name: str) -> None:
        record = await self._session.get(AttributeRecord, f"{entity_name}.{attribute_name}")
        if record is None:
            log.info("store.attribute.absent", entity=entity_name, attribute=attribute_name)
            return
        entity = await self._session.get(EntityRecord, entity_name)
        if entity is not None and not entity.abstract:
            await self._ddl(
                f"drop column '{entity_name}.{attribute_name}'",
                lambda op: op.drop_column(entity_name, attribute_name),
            )
        await self._session.execute(
            sa.delete(AttributeTagRecord).where(
                AttributeTagRecord.entity == entity_name,
                AttributeTagRecord.attribute == attribute_name,
            )
        )
        await self._session.delete(record)
        await self._flush(f"unregister attribute '{entity_name}.{attribute_name}'")
        log.info("store.attribute.deleted", entity=entity_name, attribute=attribute_name)

    async def add_package(self, package: Package) -> None:
        await self._session.merge(
            PackageRecord(name=package.name, description=package.description, parent=package.parent)
        )
        await self._flush(f"store package '{package.name}'")

    async def has_repository(self, name: str) -> bool:
        if name in BUILTIN_META:
            return True
        record = await self._catalog(
            f"read entity '{name}'", lambda: self._session.get(EntityRecord, name)
        )
        return record is not None and not record.abstract

    async def get_repository(self, name: str) -> SqlRepository | None:
        if name in BUILTIN_META:
            return SqlRepository(self._session, BUILTIN_META[name], Base.metadata.tables[name])
        meta = await self.get_entity_meta_data(name)
        if meta is None or meta.abstract:
            return None
        return SqlRepository(self._session, meta, build_table(meta))


class SqlTagService:
    """Stores entity and attribute tag assertions; adding one twice is a no-op."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_entity_tag(self, tag: EntityTag) -> None:
        t = tag.tag
        existing = await self._session.execute(
            sa.select(EntityTagRecord.id).where(
                EntityTagRecord.entity == tag.entity,
                EntityTagRecord.relation_iri == t.relation_iri,
                EntityTagRecord.object_iri == t.object_iri,
            )
        )
        if existing.first() is not None:
            return
        self._session.add(
            EntityTagRecord(
                entity=tag.entity,
                relation_iri=t.relation_iri,
                object_iri=t.object_iri,
                relation_label=t.relation_label,
                object_label=t.object_label,
                code_system=t.code_system,
            )
        )
        await self._session.flush()

    async def add_attribute_tag(self, entity_name: str, tag: AttributeTag) -> None:
        t = tag.tag
        existing = await self._session.execute(
            sa.select(AttributeTagRecord.id).where(
                AttributeTagRecord.entity == entity_name,
                AttributeTagRecord.attribute == tag.attribute,
                AttributeTagRecord.relation_iri == t.relation_iri,
                AttributeTagRecord.object_iri == t.object_iri,
            )
        )
        if existing.first() is not None:
            return
        self._session.add(
            AttributeTagRecord(
                entity=entity_name,
                attribute=tag.attribute,
                relation_iri=t.relation_iri,
                object_iri=t.object_iri,
                relation_label=t.relation_label,
                object_label=t.object_label,
                code_system=t.code_system,
            )
        )
        await self._session.flush()


class SqlPermissionHook:
    """Grants the importing user WRITEMETA on each entity they created."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def grant(self, principal: Principal, entity_names: list[str]) -> None:
        if not principal.username:
            raise PermissionFailureError("Cannot grant entity permissions to an anonymous user")
        for name in entity_names:
            existing = await self._session.execute(
                sa.select(EntityPermissionRecord.id).where(
                    EntityPermissionRecord.username == principal.username,
                    EntityPermissionRecord.entity == name,
                    EntityPermissionRecord.permission == WRITEMETA,
                )
            )
            if existing.first() is None:
                self._session.add(
                    EntityPermissionRecord(
                        username=principal.username, entity=name, permission=WRITEMETA
                    )
                )
        try:
            await self._session.flush()
        except SQLAlchemyError as exc:
            raise PermissionFailureError(f"Could not grant permissions: {exc}") from exc
        log.info("store.permissions.granted", username=principal.username, entities=entity_names)
