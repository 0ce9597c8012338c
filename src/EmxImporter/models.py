# models.py

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from EmxImporter.db import Base

# Column names are camelCase so the catalog tables line up with the built-in
# entity metadata in EmxImporter.meta and can be served as repositories.


class EntityRecord(Base):
    __tablename__ = "entities"
    full_name: Mapped[str] = mapped_column("fullName", String(255), primary_key=True)
    simple_name: Mapped[str] = mapped_column("simpleName", String(255))
    package: Mapped[str | None] = mapped_column(String(255), nullable=True)
    id_attribute: Mapped[str | None] = mapped_column("idAttribute", String(255), nullable=True)
    abstract: Mapped[bool] = mapped_column(Boolean, default=False)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class AttributeRecord(Base):
    __tablename__ = "attributes"
    # "<entity>.<attribute>"
    identifier: Mapped[str] = mapped_column(String(511), primary_key=True)
    entity: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str] = mapped_column(String(255))
    data_type: Mapped[str] = mapped_column("dataType", String(32))
    ref_entity: Mapped[str | None] = mapped_column("refEntity", String(255), nullable=True)
    nillable: Mapped[bool] = mapped_column(Boolean, default=True)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    ordinal: Mapped[int] = mapped_column(Integer, default=0)


class PackageRecord(Base):
    __tablename__ = "packages"
    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent: Mapped[str | None] = mapped_column(String(255), nullable=True)


class TagRecord(Base):
    __tablename__ = "tags"
    identifier: Mapped[str] = mapped_column(String(255), primary_key=True)
    object_iri: Mapped[str | None] = mapped_column("objectIRI", String(1024), nullable=True)
    label: Mapped[str] = mapped_column(String(255))
    relation_label: Mapped[str | None] = mapped_column("relationLabel", String(255), nullable=True)
    relation_iri: Mapped[str | None] = mapped_column("relationIRI", String(1024), nullable=True)
    code_system: Mapped[str | None] = mapped_column("codeSystem", String(255), nullable=True)


class EntityTagRecord(Base):
    __tablename__ = "entity_tags"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity: Mapped[str] = mapped_column(String(255), index=True)
    relation_iri: Mapped[str] = mapped_column("relationIRI", String(1024))
    object_iri: Mapped[str] = mapped_column("objectIRI", String(1024))
    relation_label: Mapped[str | None] = mapped_column("relationLabel", String(255), nullable=True)
    object_label: Mapped[str | None] = mapped_column("objectLabel", String(255), nullable=True)
    code_system: Mapped[str | None] = mapped_column("codeSystem", String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("entity", "relationIRI", "objectIRI", name="ux_entity_tags_assertion"),
    )


class AttributeTagRecord(Base):
    __tablename__ = "attribute_tags"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity: Mapped[str] = mapped_column(String(255), index=True)
    attribute: Mapped[str] = mapped_column(String(255))
    relation_iri: Mapped[str] = mapped_column("relationIRI", String(1024))
    object_iri: Mapped[str] = mapped_column("objectIRI", String(1024))
    relation_label: Mapped[str | None] = mapped_column("relationLabel", String(255), nullable=True)
    object_label: Mapped[str | None] = mapped_column("objectLabel", String(255), nullable=True)
    code_system: Mapped[str | None] = mapped_column("codeSystem", String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "entity", "attribute", "relationIRI", "objectIRI", name="ux_attribute_tags_assertion"
        ),
    )


class EntityPermissionRecord(Base):
    __tablename__ = "entity_permissions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), index=True)
    entity: Mapped[str] = mapped_column(String(255))
    permission: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("username", "entity", "permission", name="ux_entity_permissions_grant"),
    )


CATALOG_TABLES: frozenset[str] = frozenset(Base.metadata.tables)
