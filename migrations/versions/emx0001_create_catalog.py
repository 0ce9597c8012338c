"""create metadata catalog tables

Revision ID: emx0001
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "emx0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "entities",
        sa.Column("fullName", sa.String(length=255), primary_key=True),
        sa.Column("simpleName", sa.String(length=255), nullable=False),
        sa.Column("package", sa.String(length=255), nullable=True),
        sa.Column("idAttribute", sa.String(length=255), nullable=True),
        sa.Column("abstract", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
    )
    op.create_table(
        "attributes",
        sa.Column("identifier", sa.String(length=511), primary_key=True),
        sa.Column("entity", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("dataType", sa.String(length=32), nullable=False),
        sa.Column("refEntity", sa.String(length=255), nullable=True),
        sa.Column("nillable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("ordinal", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_attributes_entity", "attributes", ["entity"])
    op.create_table(
        "packages",
        sa.Column("name", sa.String(length=255), primary_key=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("parent", sa.String(length=255), nullable=True),
    )
    op.create_table(
        "tags",
        sa.Column("identifier", sa.String(length=255), primary_key=True),
        sa.Column("objectIRI", sa.String(length=1024), nullable=True),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("relationLabel", sa.String(length=255), nullable=True),
        sa.Column("relationIRI", sa.String(length=1024), nullable=True),
        sa.Column("codeSystem", sa.String(length=255), nullable=True),
    )
    op.create_table(
        "entity_tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity", sa.String(length=255), nullable=False),
        sa.Column("relationIRI", sa.String(length=1024), nullable=False),
        sa.Column("objectIRI", sa.String(length=1024), nullable=False),
        sa.Column("relationLabel", sa.String(length=255), nullable=True),
        sa.Column("objectLabel", sa.String(length=255), nullable=True),
        sa.Column("codeSystem", sa.String(length=255), nullable=True),
        sa.UniqueConstraint("entity", "relationIRI", "objectIRI", name="ux_entity_tags_assertion"),
    )
    op.create_index("ix_entity_tags_entity", "entity_tags", ["entity"])
    op.create_table(
        "attribute_tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity", sa.String(length=255), nullable=False),
        sa.Column("attribute", sa.String(length=255), nullable=False),
        sa.Column("relationIRI", sa.String(length=1024), nullable=False),
        sa.Column("objectIRI", sa.String(length=1024), nullable=False),
        sa.Column("relationLabel", sa.String(length=255), nullable=True),
        sa.Column("objectLabel", sa.String(length=255), nullable=True),
        sa.Column("codeSystem", sa.String(length=255), nullable=True),
        sa.UniqueConstraint(
            "entity", "attribute", "relationIRI", "objectIRI", name="ux_attribute_tags_assertion"
        ),
    )
    op.create_index("ix_attribute_tags_entity", "attribute_tags", ["entity"])
    op.create_table(
        "entity_permissions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("entity", sa.String(length=255), nullable=False),
        sa.Column("permission", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("username", "entity", "permission", name="ux_entity_permissions_grant"),
    )
    op.create_index("ix_entity_permissions_username", "entity_permissions", ["username"])


def downgrade() -> None:
    op.drop_index("ix_entity_permissions_username", table_name="entity_permissions")
    op.drop_table("entity_permissions")
    op.drop_index("ix_attribute_tags_entity", table_name="attribute_tags")
    op.drop_table("attribute_tags")
    op.drop_index("ix_entity_tags_entity", table_name="entity_tags")
    op.drop_table("entity_tags")
    op.drop_table("tags")
    op.drop_table("packages")
    op.drop_index("ix_attributes_entity", table_name="attributes")
    op.drop_table("attributes")
    op.drop_table("entities")
