"""Tests for attribute conversion, id validation, queries and row conforming."""

from datetime import date, datetime

import pytest

from EmxImporter.errors import ErrorKind, InvalidValueError, SchemaConflictError
from EmxImporter.meta import (
    AttributeMetaData,
    DatabaseAction,
    EntityMetaData,
    FieldType,
)
from EmxImporter.query import MAX_DISJUNCTS, Query
from EmxImporter.rows import ConformingRows, conform_row


@pytest.mark.parametrize(
    "field_type,raw,expected",
    [
        (FieldType.INT, "42", 42),
        (FieldType.INT, 7.0, 7),
        (FieldType.LONG, " 9000000000 ", 9_000_000_000),
        (FieldType.DECIMAL, "1.5", 1.5),
        (FieldType.BOOL, "Yes", True),
        (FieldType.BOOL, "0", False),
        (FieldType.DATE, "2024-02-29", date(2024, 2, 29)),
        (FieldType.DATE_TIME, "2024-02-29T10:30:00", datetime(2024, 2, 29, 10, 30)),
        (FieldType.STRING, 12, "12"),
        (FieldType.STRING, "  ", None),
    ],
)
def test_scalar_conversion(field_type, raw, expected):
    assert AttributeMetaData("a", field_type).convert(raw) == expected


def test_bad_value_raises_invalid_value():
    with pytest.raises(InvalidValueError) as exc_info:
        AttributeMetaData("age", FieldType.INT).convert("forty")
    assert exc_info.value.kind is ErrorKind.INVALID_VALUE
    assert "age" in str(exc_info.value)


def test_references_use_the_referenced_id_type():
    target = EntityMetaData(
        "Target", attributes=[AttributeMetaData("key", FieldType.INT)], id_attribute_name="key"
    )
    xref = AttributeMetaData("target", FieldType.XREF, ref_entity=target)
    mref = AttributeMetaData("targets", FieldType.MREF, ref_entity=target)

    assert xref.convert("3") == 3
    assert mref.convert("1, 2,,3") == [1, 2, 3]
    assert mref.convert("") is None


def test_id_attribute_must_exist_and_have_an_id_type():
    missing = EntityMetaData("A", attributes=[AttributeMetaData("x")], id_attribute_name="id")
    bad_type = EntityMetaData(
        "B", attributes=[AttributeMetaData("id", FieldType.BOOL)], id_attribute_name="id"
    )
    abstract = EntityMetaData("C", abstract=True)

    with pytest.raises(SchemaConflictError):
        missing.validate()
    with pytest.raises(SchemaConflictError, match="cannot be used as id"):
        bad_type.validate()
    abstract.validate()


def test_database_action_parse():
    assert DatabaseAction.parse("add_update_existing") is DatabaseAction.ADD_UPDATE_EXISTING
    assert DatabaseAction.parse(DatabaseAction.UPDATE) is DatabaseAction.UPDATE
    with pytest.raises(ValueError, match="Unknown database action"):
        DatabaseAction.parse("REPLACE")


def test_query_is_bounded_and_single_attribute():
    q = Query.any_of("id", range(MAX_DISJUNCTS))
    assert len(q) == MAX_DISJUNCTS
    with pytest.raises(ValueError):
        q.eq("id", "one more")
    with pytest.raises(ValueError):
        Query("id").eq("name", "x")
    assert repr(Query.any_of("id", [1, 2])) == "(id = 1) OR (id = 2)"
    assert Query().matches({"anything": 1})


def test_conform_row_matches_names_case_insensitively():
    meta = EntityMetaData(
        "Person",
        attributes=[
            AttributeMetaData("id", FieldType.INT),
            AttributeMetaData("firstName"),
            AttributeMetaData("active", FieldType.BOOL),
        ],
        id_attribute_name="id",
    )

    row = conform_row({"ID": "5", "firstname": "Ada", "unknown": "dropped"}, meta)

    assert row == {"id": 5, "firstName": "Ada", "active": None}


def test_conform_row_names_the_entity_on_bad_values():
    meta = EntityMetaData(
        "Person", attributes=[AttributeMetaData("id", FieldType.INT)], id_attribute_name="id"
    )
    with pytest.raises(InvalidValueError, match="Entity 'Person'"):
        conform_row({"id": "x"}, meta)


def test_conforming_rows_can_be_iterated_twice():
    meta = EntityMetaData("E", attributes=[AttributeMetaData("id")], id_attribute_name="id")
    rows = ConformingRows([{"id": 1}, {"id": 2}], meta)
    assert list(rows) == list(rows) == [{"id": "1"}, {"id": "2"}]
