"""Entity and attribute metadata for EMX imports.

The parser upstream produces these objects; the importer only reads them.
Each attribute carries a semantic ``FieldType`` whose converter turns raw
source values (mostly strings from spreadsheet cells) into typed values. Id
comparison throughout the importer always happens on converted values.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Final
from uuid import UUID

from EmxImporter.errors import InvalidValueError, SchemaConflictError

Row = dict[str, Any]

# Reserved entity names; never treated as user data entities.
TAGS: Final[str] = "tags"
PACKAGES: Final[str] = "packages"
ENTITIES: Final[str] = "entities"
ATTRIBUTES: Final[str] = "attributes"
RESERVED_ENTITY_NAMES: Final[tuple[str, ...]] = (ENTITIES, ATTRIBUTES, PACKAGES, TAGS)

_TRUE_STRINGS: Final[frozenset[str]] = frozenset({"true", "yes", "y", "1"})
_FALSE_STRINGS: Final[frozenset[str]] = frozenset({"false", "no", "n", "0"})


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_string(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError("not an integral number")
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        number = float(text)
        if not number.is_integer():
            raise
        return int(number)


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    return float(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError("not a boolean")


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value).strip())


class FieldType(str, enum.Enum):
    """Semantic attribute types understood by the importer."""

    STRING = "string"
    TEXT = "text"
    EMAIL = "email"
    HYPERLINK = "hyperlink"
    ENUM = "enum"
    INT = "int"
    LONG = "long"
    DECIMAL = "decimal"
    BOOL = "bool"
    DATE = "date"
    DATE_TIME = "datetime"
    XREF = "xref"
    MREF = "mref"

    @property
    def is_reference(self) -> bool:
        return self in (FieldType.XREF, FieldType.MREF)

    def convert(self, value: Any) -> Any:
        """Convert a raw scalar value; empty values become ``None``.

        Reference types are converted by ``AttributeMetaData.convert`` since
        they need the referenced entity's id type.

        Raises:
            ValueError: if the value cannot be represented in this type.
        """
        if _is_empty(value):
            return None
        if isinstance(value, UUID):
            value = str(value)
        converter = _SCALAR_CONVERTERS.get(self)
        if converter is None:
            return value
        return converter(value)


_SCALAR_CONVERTERS = {
    FieldType.STRING: _to_string,
    FieldType.TEXT: _to_string,
    FieldType.EMAIL: _to_string,
    FieldType.HYPERLINK: _to_string,
    FieldType.ENUM: _to_string,
    FieldType.INT: _to_int,
    FieldType.LONG: _to_int,
    FieldType.DECIMAL: _to_float,
    FieldType.BOOL: _to_bool,
    FieldType.DATE: _to_date,
    FieldType.DATE_TIME: _to_datetime,
}

ID_FIELD_TYPES: Final[frozenset[FieldType]] = frozenset(
    {FieldType.STRING, FieldType.INT, FieldType.LONG, FieldType.EMAIL, FieldType.HYPERLINK}
)


class DatabaseAction(str, enum.Enum):
    """Merge policy: how incoming rows meet rows already in the repository."""

    ADD = "ADD"
    ADD_UPDATE_EXISTING = "ADD_UPDATE_EXISTING"
    UPDATE = "UPDATE"

    @classmethod
    def parse(cls, value: "str | DatabaseAction") -> "DatabaseAction":
        """Parse a wire value, rejecting anything but the three policies."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown database action {value!r}; expected one of {allowed}") from None


@dataclass
class AttributeMetaData:
    name: str
    data_type: FieldType = FieldType.STRING
    ref_entity: EntityMetaData | None = field(default=None, repr=False, compare=False)
    nillable: bool = True
    label: str | None = None
    description: str | None = None

    @property
    def ref_entity_name(self) -> str | None:
        return self.ref_entity.name if self.ref_entity is not None else None

    def convert(self, value: Any) -> Any:
        """Convert a raw value to this attribute's type.

        ``XREF`` values convert with the referenced entity's id converter and
        ``MREF`` values become lists of such ids (comma separated strings are
        split).

        Raises:
            InvalidValueError: if the value cannot be converted.
        """
        try:
            if self.data_type is FieldType.MREF:
                return self._convert_mref(value)
            if self.data_type is FieldType.XREF:
                return self._convert_ref_id(value)
            return self.data_type.convert(value)
        except (TypeError, ValueError) as exc:
            raise InvalidValueError(
                f"Invalid {self.data_type.value} value {value!r} for attribute '{self.name}'"
            ) from exc

    def _convert_ref_id(self, value: Any) -> Any:
        id_attr = self.ref_entity.id_attribute if self.ref_entity is not None else None
        if id_attr is None:
            return FieldType.STRING.convert(value)
        return id_attr.data_type.convert(value)

    def _convert_mref(self, value: Any) -> list[Any] | None:
        if _is_empty(value):
            return None
        if isinstance(value, str):
            items: list[Any] = [part.strip() for part in value.split(",")]
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
        else:
            items = [value]
        converted = [self._convert_ref_id(item) for item in items if not _is_empty(item)]
        return converted or None


@dataclass
class EntityMetaData:
    name: str
    attributes: list[AttributeMetaData] = field(default_factory=list)
    id_attribute_name: str | None = None
    simple_name: str | None = None
    package: str | None = None
    abstract: bool = False
    label: str | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        if self.simple_name is None:
            self.simple_name = self.name

    def __repr__(self) -> str:
        return f"EntityMetaData(name={self.name!r}, attributes={self.attribute_names!r})"

    @property
    def attribute_names(self) -> list[str]:
        return [attr.name for attr in self.attributes]

    @property
    def id_attribute(self) -> AttributeMetaData | None:
        if self.id_attribute_name is None:
            return None
        return self.get_attribute(self.id_attribute_name)

    def get_attribute(self, name: str) -> AttributeMetaData | None:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None

    def self_reference_attributes(self) -> list[AttributeMetaData]:
        return [
            attr
            for attr in self.attributes
            if attr.data_type.is_reference and attr.ref_entity_name == self.name
        ]

    def convert_id(self, value: Any) -> Any:
        """Convert an id value with the id attribute's converter."""
        id_attr = self.id_attribute
        if id_attr is None:
            return value
        return id_attr.convert(value)

    def validate(self) -> None:
        """Check the id invariant for non-abstract entities.

        Raises:
            SchemaConflictError: if the id attribute is missing or has a type
                that cannot identify rows.
        """
        if self.abstract:
            return
        id_attr = self.id_attribute
        if id_attr is None:
            raise SchemaConflictError(
                f"Entity '{self.name}' has no id attribute '{self.id_attribute_name}'"
            )
        if id_attr.data_type not in ID_FIELD_TYPES:
            raise SchemaConflictError(
                f"Entity '{self.name}' id attribute '{id_attr.name}' has type "
                f"'{id_attr.data_type.value}' which cannot be used as id"
            )


@dataclass(frozen=True)
class Package:
    name: str
    description: str | None = None
    parent: str | None = None


@dataclass(frozen=True)
class SemanticTag:
    """An ontology assertion: subject --relation--> object (from a code system)."""

    relation_iri: str
    object_iri: str
    relation_label: str | None = None
    object_label: str | None = None
    code_system: str | None = None


@dataclass(frozen=True)
class EntityTag:
    entity: str
    tag: SemanticTag


@dataclass(frozen=True)
class AttributeTag:
    attribute: str
    tag: SemanticTag


@dataclass
class ParsedMetaData:
    """Metadata parsed from the entities/attributes/packages/tags sheets.

    ``entities`` is dependency ordered by the parser: referenced entities come
    before the entities referencing them.
    """

    entities: list[EntityMetaData] = field(default_factory=list)
    packages: dict[str, Package | None] = field(default_factory=dict)
    entity_tags: list[EntityTag] = field(default_factory=list)
    attribute_tags: dict[str, list[AttributeTag]] = field(default_factory=dict)


def _builtin(name: str, id_name: str, *columns: tuple[str, FieldType, bool]) -> EntityMetaData:
    attrs = [AttributeMetaData(col, dtype, nillable=nillable) for col, dtype, nillable in columns]
    return EntityMetaData(name, attributes=attrs, id_attribute_name=id_name)


TAG_META: Final[EntityMetaData] = _builtin(
    TAGS,
    "identifier",
    ("identifier", FieldType.STRING, False),
    ("objectIRI", FieldType.HYPERLINK, True),
    ("label", FieldType.STRING, False),
    ("relationLabel", FieldType.STRING, True),
    ("relationIRI", FieldType.HYPERLINK, True),
    ("codeSystem", FieldType.STRING, True),
)

PACKAGE_META: Final[EntityMetaData] = _builtin(
    PACKAGES,
    "name",
    ("name", FieldType.STRING, False),
    ("description", FieldType.TEXT, True),
    ("parent", FieldType.STRING, True),
)

ENTITY_META: Final[EntityMetaData] = _builtin(
    ENTITIES,
    "fullName",
    ("fullName", FieldType.STRING, False),
    ("simpleName", FieldType.STRING, False),
    ("package", FieldType.STRING, True),
    ("idAttribute", FieldType.STRING, True),
    ("abstract", FieldType.BOOL, False),
    ("label", FieldType.STRING, True),
    ("description", FieldType.TEXT, True),
)

ATTRIBUTE_META: Final[EntityMetaData] = _builtin(
    ATTRIBUTES,
    "identifier",
    ("identifier", FieldType.STRING, False),
    ("entity", FieldType.STRING, False),
    ("name", FieldType.STRING, False),
    ("dataType", FieldType.STRING, False),
    ("refEntity", FieldType.STRING, True),
    ("nillable", FieldType.BOOL, False),
    ("label", FieldType.STRING, True),
    ("description", FieldType.TEXT, True),
    ("ordinal", FieldType.INT, False),
)

BUILTIN_META: Final[dict[str, EntityMetaData]] = {
    meta.name: meta for meta in (TAG_META, PACKAGE_META, ENTITY_META, ATTRIBUTE_META)
}
