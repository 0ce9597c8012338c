"""Ontology-term synonyms as an importable row source.

Each (term, synonym) pair of an ontology becomes one row of the
``OntologyTermSynonym`` entity. Row ids are generated once per pair and kept
in a caller-owned mapping so iterating again, or importing the term rows that
reference the synonyms, sees the same ids.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, MutableMapping
from typing import Final, Protocol

from EmxImporter.meta import AttributeMetaData, EntityMetaData, FieldType, Row
from EmxImporter.tools.ulid import generate_ulid

ONTOLOGY_TERM_SYNONYM: Final[str] = "OntologyTermSynonym"
ID: Final[str] = "id"
SYNONYM: Final[str] = "ontologyTermSynonym"

ONTOLOGY_TERM_SYNONYM_META: Final[EntityMetaData] = EntityMetaData(
    ONTOLOGY_TERM_SYNONYM,
    attributes=[
        AttributeMetaData(ID, FieldType.STRING, nillable=False),
        AttributeMetaData(SYNONYM, FieldType.TEXT, nillable=False),
    ],
    id_attribute_name=ID,
)

ReferenceIds = MutableMapping[str, MutableMapping[str, str]]


class OntologyLoader(Protocol):
    def get_all_classes(self) -> Iterable[str]:
        """IRIs of all classes in the ontology."""
        ...

    def get_synonyms(self, class_iri: str) -> Iterable[str]:
        ...


def iter_term_synonyms(
    loader: OntologyLoader,
    reference_ids: ReferenceIds,
    id_factory: Callable[[], str] = generate_ulid,
) -> Iterator[Row]:
    """Yield one ``{id, ontologyTermSynonym}`` row per synonym of every class.

    Classes without synonyms produce no rows. ``reference_ids[iri][synonym]``
    is filled in as rows are produced and reused when already present.
    """
    for iri in loader.get_all_classes():
        for synonym in loader.get_synonyms(iri):
            ids = reference_ids.setdefault(iri, {})
            if synonym not in ids:
                ids[synonym] = id_factory()
            yield {ID: ids[synonym], SYNONYM: synonym}


class OntologyTermSynonymSource:
    """Re-iterable source stream of synonym rows for one ontology."""

    name = ONTOLOGY_TERM_SYNONYM
    entity_meta_data = ONTOLOGY_TERM_SYNONYM_META

    def __init__(
        self,
        loader: OntologyLoader,
        reference_ids: ReferenceIds | None = None,
        id_factory: Callable[[], str] = generate_ulid,
    ) -> None:
        self.loader = loader
        self.reference_ids: ReferenceIds = {} if reference_ids is None else reference_ids
        self.id_factory = id_factory

    def __iter__(self) -> Iterator[Row]:
        return iter_term_synonyms(self.loader, self.reference_ids, self.id_factory)
