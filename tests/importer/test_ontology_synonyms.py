"""Tests for the ontology-term synonym row source."""

import itertools

from EmxImporter.ontology import (
    ONTOLOGY_TERM_SYNONYM,
    OntologyTermSynonymSource,
    iter_term_synonyms,
)
from EmxImporter.tools.ulid import is_ulid


class StubLoader:
    def __init__(self, synonyms: dict[str, list[str]]):
        self.synonyms = synonyms

    def get_all_classes(self):
        return list(self.synonyms)

    def get_synonyms(self, class_iri):
        return self.synonyms[class_iri]


LOADER = StubLoader(
    {
        "http://o/OT_1": ["S1", "S2"],
        "http://o/OT_2": [],
        "http://o/OT_3": [],
        "http://o/OT_4": ["S3"],
    }
)


def test_terms_without_synonyms_produce_no_rows():
    counter = itertools.count(1)
    rows = list(iter_term_synonyms(LOADER, {}, lambda: f"id{next(counter)}"))

    assert rows == [
        {"id": "id1", "ontologyTermSynonym": "S1"},
        {"id": "id2", "ontologyTermSynonym": "S2"},
        {"id": "id3", "ontologyTermSynonym": "S3"},
    ]


def test_ids_are_memoised_in_the_callers_mapping():
    reference_ids: dict = {}
    first = list(iter_term_synonyms(LOADER, reference_ids))
    second = list(iter_term_synonyms(LOADER, reference_ids))

    assert first == second
    assert reference_ids["http://o/OT_4"]["S3"] == first[2]["id"]
    assert all(is_ulid(row["id"]) for row in first)


def test_source_is_reiterable_and_named():
    source = OntologyTermSynonymSource(StubLoader({"http://o/A": ["alpha"]}))

    assert source.name == ONTOLOGY_TERM_SYNONYM
    assert list(source) == list(source)
    assert list(source.reference_ids) == ["http://o/A"]
    assert source.entity_meta_data.id_attribute_name == "id"
