"""Schema-change ledger for a single import job.

Table creation and column additions are not undone by every backend's
transaction rollback, so the metadata stage records each change here and
``SchemaLedger.rollback`` applies the inverse after a failed import.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from EmxImporter.meta import AttributeMetaData
from EmxImporter.metrics import inc_counter
from EmxImporter.repository import MetaRegistry

log = structlog.get_logger()


class SchemaLedger:
    """Ordered record of entities created and attributes added during an import."""

    def __init__(self) -> None:
        self._added_entities: dict[str, None] = {}
        self._added_attributes: dict[str, dict[str, AttributeMetaData]] = {}

    def record_entity_created(self, name: str) -> None:
        if name not in self._added_entities:
            self._added_entities[name] = None

    def record_attributes_added(
        self, entity_name: str, attributes: Iterable[AttributeMetaData]
    ) -> None:
        attributes = list(attributes)
        if not attributes:
            return
        recorded = self._added_attributes.setdefault(entity_name, {})
        for attr in attributes:
            recorded.setdefault(attr.name, attr)

    def added_entities(self) -> list[str]:
        return list(self._added_entities)

    def added_attributes(self) -> dict[str, list[AttributeMetaData]]:
        return {name: list(attrs.values()) for name, attrs in self._added_attributes.items()}

    def mutated_entities(self) -> list[str]:
        return list(self._added_attributes)

    @property
    def is_empty(self) -> bool:
        return not self._added_entities and not self._added_attributes

    async def rollback(self, meta: MetaRegistry) -> list[str]:
        """Undo the recorded changes; never raises.

        Added attributes are dropped first, walking entities in reverse order
        of recording, then added entities in reverse order of creation.

        Returns:
            Names of the entities whose attributes were dropped.
        """
        mutated = list(reversed(self.mutated_entities()))
        for entity_name in mutated:
            for attr in self._added_attributes[entity_name].values():
                try:
                    await meta.delete_attribute(entity_name, attr.name)
                    log.info(
                        "importer.rollback.attribute_dropped",
                        entity=entity_name,
                        attribute=attr.name,
                    )
                except Exception:
                    inc_counter("importer.rollback.failures")
                    log.error(
                        "importer.rollback.attribute_drop_failed",
                        entity=entity_name,
                        attribute=attr.name,
                        exc_info=True,
                    )

        for entity_name in reversed(self.added_entities()):
            try:
                await meta.delete_entity_meta(entity_name)
                log.info("importer.rollback.entity_dropped", entity=entity_name)
            except Exception:
                inc_counter("importer.rollback.failures")
                log.error(
                    "importer.rollback.entity_drop_failed", entity=entity_name, exc_info=True
                )
        return mutated
