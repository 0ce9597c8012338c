"""Id-based merge of incoming rows into an entity repository.

``MergeEngine.update`` walks the incoming rows to harvest their ids, probes
the repository for which of those ids already exist, and then applies the
rows according to the merge policy:

* ``ADD``: every row must be new; existing ids fail the import.
* ``ADD_UPDATE_EXISTING``: existing ids are updated, the rest inserted, both
  in batches of ``APPLY_BATCH_SIZE``.
* ``UPDATE``: every row must already exist; missing ids fail the import.

The incoming stream must be re-iterable since it is consumed twice. Both id
sets are ``HugeSet`` instances and are released however the call exits.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, Final

import structlog

from EmxImporter.errors import DuplicateIdError, MissingIdError, SchemaConflictError
from EmxImporter.hugeset import DEFAULT_SPILL_THRESHOLD, HugeSet
from EmxImporter.meta import DatabaseAction, EntityMetaData, Row
from EmxImporter.metrics import inc_counter
from EmxImporter.query import Query
from EmxImporter.repository import EntityRepository

log = structlog.get_logger()

PROBE_BATCH_SIZE: Final[int] = 100
APPLY_BATCH_SIZE: Final[int] = 1000
MAX_REPORTED_IDS: Final[int] = 5


def _format_ids(ids: Iterable[Any], separator: str) -> str:
    """Join up to ``MAX_REPORTED_IDS`` ids, adding " and more." when truncated."""
    shown: list[str] = []
    truncated = False
    for value in ids:
        if len(shown) == MAX_REPORTED_IDS:
            truncated = True
            break
        shown.append(str(value))
    text = separator.join(shown)
    return text + " and more." if truncated else text


class MergeEngine:
    def __init__(
        self,
        *,
        spill_threshold: int = DEFAULT_SPILL_THRESHOLD,
        tmp_dir: str | None = None,
        hugeset_factory: Callable[[], HugeSet] | None = None,
    ) -> None:
        self.spill_threshold = spill_threshold
        self.tmp_dir = tmp_dir
        self._hugeset_factory = hugeset_factory

    def _new_set(self) -> HugeSet:
        if self._hugeset_factory is not None:
            return self._hugeset_factory()
        return HugeSet(spill_threshold=self.spill_threshold, tmp_dir=self.tmp_dir)

    async def update(
        self,
        repo: EntityRepository,
        rows: Iterable[Row] | None,
        policy: DatabaseAction | str,
    ) -> int:
        """Merge ``rows`` into ``repo`` and return the number of rows seen.

        Raises:
            DuplicateIdError: ADD policy and some ids already exist.
            MissingIdError: UPDATE policy and some ids do not exist.
        """
        if rows is None:
            return 0

        meta = repo.entity_meta_data
        id_name = meta.id_attribute_name

        with self._new_set() as incoming_ids, self._new_set() as existing_ids:
            count = 0
            for row in rows:
                count += 1
                row_id = meta.convert_id(row.get(id_name))
                if row_id is not None:
                    incoming_ids.add(row_id)

            if incoming_ids and await repo.count() > 0:
                await self._probe(repo, meta, incoming_ids, existing_ids)

            log.info(
                "importer.merge.probed",
                entity=repo.name,
                policy=str(getattr(policy, "value", policy)),
                incoming=len(incoming_ids),
                existing=len(existing_ids),
            )

            if policy == DatabaseAction.ADD:
                if existing_ids:
                    raise DuplicateIdError(
                        f"Trying to add existing {repo.name} entities as new insert: "
                        f"{_format_ids(existing_ids, ',')}"
                    )
                await repo.add(rows)
                inc_counter("importer.rows.added", count)
            elif policy == DatabaseAction.ADD_UPDATE_EXISTING:
                count = await self._add_or_update(repo, meta, rows, existing_ids)
            elif policy == DatabaseAction.UPDATE:
                count = await self._update_existing(repo, meta, rows, existing_ids)
            else:
                log.warning("importer.merge.unknown_policy", entity=repo.name, policy=str(policy))

            return count

    async def _probe(
        self,
        repo: EntityRepository,
        meta: EntityMetaData,
        incoming_ids: HugeSet,
        existing_ids: HugeSet,
    ) -> None:
        id_name = meta.id_attribute_name
        if id_name is None:
            raise SchemaConflictError(f"Entity '{meta.name}' has no id attribute to probe on")
        batch: list[Any] = []
        for row_id in incoming_ids:
            batch.append(row_id)
            if len(batch) == PROBE_BATCH_SIZE:
                await self._collect_existing(repo, meta, Query.any_of(id_name, batch), existing_ids)
                batch = []
        if batch:
            await self._collect_existing(repo, meta, Query.any_of(id_name, batch), existing_ids)

    async def _collect_existing(
        self,
        repo: EntityRepository,
        meta: EntityMetaData,
        q: Query,
        existing_ids: HugeSet,
    ) -> None:
        inc_counter("importer.probe.queries")
        async for existing in repo.find_all(q):
            existing_id = meta.convert_id(existing.get(meta.id_attribute_name))
            if existing_id is not None:
                existing_ids.add(existing_id)

    async def _add_or_update(
        self,
        repo: EntityRepository,
        meta: EntityMetaData,
        rows: Iterable[Row],
        existing_ids: HugeSet,
    ) -> int:
        count = 0
        to_update: list[Row] = []
        to_insert: list[Row] = []
        for row in rows:
            count += 1
            row_id = meta.convert_id(row.get(meta.id_attribute_name))
            if row_id is not None and row_id in existing_ids:
                to_update.append(row)
                if len(to_update) == APPLY_BATCH_SIZE:
                    await self._flush_update(repo, to_update)
                    to_update = []
            else:
                to_insert.append(row)
                if len(to_insert) == APPLY_BATCH_SIZE:
                    await self._flush_add(repo, to_insert)
                    to_insert = []

        if to_update:
            await self._flush_update(repo, to_update)
        if to_insert:
            await self._flush_add(repo, to_insert)
        return count

    async def _update_existing(
        self,
        repo: EntityRepository,
        meta: EntityMetaData,
        rows: Iterable[Row],
        existing_ids: HugeSet,
    ) -> int:
        count = 0
        missing: list[Any] = []
        for row in rows:
            count += 1
            row_id = meta.convert_id(row.get(meta.id_attribute_name))
            if row_id is None or row_id not in existing_ids:
                missing.append(row_id)
                # One sample past the limit is enough to know the list is truncated
                if len(missing) > MAX_REPORTED_IDS:
                    break

        if missing:
            raise MissingIdError(
                f"Trying to update not existing {repo.name} entities: {_format_ids(missing, ', ')}"
            )
        await repo.update(rows)
        inc_counter("importer.rows.updated", count)
        return count

    async def _flush_update(self, repo: EntityRepository, batch: list[Row]) -> None:
        await repo.update(batch)
        inc_counter("importer.rows.updated", len(batch))

    async def _flush_add(self, repo: EntityRepository, batch: list[Row]) -> None:
        await repo.add(batch)
        inc_counter("importer.rows.added", len(batch))
