"""EMX import pipeline.

An import job carries a parsed metadata package plus the source row streams
and is written in phases, in this order:

- ``TagPhase``: upsert rows of the ``tags`` sheet
- ``PackagePhase``: register packages
- ``MetaDataPhase``: create new entities and add attributes to existing ones,
  recording each change in the job's ``SchemaLedger``
- permission grant on the created entities (skipped for superusers)
- ``TagBindingPhase``: attach semantic tags to entities and attributes
- ``DataPhase``: merge each entity's rows according to the merge policy

``ImportWriter.do_import`` runs the phases inside a transaction owned by the
caller. When it fails the caller aborts the transaction and calls
``ImportWriter.rollback_schema_changes``, which undoes the recorded schema
changes and rebuilds indexes of everything the import may have touched.
``run_emx_import`` wires both halves together around ``session_scope()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from EmxImporter.config import Settings, load_settings
from EmxImporter.db import session_scope
from EmxImporter.dependency import resolve_self_references
from EmxImporter.errors import ErrorKind, ImporterError, RepositoryIOError
from EmxImporter.ledger import SchemaLedger
from EmxImporter.logging import import_log_context
from EmxImporter.merge import MergeEngine
from EmxImporter.meta import (
    ATTRIBUTES,
    ENTITIES,
    PACKAGES,
    RESERVED_ENTITY_NAMES,
    TAG_META,
    TAGS,
    DatabaseAction,
    EntityMetaData,
    ParsedMetaData,
)
from EmxImporter.metrics import inc_counter, observe_histogram
from EmxImporter.repository import (
    IndexedRepository,
    MetaRegistry,
    PermissionHook,
    Principal,
    SourceCollection,
    TagService,
)
from EmxImporter.rows import ConformingRows, conform_row
from EmxImporter.store import SqlDataService, SqlPermissionHook, SqlTagService
from EmxImporter.tools.ulid import generate_ulid

log = structlog.get_logger()


class ImportReport(BaseModel):
    """Outcome of an import: rows written per entity and entities created."""

    entity_counts: dict[str, int] = Field(default_factory=dict)
    new_entities: list[str] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)

    def add_entity_count(self, name: str, count: int) -> None:
        self.entity_counts[name] = self.entity_counts.get(name, 0) + count

    def add_new_entity(self, name: str) -> None:
        if name not in self.new_entities:
            self.new_entities.append(name)

    def add_diagnostic(self, message: str) -> None:
        self.diagnostics.append(message)


@dataclass
class EmxImportJob:
    source: SourceCollection
    parsed_meta_data: ParsedMetaData
    db_action: DatabaseAction = DatabaseAction.ADD
    report: ImportReport = field(default_factory=ImportReport)
    ledger: SchemaLedger = field(default_factory=SchemaLedger)


class TagPhase:
    """Upserts the rows of the ``tags`` sheet by identifier."""

    def __init__(self, data_service: MetaRegistry):
        self.data_service = data_service

    async def stage(self, source: SourceCollection) -> int:
        stream = source.get_repository(TAGS)
        if stream is None:
            return 0
        repo = await self.data_service.get_repository(TAGS)
        if repo is None:
            raise RepositoryIOError("Tag repository is not available")

        count = 0
        for raw in stream:
            row = conform_row(raw, TAG_META)
            if await repo.find_one(row["identifier"]) is None:
                await repo.add(row)
            else:
                await repo.update(row)
            count += 1
        return count


class PackagePhase:
    def __init__(self, data_service: MetaRegistry):
        self.data_service = data_service

    async def stage(self, parsed: ParsedMetaData) -> int:
        count = 0
        for package in parsed.packages.values():
            if package is None:
                continue
            await self.data_service.add_package(package)
            count += 1
        return count


class MetaDataPhase:
    """Creates or extends the entities declared in the package.

    Every schema change is written to the ledger before it is attempted, so a
    change that fails half way is still undone by the rollback.
    """

    def __init__(self, data_service: MetaRegistry):
        self.data_service = data_service

    async def stage(
        self, parsed: ParsedMetaData, report: ImportReport, ledger: SchemaLedger
    ) -> None:
        for meta in parsed.entities:
            if meta.name in RESERVED_ENTITY_NAMES:
                continue
            meta.validate()

            existing = await self.data_service.get_entity_meta_data(meta.name)
            if existing is None:
                log.debug("importer.meta.create", entity=meta.name)
                ledger.record_entity_created(meta.name)
                repo = await self.data_service.add_entity_meta(meta)
                if repo is not None:
                    report.add_new_entity(meta.name)
            elif not meta.abstract:
                log.debug("importer.meta.update", entity=meta.name)
                added = await self.data_service.update_entity_meta(meta)
                ledger.record_attributes_added(meta.name, added)


class TagBindingPhase:
    def __init__(self, tag_service: TagService):
        self.tag_service = tag_service

    async def apply(self, parsed: ParsedMetaData) -> None:
        for entity_tag in parsed.entity_tags:
            await self.tag_service.add_entity_tag(entity_tag)
        for entity_name, attribute_tags in parsed.attribute_tags.items():
            for attribute_tag in attribute_tags:
                await self.tag_service.add_attribute_tag(entity_name, attribute_tag)


class DataPhase:
    """Merges each entity's source rows into its repository."""

    def __init__(self, data_service: MetaRegistry, merge_engine: MergeEngine):
        self.data_service = data_service
        self.merge_engine = merge_engine

    async def run(
        self,
        report: ImportReport,
        entities: list[EntityMetaData],
        source: SourceCollection,
        policy: DatabaseAction | str,
    ) -> ImportReport:
        for meta in entities:
            if meta.name in RESERVED_ENTITY_NAMES:
                continue
            repo = await self.data_service.get_repository(meta.name)
            if repo is None:
                continue
            stream = source.get_repository(meta.simple_name)
            if stream is None:
                stream = source.get_repository(meta.name)
            if stream is None:
                continue

            target_meta = repo.entity_meta_data
            rows = resolve_self_references(ConformingRows(stream, target_meta), target_meta)
            count = await self.merge_engine.update(repo, rows, policy)
            report.add_entity_count(meta.name, count)
            log.info("importer.data.merged", entity=meta.name, rows=count)
        return report


class Reindexer:
    """Rebuilds indexes of repositories after a rollback; failures are only logged."""

    def __init__(self, data_service: MetaRegistry):
        self.data_service = data_service

    async def reindex(self, names: list[str]) -> list[str]:
        rebuilt: list[str] = []
        for name in names:
            try:
                if not await self.data_service.has_repository(name):
                    continue
                repo = await self.data_service.get_repository(name)
                if not isinstance(repo, IndexedRepository):
                    continue
                await repo.rebuild_index()
                rebuilt.append(name)
            except Exception:
                log.error("importer.reindex.failed", entity=name, exc_info=True)
        return rebuilt


def record_rollback(job: EmxImportJob, reason: str) -> None:
    inc_counter("importer.rollback")
    log.warning(
        "importer.rollback",
        reason=reason,
        schema_changed=not job.ledger.is_empty,
        added_entities=job.ledger.added_entities(),
        mutated_entities=job.ledger.mutated_entities(),
    )


class ImportWriter:
    """Writes an ``EmxImportJob`` to the target store."""

    def __init__(
        self,
        data_service: MetaRegistry,
        permission_hook: PermissionHook,
        tag_service: TagService,
        *,
        principal: Principal,
        merge_engine: MergeEngine | None = None,
    ):
        self.data_service = data_service
        self.permission_hook = permission_hook
        self.tag_service = tag_service
        self.principal = principal
        self.merge_engine = merge_engine or MergeEngine()

    async def do_import(self, job: EmxImportJob) -> ImportReport:
        """Run every phase of ``job`` inside the caller's transaction.

        Returns:
            The job's report, filled with per-entity counts and new entities.

        Raises:
            ImporterError: from whichever phase failed; the ledger holds the
                schema changes made so far.
        """
        start_time = datetime.now(timezone.utc)
        report = job.report
        parsed = job.parsed_meta_data

        log.info("importer.stage.tags")
        tag_count = await TagPhase(self.data_service).stage(job.source)
        if tag_count:
            report.add_entity_count(TAGS, tag_count)

        log.info("importer.stage.packages")
        await PackagePhase(self.data_service).stage(parsed)

        log.info("importer.stage.metadata", entities=[e.name for e in parsed.entities])
        await MetaDataPhase(self.data_service).stage(parsed, report, job.ledger)

        if not self.principal.superuser:
            added = job.ledger.added_entities()
            log.info(
                "importer.stage.permissions", username=self.principal.username, entities=added
            )
            await self.permission_hook.grant(self.principal, added)

        log.info("importer.stage.tag_bindings")
        await TagBindingPhase(self.tag_service).apply(parsed)

        log.info("importer.stage.data", policy=str(getattr(job.db_action, "value", job.db_action)))
        await DataPhase(self.data_service, self.merge_engine).run(
            report, parsed.entities, job.source, job.db_action
        )

        duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        observe_histogram("importer.duration_ms", duration_ms)
        log.info(
            "importer.complete",
            entity_counts=report.entity_counts,
            new_entities=report.new_entities,
            duration_ms=duration_ms,
        )
        return report

    async def rollback_schema_changes(self, job: EmxImportJob) -> list[str]:
        """Undo the job's schema changes and reindex affected repositories.

        Never raises. Returns the names passed to the reindexer.
        """
        mutated = await job.ledger.rollback(self.data_service)

        to_reindex: dict[str, None] = {}
        for name in job.source.get_entity_names():
            to_reindex[name] = None
        for name in job.ledger.added_entities():
            to_reindex[name] = None
        for name in mutated:
            to_reindex[name] = None
        for name in (TAGS, PACKAGES, ENTITIES, ATTRIBUTES):
            to_reindex[name] = None

        names = list(to_reindex)
        rebuilt = await Reindexer(self.data_service).reindex(names)
        log.info("importer.rollback.reindexed", requested=names, rebuilt=rebuilt)
        return names


def create_import_writer(
    session: AsyncSession, principal: Principal, settings: Settings | None = None
) -> ImportWriter:
    """Build an ``ImportWriter`` on the SQL store bound to ``session``."""
    settings = settings or load_settings()
    return ImportWriter(
        SqlDataService(session),
        SqlPermissionHook(session),
        SqlTagService(session),
        principal=principal,
        merge_engine=MergeEngine(
            spill_threshold=settings.importer_hugeset_spill_threshold,
            tmp_dir=settings.importer_hugeset_tmp_dir,
        ),
    )


async def run_emx_import(
    job: EmxImportJob, *, principal: Principal, settings: Settings | None = None
) -> ImportReport:
    """Import ``job`` in its own transaction, undoing schema changes on failure.

    Raises:
        ImporterError: the failure that aborted the import. Errors that are not
            importer errors are wrapped with kind ``IO_FAILURE``.
    """
    settings = settings or load_settings()
    with import_log_context(
        import_id=generate_ulid(),
        action=str(getattr(job.db_action, "value", job.db_action)),
        username=principal.username,
    ):
        try:
            async with session_scope() as session:
                writer = create_import_writer(session, principal, settings)
                return await writer.do_import(job)
        except Exception as exc:
            record_rollback(job, reason=str(exc))
            async with session_scope() as session:
                writer = create_import_writer(session, principal, settings)
                await writer.rollback_schema_changes(job)
            if isinstance(exc, ImporterError):
                raise
            raise ImporterError(f"Import failed: {exc}", kind=ErrorKind.IO_FAILURE) from exc


def job_from_source(
    source: SourceCollection,
    parsed: ParsedMetaData,
    action: Any = None,
    settings: Settings | None = None,
) -> EmxImportJob:
    """Create a job, resolving ``action`` (or the configured default) to a merge policy."""
    if action is None:
        action = (settings or load_settings()).importer_default_action
    return EmxImportJob(source=source, parsed_meta_data=parsed, db_action=DatabaseAction.parse(action))
