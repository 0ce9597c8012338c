#!/usr/bin/env python3
"""Import an EMX package described as JSON.

The file holds the parsed metadata and the data sheets::

    {
      "packages": [{"name": "base"}],
      "entities": [
        {"name": "Person", "id_attribute": "id", "package": "base",
         "attributes": [{"name": "id", "type": "int", "nillable": false},
                        {"name": "name"}]}
      ],
      "entity_tags": [{"entity": "Person", "relation_iri": "...", "object_iri": "..."}],
      "attribute_tags": [{"entity": "Person", "attribute": "name", "relation_iri": "...", "object_iri": "..."}],
      "data": {"tags": [...], "Person": [{"id": 1, "name": "Ada"}]}
    }

Entities must be listed so that referenced entities come first. The catalog
tables must exist (``alembic upgrade head``).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import structlog

from EmxImporter.config import Settings, load_settings
from EmxImporter.errors import ImporterError
from EmxImporter.importer import EmxImportJob, ImportReport, job_from_source, run_emx_import
from EmxImporter.logging import redact_settings, setup_logging
from EmxImporter.meta import (
    AttributeMetaData,
    AttributeTag,
    DatabaseAction,
    EntityMetaData,
    EntityTag,
    FieldType,
    Package,
    ParsedMetaData,
    SemanticTag,
)
from EmxImporter.repository import Principal
from EmxImporter.sources import MappingSourceCollection

log = structlog.get_logger()


def _tag(raw: dict[str, Any]) -> SemanticTag:
    return SemanticTag(
        relation_iri=raw["relation_iri"],
        object_iri=raw["object_iri"],
        relation_label=raw.get("relation_label"),
        object_label=raw.get("object_label"),
        code_system=raw.get("code_system"),
    )


def parse_package(doc: dict[str, Any]) -> ParsedMetaData:
    parsed = ParsedMetaData()
    for raw in doc.get("packages", []):
        parsed.packages[raw["name"]] = Package(
            raw["name"], description=raw.get("description"), parent=raw.get("parent")
        )

    declared: dict[str, EntityMetaData] = {}
    for raw in doc.get("entities", []):
        meta = EntityMetaData(
            raw["name"],
            id_attribute_name=raw.get("id_attribute"),
            simple_name=raw.get("simple_name"),
            package=raw.get("package"),
            abstract=bool(raw.get("abstract", False)),
            label=raw.get("label"),
            description=raw.get("description"),
        )
        # Registered first so an attribute may reference its own entity
        declared[meta.name] = meta
        for attr in raw.get("attributes", []):
            ref_name = attr.get("ref_entity")
            if ref_name is not None and ref_name not in declared:
                raise ValueError(
                    f"Attribute '{meta.name}.{attr['name']}' references undeclared entity '{ref_name}'"
                )
            meta.attributes.append(
                AttributeMetaData(
                    attr["name"],
                    FieldType(attr.get("type", FieldType.STRING.value).lower()),
                    ref_entity=declared[ref_name] if ref_name is not None else None,
                    nillable=bool(attr.get("nillable", True)),
                    label=attr.get("label"),
                    description=attr.get("description"),
                )
            )
        parsed.entities.append(meta)

    for raw in doc.get("entity_tags", []):
        parsed.entity_tags.append(EntityTag(raw["entity"], _tag(raw)))
    for raw in doc.get("attribute_tags", []):
        parsed.attribute_tags.setdefault(raw["entity"], []).append(
            AttributeTag(raw["attribute"], _tag(raw))
        )
    return parsed


def load_job(path: Path, action: str | None, settings: Settings) -> EmxImportJob:
    doc = json.loads(path.read_text(encoding="utf-8"))
    return job_from_source(
        MappingSourceCollection(doc.get("data", {})),
        parse_package(doc),
        action,
        settings,
    )


async def _run(job: EmxImportJob, principal: Principal, settings: Settings) -> ImportReport:
    return await run_emx_import(job, principal=principal, settings=settings)


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Import an EMX package (JSON) into the database.")
    ap.add_argument("--file", type=Path, required=True)
    ap.add_argument("--action", choices=[a.value for a in DatabaseAction], default=None)
    ap.add_argument("--user", required=True, help="Username that receives WRITEMETA grants")
    ap.add_argument("--superuser", action="store_true")
    args = ap.parse_args(argv)

    settings = load_settings()
    setup_logging(settings)
    log.info("importer.cli.start", file=str(args.file), settings=redact_settings(settings))

    job = load_job(args.file, args.action, settings)
    principal = Principal(args.user, superuser=args.superuser)
    try:
        report = asyncio.run(_run(job, principal, settings))
    except ImporterError as exc:
        log.error("importer.cli.failed", kind=exc.kind.value, error=str(exc))
        print(f"Import failed ({exc.kind.value}): {exc}", file=sys.stderr)
        return 1
    print(report.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
