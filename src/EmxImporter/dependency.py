"""Ordering of rows that reference rows of their own entity."""

from __future__ import annotations

import heapq
from collections.abc import Iterable
from typing import Any

import structlog

from EmxImporter.errors import CyclicReferenceError
from EmxImporter.meta import EntityMetaData, Row

log = structlog.get_logger()


def _referenced_ids(row: Row, attr_names: list[str]) -> Iterable[Any]:
    for name in attr_names:
        value = row.get(name)
        if value is None:
            continue
        if isinstance(value, list):
            yield from value
        else:
            yield value


def resolve_self_references(rows: Iterable[Row], meta: EntityMetaData) -> Iterable[Row]:
    """Reorder ``rows`` so every self reference points to an earlier row.

    Rows are emitted in source order except where a row has to wait for the
    row it references. References to ids outside ``rows`` are assumed to exist
    already and a row referencing itself is allowed. Entities without self
    referencing attributes are passed through without materialising the
    stream.

    Raises:
        CyclicReferenceError: if rows reference each other in a cycle.
    """
    ref_attrs = [attr.name for attr in meta.self_reference_attributes()]
    id_name = meta.id_attribute_name
    if not ref_attrs or id_name is None:
        return rows

    materialized = list(rows)
    index_by_id: dict[Any, int] = {}
    for idx, row in enumerate(materialized):
        row_id = row.get(id_name)
        if row_id is not None:
            index_by_id.setdefault(row_id, idx)

    deps: list[set[int]] = []
    dependents: list[list[int]] = [[] for _ in materialized]
    for idx, row in enumerate(materialized):
        row_deps = {
            dep
            for dep in (index_by_id.get(ref) for ref in _referenced_ids(row, ref_attrs))
            if dep is not None and dep != idx
        }
        deps.append(row_deps)
        for dep in row_deps:
            dependents[dep].append(idx)

    pending = [len(d) for d in deps]
    ready = [idx for idx, count in enumerate(pending) if count == 0]
    heapq.heapify(ready)
    ordered: list[Row] = []
    while ready:
        idx = heapq.heappop(ready)
        ordered.append(materialized[idx])
        for dependent in dependents[idx]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(ordered) < len(materialized):
        cycle = _find_cycle(deps, pending)
        cycle_ids = [materialized[idx].get(id_name) for idx in cycle]
        log.warning("importer.self_reference.cycle", entity=meta.name, ids=cycle_ids)
        raise CyclicReferenceError(
            f"Cyclic self reference in entity '{meta.name}' between rows with "
            f"{id_name}: {', '.join(str(i) for i in cycle_ids)}",
            cycle=cycle_ids,
        )
    return ordered


def _find_cycle(deps: list[set[int]], pending: list[int]) -> list[int]:
    # Every unresolved row has at least one unresolved dependency, so
    # following them from any unresolved row must end in a cycle.
    node = next(idx for idx, count in enumerate(pending) if count > 0)
    seen: dict[int, int] = {}
    path: list[int] = []
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min(dep for dep in deps[node] if pending[dep] > 0)
    return path[seen[node]:]
