"""Disk-spillable set of identifiers.

Ids harvested from a source stream can outgrow memory, so ``HugeSet`` keeps
keys in a dict until a threshold and then moves them into a temporary SQLite
file. Keys are normalised before storage so membership behaves the same in
memory and on disk: integral floats equal ints and UUIDs equal their string
form.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Final
from uuid import UUID

import structlog
import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import URL, Connection, Engine

log = structlog.get_logger()

DEFAULT_SPILL_THRESHOLD: Final[int] = 100_000
_PAGE_SIZE: Final[int] = 1000

_Key = tuple[str, str]


def _encode(key: Any) -> _Key:
    if isinstance(key, bool):
        return ("bool", "1" if key else "0")
    if isinstance(key, int):
        return ("int", str(key))
    if isinstance(key, float):
        if key.is_integer():
            return ("int", str(int(key)))
        return ("float", repr(key))
    if isinstance(key, UUID):
        return ("str", str(key))
    if isinstance(key, str):
        return ("str", key)
    if isinstance(key, datetime):
        return ("datetime", key.isoformat())
    if isinstance(key, date):
        return ("date", key.isoformat())
    raise TypeError(f"Unsupported HugeSet key type: {type(key).__name__}")


@dataclass
class _SpillFile:
    path: str
    engine: Engine
    conn: Connection
    table: sa.Table


def _decode(kind: str, text: str) -> Any:
    if kind == "int":
        return int(text)
    if kind == "float":
        return float(text)
    if kind == "bool":
        return text == "1"
    if kind == "datetime":
        return datetime.fromisoformat(text)
    if kind == "date":
        return date.fromisoformat(text)
    return text


class HugeSet:
    """Set of scalar keys that may exceed available memory.

    Use as a context manager; ``close`` releases the temporary file and is
    idempotent.
    """

    def __init__(
        self,
        *,
        spill_threshold: int = DEFAULT_SPILL_THRESHOLD,
        tmp_dir: str | None = None,
    ) -> None:
        self.spill_threshold = spill_threshold
        self.tmp_dir = tmp_dir
        self._memory: dict[_Key, None] = {}
        self._file: _SpillFile | None = None
        self._path: str | None = None
        self._size = 0
        self._closed = False

    def __enter__(self) -> "HugeSet":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def spilled(self) -> bool:
        return self._file is not None

    @property
    def path(self) -> str | None:
        return self._path

    def add(self, key: Any) -> None:
        self._check_open()
        encoded = _encode(key)
        if self._file is None:
            if encoded not in self._memory:
                self._memory[encoded] = None
                self._size += 1
            if self._size > self.spill_threshold:
                self._spill()
            return
        self._insert(self._file, encoded)

    def update(self, keys: Iterable[Any]) -> None:
        for key in keys:
            self.add(key)

    def __contains__(self, key: Any) -> bool:
        self._check_open()
        try:
            encoded = _encode(key)
        except TypeError:
            return False
        spill = self._file
        if spill is None:
            return encoded in self._memory
        t = spill.table
        row = spill.conn.execute(
            sa.select(t.c.seq).where(t.c.kind == encoded[0], t.c.value == encoded[1]).limit(1)
        ).first()
        return row is not None

    def __len__(self) -> int:
        return self._size

    def __bool__(self) -> bool:
        return self._size > 0

    def __iter__(self) -> Iterator[Any]:
        self._check_open()
        spill = self._file
        if spill is None:
            for kind, text in list(self._memory):
                yield _decode(kind, text)
            return
        t = spill.table
        last_seq = 0
        while True:
            page = spill.conn.execute(
                sa.select(t.c.seq, t.c.kind, t.c.value)
                .where(t.c.seq > last_seq)
                .order_by(t.c.seq)
                .limit(_PAGE_SIZE)
            ).all()
            if not page:
                return
            for row in page:
                yield _decode(row.kind, row.value)
            last_seq = page[-1].seq

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._memory.clear()
        spill, self._file = self._file, None
        if spill is None:
            return
        spill.conn.close()
        spill.engine.dispose()
        try:
            os.remove(spill.path)
        except FileNotFoundError:
            pass
        log.debug("hugeset.released", path=spill.path, size=self._size)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("HugeSet is closed")

    def _spill(self) -> None:
        fd, path = tempfile.mkstemp(prefix="hugeset-", suffix=".sqlite3", dir=self.tmp_dir)
        os.close(fd)
        self._path = path
        engine = sa.create_engine(URL.create("sqlite", database=path))
        metadata = sa.MetaData()
        table = sa.Table(
            "hugeset_keys",
            metadata,
            sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("kind", sa.String(16), nullable=False),
            sa.Column("value", sa.Text, nullable=False),
            sa.UniqueConstraint("kind", "value"),
        )
        conn = engine.connect()
        # One open transaction for the lifetime of the set; nothing is ever committed.
        conn.begin()
        metadata.create_all(conn)
        spill = self._file = _SpillFile(path, engine, conn, table)
        pending = list(self._memory)
        self._memory.clear()
        self._size = 0
        for encoded in pending:
            self._insert(spill, encoded)
        log.debug("hugeset.spilled", path=path, size=self._size)

    def _insert(self, spill: _SpillFile, encoded: _Key) -> None:
        result = spill.conn.execute(
            sqlite_insert(spill.table)
            .values(kind=encoded[0], value=encoded[1])
            .on_conflict_do_nothing(index_elements=["kind", "value"])
        )
        self._size += max(result.rowcount, 0)
