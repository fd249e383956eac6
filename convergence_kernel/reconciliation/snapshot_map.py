"""
Reconciliation Map — durable entity_id → latest accepted snapshot.

Behavioral Contract:
- A snapshot is only ever replaced, never erased. Deleted entities stay as
  tombstones so a stale create/update cannot resurrect them.
- `replace_if_newer` is the only mutation path. It holds the per-entity lock
  across read, compare and write, so the stored version_time for an entity
  never decreases.
- Equal version_time is "already seen": the stored snapshot wins.
- Unreadable rows are logged, dropped and skipped.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from pydantic import ValidationError

from convergence_kernel.errors import PersistenceCorrupt, ReconciliationStaleEvent
from convergence_kernel.logs import get_logger
from convergence_kernel.models.snapshot import EntitySnapshot, EventKind
from convergence_kernel.persistence.locks import KeyedLocks
from convergence_kernel.persistence.sqlite import SQLiteStore

logger = get_logger("reconciliation.map")


def is_newer(candidate: EntitySnapshot, stored: Optional[EntitySnapshot]) -> bool:
    """The comparator: strictly greater version_time wins, kind plays no part."""
    return stored is None or candidate.version_time > stored.version_time


class ReconciliationMap(SQLiteStore):
    """
    Snapshot store keyed by entity_id.
    Backed by SQLite; `:memory:` for tests, a file path to survive restarts.
    """

    def __init__(self, db_path: str = ":memory:"):
        super().__init__(db_path)
        self._locks = KeyedLocks()

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                entity_id TEXT PRIMARY KEY,
                version_time INTEGER NOT NULL,
                kind TEXT NOT NULL,
                record_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_snapshots_kind ON snapshots(kind)
        """)

    @contextmanager
    def locked(self, entity_id: str) -> Iterator[None]:
        """Serialize read-modify-write on one entity."""
        with self._locks.hold(entity_id):
            yield

    def replace_if_newer(self, snapshot: EntitySnapshot) -> Optional[EntitySnapshot]:
        """
        Store `snapshot` if it is newer than what is stored for its entity.

        Returns the snapshot it replaced (None for a first write).
        Raises ReconciliationStaleEvent if the stored snapshot is as new or newer.
        """
        with self.locked(snapshot.entity_id):
            stored = self.get(snapshot.entity_id)
            if not is_newer(snapshot, stored):
                raise ReconciliationStaleEvent(
                    snapshot.entity_id,
                    stored.version_time,
                    snapshot.version_time,
                    stored=stored,
                )
            self._write(snapshot)
            return stored

    # --- Reads ---

    def get(self, entity_id: str) -> Optional[EntitySnapshot]:
        with self._db_lock:
            row = self._conn.execute(
                "SELECT entity_id, record_json FROM snapshots WHERE entity_id = ?",
                (entity_id,),
            ).fetchone()
        return self._deserialize(row) if row else None

    def active(self) -> List[EntitySnapshot]:
        """Every snapshot that is not a tombstone, by entity_id."""
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT entity_id, record_json FROM snapshots WHERE kind != ? "
                "ORDER BY entity_id",
                (EventKind.DELETED.value,),
            ).fetchall()
        return list(self._deserialize_many(rows))

    def history(self) -> List[EntitySnapshot]:
        """Every snapshot including tombstones, newest version_time first."""
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT entity_id, record_json FROM snapshots "
                "ORDER BY version_time DESC, entity_id"
            ).fetchall()
        return list(self._deserialize_many(rows))

    def count(self) -> int:
        with self._db_lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM snapshots").fetchone()
        return row["cnt"]

    # --- Internals ---

    def _write(self, snapshot: EntitySnapshot) -> None:
        record_json = json.dumps(snapshot.model_dump(mode="json"), default=str)
        with self._db_lock:
            self._conn.execute(
                """
                INSERT INTO snapshots (entity_id, version_time, kind, record_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(entity_id) DO UPDATE SET
                    version_time = excluded.version_time,
                    kind = excluded.kind,
                    record_json = excluded.record_json,
                    updated_at = excluded.updated_at
                """,
                (
                    snapshot.entity_id,
                    snapshot.version_time,
                    snapshot.kind.value,
                    record_json,
                    datetime.utcnow().isoformat(),
                ),
            )
            self._conn.commit()

    def _deserialize_many(self, rows: List[sqlite3.Row]) -> Iterator[EntitySnapshot]:
        for row in rows:
            snapshot = self._deserialize(row)
            if snapshot is not None:
                yield snapshot

    def _deserialize(self, row: sqlite3.Row) -> Optional[EntitySnapshot]:
        try:
            return _parse(row["record_json"])
        except PersistenceCorrupt as e:
            logger.warning(
                "Dropping unreadable snapshot for %s: %s", row["entity_id"], e,
                extra={"structured": {"entity_id": row["entity_id"]}},
            )
            with self._db_lock:
                self._conn.execute(
                    "DELETE FROM snapshots WHERE entity_id = ?", (row["entity_id"],)
                )
                self._conn.commit()
            return None


def _parse(record_json: str) -> EntitySnapshot:
    try:
        return EntitySnapshot.model_validate_json(record_json)
    except (ValidationError, ValueError) as e:
        raise PersistenceCorrupt(str(e)) from e
