"""
Submission Ledger — durable record of in-flight and completed operations.

Behavioral Contract:
- At most one Operation per token. Re-creating a token with the same payload
  returns the existing record; a different payload is a TokenConflict.
- Status changes follow the state machine in ALLOWED_TRANSITIONS:
    pending → {retrying, confirmed, failed}
    retrying → {retrying, confirmed, failed}
  confirmed and failed are terminal.
- Every read-modify-write holds the per-token lock, so concurrent callers
  never lose an update.
- Records are never deleted except by an explicit purge.
- A row that cannot be parsed back is logged, dropped and skipped.
"""

import json
import sqlite3
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from convergence_kernel.errors import (
    InvalidTransition,
    PersistenceCorrupt,
    TokenConflict,
    UnknownOperation,
)
from convergence_kernel.logs import get_logger
from convergence_kernel.models.operation import (
    ALLOWED_TRANSITIONS,
    Operation,
    OperationStatus,
)
from convergence_kernel.persistence.locks import KeyedLocks
from convergence_kernel.persistence.sqlite import SQLiteStore

logger = get_logger("submission.ledger")

INCOMPLETE_STATUSES = (OperationStatus.PENDING, OperationStatus.RETRYING)


class SubmissionLedger(SQLiteStore):
    """
    Token-keyed operation store.
    Backed by SQLite; `:memory:` for tests, a file path to survive restarts.
    """

    def __init__(self, db_path: str = ":memory:"):
        super().__init__(db_path)
        self._locks = KeyedLocks()

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS operations (
                token TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status)
        """)

    # --- Writes ---

    def create(self, operation: Operation) -> Operation:
        """
        Persist a new operation as pending.
        Idempotent per token: a repeat with the same payload returns the stored record.
        """
        with self._locks.hold(operation.token):
            existing = self.get(operation.token)
            if existing is not None:
                if existing.payload != operation.payload:
                    raise TokenConflict(
                        f"Token {operation.token} already recorded with a different payload"
                    )
                logger.debug("Token %s already in ledger; returning stored record", operation.token)
                return existing

            if operation.status != OperationStatus.PENDING or operation.attempt_count:
                operation = operation.model_copy(
                    update={"status": OperationStatus.PENDING, "attempt_count": 0}
                )
            self._write(operation, insert=True)
            return operation

    def record_attempt(self, token: str) -> Operation:
        """Increment attempt_count before a delivery attempt goes out."""
        with self._locks.hold(token):
            operation = self._require(token)
            if operation.terminal:
                raise InvalidTransition(
                    f"Operation {token} is {operation.status.value}; no further attempts"
                )
            updated = operation.model_copy(update={
                "attempt_count": operation.attempt_count + 1,
                "updated_at": datetime.utcnow(),
            })
            self._write(updated)
            return updated

    def transition(
        self,
        token: str,
        status: OperationStatus,
        error: Optional[str] = None,
    ) -> Operation:
        """Move an operation to a new status, enforcing the state machine."""
        with self._locks.hold(token):
            operation = self._require(token)
            if status not in ALLOWED_TRANSITIONS[operation.status]:
                raise InvalidTransition(
                    f"Operation {token}: {operation.status.value} → {status.value} is not allowed"
                )
            updated = operation.model_copy(update={
                "status": status,
                "last_error": error if error is not None else operation.last_error,
                "updated_at": datetime.utcnow(),
            })
            self._write(updated)
            return updated

    def purge(self, token: str) -> bool:
        """Remove an operation. Operator-initiated only."""
        with self._locks.hold(token):
            with self._db_lock:
                cursor = self._conn.execute(
                    "DELETE FROM operations WHERE token = ?", (token,)
                )
                self._conn.commit()
            removed = cursor.rowcount > 0
        self._locks.discard(token)
        return removed

    def purge_terminal(self) -> int:
        """Remove every confirmed or failed operation."""
        purged = 0
        for operation in self.all():
            if operation.terminal and self.purge(operation.token):
                purged += 1
        return purged

    # --- Reads ---

    def get(self, token: str) -> Optional[Operation]:
        """Get an operation by token."""
        with self._db_lock:
            row = self._conn.execute(
                "SELECT token, record_json FROM operations WHERE token = ?", (token,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def all(self) -> List[Operation]:
        """Every operation, newest first."""
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT token, record_json FROM operations ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return list(self._deserialize_many(rows))

    def incomplete(self) -> List[Operation]:
        """Operations still pending or retrying, oldest first."""
        placeholders = ", ".join("?" for _ in INCOMPLETE_STATUSES)
        with self._db_lock:
            rows = self._conn.execute(
                f"SELECT token, record_json FROM operations WHERE status IN ({placeholders}) "
                "ORDER BY created_at, rowid",
                tuple(s.value for s in INCOMPLETE_STATUSES),
            ).fetchall()
        return list(self._deserialize_many(rows))

    def count(self) -> int:
        with self._db_lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM operations").fetchone()
        return row["cnt"]

    def count_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in OperationStatus}
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM operations GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[row["status"]] = row["cnt"]
        return counts

    # --- Internals ---

    def _require(self, token: str) -> Operation:
        operation = self.get(token)
        if operation is None:
            raise UnknownOperation(f"No operation recorded for token {token}")
        return operation

    def _write(self, operation: Operation, insert: bool = False) -> None:
        record_json = json.dumps(operation.model_dump(mode="json"), default=str)
        values = (
            operation.status.value,
            operation.attempt_count,
            operation.created_at.isoformat(),
            record_json,
            operation.token,
        )
        with self._db_lock:
            if insert:
                self._conn.execute(
                    "INSERT INTO operations (status, attempt_count, created_at, record_json, token) "
                    "VALUES (?, ?, ?, ?, ?)",
                    values,
                )
            else:
                cursor = self._conn.execute(
                    "UPDATE operations SET status = ?, attempt_count = ?, created_at = ?, "
                    "record_json = ? WHERE token = ?",
                    values,
                )
                if cursor.rowcount == 0:
                    raise UnknownOperation(f"Operation {operation.token} was purged")
            self._conn.commit()

    def _deserialize_many(self, rows: List[sqlite3.Row]) -> Iterator[Operation]:
        for row in rows:
            operation = self._deserialize(row)
            if operation is not None:
                yield operation

    def _deserialize(self, row: sqlite3.Row) -> Optional[Operation]:
        """Parse a row; drop it if it is unreadable."""
        try:
            return _parse(row["record_json"])
        except PersistenceCorrupt as e:
            logger.warning(
                "Dropping unreadable ledger record %s: %s", row["token"], e,
                extra={"structured": {"token": row["token"]}},
            )
            with self._db_lock:
                self._conn.execute("DELETE FROM operations WHERE token = ?", (row["token"],))
                self._conn.commit()
            return None


def _parse(record_json: str) -> Operation:
    try:
        return Operation.model_validate_json(record_json)
    except (ValidationError, ValueError) as e:
        raise PersistenceCorrupt(str(e)) from e
