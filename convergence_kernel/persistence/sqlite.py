"""
SQLite helpers shared by the ledger and the reconciliation map.

A store that cannot be read must not stop the process from starting: an
unreadable database file is renamed aside and a fresh one is created in its
place. Losing cached state is preferable to refusing to start.
"""

import os
import sqlite3
import threading
from datetime import datetime
from typing import Callable, Optional

from convergence_kernel.logs import get_logger

logger = get_logger("persistence")


class SQLiteStore:
    """
    Base class for a single-connection sqlite store.

    The connection is shared across threads; every statement goes through
    `self._db_lock` so sqlite never sees concurrent use of one connection.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._db_lock = threading.RLock()
        self._conn = open_database(db_path, self._init_schema)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Close the database connection."""
        with self._db_lock:
            self._conn.close()


def open_database(
    db_path: str,
    init_schema: Callable[[sqlite3.Connection], None],
) -> sqlite3.Connection:
    """
    Open `db_path`, run `init_schema`, and quarantine the file if sqlite
    reports it is not a readable database.
    """
    try:
        return _connect(db_path, init_schema)
    except sqlite3.DatabaseError as e:
        if db_path == ":memory:":
            raise
        quarantined = quarantine(db_path)
        logger.error(
            "Database %s is unreadable (%s); moved to %s and starting fresh",
            db_path, e, quarantined,
            extra={"structured": {"db_path": db_path, "quarantined_to": quarantined}},
        )
        return _connect(db_path, init_schema)


def _connect(
    db_path: str,
    init_schema: Callable[[sqlite3.Connection], None],
) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        init_schema(conn)
        conn.commit()
    except sqlite3.DatabaseError:
        conn.close()
        raise
    return conn


def quarantine(db_path: str) -> Optional[str]:
    """Rename an unreadable database file out of the way."""
    if not os.path.exists(db_path):
        return None
    stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
    target = f"{db_path}.corrupt-{stamp}"
    os.replace(db_path, target)
    return target
