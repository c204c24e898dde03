"""
Embedded storage shared by the plan store and the audit ledger.

Prototype: SQLite. A plan status change and its audit entry are written
inside one transaction, so either both are durable or neither is.
Driver errors surface as StorageError, never as raw sqlite3 exceptions.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Sequence

from finops_planner.errors import StorageError

logger = logging.getLogger(__name__)


class Database:
    """
    Thread-shared SQLite connection with nestable transactions.

    The connection runs in autocommit mode; `transaction()` opens an explicit
    BEGIN IMMEDIATE and nested calls join the outermost transaction.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        try:
            self._conn = sqlite3.connect(
                db_path, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise self._storage_error("connect", e) from e
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically. Rolls back on any exception."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise self._storage_error("begin", e) from e

            self._depth = 1
            try:
                yield self._conn
            except BaseException as e:
                self._rollback()
                if isinstance(e, sqlite3.Error):
                    raise self._storage_error("transaction", e) from e
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback()
                    raise self._storage_error("commit", e) from e
            finally:
                self._depth = 0

    def execute_script(self, statements: Sequence[str]) -> None:
        """Run schema statements in one transaction."""
        with self.transaction() as conn:
            for statement in statements:
                conn.execute(statement)

    def fetch_one(self, sql: str, params: Sequence = ()) -> sqlite3.Row:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise self._storage_error("read", e) from e

    def fetch_all(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise self._storage_error("read", e) from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
            logger.debug("Transaction rolled back on %s", self.db_path)
        except sqlite3.Error as e:
            # The original failure is re-raised by the caller.
            logger.error("Rollback failed on %s: %s", self.db_path, e)

    def _storage_error(self, operation: str, error: sqlite3.Error) -> StorageError:
        logger.error("Storage %s failed on %s: %s", operation, self.db_path, error)
        return StorageError(
            f"Storage {operation} failed: {error}",
            {"operation": operation, "cause": type(error).__name__},
        )
