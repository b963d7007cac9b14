"""Local SQLite binding exposing the D1 statement surface.

Lets D1Client run against a single-node sqlite3 database (a file or
``:memory:``) outside the Workers runtime.
"""

from __future__ import annotations

import sqlite3
import threading
from typing import Any


class SQLiteStatement:
    """Prepared statement mirroring D1PreparedStatement."""

    def __init__(self, binding: SQLiteBinding, query: str, params: tuple = ()):
        self._binding = binding
        self.query = query
        self.params = params

    def bind(self, *params: Any) -> SQLiteStatement:
        return SQLiteStatement(self._binding, self.query, params)

    async def all(self) -> dict:
        with self._binding.lock:
            return self._binding._apply(self)

    async def run(self) -> dict:
        with self._binding.lock:
            result = self._binding._apply(self)
        result.pop("results", None)
        return result

    async def first(self) -> dict | None:
        rows = (await self.all())["results"]
        return rows[0] if rows else None


class SQLiteBinding:
    """sqlite3 connection behind the D1 ``prepare``/``batch`` API."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self.lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row

    def prepare(self, query: str) -> SQLiteStatement:
        return SQLiteStatement(self, query)

    async def batch(self, statements: list[SQLiteStatement]) -> list[dict]:
        """Execute statements inside one transaction; roll back on any failure."""
        with self.lock:
            self._conn.execute("BEGIN")
            try:
                results = [self._apply(stmt) for stmt in statements]
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
        return results

    def close(self) -> None:
        self._conn.close()

    def _apply(self, stmt: SQLiteStatement) -> dict:
        cursor = self._conn.execute(stmt.query, stmt.params)
        rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
        return {
            "success": True,
            "results": rows,
            "meta": {
                "changes": cursor.rowcount if cursor.rowcount > 0 else 0,
                "last_row_id": cursor.lastrowid,
            },
        }
