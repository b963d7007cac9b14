from __future__ import annotations

import asyncio
import logging
from typing import Any

from stratagem.db.schema import SCHEMA_STATEMENTS

logger = logging.getLogger(__name__)


def js_to_python(obj):
    """Convert binding results (JsProxy on Workers) to Python equivalents."""
    if hasattr(obj, "to_py"):
        return obj.to_py()
    return obj


def sanitize_params(params: list | None) -> list | None:
    """Sanitize parameters for D1 binding.

    Numpy scalars are unwrapped to plain Python numbers and booleans are
    stored as integers; anything else that is not a basic type is
    stringified.
    """
    if params is None:
        return None

    sanitized = []
    for val in params:
        if isinstance(val, bool):
            sanitized.append(int(val))
        elif isinstance(val, (str, int, float, bytes)) or val is None:
            sanitized.append(val)
        elif hasattr(val, "item"):
            sanitized.append(val.item())
        else:
            sanitized.append(str(val))
    return sanitized


class D1Client:
    """Client for D1-compatible SQLite database operations.

    Works against any binding exposing the D1 surface:
    ``prepare(sql).bind(*params).all()/run()/first()`` and ``batch([...])``.
    """

    def __init__(self, db_binding: Any):
        self.db = db_binding

    def _statement(self, query: str, params: list | None):
        stmt = self.db.prepare(query)
        if params:
            stmt = stmt.bind(*sanitize_params(params))
        return stmt

    async def execute(self, query: str, params: list | None = None, retries: int = 3) -> dict:
        """Execute a query and return results.

        Includes retry logic for transient D1 failures.
        """
        last_error: Exception | None = None
        for attempt in range(retries):
            try:
                result = await self._statement(query, params).all()
                return js_to_python(result)
            except Exception as e:
                last_error = e
                if attempt < retries - 1:
                    logger.warning(f"D1 execute error (attempt {attempt + 1}/{retries}): {type(e).__name__}: {e}")
                    await asyncio.sleep(0.1 * (2 ** attempt))
                else:
                    logger.error(f"D1 execute error (final): type={type(e).__name__}, str={e}")

        raise last_error

    async def run(self, query: str, params: list | None = None, retries: int = 3) -> dict:
        """Execute a query without returning rows (INSERT, UPDATE, DELETE).

        Includes retry logic for transient D1 failures.
        """
        last_error: Exception | None = None
        for attempt in range(retries):
            try:
                result = await self._statement(query, params).run()
                return js_to_python(result) or {}
            except Exception as e:
                last_error = e
                if attempt < retries - 1:
                    logger.warning(f"D1 run error (attempt {attempt + 1}/{retries}): {type(e).__name__}: {e}")
                    # Exponential backoff: 100ms, 200ms, 400ms...
                    await asyncio.sleep(0.1 * (2 ** attempt))
                else:
                    logger.error(f"D1 run error (final): type={type(e).__name__}, query={query[:100]}")

        raise last_error

    async def first(self, query: str, params: list | None = None) -> dict | None:
        """Return the first row of a query, or None."""
        result = await self.execute(query, params)
        rows = result.get("results") or []
        return rows[0] if rows else None

    async def batch(self, statements: list[tuple[str, list | None]], retries: int = 3) -> list:
        """Run several statements as one transaction (all succeed or none).

        Retrying is safe because a failed batch is rolled back as a unit.
        """
        last_error: Exception | None = None
        for attempt in range(retries):
            try:
                prepared = [self._statement(query, params) for query, params in statements]
                return js_to_python(await self.db.batch(prepared))
            except Exception as e:
                last_error = e
                if attempt < retries - 1:
                    logger.warning(f"D1 batch error (attempt {attempt + 1}/{retries}): {type(e).__name__}: {e}")
                    await asyncio.sleep(0.1 * (2 ** attempt))
                else:
                    logger.error(f"D1 batch error (final): {len(statements)} statements, {type(e).__name__}: {e}")

        raise last_error

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        for ddl in SCHEMA_STATEMENTS:
            await self.run(ddl)

    @staticmethod
    def changes(result: dict | None) -> int:
        """Number of rows touched by a write, from the D1 result meta."""
        if not result:
            return 0
        meta = result.get("meta") or {}
        return int(meta.get("changes") or 0)
