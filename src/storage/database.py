"""
Database management for the prior-art pipeline.
Handles the SQLite connection, schema setup, and domain operations.
"""

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from src.utils.errors import PersistenceError, generate_error_id
from src.utils.logging import get_logger

logger = get_logger(__name__)


def now_iso() -> str:
    """Current UTC time as ISO-8601 text (the format stored in every *_at column)."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _build_insert(table: str, data: dict[str, Any], or_replace: bool) -> tuple[str, tuple]:
    columns = ", ".join(data.keys())
    placeholders = ", ".join(["?" for _ in data])
    verb = "INSERT OR REPLACE" if or_replace else "INSERT"
    return f"{verb} INTO {table} ({columns}) VALUES ({placeholders})", tuple(data.values())


class Transaction:
    """Statement handle valid inside Database.transaction()."""

    def __init__(self, connection: aiosqlite.Connection):
        self._connection = connection

    async def execute(self, sql: str, parameters: tuple | dict | None = None) -> aiosqlite.Cursor:
        return await self._connection.execute(sql, parameters or ())

    async def fetch_one(self, sql: str, parameters: tuple | dict | None = None) -> dict[str, Any] | None:
        cursor = await self.execute(sql, parameters)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def insert(self, table: str, data: dict[str, Any], *, or_replace: bool = False) -> str | None:
        if "id" not in data:
            data = {**data, "id": str(uuid.uuid4())}
        sql, params = _build_insert(table, data, or_replace)
        await self.execute(sql, params)
        return data.get("id")


class Database:
    """Async SQLite database manager.

    One instance per process, created by the composition root and injected
    into every service that persists state.
    """

    def __init__(self, db_path: str | Path):
        """Initialize database manager.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
        """
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    async def connect(self) -> None:
        """Connect to the database."""
        if self._connection is not None:
            return

        if not self.is_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            str(self.db_path),
            isolation_level=None,  # Auto-commit; explicit BEGIN in transaction()
        )

        await self._connection.execute("PRAGMA foreign_keys = ON")
        if not self.is_memory:
            await self._connection.execute("PRAGMA journal_mode = WAL")
            await self._connection.execute("PRAGMA synchronous = NORMAL")

        self._connection.row_factory = aiosqlite.Row

        logger.info("Database connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceError("Database is not connected", operation="connect")
        return self._connection

    async def initialize_schema(self) -> None:
        """Initialize database schema from SQL file."""
        schema_path = Path(__file__).parent / "schema.sql"

        if not schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        schema_sql = schema_path.read_text(encoding="utf-8")
        connection = self._require_connection()

        async with self._lock:
            await connection.executescript(schema_sql)

        logger.info("Database schema initialized")

    # ============================================================
    # Generic helpers
    # ============================================================

    async def execute(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> aiosqlite.Cursor:
        """Execute a SQL statement.

        Raises:
            PersistenceError: On any SQLite failure.
        """
        connection = self._require_connection()
        async with self._lock:
            try:
                return await connection.execute(sql, parameters or ())
            except aiosqlite.Error as e:
                error_id = generate_error_id()
                logger.error("SQL execution failed", error_id=error_id, sql=sql.split("\n")[0][:80], error=str(e))
                raise PersistenceError(f"Database operation failed: {e}", operation="execute", error_id=error_id) from e

    async def fetch_one(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> dict[str, Any] | None:
        """Fetch a single row as dict (or None)."""
        cursor = await self.execute(sql, parameters)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all rows as dicts."""
        cursor = await self.execute(sql, parameters)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        *,
        or_replace: bool = False,
        auto_id: bool = True,
    ) -> str | None:
        """Insert a row into a table.

        Args:
            table: Table name.
            data: Column-value mapping.
            or_replace: Use INSERT OR REPLACE.
            auto_id: Auto-generate UUID for 'id' column if missing.

        Returns:
            The ID of the inserted row, or None if no id column.
        """
        if auto_id and "id" not in data:
            data = {**data, "id": str(uuid.uuid4())}

        sql, params = _build_insert(table, data, or_replace)
        await self.execute(sql, params)
        return data.get("id")

    async def update(
        self,
        table: str,
        data: dict[str, Any],
        where: str,
        where_params: tuple | None = None,
    ) -> int:
        """Update rows in a table.

        Returns:
            Number of affected rows.
        """
        set_clause = ", ".join([f"{k} = ?" for k in data.keys()])
        sql = f"UPDATE {table} SET {set_clause} WHERE {where}"
        params = list(data.values()) + list(where_params or ())
        cursor = await self.execute(sql, tuple(params))
        return cursor.rowcount

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Exclusive write transaction (BEGIN IMMEDIATE ... COMMIT).

        The process-wide lock is held for the whole block, so statements
        must go through the yielded Transaction, not through self.execute().
        Any exception rolls the block back and propagates.
        """
        connection = self._require_connection()
        async with self._lock:
            try:
                await connection.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise PersistenceError(f"Could not begin transaction: {e}", operation="begin") from e
            try:
                yield Transaction(connection)
            except aiosqlite.Error as e:
                await connection.execute("ROLLBACK")
                error_id = generate_error_id()
                logger.error("Transaction rolled back", error_id=error_id, error=str(e))
                raise PersistenceError(f"Transaction failed: {e}", operation="transaction", error_id=error_id) from e
            except BaseException:
                await connection.execute("ROLLBACK")
                raise
            else:
                try:
                    await connection.execute("COMMIT")
                except aiosqlite.Error as e:
                    await connection.execute("ROLLBACK")
                    raise PersistenceError(f"Commit failed: {e}", operation="commit") from e

    # ============================================================
    # Bundles
    # ============================================================

    async def insert_bundle(self, bundle_id: str, user_id: str, bundle_json: str, status: str) -> None:
        now = now_iso()
        await self.insert(
            "bundles",
            {
                "id": bundle_id,
                "user_id": user_id,
                "status": status,
                "bundle_json": bundle_json,
                "created_at": now,
                "updated_at": now,
            },
        )

    async def get_bundle(self, bundle_id: str) -> dict[str, Any] | None:
        return await self.fetch_one("SELECT * FROM bundles WHERE id = ?", (bundle_id,))

    async def update_bundle(self, bundle_id: str, data: dict[str, Any]) -> int:
        return await self.update("bundles", {**data, "updated_at": now_iso()}, "id = ?", (bundle_id,))

    async def append_bundle_history(
        self,
        bundle_id: str,
        action: str,
        *,
        actor_id: str | None = None,
        from_status: str | None = None,
        to_status: str | None = None,
        bundle_json: str | None = None,
        note: str | None = None,
    ) -> None:
        await self.insert(
            "bundle_history",
            {
                "bundle_id": bundle_id,
                "action": action,
                "actor_id": actor_id,
                "from_status": from_status,
                "to_status": to_status,
                "bundle_json": bundle_json,
                "note": note,
                "created_at": now_iso(),
            },
            auto_id=False,
        )

    async def get_bundle_history(self, bundle_id: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "SELECT * FROM bundle_history WHERE bundle_id = ? ORDER BY id",
            (bundle_id,),
        )

    # ============================================================
    # Credits
    # ============================================================

    async def set_user_credits(self, user_id: str, total: int, used: int = 0) -> None:
        """Upsert a credit row (normally written by the billing side)."""
        await self.execute(
            """
            INSERT INTO user_credits (user_id, total_credits, used_credits, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                total_credits = excluded.total_credits,
                used_credits = excluded.used_credits,
                updated_at = excluded.updated_at
            """,
            (user_id, total, used, now_iso()),
        )

    async def get_user_credits(self, user_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT user_id, total_credits, used_credits FROM user_credits WHERE user_id = ?",
            (user_id,),
        )

    # ============================================================
    # Runs
    # ============================================================

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        return await self.fetch_one("SELECT * FROM runs WHERE id = ?", (run_id,))

    async def update_run(self, run_id: str, data: dict[str, Any], *, expected_status: str | None = None) -> int:
        """Update a run row.

        With expected_status, the update only applies while the run is still
        in that status (compare-and-set used for terminal transitions).
        """
        if expected_status is None:
            return await self.update("runs", data, "id = ?", (run_id,))
        return await self.update("runs", data, "id = ? AND status = ?", (run_id, expected_status))

    async def list_runs_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "SELECT * FROM runs WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )

    async def record_variant_execution(self, run_id: str, row: dict[str, Any]) -> str | None:
        return await self.insert(
            "query_variant_executions",
            {"run_id": run_id, **row},
            or_replace=True,
        )

    async def get_variant_executions(self, run_id: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            """
            SELECT * FROM query_variant_executions WHERE run_id = ?
            ORDER BY CASE variant_label
                WHEN 'broad' THEN 0 WHEN 'baseline' THEN 1 WHEN 'narrow' THEN 2 ELSE 3 END
            """,
            (run_id,),
        )

    # ============================================================
    # Unified results
    # ============================================================

    async def insert_unified_results(self, run_id: str, rows: list[dict[str, Any]]) -> int:
        """Write unified result rows for a run in one transaction."""
        async with self.transaction() as tx:
            for row in rows:
                data = {k: v for k, v in row.items() if k not in ("ranks", "found_in_variants")}
                data["run_id"] = run_id
                data["ranks_json"] = _dumps(row.get("ranks", {}))
                data["found_in_variants_json"] = _dumps(row.get("found_in_variants", []))
                await tx.insert("unified_results", data)
        return len(rows)

    async def get_unified_results(
        self,
        run_id: str,
        *,
        shortlisted_only: bool = False,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM unified_results WHERE run_id = ?"
        if shortlisted_only:
            sql += " AND shortlisted = 1"
        sql += " ORDER BY score DESC, (min_rank IS NULL), min_rank ASC, identifier ASC"
        rows = await self.fetch_all(sql, (run_id,))
        for row in rows:
            row["ranks"] = json.loads(row.pop("ranks_json") or "{}")
            row["found_in_variants"] = json.loads(row.pop("found_in_variants_json") or "[]")
            row["shortlisted"] = bool(row["shortlisted"])
        return rows

    async def set_result_detail_status(
        self,
        run_id: str,
        identifier: str,
        status: str,
        error: str | None = None,
    ) -> None:
        await self.update(
            "unified_results",
            {"detail_status": status, "detail_error": error},
            "run_id = ? AND identifier = ?",
            (run_id, identifier),
        )

    # ============================================================
    # Patent / scholar record cache
    # ============================================================

    async def upsert_patent_record(self, record: dict[str, Any]) -> None:
        """Insert or refresh a patent record; last_seen_at is always bumped."""
        now = now_iso()
        await self.execute(
            """
            INSERT INTO patent_records
                (publication_number, title, abstract, link, pdf_link, assignee, inventor,
                 priority_date, publication_date, first_seen_at, last_seen_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(publication_number) DO UPDATE SET
                title = COALESCE(excluded.title, patent_records.title),
                abstract = COALESCE(excluded.abstract, patent_records.abstract),
                link = COALESCE(excluded.link, patent_records.link),
                pdf_link = COALESCE(excluded.pdf_link, patent_records.pdf_link),
                assignee = COALESCE(excluded.assignee, patent_records.assignee),
                inventor = COALESCE(excluded.inventor, patent_records.inventor),
                priority_date = COALESCE(excluded.priority_date, patent_records.priority_date),
                publication_date = COALESCE(excluded.publication_date, patent_records.publication_date),
                last_seen_at = excluded.last_seen_at
            """,
            (
                record["publication_number"],
                record.get("title"),
                record.get("abstract"),
                record.get("link"),
                record.get("pdf_link"),
                record.get("assignee"),
                record.get("inventor"),
                record.get("priority_date"),
                record.get("publication_date"),
                now,
                now,
            ),
        )

    async def get_patent_record(self, publication_number: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM patent_records WHERE publication_number = ?",
            (publication_number,),
        )

    async def upsert_scholar_record(self, record: dict[str, Any]) -> None:
        now = now_iso()
        await self.execute(
            """
            INSERT INTO scholar_records
                (identifier, title, snippet, link, doi, result_id, publication_info,
                 cited_by_count, first_seen_at, last_seen_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(identifier) DO UPDATE SET
                title = COALESCE(excluded.title, scholar_records.title),
                snippet = COALESCE(excluded.snippet, scholar_records.snippet),
                link = COALESCE(excluded.link, scholar_records.link),
                cited_by_count = COALESCE(excluded.cited_by_count, scholar_records.cited_by_count),
                last_seen_at = excluded.last_seen_at
            """,
            (
                record["identifier"],
                record.get("title"),
                record.get("snippet"),
                record.get("link"),
                record.get("doi"),
                record.get("result_id"),
                record.get("publication_info"),
                record.get("cited_by_count"),
                now,
                now,
            ),
        )

    async def get_scholar_record(self, identifier: str) -> dict[str, Any] | None:
        return await self.fetch_one("SELECT * FROM scholar_records WHERE identifier = ?", (identifier,))

    async def save_patent_detail(
        self,
        publication_number: str,
        *,
        requested_id: str,
        raw_payload: dict[str, Any],
        projection: dict[str, Any],
    ) -> None:
        """Persist a raw detail payload and its normalized projection together."""
        now = now_iso()
        async with self.transaction() as tx:
            await tx.execute(
                """
                INSERT INTO patent_records (publication_number, first_seen_at, last_seen_at)
                VALUES (?, ?, ?)
                ON CONFLICT(publication_number) DO NOTHING
                """,
                (publication_number, now, now),
            )
            await tx.execute(
                """
                INSERT INTO patent_raw_details (publication_number, requested_id, payload_json, fetched_at)
                VALUES (?, ?, ?, ?)
                """,
                (publication_number, requested_id, _dumps(raw_payload), now),
            )
            await tx.execute(
                """
                INSERT OR REPLACE INTO patent_details
                    (publication_number, detail_json, claims_count, has_citations, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    publication_number,
                    _dumps(projection),
                    int(projection.get("claims_count", 0)),
                    1 if projection.get("has_citations") else 0,
                    now,
                ),
            )
            await tx.execute(
                "UPDATE patent_records SET detail_fetched_at = ?, last_seen_at = ? WHERE publication_number = ?",
                (now, now, publication_number),
            )

    async def get_patent_detail(self, publication_number: str) -> dict[str, Any] | None:
        row = await self.fetch_one(
            "SELECT * FROM patent_details WHERE publication_number = ?",
            (publication_number,),
        )
        if row is None:
            return None
        row["detail"] = json.loads(row.pop("detail_json"))
        return row

    # ============================================================
    # Novelty assessments
    # ============================================================

    async def insert_assessment(self, row: dict[str, Any]) -> str | None:
        return await self.insert("novelty_assessments", {**row, "created_at": now_iso()})

    async def update_assessment(self, assessment_id: str, data: dict[str, Any]) -> int:
        return await self.update("novelty_assessments", data, "id = ?", (assessment_id,))

    async def get_assessment(self, assessment_id: str) -> dict[str, Any] | None:
        return await self.fetch_one("SELECT * FROM novelty_assessments WHERE id = ?", (assessment_id,))

    async def get_latest_assessment(self, run_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM novelty_assessments WHERE run_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (run_id,),
        )

    async def record_llm_call(self, assessment_id: str, row: dict[str, Any]) -> None:
        await self.insert(
            "novelty_llm_calls",
            {"assessment_id": assessment_id, **row, "created_at": now_iso()},
            auto_id=False,
        )

    async def get_llm_calls(self, assessment_id: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "SELECT * FROM novelty_llm_calls WHERE assessment_id = ? ORDER BY id",
            (assessment_id,),
        )
