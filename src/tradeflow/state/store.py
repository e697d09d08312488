"""
State store for workflow runs.

One versioned JSON document per run plus an append-only side table for
messages. Exposes read, conditional (optimistic-locked) write, and two
atomic server-side procedures for the highest-contention mutations:
step-status flips and debate-round merges.

SQLite via aiosqlite. All statements on the shared connection are
serialized, so each procedure runs read-merge-write as one transaction.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

import aiosqlite
import orjson

from tradeflow.exceptions import RunNotFoundError, StoreError
from tradeflow.logging import get_logger
from tradeflow.types import (
    Message,
    RunStatus,
    StepStatus,
    StepTransition,
    WorkflowRun,
    utc_now,
)

logger = get_logger(__name__)


def _ts(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as text.
    return value.isoformat(timespec="microseconds")


@runtime_checkable
class RunStore(Protocol):
    """Store interface consumed by the atomic update layer."""

    dedup_window: timedelta

    async def create_run(self, payload: dict[str, Any]) -> int:
        """Insert a new run document and return its initial version."""
        ...

    async def read_run(self, run_id: str) -> tuple[dict[str, Any], int]:
        """Return (payload, version_token). Raises RunNotFoundError."""
        ...

    async def conditional_write(
        self, run_id: str, payload: dict[str, Any], expected_version: int
    ) -> int:
        """Write only if the version is unchanged. Returns rows affected."""
        ...

    async def atomic_merge_step_status(
        self,
        run_id: str,
        phase: str,
        function_name: str,
        status: StepStatus,
        *,
        allow_reset: bool = False,
        error: str | None = None,
        attempt: int | None = None,
    ) -> StepTransition:
        """Merge one step's status server-side."""
        ...

    async def atomic_merge_debate_round(
        self, run_id: str, round_number: int, side: str, text: str, points: list[str]
    ) -> None:
        """Merge one side of a debate round server-side."""
        ...

    async def append_message(self, run_id: str, message: Message) -> bool:
        """Append to the message side table. Returns False if deduplicated."""
        ...


class SQLiteRunStore:
    """aiosqlite-backed implementation of RunStore.

    Usage:
        store = SQLiteRunStore(Path("runs.db"))
        await store.init()
        payload, version = await store.read_run(run_id)
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        procedures_enabled: bool = True,
        dedup_window_s: float = 60.0,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file.
            procedures_enabled: If False, the atomic procedures raise
                StoreError and callers must use the CAS fallback.
            dedup_window_s: Identical (agent, text) messages appended within
                this window are dropped.
        """
        self.db_path = Path(db_path)
        self.procedures_enabled = procedures_enabled
        self.dedup_window = timedelta(seconds=dedup_window_s)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the connection and create tables. Safe to call twice."""
        if self._db is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                ticker TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS run_messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                agent TEXT NOT NULL,
                message_type TEXT NOT NULL,
                text TEXT NOT NULL,
                ts TEXT NOT NULL,
                metadata TEXT
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_runs_status ON workflow_runs(status)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_run ON run_messages(run_id, seq)"
        )
        await self._db.commit()

        logger.info("Run store initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("SQLiteRunStore not initialized. Call init() first.")
        return self._db

    async def create_run(self, payload: dict[str, Any]) -> int:
        """Insert a new run document.

        Args:
            payload: Serialized WorkflowRun.

        Returns:
            The initial version token (1).
        """
        db = self._require_db()
        now = _ts(utc_now())
        async with self._lock:
            try:
                await db.execute(
                    """
                    INSERT INTO workflow_runs
                        (run_id, ticker, user_id, status, payload, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        payload["run_id"],
                        payload["ticker"],
                        payload["user_id"],
                        payload["status"],
                        orjson.dumps(payload).decode("utf-8"),
                        now,
                        now,
                    ),
                )
                await db.commit()
            except aiosqlite.Error as e:
                raise StoreError(
                    f"Failed to create run: {e}",
                    context={"run_id": payload.get("run_id"), "operation": "create_run"},
                ) from e
        return 1

    async def read_run(self, run_id: str) -> tuple[dict[str, Any], int]:
        """Read a run document and its version token.

        Raises:
            RunNotFoundError: If the run does not exist.
            StoreError: If the read fails.
        """
        db = self._require_db()
        async with self._lock:
            row = await self._fetch_run_row(db, run_id)
        return orjson.loads(row["payload"]), row["version"]

    async def conditional_write(
        self, run_id: str, payload: dict[str, Any], expected_version: int
    ) -> int:
        """Write `payload` only if the stored version equals `expected_version`.

        A successful write increments the version by one.

        Returns:
            Rows affected (0 means a concurrent writer won).
        """
        db = self._require_db()
        async with self._lock:
            try:
                cursor = await db.execute(
                    """
                    UPDATE workflow_runs
                    SET payload = ?, status = ?, version = version + 1, updated_at = ?
                    WHERE run_id = ? AND version = ?
                    """,
                    (
                        orjson.dumps(payload).decode("utf-8"),
                        payload["status"],
                        _ts(utc_now()),
                        run_id,
                        expected_version,
                    ),
                )
                await db.commit()
            except aiosqlite.Error as e:
                raise StoreError(
                    f"Conditional write failed: {e}",
                    context={"run_id": run_id, "operation": "conditional_write"},
                ) from e
        return cursor.rowcount

    async def atomic_merge_step_status(
        self,
        run_id: str,
        phase: str,
        function_name: str,
        status: StepStatus,
        *,
        allow_reset: bool = False,
        error: str | None = None,
        attempt: int | None = None,
    ) -> StepTransition:
        """Update one agent step in a single transaction.

        Disallowed transitions are reported with applied=False and leave the
        document untouched. A missing step yields previous=None.
        """
        result = StepTransition(previous=None, applied=False)

        def merge(run: WorkflowRun) -> bool:
            nonlocal result
            result = run.apply_step_status(
                phase,
                function_name,
                status,
                allow_reset=allow_reset,
                error=error,
                attempt=attempt,
            )
            return result.applied

        await self._run_procedure(run_id, "update_step_status", merge)
        return result

    async def atomic_merge_debate_round(
        self, run_id: str, round_number: int, side: str, text: str, points: list[str]
    ) -> None:
        """Record one side of a round, creating the round if needed.

        The other side's contribution is always preserved.
        """

        def merge(run: WorkflowRun) -> bool:
            run.merge_debate_side(round_number, side, text, points)
            return True

        await self._run_procedure(run_id, "update_debate_round", merge)

    async def _run_procedure(
        self,
        run_id: str,
        name: str,
        merge: Callable[[WorkflowRun], bool],
    ) -> None:
        if not self.procedures_enabled:
            raise StoreError(
                f"Store procedure {name} unavailable",
                context={"run_id": run_id, "operation": name},
            )
        db = self._require_db()
        async with self._lock:
            row = await self._fetch_run_row(db, run_id)
            run = WorkflowRun.from_payload(orjson.loads(row["payload"]))
            if not merge(run):
                return
            run.touch()
            try:
                await db.execute(
                    """
                    UPDATE workflow_runs
                    SET payload = ?, status = ?, version = version + 1, updated_at = ?
                    WHERE run_id = ?
                    """,
                    (
                        orjson.dumps(run.to_payload()).decode("utf-8"),
                        run.status.value,
                        _ts(run.updated_at),
                        run_id,
                    ),
                )
                await db.commit()
            except aiosqlite.Error as e:
                raise StoreError(
                    f"Store procedure {name} failed: {e}",
                    context={"run_id": run_id, "operation": name},
                ) from e

    async def append_message(self, run_id: str, message: Message) -> bool:
        """Append to the side table, dropping recent duplicates.

        Returns:
            True if inserted, False if an identical message from the same
            agent was appended within the dedup window.
        """
        db = self._require_db()
        cutoff = _ts(message.timestamp - self.dedup_window)
        async with self._lock:
            try:
                cursor = await db.execute(
                    """
                    SELECT 1 FROM run_messages
                    WHERE run_id = ? AND agent = ? AND text = ? AND ts >= ?
                    LIMIT 1
                    """,
                    (run_id, message.agent, message.text, cutoff),
                )
                if await cursor.fetchone() is not None:
                    return False
                await db.execute(
                    """
                    INSERT INTO run_messages (run_id, agent, message_type, text, ts, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        message.agent,
                        message.type.value,
                        message.text,
                        _ts(message.timestamp),
                        orjson.dumps(message.metadata).decode("utf-8"),
                    ),
                )
                await db.commit()
            except aiosqlite.Error as e:
                raise StoreError(
                    f"Failed to append message: {e}",
                    context={"run_id": run_id, "operation": "append_message"},
                ) from e
        return True

    async def list_messages(self, run_id: str) -> list[Message]:
        """Return the run's messages in insertion order."""
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute(
                "SELECT * FROM run_messages WHERE run_id = ? ORDER BY seq",
                (run_id,),
            )
            rows = await cursor.fetchall()
        return [
            Message.from_dict({
                "agent": row["agent"],
                "text": row["text"],
                "timestamp": row["ts"],
                "type": row["message_type"],
                "metadata": orjson.loads(row["metadata"]) if row["metadata"] else {},
            })
            for row in rows
        ]

    async def list_runs(
        self,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Return run summaries, most recently updated first."""
        db = self._require_db()
        query = "SELECT run_id, ticker, user_id, status, version, created_at, updated_at FROM workflow_runs"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)

        async with self._lock:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _fetch_run_row(self, db: aiosqlite.Connection, run_id: str) -> aiosqlite.Row:
        try:
            cursor = await db.execute(
                "SELECT payload, version FROM workflow_runs WHERE run_id = ?",
                (run_id,),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreError(
                f"Failed to read run: {e}",
                context={"run_id": run_id, "operation": "read_run"},
            ) from e
        if row is None:
            raise RunNotFoundError(f"Run not found: {run_id}", context={"run_id": run_id})
        return row
