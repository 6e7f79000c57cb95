"""
SQLite run store - durable, multi-process-safe.

Layout:
    runs(id, version_id, status, data, created_at, updated_at, completed_at)
    node_states(run_id, node_id, status, data, updated_at)

One row per node state, so a compare-and-set touches exactly one row. Every
conditional write runs inside ``BEGIN IMMEDIATE``, which takes the database
write lock before the status check; two processes sharing the file cannot
interleave a check and a write. Blocking sqlite3 calls run in a worker thread
via asyncio.to_thread so the event loop is never stalled.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path

from edgeflow.errors import RunNotFoundError
from edgeflow.schemas.run import NodeState, NodeStatus, Run, RunStatus, TriggerMetadata, utcnow
from edgeflow.storage.base import (
    DeriveStatus,
    NodeWrite,
    RunStore,
    StaleNode,
    completion_time,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    version_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE TABLE IF NOT EXISTS node_states (
    run_id TEXT NOT NULL REFERENCES runs(id),
    node_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (run_id, node_id)
);
CREATE INDEX IF NOT EXISTS idx_node_states_status ON node_states(status, updated_at);
"""


class SQLiteRunStore(RunStore):
    """
    Run store backed by a single SQLite file.

    Example:
        store = SQLiteRunStore(Path("~/.edgeflow/runs.db").expanduser())
        await store.initialize()
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self._timeout = timeout
        self._initialized = False

    async def initialize(self) -> None:
        def _init():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with closing(self._connect()) as conn:
                conn.executescript(_SCHEMA)

        await asyncio.to_thread(_init)
        self._initialized = True
        logger.debug(f"SQLite run store ready at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(self.db_path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn):
        if not self._initialized:
            await self.initialize()
        return await asyncio.to_thread(fn)

    # === RUNS ===

    async def create_run(self, run: Run) -> None:
        def _create():
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        "INSERT INTO runs (id, version_id, status, data, created_at, updated_at,"
                        " completed_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            run.id,
                            run.version_id,
                            run.status.value,
                            _run_data(run),
                            run.created_at.isoformat(),
                            run.updated_at.isoformat(),
                            _iso(run.completed_at),
                        ),
                    )
                    for node_id, state in run.node_states.items():
                        _upsert_state(conn, run.id, node_id, state)
                    conn.execute("COMMIT")
                except sqlite3.IntegrityError as e:
                    conn.execute("ROLLBACK")
                    raise ValueError(f"Run already exists: {run.id}") from e
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        await self._run(_create)

    async def get_run(self, run_id: str) -> Run | None:
        def _get():
            with closing(self._connect()) as conn:
                row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
                if row is None:
                    return None
                states = conn.execute(
                    "SELECT node_id, data FROM node_states WHERE run_id = ?", (run_id,)
                ).fetchall()
                return _row_to_run(row, states)

        return await self._run(_get)

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime | None = None,
        expected: RunStatus | None = None,
    ) -> bool:
        def _set():
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT status FROM runs WHERE id = ?", (run_id,)
                    ).fetchone()
                    if row is None:
                        raise RunNotFoundError(run_id)
                    if expected is not None and row["status"] != expected.value:
                        conn.execute("ROLLBACK")
                        return False
                    conn.execute(
                        "UPDATE runs SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
                        (status.value, _iso(completed_at), utcnow().isoformat(), run_id),
                    )
                    conn.execute("COMMIT")
                    return True
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        return await self._run(_set)

    async def update_run_status(self, run_id: str, derive: DeriveStatus) -> tuple[Run, RunStatus]:
        def _update():
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
                    if row is None:
                        raise RunNotFoundError(run_id)
                    states = conn.execute(
                        "SELECT node_id, data FROM node_states WHERE run_id = ?", (run_id,)
                    ).fetchall()
                    previous = _row_to_run(row, states)
                    status = derive(previous.node_states)
                    if status != previous.status:
                        conn.execute(
                            "UPDATE runs SET status = ?, completed_at = ?, updated_at = ?"
                            " WHERE id = ?",
                            (
                                status.value,
                                _iso(completion_time(status)),
                                utcnow().isoformat(),
                                run_id,
                            ),
                        )
                    conn.execute("COMMIT")
                    return previous, status
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        return await self._run(_update)

    async def list_runs(self, status: RunStatus | None = None) -> list[Run]:
        def _list():
            with closing(self._connect()) as conn:
                if status is None:
                    rows = conn.execute("SELECT * FROM runs ORDER BY created_at").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM runs WHERE status = ? ORDER BY created_at",
                        (status.value,),
                    ).fetchall()
                runs = []
                for row in rows:
                    states = conn.execute(
                        "SELECT node_id, data FROM node_states WHERE run_id = ?", (row["id"],)
                    ).fetchall()
                    runs.append(_row_to_run(row, states))
                return runs

        return await self._run(_list)

    # === NODE STATES ===

    async def get_node_state(self, run_id: str, node_id: str) -> NodeState | None:
        def _get():
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT data FROM node_states WHERE run_id = ? AND node_id = ?",
                    (run_id, node_id),
                ).fetchone()
                return NodeState.model_validate_json(row["data"]) if row else None

        return await self._run(_get)

    async def compare_and_set(
        self, run_id: str, node_id: str, expected: NodeStatus, new_state: NodeState
    ) -> bool:
        return await self.write_batch(run_id, [NodeWrite(node_id, expected, new_state)])

    async def write_batch(self, run_id: str, writes: list[NodeWrite]) -> bool:
        def _write():
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    if not conn.execute("SELECT 1 FROM runs WHERE id = ?", (run_id,)).fetchone():
                        raise RunNotFoundError(run_id)
                    for write in writes:
                        row = conn.execute(
                            "SELECT status FROM node_states WHERE run_id = ? AND node_id = ?",
                            (run_id, write.node_id),
                        ).fetchone()
                        current = NodeStatus(row["status"]) if row else NodeStatus.PENDING
                        if current != write.expected:
                            conn.execute("ROLLBACK")
                            return False
                    for write in writes:
                        _upsert_state(conn, run_id, write.node_id, write.state)
                    conn.execute(
                        "UPDATE runs SET updated_at = ? WHERE id = ?",
                        (utcnow().isoformat(), run_id),
                    )
                    conn.execute("COMMIT")
                    return True
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        return await self._run(_write)

    async def find_stale_nodes(self, updated_before: datetime) -> list[StaleNode]:
        def _find():
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    "SELECT run_id, node_id, data FROM node_states"
                    " WHERE status = ? AND updated_at < ?",
                    (NodeStatus.RUNNING.value, updated_before.isoformat()),
                ).fetchall()
                return [
                    StaleNode(
                        row["run_id"], row["node_id"], NodeState.model_validate_json(row["data"])
                    )
                    for row in rows
                ]

        return await self._run(_find)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _run_data(run: Run) -> str:
    return json.dumps(
        {
            "entity_id": run.entity_id,
            "trigger": run.trigger.model_dump(mode="json"),
            "input": run.input,
        }
    )


def _upsert_state(conn: sqlite3.Connection, run_id: str, node_id: str, state: NodeState) -> None:
    conn.execute(
        "INSERT INTO node_states (run_id, node_id, status, data, updated_at)"
        " VALUES (?, ?, ?, ?, ?)"
        " ON CONFLICT(run_id, node_id) DO UPDATE SET"
        " status = excluded.status, data = excluded.data, updated_at = excluded.updated_at",
        (
            run_id,
            node_id,
            state.status.value,
            state.model_dump_json(),
            state.updated_at.isoformat(),
        ),
    )


def _row_to_run(row: sqlite3.Row, state_rows: list[sqlite3.Row]) -> Run:
    data = json.loads(row["data"])
    return Run(
        id=row["id"],
        version_id=row["version_id"],
        status=RunStatus(row["status"]),
        entity_id=data.get("entity_id"),
        trigger=TriggerMetadata.model_validate(data.get("trigger") or {}),
        input=data.get("input") or {},
        node_states={
            s["node_id"]: NodeState.model_validate_json(s["data"]) for s in state_rows
        },
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
    )
