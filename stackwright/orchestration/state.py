"""Orchestration layer — Resource state store.

Records the last-applied state of every resource so repeated runs converge.
Persists to SQLite via aiosqlite.

State transitions:
    pending -> created            (create succeeded)
    created -> created            (update succeeded, outputs replaced)
    any     -> failed             (unrecoverable provider error)
    any     -> deleted            (row removed by destroy)

Every save is a single ``INSERT ... ON CONFLICT DO UPDATE`` statement
committed on its own, so a reader sees either the previous record for an id
or the new one, never a mix.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite

from stackwright.exceptions import StateStoreError
from stackwright.logging import get_logger
from stackwright.manifest.models import ResourceStatus

log = get_logger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS resources (
    resource_id   TEXT PRIMARY KEY,
    kind          TEXT NOT NULL,
    status        TEXT NOT NULL,
    inputs_hash   TEXT,
    inputs        TEXT NOT NULL DEFAULT '{}',
    outputs       TEXT NOT NULL DEFAULT '{}',
    dependencies  TEXT NOT NULL DEFAULT '[]',
    error         TEXT,
    attempts      INTEGER NOT NULL DEFAULT 0,
    updated_at    REAL NOT NULL
);
"""

_COLUMNS = (
    "resource_id, kind, status, inputs_hash, inputs, outputs, "
    "dependencies, error, attempts, updated_at"
)


@dataclass
class ResourceState:
    """Last-applied materialisation of a resource."""

    id: str
    kind: str
    status: ResourceStatus = ResourceStatus.PENDING
    inputs_hash: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    error: str | None = None
    attempts: int = 0
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "inputs_hash": self.inputs_hash,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "error": self.error,
            "attempts": self.attempts,
            "updated_at": self.updated_at,
        }


class StateStore:
    """Async SQLite-backed store for resource states.

    Usage::

        async with StateStore(Path(".stackwright/state.db")) as store:
            states = await store.load()
            await store.save(ResourceState(id="net", kind="network"))
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path).expanduser()
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._db_path

    async def init(self) -> None:
        """Open the database and create tables if they do not exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(_SCHEMA_SQL)
            await self._conn.commit()
            log.debug("state_store_ready", db=str(self._db_path))
        except Exception as exc:
            raise StateStoreError(f"Failed to initialise state store: {exc}") from exc

    async def close(self) -> None:
        # Waits for in-flight writes, including shielded ones, to commit.
        async with self._lock:
            if self._conn:
                await self._conn.close()
                self._conn = None

    async def __aenter__(self) -> "StateStore":
        await self.init()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def save(self, state: ResourceState) -> None:
        """Insert or replace the record for ``state.id``."""
        state.updated_at = time.time()
        async with self._lock:
            conn = self._require_conn()
            try:
                await conn.execute(
                    f"INSERT INTO resources ({_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?) "
                    "ON CONFLICT(resource_id) DO UPDATE SET "
                    "kind=excluded.kind, status=excluded.status, "
                    "inputs_hash=excluded.inputs_hash, inputs=excluded.inputs, "
                    "outputs=excluded.outputs, dependencies=excluded.dependencies, "
                    "error=excluded.error, attempts=excluded.attempts, "
                    "updated_at=excluded.updated_at",
                    (
                        state.id,
                        state.kind,
                        state.status.value,
                        state.inputs_hash,
                        json.dumps(state.inputs, sort_keys=True, default=str),
                        json.dumps(state.outputs, sort_keys=True, default=str),
                        json.dumps(sorted(state.dependencies)),
                        state.error,
                        state.attempts,
                        state.updated_at,
                    ),
                )
                await conn.commit()
            except Exception as exc:
                raise StateStoreError(f"Failed to save state of '{state.id}': {exc}") from exc

    async def delete(self, resource_id: str) -> None:
        async with self._lock:
            conn = self._require_conn()
            try:
                await conn.execute("DELETE FROM resources WHERE resource_id=?", (resource_id,))
                await conn.commit()
            except Exception as exc:
                raise StateStoreError(
                    f"Failed to delete state of '{resource_id}': {exc}"
                ) from exc

    async def get(self, resource_id: str) -> ResourceState | None:
        conn = self._require_conn()
        async with conn.execute(
            f"SELECT {_COLUMNS} FROM resources WHERE resource_id=?", (resource_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_state(row) if row is not None else None

    async def load(self) -> dict[str, ResourceState]:
        """Return every stored record keyed by resource id."""
        conn = self._require_conn()
        states: dict[str, ResourceState] = {}
        async with conn.execute(
            f"SELECT {_COLUMNS} FROM resources ORDER BY resource_id"
        ) as cursor:
            async for row in cursor:
                state = _row_to_state(row)
                states[state.id] = state
        return states

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StateStoreError("State store is not initialised; call init() first")
        return self._conn


def _row_to_state(row: Any) -> ResourceState:
    return ResourceState(
        id=row[0],
        kind=row[1],
        status=ResourceStatus(row[2]),
        inputs_hash=row[3],
        inputs=json.loads(row[4]) if row[4] else {},
        outputs=json.loads(row[5]) if row[5] else {},
        dependencies=json.loads(row[6]) if row[6] else [],
        error=row[7],
        attempts=row[8],
        updated_at=row[9],
    )
