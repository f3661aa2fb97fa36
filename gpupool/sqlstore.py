"""Relational storage back end on top of SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import asdict
from datetime import timedelta
from typing import Any

from gpupool.memdb import calculate_percentiles
from gpupool.models import (
    AgentState,
    PermissionType,
    SessionState,
    agent_state_from_string,
    permission_type_from_string,
    session_state_from_string,
)
from gpupool.sqllog import LogLevel, SqlLogger
from gpupool.types import (
    Agent,
    AgentUpdate,
    AggregatedData,
    Connection,
    Gpu,
    GpuMetrics,
    GpuRequirements,
    NotFoundError,
    Permission,
    Pool,
    PoolPermissions,
    QueuedSession,
    Session,
    SessionGpu,
    SessionRequirements,
    Storage,
    UserPermissions,
    total_vram,
    total_vram_required,
)

_log = logging.getLogger(__name__)

_NIL_UUID = "00000000-0000-0000-0000-000000000000"
_PAGE = 20
_GIB = 1024 * 1024 * 1024
_UINT64 = 1 << 64

_SCHEMA = """
CREATE TABLE IF NOT EXISTS pools (
    id TEXT PRIMARY KEY, pool_name TEXT NOT NULL, max_agents INTEGER DEFAULT 0,
    created_at REAL, updated_at REAL, deleted_at REAL);
CREATE TABLE IF NOT EXISTS key_values (
    id INTEGER PRIMARY KEY AUTOINCREMENT, key TEXT NOT NULL, value TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS agents (
    id INTEGER PRIMARY KEY AUTOINCREMENT, uuid TEXT NOT NULL UNIQUE, state INTEGER,
    hostname TEXT, address TEXT, version TEXT, gpus TEXT, vram_available INTEGER,
    pool_id TEXT, created_at REAL, updated_at REAL, deleted_at REAL);
CREATE TABLE IF NOT EXISTS agent_labels (agent_id INTEGER, key_value_id INTEGER);
CREATE TABLE IF NOT EXISTS agent_taints (agent_id INTEGER, key_value_id INTEGER);
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT, uuid TEXT NOT NULL UNIQUE, agent_id INTEGER,
    state INTEGER, address TEXT DEFAULT '', version TEXT, persistent INTEGER DEFAULT 0,
    gpus TEXT, vram_required INTEGER, requirements TEXT, pool_id TEXT,
    created_at REAL, updated_at REAL, deleted_at REAL);
CREATE TABLE IF NOT EXISTS session_labels (session_id INTEGER, key_value_id INTEGER);
CREATE TABLE IF NOT EXISTS session_tolerates (session_id INTEGER, key_value_id INTEGER);
CREATE TABLE IF NOT EXISTS connections (
    id INTEGER PRIMARY KEY AUTOINCREMENT, uuid TEXT NOT NULL UNIQUE, session_id INTEGER,
    exit_code INTEGER, pid TEXT, process_name TEXT,
    created_at REAL, updated_at REAL, deleted_at REAL);
CREATE TABLE IF NOT EXISTS permissions (
    id TEXT PRIMARY KEY, user_id TEXT NOT NULL, pool_id TEXT NOT NULL,
    permission INTEGER NOT NULL, created_at REAL, updated_at REAL, deleted_at REAL);
"""

_PERMISSIONS = {
    PermissionType.CREATE_SESSION: Permission.CREATE_SESSION,
    PermissionType.REGISTER_AGENT: Permission.REGISTER_AGENT,
    PermissionType.ADMIN: Permission.ADMIN,
}


def _uuid_or_nil(text: str) -> str:
    try:
        return str(uuid.UUID(text))
    except (ValueError, TypeError, AttributeError):
        return _NIL_UUID


def _seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def _load_json(text: str | None) -> Any:
    if text is None:
        raise ValueError("unexpected end of JSON input")
    return json.loads(text)


def _gpu(data: dict[str, Any]) -> Gpu:
    return Gpu(**{**data, "metrics": GpuMetrics(**data.get("metrics", {}))})


def _gpus_from_json(text: str | None) -> list[Gpu]:
    return [_gpu(item) for item in _load_json(text) or []]


def _session_gpus_from_json(text: str | None) -> list[SessionGpu] | None:
    data = _load_json(text)
    return None if data is None else [SessionGpu(**item) for item in data]


def _requirements_from_json(text: str | None) -> SessionRequirements:
    data = _load_json(text)
    return SessionRequirements(
        version=data.get("version", ""),
        gpus=[GpuRequirements(**item) for item in data.get("gpus") or []],
        match_labels=dict(data.get("match_labels") or {}),
        tolerates=dict(data.get("tolerates") or {}),
        pool_id=data.get("pool_id", ""),
    )


def _to_permission(value: int) -> Permission:
    try:
        return _PERMISSIONS[PermissionType(value)]
    except (KeyError, ValueError):
        raise ValueError("unknown permission type") from None


class SqlStorage(Storage):
    """Storage kept in a relational database."""

    def __init__(
        self, connection: sqlite3.Connection, clock: Callable[[], float] = time.time
    ) -> None:
        self._db = connection
        self._db.row_factory = sqlite3.Row
        self._clock = clock
        self._lock = threading.RLock()
        self._sql_log = SqlLogger(log_level=LogLevel.WARN)
        self._db.executescript(_SCHEMA)

    # -- helpers -----------------------------------------------------------

    def _execute(self, sql: str, params: tuple | dict = ()) -> sqlite3.Cursor:
        begin = time.perf_counter()
        try:
            cursor = self._db.execute(sql, params)
        except sqlite3.Error as error:
            self._sql_log.trace(begin, lambda: (sql, -1), error)
            raise
        self._sql_log.trace(begin, lambda: (sql, cursor.rowcount), None)
        return cursor

    def _one(self, sql: str, params: tuple = ()) -> sqlite3.Row:
        row = self._execute(sql, params).fetchone()
        if row is None:
            raise NotFoundError()
        return row

    def _agent_row(self, id: str) -> sqlite3.Row:
        return self._one(
            "SELECT * FROM agents WHERE uuid = ? AND deleted_at IS NULL", (_uuid_or_nil(id),)
        )

    def _session_row(self, id: str) -> sqlite3.Row:
        return self._one(
            "SELECT * FROM sessions WHERE uuid = ? AND deleted_at IS NULL", (_uuid_or_nil(id),)
        )

    def _insert_key_values(self, table: str, column: str, owner: int, values: dict) -> None:
        for key, value in values.items():
            cursor = self._execute(
                "INSERT INTO key_values (key, value) VALUES (?, ?)", (key, value)
            )
            self._execute(
                f"INSERT INTO {table} ({column}, key_value_id) VALUES (?, ?)",
                (owner, cursor.lastrowid),
            )

    def _key_values(self, table: str, column: str, owner: int) -> dict[str, str]:
        rows = self._execute(
            f"SELECT kv.key, kv.value FROM key_values kv JOIN {table} t "
            f"ON t.key_value_id = kv.id WHERE t.{column} = ? ORDER BY kv.id",
            (owner,),
        )
        return {row["key"]: row["value"] for row in rows}

    def _connections(self, session_id: int) -> list[Connection] | None:
        rows = self._execute(
            "SELECT * FROM connections WHERE session_id = ? AND deleted_at IS NULL ORDER BY id",
            (session_id,),
        ).fetchall()
        if not rows:
            return None
        return [
            Connection(
                id=row["uuid"], pid=row["pid"], process_name=row["process_name"],
                exit_code=row["exit_code"],
            )
            for row in rows
        ]

    def _agent(self, row: sqlite3.Row, with_sessions: bool) -> Agent:
        agent = Agent(
            id=row["uuid"],
            state=str(AgentState(row["state"])),
            hostname=row["hostname"],
            address=row["address"],
            version=row["version"],
            labels=self._key_values("agent_labels", "agent_id", row["id"]),
            taints=self._key_values("agent_taints", "agent_id", row["id"]),
            pool_id=row["pool_id"],
        )
        agent.gpus = _gpus_from_json(row["gpus"])
        if with_sessions:
            rows = self._execute(
                "SELECT * FROM sessions WHERE agent_id = ? AND state != ? "
                "AND deleted_at IS NULL ORDER BY id",
                (row["id"], SessionState.CLOSED),
            )
            for session_row in rows:
                try:
                    gpus = _session_gpus_from_json(session_row["gpus"])
                except ValueError:
                    continue
                agent.sessions.append(
                    Session(
                        id=session_row["uuid"],
                        state=str(SessionState(session_row["state"])),
                        address=session_row["address"],
                        version=session_row["version"],
                        gpus=gpus,
                    )
                )
        return agent

    def _agents_where(self, where: str, params: tuple, with_sessions: bool, limit: int | None):
        sql = f"SELECT * FROM agents WHERE deleted_at IS NULL {where} ORDER BY id"
        if limit is not None:
            sql += f" LIMIT {limit}"
        agents = []
        for row in self._execute(sql, params).fetchall():
            try:
                agents.append(self._agent(row, with_sessions))
            except (ValueError, TypeError) as error:
                _log.warning("%s", error)
        return agents

    # -- storage interface -------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()

    def aggregate_data(self) -> AggregatedData:
        with self._lock:
            agents = self._agents_where("", (), True, None)

        data = AggregatedData()
        gb_available: dict[int, int] = {}
        gb_available_by_name: dict[str, dict[int, int]] = {}
        utilization = 0
        utilization_by_name: dict[str, int] = {}
        power = 0
        power_by_name: dict[str, int] = {}

        for agent in agents:
            data.agents += 1
            data.agents_by_status[agent.state] = data.agents_by_status.get(agent.state, 0) + 1
            data.sessions += len(agent.sessions)
            for session in agent.sessions:
                data.sessions_by_status[session.state] = (
                    data.sessions_by_status.get(session.state, 0) + 1
                )
            data.gpus += len(agent.gpus)
            for gpu in agent.gpus:
                name, used = gpu.name, gpu.metrics.vram_used
                data.gpus_by_gpu_name[name] = data.gpus_by_gpu_name.get(name, 0) + 1
                data.vram += gpu.vram
                data.vram_by_gpu_name[name] = data.vram_by_gpu_name.get(name, 0) + gpu.vram
                data.vram_used += used
                data.vram_used_by_gpu_name[name] = data.vram_used_by_gpu_name.get(name, 0) + used
                gb = ((gpu.vram - used) % _UINT64) // _GIB
                gb_available[gb] = gb_available.get(gb, 0) + 1
                per_name = gb_available_by_name.setdefault(name, {})
                per_name[gb] = per_name.get(gb, 0) + 1
                utilization += gpu.metrics.utilization_gpu
                utilization_by_name[name] = (
                    utilization_by_name.get(name, 0) + gpu.metrics.utilization_gpu
                )
                power += gpu.metrics.power_draw
                power_by_name[name] = power_by_name.get(name, 0) + gpu.metrics.power_draw

        if data.gpus > 0:
            data.vram_gb_available = calculate_percentiles(gb_available, data.gpus)
            data.vram_gb_available_by_gpu_name = {
                name: calculate_percentiles(counts, data.gpus_by_gpu_name[name])
                for name, counts in gb_available_by_name.items()
            }
            data.utilization = utilization / data.gpus
            data.utilization_by_gpu_name = {
                name: value / data.gpus for name, value in utilization_by_name.items()
            }
            data.power_draw = power / data.gpus / 1000.0
            data.power_draw_by_gpu_name = {
                name: value / data.gpus / 1000.0 for name, value in power_by_name.items()
            }
        return data

    def register_agent(self, agent: Agent) -> str:
        gpus = json.dumps([asdict(gpu) for gpu in agent.gpus])
        agent_uuid = str(uuid.uuid4())
        now = self._clock()
        with self._lock, self._db:
            cursor = self._execute(
                "INSERT INTO agents (uuid, state, hostname, address, version, gpus, "
                "vram_available, pool_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    agent_uuid, int(agent_state_from_string(agent.state)), agent.hostname,
                    agent.address, agent.version, gpus, total_vram(agent.gpus),
                    _uuid_or_nil(agent.pool_id), now, now,
                ),
            )
            self._insert_key_values("agent_labels", "agent_id", cursor.lastrowid, agent.labels)
            self._insert_key_values("agent_taints", "agent_id", cursor.lastrowid, agent.taints)
        return agent_uuid

    def get_agent_by_id(self, id: str) -> Agent:
        with self._lock:
            return self._agent(self._agent_row(id), True)

    def update_agent(self, update: AgentUpdate) -> None:
        now = self._clock()
        with self._lock, self._db:
            agent = self._agent_row(update.id)
            state = agent_state_from_string(update.state)
            vram_available = agent["vram_available"]

            gpus = _gpus_from_json(agent["gpus"])
            if len(update.gpus) > len(gpus):
                raise IndexError(f"update reports {len(update.gpus)} GPUs, agent has {len(gpus)}")
            for gpu, metrics in zip(gpus, update.gpus):
                gpu.metrics = metrics

            for session_id, session_update in update.sessions_update.items():
                session = self._session_row(session_id)
                new_state = session_state_from_string(session_update.state)
                if new_state != session["state"]:
                    if session["state"] == SessionState.CLOSED:
                        vram_available += session["vram_required"]
                    if new_state != SessionState.UNKNOWN:
                        self._execute(
                            "UPDATE sessions SET state = ?, updated_at = ? WHERE id = ?",
                            (int(new_state), now, session["id"]),
                        )
                for connection in session_update.connections:
                    self._upsert_connection(session["id"], connection, now)
                self._execute(
                    "UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session["id"])
                )

            if state != AgentState.UNKNOWN:
                self._execute("UPDATE agents SET state = ? WHERE id = ?", (int(state), agent["id"]))
            self._execute(
                "UPDATE agents SET gpus = ?, vram_available = ?, updated_at = ? WHERE id = ?",
                (json.dumps([asdict(gpu) for gpu in gpus]), vram_available, now, agent["id"]),
            )

    def _upsert_connection(self, session_id: int, connection: Connection, now: float) -> None:
        connection_uuid = _uuid_or_nil(connection.id)
        existing = self._execute(
            "SELECT id FROM connections WHERE uuid = ? AND deleted_at IS NULL", (connection_uuid,)
        ).fetchone()
        if existing is None:
            self._execute(
                "INSERT INTO connections (uuid, session_id, exit_code, pid, process_name, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (connection_uuid, session_id, connection.exit_code, connection.pid,
                 connection.process_name, now, now),
            )
            return
        changes = {"session_id": session_id, "updated_at": now}
        if connection.pid:
            changes["pid"] = connection.pid
        if connection.process_name:
            changes["process_name"] = connection.process_name
        if connection.exit_code:
            changes["exit_code"] = connection.exit_code
        assignments = ", ".join(f"{column} = ?" for column in changes)
        self._execute(
            f"UPDATE connections SET {assignments} WHERE id = ?",
            (*changes.values(), existing["id"]),
        )

    def request_session(self, requirements: SessionRequirements) -> str:
        encoded = json.dumps(asdict(requirements))
        session_uuid = str(uuid.uuid4())
        pool_id = _uuid_or_nil(requirements.pool_id) if requirements.pool_id else None
        now = self._clock()
        with self._lock, self._db:
            cursor = self._execute(
                "INSERT INTO sessions (uuid, state, version, requirements, vram_required, "
                "pool_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (session_uuid, int(SessionState.QUEUED), requirements.version, encoded,
                 total_vram_required(requirements), pool_id, now, now),
            )
            self._insert_key_values(
                "session_labels", "session_id", cursor.lastrowid, requirements.match_labels
            )
            self._insert_key_values(
                "session_tolerates", "session_id", cursor.lastrowid, requirements.tolerates
            )
        return session_uuid

    def assign_session(self, session_id: str, agent_id: str, gpus: list[SessionGpu]) -> None:
        encoded = json.dumps([asdict(gpu) for gpu in gpus])
        now = self._clock()
        with self._lock, self._db:
            agent = self._agent_row(agent_id)
            session = self._session_row(session_id)
            self._execute(
                "UPDATE sessions SET gpus = ?, agent_id = ?, address = ?, state = ?, "
                "updated_at = ? WHERE id = ?",
                (encoded, agent["id"], agent["address"], int(SessionState.ASSIGNED), now,
                 session["id"]),
            )
            self._execute(
                "UPDATE agents SET vram_available = ?, updated_at = ? WHERE id = ?",
                (agent["vram_available"] - session["vram_required"], now, agent["id"]),
            )

    def cancel_session(self, session_id: str) -> None:
        now = self._clock()
        with self._lock, self._db:
            session = self._session_row(session_id)
            state = SessionState.CLOSED if session["agent_id"] is None else SessionState.CANCELING
            self._execute(
                "UPDATE sessions SET state = ?, updated_at = ? WHERE id = ?",
                (int(state), now, session["id"]),
            )

    def get_session_by_id(self, id: str) -> Session:
        with self._lock:
            row = self._session_row(id)
            try:
                gpus = _session_gpus_from_json(row["gpus"])
            except ValueError:
                # A session without GPU data yet is reported as an empty session.
                return Session()
            return Session(
                id=row["uuid"],
                state=str(SessionState(row["state"])),
                address=row["address"],
                version=row["version"],
                pool_id=row["pool_id"] or "",
                gpus=gpus,
                connections=self._connections(row["id"]),
            )

    def get_queued_session_by_id(self, id: str) -> QueuedSession:
        with self._lock:
            row = self._one(
                "SELECT * FROM sessions WHERE uuid = ? AND state = ? AND deleted_at IS NULL",
                (_uuid_or_nil(id), int(SessionState.QUEUED)),
            )
        return QueuedSession(id=row["uuid"], requirements=_requirements_from_json(row["requirements"]))

    def get_agents(self, pool_id: str) -> Iterator[Agent]:
        where, params = "AND state = ?", (int(AgentState.ACTIVE),)
        if pool_id:
            where, params = where + " AND pool_id = ?", params + (pool_id,)
        with self._lock:
            return iter(self._agents_where(where, params, False, _PAGE))

    def get_available_agents_matching(self, total_available_vram_at_least: int) -> Iterator[Agent]:
        with self._lock:
            return iter(
                self._agents_where(
                    "AND state = ? AND vram_available >= ?",
                    (int(AgentState.ACTIVE), total_available_vram_at_least),
                    False,
                    _PAGE,
                )
            )

    def get_queued_sessions(self) -> Iterator[QueuedSession]:
        with self._lock:
            rows = self._execute(
                f"SELECT uuid, requirements FROM sessions WHERE state = ? AND deleted_at IS NULL "
                f"ORDER BY id LIMIT {_PAGE}",
                (int(SessionState.QUEUED),),
            ).fetchall()
        sessions = []
        for row in rows:
            try:
                requirements = _requirements_from_json(row["requirements"])
            except (ValueError, TypeError) as error:
                _log.error("%s", error)
                continue
            sessions.append(QueuedSession(id=row["uuid"], requirements=requirements))
        return iter(sessions)

    def set_agents_missing_if_not_updated_for(self, duration: timedelta | float) -> None:
        now = self._clock()
        with self._lock, self._db:
            self._execute(
                "UPDATE agents SET state = ?, updated_at = ? WHERE state = ? "
                "AND updated_at <= ? AND deleted_at IS NULL",
                (int(AgentState.MISSING), now, int(AgentState.ACTIVE), now - _seconds(duration)),
            )

    def remove_missing_agents_if_not_updated_for(self, duration: timedelta | float) -> None:
        now = self._clock()
        with self._lock, self._db:
            self._execute(
                "UPDATE agents SET deleted_at = ? WHERE state = ? AND updated_at <= ? "
                "AND deleted_at IS NULL",
                (now, int(AgentState.MISSING), now - _seconds(duration)),
            )

    # -- pools and permissions ---------------------------------------------

    def delete_pool(self, id: str) -> None:
        with self._lock, self._db:
            self._execute(
                "UPDATE pools SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (self._clock(), id),
            )

    def get_pool(self, id: str) -> Pool:
        with self._lock:
            row = self._one(
                "SELECT id, pool_name FROM pools WHERE id = ? AND deleted_at IS NULL", (id,)
            )
        return Pool(id=row["id"], name=row["pool_name"])

    def create_pool(self, name: str) -> Pool:
        pool_id = str(uuid.uuid4())
        now = self._clock()
        with self._lock, self._db:
            self._execute(
                "INSERT INTO pools (id, pool_name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (pool_id, name, now, now),
            )
        return Pool(id=pool_id, name=name)

    def add_permission(self, pool_id: str, user_id: str, permission: Permission | str) -> None:
        now = self._clock()
        with self._lock, self._db:
            self._execute(
                "INSERT INTO permissions (id, user_id, pool_id, permission, created_at, "
                "updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                (str(uuid.uuid4()), user_id, _uuid_or_nil(pool_id),
                 int(permission_type_from_string(str(permission))), now, now),
            )

    def remove_permission(self, pool_id: str, user_id: str, permission: Permission | str) -> None:
        with self._lock, self._db:
            self._execute(
                "UPDATE permissions SET deleted_at = ? WHERE pool_id = ? AND user_id = ? "
                "AND deleted_at IS NULL",
                (self._clock(), pool_id, user_id),
            )

    def get_permissions(self, user_id: str) -> UserPermissions:
        result = UserPermissions()
        with self._lock:
            rows = self._execute(
                """
                SELECT permissions.pool_id, permissions.permission, pools.pool_name,
                    COUNT(DISTINCT sessions.id) AS session_count,
                    COUNT(DISTINCT agents.id) AS agent_count,
                    (SELECT COUNT(DISTINCT p.user_id) FROM permissions p
                        WHERE p.pool_id = permissions.pool_id AND p.deleted_at IS NULL)
                        AS user_count
                FROM permissions
                    JOIN pools ON pools.id = permissions.pool_id
                    LEFT JOIN agents ON agents.pool_id = pools.id AND agents.state = :agent_state
                    LEFT JOIN sessions ON sessions.agent_id = agents.id
                        AND sessions.state = :session_state
                WHERE permissions.user_id = :user_id AND permissions.deleted_at IS NULL
                GROUP BY permissions.pool_id, permissions.permission, pools.pool_name
                ORDER BY pools.pool_name, permissions.permission
                """,
                {
                    "user_id": user_id,
                    "agent_state": int(AgentState.ACTIVE),
                    "session_state": int(SessionState.ACTIVE),
                },
            ).fetchall()
        for row in rows:
            permission = _to_permission(row["permission"])
            if result.permissions is None:
                result.permissions = {}
            result.permissions.setdefault(permission, []).append(
                Pool(
                    id=row["pool_id"],
                    name=row["pool_name"],
                    session_count=row["session_count"],
                    agent_count=row["agent_count"],
                    user_count=row["user_count"],
                )
            )
        return result

    def get_pool_permissions(self, id: str) -> PoolPermissions:
        result = PoolPermissions()
        with self._lock:
            rows = self._execute(
                "SELECT user_id, permission FROM permissions WHERE pool_id = ? "
                "AND deleted_at IS NULL ORDER BY created_at",
                (id,),
            ).fetchall()
        for row in rows:
            permission = _to_permission(row["permission"])
            if result.user_ids is None:
                result.user_ids = {}
            result.user_ids.setdefault(row["user_id"], []).append(permission)
        return result


def open_storage(driver: str, dsn: str) -> SqlStorage:
    """Open relational storage; only the ``sqlite`` driver is available."""
    if driver == "sqlite":
        connection = sqlite3.connect(
            dsn, uri=dsn.startswith("file:"), check_same_thread=False
        )
        return SqlStorage(connection)
    if driver == "postgres":
        raise ValueError("GORM driver postgres is not available")
    raise ValueError(f"invalid GORM driver specified, {driver}")