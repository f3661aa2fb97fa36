"""In-memory storage back end."""

from __future__ import annotations

import copy
import math
import re
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import timedelta

from gpupool.types import (
    AGENT_ACTIVE,
    AGENT_CLOSED,
    AGENT_MISSING,
    SESSION_ACTIVE,
    SESSION_ASSIGNED,
    SESSION_CANCELING,
    SESSION_CLOSED,
    SESSION_QUEUED,
    Agent,
    AgentUpdate,
    AggregatedData,
    NotFoundError,
    Percentile,
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

_GIB = 1024 * 1024 * 1024
_UINT64 = 1 << 64
_UUID_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)
_PERCENTILE_FRACTIONS = (0.10, 0.25, 0.50, 0.75, 0.90)


@dataclass
class _AgentRecord:
    agent: Agent
    session_ids: list[str] = field(default_factory=list)
    vram_available: int = 0
    last_updated: int = 0


@dataclass
class _SessionRecord:
    session: Session
    agent_id: str = ""
    requirements: SessionRequirements = field(default_factory=SessionRequirements)
    vram_required: int = 0
    last_updated: int = 0


def _check_id(id: str) -> None:
    if not isinstance(id, str) or not _UUID_RE.fullmatch(id):
        raise ValueError(f"invalid UUID: {id!r}")


def _seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def calculate_percentiles(counts: dict[int, int], total: int) -> Percentile:
    """Nearest-rank percentiles of a histogram mapping value to occurrences."""
    if not counts:
        raise ValueError("cannot compute percentiles of an empty distribution")

    keys = sorted(counts)
    remaining = iter(keys)
    index = 0
    key = 0
    values = []
    for fraction in _PERCENTILE_FRACTIONS:
        threshold = int(total * fraction)
        while index < threshold:
            next_key = next(remaining, None)
            if next_key is None:
                break
            key = next_key
            index += counts[key]
        values.append(key)

    p10, p25, p50, p75, p90 = values
    return Percentile(p100=keys[-1], p90=p90, p75=p75, p50=p50, p25=p25, p10=p10)


class MemoryStorage(Storage):
    """Storage kept entirely in process memory."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._agents: dict[str, _AgentRecord] = {}
        self._sessions: dict[str, _SessionRecord] = {}
        self._pools: dict[str, str] = {}
        self._permissions: dict[tuple[str, str, Permission], None] = {}

    # -- helpers -----------------------------------------------------------

    def _now(self) -> int:
        return math.floor(self._clock())

    def _since(self, duration: timedelta | float) -> tuple[int, int]:
        moment = self._clock()
        return math.floor(moment), math.floor(moment - _seconds(duration))

    def _agent_record(self, id: str) -> _AgentRecord:
        _check_id(id)
        record = self._agents.get(id)
        if record is None:
            raise NotFoundError()
        return record

    def _session_record(self, id: str) -> _SessionRecord:
        _check_id(id)
        record = self._sessions.get(id)
        if record is None:
            raise NotFoundError()
        return record

    def _sorted_agents(self) -> list[_AgentRecord]:
        return [self._agents[key] for key in sorted(self._agents)]

    # -- storage interface -------------------------------------------------

    def close(self) -> None:
        """Nothing to release for in-memory storage."""

    def aggregate_data(self) -> AggregatedData:
        with self._lock:
            agents = copy.deepcopy(self._sorted_agents())

        data = AggregatedData()
        vram_gb_available: dict[int, int] = {}
        vram_gb_available_by_name: dict[str, dict[int, int]] = {}
        utilization = 0
        utilization_by_name: dict[str, int] = {}
        power_draw = 0
        power_draw_by_name: dict[str, int] = {}

        for record in agents:
            agent = record.agent
            data.agents += 1
            data.agents_by_status[agent.state] = data.agents_by_status.get(agent.state, 0) + 1

            data.sessions += len(agent.sessions)
            for session in agent.sessions:
                data.sessions_by_status[session.state] = (
                    data.sessions_by_status.get(session.state, 0) + 1
                )

            data.gpus += len(agent.gpus)
            for gpu in agent.gpus:
                name = gpu.name
                used = gpu.metrics.vram_used
                data.gpus_by_gpu_name[name] = data.gpus_by_gpu_name.get(name, 0) + 1
                data.vram += gpu.vram
                data.vram_by_gpu_name[name] = data.vram_by_gpu_name.get(name, 0) + gpu.vram
                data.vram_used += used
                data.vram_used_by_gpu_name[name] = data.vram_used_by_gpu_name.get(name, 0) + used

                gb = ((gpu.vram - used) % _UINT64) // _GIB
                vram_gb_available[gb] = vram_gb_available.get(gb, 0) + 1
                per_name = vram_gb_available_by_name.setdefault(name, {})
                per_name[gb] = per_name.get(gb, 0) + 1

                utilization += gpu.metrics.utilization_gpu
                utilization_by_name[name] = (
                    utilization_by_name.get(name, 0) + gpu.metrics.utilization_gpu
                )
                power_draw += gpu.metrics.power_draw
                power_draw_by_name[name] = power_draw_by_name.get(name, 0) + gpu.metrics.power_draw

        if data.gpus > 0:
            data.vram_gb_available = calculate_percentiles(vram_gb_available, data.gpus)
            data.vram_gb_available_by_gpu_name = {
                name: calculate_percentiles(counts, data.gpus_by_gpu_name[name])
                for name, counts in vram_gb_available_by_name.items()
            }
            data.utilization = utilization / data.gpus
            data.utilization_by_gpu_name = {
                name: value / data.gpus for name, value in utilization_by_name.items()
            }
            data.power_draw = power_draw / data.gpus / 1000.0
            data.power_draw_by_gpu_name = {
                name: value / data.gpus / 1000.0 for name, value in power_draw_by_name.items()
            }

        return data

    def register_agent(self, agent: Agent) -> str:
        stored = copy.deepcopy(agent)
        stored.id = str(uuid.uuid4())
        record = _AgentRecord(
            agent=stored,
            vram_available=total_vram(stored.gpus),
            last_updated=self._now(),
        )
        with self._lock:
            self._agents[stored.id] = record
        return stored.id

    def get_agent_by_id(self, id: str) -> Agent:
        with self._lock:
            return copy.deepcopy(self._agent_record(id).agent)

    def update_agent(self, update: AgentUpdate) -> None:
        now = self._now()
        with self._lock:
            record = copy.deepcopy(self._agent_record(update.id))
            agent = record.agent
            if update.state:
                agent.state = update.state
            record.last_updated = now

            if agent.state == AGENT_CLOSED:
                for session_id in record.session_ids:
                    self._sessions.pop(session_id, None)
                del self._agents[agent.id]
                return

            session_ids: list[str] = []
            sessions: list[Session] = []
            changed: dict[str, _SessionRecord] = {}
            for session_id, session in zip(record.session_ids, agent.sessions):
                session_update = update.sessions_update.get(session_id)
                if session_update is None:
                    session_ids.append(session_id)
                    sessions.append(session)
                    continue

                stored = copy.deepcopy(self._session_record(session_id))
                stored.session.state = session_update.state
                stored.last_updated = now
                if stored.session.state == SESSION_CLOSED:
                    record.vram_available += stored.vram_required
                else:
                    session_ids.append(session_id)
                    sessions.append(copy.deepcopy(stored.session))
                changed[session_id] = stored

            if len(update.gpus) > len(agent.gpus):
                raise IndexError(
                    f"update reports {len(update.gpus)} GPUs, agent has {len(agent.gpus)}"
                )
            for gpu, metrics in zip(agent.gpus, update.gpus):
                gpu.metrics = copy.deepcopy(metrics)

            record.session_ids = session_ids
            agent.sessions = sessions

            self._sessions.update(changed)
            self._agents[agent.id] = record

    def request_session(self, requirements: SessionRequirements) -> str:
        session_id = str(uuid.uuid4())
        record = _SessionRecord(
            session=Session(id=session_id, version=requirements.version, state=SESSION_QUEUED),
            requirements=copy.deepcopy(requirements),
            vram_required=total_vram_required(requirements),
            last_updated=self._now(),
        )
        with self._lock:
            self._sessions[session_id] = record
        return session_id

    def assign_session(self, session_id: str, agent_id: str, gpus: list[SessionGpu]) -> None:
        now = self._now()
        with self._lock:
            agent = copy.deepcopy(self._agent_record(agent_id))
            session = copy.deepcopy(self._session_record(session_id))

            session.session.state = SESSION_ASSIGNED
            session.agent_id = agent_id
            session.session.address = agent.agent.address
            session.session.gpus = copy.deepcopy(list(gpus))
            session.last_updated = now

            agent.agent.sessions.append(copy.deepcopy(session.session))
            agent.session_ids.append(session_id)
            agent.vram_available -= session.vram_required
            agent.last_updated = now

            self._sessions[session_id] = session
            self._agents[agent_id] = agent

    def cancel_session(self, session_id: str) -> None:
        with self._lock:
            session = self._session_record(session_id)
            session.session.state = SESSION_CLOSED if not session.agent_id else SESSION_CANCELING

    def get_session_by_id(self, id: str) -> Session:
        with self._lock:
            return copy.deepcopy(self._session_record(id).session)

    def get_queued_session_by_id(self, id: str) -> QueuedSession:
        with self._lock:
            record = self._session_record(id)
            return QueuedSession(
                id=record.session.id, requirements=copy.deepcopy(record.requirements)
            )

    def get_agents(self, pool_id: str) -> Iterator[Agent]:
        with self._lock:
            agents = [
                copy.deepcopy(record.agent)
                for record in self._sorted_agents()
                if record.agent.state == AGENT_ACTIVE
            ]
        return iter(agents)

    def get_available_agents_matching(self, total_available_vram_at_least: int) -> Iterator[Agent]:
        with self._lock:
            agents = [
                copy.deepcopy(record.agent)
                for record in self._sorted_agents()
                if record.agent.state == AGENT_ACTIVE
                and record.vram_available >= total_available_vram_at_least
            ]
        return iter(agents)

    def get_queued_sessions(self) -> Iterator[QueuedSession]:
        with self._lock:
            sessions = [
                QueuedSession(id=key, requirements=copy.deepcopy(record.requirements))
                for key, record in sorted(self._sessions.items())
                if record.session.state == SESSION_QUEUED
            ]
        return iter(sessions)

    def set_agents_missing_if_not_updated_for(self, duration: timedelta | float) -> None:
        now, since = self._since(duration)
        with self._lock:
            for record in self._agents.values():
                if record.last_updated <= since and record.agent.state == AGENT_ACTIVE:
                    record.agent.state = AGENT_MISSING
                    record.last_updated = now

    def remove_missing_agents_if_not_updated_for(self, duration: timedelta | float) -> None:
        _, since = self._since(duration)
        with self._lock:
            stale = [
                key
                for key, record in self._agents.items()
                if record.last_updated <= since and record.agent.state == AGENT_MISSING
            ]
            for key in stale:
                del self._agents[key]

    # -- pools and permissions ---------------------------------------------

    def create_pool(self, name: str) -> Pool:
        pool_id = str(uuid.uuid4())
        with self._lock:
            self._pools[pool_id] = name
        return Pool(id=pool_id, name=name)

    def get_pool(self, id: str) -> Pool:
        with self._lock:
            name = self._pools.get(id)
        if name is None:
            raise NotFoundError()
        return Pool(id=id, name=name)

    def delete_pool(self, id: str) -> None:
        with self._lock:
            self._pools.pop(id, None)
            for key in [key for key in self._permissions if key[0] == id]:
                del self._permissions[key]

    def add_permission(self, pool_id: str, user_id: str, permission: Permission | str) -> None:
        permission = Permission(permission)
        with self._lock:
            if pool_id not in self._pools:
                raise NotFoundError()
            self._permissions[(pool_id, user_id, permission)] = None

    def remove_permission(self, pool_id: str, user_id: str, permission: Permission | str) -> None:
        key = (pool_id, user_id, Permission(permission))
        with self._lock:
            if key not in self._permissions:
                raise NotFoundError("No permission found")
            del self._permissions[key]

    def get_permissions(self, user_id: str) -> UserPermissions:
        result = UserPermissions()
        with self._lock:
            for pool_id, holder, permission in self._permissions:
                if holder != user_id:
                    continue
                active_agents = {
                    key
                    for key, record in self._agents.items()
                    if record.agent.pool_id == pool_id and record.agent.state == AGENT_ACTIVE
                }
                session_count = sum(
                    1
                    for record in self._sessions.values()
                    if record.agent_id in active_agents and record.session.state == SESSION_ACTIVE
                )
                user_count = len({user for pool, user, _ in self._permissions if pool == pool_id})
                if result.permissions is None:
                    result.permissions = {}
                result.permissions.setdefault(permission, []).append(
                    Pool(
                        id=pool_id,
                        name=self._pools[pool_id],
                        session_count=session_count,
                        agent_count=len(active_agents),
                        user_count=user_count,
                    )
                )
        return result

    def get_pool_permissions(self, id: str) -> PoolPermissions:
        result = PoolPermissions()
        with self._lock:
            for pool_id, user_id, permission in self._permissions:
                if pool_id != id:
                    continue
                if result.user_ids is None:
                    result.user_ids = {}
                result.user_ids.setdefault(user_id, []).append(permission)
        return result


def open_storage() -> MemoryStorage:
    """Open a fresh, empty in-memory storage."""
    return MemoryStorage()