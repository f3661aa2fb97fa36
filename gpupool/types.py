"""Core data types shared by the storage back ends."""

from __future__ import annotations

import abc
import enum
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import timedelta

AGENT_ACTIVE = "active"
AGENT_DISABLED = "disabled"
AGENT_MISSING = "missing"
AGENT_CLOSED = "closed"

SESSION_QUEUED = "queued"
SESSION_ASSIGNED = "assigned"
SESSION_ACTIVE = "active"
SESSION_CANCELING = "canceling"
SESSION_CLOSED = "closed"


class Permission(str, enum.Enum):
    """A permission a user may hold on a pool."""

    CREATE_SESSION = "create_session"
    REGISTER_AGENT = "register_agent"
    ADMIN = "admin"

    def __str__(self) -> str:
        return self.value


@dataclass
class GpuMetrics:
    """Live measurements reported for one GPU."""

    vram_used: int = 0
    utilization_gpu: int = 0
    power_draw: int = 0


@dataclass
class Gpu:
    """A GPU installed on an agent."""

    index: int = 0
    name: str = ""
    vendor_id: int = 0
    device_id: int = 0
    sub_device_id: int = 0
    vram: int = 0
    metrics: GpuMetrics = field(default_factory=GpuMetrics)


@dataclass
class SessionGpu:
    """A GPU selected for a session and the VRAM reserved on it."""

    index: int = 0
    vram_required: int = 0


@dataclass
class GpuRequirements:
    """What a session needs from one GPU."""

    vram_required: int = 0


@dataclass
class SessionRequirements:
    """Everything a queued session asks for."""

    version: str = ""
    gpus: list[GpuRequirements] = field(default_factory=list)
    match_labels: dict[str, str] = field(default_factory=dict)
    tolerates: dict[str, str] = field(default_factory=dict)
    pool_id: str = ""


@dataclass
class Connection:
    """A client process connected to a session."""

    id: str = ""
    pid: str = ""
    process_name: str = ""
    exit_code: int = 0


@dataclass
class Session:
    """A session as seen by clients."""

    id: str = ""
    state: str = ""
    address: str = ""
    version: str = ""
    pool_id: str = ""
    gpus: list[SessionGpu] | None = None
    connections: list[Connection] | None = None


@dataclass
class SessionUpdate:
    """A change to one session reported by its agent."""

    state: str = ""
    connections: list[Connection] = field(default_factory=list)


@dataclass
class Agent:
    """A machine offering GPUs to sessions."""

    id: str = ""
    state: str = ""
    hostname: str = ""
    address: str = ""
    version: str = ""
    gpus: list[Gpu] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    taints: dict[str, str] = field(default_factory=dict)
    sessions: list[Session] = field(default_factory=list)
    pool_id: str = ""


@dataclass
class AgentUpdate:
    """A periodic status report from an agent."""

    id: str = ""
    state: str = ""
    gpus: list[GpuMetrics] = field(default_factory=list)
    sessions_update: dict[str, SessionUpdate] = field(default_factory=dict)


@dataclass
class Pool:
    """A named group of agents and the counts attached to it."""

    id: str = ""
    name: str = ""
    session_count: int = 0
    agent_count: int = 0
    user_count: int = 0


@dataclass
class PoolPermissions:
    """Permissions held on one pool, keyed by user id."""

    user_ids: dict[str, list[Permission]] | None = None


@dataclass
class UserPermissions:
    """Pools a user can reach, grouped by permission."""

    permissions: dict[Permission, list[Pool]] | None = None


@dataclass
class Percentile:
    """Nearest-rank percentiles of a distribution."""

    p100: int = 0
    p90: int = 0
    p75: int = 0
    p50: int = 0
    p25: int = 0
    p10: int = 0


@dataclass
class AggregatedData:
    """Totals over all agents, sessions and GPUs."""

    agents: int = 0
    agents_by_status: dict[str, int] = field(default_factory=dict)
    sessions: int = 0
    sessions_by_status: dict[str, int] = field(default_factory=dict)
    gpus: int = 0
    gpus_by_gpu_name: dict[str, int] = field(default_factory=dict)
    vram: int = 0
    vram_by_gpu_name: dict[str, int] = field(default_factory=dict)
    vram_used: int = 0
    vram_used_by_gpu_name: dict[str, int] = field(default_factory=dict)
    vram_gb_available: Percentile = field(default_factory=Percentile)
    vram_gb_available_by_gpu_name: dict[str, Percentile] = field(default_factory=dict)
    utilization: float = 0.0
    utilization_by_gpu_name: dict[str, float] = field(default_factory=dict)
    power_draw: float = 0.0
    power_draw_by_gpu_name: dict[str, float] = field(default_factory=dict)


@dataclass
class QueuedSession:
    """A session waiting for an agent, with its requirements."""

    id: str = ""
    requirements: SessionRequirements = field(default_factory=SessionRequirements)


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, message: str = "object not found") -> None:
        super().__init__(message)


def total_vram(gpus: Iterable[Gpu]) -> int:
    """Sum of the VRAM of the given GPUs."""
    return sum(gpu.vram for gpu in gpus)


def total_vram_required(requirements: SessionRequirements) -> int:
    """Sum of the VRAM a session asks for over all its GPUs."""
    return sum(gpu.vram_required for gpu in requirements.gpus)


class Storage(abc.ABC):
    """Interface every storage back end provides."""

    def close(self) -> None:
        """Release resources held by the storage."""

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @abc.abstractmethod
    def aggregate_data(self) -> AggregatedData:
        """Compute totals over the stored agents and sessions."""

    @abc.abstractmethod
    def register_agent(self, agent: Agent) -> str:
        """Store a new agent and return its id."""

    @abc.abstractmethod
    def get_agent_by_id(self, id: str) -> Agent:
        """Return the agent with the given id or raise NotFoundError."""

    @abc.abstractmethod
    def update_agent(self, update: AgentUpdate) -> None:
        """Apply a status report from an agent."""

    @abc.abstractmethod
    def request_session(self, requirements: SessionRequirements) -> str:
        """Queue a new session and return its id."""

    @abc.abstractmethod
    def assign_session(self, session_id: str, agent_id: str, gpus: list[SessionGpu]) -> None:
        """Assign a queued session to an agent."""

    @abc.abstractmethod
    def cancel_session(self, session_id: str) -> None:
        """Cancel a session."""

    @abc.abstractmethod
    def get_session_by_id(self, id: str) -> Session:
        """Return the session with the given id or raise NotFoundError."""

    @abc.abstractmethod
    def get_queued_session_by_id(self, id: str) -> QueuedSession:
        """Return the queued session with the given id or raise NotFoundError."""

    @abc.abstractmethod
    def get_agents(self, pool_id: str) -> Iterator[Agent]:
        """Iterate over active agents, optionally limited to one pool."""

    @abc.abstractmethod
    def get_available_agents_matching(self, total_available_vram_at_least: int) -> Iterator[Agent]:
        """Iterate over active agents with at least the given free VRAM."""

    @abc.abstractmethod
    def get_queued_sessions(self) -> Iterator[QueuedSession]:
        """Iterate over queued sessions."""

    @abc.abstractmethod
    def set_agents_missing_if_not_updated_for(self, duration: timedelta) -> None:
        """Mark active agents silent for the duration as missing."""

    @abc.abstractmethod
    def remove_missing_agents_if_not_updated_for(self, duration: timedelta) -> None:
        """Remove missing agents silent for the duration."""

    @abc.abstractmethod
    def create_pool(self, name: str) -> Pool:
        """Create a pool with the given name."""

    @abc.abstractmethod
    def get_pool(self, id: str) -> Pool:
        """Return the pool with the given id."""

    @abc.abstractmethod
    def get_pool_permissions(self, id: str) -> PoolPermissions:
        """Return the permissions held on a pool."""

    @abc.abstractmethod
    def delete_pool(self, id: str) -> None:
        """Delete a pool."""

    @abc.abstractmethod
    def remove_permission(self, pool_id: str, user_id: str, permission: Permission) -> None:
        """Take a permission on a pool away from a user."""

    @abc.abstractmethod
    def add_permission(self, pool_id: str, user_id: str, permission: Permission) -> None:
        """Grant a user a permission on a pool."""

    @abc.abstractmethod
    def get_permissions(self, user_id: str) -> UserPermissions:
        """Return the pools a user can reach, grouped by permission."""