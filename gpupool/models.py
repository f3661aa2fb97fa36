"""Persistent state enumerations and their string forms."""

from __future__ import annotations

import enum


class AgentState(enum.IntEnum):
    """Lifecycle state of an agent."""

    UNKNOWN = 0
    ACTIVE = 1
    DISABLED = 2
    MISSING = 3
    CLOSED = 4

    def __str__(self) -> str:
        return self.name.lower()


class SessionState(enum.IntEnum):
    """Lifecycle state of a session."""

    UNKNOWN = 0
    QUEUED = 1
    ASSIGNED = 2
    ACTIVE = 3
    CANCELING = 4
    CLOSED = 5

    def __str__(self) -> str:
        return _SESSION_STATE_NAMES[self]


class ExitStatus(enum.IntEnum):
    """How a session ended."""

    UNKNOWN = 0
    SUCCESS = 1
    FAILURE = 2
    CANCELED = 3

    def __str__(self) -> str:
        return self.name.lower()


class PermissionType(enum.IntEnum):
    """Stored form of a pool permission."""

    UNKNOWN = -1
    CREATE_SESSION = 0
    REGISTER_AGENT = 1
    ADMIN = 2

    def __str__(self) -> str:
        return self.name.lower()


# The stored name of the unknown session state is spelled "uknown".
_SESSION_STATE_NAMES = {
    SessionState.UNKNOWN: "uknown",
    SessionState.QUEUED: "queued",
    SessionState.ASSIGNED: "assigned",
    SessionState.ACTIVE: "active",
    SessionState.CANCELING: "canceling",
    SessionState.CLOSED: "closed",
}

_AGENT_STATES = {str(state): state for state in AgentState}
_SESSION_STATES = {name: state for state, name in _SESSION_STATE_NAMES.items()}
_EXIT_STATUSES = {str(status): status for status in ExitStatus}
_PERMISSION_TYPES = {
    str(permission): permission
    for permission in PermissionType
    if permission is not PermissionType.UNKNOWN
}


def agent_state_from_string(value: str) -> AgentState:
    """Parse an agent state, case-insensitively; unknown text gives UNKNOWN."""
    return _AGENT_STATES.get(value.lower(), AgentState.UNKNOWN)


def session_state_from_string(value: str) -> SessionState:
    """Parse a session state, case-insensitively; unknown text gives UNKNOWN."""
    return _SESSION_STATES.get(value.lower(), SessionState.UNKNOWN)


def exit_status_from_string(value: str) -> ExitStatus:
    """Parse an exit status, case-insensitively; unknown text gives UNKNOWN."""
    return _EXIT_STATUSES.get(value.lower(), ExitStatus.UNKNOWN)


def permission_type_from_string(value: str) -> PermissionType:
    """Parse a permission, case-insensitively; unknown text gives UNKNOWN (-1)."""
    return _PERMISSION_TYPES.get(value.lower(), PermissionType.UNKNOWN)