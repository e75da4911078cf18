from dataclasses import dataclass
from enum import Enum, auto

from voice_session.domain.errors import ErrorKind


class SessionStatus(Enum):
    IDLE = auto()
    CONNECTING = auto()
    ACTIVE = auto()
    CLOSING = auto()
    CLOSED = auto()
    FAILED = auto()


class Trigger(Enum):
    START = auto()
    CONNECT_SUCCEEDED = auto()
    CONNECT_FAILED = auto()
    CAPTURE_FAILED = auto()
    STOP = auto()
    BACKEND_ERROR = auto()
    BACKEND_CLOSED = auto()
    CLOSE_ACKNOWLEDGED = auto()
    RESET = auto()


TERMINAL_STATUSES = frozenset({SessionStatus.CLOSED, SessionStatus.FAILED})

TRANSITIONS: dict[tuple[SessionStatus, Trigger], SessionStatus] = {
    (SessionStatus.IDLE, Trigger.START): SessionStatus.CONNECTING,
    (SessionStatus.CONNECTING, Trigger.CONNECT_SUCCEEDED): SessionStatus.ACTIVE,
    (SessionStatus.CONNECTING, Trigger.CONNECT_FAILED): SessionStatus.FAILED,
    (SessionStatus.CONNECTING, Trigger.CAPTURE_FAILED): SessionStatus.FAILED,
    (SessionStatus.ACTIVE, Trigger.STOP): SessionStatus.CLOSING,
    (SessionStatus.ACTIVE, Trigger.BACKEND_ERROR): SessionStatus.FAILED,
    (SessionStatus.ACTIVE, Trigger.BACKEND_CLOSED): SessionStatus.CLOSED,
    (SessionStatus.ACTIVE, Trigger.CAPTURE_FAILED): SessionStatus.FAILED,
    (SessionStatus.CLOSING, Trigger.CLOSE_ACKNOWLEDGED): SessionStatus.CLOSED,
    (SessionStatus.CLOSED, Trigger.RESET): SessionStatus.IDLE,
    (SessionStatus.FAILED, Trigger.RESET): SessionStatus.IDLE,
}

FAILURE_REASONS: dict[Trigger, ErrorKind] = {
    Trigger.CONNECT_FAILED: ErrorKind.CONNECT_FAILED,
    Trigger.CAPTURE_FAILED: ErrorKind.CAPTURE_UNAVAILABLE,
    Trigger.BACKEND_ERROR: ErrorKind.BACKEND_ERROR,
}


@dataclass(frozen=True)
class SessionState:
    status: SessionStatus = SessionStatus.IDLE
    reason: ErrorKind | None = None
    detail: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_busy(self) -> bool:
        return self.status in (SessionStatus.CONNECTING, SessionStatus.ACTIVE)

    def __str__(self) -> str:
        if self.reason is None:
            return self.status.name
        return f"{self.status.name}({self.reason.value})"


class InvalidTransitionError(Exception):
    pass


def transition(current: SessionState, trigger: Trigger, detail: str = "") -> SessionState:
    target = TRANSITIONS.get((current.status, trigger))
    if target is None:
        raise InvalidTransitionError(f"Cannot apply {trigger.name} in state {current.status.name}")
    if target is SessionStatus.FAILED:
        return SessionState(status=target, reason=FAILURE_REASONS[trigger], detail=detail)
    return SessionState(status=target)
