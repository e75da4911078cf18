from dataclasses import dataclass, field
from time import time

from voice_session.domain.errors import ErrorKind


@dataclass(frozen=True)
class DomainEvent:
    timestamp: float = field(default_factory=time)


@dataclass(frozen=True)
class InboundEvent(DomainEvent):
    text_delta: str | None = None
    error: ErrorKind | None = None
    closed: bool = False
    detail: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.error is not None or self.closed


def text_event(text: str) -> InboundEvent:
    return InboundEvent(text_delta=text)


def error_event(kind: ErrorKind, detail: str = "") -> InboundEvent:
    return InboundEvent(error=kind, detail=detail)


def closed_event(detail: str = "") -> InboundEvent:
    return InboundEvent(closed=True, detail=detail)
