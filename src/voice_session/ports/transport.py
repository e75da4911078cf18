from dataclasses import dataclass
from typing import Protocol, AsyncIterator

from voice_session.domain.events import InboundEvent
from voice_session.domain.frames import EncodedPayload


@dataclass(frozen=True)
class ConnectOptions:
    sample_rate_hz: int = 16000
    frame_sample_count: int = 4096
    model: str = ""
    system_prompt: str = ""

    @property
    def cadence_seconds(self) -> float:
        return self.frame_sample_count / self.sample_rate_hz


class SessionTransportPort(Protocol):
    async def connect(self, options: ConnectOptions) -> None: ...
    async def send(self, payload: EncodedPayload) -> None: ...
    def events(self) -> AsyncIterator[InboundEvent]: ...
    async def close(self) -> None: ...
