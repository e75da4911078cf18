from typing import Protocol, AsyncIterator

from voice_session.domain.frames import AudioFrame


class AudioCapturePort(Protocol):
    async def start(self, sample_rate_hz: int, frame_sample_count: int) -> None: ...
    def frames(self) -> AsyncIterator[AudioFrame]: ...
    async def stop(self) -> None: ...

    @property
    def frames_dropped(self) -> int:
        """Frames discarded before reaching ``frames()``, counted since the last ``start``."""
        ...
