import asyncio
from collections.abc import AsyncIterator, Callable

import numpy as np
import pytest

from voice_session.domain.events import InboundEvent, closed_event
from voice_session.domain.frames import AudioFrame, EncodedPayload, float_to_pcm16
from voice_session.domain.session import VoiceSession
from voice_session.ports.transport import ConnectOptions


SAMPLE_RATE = 16000
FRAME_SAMPLE_COUNT = 256


def generate_silence(sample_count: int = FRAME_SAMPLE_COUNT) -> np.ndarray:
    return np.zeros(sample_count, dtype=np.float32)


def generate_sine_wave(
    frequency: float = 440.0,
    sample_count: int = FRAME_SAMPLE_COUNT,
    amplitude: float = 0.8,
    sample_rate: int = SAMPLE_RATE,
) -> np.ndarray:
    t = np.arange(sample_count) / sample_rate
    return (np.sin(2 * np.pi * frequency * t) * amplitude).astype(np.float32)


def make_frame(sequence_number: int, sample_rate: int = SAMPLE_RATE) -> AudioFrame:
    return AudioFrame(
        pcm=float_to_pcm16(generate_sine_wave(frequency=200.0 + sequence_number)),
        sample_rate_hz=sample_rate,
        sequence_number=sequence_number,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


class FakeAudioCapture:
    """Produces ``frame_count`` frames (or forever when None), one every ``interval`` seconds."""

    def __init__(
        self,
        frame_count: int | None = 0,
        interval: float = 0.0,
        fail_with: Exception | None = None,
    ) -> None:
        self._frame_count = frame_count
        self._interval = interval
        self._fail_with = fail_with
        self._running = False
        self.start_calls = 0
        self.stop_calls = 0
        self.ticks = 0
        self.frames_dropped = 0
        self.sample_rate_hz = 0
        self.frame_sample_count = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, sample_rate_hz: int, frame_sample_count: int) -> None:
        if self._fail_with is not None:
            raise self._fail_with
        self.start_calls += 1
        self.sample_rate_hz = sample_rate_hz
        self.frame_sample_count = frame_sample_count
        self._running = True

    async def stop(self) -> None:
        self.stop_calls += 1
        self._running = False

    async def frames(self) -> AsyncIterator[AudioFrame]:
        sequence = 0
        while self._running and (self._frame_count is None or sequence < self._frame_count):
            yield make_frame(sequence, self.sample_rate_hz)
            sequence += 1
            self.ticks += 1
            await asyncio.sleep(self._interval)
        while self._running:
            await asyncio.sleep(0.01)


class FakeTransport:
    def __init__(self, connect_error: Exception | None = None, send_delay: float = 0.0) -> None:
        self._connect_error = connect_error
        self._send_delay = send_delay
        self._events: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._terminated = False
        self.connected = False
        self.connect_calls = 0
        self.close_calls = 0
        self.options: ConnectOptions | None = None
        self.sent: list[EncodedPayload] = []

    async def connect(self, options: ConnectOptions) -> None:
        self.connect_calls += 1
        self.options = options
        self._events = asyncio.Queue()
        self._terminated = False
        if self._connect_error is not None:
            raise self._connect_error
        self.connected = True

    async def send(self, payload: EncodedPayload) -> None:
        if self._terminated:
            return
        if self._send_delay:
            await asyncio.sleep(self._send_delay)
        self.sent.append(payload)

    async def events(self) -> AsyncIterator[InboundEvent]:
        while True:
            event = await self._events.get()
            yield event
            if event.is_terminal:
                return

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False
        self.push(closed_event("closed by client"))

    def push(self, event: InboundEvent) -> None:
        if self._terminated:
            return
        if event.is_terminal:
            self._terminated = True
        self._events.put_nowait(event)


@pytest.fixture
def options():
    return ConnectOptions(
        sample_rate_hz=SAMPLE_RATE,
        frame_sample_count=FRAME_SAMPLE_COUNT,
        model="test-model",
        system_prompt="Be brief.",
    )


@pytest.fixture
def fake_capture():
    return FakeAudioCapture()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def session(fake_capture, fake_transport, options):
    return VoiceSession(capture=fake_capture, transport=fake_transport, options=options)
