import asyncio
import contextlib
import logging
from collections.abc import Callable

from voice_session.domain.errors import CaptureUnavailable, ConnectFailed, ErrorKind
from voice_session.domain.events import InboundEvent, closed_event, error_event
from voice_session.domain.frames import Base64PcmEncoder, EncodedPayload, FrameEncoder
from voice_session.domain.outbound import DropOldestQueue
from voice_session.domain.state import SessionState, SessionStatus, Trigger, transition
from voice_session.domain.transcript import TranscriptAssembler, TranscriptEntry, TranscriptObserver
from voice_session.ports.capture import AudioCapturePort
from voice_session.ports.transport import ConnectOptions, SessionTransportPort

logger = logging.getLogger(__name__)

StateObserver = Callable[[SessionState], None]


class VoiceSession:
    """Owns one voice session: the state machine, the capture device and the transport.

    All state changes go through ``_apply``, which also runs the side effects
    tied to entering ACTIVE, leaving ACTIVE and reaching a terminal state.
    """

    def __init__(
        self,
        capture: AudioCapturePort,
        transport: SessionTransportPort,
        options: ConnectOptions,
        encoder: FrameEncoder | None = None,
        outbound_queue_size: int = 8,
    ) -> None:
        self._capture = capture
        self._transport = transport
        self._options = options
        self._encoder = encoder or Base64PcmEncoder()
        self._outbound_queue_size = outbound_queue_size

        self._state = SessionState()
        self._assembler = TranscriptAssembler()
        self._state_observers: list[StateObserver] = []
        self._transcript_observers: list[TranscriptObserver] = []

        self._outbound: DropOldestQueue[EncodedPayload] | None = None
        self._capture_task: asyncio.Task | None = None
        self._sender_task: asyncio.Task | None = None
        self._listener_task: asyncio.Task | None = None
        self._capture_acquired = False
        self._last_sequence = -1
        self._frames_captured = 0
        self._frames_sent = 0
        self._frames_dropped = 0

        self._stop_lock = asyncio.Lock()
        self._connect_settled = asyncio.Event()
        self._connect_settled.set()

    @property
    def status(self) -> SessionState:
        return self._state

    @property
    def options(self) -> ConnectOptions:
        return self._options

    @property
    def frames_captured(self) -> int:
        return self._frames_captured

    @property
    def frames_sent(self) -> int:
        return self._frames_sent

    @property
    def frames_dropped(self) -> int:
        dropped = self._frames_dropped
        if self._outbound is not None:
            dropped += self._outbound.dropped
        if self._capture_acquired:
            dropped += self._capture.frames_dropped
        return dropped

    def transcript(self) -> list[TranscriptEntry]:
        return self._assembler.current_transcript()

    def transcript_text(self) -> str:
        return self._assembler.text()

    def subscribe(self, observer: StateObserver) -> None:
        self._state_observers.append(observer)

    def subscribe_transcript(self, observer: TranscriptObserver) -> None:
        self._transcript_observers.append(observer)
        self._assembler.subscribe(observer)

    async def start(self) -> SessionState:
        await self._apply(Trigger.START)
        self._connect_settled.clear()
        try:
            await self._connect_and_acquire()
        finally:
            self._connect_settled.set()
        return self._state

    async def stop(self) -> SessionState:
        async with self._stop_lock:
            if self._state.status is SessionStatus.CONNECTING:
                logger.info("Stop requested while connecting, waiting for connect to settle")
                await self._connect_settled.wait()
            if self._state.status is not SessionStatus.ACTIVE:
                return self._state

            await self._apply(Trigger.STOP)
            await self._cancel_task(self._sender_task)
            self._sender_task = None
            try:
                await self._transport.close()
            finally:
                if self._state.status is SessionStatus.CLOSING:
                    await self._apply(Trigger.CLOSE_ACKNOWLEDGED)
            return self._state

    async def reset(self) -> SessionState:
        await self._apply(Trigger.RESET)
        self._assembler = TranscriptAssembler()
        for observer in self._transcript_observers:
            self._assembler.subscribe(observer)
        self._outbound = None
        self._last_sequence = -1
        self._frames_captured = 0
        self._frames_sent = 0
        self._frames_dropped = 0
        return self._state

    async def _connect_and_acquire(self) -> None:
        try:
            await self._transport.connect(self._options)
        except ConnectFailed as exc:
            logger.error("Connect failed: %s", exc)
            await self._apply(Trigger.CONNECT_FAILED, str(exc))
            return
        except asyncio.CancelledError:
            await self._apply(Trigger.CONNECT_FAILED, "connect cancelled")
            raise
        except Exception as exc:
            logger.exception("Unexpected error while connecting")
            await self._apply(Trigger.CONNECT_FAILED, str(exc))
            return

        try:
            await self._capture.start(self._options.sample_rate_hz, self._options.frame_sample_count)
        except CaptureUnavailable as exc:
            logger.error("Capture unavailable: %s", exc)
            await self._apply(Trigger.CAPTURE_FAILED, str(exc))
            return
        except asyncio.CancelledError:
            await self._apply(Trigger.CAPTURE_FAILED, "capture start cancelled")
            raise
        except Exception as exc:
            logger.exception("Unexpected error while starting capture")
            await self._apply(Trigger.CAPTURE_FAILED, str(exc))
            return

        self._capture_acquired = True
        await self._apply(Trigger.CONNECT_SUCCEEDED)

    async def _apply(self, trigger: Trigger, detail: str = "") -> None:
        previous = self._state
        self._state = transition(previous, trigger, detail)
        logger.info("State: %s -> %s", previous, self._state)

        if self._state.status is SessionStatus.ACTIVE:
            self._arm()
        if previous.status is SessionStatus.ACTIVE:
            await self._stop_capture()
        if self._state.is_terminal:
            await self._release()

        for observer in self._state_observers:
            try:
                observer(self._state)
            except Exception:
                logger.exception("State observer failed")

    def _arm(self) -> None:
        self._outbound = DropOldestQueue(maxsize=self._outbound_queue_size)
        self._last_sequence = -1
        self._capture_task = asyncio.create_task(self._pump_capture(), name="voice-capture")
        self._sender_task = asyncio.create_task(self._drain_outbound(), name="voice-sender")
        self._listener_task = asyncio.create_task(self._listen(), name="voice-inbound")

    async def _stop_capture(self) -> None:
        await self._cancel_task(self._capture_task)
        self._capture_task = None
        if self._capture_acquired:
            self._capture_acquired = False
            await self._capture.stop()
            self._frames_dropped += self._capture.frames_dropped
            logger.info("Capture released after %d frames", self._frames_captured)

    async def _release(self) -> None:
        await self._stop_capture()
        await self._cancel_task(self._sender_task)
        self._sender_task = None
        if self._outbound is not None:
            self._frames_dropped += self._outbound.dropped + self._outbound.clear()
            self._outbound = None
        await self._transport.close()
        await self._cancel_task(self._listener_task)
        self._listener_task = None

    async def _pump_capture(self) -> None:
        try:
            async for frame in self._capture.frames():
                if frame.sequence_number <= self._last_sequence:
                    logger.error(
                        "Out-of-order frame %d after %d, dropped",
                        frame.sequence_number, self._last_sequence,
                    )
                    continue
                self._last_sequence = frame.sequence_number
                self._frames_captured += 1
                self._outbound.put(self._encoder.encode(frame))
        except CaptureUnavailable as exc:
            logger.error("Capture lost: %s", exc)
            if self._state.status is SessionStatus.ACTIVE:
                await self._apply(Trigger.CAPTURE_FAILED, str(exc))

    async def _drain_outbound(self) -> None:
        outbound = self._outbound
        while True:
            payload = await outbound.get()
            await self._transport.send(payload)
            self._frames_sent += 1

    async def _listen(self) -> None:
        try:
            async for event in self._transport.events():
                if event.text_delta:
                    self._assembler.on_event(event)
                if event.is_terminal:
                    await self._on_terminal_event(event)
                    return
        except Exception as exc:
            logger.exception("Inbound stream failed")
            await self._on_terminal_event(error_event(ErrorKind.BACKEND_ERROR, str(exc)))
            return
        await self._on_terminal_event(closed_event("inbound stream ended"))

    async def _on_terminal_event(self, event: InboundEvent) -> None:
        if self._state.status is not SessionStatus.ACTIVE:
            logger.debug("Ignoring terminal event in state %s", self._state)
            return
        if event.error is not None:
            logger.error("Backend error: %s", event.detail or event.error.value)
            await self._apply(Trigger.BACKEND_ERROR, event.detail)
        else:
            logger.info("Backend closed the session")
            await self._apply(Trigger.BACKEND_CLOSED, event.detail)

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
