import asyncio
import logging
from collections.abc import AsyncIterator

import janus
import numpy as np
import sounddevice as sd

from voice_session.domain.errors import CaptureUnavailable
from voice_session.domain.frames import AudioFrame, float_to_pcm16

logger = logging.getLogger(__name__)


class SounddeviceCapture:
    """Microphone capture on a PortAudio callback thread.

    The device delivers one block of ``frame_sample_count`` samples per tick;
    each block becomes an ``AudioFrame`` handed to asyncio through a bounded
    janus queue that drops the oldest frame when the consumer falls behind.
    """

    def __init__(self, device: str | int | None = None, queue_size: int = 8) -> None:
        self._device = device
        self._queue_size = queue_size
        self._stream: sd.InputStream | None = None
        self._queue: janus.Queue[AudioFrame] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._sample_rate_hz = 16000
        self._sequence = 0
        self._dropped = 0
        self._stopping = False
        self._lost = False

    @property
    def running(self) -> bool:
        return self._stream is not None

    @property
    def frames_dropped(self) -> int:
        return self._dropped

    async def start(self, sample_rate_hz: int, frame_sample_count: int) -> None:
        if self._stream is not None:
            raise RuntimeError("Audio capture already started")

        self._loop = asyncio.get_running_loop()
        self._queue = janus.Queue(maxsize=self._queue_size)
        self._sample_rate_hz = sample_rate_hz
        self._sequence = 0
        self._dropped = 0
        self._stopping = False
        self._lost = False

        try:
            device = self._resolve_device()
            stream = sd.InputStream(
                device=device,
                samplerate=sample_rate_hz,
                channels=1,
                dtype="float32",
                blocksize=frame_sample_count,
                callback=self._audio_callback,
                finished_callback=self._finished_callback,
            )
            try:
                stream.start()
            except BaseException:
                self._stopping = True
                stream.close()
                raise
        except (sd.PortAudioError, ValueError) as exc:
            await self._close_queue()
            raise CaptureUnavailable(f"Cannot open input device {self._device!r}: {exc}") from exc

        self._stream = stream
        logger.info(
            "Audio capture started (device=%s, rate=%d, frame=%d samples, cadence=%.0fms)",
            device, sample_rate_hz, frame_sample_count,
            1000 * frame_sample_count / sample_rate_hz,
        )

    async def stop(self) -> None:
        self._stopping = True
        if self._stream is not None:
            stream = self._stream
            self._stream = None
            stream.stop()
            stream.close()
            logger.info(
                "Audio capture stopped (%d frames, %d dropped)", self._sequence, self._dropped,
            )
        await self._close_queue()

    async def frames(self) -> AsyncIterator[AudioFrame]:
        queue = self._queue
        if queue is None:
            return
        while True:
            try:
                frame = await queue.async_q.get()
            except janus.AsyncQueueShutDown:
                break
            yield frame
        if self._lost:
            raise CaptureUnavailable("Input stream ended unexpectedly")

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.warning("Audio capture status: %s", status)
        frame = AudioFrame(
            pcm=float_to_pcm16(indata[:, 0]),
            sample_rate_hz=self._sample_rate_hz,
            sequence_number=self._sequence,
        )
        self._sequence += 1

        queue = self._queue
        if queue is None:
            return
        try:
            queue.sync_q.put_nowait(frame)
        except janus.SyncQueueFull:
            self._drop_oldest(queue, frame)
        except janus.SyncQueueShutDown:
            pass

    def _drop_oldest(self, queue: janus.Queue[AudioFrame], frame: AudioFrame) -> None:
        try:
            queue.sync_q.get_nowait()
            self._dropped += 1
            queue.sync_q.put_nowait(frame)
        except (janus.SyncQueueEmpty, janus.SyncQueueFull):
            self._dropped += 1
        except janus.SyncQueueShutDown:
            pass

    def _finished_callback(self) -> None:
        if self._stopping or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._on_stream_lost)

    def _on_stream_lost(self) -> None:
        if self._stopping or self._queue is None:
            return
        logger.error("Input stream finished while capture was running")
        self._lost = True
        self._queue.close()

    async def _close_queue(self) -> None:
        if self._queue is not None:
            queue = self._queue
            self._queue = None
            queue.close()
            await queue.wait_closed()

    def _resolve_device(self) -> str | int | None:
        if self._device is None or self._device == "":
            return None
        if isinstance(self._device, int):
            return self._device
        try:
            return int(self._device)
        except ValueError:
            pass
        for i, dev in enumerate(sd.query_devices()):
            if self._device.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                logger.info("Resolved device '%s' -> %d (%s)", self._device, i, dev["name"])
                return i
        raise ValueError(f"no input device matching '{self._device}'")
