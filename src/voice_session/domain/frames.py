import base64
from dataclasses import dataclass
from typing import Protocol

import numpy as np

PCM16_MAX = 32767


@dataclass(frozen=True)
class AudioFrame:
    pcm: bytes
    sample_rate_hz: int
    sequence_number: int

    @property
    def samples(self) -> np.ndarray:
        return np.frombuffer(self.pcm, dtype="<i2")

    @property
    def sample_count(self) -> int:
        return len(self.pcm) // 2

    @property
    def duration_seconds(self) -> float:
        return self.sample_count / self.sample_rate_hz


@dataclass(frozen=True)
class EncodedPayload:
    data: str
    mime_type: str


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Clamp float samples to [-1.0, 1.0] and scale them to little-endian int16 PCM.

    NaN maps to silence so a glitching device cannot produce undefined casts.
    """
    clean = np.nan_to_num(np.asarray(samples, dtype=np.float32), nan=0.0, posinf=1.0, neginf=-1.0)
    clipped = np.clip(clean, -1.0, 1.0)
    return (clipped * PCM16_MAX).astype("<i2").tobytes()


def pcm_mime_type(sample_rate_hz: int) -> str:
    return f"audio/pcm;rate={sample_rate_hz}"


class FrameEncoder(Protocol):
    def encode(self, frame: AudioFrame) -> EncodedPayload: ...


class Base64PcmEncoder:
    def encode(self, frame: AudioFrame) -> EncodedPayload:
        return EncodedPayload(
            data=base64.b64encode(frame.pcm).decode("ascii"),
            mime_type=pcm_mime_type(frame.sample_rate_hz),
        )
