import logging

from voice_session.config import VoiceSessionConfig
from voice_session.domain.frames import Base64PcmEncoder
from voice_session.domain.session import VoiceSession
from voice_session.ports.capture import AudioCapturePort
from voice_session.ports.transport import SessionTransportPort

logger = logging.getLogger(__name__)


def create_capture(config: VoiceSessionConfig) -> AudioCapturePort:
    from voice_session.adapters.sounddevice_capture import SounddeviceCapture

    return SounddeviceCapture(
        device=config.capture_device or None,
        queue_size=config.outbound_queue_size,
    )


def create_transport(config: VoiceSessionConfig) -> SessionTransportPort:
    from voice_session.adapters.gemini_live import GeminiLiveTransport

    return GeminiLiveTransport(
        api_key=config.resolve_api_key(),
        endpoint=config.endpoint,
        response_modalities=config.response_modalities,
        connect_timeout_seconds=config.connect_timeout_seconds,
    )


def create_session(
    config: VoiceSessionConfig,
    capture: AudioCapturePort | None = None,
    transport: SessionTransportPort | None = None,
) -> VoiceSession:
    session = VoiceSession(
        capture=capture or create_capture(config),
        transport=transport or create_transport(config),
        options=config.connect_options(),
        encoder=Base64PcmEncoder(),
        outbound_queue_size=config.outbound_queue_size,
    )
    logger.debug(
        "Session created (model=%s, rate=%d, frame=%d)",
        config.model, config.sample_rate_hz, config.frame_sample_count,
    )
    return session
