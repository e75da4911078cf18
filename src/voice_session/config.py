from pydantic_settings import BaseSettings, SettingsConfigDict

from voice_session.adapters.gemini_live import DEFAULT_ENDPOINT
from voice_session.ports.transport import ConnectOptions


class VoiceSessionConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VOICE_SESSION_")

    api_key: str = ""
    api_key_file: str = ""

    endpoint: str = DEFAULT_ENDPOINT
    model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    response_modalities: list[str] = ["TEXT"]
    connect_timeout_seconds: float = 10.0

    system_prompt: str = (
        "You are EduPath AI. Help the user with career guidance. "
        "Be encouraging and concise."
    )

    capture_device: str = ""
    sample_rate_hz: int = 16000
    frame_sample_count: int = 4096
    outbound_queue_size: int = 8

    socket_path: str = "/tmp/voice-session.sock"
    log_file: str = ""

    def read_secret(self, path: str) -> str:
        if not path:
            return ""
        try:
            with open(path) as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""

    def resolve_api_key(self) -> str:
        return self.api_key or self.read_secret(self.api_key_file)

    def connect_options(self) -> ConnectOptions:
        return ConnectOptions(
            sample_rate_hz=self.sample_rate_hz,
            frame_sample_count=self.frame_sample_count,
            model=self.model,
            system_prompt=self.system_prompt,
        )
