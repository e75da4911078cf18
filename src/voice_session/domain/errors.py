from enum import Enum


class ErrorKind(Enum):
    CAPTURE_UNAVAILABLE = "CaptureUnavailable"
    CONNECT_FAILED = "ConnectFailed"
    BACKEND_ERROR = "BackendError"
    SEND_FAILED = "SendFailed"


class VoiceSessionError(Exception):
    kind: ErrorKind


class CaptureUnavailable(VoiceSessionError):
    """Microphone could not be acquired (permission denied or no device)."""

    kind = ErrorKind.CAPTURE_UNAVAILABLE


class ConnectFailed(VoiceSessionError):
    kind = ErrorKind.CONNECT_FAILED


class BackendError(VoiceSessionError):
    kind = ErrorKind.BACKEND_ERROR


class SendFailed(VoiceSessionError):
    kind = ErrorKind.SEND_FAILED
