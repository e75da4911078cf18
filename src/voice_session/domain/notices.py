from voice_session.domain.errors import ErrorKind
from voice_session.domain.state import SessionState, SessionStatus

FAILURE_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.CAPTURE_UNAVAILABLE: (
        "Microphone unavailable. Check that microphone access is allowed "
        "and an input device is connected."
    ),
    ErrorKind.CONNECT_FAILED: "Could not reach the voice assistant. Please try again.",
    ErrorKind.BACKEND_ERROR: "Voice assistant disconnected.",
}

STATUS_LABELS: dict[SessionStatus, str] = {
    SessionStatus.IDLE: "Voice Help",
    SessionStatus.CONNECTING: "Connecting...",
    SessionStatus.ACTIVE: "Live Voice On",
    SessionStatus.CLOSING: "Stopping...",
    SessionStatus.CLOSED: "Voice Help",
    SessionStatus.FAILED: "Voice Help",
}


def failure_notice(state: SessionState) -> str | None:
    """Dismissible message for a failed session, or None when nothing went wrong."""
    if state.status is not SessionStatus.FAILED or state.reason is None:
        return None
    return FAILURE_MESSAGES.get(state.reason, "Voice assistant stopped unexpectedly.")


def status_label(state: SessionState) -> str:
    return STATUS_LABELS[state.status]
