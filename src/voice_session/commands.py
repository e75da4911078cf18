import logging

from voice_session.domain.notices import failure_notice, status_label
from voice_session.domain.state import InvalidTransitionError
from voice_session.domain.toggle import VoiceToggle
from voice_session.ports.control import ControlCommand

logger = logging.getLogger(__name__)


class SessionCommands:
    """Answers control-socket commands against one voice toggle."""

    def __init__(self, toggle: VoiceToggle) -> None:
        self._toggle = toggle

    async def __call__(self, command: ControlCommand) -> dict:
        session = self._toggle.session
        try:
            if command.action == "toggle":
                await self._toggle.toggle()
            elif command.action == "start":
                if not self._toggle.allowed:
                    return {"status": "error", "action": command.action, "error": "voice is not available right now"}
                await self._toggle.start()
            elif command.action == "stop":
                await session.stop()
            elif command.action == "transcript":
                return {
                    "status": "ok",
                    "action": command.action,
                    "entries": [entry.text for entry in session.transcript()],
                    "text": session.transcript_text(),
                }
            elif command.action != "status":
                return {"status": "error", "action": command.action, "error": "unknown command"}
        except InvalidTransitionError as exc:
            logger.warning("Rejected %s: %s", command.action, exc)
            return {"status": "error", "action": command.action, "error": str(exc)}

        return self._describe(command.action)

    def _describe(self, action: str) -> dict:
        session = self._toggle.session
        state = session.status
        response = {
            "status": "ok",
            "action": action,
            "session": str(state),
            "label": status_label(state),
            "frames_sent": session.frames_sent,
            "frames_dropped": session.frames_dropped,
        }
        notice = failure_notice(state)
        if notice:
            response["notice"] = notice
        return response
