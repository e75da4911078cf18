import logging
from collections.abc import Callable
from enum import Enum

from voice_session.domain.session import VoiceSession
from voice_session.domain.state import SessionState, SessionStatus

logger = logging.getLogger(__name__)


class WizardStep(Enum):
    WELCOME = "welcome"
    LOGIN = "login"
    DASHBOARD = "dashboard"
    BASIC_INFO = "basic-info"
    INTERESTS = "interests"
    DISCOVERY = "discovery"
    GENERATING = "generating"
    RESULTS = "results"


VOICE_BLOCKED_STEPS = frozenset({WizardStep.WELCOME, WizardStep.GENERATING})


def voice_allowed(step: WizardStep) -> bool:
    return step not in VOICE_BLOCKED_STEPS


class VoiceToggle:
    """Maps the host's on/off toggle onto session start/stop, honouring the wizard gate."""

    def __init__(self, session: VoiceSession, gate: Callable[[], bool] = lambda: True) -> None:
        self._session = session
        self._gate = gate

    @property
    def session(self) -> VoiceSession:
        return self._session

    @property
    def allowed(self) -> bool:
        return self._gate()

    async def start(self) -> SessionState:
        """Start a new session, resetting a finished one first. Raises when one is already running."""
        if self._session.status.is_terminal:
            await self._session.reset()
        return await self._session.start()

    async def toggle(self) -> SessionState:
        state = self._session.status
        if state.is_busy:
            return await self._session.stop()
        if state.status is SessionStatus.CLOSING:
            logger.info("Toggle ignored while session is closing")
            return state
        if not self.allowed:
            logger.info("Voice session not available at this step")
            return state
        return await self.start()
