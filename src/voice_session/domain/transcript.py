import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from voice_session.domain.events import InboundEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptEntry:
    text: str
    arrival_order: int


TranscriptObserver = Callable[[list[TranscriptEntry]], None]


class TranscriptAssembler:
    """Append-only transcript of backend text deltas.

    Writes come from the session's inbound listener; reads may come from any
    thread and always receive a copy of the buffer.
    """

    def __init__(self) -> None:
        self._entries: list[TranscriptEntry] = []
        self._lock = threading.Lock()
        self._observers: list[TranscriptObserver] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def subscribe(self, observer: TranscriptObserver) -> None:
        self._observers.append(observer)

    def on_event(self, event: InboundEvent) -> TranscriptEntry | None:
        if not event.text_delta:
            return None
        with self._lock:
            entry = TranscriptEntry(text=event.text_delta, arrival_order=len(self._entries))
            self._entries.append(entry)
            snapshot = list(self._entries)
        logger.info("Transcript: %s", entry.text)
        for observer in self._observers:
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Transcript observer failed")
        return entry

    def current_transcript(self) -> list[TranscriptEntry]:
        with self._lock:
            return list(self._entries)

    def text(self) -> str:
        return "".join(entry.text for entry in self.current_transcript())
