import asyncio
import json
import logging
from collections.abc import AsyncIterator

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from voice_session.domain.errors import ConnectFailed, ErrorKind, SendFailed
from voice_session.domain.events import InboundEvent, closed_event, error_event, text_event
from voice_session.domain.frames import EncodedPayload
from voice_session.ports.transport import ConnectOptions

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


def build_setup_message(options: ConnectOptions, response_modalities: list[str]) -> dict:
    model = options.model if options.model.startswith("models/") else f"models/{options.model}"
    setup: dict = {
        "model": model,
        "generationConfig": {"responseModalities": response_modalities},
    }
    if options.system_prompt:
        setup["systemInstruction"] = {"parts": [{"text": options.system_prompt}]}
    return {"setup": setup}


def build_audio_message(payload: EncodedPayload) -> dict:
    return {"realtimeInput": {"audio": {"mimeType": payload.mime_type, "data": payload.data}}}


def parse_server_message(raw: str | bytes) -> list[InboundEvent]:
    """Turn one Live API server message into inbound events, in part order.

    Every text part of a model turn becomes its own delta; audio parts are
    ignored since only the textual reply is assembled.
    """
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.warning("Unparseable server message: %s", exc)
        return []
    if not isinstance(message, dict):
        return []

    if "error" in message:
        error = message["error"]
        detail = error.get("message", "") if isinstance(error, dict) else str(error)
        return [error_event(ErrorKind.BACKEND_ERROR, detail)]

    events: list[InboundEvent] = []
    content = _object(message, "serverContent")
    parts = _object(content, "modelTurn").get("parts")
    if not isinstance(parts, list):
        parts = []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text:
            events.append(text_event(text))
        elif not isinstance(part, dict):
            logger.warning("Skipping malformed model turn part: %r", part)
    transcription = _object(content, "outputTranscription").get("text")
    if isinstance(transcription, str) and transcription:
        events.append(text_event(transcription))

    if "goAway" in message:
        logger.warning("Server will close the session soon: %s", message["goAway"])
    return events


def _object(message: dict, key: str) -> dict:
    value = message.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        logger.warning("Ignoring malformed %s: %r", key, value)
        return {}
    return value


class GeminiLiveTransport:
    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        response_modalities: list[str] | None = None,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._response_modalities = response_modalities or ["TEXT"]
        self._connect_timeout_seconds = connect_timeout_seconds
        self._ws = None
        self._events: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._receiver_task: asyncio.Task | None = None
        self._terminated = False
        self._send_failures = 0

    @property
    def send_failures(self) -> int:
        return self._send_failures

    async def connect(self, options: ConnectOptions) -> None:
        if not self._api_key:
            raise ConnectFailed("No API key configured")

        self._events = asyncio.Queue()
        self._terminated = False
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(
                    self._endpoint,
                    additional_headers={"x-goog-api-key": self._api_key},
                    max_size=None,
                ),
                timeout=self._connect_timeout_seconds,
            )
            await self._ws.send(json.dumps(build_setup_message(options, self._response_modalities)))
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self._connect_timeout_seconds)
            reply = json.loads(raw)
        except (OSError, WebSocketException, asyncio.TimeoutError, ValueError) as exc:
            await self._abort()
            raise ConnectFailed(f"Could not open Live session: {exc!r}") from exc

        if not isinstance(reply, dict) or "setupComplete" not in reply:
            await self._abort()
            raise ConnectFailed(f"Unexpected setup reply: {reply}")

        self._receiver_task = asyncio.create_task(self._receive_loop(), name="gemini-live-receiver")
        logger.info("Live session open (model=%s)", options.model)

    async def send(self, payload: EncodedPayload) -> None:
        if self._ws is None or self._terminated:
            return
        try:
            await self._send_json(build_audio_message(payload))
        except SendFailed as exc:
            self._send_failures += 1
            logger.warning("%s: %s", ErrorKind.SEND_FAILED.value, exc)

    async def events(self) -> AsyncIterator[InboundEvent]:
        while True:
            event = await self._events.get()
            yield event
            if event.is_terminal:
                return

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if self._receiver_task is not None and self._receiver_task is not asyncio.current_task():
            self._receiver_task.cancel()
            try:
                await self._receiver_task
            except asyncio.CancelledError:
                pass
        self._receiver_task = None
        if ws is not None:
            await ws.close()
            logger.info("Live session closed")
        self._emit_terminal(closed_event("closed by client"))

    async def _send_json(self, message: dict) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise SendFailed(f"connection closed ({exc.rcvd.code if exc.rcvd else 'no close frame'})") from exc
        except (OSError, WebSocketException) as exc:
            raise SendFailed(str(exc)) from exc

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                for event in parse_server_message(raw):
                    if event.is_terminal:
                        self._emit_terminal(event)
                        return
                    self._events.put_nowait(event)
        except ConnectionClosedOK:
            self._emit_terminal(closed_event("closed by server"))
        except ConnectionClosed as exc:
            reason = exc.rcvd.reason if exc.rcvd else "connection lost"
            logger.error("Live session dropped: %s", reason)
            self._emit_terminal(error_event(ErrorKind.BACKEND_ERROR, reason))
        except (OSError, WebSocketException) as exc:
            logger.error("Live session failed: %r", exc)
            self._emit_terminal(error_event(ErrorKind.BACKEND_ERROR, str(exc)))
        except Exception as exc:
            logger.exception("Live session receiver crashed")
            self._emit_terminal(error_event(ErrorKind.BACKEND_ERROR, f"receiver crashed: {exc!r}"))
        else:
            self._emit_terminal(closed_event("closed by server"))

    def _emit_terminal(self, event: InboundEvent) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._events.put_nowait(event)

    async def _abort(self) -> None:
        if self._ws is not None:
            ws = self._ws
            self._ws = None
            await ws.close()
