import asyncio
import json
import logging
import os
from pathlib import Path

from voice_session.ports.control import CommandHandler, ControlCommand

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/voice-session.sock"
REQUEST_TIMEOUT_SECONDS = 5.0


def encode_message(message: dict) -> bytes:
    return (json.dumps(message) + "\n").encode()


def decode_message(raw: bytes) -> dict:
    message = json.loads(raw.decode().strip())
    if not isinstance(message, dict):
        raise ValueError(f"expected a JSON object, got {type(message).__name__}")
    return message


class UnixSocketControlServer:
    """One JSON line in, one JSON line out, per connection.

    Requests are ``{"action": ..., "payload": {...}}``; the reply is whatever the
    command handler returns, or an error object when the request is malformed.
    """

    def __init__(self, handler: CommandHandler, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._handler = handler
        self._socket_path = Path(socket_path)
        self._server: asyncio.Server | None = None

    async def start(self) -> None:
        # A daemon that crashed leaves its socket file behind.
        self._socket_path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(self._serve, path=str(self._socket_path))
        os.chmod(self._socket_path, 0o600)
        logger.info("Control socket listening at %s", self._socket_path)

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()
        self._socket_path.unlink(missing_ok=True)

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=REQUEST_TIMEOUT_SECONDS)
            if not raw:
                return
            reply = await self._dispatch(raw)
            writer.write(encode_message(reply))
            await writer.drain()
        except asyncio.TimeoutError:
            logger.warning("Control client sent nothing within %.0fs", REQUEST_TIMEOUT_SECONDS)
        except ConnectionError as exc:
            logger.debug("Control client went away: %s", exc)
        finally:
            writer.close()
            await writer.wait_closed()

    async def _dispatch(self, raw: bytes) -> dict:
        try:
            request = decode_message(raw)
        except ValueError as exc:
            logger.warning("Malformed control request: %s", exc)
            return {"status": "error", "error": "malformed request"}

        command = ControlCommand(action=str(request.get("action", "")), payload=request.get("payload"))
        logger.debug("Control command: %s", command.action)
        try:
            return await self._handler(command)
        except Exception as exc:
            logger.exception("Control command %s failed", command.action)
            return {"status": "error", "action": command.action, "error": str(exc)}


class UnixSocketControlClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH, reply_timeout_seconds: float = 15.0) -> None:
        self._socket_path = socket_path
        self._reply_timeout_seconds = reply_timeout_seconds

    async def send_command(self, action: str, payload: dict | None = None) -> dict:
        request: dict = {"action": action}
        if payload:
            request["payload"] = payload

        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        try:
            writer.write(encode_message(request))
            await writer.drain()
            raw = await asyncio.wait_for(reader.readline(), timeout=self._reply_timeout_seconds)
            return decode_message(raw)
        finally:
            writer.close()
            await writer.wait_closed()
