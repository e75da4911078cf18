import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from voice_session.config import VoiceSessionConfig

ENV_FILE_PATH = Path.home() / ".config" / "voice-session" / "env"
CLIENT_COMMANDS = ("toggle", "start", "stop", "status", "transcript")
SHUTDOWN_TIMEOUT_SECONDS = 3.0

logger = logging.getLogger("voice_session")


def _load_env_file(path: Path = ENV_FILE_PATH) -> None:
    """Export KEY=value lines from the env file; variables already set win."""
    if not path.is_file():
        return
    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        os.environ.setdefault(key, value.strip().strip("'\""))


def _configure_logging(verbose: bool, log_file: str) -> None:
    from voice_session.log_format import ColoredFormatter

    plain = logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s", datefmt="%H:%M:%S")
    console = logging.StreamHandler()
    console.setFormatter(ColoredFormatter(datefmt="%H:%M:%S") if sys.stderr.isatty() else plain)

    handlers: list[logging.Handler] = [console]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(plain)
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, handlers=handlers)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO if verbose else logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voice-session",
        description="Stream the microphone to a live voice assistant and collect its replies",
    )
    parser.add_argument("--model", help="Backend model identifier")
    parser.add_argument("--device", help="Capture device name or index")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.add_parser("toggle", help="Stop the running session, or start a new one")
    subparsers.add_parser("start", help="Start a session on the running daemon")
    subparsers.add_parser("stop", help="Stop the current session")
    subparsers.add_parser("status", help="Show the session state")
    subparsers.add_parser("transcript", help="Print the assembled transcript")
    return parser


def main() -> None:
    _load_env_file()
    args = _build_parser().parse_args()

    config = VoiceSessionConfig()
    if args.model:
        config.model = args.model
    if args.device:
        config.capture_device = args.device

    _configure_logging(args.verbose, config.log_file)

    if args.command in CLIENT_COMMANDS:
        sys.exit(asyncio.run(_run_client_command(args.command, config)))
    asyncio.run(_run_daemon(config))


async def _run_client_command(command: str, config: VoiceSessionConfig) -> int:
    from voice_session.adapters.unix_control import UnixSocketControlClient

    try:
        result = await UnixSocketControlClient(socket_path=config.socket_path).send_command(command)
    except (ConnectionRefusedError, FileNotFoundError):
        print(f"No voice session daemon listening on {config.socket_path}", file=sys.stderr)
        return 1

    if command == "transcript" and result.get("status") == "ok":
        print(result.get("text", ""))
    else:
        print(json.dumps(result, indent=2))
    return 0 if result.get("status") == "ok" else 1


async def _run_daemon(config: VoiceSessionConfig) -> None:
    from voice_session.adapters.unix_control import UnixSocketControlServer
    from voice_session.commands import SessionCommands
    from voice_session.domain.notices import failure_notice
    from voice_session.domain.toggle import VoiceToggle
    from voice_session.factory import create_session
    from voice_session.health import has_critical_failures, run_startup_checks

    if has_critical_failures(run_startup_checks(config)):
        logger.error("Startup checks failed, not starting the daemon")
        sys.exit(1)

    session = create_session(config)

    def report_failure(state) -> None:
        notice = failure_notice(state)
        if notice:
            logger.warning("%s (%s)", notice, state.detail or state.reason.value)

    session.subscribe(report_failure)
    control = UnixSocketControlServer(SessionCommands(VoiceToggle(session)), socket_path=config.socket_path)

    shutdown_requested = asyncio.Event()

    def on_signal(signum: int) -> None:
        if shutdown_requested.is_set():
            logger.warning("Second %s, exiting immediately", signal.Signals(signum).name)
            os._exit(1)
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        shutdown_requested.set()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, on_signal, signum)

    await control.start()
    try:
        await shutdown_requested.wait()
    finally:
        await control.stop()
        try:
            await asyncio.wait_for(session.stop(), timeout=SHUTDOWN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Session still releasing after %.0fs, exiting anyway", SHUTDOWN_TIMEOUT_SECONDS)


if __name__ == "__main__":
    main()
