import logging
from dataclasses import dataclass

import sounddevice as sd

from voice_session.config import VoiceSessionConfig

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = frozenset({"api_key", "frame_config"})


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(config: VoiceSessionConfig) -> list[HealthCheckResult]:
    results = [
        _check_frame_config(config),
        _check_audio_device(config),
        _check_api_key(config),
    ]

    passed = sum(1 for r in results if r.passed)
    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    return any(not r.passed and r.name in CRITICAL_CHECKS for r in results)


def _check_frame_config(config: VoiceSessionConfig) -> HealthCheckResult:
    name = "frame_config"
    if config.sample_rate_hz <= 0 or config.frame_sample_count <= 0:
        return HealthCheckResult(
            name=name,
            passed=False,
            detail=f"rate={config.sample_rate_hz}, frame={config.frame_sample_count} must be positive",
        )
    cadence_ms = 1000 * config.frame_sample_count / config.sample_rate_hz
    return HealthCheckResult(name=name, passed=True, detail=f"Cadence {cadence_ms:.0f}ms")


def _check_audio_device(config: VoiceSessionConfig) -> HealthCheckResult:
    # Not critical: the microphone may be granted or plugged in after startup.
    name = "audio_device"
    try:
        if config.capture_device.isdigit():
            index = int(config.capture_device)
            devices = list(sd.query_devices())
            if index < len(devices) and devices[index]["max_input_channels"] > 0:
                return HealthCheckResult(
                    name=name, passed=True, detail=f"Device {index} '{devices[index]['name']}' found",
                )
            return HealthCheckResult(name=name, passed=False, detail=f"No input device at index {index}")
        if config.capture_device:
            for dev in sd.query_devices():
                if config.capture_device.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                    return HealthCheckResult(name=name, passed=True, detail=f"Device '{dev['name']}' found")
            return HealthCheckResult(
                name=name, passed=False, detail=f"No input device matching '{config.capture_device}'",
            )
        default = sd.query_devices(kind="input")
        return HealthCheckResult(name=name, passed=True, detail=f"Default input: {default['name']}")
    except (sd.PortAudioError, ValueError) as exc:
        return HealthCheckResult(name=name, passed=False, detail=f"No input devices available ({exc})")


def _check_api_key(config: VoiceSessionConfig) -> HealthCheckResult:
    name = "api_key"
    if config.resolve_api_key():
        return HealthCheckResult(name=name, passed=True, detail="API key loaded")
    source = config.api_key_file or "VOICE_SESSION_API_KEY"
    return HealthCheckResult(name=name, passed=False, detail=f"Missing ({source})")
