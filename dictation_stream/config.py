"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "AudioConfig",
    "StreamingSettings",
    "EngineConfig",
    "WhisperConfig",
    "VoskConfig",
    "TransducerConfig",
    "SidecarConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "VALID_BACKENDS",
    "load_config",
    "discover_audio_devices",
]

VALID_BACKENDS = ("whisper", "vosk", "transducer", "sidecar", "mock")
# Backends that only accept one capture rate.
BACKEND_SAMPLE_RATES = {"whisper": 16000, "transducer": 16000, "sidecar": 16000}
CONFIG_ENV_VAR = "DICTATION_STREAM_CONFIG"
BACKEND_ENV_VAR = "DICTATION_STREAM_BACKEND"
CONFIG_FILENAME = "dictation-stream.toml"

_SECTIONS = (
    "audio",
    "streaming",
    "engine",
    "whisper",
    "vosk",
    "transducer",
    "sidecar",
    "general",
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class AudioConfig:
    """Audio capture configuration."""

    sample_rate: int = 16000
    channels: int = 1
    chunk_size: int = 1024
    device: int | str | None = None


@dataclass
class StreamingSettings:
    """Chunking configuration for streaming sessions."""

    chunk_duration_secs: float = 2.5
    overlap_secs: float = 0.5
    poll_interval: float = 0.05


@dataclass
class EngineConfig:
    """Speech engine selection."""

    backend: str = "transducer"
    fallback_to_mock: bool = False


@dataclass
class WhisperConfig:
    """Whisper model configuration (for faster-whisper backend)."""

    name: str = "base"
    device: str = "cpu"
    compute_type: str = "int8"
    model_directory: str | None = None
    beam_size: int = 5
    language: str | None = None


@dataclass
class VoskConfig:
    """Vosk model configuration."""

    model_path: str | None = None
    grammar: list[str] | None = None


@dataclass
class TransducerConfig:
    """Local transducer model configuration."""

    model_path: str | None = None
    max_symbols_per_step: int = 1


@dataclass
class SidecarConfig:
    """External transducer sidecar configuration."""

    executable: str | None = None
    timeout: float | None = None


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False


@dataclass
class Config:
    """Main configuration container."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    streaming: StreamingSettings = field(default_factory=StreamingSettings)
    engine: EngineConfig = field(default_factory=EngineConfig)
    whisper: WhisperConfig = field(default_factory=WhisperConfig)
    vosk: VoskConfig = field(default_factory=VoskConfig)
    transducer: TransducerConfig = field(default_factory=TransducerConfig)
    sidecar: SidecarConfig = field(default_factory=SidecarConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. DICTATION_STREAM_CONFIG env var
                  2. ./dictation-stream.toml
                  3. ~/.config/dictation-stream.toml
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If config file not found or values are malformed
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path)
        return cls.from_dict(raw_data, env=env)

    @classmethod
    def from_dict(
        cls,
        raw_data: Mapping,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Build a Config from already-parsed TOML data.

        Raises:
            ConfigError: If a section is not a table or holds unknown keys
        """
        coerced = _coerce_config_values(raw_data, env or {})
        try:
            return cls(
                audio=AudioConfig(**coerced["audio"]),
                streaming=StreamingSettings(**coerced["streaming"]),
                engine=EngineConfig(**coerced["engine"]),
                whisper=WhisperConfig(**coerced["whisper"]),
                vosk=VoskConfig(**coerced["vosk"]),
                transducer=TransducerConfig(**coerced["transducer"]),
                sidecar=SidecarConfig(**coerced["sidecar"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If any value is out of range or a required path is missing
        """
        try:
            validate_audio_config(self.audio)
            validate_streaming_config(self.streaming)
            validate_engine_config(self)
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Validation failed: {e}") from e


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. DICTATION_STREAM_CONFIG environment variable
    3. ./dictation-stream.toml (current directory)
    4. ~/.config/dictation-stream.toml (user config directory)

    Raises:
        ConfigError: If no config file found in any location
    """
    candidates = []

    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get(CONFIG_ENV_VAR):
        candidates.append(Path(env_path))

    candidates.append(Path(CONFIG_FILENAME))
    candidates.append(Path.home() / ".config" / CONFIG_FILENAME)

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    raise ConfigError(
        f"Config file not found. Searched: {', '.join(str(c) for c in candidates)}"
    )


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: Mapping, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Missing sections become empty tables. ``DICTATION_STREAM_BACKEND``
    overrides ``engine.backend``.
    """
    coerced = {}

    for section in _SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    unknown = sorted(set(raw_data) - set(_SECTIONS))
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", ", ".join(unknown))

    grammar = coerced["vosk"].get("grammar")
    if grammar is not None:
        if isinstance(grammar, str):
            grammar = [grammar]
        if not isinstance(grammar, list) or not all(isinstance(p, str) for p in grammar):
            raise ConfigError("vosk.grammar must be a list of strings")
        coerced["vosk"]["grammar"] = grammar

    if backend := env.get(BACKEND_ENV_VAR):
        logger.debug("Backend overridden by %s: %s", BACKEND_ENV_VAR, backend)
        coerced["engine"]["backend"] = backend.strip().lower()

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if no devices found or querying fails
    """
    import sounddevice

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    """Validate audio capture settings.

    Raises:
        ConfigError: If a value is out of range
    """
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"sample_rate must be positive, got {audio_cfg.sample_rate}")
    if audio_cfg.channels not in (1, 2):
        raise ConfigError(f"channels must be 1 or 2, got {audio_cfg.channels}")
    if audio_cfg.chunk_size <= 0:
        raise ConfigError(f"chunk_size must be positive, got {audio_cfg.chunk_size}")


def validate_streaming_config(streaming_cfg: StreamingSettings) -> None:
    """Validate chunking settings.

    Raises:
        ConfigError: If durations are non-positive or the overlap covers the chunk
    """
    if streaming_cfg.chunk_duration_secs <= 0:
        raise ConfigError(
            f"chunk_duration_secs must be positive, got {streaming_cfg.chunk_duration_secs}"
        )
    if streaming_cfg.overlap_secs < 0:
        raise ConfigError(
            f"overlap_secs must be non-negative, got {streaming_cfg.overlap_secs}"
        )
    if streaming_cfg.overlap_secs >= streaming_cfg.chunk_duration_secs:
        raise ConfigError(
            f"overlap_secs ({streaming_cfg.overlap_secs}) must be smaller than "
            f"chunk_duration_secs ({streaming_cfg.chunk_duration_secs})"
        )
    if streaming_cfg.poll_interval <= 0:
        raise ConfigError(
            f"poll_interval must be positive, got {streaming_cfg.poll_interval}"
        )


def validate_engine_config(cfg: Config) -> None:
    """Validate the backend choice and the settings it depends on.

    Raises:
        ConfigError: If the backend is unknown or its settings are invalid
    """
    backend = cfg.engine.backend
    if backend not in VALID_BACKENDS:
        raise ConfigError(
            f"Invalid backend '{backend}'. Must be one of: {', '.join(VALID_BACKENDS)}"
        )

    whisper_cfg = cfg.whisper
    valid_compute_types = ("int8", "float16", "float32", "default")
    if whisper_cfg.compute_type not in valid_compute_types:
        raise ConfigError(
            f"Invalid compute_type '{whisper_cfg.compute_type}'. "
            f"Must be one of: {', '.join(valid_compute_types)}"
        )

    valid_devices = ("cpu", "cuda", "auto")
    if whisper_cfg.device not in valid_devices:
        raise ConfigError(
            f"Invalid device '{whisper_cfg.device}'. "
            f"Must be one of: {', '.join(valid_devices)}"
        )

    if whisper_cfg.beam_size <= 0:
        raise ConfigError(f"beam_size must be positive, got {whisper_cfg.beam_size}")

    if cfg.transducer.max_symbols_per_step < 1:
        raise ConfigError(
            "max_symbols_per_step must be at least 1, "
            f"got {cfg.transducer.max_symbols_per_step}"
        )

    if cfg.sidecar.timeout is not None and cfg.sidecar.timeout <= 0:
        raise ConfigError(f"sidecar timeout must be positive, got {cfg.sidecar.timeout}")

    required_paths = {
        "vosk": ("vosk.model_path", cfg.vosk.model_path),
        "transducer": ("transducer.model_path", cfg.transducer.model_path),
        "sidecar": ("sidecar.executable", cfg.sidecar.executable),
    }
    if backend in required_paths:
        key, value = required_paths[backend]
        if not value:
            raise ConfigError(f"{key} is required when backend is '{backend}'")

    required_rate = BACKEND_SAMPLE_RATES.get(backend)
    if required_rate is not None and cfg.audio.sample_rate != required_rate:
        raise ConfigError(
            f"Backend '{backend}' requires audio.sample_rate = {required_rate}, "
            f"got {cfg.audio.sample_rate}"
        )


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().

    Raises:
        ConfigError: If config cannot be loaded
    """
    return Config.from_toml(path, env=env)
