"""Typer CLI entrypoint for dictation-stream."""

import json
import logging
import math
import time
from dataclasses import asdict
from pathlib import Path

import numpy as np
import typer

from dictation_stream._types import StreamingChunk
from dictation_stream.config import (
    VALID_BACKENDS,
    Config,
    ConfigError,
    discover_audio_devices,
    load_config,
)
from dictation_stream.engine import EngineError, EngineSlot, build_engine
from dictation_stream.recorder import AudioRecorder
from dictation_stream.session import StreamingSession, start_level_monitor
from dictation_stream.streaming import SampleSink, StreamingConfig

app = typer.Typer(help="Streaming dictation with pluggable speech engines")

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _merge_config_overrides(
    cfg: Config,
    *,
    backend: str | None = None,
    audio_device: int | None = None,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Raises:
        ConfigError: If override values are invalid
    """
    if backend is not None:
        if backend not in VALID_BACKENDS:
            raise ConfigError(
                f"Invalid backend '{backend}'. Must be one of: {', '.join(VALID_BACKENDS)}"
            )
        logger.debug("Overriding backend to '%s'", backend)
        cfg.engine.backend = backend

    if audio_device is not None:
        available = discover_audio_devices()
        valid_indices = {d["index"] for d in available}
        if audio_device not in valid_indices:
            available_str = ", ".join(str(d["index"]) for d in available)
            raise ConfigError(
                f"Invalid audio device index {audio_device}. "
                f"Available: {available_str or 'none'}"
            )
        logger.debug("Overriding audio device to index %d", audio_device)
        cfg.audio.device = audio_device

    return cfg


def _load_engine(cfg: Config) -> EngineSlot:
    slot = EngineSlot()
    slot.load(lambda: build_engine(cfg))
    return slot


def _load_audio_file(audio_path: Path, target_rate: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    """Read an audio file as mono float32 at ``target_rate``.

    Raises:
        RuntimeError: If the file cannot be read or resampled
    """
    try:
        import soundfile
        from scipy.signal import resample_poly

        audio_data, sample_rate = soundfile.read(
            str(audio_path), dtype="float32", always_2d=True
        )
        logger.debug("Loaded audio: sample_rate=%d, shape=%s", sample_rate, audio_data.shape)

        audio_data = audio_data.mean(axis=1)

        if sample_rate != target_rate:
            logger.debug("Resampling from %d Hz to %d Hz", sample_rate, target_rate)
            divisor = math.gcd(int(sample_rate), int(target_rate))
            audio_data = resample_poly(
                audio_data,
                target_rate // divisor,
                int(sample_rate) // divisor,
            )

        return np.clip(audio_data, -1.0, 1.0).astype(np.float32)
    except Exception as e:
        logger.error("Failed to load audio from %s: %s", audio_path, e)
        raise RuntimeError(f"Failed to load audio from {audio_path}: {e}") from e


def _wait_for_interrupt() -> None:
    while True:
        time.sleep(0.25)


def _level_bar(level: float, width: int = 40) -> str:
    filled = min(width, int(round(min(1.0, level * 4) * width)))
    return "#" * filled + "-" * (width - filled)


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    backend: str | None = typer.Option(
        None, "--backend", "-b", help=f"Override backend ({', '.join(VALID_BACKENDS)})"
    ),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override audio device by index"
    ),
) -> None:
    """Stream microphone audio and print the transcript as it arrives."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        cfg = _merge_config_overrides(cfg, backend=backend, audio_device=audio_device)
        cfg.validate()
        logger.info("Configuration validated successfully")

        slot = _load_engine(cfg)
        streaming_cfg = StreamingConfig(
            chunk_duration_secs=cfg.streaming.chunk_duration_secs,
            overlap_secs=cfg.streaming.overlap_secs,
            sample_rate=cfg.audio.sample_rate,
        )

        def _echo_chunk(chunk: StreamingChunk) -> None:
            if chunk.is_final:
                return
            if chunk.text:
                typer.echo(chunk.text)

        with AudioRecorder(
            sample_rate=cfg.audio.sample_rate,
            channels=cfg.audio.channels,
            chunk_size=cfg.audio.chunk_size,
            device=cfg.audio.device,
        ) as recorder:
            session = StreamingSession(
                recorder=recorder,
                slot=slot,
                config=streaming_cfg,
                on_chunk=_echo_chunk,
                poll_interval=cfg.streaming.poll_interval,
            )
            session.start()
            typer.echo("Listening... press Ctrl-C to stop")
            try:
                _wait_for_interrupt()
            except KeyboardInterrupt:
                logger.info("Stopping streaming session")
            final = session.stop()

        typer.echo(f"\nFinal transcript: {final.text}")
        if session.last_error is not None:
            logger.warning("Last chunk error: %s", session.last_error)

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except EngineError as e:
        logger.error("Speech engine error: %s", e)
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def transcribe(
    audio_file: Path = typer.Argument(..., help="Audio file to transcribe"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    backend: str | None = typer.Option(
        None, "--backend", "-b", help=f"Override backend ({', '.join(VALID_BACKENDS)})"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output the full result as JSON"
    ),
) -> None:
    """Transcribe an audio file in a single pass."""
    _setup_logging(verbose)
    try:
        if not audio_file.exists():
            raise ConfigError(f"Audio file not found: {audio_file}")

        cfg = load_config(config)
        cfg = _merge_config_overrides(cfg, backend=backend)
        cfg.validate()

        slot = _load_engine(cfg)
        audio = _load_audio_file(audio_file)
        result = slot.transcribe(audio, TARGET_SAMPLE_RATE)

        if json_output:
            typer.echo(json.dumps(asdict(result), indent=2))
        else:
            typer.echo(result.text)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except EngineError as e:
        logger.error("Transcription failed: %s", e)
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Unexpected error: %s", e)
        raise typer.Exit(1)


@app.command()
def levels(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Audio device index"
    ),
    seconds: float = typer.Option(
        5.0, "--seconds", "-s", help="How long to monitor input levels"
    ),
    sample_rate: int = typer.Option(16000, "--sample-rate"),
) -> None:
    """Show live input levels for a capture device."""
    _setup_logging(verbose)
    if seconds <= 0:
        logger.error("--seconds must be positive")
        raise typer.Exit(1)

    try:
        with AudioRecorder(sample_rate=sample_rate, device=audio_device) as recorder:
            recorder.start(SampleSink(initial_capacity=int(sample_rate * seconds)))
            monitor = start_level_monitor(
                recorder,
                lambda level: typer.echo(f"{_level_bar(level)} {level:.4f}"),
                interval=0.1,
            )
            try:
                time.sleep(seconds)
            except KeyboardInterrupt:
                logger.info("Level monitor interrupted by user")
            finally:
                monitor.stop()
                recorder.stop()
    except Exception as e:
        logger.error("Error monitoring audio levels: %s", e)
        raise typer.Exit(1)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def check(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    backend: str | None = typer.Option(
        None, "--backend", "-b", help=f"Override backend ({', '.join(VALID_BACKENDS)})"
    ),
) -> None:
    """Validate configuration and load the configured engine once."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        cfg = _merge_config_overrides(cfg, backend=backend)
        cfg.validate()
        logger.info("Configuration validated successfully")

        slot = _load_engine(cfg)
        typer.echo(f"OK: {slot.current.model_display_name}")
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except EngineError as e:
        logger.error("Speech engine error: %s", e)
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Unexpected error: %s", e)
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
