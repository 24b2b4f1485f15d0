"""
FIELDVOICE Configuration

Typed configuration for the voice command pipeline, validated with pydantic
and loaded from YAML with environment variable overrides.

Resolution order (later wins):
    1. Model defaults
    2. First YAML file found (explicit path, or get_config_paths())
    3. FIELDVOICE_<SECTION>_<FIELD> environment variables

Usage:
    from fieldvoice.config import load_config

    config = load_config()                       # auto-discover
    config = load_config("/etc/fieldvoice.yaml")  # explicit file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from fieldvoice.exceptions import ConfigurationError

ENV_PREFIX = "FIELDVOICE_"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# =============================================================================
# Section Models
# =============================================================================

class AudioConfig(BaseModel):
    """Microphone capture and conditioning."""
    device: Optional[str] = None
    sample_rate: int = Field(default=16000, ge=8000, le=48000)
    channels: int = Field(default=1, ge=1, le=2)
    frame_ms: int = Field(default=30, ge=10, le=100)
    highpass_hz: float = Field(default=80.0, gt=0)
    band_low_hz: float = Field(default=300.0, gt=0)
    band_high_hz: float = Field(default=3400.0, gt=0)
    compressor_threshold_db: float = Field(default=-20.0, le=0)
    compressor_ratio: float = Field(default=4.0, ge=1.0)
    noise_gate_threshold_db: float = Field(default=-45.0, le=0)
    silence_timeout_ms: int = Field(default=800, ge=100, le=10000)
    min_speech_ms: int = Field(default=150, ge=0)
    pre_roll_ms: int = Field(default=200, ge=0)
    max_utterance_sec: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_band(self) -> "AudioConfig":
        if self.band_low_hz >= self.band_high_hz:
            raise ValueError("band_low_hz must be below band_high_hz")
        if self.band_high_hz >= self.sample_rate / 2:
            raise ValueError("band_high_hz must be below the Nyquist frequency")
        return self


class RegistryConfig(BaseModel):
    """Provider registry health and trip policy."""
    trip_threshold: int = Field(default=3, ge=1)
    failure_window_sec: float = Field(default=60.0, gt=0)
    health_check_interval_sec: float = Field(default=30.0, ge=1.0)
    health_check_timeout_sec: float = Field(default=5.0, gt=0)


class ModeConfig(BaseModel):
    """Degradation controller timer."""
    evaluation_interval_sec: float = Field(default=30.0, ge=1.0)


class RecognitionConfig(BaseModel):
    confidence_floor: float = Field(default=0.4, ge=0.0, le=1.0)
    timeout_sec: float = Field(default=10.0, gt=0)
    chunk_ms: int = Field(default=100, ge=10)
    normalize_transcript: bool = True


class IntentConfig(BaseModel):
    timeout_sec: float = Field(default=8.0, gt=0)
    pattern_confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class ResponseConfig(BaseModel):
    timeout_sec: float = Field(default=5.0, gt=0)
    cache_capacity: int = Field(default=200, ge=1)
    voice: str = "default"
    prewarm: bool = True
    playback: bool = True
    output_device: Optional[str] = None
    playback_sample_rate: int = Field(default=22050, ge=8000, le=48000)


class RecoveryConfig(BaseModel):
    """Retry table shared by every stage."""
    transient_retries: int = Field(default=2, ge=0, le=10)
    backoff_base_sec: float = Field(default=0.25, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    malformed_retries: int = Field(default=1, ge=0, le=10)


class ConnectivityConfig(BaseModel):
    enabled: bool = False
    probe_url: str = "https://connectivitycheck.gstatic.com/generate_204"
    poll_interval_sec: float = Field(default=15.0, ge=1.0)
    timeout_sec: float = Field(default=3.0, gt=0)


class CloudConfig(BaseModel):
    """Network provider endpoints. Empty URL means the provider is not registered."""
    stt_url: str = ""
    reasoning_url: str = ""
    tts_url: str = ""
    api_key: Optional[str] = None
    stt_priority: int = 1
    reasoning_priority: int = 1
    tts_priority: int = 1


class LocalConfig(BaseModel):
    """On-device providers."""
    whisper_enabled: bool = False
    whisper_model: str = "base.en"
    whisper_device: str = "auto"
    whisper_compute_type: str = "int8"
    whisper_priority: int = 10
    piper_enabled: bool = False
    piper_model_path: str = ""
    piper_priority: int = 10


class FieldVoiceConfig(BaseModel):
    """Root configuration object."""
    language: str = "en"
    log_level: LogLevel = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False

    audio: AudioConfig = Field(default_factory=AudioConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    mode: ModeConfig = Field(default_factory=ModeConfig)
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    intent: IntentConfig = Field(default_factory=IntentConfig)
    response: ResponseConfig = Field(default_factory=ResponseConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    cloud: CloudConfig = Field(default_factory=CloudConfig)
    local: LocalConfig = Field(default_factory=LocalConfig)


SECTION_NAMES = [
    name for name, info in FieldVoiceConfig.model_fields.items()
    if isinstance(info.annotation, type) and issubclass(info.annotation, BaseModel)
]


# =============================================================================
# Loading
# =============================================================================

def get_config_paths() -> list[Path]:
    """Config file locations, most specific first."""
    return [
        Path("./fieldvoice.yaml"),
        Path.home() / ".fieldvoice" / "config.yaml",
        Path("/etc/fieldvoice/config.yaml"),
    ]


def _coerce(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def _apply_env_overrides(data: dict[str, Any], defaults: FieldVoiceConfig) -> dict[str, Any]:
    for key, raw in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        remainder = key[len(ENV_PREFIX):].lower()

        section = next(
            (s for s in SECTION_NAMES if remainder.startswith(s + "_")), None
        )
        try:
            if section is not None:
                field_name = remainder[len(section) + 1:]
                section_defaults = getattr(defaults, section)
                if field_name not in type(section_defaults).model_fields:
                    continue
                current = data.get(section, {}).get(
                    field_name, getattr(section_defaults, field_name)
                )
                data.setdefault(section, {})[field_name] = _coerce(raw, current)
            elif remainder in FieldVoiceConfig.model_fields and remainder not in SECTION_NAMES:
                current = data.get(remainder, getattr(defaults, remainder))
                data[remainder] = _coerce(raw, current)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for environment override: {e}", config_key=key
            ) from e
    return data


def load_config(config_path: Optional[str | Path] = None) -> FieldVoiceConfig:
    """Load configuration from YAML and the environment.

    Args:
        config_path: Explicit file to load. When None, the first existing
            path from get_config_paths() is used, or defaults if none exist.

    Raises:
        ConfigurationError: file missing, unparseable, or values invalid
    """
    data: dict[str, Any] = {}
    source: Optional[Path] = None

    if config_path is not None:
        source = Path(config_path)
        if not source.exists():
            raise ConfigurationError(
                f"Configuration file not found: {source}", config_file=str(source)
            )
    else:
        source = next((p for p in get_config_paths() if p.exists()), None)

    if source is not None:
        try:
            with open(source, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {e}", config_file=str(source)
            ) from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(
                "Invalid YAML in configuration file: top level must be a mapping",
                config_file=str(source),
            )
        data = loaded

    data = _apply_env_overrides(data, FieldVoiceConfig())

    try:
        return FieldVoiceConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            config_file=str(source) if source else None,
        ) from e
