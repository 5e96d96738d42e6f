"""
Runtime configuration consumed by the dictation core.

The settings UI owns persistence; the core only reads a validated
``Settings`` snapshot. Uses platformdirs for cross-platform directory
resolution.
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from platformdirs import user_data_path
from pydantic import BaseModel, ConfigDict, Field, field_validator

APP_NAME = "murmur"

LOCAL_PROVIDER = "local"
REMOTE_PROVIDERS = ("mistral", "deepgram", "assemblyai", "gladia")


def get_data_dir() -> Path:
    return user_data_path(APP_NAME, appauthor=False)


def get_default_cache_dir() -> Path:
    return get_data_dir() / "models"


class RecordingMode(str, Enum):
    PUSH_TO_TALK = "push_to_talk"
    TOGGLE = "toggle"


class ModelUnloadTimeout(str, Enum):
    NEVER = "never"
    IMMEDIATELY = "immediately"
    SEC5 = "sec5"  # debugging aid
    MIN2 = "min2"
    MIN5 = "min5"
    MIN10 = "min10"
    MIN15 = "min15"
    HOUR1 = "hour1"

    def to_seconds(self) -> Optional[float]:
        """Idle duration before unload; None means the model stays loaded."""
        return {
            ModelUnloadTimeout.NEVER: None,
            ModelUnloadTimeout.IMMEDIATELY: 0.0,
            ModelUnloadTimeout.SEC5: 5.0,
            ModelUnloadTimeout.MIN2: 120.0,
            ModelUnloadTimeout.MIN5: 300.0,
            ModelUnloadTimeout.MIN10: 600.0,
            ModelUnloadTimeout.MIN15: 900.0,
            ModelUnloadTimeout.HOUR1: 3600.0,
        }[self]


class Settings(BaseModel):
    model_config = ConfigDict(validate_assignment=False, extra="ignore")

    model_id: str = ""
    transcription_provider: str = LOCAL_PROVIDER
    api_keys: Dict[str, str] = Field(default_factory=dict)

    recording_mode: RecordingMode = RecordingMode.PUSH_TO_TALK
    input_device: Optional[str] = None
    output_device: Optional[str] = None
    frame_queue_size: int = Field(default=256, ge=8)

    vad_backend: str = "webrtc"
    vad_aggressiveness: int = Field(default=2, ge=0, le=3)
    vad_threshold: float = Field(default=0.5, gt=0.0, lt=1.0)
    vad_onset_ms: int = Field(default=60, ge=30)
    vad_hangover_ms: int = Field(default=450, ge=0)
    vad_prefill_ms: int = Field(default=300, ge=0)
    max_segment_seconds: float = Field(default=120.0, gt=0.0)

    model_unload_timeout: ModelUnloadTimeout = ModelUnloadTimeout.NEVER

    selected_language: str = "auto"
    translate_to_english: bool = False
    translation_model: str = "gpt-4o-mini"
    translation_api_key: Optional[str] = None
    translation_api_base: Optional[str] = None

    custom_words: List[str] = Field(default_factory=list)
    word_correction_threshold: float = Field(default=0.82, ge=0.0, le=1.0)

    cache_dir: Optional[Path] = None

    @field_validator("transcription_provider")
    @classmethod
    def provider_known(cls, v):
        v = (v or "").strip().lower()
        if v != LOCAL_PROVIDER and v not in REMOTE_PROVIDERS:
            raise ValueError(
                f"transcription_provider must be one of "
                f"{(LOCAL_PROVIDER,) + REMOTE_PROVIDERS}, got {v!r}"
            )
        return v

    @field_validator("vad_backend")
    @classmethod
    def vad_backend_known(cls, v):
        if v not in ("webrtc", "energy"):
            raise ValueError("vad_backend must be 'webrtc' or 'energy'")
        return v

    @field_validator("custom_words")
    @classmethod
    def strip_custom_words(cls, v):
        return [w.strip() for w in v if isinstance(w, str) and w.strip()]

    def get_api_key(self, provider: str) -> Optional[str]:
        key = self.api_keys.get(provider)
        if key and key.strip():
            return key.strip()
        return None

    def resolve_cache_dir(self) -> Path:
        return Path(self.cache_dir) if self.cache_dir else get_default_cache_dir()
