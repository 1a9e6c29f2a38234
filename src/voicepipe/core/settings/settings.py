"""
Settings management with JSON persistence.

Handles loading, saving, and validating application settings, and the
transcription history file. Uses platformdirs for cross-platform directory
resolution.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from platformdirs import user_config_path
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ...utils.logger import get_logger
from ..context.resolver import AppProfile, ContextResolver, ProfileSettings
from ..enhancement.client import ProviderConfig, RetryPolicy
from ..enhancement.presets import Enhancement, get_default_enhancements
from .config import (
    DEFAULT_ENGINE_IDLE_TIMEOUT,
    DEFAULT_RATE_LIMIT_INTERVAL,
    MAX_HISTORY_ENTRIES,
)

if TYPE_CHECKING:
    from ..pipeline.session import Session

logger = get_logger(__name__)

APP_NAME = "voicepipe"


def get_config_dir() -> Path:
    return user_config_path(APP_NAME, appauthor=False, ensure_exists=True)


class Settings(BaseModel):
    model_config = ConfigDict(validate_assignment=False)

    sample_rate: int = Field(default=16000, ge=8000, le=192000)
    input_device: Optional[str] = None

    model_id: str = "sherpa-onnx-whisper-base.en"
    engine_idle_timeout: Optional[float] = Field(
        default=DEFAULT_ENGINE_IDLE_TIMEOUT, ge=0
    )

    default_profile: ProfileSettings = Field(default_factory=ProfileSettings)
    app_profiles: List[AppProfile] = Field(default_factory=list)

    enhancements: List[dict] = Field(default_factory=list)
    llm_provider_settings: Dict[str, ProviderConfig] = Field(default_factory=dict)
    rate_limit_interval: float = Field(default=DEFAULT_RATE_LIMIT_INTERVAL, ge=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    vocabulary_replacements: List[Tuple[str, str]] = Field(default_factory=list)

    @field_validator("model_id")
    @classmethod
    def model_id_not_empty(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("model_id must be a non-empty string")
        return v

    @classmethod
    def load(cls) -> "Settings":
        config_file = get_config_dir() / "settings.json"

        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)

                if not isinstance(data, dict):
                    raise TypeError("settings.json must contain an object")

                settings = cls._load_with_fallbacks(data)

                if not settings.enhancements:
                    settings.enhancements = _default_enhancement_dicts()

                return settings
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning(
                    f"Could not load settings: {e}. Using defaults.", exc_info=True
                )
                return cls.defaults()

        return cls.defaults()

    @classmethod
    def defaults(cls) -> "Settings":
        settings = cls()
        settings.enhancements = _default_enhancement_dicts()
        return settings

    @classmethod
    def _load_with_fallbacks(cls, data: dict) -> "Settings":
        """Load settings with field-level fallback to defaults on validation errors."""
        defaults = cls()
        result_data = {}

        for field_name in cls.model_fields:
            if field_name not in data:
                result_data[field_name] = getattr(defaults, field_name)
                continue
            try:
                validated = cls.model_validate({field_name: data[field_name]})
                result_data[field_name] = getattr(validated, field_name)
            except ValidationError:
                default_val = getattr(defaults, field_name)
                logger.warning(
                    f"Invalid {field_name} {data[field_name]!r}, resetting to {default_val}"
                )
                result_data[field_name] = default_val

        return cls.model_construct(**result_data)

    def save(self) -> None:
        config_file = get_config_dir() / "settings.json"

        data = self.model_dump(mode="json")

        with open(config_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def reset_to_defaults(self) -> None:
        default = Settings.defaults()
        for key in Settings.model_fields:
            setattr(self, key, getattr(default, key))

    def get_enhancements(self) -> List[Enhancement]:
        result = []
        for enh_dict in self.enhancements:
            try:
                result.append(Enhancement.model_validate(enh_dict))
            except ValidationError:
                logger.warning(f"Skipping invalid enhancement preset {enh_dict!r}")
        return result

    def get_provider_settings(self, provider_id: str) -> ProviderConfig:
        return self.llm_provider_settings.get(provider_id, ProviderConfig())

    def set_provider_settings(self, provider_id: str, settings: ProviderConfig) -> None:
        self.llm_provider_settings[provider_id] = settings

    def provider_configs(self) -> Dict[str, ProviderConfig]:
        return dict(self.llm_provider_settings)

    def build_context_resolver(self) -> ContextResolver:
        return ContextResolver(default=self.default_profile, app_profiles=self.app_profiles)


def _default_enhancement_dicts() -> List[dict]:
    return [e.model_dump() for e in get_default_enhancements()]


_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.load()
    return _settings_instance


class TranscriptionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=False)

    timestamp: str  # ISO format datetime
    session_id: str = ""
    status: str = "completed"
    raw_text: str = ""
    enhanced_text: Optional[str] = None
    enhancement_name: Optional[str] = None
    cost_usd: Optional[float] = None
    app_id: Optional[str] = None
    error: Optional[str] = None
    diagnostics: List[str] = Field(default_factory=list)

    def to_dict(self) -> dict:
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptionRecord":
        return cls.model_validate(data)

    @classmethod
    def from_session(cls, session: "Session") -> "TranscriptionRecord":
        enhancement = session.enhancement
        return cls(
            timestamp=(session.finished_at or datetime.now()).isoformat(),
            session_id=session.id,
            status=session.stage.value,
            raw_text=session.raw_text or "",
            enhanced_text=session.enhanced_text,
            enhancement_name=session.enhancement_name,
            cost_usd=enhancement.cost_usd if enhancement is not None else None,
            app_id=session.context.app_id,
            error=session.error.value if session.error is not None else None,
            diagnostics=list(session.diagnostics),
        )


def get_history_file() -> Path:
    return get_config_dir() / "history.json"


def load_history(history_file: Optional[Path] = None) -> List[TranscriptionRecord]:
    history_file = history_file or get_history_file()

    if not history_file.exists():
        return []

    try:
        with open(history_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        return [TranscriptionRecord.from_dict(item) for item in data]
    except (json.JSONDecodeError, TypeError, KeyError, ValidationError) as e:
        logger.warning(f"Could not load history: {e}. Starting fresh.")
        return []


def save_history(
    records: List[TranscriptionRecord],
    history_file: Optional[Path] = None,
    max_entries: int = MAX_HISTORY_ENTRIES,
) -> None:
    history_file = history_file or get_history_file()
    records = records[-max_entries:]

    data = [record.to_dict() for record in records]

    with open(history_file, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def add_history_record(
    record: TranscriptionRecord, history_file: Optional[Path] = None
) -> None:
    records = load_history(history_file)
    records.append(record)
    save_history(records, history_file)


def clear_history(history_file: Optional[Path] = None) -> None:
    history_file = history_file or get_history_file()
    if history_file.exists():
        history_file.unlink()


class JsonHistorySink:
    """Appends finished sessions to the history file. Implements ``HistorySink``."""

    def __init__(self, history_file: Optional[Path] = None):
        self.history_file = history_file

    def record(self, session: "Session") -> None:
        add_history_record(TranscriptionRecord.from_session(session), self.history_file)
        logger.debug(
            f"Recorded session {session.id} to history: {len(session.raw_text or '')} chars"
        )
