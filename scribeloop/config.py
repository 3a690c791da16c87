"""
Configuration management with immutable snapshots.

Loads from: environment variables > settings.json > defaults
Provides immutable snapshots for session isolation.
"""

from pathlib import Path
from typing import Dict, Optional
import json
import os

from .errors import ConfigError
from .types import ConfigSnapshot, DocumentType


# Documents that may be sent to a cloud LLM; search and unknown never are
CLOUD_ELIGIBLE_TYPES = (
    DocumentType.EMAIL,
    DocumentType.MESSAGE,
    DocumentType.DOCUMENT,
    DocumentType.SOCIAL,
    DocumentType.CODE,
)

SUPPORTED_LLM_PROVIDERS = ("claude", "openai", "groq")

MIN_TIMEOUT_SECONDS = 5.0
MAX_TIMEOUT_SECONDS = 120.0


# Defaults
DEFAULT_CONFIG = {
    # Audio
    "input_device": "",
    "level_gain": 10.0,
    "level_hz": 60.0,

    # Transcription
    "model_path": "",
    "language": "auto",
    "translate": False,
    "initial_prompt": "",
    "compute_type": "int8",

    # Learning
    "learning_enabled": True,
    "learning_threshold": 0.7,
    "retention_days": 90,
    "apply_learned_patterns": True,

    # Enhancement
    "llm_provider": "claude",
    "llm_enabled": False,
    "llm_model": "",
    "timeout_seconds": 30.0,
    "remove_fillers": True,
    "auto_punctuate": True,
    "auto_capitalize": True,
}

# Keys written back by save_settings()
USER_SETTINGS = (
    "input_device", "model_path", "language", "translate", "learning_enabled",
    "llm_provider", "llm_enabled", "llm_model", "timeout_seconds",
)

# Environment variable -> attribute
ENV_OVERRIDES = {
    "SCRIBELOOP_INPUT_DEVICE": "input_device",
    "SCRIBELOOP_MODEL_PATH": "model_path",
    "SCRIBELOOP_LANGUAGE": "language",
    "SCRIBELOOP_LLM_PROVIDER": "llm_provider",
    "SCRIBELOOP_LLM_MODEL": "llm_model",
    "SCRIBELOOP_LLM_ENABLED": "llm_enabled",
    "SCRIBELOOP_TIMEOUT": "timeout_seconds",
}


def _coerce(value, default):
    """Convert a settings/env value to the type of its default."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    return type(default)(value)


class Config:
    """
    Single source of truth for all settings.

    Usage:
        config = Config.load()
        snapshot = config.snapshot()  # Immutable copy for session
    """

    def __init__(self, data_dir: Optional[Path] = None):
        # Audio
        self.input_device: str = ""
        self.level_gain: float = 10.0
        self.level_hz: float = 60.0

        # Transcription
        self.model_path: str = ""
        self.language: str = "auto"
        self.translate: bool = False
        self.initial_prompt: str = ""
        self.compute_type: str = "int8"

        # Learning
        self.learning_enabled: bool = True
        self.learning_threshold: float = 0.7
        self.retention_days: int = 90
        self.apply_learned_patterns: bool = True

        # Enhancement
        self.llm_provider: str = "claude"
        self.llm_enabled: bool = False
        self.llm_model: str = ""
        self.timeout_seconds: float = 30.0
        self.remove_fillers: bool = True
        self.auto_punctuate: bool = True
        self.auto_capitalize: bool = True
        self.cloud_types: Dict[str, bool] = {t.value: True for t in CLOUD_ELIGIBLE_TYPES}
        self.custom_prompts: Dict[str, str] = {}

        # Paths
        if data_dir is None:
            data_dir = Path(os.getenv("SCRIBELOOP_HOME", Path.home() / ".scribeloop"))
        self.data_dir: Path = Path(data_dir)
        self.settings_file: Path = self.data_dir / "settings.json"
        self.env_file: Path = self.data_dir / ".env"
        self.learning_db: Path = self.data_dir / "learning.sqlite3"
        self.metrics_file: Path = self.data_dir / "events.jsonl"
        self.classifier_model: Path = self.data_dir / "classifier.json"

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from all sources."""
        config = cls(data_dir)
        config._ensure_data_dir()
        config._load_settings()
        config._load_env()
        config.validate()
        return config

    def _ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _load_settings(self) -> None:
        """Load settings from settings.json."""
        if self.settings_file.exists():
            self._apply_settings_file(self.settings_file)

    def _apply_settings_file(self, settings_file: Path) -> None:
        """Apply settings from a JSON file."""
        try:
            with open(settings_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"[Config] Error loading {settings_file}: {e}")
            return

        # Apply settings with type validation
        for key, default in DEFAULT_CONFIG.items():
            if key in data:
                try:
                    setattr(self, key, _coerce(data[key], default))
                except (TypeError, ValueError):
                    print(f"[Config] Ignoring invalid value for {key}: {data[key]!r}")

        cloud_types = data.get("cloud_types", {})
        if isinstance(cloud_types, dict):
            for name, enabled in cloud_types.items():
                if name in self.cloud_types:
                    self.cloud_types[name] = bool(enabled)

        prompts = data.get("custom_prompts", {})
        if isinstance(prompts, dict):
            self.custom_prompts = {
                name: str(prompt) for name, prompt in prompts.items()
                if name in self.cloud_types
            }

    def _load_env(self) -> None:
        """Environment variables override file values."""
        for env_key, attr in ENV_OVERRIDES.items():
            value = os.getenv(env_key)
            if value is None:
                continue
            try:
                setattr(self, attr, _coerce(value, DEFAULT_CONFIG[attr]))
            except ValueError:
                print(f"[Config] Ignoring invalid {env_key}={value!r}")

    def validate(self) -> None:
        """
        Raises:
            ConfigError: a setting is outside its allowed range
        """
        if not MIN_TIMEOUT_SECONDS <= self.timeout_seconds <= MAX_TIMEOUT_SECONDS:
            raise ConfigError(
                f"timeout_seconds must be between {MIN_TIMEOUT_SECONDS:g} and "
                f"{MAX_TIMEOUT_SECONDS:g}, got {self.timeout_seconds:g}"
            )
        if self.llm_provider not in SUPPORTED_LLM_PROVIDERS:
            raise ConfigError(
                f"Unknown LLM provider '{self.llm_provider}'. "
                f"Choose one of: {', '.join(SUPPORTED_LLM_PROVIDERS)}"
            )
        if not 0.0 <= self.learning_threshold <= 1.0:
            raise ConfigError("learning_threshold must be between 0 and 1")
        if self.retention_days < 1:
            raise ConfigError("retention_days must be at least 1")

    def save_settings(self) -> None:
        """Save user-editable settings to settings.json."""
        data = {key: getattr(self, key) for key in USER_SETTINGS}
        data["cloud_types"] = dict(self.cloud_types)
        data["custom_prompts"] = dict(self.custom_prompts)

        self._ensure_data_dir()
        with open(self.settings_file, "w") as f:
            json.dump(data, f, indent=2)

    def snapshot(self) -> ConfigSnapshot:
        """Return immutable copy for session isolation."""
        return ConfigSnapshot(
            input_device=self.input_device or None,
            level_gain=self.level_gain,
            level_hz=self.level_hz,
            model_path=self.model_path,
            language=self.language,
            translate=self.translate,
            initial_prompt=self.initial_prompt,
            compute_type=self.compute_type,
            learning_enabled=self.learning_enabled,
            learning_db=str(self.learning_db),
            learning_threshold=self.learning_threshold,
            retention_days=self.retention_days,
            apply_learned_patterns=self.apply_learned_patterns,
            llm_provider=self.llm_provider,
            llm_enabled=self.llm_enabled,
            llm_model=self.llm_model,
            timeout_seconds=self.timeout_seconds,
            cloud_types=dict(self.cloud_types),
            custom_prompts=dict(self.custom_prompts),
            remove_fillers=self.remove_fillers,
            auto_punctuate=self.auto_punctuate,
            auto_capitalize=self.auto_capitalize,
            classifier_model=str(self.classifier_model),
            metrics_file=str(self.metrics_file),
        )
