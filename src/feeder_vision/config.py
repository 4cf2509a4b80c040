"""
config.py: User-scoped data locations and persisted application settings.

All state (settings, result cache, default model bundle) lives under one data
directory, `$FEEDER_VISION_HOME` if set, otherwise `~/.local/share/feeder-vision`.
"""

import json
import os
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils.log_utils import get_logger

logger = get_logger(__name__)

HOME_ENV_VAR = "FEEDER_VISION_HOME"
SETTINGS_FILE_NAME = "settings.json"


def data_dir() -> Path:
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local" / "share" / "feeder-vision"


def cache_dir() -> Path:
    return data_dir() / "cache"


def models_dir() -> Path:
    return data_dir() / "models"


def settings_path() -> Path:
    return data_dir() / SETTINGS_FILE_NAME


class AppSettings(BaseSettings):
    """Decision and pipeline settings shared by the CLI and UI."""
    presence_threshold: float = 0.5
    background_labels: List[str] = ["achtergrond"]
    batch_size: int = 8
    auto_batch: bool = True
    recursive: bool = False
    model_dir: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="FEEDER_VISION_",
        extra="ignore",
        validate_assignment=True,
    )

    @field_validator("presence_threshold")
    @classmethod
    def threshold_must_be_fraction(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("presence_threshold must be between 0.0 and 1.0")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch_size must be at least 1")
        return v

    @field_validator("background_labels")
    @classmethod
    def labels_must_not_be_blank(cls, v: List[str]) -> List[str]:
        labels = [label.strip() for label in v]
        if any(not label for label in labels):
            raise ValueError("background_labels must not contain blank labels")
        return labels

    def resolved_model_dir(self) -> Path:
        return Path(self.model_dir).expanduser() if self.model_dir else models_dir()


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """
    Read settings from JSON. Unknown keys are ignored; a missing, unreadable or
    invalid file yields the defaults.
    """
    path = Path(path) if path is not None else settings_path()
    if not path.exists():
        return AppSettings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("settings file must hold a JSON object")
        return AppSettings(**data)
    except (OSError, ValueError) as e:
        # ValidationError is a ValueError
        logger.warning("Failed to load settings from %s: %s; using defaults", path, e)
        return AppSettings()


def save_settings(settings: AppSettings, path: Optional[Path] = None) -> Path:
    path = Path(path) if path is not None else settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.model_dump(), indent=2), encoding="utf-8")
    logger.debug("Saved settings to %s", path)
    return path
