from __future__ import annotations

import json
import logging
import os
from pathlib import Path, PureWindowsPath

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_TOOL = "adb"
_TOOL_NAMES = {"adb", "adb.exe"}


class Settings(BaseModel):
    adb_path: str = Field(DEFAULT_TOOL, min_length=1, description="Path to the adb executable")

    @field_validator("adb_path")
    @classmethod
    def check_adb_path(cls, value: str) -> str:
        # PureWindowsPath splits on both separators.
        if PureWindowsPath(value.strip()).name.lower() not in _TOOL_NAMES:
            raise ValueError("adb_path must point to an adb executable")
        return value.strip()


def app_dir() -> Path:
    return Path(os.environ.get("ADBNET_HOME", Path.home() / ".adbtool"))


class SettingsManager:
    """Owns the persisted settings file; read-only for the scanning core."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or app_dir() / "settings.json"
        self._settings = self._load()

    def _load(self) -> Settings:
        if not self.path.exists():
            return Settings()
        try:
            return Settings.model_validate(json.loads(self.path.read_text()))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", self.path, exc)
            return Settings()

    def get(self) -> Settings:
        return self._settings

    def get_tool_path(self) -> str:
        return self._settings.adb_path

    def save(self, settings: Settings) -> Settings:
        self._settings = settings
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(settings.model_dump_json(indent=2))
        return settings
