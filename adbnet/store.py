from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


def _timestamp_id() -> str:
    return str(int(time.time() * 1000))


class SavedCommand(BaseModel):
    id: str = Field(default_factory=_timestamp_id)
    command: str = Field(..., min_length=1)
    description: str = ""


class KeyEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1)
    key_code: int = Field(..., ge=0)
    description: str = ""
    is_custom: bool = False


DEFAULT_COMMANDS = [
    ("adb shell pm list packages", "List installed packages"),
    ("adb shell dumpsys battery", "Show battery status"),
    ("adb shell settings get global airplane_mode_on", "Get airplane mode state"),
    ("adb shell am start -a android.intent.action.MAIN -c android.intent.category.HOME", "Go to home screen"),
    ("adb shell screencap -p /sdcard/screen.png", "Take a screenshot"),
]

PREDEFINED_KEYS = [
    ("HOME", 3, "Home"),
    ("BACK", 4, "Back"),
    ("MENU", 82, "Menu"),
    ("POWER", 26, "Power"),
    ("VOLUME UP", 24, "Volume up"),
    ("VOLUME DOWN", 25, "Volume down"),
    ("MUTE", 164, "Mute"),
    ("ENTER", 66, "Enter"),
    ("DPAD UP", 19, "D-pad up"),
    ("DPAD DOWN", 20, "D-pad down"),
    ("DPAD LEFT", 21, "D-pad left"),
    ("DPAD RIGHT", 22, "D-pad right"),
    ("DPAD CENTER", 23, "D-pad center"),
    ("CAMERA", 27, "Camera"),
    ("SEARCH", 84, "Search"),
    ("APP SWITCH", 187, "Recent apps"),
    ("BRIGHTNESS UP", 221, "Brightness up"),
    ("BRIGHTNESS DOWN", 220, "Brightness down"),
    ("PLAY", 126, "Play"),
    ("PAUSE", 127, "Pause"),
    ("MEDIA NEXT", 87, "Next track"),
    ("MEDIA PREVIOUS", 88, "Previous track"),
    ("MEDIA STOP", 86, "Stop playback"),
]

_commands_adapter = TypeAdapter(list[SavedCommand])
_keys_adapter = TypeAdapter(list[KeyEvent])


def _write_json(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


class CommandStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._commands = self._load()

    def _load(self) -> list[SavedCommand]:
        if not self.path.exists():
            commands = [
                SavedCommand(id=f"default-{index}", command=command, description=description)
                for index, (command, description) in enumerate(DEFAULT_COMMANDS)
            ]
            _write_json(self.path, _commands_adapter.dump_json(commands, indent=2))
            return commands
        try:
            return _commands_adapter.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.warning("Unable to read %s: %s", self.path, exc)
            return []

    def all(self) -> list[SavedCommand]:
        return list(self._commands)

    def get(self, command_id: str) -> SavedCommand | None:
        return next((item for item in self._commands if item.id == command_id), None)

    def add(self, command: SavedCommand) -> SavedCommand:
        self._commands.append(command)
        self._save()
        return command

    def remove(self, command_id: str) -> bool:
        remaining = [item for item in self._commands if item.id != command_id]
        removed = len(remaining) != len(self._commands)
        self._commands = remaining
        if removed:
            self._save()
        return removed

    def _save(self) -> None:
        _write_json(self.path, _commands_adapter.dump_json(self._commands, indent=2))


class KeyEventStore:
    """Predefined Android key codes plus persisted custom keys."""

    def __init__(self, path: Path) -> None:
        self.path = path
        predefined = [
            KeyEvent(id=f"key-{code}", name=name, key_code=code, description=description)
            for name, code, description in PREDEFINED_KEYS
        ]
        self._keys = predefined + self._load_custom()

    def _load_custom(self) -> list[KeyEvent]:
        if not self.path.exists():
            return []
        try:
            keys = _keys_adapter.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.warning("Unable to read %s: %s", self.path, exc)
            return []
        return [key.model_copy(update={"is_custom": True}) for key in keys]

    def all(self) -> list[KeyEvent]:
        return list(self._keys)

    def get(self, key_id: str) -> KeyEvent | None:
        return next((key for key in self._keys if key.id == key_id), None)

    def add_custom(self, key: KeyEvent) -> KeyEvent:
        custom = key.model_copy(update={"is_custom": True})
        self._keys.append(custom)
        self._save()
        return custom

    def remove(self, key_id: str) -> bool:
        remaining = [key for key in self._keys if key.id != key_id or not key.is_custom]
        removed = len(remaining) != len(self._keys)
        self._keys = remaining
        if removed:
            self._save()
        return removed

    def _save(self) -> None:
        custom = [key for key in self._keys if key.is_custom]
        _write_json(self.path, _keys_adapter.dump_json(custom, indent=2))
