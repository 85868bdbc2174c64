from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import aclosing
from enum import Enum
from typing import Any

from adbnet.discovery import ADB_PORT, Address, DeviceProbe, ScanProgress, SubnetScanner
from adbnet.runner import ERROR_PREFIX, CommandRunner

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    INPUT_TEXT = "input-text"
    PUSH = "push"
    PULL = "pull"
    LIST_PATH = "list-path"
    KEY_EVENT = "key-event"
    DEVICES = "devices"
    CUSTOM = "custom"


# Backslash first so later escapes are not doubled.
_TEXT_ESCAPES = (
    ("\\", "\\\\"),
    ("`", "\\`"),
    ("$", "\\$"),
    (" ", "%s"),
    ('"', '\\"'),
    ("'", "\\'"),
    ("(", "\\("),
    (")", "\\)"),
    ("&", "\\&"),
    (";", "\\;"),
)

_MISSING_MARKERS = ("No such file or directory", "Permission denied")
_ADB_DIAGNOSTICS = (ERROR_PREFIX, "error:", "adb: ")
# Saved commands may use adb arguments but never chain host shell commands.
_SHELL_CONTROL = (";", "&", "|", "`", "$", "<", ">", "\n", "\r")


def escape_text(text: str) -> str:
    for old, new in _TEXT_ESCAPES:
        text = text.replace(old, new)
    return text


def quote_arg(value: str) -> str:
    """Wrap ``value`` in double quotes, escaping what the host shell expands there."""
    for char in ("\\", '"', "$", "`"):
        value = value.replace(char, f"\\{char}")
    return f'"{value}"'


def validate_custom_command(command: str) -> str:
    command = command.strip()
    if not command.startswith("adb "):
        raise ValueError("Custom commands must start with 'adb '")
    if any(char in command for char in _SHELL_CONTROL):
        raise ValueError("Custom commands may not contain shell control characters")
    return command


def _require(args: Mapping[str, Any], *names: str) -> list[str]:
    values = []
    for name in names:
        value = args.get(name)
        if value is None or str(value) == "":
            raise ValueError(f"Missing argument: {name}")
        values.append(str(value))
    return values


def build_invocation(kind: OperationKind, args: Mapping[str, Any]) -> str:
    if kind is OperationKind.INPUT_TEXT:
        (text,) = _require(args, "text")
        return f'adb shell input text "{escape_text(text)}"'
    if kind is OperationKind.PUSH:
        source, target = _require(args, "source", "target")
        return f"adb push {quote_arg(source)} {quote_arg(target)}"
    if kind is OperationKind.PULL:
        source, target = _require(args, "source", "target")
        return f"adb pull {quote_arg(source)} {quote_arg(target)}"
    if kind is OperationKind.LIST_PATH:
        (path,) = _require(args, "path")
        return f"adb shell ls -la {quote_arg(path)}"
    if kind is OperationKind.KEY_EVENT:
        (code,) = _require(args, "code")
        try:
            key_code = int(code)
        except ValueError as exc:
            raise ValueError(f"Invalid key code: {code!r}") from exc
        return f"adb shell input keyevent {key_code}"
    if kind is OperationKind.DEVICES:
        return "adb devices"
    if kind is OperationKind.CUSTOM:
        (command,) = _require(args, "command")
        return validate_custom_command(command)
    raise ValueError(f"Unsupported operation: {kind}")


class ExecutionFacade:
    def __init__(self, runner: CommandRunner, probe: DeviceProbe, scanner: SubnetScanner) -> None:
        self._runner = runner
        self._probe = probe
        self._scanner = scanner

    def scan_for_devices(self) -> AsyncGenerator[ScanProgress, None]:
        return self._scanner.scan()

    def run_named_operation(self, kind: OperationKind | str, args: Mapping[str, Any]) -> AsyncGenerator[str, None]:
        """Validate and build the invocation now; the process starts on first pull."""
        try:
            kind = OperationKind(kind)
        except ValueError as exc:
            raise ValueError(f"Unsupported operation: {kind}") from exc
        invocation = build_invocation(kind, args)
        logger.info("Operation %s: %s", kind.value, invocation)
        if kind is OperationKind.LIST_PATH:
            return self._list_path(str(args["path"]), invocation)
        return self._runner.run(invocation)

    async def _list_path(self, path: str, invocation: str) -> AsyncGenerator[str, None]:
        first: str | None = None
        async with aclosing(self._runner.run(invocation)) as listing:
            async for line in listing:
                if line.startswith(_ADB_DIAGNOSTICS):
                    yield line
                    return
                if any(marker in line for marker in _MISSING_MARKERS):
                    continue
                if first is None:
                    first = line

        if first is None:
            yield f"invalid path: {path}"
            return
        if first.startswith("-"):
            yield f"file: {path}"
            yield first
            return

        yield f"directory: {path}"
        async with aclosing(self._runner.run(invocation)) as listing:
            async for line in listing:
                yield line

    async def connect(self, host: str, port: int = ADB_PORT) -> bool:
        return await self._probe.connect(Address(host, port))

    async def disconnect(self, host: str, port: int = ADB_PORT) -> bool:
        return await self._probe.disconnect(Address(host, port))

    async def is_device_connected(self) -> bool:
        for line in await self._runner.collect("adb devices"):
            fields = line.split()
            if len(fields) >= 2 and fields[-1] == "device" and not line.startswith("List of devices"):
                return True
        return False
