from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import signal
from collections.abc import AsyncGenerator
from typing import Protocol, cast

logger = logging.getLogger(__name__)

TOOL_NAME = "adb"
ERROR_PREFIX = "error: "
_LINE_LIMIT = 1024 * 1024


class ToolPathSource(Protocol):
    def get_tool_path(self) -> str: ...


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    # The shell may have forked the tool, so take down the whole group.
    with contextlib.suppress(ProcessLookupError):
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()


class CommandRunner:
    """Runs shell invocations and streams their merged stdout/stderr.

    Failures never escape :meth:`run`: they arrive as a final ``error: ...``
    line so that every consumer renders output and errors the same way.
    """

    def __init__(self, settings: ToolPathSource) -> None:
        self._settings = settings

    def _substitutes_tool(self, invocation: str) -> bool:
        return invocation == TOOL_NAME or invocation.startswith(f"{TOOL_NAME} ")

    def resolve(self, invocation: str) -> str:
        if not self._substitutes_tool(invocation):
            return invocation
        tool_path = self._settings.get_tool_path()
        return shlex.quote(tool_path) + invocation[len(TOOL_NAME):]

    def _missing_tool(self, invocation: str) -> str | None:
        if not self._substitutes_tool(invocation):
            return None
        tool_path = self._settings.get_tool_path()
        if shutil.which(tool_path) is None:
            return tool_path
        return None

    async def _spawn(self, command: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            limit=_LINE_LIMIT,
            start_new_session=os.name == "posix",
        )

    async def run(self, invocation: str) -> AsyncGenerator[str, None]:
        missing = self._missing_tool(invocation)
        if missing is not None:
            logger.warning("Executable not found: %s", missing)
            yield f"{ERROR_PREFIX}{missing} not found"
            return

        command = self.resolve(invocation)
        logger.debug("Running %s", command)
        try:
            process = await self._spawn(command)
        except OSError as exc:
            logger.warning("Unable to start %r: %s", command, exc)
            yield f"{ERROR_PREFIX}{exc}"
            return

        try:
            stdout = cast(asyncio.StreamReader, process.stdout)
            try:
                async for raw in stdout:
                    yield _decode(raw)
                await process.wait()
            except (OSError, ValueError) as exc:
                logger.warning("Output of %r broke off: %s", command, exc)
                yield f"{ERROR_PREFIX}{exc}"
        finally:
            if process.returncode is None:
                _kill(process)
                await process.wait()

    async def collect(self, invocation: str) -> list[str]:
        return [line async for line in self.run(invocation)]

    async def run_handshake(self, invocation: str, timeout: float) -> str | None:
        """Run to completion within ``timeout`` seconds; ``None`` if it could not."""
        if self._missing_tool(invocation) is not None:
            return None
        command = self.resolve(invocation)
        try:
            process = await self._spawn(command)
        except OSError as exc:
            logger.debug("Unable to start %r: %s", command, exc)
            return None

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.debug("%r did not finish within %.1fs", command, timeout)
            return None
        finally:
            if process.returncode is None:
                _kill(process)
                await process.wait()
        return output.decode("utf-8", errors="replace")
