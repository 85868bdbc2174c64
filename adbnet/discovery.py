from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from collections import deque
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from typing import Any

import psutil

from adbnet.runner import CommandRunner

logger = logging.getLogger(__name__)

ADB_PORT = 5555
PORT_TIMEOUT = 1.0
HANDSHAKE_TIMEOUT = 2.0
SWEEP_SIZE = 255
DEFAULT_CONCURRENCY = 32

_HOSTNAME = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?$")


@dataclass(frozen=True)
class Address:
    host: str
    port: int = ADB_PORT

    def __post_init__(self) -> None:
        # Hosts end up inside shell invocations.
        if not _HOSTNAME.match(self.host):
            raise ValueError(f"Invalid host: {self.host!r}")
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}")

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str, default_port: int = ADB_PORT) -> Address:
        host, sep, port = value.strip().rpartition(":")
        if not sep:
            return cls(value.strip(), default_port)
        try:
            return cls(host, int(port))
        except ValueError as exc:
            raise ValueError(f"Invalid address: {value!r}") from exc


@dataclass(frozen=True)
class ScanProgress:
    current_address: Address | None
    fraction_complete: float
    discovered: tuple[Address, ...]
    done: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "current_address": str(self.current_address) if self.current_address else "",
            "fraction_complete": self.fraction_complete,
            "discovered": [str(address) for address in self.discovered],
            "done": self.done,
        }


class PortProbe:
    def is_open(self, host: str, port: int, timeout: float = PORT_TIMEOUT) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.settimeout(timeout)
                return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


class DeviceProbe:
    def __init__(
        self,
        runner: CommandRunner,
        ports: PortProbe | None = None,
        *,
        port_timeout: float = PORT_TIMEOUT,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ) -> None:
        self._runner = runner
        self._ports = ports or PortProbe()
        self.port_timeout = port_timeout
        self.handshake_timeout = handshake_timeout

    async def _handshake(self, invocation: str) -> str:
        output = await self._runner.run_handshake(invocation, self.handshake_timeout)
        return output or ""

    async def probe(self, address: Address) -> bool:
        try:
            is_open = await asyncio.to_thread(
                self._ports.is_open, address.host, address.port, self.port_timeout
            )
            if not is_open:
                return False
            output = await self._handshake(f"adb connect {address}")
        except Exception:
            logger.debug("Probe of %s failed", address, exc_info=True)
            return False
        return "connected" in output or "already" in output

    async def connect(self, address: Address) -> bool:
        try:
            output = await self._handshake(f"adb connect {address}")
        except Exception:
            logger.debug("Connect to %s failed", address, exc_info=True)
            return False
        connected = "connected" in output or "already" in output
        logger.info("Connect to %s: %s", address, "ok" if connected else "failed")
        return connected

    async def disconnect(self, address: Address) -> bool:
        try:
            output = await self._handshake(f"adb disconnect {address}")
        except Exception:
            logger.debug("Disconnect from %s failed", address, exc_info=True)
            return False
        return "disconnected" in output


def local_ipv4_addresses() -> list[str]:
    addresses: list[str] = []
    stats = psutil.net_if_stats()
    for name, entries in psutil.net_if_addrs().items():
        stat = stats.get(name)
        if not stat or not stat.isup:
            continue
        for entry in entries:
            if entry.family != socket.AF_INET or not entry.address:
                continue
            try:
                ip = ipaddress.IPv4Address(entry.address)
            except ValueError:
                continue
            if ip.is_loopback:
                continue
            addresses.append(str(ip))
    return addresses


def candidate_prefixes(addresses: list[str]) -> list[str]:
    prefixes: list[str] = []
    for address in addresses:
        prefix = address.rsplit(".", 1)[0]
        if prefix not in prefixes:
            prefixes.append(prefix)
    return prefixes


class SubnetScanner:
    """Sweeps every local /24 for devices answering the adb handshake.

    Probes run ahead of the emission cursor in a window of ``concurrency``
    tasks, but progress is always reported in ascending address order.
    ``fraction_complete`` restarts for each prefix and only the final
    ``done`` event carries 1.0.
    """

    def __init__(
        self,
        probe: DeviceProbe,
        *,
        port: int = ADB_PORT,
        concurrency: int = DEFAULT_CONCURRENCY,
        interfaces: Callable[[], list[str]] = local_ipv4_addresses,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._probe = probe
        self._interfaces = interfaces
        self.port = port
        self.concurrency = concurrency

    def candidates(self) -> list[tuple[Address, float]]:
        prefixes = candidate_prefixes(self._interfaces())
        logger.info("Scanning prefixes: %s", ", ".join(f"{p}.0/24" for p in prefixes) or "none")
        return [
            (Address(f"{prefix}.{suffix}", self.port), (suffix - 1) / SWEEP_SIZE)
            for prefix in prefixes
            for suffix in range(1, SWEEP_SIZE + 1)
        ]

    async def scan(self) -> AsyncGenerator[ScanProgress, None]:
        upcoming = iter(self.candidates())
        pending: deque[tuple[Address, float, asyncio.Task[bool]]] = deque()
        discovered: list[Address] = []

        def fill() -> None:
            while len(pending) < self.concurrency:
                entry = next(upcoming, None)
                if entry is None:
                    return
                address, fraction = entry
                pending.append((address, fraction, asyncio.create_task(self._probe.probe(address))))

        try:
            fill()
            while pending:
                address, fraction, task = pending[0]
                yield ScanProgress(address, fraction, tuple(discovered))
                found = await task
                pending.popleft()
                if found and address not in discovered:
                    logger.info("Found device at %s", address)
                    discovered.append(address)
                fill()
        finally:
            for _, _, task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*(task for _, _, task in pending), return_exceptions=True)

        logger.info("Scan finished: %d device(s)", len(discovered))
        yield ScanProgress(None, 1.0, tuple(discovered), done=True)
