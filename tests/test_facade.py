from __future__ import annotations

import asyncio

import pytest

from adbnet.discovery import Address, ScanProgress
from adbnet.facade import (
    ExecutionFacade,
    OperationKind,
    build_invocation,
    escape_text,
    quote_arg,
    validate_custom_command,
)


class FakeRunner:
    def __init__(self, outputs: dict[str, list[str]] | None = None) -> None:
        self.outputs = outputs or {}
        self.invocations: list[str] = []

    async def run(self, invocation: str):
        self.invocations.append(invocation)
        for line in self.outputs.get(invocation, []):
            yield line

    async def collect(self, invocation: str) -> list[str]:
        return [line async for line in self.run(invocation)]


class FakeProbe:
    def __init__(self) -> None:
        self.connected: list[Address] = []

    async def connect(self, address: Address) -> bool:
        self.connected.append(address)
        return True

    async def disconnect(self, address: Address) -> bool:
        return False


class FakeScanner:
    async def scan(self):
        yield ScanProgress(Address('10.0.0.1'), 0.0, ())
        yield ScanProgress(None, 1.0, (), done=True)


def _facade(runner: FakeRunner, probe: FakeProbe | None = None) -> ExecutionFacade:
    return ExecutionFacade(runner, probe or FakeProbe(), FakeScanner())


def _run(facade: ExecutionFacade, kind: str, **args) -> list[str]:
    async def collect() -> list[str]:
        return [line async for line in facade.run_named_operation(kind, args)]

    return asyncio.run(collect())


def test_escape_text_for_input() -> None:
    assert escape_text('a b&c') == 'a%sb\\&c'
    assert escape_text('say "hi" (now); it\'s') == 'say%s\\"hi\\"%s\\(now\\)\\;%sit\\\'s'


def test_input_text_invocation_contains_escaped_payload() -> None:
    runner = FakeRunner()
    _run(_facade(runner), 'input-text', text='a b&c')
    assert runner.invocations == ['adb shell input text "a%sb\\&c"']


def test_transfer_invocations_quote_paths() -> None:
    assert build_invocation(OperationKind.PUSH, {'source': '/tmp/my file.apk', 'target': '/sdcard/'}) == (
        'adb push "/tmp/my file.apk" "/sdcard/"'
    )
    assert build_invocation(OperationKind.PULL, {'source': '/sdcard/a.png', 'target': '/tmp'}) == (
        'adb pull "/sdcard/a.png" "/tmp"'
    )
    assert quote_arg('$(reboot)') == '"\\$(reboot)"'


def test_other_invocations() -> None:
    assert build_invocation(OperationKind.KEY_EVENT, {'code': 3}) == 'adb shell input keyevent 3'
    assert build_invocation(OperationKind.DEVICES, {}) == 'adb devices'
    assert build_invocation(OperationKind.CUSTOM, {'command': ' adb shell dumpsys battery '}) == (
        'adb shell dumpsys battery'
    )


def test_push_streams_runner_output() -> None:
    runner = FakeRunner({'adb push "/tmp/a" "/sdcard/a"': ['/tmp/a: 1 file pushed']})
    assert _run(_facade(runner), 'push', source='/tmp/a', target='/sdcard/a') == ['/tmp/a: 1 file pushed']


def test_invalid_operations_raise_before_running() -> None:
    runner = FakeRunner()
    facade = _facade(runner)
    with pytest.raises(ValueError):
        facade.run_named_operation('screenshot', {})
    with pytest.raises(ValueError):
        facade.run_named_operation('push', {'source': '/tmp/a'})
    with pytest.raises(ValueError):
        facade.run_named_operation('key-event', {'code': 'HOME'})
    assert runner.invocations == []


def test_list_path_missing() -> None:
    invocation = 'adb shell ls -la "/missing"'
    runner = FakeRunner({invocation: ['ls: /missing: No such file or directory']})
    assert _run(_facade(runner), 'list-path', path='/missing') == ['invalid path: /missing']
    assert runner.invocations == [invocation]


def test_list_path_file() -> None:
    entry = '-rw-rw---- 1 root sdcard_rw 12 2024-01-01 10:00 /sdcard/a.txt'
    runner = FakeRunner({'adb shell ls -la "/sdcard/a.txt"': [entry]})
    assert _run(_facade(runner), 'list-path', path='/sdcard/a.txt') == ['file: /sdcard/a.txt', entry]
    assert len(runner.invocations) == 1


def test_list_path_directory_lists_again() -> None:
    invocation = 'adb shell ls -la "/sdcard"'
    listing = [
        'total 24',
        'drwxrwx--x 2 root sdcard_rw 4096 2024-01-01 10:00 DCIM',
        '-rw-rw---- 1 root sdcard_rw 12 2024-01-01 10:00 notes.txt',
    ]
    runner = FakeRunner({invocation: listing})
    facade = _facade(runner)

    first = _run(facade, 'list-path', path='/sdcard')
    second = _run(facade, 'list-path', path='/sdcard')

    assert first == ['directory: /sdcard', *listing]
    assert first == second
    assert runner.invocations == [invocation] * 4


def test_list_path_forwards_runner_error() -> None:
    runner = FakeRunner({'adb shell ls -la "/sdcard"': ['error: adb not found']})
    assert _run(_facade(runner), 'list-path', path='/sdcard') == ['error: adb not found']


def test_list_path_forwards_adb_diagnostic() -> None:
    invocation = 'adb shell ls -la "/sdcard"'
    runner = FakeRunner({invocation: ['adb: no devices/emulators found']})
    assert _run(_facade(runner), 'list-path', path='/sdcard') == ['adb: no devices/emulators found']
    assert runner.invocations == [invocation]


def test_custom_command_must_be_plain_adb() -> None:
    assert validate_custom_command('  adb shell getprop ro.product.model ') == 'adb shell getprop ro.product.model'
    for command in (
        'touch /tmp/x',
        'adbx devices',
        'adb devices; rm -rf /tmp/x',
        'adb shell echo $(id)',
        'adb shell echo `id`',
        'adb devices | tee /tmp/x',
        'adb devices && reboot',
        'adb devices > /tmp/x',
        'adb devices\nreboot',
    ):
        with pytest.raises(ValueError):
            validate_custom_command(command)


def test_rejected_custom_command_never_runs() -> None:
    runner = FakeRunner()
    with pytest.raises(ValueError):
        _facade(runner).run_named_operation('custom', {'command': 'touch /tmp/x; echo ran'})
    assert runner.invocations == []


def test_is_device_connected() -> None:
    runner = FakeRunner({'adb devices': ['List of devices attached', '192.168.1.100:5555\tdevice', '']})
    assert asyncio.run(_facade(runner).is_device_connected())

    runner = FakeRunner({'adb devices': ['List of devices attached', '192.168.1.100:5555\toffline']})
    assert not asyncio.run(_facade(runner).is_device_connected())


def test_connect_builds_address() -> None:
    probe = FakeProbe()
    assert asyncio.run(_facade(FakeRunner(), probe).connect('192.168.1.100'))
    assert probe.connected == [Address('192.168.1.100', 5555)]
    with pytest.raises(ValueError):
        asyncio.run(_facade(FakeRunner(), probe).connect('bad host'))


def test_scan_for_devices_delegates() -> None:
    async def collect() -> list[ScanProgress]:
        return [event async for event in _facade(FakeRunner()).scan_for_devices()]

    events = asyncio.run(collect())
    assert events[-1].done
