"""In-memory stand-ins for adb and the emulator process, shared by unit tests."""

from __future__ import annotations

import asyncio
import itertools
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from avd_orchestrator.errors import ToolInvocationError
from avd_orchestrator.runtime.android.controller import AdbResult, BridgeDevice


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class FakeClock:
    """Monotonic clock advanced only by the paired `sleep`."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += float(seconds)
        await asyncio.sleep(0)


class _AdbState:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.devices: List[BridgeDevice] = []
        self.props: Dict[str, Dict[str, Any]] = {}
        self.packages: Dict[str, List[str]] = {}
        self.install_failures: Dict[str, str] = {}
        self.installs: List[tuple[str, str]] = []
        self.shell_calls: List[tuple[Optional[str], str]] = []
        self.shell_handler: Optional[Callable[[Optional[str], str], AdbResult]] = None
        self.foreground: Dict[str, Any] = {"package": None, "activity": None, "component": None}
        self.emu_kills: List[str] = []
        self.on_emu_kill: Optional[Callable[[str], None]] = None


class FakeController:
    """Mimics `AndroidController`; every `with_serial` view shares one state."""

    def __init__(self, serial: Optional[str] = None, state: Optional[_AdbState] = None) -> None:
        self._serial = serial
        self.state = state or _AdbState()

    # ------------------------------ test setup ------------------------------

    def add_device(
        self, serial: str, *, state: str = "device", props: Optional[Dict[str, Any]] = None
    ) -> None:
        self.state.devices.append(BridgeDevice(serial=serial, state=state))
        self.state.props.setdefault(serial, {}).update(props or {})

    def set_prop(self, serial: str, prop: str, value: Any) -> None:
        self.state.props.setdefault(serial, {})[prop] = value

    def remove_device(self, serial: str) -> None:
        self.state.devices = [d for d in self.state.devices if d.serial != serial]

    # ---------------------------- controller API ----------------------------

    @property
    def serial(self) -> Optional[str]:
        return self._serial

    def with_serial(self, serial: Optional[str]) -> "FakeController":
        return FakeController(serial, self.state)

    def list_devices(self) -> List[BridgeDevice]:
        return list(self.state.devices)

    def online_devices(self) -> List[BridgeDevice]:
        return [d for d in self.state.devices if d.online]

    def getprop(self, prop: str, *, timeout_s: float | None = None) -> str:
        with self.state.lock:
            values = self.state.props.get(self._serial or "", {})
            value = values.get(prop, "")
            if isinstance(value, list):
                # Sequences are consumed one value per read; the last one sticks.
                return str(value.pop(0) if len(value) > 1 else value[0])
            return str(value)

    def adb_shell(
        self,
        command: str,
        *,
        timeout_s: float | None = None,
        timeout_ms: int | None = None,
        check: bool = True,
    ) -> AdbResult:
        with self.state.lock:
            self.state.shell_calls.append((self._serial, command))
        if self.state.shell_handler is not None:
            return self.state.shell_handler(self._serial, command)
        return AdbResult(args=["adb", "shell", command], stdout="", stderr="", returncode=0)

    def install(self, apk_path: str | Path, *, replace: bool = True) -> AdbResult:
        name = Path(apk_path).name
        with self.state.lock:
            self.state.installs.append((self._serial or "", name))
        reason = self.state.install_failures.get(name)
        if reason is not None:
            raise ToolInvocationError(f"Installation failed: {reason}")
        return AdbResult(args=["adb", "install", "-r", str(apk_path)], stdout="Success\n", stderr="", returncode=0)

    def list_packages(self, *, third_party: bool = True) -> List[str]:
        return list(self.state.packages.get(self._serial or "", []))

    def emu_kill(self) -> AdbResult:
        serial = self._serial or ""
        self.state.emu_kills.append(serial)
        if self.state.on_emu_kill is not None:
            self.state.on_emu_kill(serial)
        return AdbResult(args=["adb", "-s", serial, "emu", "kill"], stdout="OK", stderr="", returncode=0)

    def get_foreground(self, *, timeout_s: float | None = None) -> Dict[str, Any]:
        return dict(self.state.foreground)

    # ------------------------------ inspection ------------------------------

    @property
    def installed_files(self) -> List[str]:
        return [name for _serial, name in self.state.installs]

    @property
    def shell_commands(self) -> List[str]:
        return [cmd for _serial, cmd in self.state.shell_calls]


def ok(stdout: str = "", *, args: Optional[list[str]] = None) -> AdbResult:
    return AdbResult(args=args or ["adb"], stdout=stdout, stderr="", returncode=0)


def failed(stderr: str = "error", *, returncode: int = 1) -> AdbResult:
    return AdbResult(args=["adb"], stdout="", stderr=stderr, returncode=returncode)


_PIDS = itertools.count(4000)


class FakeProcess:
    """Emulator process double; `exit` may be called from any thread."""

    def __init__(self) -> None:
        self.pid = next(_PIDS)
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self._loop = asyncio.get_running_loop()
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self._loop.call_soon_threadsafe(self._exited.set)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.processes: List[FakeProcess] = []

    async def __call__(self, name: str) -> FakeProcess:
        self.calls.append(name)
        await asyncio.sleep(0)
        proc = FakeProcess()
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def write_apks(directory: Path, *names: str, size: int = 16) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(b"\x50\x4b" + b"\x00" * max(0, size - 2))
    return directory
