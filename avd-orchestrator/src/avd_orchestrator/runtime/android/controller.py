"""adb bridge used by the orchestrator.

A thin, synchronous wrapper around the `adb` binary. Async callers run these
methods through `asyncio.to_thread`, so every call here is allowed to block.

Notes
-----
* Only the text contracts of adb are relied upon (stdout/stderr/returncode).
* The serial is optional; commands issued without one target adb's default
  device, which is only safe when a single emulator is attached.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from avd_orchestrator.errors import ToolInvocationError

logger = logging.getLogger(__name__)

ONLINE_STATE = "device"


@dataclass(frozen=True)
class AdbResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()


@dataclass(frozen=True)
class BridgeDevice:
    serial: str
    state: str

    @property
    def online(self) -> bool:
        # "offline" and "unauthorized" instances cannot be probed.
        return self.state == ONLINE_STATE


def parse_devices_output(txt: str) -> List[BridgeDevice]:
    """Parse `adb devices` output into (serial, state) pairs, in listed order."""

    devices: list[BridgeDevice] = []
    for raw in (txt or "").splitlines():
        line = raw.strip()
        if not line or line.startswith("*") or line.startswith("List of devices attached"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        devices.append(BridgeDevice(serial=parts[0], state=parts[1]))
    return devices


def parse_packages_output(txt: str) -> List[str]:
    return [
        line.strip()[len("package:") :].strip()
        for line in (txt or "").splitlines()
        if line.strip().startswith("package:")
    ]


def _parse_component(component: str) -> Tuple[Optional[str], Optional[str]]:
    """Parse Android component string 'pkg/.Act' or 'pkg/pkg.Act'."""

    component = str(component).strip()
    if "/" not in component:
        return None, None
    pkg, activity = component.split("/", 1)
    pkg = pkg.strip()
    activity = activity.strip()
    if not pkg or not activity:
        return None, None
    if activity.startswith("."):
        activity = pkg + activity
    return pkg, activity


def _extract_component_from_dumpsys_activity(txt: str) -> Optional[str]:
    patterns = (
        r"mResumedActivity:.*?\s([\w.]+/[\w.$]+)",
        r"mFocusedActivity:.*?\s([\w.]+/[\w.$]+)",
        # Android 15/16 style
        r"\bResumedActivity:\s*ActivityRecord\{.*?\s([\w.]+/[\w.$]+)\b",
        r"\bResumed:\s*ActivityRecord\{.*?\s([\w.]+/[\w.$]+)\b",
        r"\btopResumedActivity=ActivityRecord\{.*?\s([\w.]+/[\w.$]+)\b",
        r"\bmCurrentFocus=Window\{.*?\s([\w.]+/[\w.$]+)\}",
        r"\bmFocusedApp=ActivityRecord\{.*?\s([\w.]+/[\w.$]+)\b",
    )
    for pat in patterns:
        m = re.search(pat, txt)
        if m:
            return m.group(1)
    return None


def _extract_component_from_dumpsys_window(txt: str) -> Optional[str]:
    for pat in (
        r"mCurrentFocus=Window\{.*?\s([\w.]+/[\w.$]+)\}",
        r"mFocusedApp=.*?ActivityRecord\{.*?\s([\w.]+/[\w.$]+)\b",
    ):
        m = re.search(pat, txt)
        if m:
            return m.group(1)
    return None


class AndroidController:
    """Thin wrapper around adb for device queries, installs and input."""

    def __init__(
        self,
        *,
        adb_path: str = "adb",
        serial: Optional[str] = None,
        timeout_s: float = 30.0,
        install_timeout_s: float = 300.0,
    ) -> None:
        self._adb_path = adb_path
        self._serial = serial
        self._timeout_s = timeout_s
        self._install_timeout_s = install_timeout_s

    @property
    def serial(self) -> Optional[str]:
        return self._serial

    @property
    def adb_path(self) -> str:
        return self._adb_path

    def with_serial(self, serial: Optional[str]) -> "AndroidController":
        return AndroidController(
            adb_path=self._adb_path,
            serial=serial,
            timeout_s=self._timeout_s,
            install_timeout_s=self._install_timeout_s,
        )

    def _base_cmd(self) -> list[str]:
        cmd = [self._adb_path]
        if self._serial:
            cmd += ["-s", self._serial]
        return cmd

    def adb(self, *args: str, timeout_s: float | None = None, check: bool = True) -> AdbResult:
        """Run an adb command and return stdout/stderr/returncode.

        A missing binary or a timeout always raises ToolInvocationError; a
        non-zero exit raises only when `check` is set.
        """

        cmd = self._base_cmd() + list(args)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout_s if timeout_s is None else float(timeout_s),
            )
        except FileNotFoundError as e:
            raise ToolInvocationError(f"adb not found: {self._adb_path}", args=cmd) from e
        except subprocess.TimeoutExpired as e:
            raise ToolInvocationError(
                f"adb command timed out after {e.timeout}s: {' '.join(cmd)}", args=cmd
            ) from e

        result = AdbResult(
            args=cmd,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            returncode=proc.returncode,
        )
        if check and not result.ok():
            raise ToolInvocationError(
                f"adb command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}",
                args=cmd,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def adb_shell(
        self,
        command: str,
        *,
        timeout_s: float | None = None,
        timeout_ms: int | None = None,
        check: bool = True,
    ) -> AdbResult:
        if timeout_ms is not None:
            timeout_s = float(timeout_ms) / 1000.0
        return self.adb("shell", command, timeout_s=timeout_s, check=check)

    def list_devices(self) -> List[BridgeDevice]:
        # `adb devices` is global; never pass -s here.
        res = self.with_serial(None).adb("devices", check=True)
        return parse_devices_output(res.stdout)

    def online_devices(self) -> List[BridgeDevice]:
        return [d for d in self.list_devices() if d.online]

    def getprop(self, prop: str, *, timeout_s: float | None = None) -> str:
        """Return a system property value, or "" when unset or unreadable."""

        res = self.adb_shell(f"getprop {shlex.quote(prop)}", timeout_s=timeout_s, check=False)
        if not res.ok():
            return ""
        return res.stdout.strip()

    def install(self, apk_path: str | Path, *, replace: bool = True) -> AdbResult:
        """Install an APK; success requires adb to print `Success`."""

        args = ["install"]
        if replace:
            args.append("-r")
        args.append(str(apk_path))
        res = self.adb(*args, timeout_s=self._install_timeout_s, check=False)
        if not res.ok() or "Success" not in res.stdout:
            failure = re.search(r"Failure \[([^\]]+)\]", res.output)
            reason = failure.group(1) if failure else (res.output or f"rc={res.returncode}")
            raise ToolInvocationError(
                f"Installation failed: {reason}",
                args=res.args,
                returncode=res.returncode,
                stdout=res.stdout,
                stderr=res.stderr,
            )
        return res

    def list_packages(self, *, third_party: bool = True) -> List[str]:
        cmd = "pm list packages -3" if third_party else "pm list packages"
        res = self.adb_shell(cmd, check=True)
        return parse_packages_output(res.stdout)

    def emu_kill(self) -> AdbResult:
        """Ask the emulator console to shut down gracefully."""

        return self.adb("emu", "kill", check=False)

    def get_foreground(self, *, timeout_s: float | None = None) -> Dict[str, Any]:
        """Best-effort foreground app/activity."""

        component: Optional[str] = None
        res = self.adb_shell("dumpsys activity activities", timeout_s=timeout_s, check=False)
        if res.ok() and res.stdout:
            component = _extract_component_from_dumpsys_activity(res.stdout)

        if component is None:
            res2 = self.adb_shell("dumpsys window windows", timeout_s=timeout_s, check=False)
            if res2.ok() and res2.stdout:
                component = _extract_component_from_dumpsys_window(res2.stdout)

        pkg, activity = _parse_component(component) if component else (None, None)
        return {
            "package": pkg,
            "activity": activity,
            "component": component,
        }
