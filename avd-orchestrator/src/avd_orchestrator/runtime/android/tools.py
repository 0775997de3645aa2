"""Wrappers for the AVD manager and the emulator runtime binaries."""

from __future__ import annotations

import asyncio
import logging
import platform
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set

from avd_orchestrator.config import (
    EmulatorConfig,
    ToolsConfig,
    detect_constrained,
    host_arch,
)
from avd_orchestrator.errors import DeviceAlreadyExists, DeviceNotFound, ToolInvocationError

logger = logging.getLogger(__name__)

_DRAIN_CHUNK = 64 * 1024


def _run_tool(
    cmd: Sequence[str],
    *,
    timeout_s: float,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    try:
        proc = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            input=input_text,
            timeout=timeout_s,
        )
    except FileNotFoundError as e:
        raise ToolInvocationError(f"{cmd[0]} not found", args=cmd) from e
    except subprocess.TimeoutExpired as e:
        raise ToolInvocationError(
            f"{cmd[0]} timed out after {e.timeout}s: {' '.join(cmd)}", args=cmd
        ) from e
    if proc.returncode != 0:
        raise ToolInvocationError(
            f"{cmd[0]} failed (rc={proc.returncode}): {' '.join(cmd)}\n"
            f"stderr: {proc.stderr or ''}",
            args=cmd,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
    return proc


def parse_avd_list(txt: str) -> List[str]:
    # Newer emulator builds interleave "INFO    | ..." log lines with the names.
    return [
        line.strip()
        for line in (txt or "").splitlines()
        if line.strip() and "|" not in line
    ]


def system_image(api_level: int, arch: str, tag: str = "google_apis") -> str:
    return f"system-images;android-{int(api_level)};{tag};{arch}"


class AvdManager:
    """Creates, deletes and lists AVD profiles."""

    def __init__(self, tools: ToolsConfig, emulator: Optional[EmulatorConfig] = None) -> None:
        self._tools = tools
        self._emulator = emulator or EmulatorConfig()

    def list_avds(self) -> List[str]:
        proc = _run_tool(
            [self._tools.emulator_path, "-list-avds"],
            timeout_s=self._tools.command_timeout_s,
        )
        return parse_avd_list(proc.stdout)

    def exists(self, name: str) -> bool:
        return name in self.list_avds()

    def create(
        self,
        name: str,
        *,
        api_level: Optional[int] = None,
        arch: Optional[str] = None,
        device: Optional[str] = None,
    ) -> dict:
        if self.exists(name):
            raise DeviceAlreadyExists(name)

        api_level = int(api_level or self._emulator.api_level)
        arch = arch or self._emulator.arch or host_arch()
        device = device or self._emulator.device_profile
        image = system_image(api_level, arch, self._emulator.image_tag)
        cmd = [
            self._tools.avdmanager_path,
            "create",
            "avd",
            "-n",
            name,
            "-k",
            image,
            "-d",
            device,
            "--force",
        ]
        logger.info("Creating emulator: %s", " ".join(cmd))
        # avdmanager asks whether to create a custom hardware profile.
        _run_tool(cmd, timeout_s=max(self._tools.command_timeout_s, 120.0), input_text="no\n")
        return {
            "message": f"Emulator '{name}' created successfully",
            "name": name,
            "apiLevel": api_level,
            "arch": arch,
            "device": device,
            "systemImage": image,
        }

    def delete(self, name: str) -> None:
        if not self.exists(name):
            raise DeviceNotFound(name)
        _run_tool(
            [self._tools.avdmanager_path, "delete", "avd", "-n", name],
            timeout_s=self._tools.command_timeout_s,
        )
        logger.info("Deleted emulator profile %s", name)


@dataclass(frozen=True)
class HostProfile:
    arch: str
    constrained: bool
    apple_silicon: bool

    @classmethod
    def detect(cls, config: EmulatorConfig) -> "HostProfile":
        arch = config.arch or host_arch()
        apple = platform.system() == "Darwin" and arch.startswith("arm64")
        return cls(arch=arch, constrained=detect_constrained(config), apple_silicon=apple)


class EmulatorLauncher:
    """Builds the emulator argument list and spawns the runtime process."""

    def __init__(
        self,
        tools: ToolsConfig,
        config: EmulatorConfig,
        *,
        host: Optional[HostProfile] = None,
    ) -> None:
        self._tools = tools
        self._config = config
        self._host = host or HostProfile.detect(config)
        self._drain_tasks: Set[asyncio.Task] = set()

    @property
    def host(self) -> HostProfile:
        return self._host

    def build_args(self, name: str) -> List[str]:
        cfg = self._config
        host = self._host
        camera = "none" if host.constrained else cfg.camera
        gpu = cfg.gpu
        memory_mb = cfg.memory_mb or (4096 if host.apple_silicon else 2048)
        cores = cfg.cores or (4 if host.apple_silicon else 2)

        args = [
            self._tools.emulator_path,
            "-avd",
            name,
            "-no-audio",
            "-no-snapshot-save",
            "-no-snapshot-load",
            "-camera-back",
            camera,
            "-camera-front",
            camera,
            "-read-only",
            "-no-metrics",
        ]
        if host.constrained:
            # Software rendering, no acceleration, no window.
            args += ["-accel", "off", "-no-boot-anim"]
            gpu = "swiftshader_indirect"
        args += ["-gpu", gpu, "-memory", str(memory_mb), "-cores", str(cores)]
        if cfg.headless or host.constrained:
            args.append("-no-window")
        args += list(cfg.extra_args)
        return args

    async def spawn(self, name: str) -> asyncio.subprocess.Process:
        args = self.build_args(name)
        logger.info("Starting emulator: %s", name)
        logger.debug("Emulator command: %s", " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise ToolInvocationError(
                f"emulator not found: {self._tools.emulator_path}", args=args
            ) from e

        task = asyncio.create_task(self._drain(name, process))
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)
        return process

    async def _drain(self, name: str, process: asyncio.subprocess.Process) -> None:
        stream = process.stdout
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(_DRAIN_CHUNK)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            # Emit an overlong partial line rather than buffering it unbounded.
            if len(pending) >= _DRAIN_CHUNK:
                lines.append(pending)
                pending = b""
            for raw in lines:
                self._log_output(name, raw)
        self._log_output(name, pending)

    @staticmethod
    def _log_output(name: str, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            logger.debug("Emulator %s: %s", name, line)
