"""Emulator lifecycle: spawn, boot, provision on first boot, stop, crash reconciliation.

State machine per logical device name:

    stopped -> starting -> running -> stopping -> stopped
    starting | running -> stopped          (process exited on its own)

The registry is owned by `LifecycleManager` and only touched while holding the
per-name lock. Each tracked device has two supervised tasks: the boot task,
which also runs first-boot provisioning (cancelled by `stop` or by process
exit), and the exit watcher. Once booted, the verified serial is pinned in the
correlator until the record is dropped. A terminal `stopped` event is emitted
at most once per record.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from avd_orchestrator.config import BootConfig, EmulatorConfig, ProvisioningConfig
from avd_orchestrator.errors import OrchestratorError, ToolInvocationError
from avd_orchestrator.events import EventNotifier, StatusChanged
from avd_orchestrator.provisioning.engine import ProvisioningEngine
from avd_orchestrator.runtime.android.controller import AndroidController
from avd_orchestrator.runtime.android.executor import InputDispatcher
from avd_orchestrator.runtime.boot import BootWatcher
from avd_orchestrator.runtime.correlator import DeviceCorrelator, MatchTier

logger = logging.getLogger(__name__)


class DeviceState(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ProcessHandle(Protocol):
    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> Optional[int]: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


@dataclass
class DeviceRecord:
    name: str
    process: ProcessHandle
    state: DeviceState = DeviceState.STARTING
    started_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    serial: Optional[str] = None
    exit_code: Optional[int] = None
    boot_task: Optional[asyncio.Task] = None
    exit_task: Optional[asyncio.Task] = None
    stopped_emitted: bool = False

    @property
    def intentionally_stopped(self) -> bool:
        return self.stop_requested.is_set()

    def status_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.state.value,
            "startTime": self.started_at.isoformat(),
            "uptimeMs": int((time.monotonic() - self.started_monotonic) * 1000),
            "serial": self.serial,
            "pid": getattr(self.process, "pid", None),
        }


SpawnFn = Callable[[str], Awaitable[ProcessHandle]]


def _retrieve_outcome(task: asyncio.Task) -> None:
    # A cancelled caller no longer awaits the task; mark its error as seen.
    if not task.cancelled():
        task.exception()


class LifecycleManager:
    def __init__(
        self,
        *,
        spawn: SpawnFn,
        controller: AndroidController,
        correlator: DeviceCorrelator,
        boot_watcher: BootWatcher,
        notifier: EventNotifier,
        provisioning: Optional[ProvisioningEngine] = None,
        dispatcher: Optional[InputDispatcher] = None,
        boot_config: Optional[BootConfig] = None,
        emulator_config: Optional[EmulatorConfig] = None,
        provisioning_config: Optional[ProvisioningConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._spawn = spawn
        self._controller = controller
        self._correlator = correlator
        self._boot_watcher = boot_watcher
        self._notifier = notifier
        self._provisioning = provisioning
        self._dispatcher = dispatcher
        self._boot_config = boot_config or BootConfig()
        self._emulator_config = emulator_config or EmulatorConfig()
        self._provisioning_config = provisioning_config or ProvisioningConfig()
        self._sleep = sleep
        self._records: Dict[str, DeviceRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------- Registry access -------------------------------

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def state_of(self, name: str) -> DeviceState:
        rec = self._records.get(name)
        return rec.state if rec is not None else DeviceState.STOPPED

    def is_running(self, name: str) -> bool:
        return self.state_of(name) is DeviceState.RUNNING

    def is_tracked(self, name: str) -> bool:
        return name in self._records

    def tracked_names(self) -> List[str]:
        return sorted(self._records)

    def get_status(self, name: str) -> Dict[str, Any]:
        rec = self._records.get(name)
        if rec is None:
            return {"name": name, "status": DeviceState.STOPPED.value}
        return rec.status_dict()

    # --------------------------------- Events ---------------------------------

    async def _emit_status(self, name: str, state: DeviceState) -> None:
        await self._notifier.emit(StatusChanged(id=name, name=name, status=state.value))

    async def _emit_stopped_once(self, rec: DeviceRecord) -> None:
        if rec.stopped_emitted:
            return
        rec.stopped_emitted = True
        await self._emit_status(rec.name, DeviceState.STOPPED)

    # --------------------------------- Start ---------------------------------

    async def start(self, name: str) -> Dict[str, Any]:
        async with self._lock_for(name):
            rec = self._records.get(name)
            if rec is not None:
                return {
                    "message": f"Emulator {name} already {rec.state.value}",
                    "status": rec.state.value,
                    "name": name,
                }
            process = await self._spawn(name)
            rec = DeviceRecord(name=name, process=process)
            self._records[name] = rec
            rec.exit_task = asyncio.create_task(self._watch_exit(rec))
            rec.boot_task = asyncio.create_task(self._supervise(rec))
            rec.boot_task.add_done_callback(_retrieve_outcome)

        # The boot task outlives a cancelled caller, so first-boot provisioning
        # still runs once the device is up.
        try:
            result = await asyncio.shield(rec.boot_task)
        except asyncio.CancelledError:
            if not rec.boot_task.cancelled():
                raise
            result = None

        if result is not None:
            return result
        if rec.intentionally_stopped:
            logger.info("Start of emulator %s aborted by stop", name)
            return {
                "message": f"Start of emulator {name} aborted",
                "status": DeviceState.STOPPED.value,
                "name": name,
            }
        phase = "after boot" if rec.serial is not None else "during boot"
        raise ToolInvocationError(
            f"Emulator {name} exited with code {rec.exit_code} {phase}",
            returncode=rec.exit_code,
        )

    async def _supervise(self, rec: DeviceRecord) -> Optional[Dict[str, Any]]:
        """Boot, then provision on first boot. None when the record was superseded."""

        serial = await self._boot(rec)
        if serial is None:
            return None
        result: Dict[str, Any] = {
            "message": f"Emulator {rec.name} started successfully",
            "status": DeviceState.RUNNING.value,
            "name": rec.name,
            "serial": serial,
        }
        if self._provisioning is not None and self._provisioning_config.auto_provision:
            result.update(await self._provision_first_boot(rec.name))
        return result

    async def _boot(self, rec: DeviceRecord) -> Optional[str]:
        try:
            if self._boot_config.initial_delay_s > 0:
                await self._sleep(self._boot_config.initial_delay_s)
            serial = await self._boot_watcher.await_ready(
                rec.name, sole_instance=lambda: set(self._records) == {rec.name}
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Emulator %s failed to boot: %s", rec.name, e)
            await self._abandon(rec)
            raise

        async with self._lock_for(rec.name):
            if self._records.get(rec.name) is not rec or rec.state is not DeviceState.STARTING:
                return None
            rec.state = DeviceState.RUNNING
            rec.serial = serial
            self._correlator.pin(rec.name, serial)
            if self._dispatcher is not None:
                self._dispatcher.remember(rec.name, serial)
            await self._emit_status(rec.name, DeviceState.RUNNING)
        return serial

    def _untrack(self, rec: DeviceRecord) -> None:
        if self._records.get(rec.name) is not rec:
            return
        del self._records[rec.name]
        self._correlator.unpin(rec.name)
        if self._dispatcher is not None:
            self._dispatcher.forget(rec.name)

    async def _abandon(self, rec: DeviceRecord) -> None:
        """Tear down an instance that never finished booting."""

        async with self._lock_for(rec.name):
            if self._records.get(rec.name) is not rec:
                return
            rec.stop_requested.set()
            self._untrack(rec)
        await self._terminate(rec)

    async def _provision_first_boot(self, name: str) -> Dict[str, Any]:
        assert self._provisioning is not None
        out: Dict[str, Any] = {"provisioning": None}
        try:
            if await asyncio.to_thread(self._provisioning.is_completed, name):
                logger.info("Provisioning already completed for %s", name)
                return out
            result = await self._provisioning.provision(name)
            out["provisioning"] = result.to_dict()
            if self._provisioning_config.auto_launch and result.installed:
                out["launched"] = await self._provisioning.launch_provisioned(name)
        except OrchestratorError as e:
            logger.exception("Post-boot provisioning failed for %s", name)
            out["provisioningError"] = str(e)
        return out

    # ------------------------------ Stop / exit ------------------------------

    async def stop(self, name: str) -> Dict[str, Any]:
        async with self._lock_for(name):
            rec = self._records.get(name)
            if rec is None:
                return {"message": "Emulator not running", "status": DeviceState.STOPPED.value, "name": name}

            logger.info("Stopping emulator: %s", name)
            rec.stop_requested.set()
            rec.state = DeviceState.STOPPING
            await self._emit_status(name, DeviceState.STOPPING)
            if rec.boot_task is not None and not rec.boot_task.done():
                rec.boot_task.cancel()
            if self._dispatcher is not None:
                self._dispatcher.forget(name)

            await self._shutdown(rec)

            self._untrack(rec)
            await self._emit_stopped_once(rec)

        return {"message": f"Emulator {name} stopped", "status": DeviceState.STOPPED.value, "name": name}

    async def _shutdown(self, rec: DeviceRecord) -> None:
        grace = self._emulator_config.stop_grace_s
        graceful = False
        try:
            serial = rec.serial or await self._identify(rec.name)
            if serial is not None:
                res = await asyncio.to_thread(self._controller.with_serial(serial).emu_kill)
                graceful = res.ok()
        except ToolInvocationError as e:
            logger.warning("Graceful shutdown of %s failed: %s", rec.name, e)

        if graceful:
            try:
                await asyncio.wait_for(rec.process.wait(), timeout=grace)
                return
            except asyncio.TimeoutError:
                logger.warning("Emulator %s ignored emu kill; terminating", rec.name)
        await self._terminate(rec)

    async def _identify(self, name: str) -> Optional[str]:
        # Substring matches are never trusted with `emu kill`.
        match = await self._correlator.resolve_once(name)
        if match is None or match.tier >= MatchTier.SUBSTRING:
            return None
        return match.serial

    async def _terminate(self, rec: DeviceRecord) -> None:
        process = rec.process
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._emulator_config.stop_grace_s)
        except asyncio.TimeoutError:
            logger.warning("Emulator %s did not exit after SIGTERM; killing", rec.name)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _watch_exit(self, rec: DeviceRecord) -> None:
        code = await rec.process.wait()
        async with self._lock_for(rec.name):
            rec.exit_code = code
            current = self._records.get(rec.name) is rec
            previous = rec.state
            self._untrack(rec)
            if rec.boot_task is not None and not rec.boot_task.done():
                rec.boot_task.cancel()
            if not current or rec.intentionally_stopped:
                logger.info("Emulator %s exited with code %s", rec.name, code)
                return
            logger.warning(
                "Emulator %s exited unexpectedly with code %s (was %s)",
                rec.name,
                code,
                previous.value,
            )
            if previous is DeviceState.RUNNING:
                await self._emit_stopped_once(rec)

    async def shutdown(self) -> None:
        """Stop every tracked device."""

        for name in self.tracked_names():
            try:
                await self.stop(name)
            except OrchestratorError:
                logger.exception("Failed to stop emulator %s during shutdown", name)
