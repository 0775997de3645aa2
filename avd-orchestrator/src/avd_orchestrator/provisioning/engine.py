"""Idempotent bulk APK provisioning.

A provisioning run installs every package found in the source directory onto
one device, preferred app first, strictly one install at a time. A failing
install is recorded and the run continues. The aggregate outcome is folded
into the device's preference record, so later boots skip the run unless it
is forced.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from avd_orchestrator.config import ProvisioningConfig
from avd_orchestrator.errors import AppNotInstalled, ToolInvocationError
from avd_orchestrator.events import EventNotifier, ProvisioningResultEvent
from avd_orchestrator.provisioning.descriptors import AppDescriptor, ApkInspector, scan_descriptors
from avd_orchestrator.provisioning.launcher import AppLauncher
from avd_orchestrator.provisioning.package_guess import guess_installed_package
from avd_orchestrator.runtime.android.controller import AndroidController
from avd_orchestrator.runtime.correlator import DeviceCorrelator
from avd_orchestrator.store.preferences import (
    DevicePreference,
    FailedApp,
    InstallationStatus,
    PreferenceStore,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisioningResult:
    installed: List[str] = field(default_factory=list)
    failed: List[FailedApp] = field(default_factory=list)
    preferred_app: Optional[str] = None
    skipped: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.installed) and bool(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installed": list(self.installed),
            "failed": [f.to_dict() for f in self.failed],
            "preferredApp": self.preferred_app,
            "skipped": self.skipped,
        }


class ProvisioningEngine:
    def __init__(
        self,
        *,
        controller: AndroidController,
        correlator: DeviceCorrelator,
        store: PreferenceStore,
        notifier: EventNotifier,
        config: Optional[ProvisioningConfig] = None,
        inspector: Optional[ApkInspector] = None,
        launcher: Optional[AppLauncher] = None,
    ) -> None:
        self._controller = controller
        self._correlator = correlator
        self._store = store
        self._notifier = notifier
        self._config = config or ProvisioningConfig()
        self._inspector = inspector
        self._launcher = launcher or AppLauncher(controller, self._config)
        self._run_locks: Dict[str, asyncio.Lock] = {}

    @property
    def launcher(self) -> AppLauncher:
        return self._launcher

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._run_locks.get(name)
        if lock is None:
            lock = self._run_locks[name] = asyncio.Lock()
        return lock

    def list_descriptors(self) -> List[AppDescriptor]:
        return scan_descriptors(
            self._config.apk_dir,
            extension=self._config.package_extension,
            inspector=self._inspector,
        )

    async def list_descriptors_async(self) -> List[AppDescriptor]:
        return await asyncio.to_thread(self.list_descriptors)

    def is_completed(self, name: str) -> bool:
        pref = self._store.get(name)
        return pref is not None and pref.provisioning_completed

    async def provision(self, name: str, *, force: bool = False) -> ProvisioningResult:
        # Two runs for the same device never interleave their installs.
        async with self._lock_for(name):
            return await self._provision(name, force=force)

    async def _provision(self, name: str, *, force: bool) -> ProvisioningResult:
        pref = await asyncio.to_thread(self._store.get, name)
        preferred_name = pref.preferred_app_name if pref else None

        if pref is not None and pref.provisioning_completed and not force:
            status = pref.installation_status
            logger.info("Provisioning already completed for %s; skipping", name)
            result = ProvisioningResult(
                installed=list(status.installed_apps) if status else [],
                failed=[],
                preferred_app=preferred_name,
                skipped=True,
            )
            await self._emit(name, result)
            return result

        descriptors = await self.list_descriptors_async()
        serial = await self._correlator.require(name)
        ctr = self._controller.with_serial(serial)

        ordered = list(descriptors)
        preferred = next((d for d in descriptors if d.matches(preferred_name)), None)
        if preferred is not None:
            ordered.remove(preferred)
            ordered.insert(0, preferred)
        elif preferred_name:
            logger.warning("Preferred app %s not found in %s", preferred_name, self._config.apk_dir)

        installed: List[str] = []
        failed: List[FailedApp] = []
        logger.info("Provisioning %d app(s) onto %s (%s)", len(ordered), name, serial)
        for desc in ordered:
            try:
                await asyncio.to_thread(ctr.install, desc.file_path)
            except ToolInvocationError as e:
                logger.warning("Install of %s on %s failed: %s", desc.file_name, name, e)
                failed.append(FailedApp(name=desc.file_name, error=str(e)))
                continue
            logger.info("Installed %s on %s", desc.file_name, name)
            installed.append(desc.file_name)

        result = ProvisioningResult(
            installed=installed,
            failed=failed,
            preferred_app=preferred.file_name if preferred else preferred_name,
        )
        await asyncio.to_thread(self._record, name, result, len(ordered))
        await self._emit(name, result)
        return result

    def _record(self, name: str, result: ProvisioningResult, attempted: int) -> None:
        status = InstallationStatus(
            # An empty source directory leaves the device eligible for a later run.
            completed=attempted > 0,
            installed_at=utc_now_iso(),
            installed_apps=list(result.installed),
            failed_apps=list(result.failed),
            total_attempted=attempted,
        )

        def fold(current: Optional[DevicePreference]) -> DevicePreference:
            base = current or DevicePreference(logical_name=name)
            return base.with_status(status)

        self._store.update(name, fold)

    async def _emit(self, name: str, result: ProvisioningResult) -> None:
        await self._notifier.emit(
            ProvisioningResultEvent(
                device_name=name,
                installed=list(result.installed),
                failed=[f.to_dict() for f in result.failed],
                skipped=result.skipped,
            )
        )

    def _select_target(
        self, descriptors: List[AppDescriptor], preferred_name: Optional[str]
    ) -> Optional[AppDescriptor]:
        if not descriptors:
            return None
        preferred = next((d for d in descriptors if d.matches(preferred_name)), None)
        return preferred or descriptors[0]

    async def launch_provisioned(self, name: str) -> Optional[Dict[str, Any]]:
        """Launch the preferred (or first) provisioned app; None if there is none."""

        pref = await asyncio.to_thread(self._store.get, name)
        descriptors = await self.list_descriptors_async()
        target = self._select_target(descriptors, pref.preferred_app_name if pref else None)
        if target is None:
            logger.info("No provisioned apps to launch on %s", name)
            return None

        serial = await self._correlator.require(name)
        installed = await self._launcher.installed_packages(serial)

        package = target.package_name
        activity = target.main_activity
        if package is None:
            package = guess_installed_package(target.file_name, installed)
            activity = None
            if package is None:
                logger.warning("Could not determine a package name for %s", target.file_name)
                return None
            logger.info("Guessed package %s for %s", package, target.file_name)

        if package not in installed:
            raise AppNotInstalled(package, name)

        deeplink = pref.deeplink if pref else None
        if deeplink:
            out = await self._launcher.launch_deeplink(serial, package, deeplink, activity=activity)
        else:
            out = await self._launcher.launch_package(serial, package, activity=activity)
        out["fileName"] = target.file_name
        return out
