"""Operations exposed to the transport layer.

`DeviceService` wires the components together and is the only object a
transport (HTTP routes, socket handlers, the CLI) needs to hold.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from avd_orchestrator.config import OrchestratorConfig
from avd_orchestrator.errors import (
    AppPackageNotFound,
    DeviceNotFound,
    DeviceNotRunning,
    InvalidInputError,
)
from avd_orchestrator.events import EventNotifier, build_notifier
from avd_orchestrator.lifecycle import LifecycleManager, SpawnFn
from avd_orchestrator.provisioning.descriptors import ApkInspector
from avd_orchestrator.provisioning.engine import ProvisioningEngine
from avd_orchestrator.runtime.android.controller import AndroidController
from avd_orchestrator.runtime.android.executor import InputDispatcher
from avd_orchestrator.runtime.android.tools import AvdManager, EmulatorLauncher
from avd_orchestrator.runtime.boot import BootWatcher
from avd_orchestrator.runtime.correlator import DeviceCorrelator
from avd_orchestrator.store.preferences import DevicePreference, PreferenceStore

logger = logging.getLogger(__name__)

_DEVICE_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_device_name(name: str) -> str:
    name = str(name or "").strip()
    if not _DEVICE_NAME_RE.match(name):
        raise InvalidInputError(
            f"Invalid emulator name {name!r}: use letters, digits, '.', '_' or '-'"
        )
    return name


def validate_deeplink(deeplink: Optional[str], preferred_app_name: Optional[str]) -> Optional[str]:
    if deeplink is None or not str(deeplink).strip():
        return None
    deeplink = str(deeplink).strip()
    if not preferred_app_name:
        raise InvalidInputError("A deep link requires a preferred app to preinstall")
    if "://" not in deeplink:
        raise InvalidInputError(f"Deep link must include a scheme (e.g. app://path): {deeplink}")
    return deeplink


class DeviceService:
    def __init__(
        self,
        *,
        config: OrchestratorConfig,
        controller: AndroidController,
        avd_manager: AvdManager,
        lifecycle: LifecycleManager,
        dispatcher: InputDispatcher,
        provisioning: ProvisioningEngine,
        store: PreferenceStore,
        notifier: EventNotifier,
    ) -> None:
        self.config = config
        self.controller = controller
        self.avd_manager = avd_manager
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.provisioning = provisioning
        self.store = store
        self.notifier = notifier

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        *,
        notifier: Optional[EventNotifier] = None,
        controller: Optional[AndroidController] = None,
        avd_manager: Optional[AvdManager] = None,
        spawn: Optional[SpawnFn] = None,
    ) -> "DeviceService":
        tools = config.tools
        controller = controller or AndroidController(
            adb_path=tools.adb_path,
            timeout_s=tools.command_timeout_s,
            install_timeout_s=tools.install_timeout_s,
        )
        notifier = notifier or build_notifier(config.events)
        launcher = EmulatorLauncher(tools, config.emulator)
        correlator = DeviceCorrelator(controller, config.correlation)
        boot_watcher = BootWatcher(
            controller,
            correlator,
            config.boot,
            constrained=launcher.host.constrained,
        )
        store = PreferenceStore(config.provisioning.preferences_path)
        provisioning = ProvisioningEngine(
            controller=controller,
            correlator=correlator,
            store=store,
            notifier=notifier,
            config=config.provisioning,
            inspector=ApkInspector(aapt_path=tools.aapt_path, timeout_s=tools.command_timeout_s),
        )
        dispatcher = InputDispatcher(
            controller=controller,
            correlator=correlator,
            timeout_s=tools.command_timeout_s,
        )
        lifecycle = LifecycleManager(
            spawn=spawn or launcher.spawn,
            controller=controller,
            correlator=correlator,
            boot_watcher=boot_watcher,
            notifier=notifier,
            provisioning=provisioning,
            dispatcher=dispatcher,
            boot_config=config.boot,
            emulator_config=config.emulator,
            provisioning_config=config.provisioning,
        )
        return cls(
            config=config,
            controller=controller,
            avd_manager=avd_manager or AvdManager(tools, config.emulator),
            lifecycle=lifecycle,
            dispatcher=dispatcher,
            provisioning=provisioning,
            store=store,
            notifier=notifier,
        )

    def _require_running(self, name: str) -> None:
        if not self.lifecycle.is_running(name):
            raise DeviceNotRunning(name)

    async def _serial(self, name: str) -> str:
        self._require_running(name)
        return await self.dispatcher.resolve_serial(name)

    # ----------------------------- Device profiles -----------------------------

    async def list_devices(self) -> List[Dict[str, Any]]:
        names = await asyncio.to_thread(self.avd_manager.list_avds)
        return [
            {"id": n, "name": n, "status": self.lifecycle.state_of(n).value} for n in names
        ]

    async def create_device(
        self,
        name: str,
        *,
        api_level: Optional[int] = None,
        arch: Optional[str] = None,
        device: Optional[str] = None,
        preferred_app_name: Optional[str] = None,
        deeplink: Optional[str] = None,
    ) -> Dict[str, Any]:
        name = validate_device_name(name)
        preferred_app_name = (preferred_app_name or "").strip() or None
        deeplink = validate_deeplink(deeplink, preferred_app_name)

        result = await asyncio.to_thread(
            self.avd_manager.create, name, api_level=api_level, arch=arch, device=device
        )
        if preferred_app_name or deeplink:
            pref = DevicePreference(
                logical_name=name,
                preferred_app_name=preferred_app_name,
                deeplink=deeplink,
            )
            await asyncio.to_thread(self.store.put, pref)
            result["preferences"] = pref.to_dict()
        logger.info("Emulator %s created", name)
        return result

    async def delete_device(self, name: str) -> Dict[str, Any]:
        if not await asyncio.to_thread(self.avd_manager.exists, name):
            raise DeviceNotFound(name)
        if self.lifecycle.is_tracked(name):
            await self.lifecycle.stop(name)
        await asyncio.to_thread(self.avd_manager.delete, name)
        await asyncio.to_thread(self.store.remove, name)
        return {"message": f"Emulator '{name}' deleted successfully", "name": name}

    # -------------------------------- Lifecycle --------------------------------

    async def start(self, name: str) -> Dict[str, Any]:
        if not await asyncio.to_thread(self.avd_manager.exists, name):
            raise DeviceNotFound(name)
        return await self.lifecycle.start(name)

    async def stop(self, name: str) -> Dict[str, Any]:
        return await self.lifecycle.stop(name)

    def get_status(self, name: str) -> Dict[str, Any]:
        return self.lifecycle.get_status(name)

    # ---------------------------------- Input ----------------------------------

    async def send_input(
        self, name: str, action: str, payload: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        self._require_running(name)
        return await self.dispatcher.dispatch(name, action, payload or {})

    # ---------------------------------- Apps ----------------------------------

    async def install_app(self, name: str, apk_path: str | Path) -> Dict[str, Any]:
        path = Path(apk_path)
        serial = await self._serial(name)
        if not path.is_file():
            raise AppPackageNotFound(str(path))
        await asyncio.to_thread(self.controller.with_serial(serial).install, path)
        return {"message": "App installed successfully", "fileName": path.name}

    async def list_installed_apps(self, name: str) -> List[str]:
        serial = await self._serial(name)
        return await asyncio.to_thread(self.controller.with_serial(serial).list_packages)

    async def launch_app(self, name: str, package: str) -> Dict[str, Any]:
        serial = await self._serial(name)
        out = await self.provisioning.launcher.launch_package(serial, package)
        out["message"] = f"App {package} launched successfully"
        return out

    async def launch_app_with_deeplink(
        self, name: str, package: str, deeplink: str
    ) -> Dict[str, Any]:
        deeplink = validate_deeplink(deeplink, package) or ""
        if not deeplink:
            raise InvalidInputError("A deep link is required")
        serial = await self._serial(name)
        return await self.provisioning.launcher.launch_deeplink(serial, package, deeplink)

    # ------------------------------- Provisioning -------------------------------

    async def list_provisionable_apps(self) -> List[Dict[str, Any]]:
        descriptors = await self.provisioning.list_descriptors_async()
        return [d.to_dict() for d in descriptors]

    async def provision(self, name: str, *, force: bool = False) -> Dict[str, Any]:
        self._require_running(name)
        result = await self.provisioning.provision(name, force=force)
        return result.to_dict()

    async def launch_provisioned(self, name: str) -> Dict[str, Any]:
        self._require_running(name)
        launched = await self.provisioning.launch_provisioned(name)
        package = launched.get("package") if launched else None
        return {
            "message": f"Launched {package}" if package else "Could not launch preinstalled app",
            "packageName": package,
            "launch": launched,
        }

    async def aclose(self) -> None:
        await self.lifecycle.shutdown()
        await self.notifier.aclose()
