from __future__ import annotations

import asyncio
import logging
import shlex
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from avd_orchestrator.config import ProvisioningConfig
from avd_orchestrator.errors import DeeplinkLaunchError, ToolInvocationError
from avd_orchestrator.runtime.android.controller import AdbResult, AndroidController

logger = logging.getLogger(__name__)

_LAUNCH_ERROR_MARKERS = (
    "Error:",
    "Activity not started",
    "monkey aborted",
    "No activities found",
)


def _adb_shell_cmd(parts: list[str]) -> str:
    return " ".join(shlex.quote(p) for p in parts)


def _component(package: str, activity: str) -> str:
    if activity.startswith(package + "."):
        return f"{package}/{activity[len(package):]}"
    if "." not in activity:
        return f"{package}/.{activity}"
    return f"{package}/{activity}"


def _launch_failed(res: AdbResult) -> bool:
    return not res.ok() or any(marker in res.output for marker in _LAUNCH_ERROR_MARKERS)


class AppLauncher:
    """Launches installed apps, optionally through a deep link.

    Deep-link verification inspects the foreground app. When the foreground
    cannot be determined at all the launch is treated as successful.
    """

    def __init__(
        self,
        controller: AndroidController,
        config: Optional[ProvisioningConfig] = None,
        *,
        verify_window_s: float = 3.0,
        poll_interval_s: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._controller = controller
        self._config = config or ProvisioningConfig()
        self._verify_window_s = verify_window_s
        self._poll_interval_s = poll_interval_s
        self._sleep = sleep
        self._clock = clock

    async def installed_packages(self, serial: str) -> List[str]:
        ctr = self._controller.with_serial(serial)
        return await asyncio.to_thread(ctr.list_packages, third_party=False)

    async def _shell(self, serial: str, cmd: str, *, timeout_s: Optional[float] = None) -> AdbResult:
        ctr = self._controller.with_serial(serial)
        return await asyncio.to_thread(ctr.adb_shell, cmd, timeout_s=timeout_s, check=False)

    async def launch_package(
        self, serial: str, package: str, *, activity: Optional[str] = None
    ) -> Dict[str, Any]:
        if activity:
            cmd = _adb_shell_cmd(["am", "start", "-n", _component(package, activity)])
            method = "activity"
        else:
            cmd = _adb_shell_cmd(
                ["monkey", "-p", package, "-c", "android.intent.category.LAUNCHER", "1"]
            )
            method = "monkey"
        res = await self._shell(serial, cmd)
        if _launch_failed(res):
            raise ToolInvocationError(
                f"Failed to launch app {package}: {res.output or f'rc={res.returncode}'}",
                args=res.args,
                returncode=res.returncode,
                stdout=res.stdout,
                stderr=res.stderr,
            )
        logger.info("Launched %s on %s via %s", package, serial, method)
        return {"package": package, "activity": activity, "method": method}

    async def _foreground_package(self, serial: str) -> Optional[str]:
        ctr = self._controller.with_serial(serial)
        try:
            fg = await asyncio.to_thread(ctr.get_foreground, timeout_s=2.0)
        except ToolInvocationError:
            return None
        return fg.get("package") if isinstance(fg, dict) else None

    async def _verify_foreground(self, serial: str, package: str) -> Optional[bool]:
        """True if `package` reached the foreground, None if undeterminable."""

        seen: Optional[str] = None
        deadline = self._clock() + self._verify_window_s
        while True:
            current = await self._foreground_package(serial)
            if current == package:
                return True
            if current is not None:
                seen = current
            if self._clock() >= deadline:
                break
            await self._sleep(self._poll_interval_s)
        if seen is None:
            return None
        raise DeeplinkLaunchError(f"Deep link opened {seen} instead of {package}")

    async def _open_deeplink(self, serial: str, package: Optional[str], deeplink: str) -> AdbResult:
        parts = ["am", "start", "-W", "-a", "android.intent.action.VIEW", "-d", deeplink]
        if package:
            parts += ["-p", package]
        try:
            res = await self._shell(
                serial, _adb_shell_cmd(parts), timeout_s=self._config.deeplink_timeout_s
            )
        except ToolInvocationError as e:
            raise DeeplinkLaunchError(f"Deep link launch failed: {e}") from e
        if _launch_failed(res):
            raise DeeplinkLaunchError(
                f"Deep link launch failed: {res.output or f'rc={res.returncode}'}"
            )
        return res

    async def launch_deeplink(
        self,
        serial: str,
        package: str,
        deeplink: str,
        *,
        activity: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            await self._open_deeplink(serial, package, deeplink)
            verified = await self._verify_foreground(serial, package)
            if verified is None:
                logger.warning("Could not verify deep link %s for %s; assuming success", deeplink, package)
            logger.info("Opened deep link %s in %s on %s", deeplink, package, serial)
            return {
                "package": package,
                "activity": activity,
                "method": "deeplink",
                "deeplink": deeplink,
                "verified": verified,
            }
        except DeeplinkLaunchError as e:
            logger.warning("%s; falling back", e)
            fallback_error = str(e)

        if self._config.deeplink_browser_fallback:
            await self._open_deeplink(serial, None, deeplink)
            return {
                "package": package,
                "activity": None,
                "method": "browser",
                "deeplink": deeplink,
                "verified": None,
                "deeplinkError": fallback_error,
            }

        out = await self.launch_package(serial, package, activity=activity)
        out.update({"deeplink": deeplink, "verified": None, "deeplinkError": fallback_error})
        return out
