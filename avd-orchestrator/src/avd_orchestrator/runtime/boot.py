from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from avd_orchestrator.config import BootConfig
from avd_orchestrator.errors import BootTimeout, ToolInvocationError
from avd_orchestrator.runtime.android.controller import AndroidController
from avd_orchestrator.runtime.correlator import DeviceCorrelator, MatchTier

logger = logging.getLogger(__name__)

# Either one reporting "1" counts as booted.
READINESS_PROPERTIES = ("sys.boot_completed", "dev.bootcomplete")


class BootWatcher:
    """Poll a booting emulator until Android reports boot completion."""

    def __init__(
        self,
        controller: AndroidController,
        correlator: DeviceCorrelator,
        config: Optional[BootConfig] = None,
        *,
        constrained: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._controller = controller
        self._correlator = correlator
        self._config = config or BootConfig()
        self._constrained = constrained
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        if self._constrained:
            return self._config.constrained_max_attempts
        return self._config.max_attempts

    async def _is_ready(self, serial: str) -> bool:
        ctr = self._controller.with_serial(serial)

        def probe() -> bool:
            return any(ctr.getprop(prop) == "1" for prop in READINESS_PROPERTIES)

        return await asyncio.to_thread(probe)

    async def _locate(self, name: str, sole_instance: Optional[Callable[[], bool]]) -> Optional[str]:
        devices = await self._correlator.candidates(name)
        if not devices:
            return None
        match = await self._correlator.resolve_once(name)
        if match is not None and match.tier < MatchTier.SUBSTRING:
            return match.serial
        if len(devices) == 1 and (sole_instance is None or sole_instance()):
            # Early in boot the avd-name property can be unset; with a single
            # instance attached and no other device tracked, presence identifies it.
            serial = devices[0].serial
            values = await self._correlator.probe(serial)
            primary = self._correlator.properties[:1]
            if not any(values.get(prop, "").strip() for prop in primary):
                return serial
        return None

    async def await_ready(self, name: str, *, sole_instance: Optional[Callable[[], bool]] = None) -> str:
        """Return the serial of the booted instance, or raise BootTimeout.

        `sole_instance` reports whether `name` is the only device being
        managed; presence-only identification is allowed only while it is true.
        """

        enumerated = False
        attempts = self.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                serial = await self._locate(name, sole_instance)
                if serial is not None:
                    enumerated = True
                    if await self._is_ready(serial):
                        logger.info("Emulator %s booted as %s (attempt %d)", name, serial, attempt)
                        return serial
            except ToolInvocationError as e:
                logger.warning("Boot probe for %s failed (attempt %d): %s", name, attempt, e)

            if attempt % 10 == 0:
                logger.info("Still booting %s... (%d/%d)", name, attempt, attempts)
            if attempt < attempts:
                await self._sleep(self._config.interval_s)

        raise BootTimeout(name, attempts=attempts, enumerated=enumerated)
