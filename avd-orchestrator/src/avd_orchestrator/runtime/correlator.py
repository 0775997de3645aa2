"""Resolve a logical AVD name to the transient adb serial of its running instance.

Emulator serials (`emulator-5554`, ...) are assigned at boot and are not
stable, so resolution is repeated per operation. Each online instance is probed
for a few identifying properties and every probed value is compared with the
logical name using an ordered list of strategies:

  1. exact match
  2. delimiter-normalized match (case and punctuation stripped)
  3. substring containment, either direction, on normalized values

The best tier wins across all candidates; ties go to the candidate listed
first by `adb devices`, then to the higher-priority property.

Once the lifecycle has verified which instance a device booted as, the serial
is pinned to that name: it resolves directly, and it is never offered as a
candidate for any other name.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
import time
from dataclasses import dataclass
from typing import AbstractSet, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from avd_orchestrator.config import CorrelationConfig
from avd_orchestrator.errors import CorrelationError
from avd_orchestrator.runtime.android.controller import AndroidController, BridgeDevice

logger = logging.getLogger(__name__)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class MatchTier(enum.IntEnum):
    EXACT = 1
    NORMALIZED = 2
    SUBSTRING = 3


def normalize_name(value: str) -> str:
    return _NON_ALNUM_RE.sub("", str(value).lower())


def match_tier(logical_name: str, probed: str) -> Optional[MatchTier]:
    logical = str(logical_name).strip()
    value = str(probed or "").strip()
    if not logical or not value:
        return None
    if value == logical:
        return MatchTier.EXACT
    a = normalize_name(logical)
    b = normalize_name(value)
    # An empty normalized value would be a substring of everything.
    if not a or not b:
        return None
    if a == b:
        return MatchTier.NORMALIZED
    if a in b or b in a:
        return MatchTier.SUBSTRING
    return None


@dataclass(frozen=True)
class Resolution:
    serial: str
    tier: MatchTier
    prop: str
    value: str


def best_match(
    logical_name: str,
    candidates: Sequence[tuple[str, Dict[str, str]]],
    properties: Sequence[str],
) -> Optional[Resolution]:
    """Pick the best candidate from already-probed property values.

    `candidates` is a sequence of (serial, {prop: value}) in enumeration order.
    """

    best: Optional[Resolution] = None
    for serial, values in candidates:
        for prop in properties:
            tier = match_tier(logical_name, values.get(prop, ""))
            if tier is None:
                continue
            if best is None or tier < best.tier:
                best = Resolution(serial=serial, tier=tier, prop=prop, value=values[prop].strip())
            if best.tier == MatchTier.EXACT:
                return best
    return best


class DeviceCorrelator:
    def __init__(
        self,
        controller: AndroidController,
        config: Optional[CorrelationConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._controller = controller
        self._config = config or CorrelationConfig()
        self._sleep = sleep
        self._clock = clock
        self._pinned: Dict[str, str] = {}

    @property
    def properties(self) -> List[str]:
        return list(self._config.properties)

    # ---------------------------- Verified serials ----------------------------

    def pin(self, name: str, serial: str) -> None:
        self._pinned[name] = serial

    def unpin(self, name: str) -> None:
        self._pinned.pop(name, None)

    def pinned(self, name: str) -> Optional[str]:
        return self._pinned.get(name)

    def claimed_by_others(self, name: str) -> Set[str]:
        return {serial for owner, serial in self._pinned.items() if owner != name}

    # ------------------------------- Resolution -------------------------------

    async def online_devices(self) -> List[BridgeDevice]:
        return await asyncio.to_thread(self._controller.online_devices)

    async def probe(self, serial: str) -> Dict[str, str]:
        """Read the identifying properties of one instance."""

        ctr = self._controller.with_serial(serial)

        def probe_all() -> Dict[str, str]:
            return {prop: ctr.getprop(prop) for prop in self._config.properties}

        return await asyncio.to_thread(probe_all)

    async def candidates(
        self, name: str, *, exclude: AbstractSet[str] = frozenset()
    ) -> List[BridgeDevice]:
        """Online instances `name` may resolve to: not excluded, not pinned to another name."""

        skip = set(exclude) | self.claimed_by_others(name)
        return [d for d in await self.online_devices() if d.serial not in skip]

    async def resolve_once(
        self, name: str, *, exclude: AbstractSet[str] = frozenset()
    ) -> Optional[Resolution]:
        devices = await self.candidates(name, exclude=exclude)
        if not devices:
            return None
        probed = await asyncio.gather(*(self.probe(d.serial) for d in devices))
        candidates = [(d.serial, values) for d, values in zip(devices, probed)]
        return best_match(name, candidates, self._config.properties)

    async def _pinned_online(self, name: str) -> Optional[str]:
        serial = self._pinned.get(name)
        if serial is None:
            return None
        online = {d.serial for d in await self.online_devices()}
        return serial if serial in online else None

    async def resolve(self, name: str, *, window_s: Optional[float] = None) -> Optional[str]:
        """Return the serial running `name`, or None once the wait window expires.

        A pinned name only ever resolves to its pinned serial.
        """

        window = self._config.window_s if window_s is None else float(window_s)
        deadline = self._clock() + window
        while True:
            if name in self._pinned:
                serial = await self._pinned_online(name)
                if serial is not None:
                    return serial
            else:
                match = await self.resolve_once(name)
                if match is not None:
                    logger.debug(
                        "Resolved %s -> %s (%s via %s=%r)",
                        name,
                        match.serial,
                        match.tier.name.lower(),
                        match.prop,
                        match.value,
                    )
                    return match.serial
            if self._clock() >= deadline:
                return None
            await self._sleep(self._config.interval_s)

    async def require(self, name: str, *, window_s: Optional[float] = None) -> str:
        serial = await self.resolve(name, window_s=window_s)
        if serial is None:
            raise CorrelationError(name)
        return serial
