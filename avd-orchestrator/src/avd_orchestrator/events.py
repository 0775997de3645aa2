"""State-change and provisioning events published to the transport layer."""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from avd_orchestrator.config import EventsConfig

logger = logging.getLogger(__name__)


class StatusChanged(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_name: ClassVar[str] = "status-changed"

    id: str
    name: str
    status: str


class FailedAppPayload(BaseModel):
    name: str
    error: str


class ProvisioningResultEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    event_name: ClassVar[str] = "provisioning-result"

    device_name: str = Field(alias="deviceName")
    installed: List[str] = Field(default_factory=list)
    failed: List[FailedAppPayload] = Field(default_factory=list)
    skipped: bool = False


Event = Union[StatusChanged, ProvisioningResultEvent]


def event_payload(event: Event) -> Dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True)


class EventNotifier:
    """Sink for orchestrator events."""

    async def emit(self, event: Event) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LoggingNotifier(EventNotifier):
    async def emit(self, event: Event) -> None:
        logger.info("event %s: %s", event.event_name, event_payload(event))


class RecordingNotifier(EventNotifier):
    """Keeps every event in memory, in emission order."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    async def emit(self, event: Event) -> None:
        self.events.append(event)

    def statuses(self, name: Optional[str] = None) -> List[str]:
        return [
            e.status
            for e in self.events
            if isinstance(e, StatusChanged) and (name is None or e.name == name)
        ]

    def provisioning_results(self) -> List[ProvisioningResultEvent]:
        return [e for e in self.events if isinstance(e, ProvisioningResultEvent)]


class WebhookNotifier(EventNotifier):
    """POSTs `{"event": <name>, "data": <payload>}` to a URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def emit(self, event: Event) -> None:
        resp = await self._client.post(
            self._url,
            json={"event": event.event_name, "data": event_payload(event)},
        )
        resp.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class FanoutNotifier(EventNotifier):
    """Delivers each event to every sink; one failing sink does not affect the rest."""

    def __init__(self, sinks: Sequence[EventNotifier]) -> None:
        self._sinks = list(sinks)

    @property
    def sinks(self) -> List[EventNotifier]:
        return list(self._sinks)

    async def emit(self, event: Event) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception:
                logger.exception(
                    "Event sink %s failed for %s", type(sink).__name__, event.event_name
                )

    async def aclose(self) -> None:
        for sink in self._sinks:
            await sink.aclose()


def build_notifier(
    config: Optional[EventsConfig] = None,
    *,
    extra: Sequence[EventNotifier] = (),
) -> FanoutNotifier:
    config = config or EventsConfig()
    sinks: List[EventNotifier] = []
    if config.log_events:
        sinks.append(LoggingNotifier())
    if config.webhook_url:
        sinks.append(WebhookNotifier(config.webhook_url, timeout_s=config.webhook_timeout_s))
    sinks.extend(extra)
    return FanoutNotifier(sinks)
