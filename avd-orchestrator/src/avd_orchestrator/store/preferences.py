"""Durable per-device provisioning preferences and completion status.

The whole store is one JSON object keyed by logical device name:

    {
      "PhonePe-Stage-V2": {
        "logicalName": "PhonePe-Stage-V2",
        "preferredAppName": "phonepe",
        "deeplink": "phonepe://home",
        "createdAt": "2026-01-01T00:00:00+00:00",
        "installationStatus": {
          "completed": true,
          "installedAt": "...",
          "installedApps": ["a.apk"],
          "failedApps": [{"name": "b.apk", "error": "..."}],
          "totalAttempted": 2
        }
      }
    }

Records outlive emulator stop/start cycles. Every read-modify-write goes through
`PreferenceStore.update`, which holds a process-wide lock for the whole cycle.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from jsonschema import Draft202012Validator

from avd_orchestrator.errors import PreferenceStoreError
from avd_orchestrator.store.io import read_json, write_json_atomic

logger = logging.getLogger(__name__)

_NULLABLE_STR = {"type": ["string", "null"]}

PREFERENCE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["logicalName", "createdAt"],
    "properties": {
        "logicalName": {"type": "string", "minLength": 1},
        "preferredAppName": _NULLABLE_STR,
        "deeplink": _NULLABLE_STR,
        "createdAt": {"type": "string"},
        "installationStatus": {
            "type": ["object", "null"],
            "required": ["completed"],
            "properties": {
                "completed": {"type": "boolean"},
                "installedAt": _NULLABLE_STR,
                "installedApps": {"type": "array", "items": {"type": "string"}},
                "failedApps": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["name"],
                        "properties": {"name": {"type": "string"}, "error": _NULLABLE_STR},
                    },
                },
                "totalAttempted": {"type": "integer", "minimum": 0},
            },
        },
    },
}

_VALIDATOR = Draft202012Validator(PREFERENCE_SCHEMA)


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


@dataclass(frozen=True)
class FailedApp:
    name: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "error": self.error}


@dataclass(frozen=True)
class InstallationStatus:
    completed: bool = False
    installed_at: Optional[str] = None
    installed_apps: List[str] = field(default_factory=list)
    failed_apps: List[FailedApp] = field(default_factory=list)
    total_attempted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "installedAt": self.installed_at,
            "installedApps": list(self.installed_apps),
            "failedApps": [f.to_dict() for f in self.failed_apps],
            "totalAttempted": self.total_attempted,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InstallationStatus":
        return cls(
            completed=bool(data.get("completed")),
            installed_at=data.get("installedAt"),
            installed_apps=[str(a) for a in data.get("installedApps") or []],
            failed_apps=[
                FailedApp(name=str(f["name"]), error=str(f.get("error") or ""))
                for f in data.get("failedApps") or []
            ],
            total_attempted=int(data.get("totalAttempted") or 0),
        )


@dataclass(frozen=True)
class DevicePreference:
    logical_name: str
    preferred_app_name: Optional[str] = None
    deeplink: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    installation_status: Optional[InstallationStatus] = None

    @property
    def provisioning_completed(self) -> bool:
        return self.installation_status is not None and self.installation_status.completed

    def with_status(self, status: Optional[InstallationStatus]) -> "DevicePreference":
        return replace(self, installation_status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logicalName": self.logical_name,
            "preferredAppName": self.preferred_app_name,
            "deeplink": self.deeplink,
            "createdAt": self.created_at,
            "installationStatus": (
                self.installation_status.to_dict() if self.installation_status else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DevicePreference":
        status = data.get("installationStatus")
        return cls(
            logical_name=str(data["logicalName"]),
            preferred_app_name=data.get("preferredAppName"),
            deeplink=data.get("deeplink"),
            created_at=str(data["createdAt"]),
            installation_status=InstallationStatus.from_dict(status) if status else None,
        )


def _parse_entry(name: str, raw: Any) -> Optional[DevicePreference]:
    errors = sorted(_VALIDATOR.iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        loc = "/".join(str(p) for p in errors[0].path)
        logger.warning("Skipping corrupt preference %s: %s: %s", name, loc, errors[0].message)
        return None
    return DevicePreference.from_dict(raw)


class PreferenceStore:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_raw(self) -> Dict[str, Any]:
        try:
            doc = read_json(self._path)
        except (OSError, json.JSONDecodeError) as e:
            raise PreferenceStoreError(f"Cannot read preferences {self._path}: {e}") from e
        if doc is None:
            return {}
        if not isinstance(doc, dict):
            raise PreferenceStoreError(f"Preferences document must be an object: {self._path}")
        return doc

    def _write_raw(self, doc: Dict[str, Any]) -> None:
        try:
            write_json_atomic(self._path, doc)
        except OSError as e:
            raise PreferenceStoreError(f"Cannot write preferences {self._path}: {e}") from e

    def get(self, name: str) -> Optional[DevicePreference]:
        with self._lock:
            raw = self._read_raw().get(name)
        if raw is None:
            return None
        return _parse_entry(name, raw)

    def all(self) -> Dict[str, DevicePreference]:
        with self._lock:
            doc = self._read_raw()
        out: Dict[str, DevicePreference] = {}
        for name, raw in doc.items():
            pref = _parse_entry(name, raw)
            if pref is not None:
                out[name] = pref
        return out

    def put(self, pref: DevicePreference) -> DevicePreference:
        self.update(pref.logical_name, lambda _current: pref)
        return pref

    def remove(self, name: str) -> bool:
        with self._lock:
            doc = self._read_raw()
            if name not in doc:
                return False
            del doc[name]
            self._write_raw(doc)
            return True

    def update(
        self,
        name: str,
        fn: Callable[[Optional[DevicePreference]], Optional[DevicePreference]],
    ) -> Optional[DevicePreference]:
        """Atomically replace the record for `name` with `fn(current)`.

        Returning None from `fn` deletes the record. Unparseable records for
        other devices are written back untouched.
        """

        with self._lock:
            doc = self._read_raw()
            current = _parse_entry(name, doc[name]) if name in doc else None
            new = fn(current)
            if new is None:
                doc.pop(name, None)
            else:
                if new.logical_name != name:
                    raise PreferenceStoreError(
                        f"Preference key mismatch: {name!r} != {new.logical_name!r}"
                    )
                doc[name] = new.to_dict()
            self._write_raw(doc)
            return new
