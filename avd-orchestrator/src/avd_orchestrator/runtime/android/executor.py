from __future__ import annotations

import asyncio
import logging
import re
import shlex
from typing import Any, Dict, Mapping, Optional

from avd_orchestrator.errors import InvalidInputError, ToolInvocationError, UnsupportedActionError
from avd_orchestrator.runtime.android.controller import AndroidController
from avd_orchestrator.runtime.correlator import DeviceCorrelator

logger = logging.getLogger(__name__)

SUPPORTED_ACTIONS = ("tap", "swipe", "text", "keyevent")

_KEYCODE_NAME_RE = re.compile(r"^KEYCODE_[A-Z0-9_]+$")


def _safe_int(v: Any) -> Optional[int]:
    try:
        if v is None or isinstance(v, bool):
            return None
        return int(v)
    except (TypeError, ValueError):
        return None


def _adb_shell_cmd(parts: list[str]) -> str:
    return " ".join(shlex.quote(p) for p in parts)


_KEY_TO_KEYEVENT: dict[str, str] = {
    "enter": "66",  # KEYCODE_ENTER
    "backspace": "67",  # KEYCODE_DEL
    "delete": "67",  # KEYCODE_DEL
    "del": "67",  # KEYCODE_DEL
    "space": "62",  # KEYCODE_SPACE
    "tab": "61",  # KEYCODE_TAB
    "escape": "111",  # KEYCODE_ESCAPE
    "esc": "111",  # KEYCODE_ESCAPE
    "back": "4",  # KEYCODE_BACK
    "home": "3",  # KEYCODE_HOME
    "menu": "82",  # KEYCODE_MENU
    "app_switch": "187",  # KEYCODE_APP_SWITCH
}


def _type_text_cmds(text: str) -> list[str]:
    cmds: list[str] = []

    parts = re.split(r"\r?\n", text)
    for i, part in enumerate(parts):
        if part:
            # `input text` treats %s as a space and splits on real spaces.
            safe = part.replace(" ", "%s")
            cmds.append(_adb_shell_cmd(["input", "text", safe]))
        if i < len(parts) - 1:
            cmds.append(_adb_shell_cmd(["input", "keyevent", "66"]))
    return cmds


def _keycode(payload: Mapping[str, Any]) -> str:
    raw = payload.get("code", payload.get("keycode", payload.get("text")))
    if isinstance(raw, bool) or raw is None:
        raise InvalidInputError("keyevent requires a key code")
    code = _safe_int(raw)
    if code is not None:
        if code < 0:
            raise InvalidInputError(f"Invalid key code: {raw!r}")
        return str(code)
    name = str(raw).strip()
    alias = _KEY_TO_KEYEVENT.get(name.lower())
    if alias is not None:
        return alias
    if _KEYCODE_NAME_RE.match(name.upper()):
        return name.upper()
    raise InvalidInputError(f"Invalid key code: {raw!r}")


def build_input_commands(action: str, payload: Mapping[str, Any]) -> list[str]:
    """Translate one input request into `adb shell` command strings.

    Raises before anything is sent to the device, so an invalid request has no
    side effect.
    """

    action_type = str(action or "").strip().lower()
    payload = payload if isinstance(payload, Mapping) else {}

    if action_type == "tap":
        x = _safe_int(payload.get("x"))
        y = _safe_int(payload.get("y"))
        if x is None or y is None:
            raise InvalidInputError("tap requires integer x and y")
        return [_adb_shell_cmd(["input", "tap", str(x), str(y)])]

    if action_type == "swipe":
        coords = [_safe_int(payload.get(k)) for k in ("startX", "startY", "endX", "endY")]
        if any(c is None for c in coords):
            raise InvalidInputError("swipe requires integer startX, startY, endX and endY")
        parts = ["input", "swipe"] + [str(c) for c in coords]
        duration_ms = _safe_int(payload.get("durationMs", payload.get("duration_ms")))
        if duration_ms is not None:
            parts.append(str(max(0, duration_ms)))
        return [_adb_shell_cmd(parts)]

    if action_type == "text":
        raw = payload.get("text", payload.get("literal"))
        text = raw if isinstance(raw, str) else ("" if raw is None else str(raw))
        cmds = _type_text_cmds(text)
        if not cmds:
            raise InvalidInputError("text requires a non-empty literal")
        return cmds

    if action_type == "keyevent":
        return [_adb_shell_cmd(["input", "keyevent", _keycode(payload)])]

    raise UnsupportedActionError(action_type or "missing")


class InputDispatcher:
    """Send tap/swipe/text/keyevent input to the instance backing a logical name."""

    def __init__(
        self,
        *,
        controller: AndroidController,
        correlator: DeviceCorrelator,
        timeout_s: float = 30.0,
    ) -> None:
        self._controller = controller
        self._correlator = correlator
        self._timeout_s = float(timeout_s)
        self._serials: Dict[str, str] = {}

    def remember(self, name: str, serial: str) -> None:
        self._serials[name] = serial

    def forget(self, name: str) -> None:
        self._serials.pop(name, None)

    def cached_serial(self, name: str) -> Optional[str]:
        return self._serials.get(name)

    async def resolve_serial(self, name: str) -> str:
        serial = self._serials.get(name)
        if serial is None:
            serial = await self._correlator.require(name)
            self._serials[name] = serial
        return serial

    async def dispatch(
        self, name: str, action: str, payload: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        cmds = build_input_commands(action, payload or {})
        serial = await self.resolve_serial(name)
        ctr = self._controller.with_serial(serial)
        for cmd in cmds:
            res = await asyncio.to_thread(
                ctr.adb_shell, cmd, timeout_s=self._timeout_s, check=False
            )
            if not res.ok():
                # The serial may be stale after a reboot; re-resolve next time.
                self.forget(name)
                raise ToolInvocationError(
                    f"Input failed: {res.output or f'rc={res.returncode}'}",
                    args=res.args,
                    returncode=res.returncode,
                    stdout=res.stdout,
                    stderr=res.stderr,
                )
        logger.debug("Sent %s input to %s (%s)", action, name, serial)
        return {"message": "Input sent successfully", "action": str(action).lower(), "serial": serial}
