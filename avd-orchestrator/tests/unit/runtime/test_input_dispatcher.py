from __future__ import annotations

import asyncio
import shlex

import pytest

from android_fakes import FakeController, failed, no_sleep
from avd_orchestrator.config import CorrelationConfig
from avd_orchestrator.errors import (
    CorrelationError,
    InvalidInputError,
    ToolInvocationError,
    UnsupportedActionError,
)
from avd_orchestrator.runtime.android.executor import InputDispatcher, build_input_commands
from avd_orchestrator.runtime.correlator import DeviceCorrelator

AVD_PROP = "ro.boot.qemu.avd_name"


def _split(cmds: list[str]) -> list[list[str]]:
    return [shlex.split(c) for c in cmds]


def _dispatcher(ctrl: FakeController) -> InputDispatcher:
    correlator = DeviceCorrelator(ctrl, CorrelationConfig(window_s=0), sleep=no_sleep)
    return InputDispatcher(controller=ctrl, correlator=correlator, timeout_s=0.1)


def test_tap_and_swipe_commands() -> None:
    assert _split(build_input_commands("tap", {"x": 12, "y": "34"})) == [["input", "tap", "12", "34"]]
    assert _split(
        build_input_commands(
            "swipe", {"startX": 1, "startY": 2, "endX": 3, "endY": 4, "durationMs": 250}
        )
    ) == [["input", "swipe", "1", "2", "3", "4", "250"]]
    assert _split(build_input_commands("SWIPE", {"startX": 1, "startY": 2, "endX": 3, "endY": 4})) == [
        ["input", "swipe", "1", "2", "3", "4"]
    ]


def test_multiline_text_is_split_on_enter() -> None:
    assert _split(build_input_commands("text", {"text": "hello world\nnext"})) == [
        ["input", "text", "hello%sworld"],
        ["input", "keyevent", "66"],
        ["input", "text", "next"],
    ]


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"code": 4}, "4"),
        ({"keycode": "66"}, "66"),
        ({"code": "home"}, "3"),
        ({"code": "keycode_volume_up"}, "KEYCODE_VOLUME_UP"),
    ],
)
def test_keyevent_codes(payload, expected) -> None:
    assert _split(build_input_commands("keyevent", payload)) == [["input", "keyevent", expected]]


@pytest.mark.parametrize(
    "action, payload",
    [
        ("tap", {"x": 1}),
        ("swipe", {"startX": 1, "startY": 2, "endX": 3}),
        ("text", {"text": ""}),
        ("keyevent", {}),
        ("keyevent", {"code": "not a key"}),
    ],
)
def test_invalid_payloads_are_rejected(action, payload) -> None:
    with pytest.raises(InvalidInputError):
        build_input_commands(action, payload)


def test_unsupported_action_has_no_side_effect() -> None:
    ctrl = FakeController()
    ctrl.add_device("emulator-5554", props={AVD_PROP: "Pixel_A"})
    dispatcher = _dispatcher(ctrl)

    with pytest.raises(UnsupportedActionError, match="Unknown action: pinch"):
        asyncio.run(dispatcher.dispatch("Pixel_A", "pinch", {}))
    assert ctrl.shell_commands == []


def test_dispatch_resolves_and_caches_serial() -> None:
    ctrl = FakeController()
    ctrl.add_device("emulator-5554", props={AVD_PROP: "Pixel_A"})
    dispatcher = _dispatcher(ctrl)

    res = asyncio.run(dispatcher.dispatch("Pixel_A", "tap", {"x": 5, "y": 6}))
    assert res == {"message": "Input sent successfully", "action": "tap", "serial": "emulator-5554"}
    assert ctrl.state.shell_calls == [("emulator-5554", "input tap 5 6")]
    assert dispatcher.cached_serial("Pixel_A") == "emulator-5554"

    # The cached serial is used even once the device stops answering enumeration.
    ctrl.remove_device("emulator-5554")
    asyncio.run(dispatcher.dispatch("Pixel_A", "keyevent", {"code": "back"}))
    assert ctrl.state.shell_calls[-1] == ("emulator-5554", "input keyevent 4")


def test_dispatch_failure_forgets_serial() -> None:
    ctrl = FakeController()
    ctrl.add_device("emulator-5554", props={AVD_PROP: "Pixel_A"})
    ctrl.state.shell_handler = lambda serial, cmd: failed("error: device offline")
    dispatcher = _dispatcher(ctrl)
    dispatcher.remember("Pixel_A", "emulator-5554")

    with pytest.raises(ToolInvocationError, match="device offline"):
        asyncio.run(dispatcher.dispatch("Pixel_A", "tap", {"x": 1, "y": 1}))
    assert dispatcher.cached_serial("Pixel_A") is None


def test_dispatch_to_unknown_device_fails_to_correlate() -> None:
    dispatcher = _dispatcher(FakeController())
    with pytest.raises(CorrelationError):
        asyncio.run(dispatcher.dispatch("Pixel_A", "tap", {"x": 1, "y": 1}))
