from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from android_fakes import FakeController, no_sleep, write_apks
from avd_orchestrator.config import CorrelationConfig, ProvisioningConfig
from avd_orchestrator.errors import AppNotInstalled, CorrelationError
from avd_orchestrator.events import RecordingNotifier
from avd_orchestrator.provisioning.descriptors import AppDescriptor
from avd_orchestrator.provisioning.engine import ProvisioningEngine
from avd_orchestrator.runtime.correlator import DeviceCorrelator
from avd_orchestrator.store.preferences import DevicePreference, PreferenceStore

AVD_PROP = "ro.boot.qemu.avd_name"
SERIAL = "emulator-5554"


class _StaticInspector:
    def __init__(self, mapping: dict[str, tuple]) -> None:
        self.mapping = mapping

    def inspect(self, path: Path):
        return self.mapping.get(path.name, (None, None))


def _setup(tmp_path, *apks: str, inspector=None):
    ctrl = FakeController()
    ctrl.add_device(SERIAL, props={AVD_PROP: "Pixel_A"})
    apk_dir = write_apks(tmp_path / "apks", *apks)
    store = PreferenceStore(tmp_path / "prefs.json")
    notifier = RecordingNotifier()
    engine = ProvisioningEngine(
        controller=ctrl,
        correlator=DeviceCorrelator(ctrl, CorrelationConfig(window_s=0), sleep=no_sleep),
        store=store,
        notifier=notifier,
        config=ProvisioningConfig(apk_dir=apk_dir, preferences_path=store.path),
        inspector=inspector,
    )
    return ctrl, store, notifier, engine


def test_install_failure_does_not_stop_the_run(tmp_path) -> None:
    ctrl, store, notifier, engine = _setup(tmp_path, "a.apk", "b.apk", "c.apk")
    ctrl.state.install_failures["b.apk"] = "INSTALL_FAILED_NO_MATCHING_ABIS"

    result = asyncio.run(engine.provision("Pixel_A"))

    assert result.installed == ["a.apk", "c.apk"]
    assert [f.name for f in result.failed] == ["b.apk"]
    assert result.partial
    assert ctrl.installed_files == ["a.apk", "b.apk", "c.apk"]

    status = store.get("Pixel_A").installation_status
    assert status.completed is True
    assert status.installed_apps == ["a.apk", "c.apk"]
    assert status.total_attempted == 3
    assert "INSTALL_FAILED_NO_MATCHING_ABIS" in status.failed_apps[0].error

    (event,) = notifier.provisioning_results()
    assert event.device_name == "Pixel_A"
    assert event.installed == ["a.apk", "c.apk"]
    assert event.failed[0].name == "b.apk"


def test_preferred_app_is_installed_first_and_only_once(tmp_path) -> None:
    ctrl, store, _notifier, engine = _setup(tmp_path, "a.apk", "b.apk", "phonepe.apk")
    store.put(DevicePreference(logical_name="Pixel_A", preferred_app_name="PhonePe"))

    result = asyncio.run(engine.provision("Pixel_A"))

    assert ctrl.installed_files == ["phonepe.apk", "a.apk", "b.apk"]
    assert result.preferred_app == "phonepe.apk"
    # The stored preference keeps its other fields.
    assert store.get("Pixel_A").preferred_app_name == "PhonePe"


def test_completed_provisioning_is_skipped_unless_forced(tmp_path) -> None:
    ctrl, _store, notifier, engine = _setup(tmp_path, "a.apk")

    asyncio.run(engine.provision("Pixel_A"))
    skipped = asyncio.run(engine.provision("Pixel_A"))

    assert skipped.skipped is True
    assert skipped.installed == ["a.apk"]
    assert ctrl.installed_files == ["a.apk"]
    assert [e.skipped for e in notifier.provisioning_results()] == [False, True]

    forced = asyncio.run(engine.provision("Pixel_A", force=True))
    assert forced.skipped is False
    assert ctrl.installed_files == ["a.apk", "a.apk"]


def test_empty_source_leaves_device_eligible(tmp_path) -> None:
    _ctrl, store, _notifier, engine = _setup(tmp_path)

    result = asyncio.run(engine.provision("Pixel_A"))

    assert result.installed == [] and result.failed == []
    assert engine.is_completed("Pixel_A") is False
    assert store.get("Pixel_A").installation_status.total_attempted == 0


def test_provision_requires_a_resolvable_device(tmp_path) -> None:
    ctrl, _store, _notifier, engine = _setup(tmp_path, "a.apk")
    ctrl.remove_device(SERIAL)
    with pytest.raises(CorrelationError):
        asyncio.run(engine.provision("Pixel_A"))
    assert ctrl.installed_files == []


def test_concurrent_runs_for_one_device_do_not_interleave(tmp_path) -> None:
    ctrl, _store, _notifier, engine = _setup(tmp_path, "a.apk", "b.apk")

    async def run():
        return await asyncio.gather(engine.provision("Pixel_A"), engine.provision("Pixel_A"))

    first, second = asyncio.run(run())
    assert first.skipped is False
    assert second.skipped is True
    assert ctrl.installed_files == ["a.apk", "b.apk"]


def test_launch_provisioned_uses_metadata_and_deeplink(tmp_path) -> None:
    inspector = _StaticInspector({"phonepe.apk": ("com.phonepe.app", None)})
    ctrl, store, _notifier, engine = _setup(tmp_path, "a.apk", "phonepe.apk", inspector=inspector)
    store.put(
        DevicePreference(logical_name="Pixel_A", preferred_app_name="phonepe", deeplink="phonepe://home")
    )
    ctrl.state.packages[SERIAL] = ["com.phonepe.app"]
    ctrl.state.foreground = {"package": "com.phonepe.app", "activity": None}

    res = asyncio.run(engine.launch_provisioned("Pixel_A"))

    assert res["package"] == "com.phonepe.app"
    assert res["method"] == "deeplink"
    assert res["fileName"] == "phonepe.apk"


def test_launch_provisioned_guesses_package_from_file_name(tmp_path) -> None:
    ctrl, _store, _notifier, engine = _setup(tmp_path, "paytm.apk")
    ctrl.state.packages[SERIAL] = ["net.one97.paytm", "com.paytm.app"]

    res = asyncio.run(engine.launch_provisioned("Pixel_A"))

    assert res["package"] == "com.paytm.app"
    assert res["method"] == "monkey"


def test_launch_provisioned_rejects_missing_package(tmp_path) -> None:
    inspector = _StaticInspector({"a.apk": ("com.example.a", None)})
    ctrl, _store, _notifier, engine = _setup(tmp_path, "a.apk", inspector=inspector)

    with pytest.raises(AppNotInstalled):
        asyncio.run(engine.launch_provisioned("Pixel_A"))


def test_launch_provisioned_without_apps_returns_none(tmp_path) -> None:
    _ctrl, _store, _notifier, engine = _setup(tmp_path)
    assert asyncio.run(engine.launch_provisioned("Pixel_A")) is None


def test_list_descriptors(tmp_path) -> None:
    _ctrl, _store, _notifier, engine = _setup(tmp_path, "b.apk", "a.apk")
    descriptors = engine.list_descriptors()
    assert all(isinstance(d, AppDescriptor) for d in descriptors)
    assert [d.file_name for d in descriptors] == ["a.apk", "b.apk"]
