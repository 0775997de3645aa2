from __future__ import annotations

from pathlib import Path

from android_fakes import write_apks
from avd_orchestrator.provisioning.descriptors import (
    AppDescriptor,
    ApkInspector,
    parse_badging,
    scan_descriptors,
)
from avd_orchestrator.provisioning.package_guess import guess_installed_package, guess_package_names

BADGING = (
    "package: name='com.phonepe.app' versionCode='24090' versionName='24.09.0' platformBuildVersionName=''\n"
    "sdkVersion:'21'\n"
    "application-label:'PhonePe'\n"
    "launchable-activity: name='com.phonepe.app.ui.activity.Navigator_MainActivity'  label='PhonePe' icon=''\n"
)


class _StaticInspector:
    def __init__(self, mapping: dict[str, tuple]) -> None:
        self.mapping = mapping

    def inspect(self, path: Path):
        return self.mapping.get(path.name, (None, None))


def test_parse_badging() -> None:
    assert parse_badging(BADGING) == (
        "com.phonepe.app",
        "com.phonepe.app.ui.activity.Navigator_MainActivity",
    )
    assert parse_badging("garbage") == (None, None)


def test_scan_skips_empty_and_foreign_files(tmp_path) -> None:
    apk_dir = write_apks(tmp_path / "apks", "zeta.apk", "Alpha.APK", "notes.txt")
    (apk_dir / "empty.apk").write_bytes(b"")
    (apk_dir / "nested.apk").mkdir()

    descriptors = scan_descriptors(apk_dir)

    assert [d.file_name for d in descriptors] == ["Alpha.APK", "zeta.apk"]
    assert descriptors[1].size_bytes == 16
    assert descriptors[1].package_name is None


def test_scan_missing_directory_is_empty(tmp_path, caplog) -> None:
    with caplog.at_level("WARNING"):
        assert scan_descriptors(tmp_path / "nope") == []
    assert "does not exist" in caplog.text


def test_scan_attaches_inspected_metadata(tmp_path) -> None:
    apk_dir = write_apks(tmp_path / "apks", "phonepe.apk")
    inspector = _StaticInspector({"phonepe.apk": ("com.phonepe.app", "com.phonepe.app.Main")})

    (desc,) = scan_descriptors(apk_dir, inspector=inspector)

    assert desc.to_dict() == {
        "appName": "phonepe",
        "fileName": "phonepe.apk",
        "filePath": str(apk_dir / "phonepe.apk"),
        "sizeBytes": 16,
        "packageName": "com.phonepe.app",
        "mainActivity": "com.phonepe.app.Main",
    }


def test_inspector_without_aapt_is_non_fatal(tmp_path) -> None:
    apk_dir = write_apks(tmp_path / "apks", "a.apk")
    inspector = ApkInspector(aapt_path=str(tmp_path / "missing-aapt"))

    assert inspector.inspect(apk_dir / "a.apk") == (None, None)
    assert [d.file_name for d in scan_descriptors(apk_dir, inspector=inspector)] == ["a.apk"]


def test_descriptor_matches_by_file_stem_or_package() -> None:
    desc = AppDescriptor(
        file_name="PhonePe.apk",
        file_path=Path("PhonePe.apk"),
        size_bytes=1,
        package_name="com.phonepe.app",
    )
    assert desc.matches("phonepe")
    assert desc.matches("PhonePe.apk")
    assert desc.matches("com.phonepe.app")
    assert not desc.matches("phone")
    assert not desc.matches(None)


def test_guess_package_names() -> None:
    assert guess_package_names("com.example.shop.apk")[0] == "com.example.shop"
    assert guess_package_names("phonepe.apk")[:4] == [
        "com.phonepe",
        "com.phonepe.app",
        "com.phonepe.android",
        "in.phonepe",
    ]
    assert "com.paytm" in guess_package_names("Paytm-Stage-2.apk")


def test_guess_installed_package_requires_exact_install() -> None:
    installed = ["com.android.chrome", "com.phonepestage.app"]
    assert guess_installed_package("PhonePe-Stage.apk", installed) == "com.phonepestage.app"
    assert guess_installed_package("Unknown.apk", installed) is None
