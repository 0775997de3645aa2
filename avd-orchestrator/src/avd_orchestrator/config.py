"""Orchestrator configuration.

Settings come from an optional YAML/JSON file, then environment overrides.
Tool paths honour the conventional `ADB_PATH` / `EMULATOR_PATH` variables.
"""

from __future__ import annotations

import json
import os
import platform
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from avd_orchestrator.errors import ConfigError

_TRUTHY = {"1", "true", "yes", "on"}


class ToolsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    adb_path: str = "adb"
    emulator_path: str = "emulator"
    avdmanager_path: str = "avdmanager"
    aapt_path: str = "aapt"
    command_timeout_s: float = Field(default=30.0, gt=0)
    install_timeout_s: float = Field(default=300.0, gt=0)


class EmulatorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # None selects the host architecture (x86_64 or arm64-v8a).
    arch: Optional[str] = None
    api_level: int = Field(default=34, ge=1)
    device_profile: str = "pixel_5"
    image_tag: str = "google_apis"
    gpu: str = "auto"
    memory_mb: Optional[int] = Field(default=None, ge=512)
    cores: Optional[int] = Field(default=None, ge=1)
    camera: str = "webcam0"
    headless: bool = False
    # None autodetects (no KVM on Linux, or running inside a container).
    constrained: Optional[bool] = None
    extra_args: List[str] = Field(default_factory=list)
    stop_grace_s: float = Field(default=10.0, ge=0)


class BootConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    initial_delay_s: float = Field(default=5.0, ge=0)
    interval_s: float = Field(default=2.0, ge=0)
    max_attempts: int = Field(default=30, ge=1)
    constrained_max_attempts: int = Field(default=90, ge=1)


class CorrelationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    window_s: float = Field(default=10.0, ge=0)
    interval_s: float = Field(default=1.0, ge=0)
    properties: List[str] = Field(
        default_factory=lambda: [
            "ro.boot.qemu.avd_name",
            "ro.kernel.qemu.avd_name",
            "ro.product.model",
        ]
    )


class ProvisioningConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    apk_dir: Path = Path("preinstall-apks")
    preferences_path: Path = Path("data/device_preferences.json")
    package_extension: str = ".apk"
    auto_provision: bool = True
    auto_launch: bool = True
    deeplink_timeout_s: float = Field(default=10.0, gt=0)
    deeplink_browser_fallback: bool = False


class EventsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_events: bool = True
    webhook_url: Optional[str] = None
    webhook_timeout_s: float = Field(default=5.0, gt=0)


class OrchestratorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    emulator: EmulatorConfig = Field(default_factory=EmulatorConfig)
    boot: BootConfig = Field(default_factory=BootConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)


def host_arch() -> str:
    machine = platform.machine().lower()
    if machine in {"arm64", "aarch64"}:
        return "arm64-v8a"
    return "x86_64"


def detect_constrained(config: EmulatorConfig) -> bool:
    """Whether the emulator has to run without hardware acceleration."""

    if config.constrained is not None:
        return bool(config.constrained)
    if Path("/.dockerenv").exists():
        return True
    if platform.system() == "Linux" and not Path("/dev/kvm").exists():
        return True
    return False


def load_yaml_or_json(path: Path) -> Dict[str, Any]:
    """Load a YAML/JSON config file; the top-level must be an object."""
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        elif path.suffix.lower() == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            raise ConfigError(f"Unsupported config file extension: {path}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level config must be an object: {path}")
    return data


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    out = {k: dict(v) if isinstance(v, dict) else v for k, v in data.items()}

    def put(section: str, key: str, value: Any) -> None:
        sec = out.get(section)
        if not isinstance(sec, dict):
            sec = {}
        sec[key] = value
        out[section] = sec

    for env_key, key in (
        ("ADB_PATH", "adb_path"),
        ("EMULATOR_PATH", "emulator_path"),
        ("AVDMANAGER_PATH", "avdmanager_path"),
        ("AAPT_PATH", "aapt_path"),
    ):
        if env.get(env_key):
            put("tools", key, env[env_key])

    if env.get("AVDO_APK_DIR"):
        put("provisioning", "apk_dir", env["AVDO_APK_DIR"])
    if env.get("AVDO_PREFERENCES_PATH"):
        put("provisioning", "preferences_path", env["AVDO_PREFERENCES_PATH"])
    if env.get("AVDO_CONSTRAINED"):
        put("emulator", "constrained", env["AVDO_CONSTRAINED"].strip().lower() in _TRUTHY)
    if env.get("AVDO_EVENTS_WEBHOOK"):
        put("events", "webhook_url", env["AVDO_EVENTS_WEBHOOK"])
    return out


def load_config(
    path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> OrchestratorConfig:
    data = load_yaml_or_json(Path(path)) if path is not None else {}
    data = _apply_env_overrides(data, os.environ if env is None else env)
    try:
        return OrchestratorConfig.model_validate(data)
    except ValidationError as e:
        where = str(path) if path is not None else "<defaults>"
        raise ConfigError(f"Invalid orchestrator config ({where}):\n{e}") from e
