"""Error taxonomy for the device orchestrator.

Every failure carries a human-readable message. Single-target operations raise
these; batch operations (provisioning) fold per-item failures into their result
instead of raising.
"""

from __future__ import annotations

from typing import Optional, Sequence


class OrchestratorError(RuntimeError):
    """Base class for all orchestrator failures."""


class ConfigError(OrchestratorError):
    pass


class PreferenceStoreError(OrchestratorError):
    pass


class ToolInvocationError(OrchestratorError):
    """Raised when an adb/emulator/avdmanager invocation fails.

    Covers a missing binary, a timeout and a non-zero exit. The mutating call is
    never retried automatically.
    """

    def __init__(
        self,
        message: str,
        *,
        args: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.cmd = list(args) if args is not None else []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class BootTimeout(OrchestratorError):
    def __init__(self, name: str, *, attempts: int, enumerated: bool) -> None:
        self.name = name
        self.attempts = attempts
        self.enumerated = enumerated
        if enumerated:
            detail = "device enumerated but boot completion was never reported"
        else:
            detail = "no online device was ever enumerated"
        super().__init__(f"Emulator boot timeout for {name!r} after {attempts} attempt(s): {detail}")


class CorrelationError(OrchestratorError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Could not resolve an adb serial for device {name!r}")


class DeeplinkLaunchError(OrchestratorError):
    pass


class PreconditionError(OrchestratorError):
    """Operation is not valid in the current state; never retried."""


class DeviceAlreadyExists(PreconditionError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Emulator with name '{name}' already exists")


class DeviceNotFound(PreconditionError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Emulator '{name}' does not exist")


class DeviceNotRunning(PreconditionError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Emulator '{name}' is not running")


class AppPackageNotFound(PreconditionError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"APK file not found: {path}")


class AppNotInstalled(PreconditionError):
    def __init__(self, package: str, name: str) -> None:
        self.package = package
        self.name = name
        super().__init__(f"Package {package} is not installed on emulator '{name}'")


class InvalidInputError(PreconditionError, ValueError):
    pass


class UnsupportedActionError(InvalidInputError):
    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown action: {action}")
