"""AVD orchestrator.

Control plane for ephemeral Android emulator instances:
- emulator lifecycle (spawn, boot detection, stop, crash reconciliation)
- logical-name to adb-serial correlation
- idempotent bulk APK provisioning with persisted completion state
- input and app-launch commands against a resolved device
"""

__all__ = [
    "cli",
    "config",
    "errors",
    "events",
    "lifecycle",
    "provisioning",
    "runtime",
    "service",
    "store",
]
