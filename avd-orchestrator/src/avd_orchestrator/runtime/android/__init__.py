"""Android runtime helpers.

This package intentionally contains *thin* wrappers around adb, emulator and
avdmanager invocations. Everything here is synchronous except process spawning;
the orchestrator calls blocking helpers through `asyncio.to_thread`.
"""
