"""Device bridge, emulator tooling, correlation and boot detection."""
