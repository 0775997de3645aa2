from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    project_root = Path(__file__).resolve().parents[1]
    src = project_root / "src"
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)

    # Shared fakes (fake adb controller, fake emulator process) live under `tests/unit/`.
    unit_tests_root = Path(__file__).resolve().parent / "unit"
    unit_tests_root_str = str(unit_tests_root)
    if unit_tests_root.is_dir() and unit_tests_root_str not in sys.path:
        sys.path.insert(0, unit_tests_root_str)


_ensure_src_on_path()
