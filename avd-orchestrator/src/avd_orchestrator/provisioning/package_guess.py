"""Last-resort package-name guessing from an APK file name.

Used only when aapt metadata is unavailable. The guesses follow a handful of
common naming conventions and are accepted only if the exact package is
already installed on the device.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional, Sequence

_TOKEN_SPLIT_RE = re.compile(r"[^A-Za-z0-9]+")
_PACKAGE_LIKE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)+$")

_CONVENTIONS = ("com.{}", "com.{}.app", "com.{}.android", "in.{}")


def guess_package_names(file_name: str) -> List[str]:
    stem = Path(file_name).stem
    out: List[str] = []
    if _PACKAGE_LIKE_RE.match(stem):
        out.append(stem.lower())

    tokens = [t for t in _TOKEN_SPLIT_RE.split(stem.lower()) if t]
    if not tokens:
        return out
    for base in ("".join(tokens), tokens[0]):
        for pattern in _CONVENTIONS:
            candidate = pattern.format(base)
            if candidate not in out:
                out.append(candidate)
    return out


def guess_installed_package(file_name: str, installed: Sequence[str]) -> Optional[str]:
    installed_set = {p.strip() for p in installed}
    for candidate in guess_package_names(file_name):
        if candidate in installed_set:
            return candidate
    return None
