from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_PACKAGE_RE = re.compile(r"^package:.*?\bname='([^']+)'", flags=re.MULTILINE)
_LAUNCHABLE_RE = re.compile(r"^launchable-activity:.*?\bname='([^']+)'", flags=re.MULTILINE)


@dataclass(frozen=True)
class AppDescriptor:
    file_name: str
    file_path: Path
    size_bytes: int
    package_name: Optional[str] = None
    main_activity: Optional[str] = None

    @property
    def app_name(self) -> str:
        return Path(self.file_name).stem

    def matches(self, name: Optional[str]) -> bool:
        """Whether a configured app name refers to this descriptor."""

        if not name or not str(name).strip():
            return False
        wanted = str(name).strip().lower()
        candidates = {self.file_name.lower(), self.app_name.lower()}
        if self.package_name:
            candidates.add(self.package_name.lower())
        return wanted in candidates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appName": self.app_name,
            "fileName": self.file_name,
            "filePath": str(self.file_path),
            "sizeBytes": self.size_bytes,
            "packageName": self.package_name,
            "mainActivity": self.main_activity,
        }


def parse_badging(txt: str) -> Tuple[Optional[str], Optional[str]]:
    """Extract (package, launchable activity) from `aapt dump badging` output."""

    pkg = _PACKAGE_RE.search(txt or "")
    act = _LAUNCHABLE_RE.search(txt or "")
    return (pkg.group(1) if pkg else None, act.group(1) if act else None)


class ApkInspector:
    """Best-effort APK metadata extraction via aapt; never raises."""

    def __init__(self, *, aapt_path: str = "aapt", timeout_s: float = 30.0) -> None:
        self._aapt_path = aapt_path
        self._timeout_s = timeout_s

    def inspect(self, path: Path) -> Tuple[Optional[str], Optional[str]]:
        try:
            proc = subprocess.run(
                [self._aapt_path, "dump", "badging", str(path)],
                capture_output=True,
                text=True,
                timeout=self._timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("aapt unavailable for %s: %s", path.name, e)
            return None, None
        if proc.returncode != 0:
            logger.debug("aapt failed for %s (rc=%s)", path.name, proc.returncode)
            return None, None
        return parse_badging(proc.stdout)


def scan_descriptors(
    apk_dir: Path,
    *,
    extension: str = ".apk",
    inspector: Optional[ApkInspector] = None,
) -> List[AppDescriptor]:
    """List installable packages in `apk_dir`, sorted by file name.

    Zero-byte files are skipped. Missing metadata keeps the descriptor.
    """

    apk_dir = Path(apk_dir)
    if not apk_dir.is_dir():
        logger.warning("Provisioning source directory does not exist: %s", apk_dir)
        return []

    ext = extension.lower()
    out: List[AppDescriptor] = []
    for path in sorted(apk_dir.iterdir(), key=lambda p: p.name.lower()):
        if not path.is_file() or path.suffix.lower() != ext:
            continue
        size = path.stat().st_size
        if size == 0:
            logger.warning("Skipping empty package file: %s", path.name)
            continue
        pkg, activity = inspector.inspect(path) if inspector is not None else (None, None)
        out.append(
            AppDescriptor(
                file_name=path.name,
                file_path=path,
                size_bytes=size,
                package_name=pkg,
                main_activity=activity,
            )
        )
    return out
