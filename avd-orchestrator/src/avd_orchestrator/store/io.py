from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False)


def write_json_atomic(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(_json_dumps(obj) + "\n", encoding="utf-8")
    tmp_path.replace(path)


def read_json(path: Path) -> Optional[Any]:
    """Return the parsed document, or None when the file does not exist."""
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return None
    return json.loads(text)
