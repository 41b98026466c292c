"""Merges generated content payloads into per-item JSON records."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


class ContentWriter:
    """Host-side update callback: keeps ``<outputs>/<item_id>.json`` current.

    Payloads are stored unexamined under ``fields[<field>]`` or, for
    translation-scoped fields, ``translations[<code>][<field>]``.
    """

    def __init__(self, outputs_dir: str | Path, *, logger) -> None:
        self.outputs_dir = Path(outputs_dir)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger
        self._lock = threading.Lock()

    def __call__(self, item_id: int, field: str, sub_key: Optional[str], content: Mapping[str, Any]) -> Path:
        return self.write(item_id, field, sub_key, content)

    def write(self, item_id: int, field: str, sub_key: Optional[str], content: Mapping[str, Any]) -> Path:
        path = self.path_for(item_id)
        with self._lock:
            record = self.read(item_id) or {"id": item_id, "fields": {}, "translations": {}}
            if sub_key:
                record.setdefault("translations", {}).setdefault(sub_key, {})[field] = dict(content)
            else:
                record.setdefault("fields", {})[field] = dict(content)
            record["updated_at"] = time.time()
            self._atomic_dump(path, record)
        self.logger.debug("Merged %s%s into %s", field, f"/{sub_key}" if sub_key else "", path)
        return path

    def read(self, item_id: int) -> Optional[Dict[str, Any]]:
        path = self.path_for(item_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            self.logger.warning("Replacing unreadable content record %s", path)
            return None
        return data if isinstance(data, dict) else None

    def path_for(self, item_id: int) -> Path:
        return self.outputs_dir / f"{item_id}.json"

    def _atomic_dump(self, path: Path, payload: Dict[str, Any]) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp_path.replace(path)


__all__ = ["ContentWriter"]
