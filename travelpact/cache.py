"""Local key-value cache persisted as one JSON file.

Holds the synced contacts and the known location between runs. There is no
consistency contract with the backend; entries stay until overwritten.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


class KeyValueCache:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: dict[str, Any] = {}
        self._loaded = False

    def load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                self._data = json.load(f)
        except json.JSONDecodeError:
            # Keep the broken file around and start empty
            backup = self.path.with_suffix(self.path.suffix + ".broken")
            os.replace(self.path, backup)
            logger.warning("Cache file %s was corrupt, moved to %s", self.path, backup.name)
            self._data = {}

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        self.load()
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.load()
        self._data[key] = value
        self._atomic_write()

    def remove(self, key: str) -> None:
        self.load()
        if self._data.pop(key, None) is not None:
            self._atomic_write()

    def _atomic_write(self) -> None:
        """Atomically write JSON to file to avoid corruption."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
