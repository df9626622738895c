from __future__ import annotations

import abc
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class KeyValueStore(abc.ABC):
    """String key-value persistence for quota counters, favorites and history."""

    @abc.abstractmethod
    def get(self, key: str, default: str | None = None) -> str | None:
        raise NotImplementedError

    @abc.abstractmethod
    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable value stored under %s", key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))


class MemoryStore(KeyValueStore):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.values: dict[str, str] = dict(initial or {})

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.values.get(key, default)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value


class JsonFileStore(KeyValueStore):
    """Key-value store backed by a single JSON document on disk.

    Write failures are logged and skipped so a full disk or a read-only
    data directory never takes the pipeline down with it.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._values = self._load()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read store %s; starting empty: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Store %s does not hold a JSON object; starting empty", self.path)
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._values.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._values, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Skipping persistence of %s: %s", key, exc)
