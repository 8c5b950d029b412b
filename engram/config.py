"""
Configuration store backed by a JSON file.

Keys use dot notation (``"memory.capture.enabled"``).  The memory
subsystem never reads this store directly: ``MemoryConfig.from_store``
snapshots the ``memory`` subtree into an immutable config object that
is then threaded through component constructors.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .events import EventBus

logger = logging.getLogger(__name__)

_DEFAULT_PATH = Path("engram.json")


class Config:
    """
    Hierarchical configuration backed by a JSON file.

    When an event bus is given, every ``set()`` publishes
    ``config_changed`` with the key and new value.
    """

    def __init__(
        self,
        path: Path | str = _DEFAULT_PATH,
        event_bus: Optional["EventBus"] = None,
    ):
        self._bus = event_bus
        self._path = Path(path)
        self._data: dict[str, Any] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, key: str, default: Any = None) -> Any:
        parts = key.split(".")
        node = self._data
        for p in parts[:-1]:
            node = node.get(p, {})
            if not isinstance(node, dict):
                return default
        return node.get(parts[-1], default)

    def set(self, key: str, value: Any, *, save: bool = True) -> None:
        parts = key.split(".")
        node = self._data
        for p in parts[:-1]:
            child = node.get(p)
            if not isinstance(child, dict):
                child = {}
                node[p] = child
            node = child
        node[parts[-1]] = value

        if save:
            self._save()

        if self._bus is not None:
            self._bus.publish("config_changed", {"key": key, "value": value})

    def section(self, prefix: str) -> dict[str, Any]:
        """Return a deep copy of everything under *prefix*."""
        parts = prefix.split(".")
        node = self._data
        for p in parts:
            node = node.get(p, {})
            if not isinstance(node, dict):
                return {}
        return json.loads(json.dumps(node))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if self._path.exists():
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Unreadable config %s, starting empty: %s", self._path, e)
                data = {}
            self._data = data if isinstance(data, dict) else {}

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(self._data, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Could not write config %s: %s", self._path, e)
