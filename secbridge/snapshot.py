"""Best-effort snapshot of the last accepted envelope."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

SNAPSHOT_EVENT = "bridge:snapshot"


@dataclass
class SnapshotEvent:
    key: str
    value: Dict[str, Any]
    name: str = SNAPSHOT_EVENT


SnapshotListener = Callable[[SnapshotEvent], None]


class SnapshotStore:
    """
    Key-value slot private to one client context.

    With a `path` the slots live in a JSON object on disk (one file per
    context); without one they only live in memory. Every successful write
    notifies local listeners so observers (a devtools panel, a state
    restorer) can react without re-parsing transport traffic.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._values: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[SnapshotListener] = []
        if self.path is not None and self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    self._values = loaded
            except (OSError, ValueError) as exc:
                logger.warning(f"Snapshot: ignoring unreadable {self.path}: {exc}")

    def on_snapshot(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        return self._values.get(key)

    def write(self, key: str, value: Dict[str, Any]) -> bool:
        """
        Store `value` under `key` and notify listeners.
        Returns False (after logging) if the value could not be persisted.
        """
        try:
            if self.path is not None:
                updated = dict(self._values)
                updated[key] = value
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp.write_text(json.dumps(updated, ensure_ascii=False), encoding="utf-8")
                tmp.replace(self.path)
            else:
                # Still make sure it would serialize, like the on-disk path.
                json.dumps(value)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning(f"Snapshot: failed to persist {key}: {exc}")
            return False

        self._values[key] = value
        event = SnapshotEvent(key=key, value=value)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning(f"Snapshot: listener failed: {exc!r}")
        return True

    def clear(self) -> None:
        self._listeners.clear()
