"""
Append-only audit log for write actions.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUDIT_FILE_NAME = "audit.log"


class AuditLog:
    """Writes one JSON line per action to ``<data_dir>/audit.log``."""

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / AUDIT_FILE_NAME
        self._lock = threading.Lock()

    def record(self, action: str, target: str, result: Literal["ok", "failed"]) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "action": action,
            "target": target,
            "result": result,
        }
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with self._lock, open(self.path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry) + "\n")

    def run(self, action: str, target: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` and record its outcome; exceptions are re-raised."""
        try:
            result = fn()
        except Exception:
            logger.warning("Audited action %s on %s failed", action, target)
            self.record(action, target, "failed")
            raise
        self.record(action, target, "ok")
        return result

    def entries(self) -> list[dict]:
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        return [json.loads(line) for line in lines if line.strip()]
