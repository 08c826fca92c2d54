"""Structured JSONL audit trail of task dispatch events."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class AuditLogger:
    """Writes one JSON line per dispatch event and mirrors it to the logger.

    With no ``log_path`` the events only go to the ``go.audit`` logger.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self.log_path = log_path
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger("go.audit")
        self._lock = threading.Lock()

    @staticmethod
    def _hash_inputs(inputs: dict[str, Any]) -> str:
        payload = json.dumps(inputs, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(payload).hexdigest()

    def log(
        self,
        event: str,
        task_id: str,
        capability: str,
        inputs: dict[str, Any],
        outcome: str,
        plan_id: str | None = None,
        reason: str = "",
        duration_s: float | None = None,
    ) -> dict[str, Any]:
        """Append one JSONL audit event and return it."""
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event": event,
            "plan_id": plan_id,
            "task_id": task_id,
            "capability": capability,
            "inputs_hash": self._hash_inputs(inputs),
            "outcome": outcome,
            "reason": reason,
            "duration_s": duration_s,
        }
        line = json.dumps(record, ensure_ascii=True)
        with self._lock:
            if self.log_path is not None:
                with self.log_path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        self.logger.info(line)
        return record
