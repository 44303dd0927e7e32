"""
QueryGuard - Audit Trail
========================

One append-only JSON line per tool invocation, written BEFORE validation so
rejected (possibly adversarial) attempts are recorded with their stated
justification. Entries are never rewritten or deleted by the gateway.
"""

import json
import logging
import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    actor_id: str
    action: str
    target: str
    justification: str
    timestamp: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)


class AuditLogger:
    """Appends AuditEntry records to a JSON-lines file."""

    def __init__(self, path: Union[str, Path], actor_id: str = "mcp_agent"):
        self.path = Path(path)
        self.actor_id = actor_id
        self._lock = threading.Lock()

    def record(self, action: str, target: str, justification: str) -> AuditEntry:
        entry = AuditEntry(
            actor_id=self.actor_id,
            action=action,
            target=target,
            justification=justification,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        line = entry.to_json() + "\n"

        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            logger.error(f"AUDIT_LOG_WRITE_FAILED: {e}")

        return entry
