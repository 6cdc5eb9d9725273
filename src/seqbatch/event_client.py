# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Minimal event client for batch lifecycle logging."""

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


def new_correlation_id() -> str:
    return f"batch_{uuid.uuid4().hex[:12]}"


class EventClient:
    """Simple JSONL event logger, safe to share between threads."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log_event(
        self,
        event_type: str,
        correlation_id: str,
        status: str,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Log an event to the JSONL file."""
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "correlation_id": correlation_id,
            "status": status,
        }
        if payload:
            event["payload"] = payload
        if error_message:
            event["error_message"] = error_message

        with self._lock:
            with open(self.log_path, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")

    def read_events(self, correlation_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Events in file order, optionally limited to one batch."""
        if not self.log_path.exists():
            return []
        events = []
        with open(self.log_path) as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                if correlation_id is None or event.get("correlation_id") == correlation_id:
                    events.append(event)
        return events
