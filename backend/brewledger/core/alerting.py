"""Simple alerting system for critical events."""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger("alerts")


class AlertManager:
    """Collects and exposes application alerts.

    Written to by the worker threads and the low-stock timer, so the buffer is
    guarded by a lock.
    """

    LEVELS = {"info": 0, "warning": 1, "critical": 2}

    def __init__(self, max_buffer: int = 200):
        self.alerts: List[Dict[str, Any]] = []
        self.max_buffer = max_buffer
        self._lock = threading.Lock()

    def alert(
        self,
        level: str,
        title: str,
        message: str,
        source: str = "system",
        data: Optional[Dict[str, Any]] = None,
    ):
        entry = {
            "level": level,
            "title": title,
            "message": message,
            "source": source,
            "data": data or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self.alerts.append(entry)
            if len(self.alerts) > self.max_buffer:
                self.alerts = self.alerts[-self.max_buffer:]

        log_level = {
            "info": logging.INFO,
            "warning": logging.WARNING,
            "critical": logging.CRITICAL,
        }
        logger.log(log_level.get(level, logging.INFO), f"[{source}] {title}: {message}")

    def get_recent(self, limit: int = 20, level: Optional[str] = None,
                   source: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            alerts = list(self.alerts)
        if level:
            min_level = self.LEVELS.get(level, 0)
            alerts = [a for a in alerts if self.LEVELS.get(a["level"], 0) >= min_level]
        if source:
            alerts = [a for a in alerts if a["source"] == source]
        return list(reversed(alerts[-limit:]))

    def clear(self):
        with self._lock:
            self.alerts = []


alert_manager = AlertManager()
