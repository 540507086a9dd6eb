"""Request counters, response-time percentiles and threshold alerts.

The HTTP middleware records every response; the maintenance sweep and the
``/metrics`` endpoint evaluate thresholds against the recent window and the
queue size. An alert is raised at most once per (level, category) until it
is acknowledged.
"""

import logging
import math
import random
import string
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from .models import MonitoringConfig

logger = logging.getLogger(__name__)

_ALERT_SUFFIX = string.ascii_lowercase + string.digits


class RequestMonitor:
    """Thread-safe request statistics for one service instance."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or MonitoringConfig()
        self._clock = clock
        self._times: Deque[float] = deque(maxlen=self.config.response_window)
        self._alerts: List[Dict[str, Any]] = []
        self.total = 0
        self.success = 0
        self.errors = 0
        self._lock = threading.Lock()

    def record(self, duration_ms: float, status_code: int) -> None:
        """Count one response; 4xx and 5xx are errors."""
        with self._lock:
            self._times.append(duration_ms)
            self.total += 1
            if status_code >= 400:
                self.errors += 1
            else:
                self.success += 1

    def performance(self) -> Dict[str, float]:
        with self._lock:
            times = sorted(self._times)
        if not times:
            return {"avgResponseTimeMs": 0.0, "p95ResponseTimeMs": 0.0}
        p95 = times[max(0, math.ceil(0.95 * len(times)) - 1)]
        return {
            "avgResponseTimeMs": round(sum(times) / len(times), 3),
            "p95ResponseTimeMs": round(p95, 3),
        }

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------
    def add_alert(self, level: str, category: str, message: str) -> Optional[Dict[str, Any]]:
        """Record an alert unless an unacknowledged one with the same level and category exists.

        Returns:
            The new alert, or None if it was a duplicate
        """
        now = self._clock()
        with self._lock:
            for alert in self._alerts:
                if alert["category"] == category and alert["level"] == level and not alert["acknowledged"]:
                    return None
            alert = {
                "id": f"{int(now * 1000)}-{''.join(random.choices(_ALERT_SUFFIX, k=6))}",
                "level": level,
                "category": category,
                "message": message,
                "timestamp": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
                "acknowledged": False,
            }
            self._alerts.insert(0, alert)
            del self._alerts[self.config.max_alerts:]
        logger.warning("Alert generated: %s - %s: %s", level, category, message)
        return alert

    def check_thresholds(self, queue_size: int) -> List[Dict[str, Any]]:
        """Raise alerts for slow responses and a long queue.

        Returns:
            Alerts created by this check
        """
        cfg = self.config
        raised = []
        p95 = self.performance()["p95ResponseTimeMs"]
        if p95 > cfg.response_time_critical_ms:
            raised.append(self.add_alert("critical", "performance", f"Response time critical: {p95}ms"))
        elif p95 > cfg.response_time_warning_ms:
            raised.append(self.add_alert("warning", "performance", f"Response time high: {p95}ms"))

        if queue_size > cfg.queue_size_critical:
            raised.append(self.add_alert("critical", "queue", f"Queue size critical: {queue_size} jobs"))
        elif queue_size > cfg.queue_size_warning:
            raised.append(self.add_alert("warning", "queue", f"Queue size high: {queue_size} jobs"))
        return [alert for alert in raised if alert is not None]

    def alerts(self, acknowledged: Optional[bool] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                dict(a) for a in self._alerts
                if acknowledged is None or a["acknowledged"] == acknowledged
            ]

    def acknowledge(self, alert_id: str) -> bool:
        with self._lock:
            for alert in self._alerts:
                if alert["id"] == alert_id:
                    alert["acknowledged"] = True
                    return True
        return False

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            requests = {"total": self.total, "success": self.success, "errors": self.errors}
        return {
            "requests": requests,
            "performance": self.performance(),
            "alerts": self.alerts()[:10],
        }
