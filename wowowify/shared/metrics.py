from typing import Dict

from wowowify.shared.kv_store import KeyValueStore
from wowowify.shared.logging_utils import info as log_info, error as log_error

TOTAL_KEY = "metrics:total_requests"
FAILED_KEY = "metrics:failed_requests"
METRICS_WINDOW_SECONDS = 3600


class RequestMetrics:
    """Hourly total/failed request counters kept in the shared store."""

    def __init__(self, kv: KeyValueStore, *, window_seconds: int = METRICS_WINDOW_SECONDS) -> None:
        self._kv = kv
        self.window_seconds = window_seconds

    def _bump(self, key: str) -> None:
        try:
            value = self._kv.incr(key)
            if value == 1:
                self._kv.expire(key, self.window_seconds)
            log_info(None, "metrics:incremented", key=key, value=value)
        except Exception as exc:
            log_error(None, "metrics:increment_failed", key=key, error=str(exc))

    def increment_total(self) -> None:
        self._bump(TOTAL_KEY)

    def increment_failed(self) -> None:
        self._bump(FAILED_KEY)

    def snapshot(self) -> Dict[str, int]:
        return {
            "totalRequests": int(self._kv.get(TOTAL_KEY) or 0),
            "failedRequests": int(self._kv.get(FAILED_KEY) or 0),
        }
