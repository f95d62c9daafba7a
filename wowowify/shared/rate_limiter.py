from pydantic import BaseModel

from wowowify.shared.kv_store import KeyValueStore
from wowowify.shared.logging_utils import info as log_info, error as log_error

RATE_LIMIT_WINDOW_SECONDS = 3600
MAX_REQUESTS = 20


class AdmissionDecision(BaseModel):
    allowed: bool
    remaining: int
    resetSeconds: int
    limit: int


class AdmissionController:
    """Fixed-window request counter per client key.

    A failing store lets the request through: admission control must never be
    the reason the service is down.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_requests: int = MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    ) -> None:
        self._kv = kv
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def check(self, client_key: str) -> AdmissionDecision:
        key = f"rate_limit:{client_key}"
        try:
            count = self._kv.incr(key)
            if count == 1:
                self._kv.expire(key, self.window_seconds)
            ttl = self._kv.ttl(key)
        except Exception as exc:
            log_error(None, "rate_limit:check_failed", clientKey=client_key, error=str(exc))
            return AdmissionDecision(
                allowed=True,
                remaining=self.max_requests,
                resetSeconds=self.window_seconds,
                limit=self.max_requests,
            )

        time_to_reset = self.window_seconds if ttl < 0 else ttl
        remaining = max(0, self.max_requests - count)
        log_info(None, "rate_limit:check", clientKey=client_key, count=count, remaining=remaining, timeToReset=time_to_reset)
        return AdmissionDecision(
            allowed=count <= self.max_requests,
            remaining=remaining,
            resetSeconds=time_to_reset,
            limit=self.max_requests,
        )
