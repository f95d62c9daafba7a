import time
from typing import Callable, Optional

from wowowify.specs.common.errors import PipelineTimeoutError


class Deadline:
    """End-to-end time budget shared by every I/O call of one pipeline run.

    Each call asks for ``timeout(cap)`` so no single request may outlive the
    run, and ``check()`` raises once the budget is spent.
    """

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, step: Optional[str] = None) -> None:
        if self.expired:
            raise PipelineTimeoutError(details={"step": step, "deadlineSeconds": self.seconds})

    def timeout(self, cap: Optional[float] = None) -> float:
        self.check()
        left = self.remaining()
        return min(cap, left) if cap is not None else left
