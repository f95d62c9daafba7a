import time
from typing import Callable, List, Optional, Tuple, TypeVar

from wowowify.shared.deadline import Deadline
from wowowify.shared.logging_utils import warning as log_warning

T = TypeVar("T")


def backoff_delays(attempts: int, delay: float, backoff: float) -> List[float]:
    """Sleeps between consecutive attempts: ``delay, delay*backoff, ...``."""
    return [delay * backoff ** i for i in range(max(0, attempts - 1))]


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 1.5,
    backoff: float = 1.5,
    exceptions: Tuple[type, ...] = (Exception,),
    deadline: Optional[Deadline] = None,
    label: str = "operation",
    run_trace_id: Optional[str] = None,
) -> T:
    """Call ``operation`` until it succeeds or ``attempts`` run out.

    The last failure propagates unchanged. With a deadline, a retry is only
    scheduled while the remaining budget outlasts the sleep before it.
    """
    for attempt, pause in enumerate(backoff_delays(attempts, delay, backoff), start=1):
        try:
            return operation()
        except exceptions as exc:  # type: ignore[misc]
            if deadline is not None and deadline.remaining() <= pause:
                raise
            log_warning(
                run_trace_id,
                "retry:scheduled",
                label=label,
                attempt=attempt,
                sleepSeconds=round(pause, 2),
                error=str(exc),
            )
        time.sleep(pause)
    return operation()
