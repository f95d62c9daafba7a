from typing import Optional

import requests

from wowowify.shared.deadline import Deadline
from wowowify.shared.logging_utils import info as log_info
from wowowify.specs.common.errors import (
    FetchHttpError,
    FetchNetworkError,
    PipelineTimeoutError,
)

CHUNK_SIZE = 64 * 1024


class HttpFetcher:
    """Download arbitrary bytes (base images, overlay assets) with ``requests``.

    HTTP status failures raise ``FetchHttpError``; connection and read
    failures raise ``FetchNetworkError``. A timeout caused by the shared
    deadline running out raises ``PipelineTimeoutError`` instead. Bodies are
    streamed and abandoned as soon as they pass ``max_bytes``.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        default_timeout: float = 10.0,
        max_bytes: int = 25 * 1024 * 1024,
    ) -> None:
        self._session = session or requests.Session()
        self.default_timeout = default_timeout
        self.max_bytes = max_bytes

    def __call__(self, url: str, deadline: Optional[Deadline] = None) -> bytes:
        timeout = deadline.timeout(self.default_timeout) if deadline is not None else self.default_timeout
        log_info(None, "fetch:start", url=url[:100], timeout=round(timeout, 2))
        try:
            with self._session.get(url, timeout=timeout, stream=True) as resp:
                return self._read_body(url, resp)
        except requests.Timeout as exc:
            if deadline is not None and deadline.expired:
                raise PipelineTimeoutError(details={"step": "fetch", "url": url[:100]}) from exc
            raise FetchNetworkError(url, "request timed out") from exc
        except requests.RequestException as exc:
            raise FetchNetworkError(url, str(exc)) from exc

    def _read_body(self, url: str, resp: requests.Response) -> bytes:
        if not resp.ok:
            raise FetchHttpError(url, resp.status_code, resp.reason or "")
        declared = (resp.headers or {}).get("Content-Length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            raise FetchNetworkError(url, f"response too large ({declared} bytes declared)")
        body = bytearray()
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            body.extend(chunk)
            if len(body) > self.max_bytes:
                raise FetchNetworkError(url, f"response too large (over {self.max_bytes} bytes)")
        return bytes(body)
