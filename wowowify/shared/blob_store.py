from typing import Any, Optional

try:
    from azure.storage.blob import BlobServiceClient, ContentSettings  # type: ignore
except Exception:  # pragma: no cover
    BlobServiceClient = None  # type: ignore
    ContentSettings = None  # type: ignore

from wowowify.shared.deadline import Deadline
from wowowify.shared.logging_utils import info as log_info, error as log_error
from wowowify.shared.retry_utils import retry_with_backoff
from wowowify.specs.common.envelope import StepResult
from wowowify.specs.common.errors import ConfigurationError, PersistenceError


def _get_service_client(connection_string: Optional[str]) -> "BlobServiceClient":
    if not connection_string:
        raise ConfigurationError("PUBLIC_BLOB_CONNECTION_STRING is required for blob uploads")
    if BlobServiceClient is None:
        raise ConfigurationError("azure-storage-blob package not available")
    return BlobServiceClient.from_connection_string(connection_string)


def upload_bytes(
    service: Any,
    *,
    container: str,
    blob_name: str,
    data: bytes,
    content_type: Optional[str] = None,
    metadata: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> str:
    """Upload bytes to blob storage, return the blob URL.

    Creates the container (public blob access) if missing.
    """
    container_client = service.get_container_client(container)
    if not container_client.exists():
        container_client.create_container(public_access="blob")
    blob = container_client.get_blob_client(blob_name)
    kwargs: dict = {}
    if content_type and ContentSettings is not None:
        kwargs["content_settings"] = ContentSettings(content_type=content_type)
    if metadata:
        kwargs["metadata"] = metadata
    if timeout is not None:
        kwargs["timeout"] = max(1, int(timeout))
    blob.upload_blob(data, overwrite=True, **kwargs)
    return blob.url


class BlobPersister:
    """Best-effort permanent storage: always returns a ``StepResult``."""

    def __init__(
        self,
        connection_string: Optional[str],
        container: str = "media",
        *,
        attempts: int = 2,
        upload_timeout: float = 10.0,
        service: Any = None,
    ) -> None:
        self._connection_string = connection_string
        self.container = container
        self.attempts = attempts
        self.upload_timeout = upload_timeout
        self._service = service

    def _service_client(self) -> Any:
        if self._service is None:
            self._service = _get_service_client(self._connection_string)
        return self._service

    def __call__(
        self,
        data: bytes,
        filename: str,
        owner_hint: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> StepResult:
        blob_name = f"results/{filename}"
        metadata = {"owner": owner_hint} if owner_hint else None
        log_info(None, "blob:upload:start", blobName=blob_name, owner=owner_hint or "none")
        try:
            service = self._service_client()

            def _upload() -> str:
                timeout = deadline.timeout(self.upload_timeout) if deadline is not None else self.upload_timeout
                return upload_bytes(
                    service,
                    container=self.container,
                    blob_name=blob_name,
                    data=data,
                    content_type="image/png",
                    metadata=metadata,
                    timeout=timeout,
                )

            url = retry_with_backoff(_upload, attempts=self.attempts, delay=0.5, deadline=deadline, label="blob_upload")
        except Exception as exc:
            err = PersistenceError(f"Failed to persist image: {exc}", details={"blobName": blob_name})
            log_error(None, "blob:upload:failed", blobName=blob_name, error=str(exc))
            return StepResult.failed(err)

        log_info(None, "blob:upload:completed", blobName=blob_name, url=url)
        return StepResult.completed(locator=f"{self.container}/{blob_name}", publicUrl=url)
