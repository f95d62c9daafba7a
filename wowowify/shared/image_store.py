import time
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel

from wowowify.shared.kv_store import KeyValueStore
from wowowify.shared.logging_utils import info as log_info

IMAGE_KEY_PREFIX = "image:"
DEFAULT_IMAGE_TTL_SECONDS = 24 * 60 * 60


class StoredImage(BaseModel):
    id: str
    data: bytes
    contentType: str = "image/png"
    createdAt: float


class ImageStore:
    """Short-lived storage for generated buffers, addressed by an opaque id."""

    def __init__(self, kv: KeyValueStore, *, ttl_seconds: int = DEFAULT_IMAGE_TTL_SECONDS) -> None:
        self._kv = kv
        self.ttl_seconds = ttl_seconds

    def store(self, data: bytes, content_type: str = "image/png", image_id: Optional[str] = None) -> str:
        image_id = image_id or str(uuid.uuid4())
        self._kv.set(f"{IMAGE_KEY_PREFIX}{image_id}", data, ttl_seconds=self.ttl_seconds)
        self._kv.set(
            f"{IMAGE_KEY_PREFIX}{image_id}:meta",
            {"contentType": content_type, "createdAt": time.time()},
            ttl_seconds=self.ttl_seconds,
        )
        log_info(None, "image_store:stored", id=image_id, contentType=content_type, size=len(data))
        return image_id

    def get(self, image_id: str) -> Optional[StoredImage]:
        data = self._kv.get(f"{IMAGE_KEY_PREFIX}{image_id}")
        if data is None:
            return None
        meta: Dict[str, Any] = self._kv.get(f"{IMAGE_KEY_PREFIX}{image_id}:meta") or {}
        return StoredImage(
            id=image_id,
            data=data,
            contentType=meta.get("contentType", "image/png"),
            createdAt=meta.get("createdAt", 0.0),
        )

    def delete(self, image_id: str) -> bool:
        deleted = self._kv.delete(f"{IMAGE_KEY_PREFIX}{image_id}")
        self._kv.delete(f"{IMAGE_KEY_PREFIX}{image_id}:meta")
        if deleted:
            log_info(None, "image_store:deleted", id=image_id)
        return deleted
