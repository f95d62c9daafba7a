"""
Key-value store used for rate-limit counters, metrics and ephemeral images.

Two backends share one interface: an in-process dictionary (default, and what
tests use) and an Azure Cosmos DB container for deployments that run more than
one worker. Redis-style semantics: ``ttl`` returns -2 for a missing key and -1
for a key without expiry.
"""
import base64
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

try:
    from azure.cosmos import CosmosClient, exceptions as cosmos_exceptions  # type: ignore
except Exception:  # pragma: no cover
    CosmosClient = None  # type: ignore
    cosmos_exceptions = None  # type: ignore

from wowowify.shared.config import Settings
from wowowify.shared.logging_utils import info as log_info, warning as log_warning
from wowowify.specs.common.errors import ConfigurationError

SWEEP_INTERVAL_SECONDS = 60.0


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def incr(self, key: str) -> int: ...

    def expire(self, key: str, seconds: int) -> bool: ...

    def ttl(self, key: str) -> int: ...


class InMemoryKeyValueStore:
    """Process-local store.

    Expired entries are dropped when read, and writes sweep the whole table
    at most once per ``sweep_interval`` seconds so keys nobody reads again
    (unfetched images, one-off rate-limit keys) do not pile up.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, sweep_interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _sweep_due(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.sweep_interval
        removed = self._purge(now)
        if removed:
            log_info(None, "kv:memory:swept", removed=removed, remaining=len(self._data))

    def _purge(self, now: float) -> int:
        stale = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
        for k in stale:
            del self._data[k]
        return len(stale)

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._sweep_due()
            expires_at = self._clock() + ttl_seconds if ttl_seconds else None
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def incr(self, key: str) -> int:
        with self._lock:
            self._sweep_due()
            entry = self._live(key)
            value, expires_at = entry if entry else (0, None)
            new_value = int(value) + 1
            self._data[key] = (new_value, expires_at)
            return new_value

    def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + seconds)
            return True

    def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, int(round(entry[1] - self._clock())))

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def _encode(value: Any) -> Dict[str, Any]:
    if isinstance(value, (bytes, bytearray)):
        return {"kind": "bytes", "data": base64.b64encode(bytes(value)).decode("ascii")}
    return {"kind": "json", "data": value}


def _decode(doc: Dict[str, Any]) -> Any:
    payload = doc.get("value") or {}
    if payload.get("kind") == "bytes":
        return base64.b64decode(payload.get("data") or "")
    return payload.get("data")


class CosmosKeyValueStore:
    """Cosmos DB backed store; expiry uses the per-item ``ttl`` property.

    The container must have a default TTL configured (``-1`` is enough) for
    Cosmos to honour per-item ``ttl``. ``incr`` is read-modify-write, not atomic.
    """

    def __init__(self, container: Any, *, clock: Callable[[], float] = time.time) -> None:
        self._container = container
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "CosmosKeyValueStore":
        if CosmosClient is None:
            raise ConfigurationError("azure-cosmos package not available")
        if not settings.cosmos_configured or not settings.cosmos_container_kv:
            raise ConfigurationError("Cosmos configuration is missing for the key-value store")
        client = CosmosClient.from_connection_string(settings.cosmos_connection_string)
        db = client.get_database_client(settings.cosmos_db_name)
        container = db.get_container_client(settings.cosmos_container_kv)
        log_info(None, "cosmos:kv:init", container=settings.cosmos_container_kv)
        return cls(container)

    @staticmethod
    def _doc_id(key: str) -> str:
        # Cosmos ids may not contain / \ ? #
        for ch in "/\\?#":
            key = key.replace(ch, "_")
        return key

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        doc_id = self._doc_id(key)
        try:
            doc = self._container.read_item(item=doc_id, partition_key=doc_id)
        except Exception as exc:
            if cosmos_exceptions is not None and isinstance(exc, cosmos_exceptions.CosmosResourceNotFoundError):
                return None
            raise
        expires_at = doc.get("expiresAt")
        if expires_at is not None and expires_at <= self._clock():
            return None
        return doc

    def _write(self, key: str, value: Any, expires_at: Optional[float]) -> None:
        doc_id = self._doc_id(key)
        body: Dict[str, Any] = {"id": doc_id, "partitionKey": doc_id, "key": key, "value": _encode(value)}
        if expires_at is not None:
            body["expiresAt"] = expires_at
            body["ttl"] = max(1, int(expires_at - self._clock()))
        self._container.upsert_item(body)

    def get(self, key: str) -> Optional[Any]:
        doc = self._read(key)
        return _decode(doc) if doc else None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self._write(key, value, self._clock() + ttl_seconds if ttl_seconds else None)

    def delete(self, key: str) -> bool:
        doc_id = self._doc_id(key)
        try:
            self._container.delete_item(item=doc_id, partition_key=doc_id)
            return True
        except Exception as exc:
            if cosmos_exceptions is not None and isinstance(exc, cosmos_exceptions.CosmosResourceNotFoundError):
                return False
            raise

    def incr(self, key: str) -> int:
        doc = self._read(key)
        current = int(_decode(doc) or 0) if doc else 0
        expires_at = doc.get("expiresAt") if doc else None
        self._write(key, current + 1, expires_at)
        return current + 1

    def expire(self, key: str, seconds: int) -> bool:
        doc = self._read(key)
        if doc is None:
            return False
        self._write(key, _decode(doc), self._clock() + seconds)
        return True

    def ttl(self, key: str) -> int:
        doc = self._read(key)
        if doc is None:
            return -2
        expires_at = doc.get("expiresAt")
        if expires_at is None:
            return -1
        return max(0, int(round(expires_at - self._clock())))


def select_kv_store(settings: Settings) -> KeyValueStore:
    backend = settings.kv_backend
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "cosmos":
        return CosmosKeyValueStore.from_settings(settings)
    # auto-detect cosmos if config present
    if settings.cosmos_configured and settings.cosmos_container_kv and CosmosClient is not None:
        try:
            return CosmosKeyValueStore.from_settings(settings)
        except Exception as exc:
            log_warning(None, "cosmos:kv:unavailable", error=str(exc))
    return InMemoryKeyValueStore()
