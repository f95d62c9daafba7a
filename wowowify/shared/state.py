import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

try:
    from azure.cosmos import CosmosClient, exceptions  # type: ignore
except Exception:  # pragma: no cover
    CosmosClient = None  # type: ignore
    exceptions = None  # type: ignore

from wowowify.shared.config import Settings
from wowowify.shared.logging_utils import info as log_info, warning as log_warning
from wowowify.specs.common.errors import ConfigurationError

DEFAULT_RETENTION_SECONDS = 86400


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_event(
    phase: str,
    action: str,
    message: Optional[str],
    status: Optional[str],
    data: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    ev: Dict[str, Any] = {"ts": _utc_now(), "phase": phase, "action": action}
    if message:
        ev["message"] = message
    if status:
        ev["status"] = status
    if data is not None:
        ev["data"] = data
    return ev


def _status_entry(entry: Dict[str, Any], run_id: str, phase: str, status: str, summary: Optional[Dict]) -> Dict[str, Any]:
    entry.update(
        {
            "runId": run_id,
            "currentPhase": phase,
            "status": status,
            "isComplete": phase in ("completed", "failed"),
            "lastUpdateUtc": _utc_now(),
            "summary": summary,
        }
    )
    return entry


def _prune(runs: Dict[str, Dict[str, Any]], cutoff: datetime) -> int:
    """Drop runs whose last update is older than ``cutoff``. Returns how many went."""
    stale = []
    for run_id, entry in runs.items():
        try:
            updated = datetime.fromisoformat(entry.get("lastUpdateUtc") or "")
        except (TypeError, ValueError):
            stale.append(run_id)
            continue
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        if updated < cutoff:
            stale.append(run_id)
    for run_id in stale:
        del runs[run_id]
    return len(stale)


def _system_now() -> datetime:
    return datetime.now(timezone.utc)


class RunStateStore(Protocol):
    def set_status(self, run_id: str, phase: str, status: str, summary: Optional[Dict] = None) -> None: ...

    def get_status(self, run_id: str) -> Optional[Dict]: ...

    def add_event(
        self,
        run_id: str,
        *,
        phase: str,
        action: str,
        message: Optional[str] = None,
        status: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class MemoryRunStateStore:
    def __init__(
        self,
        *,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        now: Callable[[], datetime] = _system_now,
    ) -> None:
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._retention = timedelta(seconds=retention_seconds)
        self._now = now

    def __len__(self) -> int:
        return len(self._runs)

    def set_status(self, run_id: str, phase: str, status: str, summary: Optional[Dict] = None) -> None:
        with self._lock:
            _prune(self._runs, self._now() - self._retention)
            entry = self._runs.get(run_id, {})
            self._runs[run_id] = _status_entry(entry, run_id, phase, status, summary)

    def get_status(self, run_id: str) -> Optional[Dict]:
        with self._lock:
            entry = self._runs.get(run_id)
            return dict(entry) if entry else None

    def add_event(self, run_id, *, phase, action, message=None, status=None, data=None) -> None:
        with self._lock:
            _prune(self._runs, self._now() - self._retention)
            entry = self._runs.setdefault(run_id, {"runId": run_id, "currentPhase": phase, "isComplete": False})
            entry.setdefault("events", []).append(_new_event(phase, action, message, status, data))
            entry["lastUpdateUtc"] = _utc_now()


class FileRunStateStore:
    """Single JSON file keyed by run id. Fine for local development only.

    Runs older than ``retention_seconds`` are dropped whenever the file is
    rewritten, so the file stays bounded by recent traffic.
    """

    def __init__(
        self,
        state_dir: str,
        *,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        now: Callable[[], datetime] = _system_now,
    ) -> None:
        self._dir = Path(state_dir)
        self._file = self._dir / "state.json"
        self._lock = threading.Lock()
        self._retention = timedelta(seconds=retention_seconds)
        self._now = now

    def _read_pruned(self) -> Dict[str, dict]:
        data = self._read_all()
        removed = _prune(data, self._now() - self._retention)
        if removed:
            log_info(None, "state:file:pruned", removed=removed, remaining=len(data))
        return data

    def _read_all(self) -> Dict[str, dict]:
        if not self._file.exists():
            return {}
        try:
            return json.loads(self._file.read_text())
        except (OSError, ValueError) as exc:
            log_warning(None, "state:file:unreadable", path=str(self._file), error=str(exc))
            return {}

    def _write_all(self, data: Dict[str, dict]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        self._file.write_text(json.dumps(data))

    def set_status(self, run_id: str, phase: str, status: str, summary: Optional[Dict] = None) -> None:
        with self._lock:
            data = self._read_pruned()
            data[run_id] = _status_entry(data.get(run_id, {}), run_id, phase, status, summary)
            self._write_all(data)

    def get_status(self, run_id: str) -> Optional[Dict]:
        return self._read_all().get(run_id)

    def add_event(self, run_id, *, phase, action, message=None, status=None, data=None) -> None:
        with self._lock:
            store = self._read_pruned()
            entry = store.get(run_id) or {"runId": run_id, "currentPhase": phase, "isComplete": False}
            events: List[Dict[str, Any]] = entry.get("events") or []
            events.append(_new_event(phase, action, message, status, data))
            entry["events"] = events
            entry["lastUpdateUtc"] = _utc_now()
            store[run_id] = entry
            self._write_all(store)


class CosmosRunStateStore:
    """One document per run, partitioned by run id."""

    def __init__(self, container: Any) -> None:
        self._container = container

    @classmethod
    def from_settings(cls, settings: Settings) -> "CosmosRunStateStore":
        if CosmosClient is None:
            raise ConfigurationError("azure-cosmos package not available")
        if not settings.cosmos_configured or not settings.cosmos_container_runs:
            raise ConfigurationError("Cosmos configuration is missing for run state")
        client = CosmosClient.from_connection_string(settings.cosmos_connection_string)
        db = client.get_database_client(settings.cosmos_db_name)
        container = db.get_container_client(settings.cosmos_container_runs)
        log_info(None, "cosmos:runs:init", container=settings.cosmos_container_runs)
        return cls(container)

    def _read(self, run_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._container.read_item(item=run_id, partition_key=run_id)
        except Exception as exc:
            if exceptions is not None and isinstance(exc, exceptions.CosmosResourceNotFoundError):
                return None
            raise

    def set_status(self, run_id: str, phase: str, status: str, summary: Optional[Dict] = None) -> None:
        item = self._read(run_id) or {"id": run_id, "partitionKey": run_id}
        self._container.upsert_item(_status_entry(item, run_id, phase, status, summary))
        log_info(run_id, "cosmos:runs:upsert_status", phase=phase, status=status)

    def get_status(self, run_id: str) -> Optional[Dict]:
        item = self._read(run_id)
        if not item:
            return None
        return {
            "runId": item.get("runId", run_id),
            "currentPhase": item.get("currentPhase"),
            "status": item.get("status"),
            "isComplete": item.get("isComplete"),
            "lastUpdateUtc": item.get("lastUpdateUtc"),
            "summary": item.get("summary"),
            "events": item.get("events"),
        }

    def add_event(self, run_id, *, phase, action, message=None, status=None, data=None) -> None:
        item = self._read(run_id) or {"id": run_id, "partitionKey": run_id, "runId": run_id}
        events: List[Dict[str, Any]] = item.get("events") or []
        events.append(_new_event(phase, action, message, status, data))
        item["events"] = events
        item["lastUpdateUtc"] = _utc_now()
        self._container.upsert_item(item)


def select_run_state_store(settings: Settings) -> RunStateStore:
    backend = settings.run_state_backend
    if backend == "memory":
        return MemoryRunStateStore(retention_seconds=settings.image_ttl_seconds)
    if backend == "file":
        return FileRunStateStore(settings.runtime_state_dir, retention_seconds=settings.image_ttl_seconds)
    if backend == "cosmos":
        return CosmosRunStateStore.from_settings(settings)
    # auto-detect cosmos if config present
    if settings.cosmos_configured and settings.cosmos_container_runs and CosmosClient is not None:
        try:
            return CosmosRunStateStore.from_settings(settings)
        except Exception as exc:
            log_warning(None, "cosmos:runs:unavailable", error=str(exc))
    return FileRunStateStore(settings.runtime_state_dir, retention_seconds=settings.image_ttl_seconds)
