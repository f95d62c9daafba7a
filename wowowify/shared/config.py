import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional, Tuple

from pydantic import BaseModel

from wowowify.shared.logging_utils import warning as log_warning

IMAGE_PROVIDERS = ("venice", "placeholder")
KV_BACKENDS = ("auto", "memory", "cosmos")
RUN_STATE_BACKENDS = ("auto", "file", "cosmos", "memory")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_choice(name: str, choices: Tuple[str, ...], default: str) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw not in choices:
        log_warning(None, "config:invalid_choice", name=name, value=raw, fallback=default)
        return default
    return raw


class Settings(BaseModel):
    # generation
    image_provider: Literal["venice", "placeholder"] = "venice"
    venice_api_key: Optional[str] = None
    venice_api_url: str = "https://api.venice.ai/api/v1/image/generate"
    venice_model: str = "stable-diffusion-3.5"
    generated_size: int = 512

    # overlay assets: a local directory wins over the base URL
    overlay_asset_base_url: Optional[str] = "https://wowowifyer.vercel.app"
    overlay_asset_dir: Optional[str] = None
    font_dir: Optional[str] = None

    # stores
    kv_backend: Literal["auto", "memory", "cosmos"] = "auto"
    run_state_backend: Literal["auto", "file", "cosmos", "memory"] = "auto"
    runtime_state_dir: str = str(Path(tempfile.gettempdir()) / "wowowify-runtime")
    cosmos_connection_string: Optional[str] = None
    cosmos_db_name: Optional[str] = None
    cosmos_container_kv: Optional[str] = None
    cosmos_container_runs: Optional[str] = None
    blob_connection_string: Optional[str] = None
    blob_container: str = "media"

    # limits
    rate_limit_max_requests: int = 20
    rate_limit_window_seconds: int = 3600
    pipeline_deadline_seconds: float = 30.0
    download_timeout_seconds: float = 10.0
    generation_timeout_seconds: float = 25.0
    upload_timeout_seconds: float = 10.0
    image_ttl_seconds: int = 24 * 60 * 60

    @property
    def cosmos_configured(self) -> bool:
        return bool(self.cosmos_connection_string and self.cosmos_db_name)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            image_provider=_env_choice("IMAGE_PROVIDER", IMAGE_PROVIDERS, "venice"),  # type: ignore[arg-type]
            venice_api_key=os.getenv("VENICE_API_KEY") or None,
            venice_api_url=os.getenv("VENICE_API_URL", cls.model_fields["venice_api_url"].default),
            venice_model=os.getenv("VENICE_MODEL", cls.model_fields["venice_model"].default),
            generated_size=_env_int("GENERATED_IMAGE_SIZE", 512),
            overlay_asset_base_url=os.getenv(
                "OVERLAY_ASSET_BASE_URL", cls.model_fields["overlay_asset_base_url"].default
            ) or None,
            overlay_asset_dir=os.getenv("OVERLAY_ASSET_DIR") or None,
            font_dir=os.getenv("FONT_DIR") or None,
            kv_backend=_env_choice("KV_BACKEND", KV_BACKENDS, "auto"),  # type: ignore[arg-type]
            run_state_backend=_env_choice("RUN_STATE_BACKEND", RUN_STATE_BACKENDS, "auto"),  # type: ignore[arg-type]
            runtime_state_dir=os.getenv("RUNTIME_STATE_DIR", cls.model_fields["runtime_state_dir"].default),
            cosmos_connection_string=os.getenv("COSMOS_DB_CONNECTION_STRING") or None,
            cosmos_db_name=os.getenv("COSMOS_DB_NAME") or None,
            cosmos_container_kv=os.getenv("COSMOS_DB_CONTAINER_KV") or None,
            cosmos_container_runs=os.getenv("COSMOS_DB_CONTAINER_RUNS") or None,
            blob_connection_string=os.getenv("PUBLIC_BLOB_CONNECTION_STRING") or None,
            blob_container=os.getenv("PUBLIC_BLOB_CONTAINER", "media"),
            rate_limit_max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", 20),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", 3600),
            pipeline_deadline_seconds=_env_float("PIPELINE_DEADLINE_SECONDS", 30.0),
            download_timeout_seconds=_env_float("DOWNLOAD_TIMEOUT_SECONDS", 10.0),
            generation_timeout_seconds=_env_float("GENERATION_TIMEOUT_SECONDS", 25.0),
            upload_timeout_seconds=_env_float("UPLOAD_TIMEOUT_SECONDS", 10.0),
            image_ttl_seconds=_env_int("IMAGE_TTL_SECONDS", 24 * 60 * 60),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
