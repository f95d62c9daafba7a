from __future__ import annotations

from wowowify.shared.config import Settings


def test_from_env_defaults(monkeypatch):
    for name in ("IMAGE_PROVIDER", "VENICE_API_KEY", "OVERLAY_ASSET_DIR", "RATE_LIMIT_MAX_REQUESTS", "KV_BACKEND",
                 "COSMOS_DB_CONNECTION_STRING", "COSMOS_DB_NAME"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.image_provider == "venice"
    assert settings.venice_api_key is None
    assert settings.rate_limit_max_requests == 20
    assert settings.kv_backend == "auto"
    assert settings.cosmos_configured is False


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("IMAGE_PROVIDER", "Placeholder")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "5")
    monkeypatch.setenv("PIPELINE_DEADLINE_SECONDS", "12.5")
    monkeypatch.setenv("OVERLAY_ASSET_DIR", "/srv/assets")
    monkeypatch.setenv("COSMOS_DB_CONNECTION_STRING", "AccountEndpoint=x")
    monkeypatch.setenv("COSMOS_DB_NAME", "wowowify")

    settings = Settings.from_env()

    assert settings.image_provider == "placeholder"
    assert settings.rate_limit_max_requests == 5
    assert settings.pipeline_deadline_seconds == 12.5
    assert settings.overlay_asset_dir == "/srv/assets"
    assert settings.cosmos_configured is True


def test_from_env_ignores_malformed_numbers(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "an hour")
    assert Settings.from_env().rate_limit_window_seconds == 3600


def test_from_env_reads_step_timeouts_and_size(monkeypatch):
    monkeypatch.setenv("DOWNLOAD_TIMEOUT_SECONDS", "4")
    monkeypatch.setenv("GENERATION_TIMEOUT_SECONDS", "40.5")
    monkeypatch.setenv("UPLOAD_TIMEOUT_SECONDS", "7")
    monkeypatch.setenv("GENERATED_IMAGE_SIZE", "1024")

    settings = Settings.from_env()

    assert settings.download_timeout_seconds == 4.0
    assert settings.generation_timeout_seconds == 40.5
    assert settings.upload_timeout_seconds == 7.0
    assert settings.generated_size == 1024


def test_from_env_falls_back_on_unknown_choices(monkeypatch):
    monkeypatch.setenv("IMAGE_PROVIDER", "dalle")
    monkeypatch.setenv("KV_BACKEND", "redis")
    monkeypatch.setenv("RUN_STATE_BACKEND", " File ")

    settings = Settings.from_env()

    assert settings.image_provider == "venice"
    assert settings.kv_backend == "auto"
    assert settings.run_state_backend == "file"
