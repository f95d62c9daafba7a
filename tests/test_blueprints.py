from __future__ import annotations

from wowowify.function_blueprints.agent_blueprint import base_url, client_key, handle_agent_request
from wowowify.function_blueprints.image_blueprint import handle_image_request
from wowowify.function_blueprints.metrics_blueprint import handle_metrics_request
from wowowify.function_blueprints.status_blueprint import handle_status_request
from wowowify.shared.image_store import ImageStore
from wowowify.shared.kv_store import InMemoryKeyValueStore
from wowowify.shared.metrics import RequestMetrics
from wowowify.shared.rate_limiter import AdmissionController

from conftest import FakeFetcher, make_png

HEADERS = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Forwarded-Proto": "https", "Host": "app.test"}


def test_client_key_and_base_url():
    assert client_key(HEADERS) == "203.0.113.7"
    assert client_key({"x-real-ip": "198.51.100.2"}) == "198.51.100.2"
    assert client_key({}) == "unknown"
    assert base_url(HEADERS) == "https://app.test"
    assert base_url({}) == ""


def test_rejects_non_object_body(make_pipeline):
    status, payload, _ = handle_agent_request(["nope"], HEADERS, make_pipeline())
    assert status == 400
    assert payload["success"] is False


def test_rejects_empty_command(make_pipeline):
    status, payload, _ = handle_agent_request({"command": "  "}, HEADERS, make_pipeline())
    assert status == 400
    assert payload["message"] == "No command or parameters provided"


def test_rejects_invalid_field_types(make_pipeline):
    status, _, _ = handle_agent_request({"command": "lensify", "isFarcaster": "maybe"}, HEADERS, make_pipeline())
    assert status == 400


def test_successful_request(make_pipeline):
    pipeline = make_pipeline(fetch_bytes=FakeFetcher({"https://assets.test/lens/lensify.png": make_png(mode="RGBA")}))

    status, payload, headers = handle_agent_request({"command": "lensify"}, HEADERS, pipeline)

    assert status == 200
    assert payload["status"] == "completed"
    assert payload["overlayMode"] == "lensify"
    assert payload["resultUrl"].startswith("https://app.test/api/image?id=")
    assert "error" not in payload
    assert headers == {}


def test_validation_failure_maps_to_400(make_pipeline):
    body = {"command": "lensify", "parameters": {"overlayMode": "nope"}}
    status, payload, _ = handle_agent_request(body, HEADERS, make_pipeline())
    assert status == 400
    assert payload["error"]["code"] == "VALIDATION_ERROR"


def test_farcaster_reply_uses_parent_image(make_pipeline):
    parent = "https://imagedelivery.net/acct/img/public"
    fetcher = FakeFetcher(
        {
            f"{parent}/original": make_png(),
            "https://assets.test/degen/degenify.png": make_png(mode="RGBA"),
        }
    )
    body = {"command": "this image", "isFarcaster": True, "parentImageUrl": parent}

    status, payload, _ = handle_agent_request(body, HEADERS, make_pipeline(fetch_bytes=fetcher))

    assert status == 200
    assert payload["overlayMode"] == "degenify"
    assert f"{parent}/original" in fetcher.calls


def test_rate_limited_request_sets_retry_after(make_pipeline, kv):
    pipeline = make_pipeline(admission=AdmissionController(kv, max_requests=1))
    body = {"command": "generate a small green frog"}

    first, _, _ = handle_agent_request(body, HEADERS, pipeline)
    status, payload, headers = handle_agent_request(body, HEADERS, pipeline)

    assert first == 200
    assert status == 429
    assert payload["error"]["code"] == "ADMISSION_DENIED"
    assert int(headers["Retry-After"]) > 0


def test_missing_parent_maps_to_502(make_pipeline):
    status, payload, _ = handle_agent_request({"command": "higherify this"}, HEADERS, make_pipeline())
    assert status == 502
    assert payload["error"]["details"]["cause"] == "parent_missing"


def test_image_handler():
    store = ImageStore(InMemoryKeyValueStore(), ttl_seconds=120)
    image_id = store.store(b"\x89PNG...", "image/png")

    status, body, mimetype, headers = handle_image_request(image_id, store)
    assert (status, body, mimetype) == (200, b"\x89PNG...", "image/png")
    assert headers["Cache-Control"] == "public, max-age=120"

    assert handle_image_request("unknown", store)[0] == 404
    assert handle_image_request(None, store)[0] == 400


def test_status_handler_returns_recorded_run(make_pipeline):
    pipeline = make_pipeline(fetch_bytes=FakeFetcher({"https://assets.test/lens/lensify.png": make_png(mode="RGBA")}))
    _, result, _ = handle_agent_request({"command": "lensify"}, HEADERS, pipeline)

    status, payload = handle_status_request(result["id"], pipeline.run_state)

    assert status == 200
    assert payload["runId"] == result["id"]
    assert payload["status"] == "completed"
    assert payload["isComplete"] is True
    phases = [ev["phase"] for ev in payload["events"]]
    assert phases[0] == "parsed" and phases[-1] == "completed"
    assert payload["summary"]["overlayMode"] == "lensify"


def test_status_handler_errors(make_pipeline):
    store = make_pipeline().run_state
    assert handle_status_request(None, store)[0] == 400
    assert handle_status_request("no-such-run", store)[0] == 404
    assert handle_status_request("any", None)[0] == 503


def test_status_handler_reports_store_failure():
    class BrokenRunState:
        def get_status(self, run_id):
            raise RuntimeError("offline")

    status, payload = handle_status_request("abc", BrokenRunState())
    assert status == 500
    assert payload["success"] is False


def test_metrics_handler_reports_counters():
    metrics = RequestMetrics(InMemoryKeyValueStore())
    metrics.increment_total()
    metrics.increment_total()
    metrics.increment_failed()

    status, payload = handle_metrics_request(metrics)

    assert status == 200
    assert payload == {"totalRequests": 2, "failedRequests": 1, "windowSeconds": 3600}
    assert handle_metrics_request(None)[0] == 503
