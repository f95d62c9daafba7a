import json
from typing import Any, Dict, Optional, Tuple

import azure.functions as func

from wowowify.pipeline.orchestrator import get_pipeline
from wowowify.shared.logging_utils import error as log_error
from wowowify.shared.metrics import RequestMetrics
from wowowify.specs.http.status import MetricsResponse


bp = func.Blueprint()


def handle_metrics_request(metrics: Optional[RequestMetrics]) -> Tuple[int, Dict[str, Any]]:
    if metrics is None:
        return 503, {"success": False, "message": "Metrics are not configured"}
    try:
        counts = metrics.snapshot()
    except Exception as exc:
        log_error(None, "metrics:snapshot_failed", error=str(exc))
        return 500, {"success": False, "message": "Metrics unavailable"}
    return 200, MetricsResponse(windowSeconds=metrics.window_seconds, **counts).model_dump()


@bp.function_name(name="metrics")
@bp.route(route="metrics", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def metrics(req: func.HttpRequest) -> func.HttpResponse:
    status, payload = handle_metrics_request(get_pipeline().metrics)
    return func.HttpResponse(body=json.dumps(payload), mimetype="application/json", status_code=status)
