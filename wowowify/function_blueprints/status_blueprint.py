import json
from typing import Any, Dict, Optional, Tuple

import azure.functions as func

from wowowify.pipeline.orchestrator import get_pipeline
from wowowify.shared.logging_utils import info as log_info, error as log_error
from wowowify.shared.state import RunStateStore
from wowowify.specs.http.status import RunStatusResponse


bp = func.Blueprint()


def handle_status_request(run_id: Optional[str], store: Optional[RunStateStore]) -> Tuple[int, Dict[str, Any]]:
    """Look up the recorded history of one agent run."""
    if not run_id:
        return 400, {"success": False, "message": "Missing runId"}
    if store is None:
        return 503, {"success": False, "message": "Run history is not configured"}
    try:
        state = store.get_status(run_id)
    except Exception as exc:
        log_error(run_id, "status:lookup_failed", error=str(exc))
        return 500, {"success": False, "message": "Run history unavailable"}
    if not state:
        log_info(run_id, "status:not_found")
        return 404, {"success": False, "message": "Run not found"}
    fields = {k: v for k, v in state.items() if v is not None}
    resp = RunStatusResponse(**{**fields, "runId": fields.get("runId") or run_id})
    return 200, resp.model_dump(mode="json", exclude_none=True)


@bp.function_name(name="run_status")
@bp.route(route="status", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def run_status(req: func.HttpRequest) -> func.HttpResponse:
    run_id = req.params.get("runId") or req.params.get("id")
    status, payload = handle_status_request(run_id, get_pipeline().run_state)
    return func.HttpResponse(body=json.dumps(payload), mimetype="application/json", status_code=status)
