import json
from typing import Any, Dict, Mapping, Tuple

import azure.functions as func
from pydantic import ValidationError

from wowowify.pipeline.orchestrator import Pipeline, get_pipeline
from wowowify.shared.logging_utils import info as log_info, error as log_error
from wowowify.specs.common.enums import InterfaceTag, RunStatus
from wowowify.specs.http.agent import AgentRequest, CallerContext, ErrorResponse


bp = func.Blueprint()

# error code -> HTTP status; anything unlisted is a 500
ERROR_STATUS: Dict[str, int] = {
    "VALIDATION_ERROR": 400,
    "ADMISSION_DENIED": 429,
    "RESOLUTION_ERROR": 502,
    "COMPOSITION_FATAL": 422,
    "TIMEOUT": 504,
    "CONFIGURATION_ERROR": 500,
}

Response = Tuple[int, Dict[str, Any], Dict[str, str]]


def _header(headers: Mapping[str, str], name: str) -> str:
    # azure.functions headers are case-insensitive; plain dicts in tests are not
    value = headers.get(name) or headers.get(name.lower()) or ""
    return value.strip()


def client_key(headers: Mapping[str, str]) -> str:
    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return _header(headers, "X-Real-IP") or "unknown"


def base_url(headers: Mapping[str, str]) -> str:
    proto = _header(headers, "X-Forwarded-Proto")
    host = _header(headers, "X-Forwarded-Host") or _header(headers, "Host")
    return f"{proto}://{host}" if proto and host else ""


def _error(status: int, message: str, code: str = "VALIDATION_ERROR") -> Response:
    err = ErrorResponse(message=message, errorCode=code)
    return status, err.model_dump(), {}


def handle_agent_request(body: Any, headers: Mapping[str, str], pipeline: Pipeline) -> Response:
    """Validate the JSON body, run the pipeline and map the outcome to an HTTP status."""
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")
    try:
        req = AgentRequest.model_validate(body)
    except ValidationError as exc:
        log_error(None, "agent:invalid_request", error=str(exc))
        return _error(400, f"Invalid request: {exc.error_count()} invalid field(s)")
    if not (req.command and req.command.strip()) and not req.parameters:
        return _error(400, "No command or parameters provided")

    context = CallerContext(
        interface=InterfaceTag.FARCASTER if req.isFarcaster else InterfaceTag.WEB,
        clientKey=client_key(headers),
        parentImageUrl=req.parentImageUrl,
        ownerHint=req.walletAddress,
        baseUrl=base_url(headers),
    )
    log_info(None, "agent:request", interface=context.interface.value, hasParentImage=bool(req.parentImageUrl))
    result = pipeline.run(req.command, context, overrides=req.parameters)

    out_headers: Dict[str, str] = {}
    if result.status == RunStatus.COMPLETED:
        status = 200
    else:
        status = ERROR_STATUS.get((result.error or {}).get("code", ""), 500)
    if result.retryAfterSeconds is not None:
        out_headers["Retry-After"] = str(result.retryAfterSeconds)
    return status, result.model_dump(mode="json", exclude_none=True), out_headers


@bp.function_name(name="agent")
@bp.route(route="agent", methods=["POST"], auth_level=func.AuthLevel.ANONYMOUS)
def agent(req: func.HttpRequest) -> func.HttpResponse:
    try:
        data = req.get_json()
    except ValueError:
        log_error(None, "agent:invalid_json")
        status, payload, headers = _error(400, "Invalid JSON body")
    else:
        status, payload, headers = handle_agent_request(data, req.headers, get_pipeline())
    return func.HttpResponse(
        body=json.dumps(payload),
        mimetype="application/json",
        status_code=status,
        headers=headers,
    )
