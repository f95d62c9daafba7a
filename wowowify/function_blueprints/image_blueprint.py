from typing import Dict, Optional, Tuple, Union

import azure.functions as func

from wowowify.pipeline.orchestrator import get_pipeline
from wowowify.shared.image_store import ImageStore
from wowowify.shared.logging_utils import info as log_info


bp = func.Blueprint()


def handle_image_request(
    image_id: Optional[str], store: ImageStore
) -> Tuple[int, Union[bytes, str], str, Dict[str, str]]:
    """Return (status, body, mimetype, headers) for an ephemeral image lookup."""
    if not image_id:
        return 400, "Missing image ID", "text/plain", {}
    image = store.get(image_id)
    if image is None:
        log_info(None, "image:not_found", id=image_id)
        return 404, "Image not found", "text/plain", {}
    return 200, image.data, image.contentType, {"Cache-Control": f"public, max-age={store.ttl_seconds}"}


@bp.function_name(name="image")
@bp.route(route="image", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def image(req: func.HttpRequest) -> func.HttpResponse:
    status, body, mimetype, headers = handle_image_request(req.params.get("id"), get_pipeline().image_store)
    return func.HttpResponse(body=body, mimetype=mimetype, status_code=status, headers=headers)
