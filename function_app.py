import os
import logging
import azure.functions as func

from wowowify.function_blueprints.agent_blueprint import bp as agent_bp
from wowowify.function_blueprints.image_blueprint import bp as image_bp
from wowowify.function_blueprints.metrics_blueprint import bp as metrics_bp
from wowowify.function_blueprints.status_blueprint import bp as status_bp
from wowowify.shared.logging_utils import LOGGER_NAME

# Azure SDK loggers that get chatty at INFO (every HTTP call to Cosmos / Blob)
_SDK_LOGGERS = ("azure", "azure.cosmos", "azure.storage.blob", "azure.core.pipeline.policies.http_logging_policy")


def _level(env_name: str, default: int) -> int:
    name = (os.getenv(env_name) or "").strip().upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def _configure_logging() -> None:
    sdk_level = _level("AZURE_SDK_LOG_LEVEL", logging.WARNING)
    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(sdk_level)
    logging.getLogger(LOGGER_NAME).setLevel(_level("WOWOWIFY_LOG_LEVEL", logging.INFO))


_configure_logging()

app = func.FunctionApp()
app.register_functions(agent_bp)
app.register_functions(image_bp)
app.register_functions(status_bp)
app.register_functions(metrics_bp)
