from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from wowowify.specs.command import CommandOverrides, OverlayControls, ParsedCommand, TextSpec
from wowowify.specs.common.errors import CommandValidationError
from wowowify.specs.overlays import DEFAULT_REGISTRY, OverlayRegistry


def _validation_details(exc: ValidationError) -> Dict[str, Any]:
    return {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]}


def coerce_overrides(raw: Union[CommandOverrides, Dict[str, Any], None]) -> Optional[CommandOverrides]:
    if raw is None or isinstance(raw, CommandOverrides):
        return raw
    try:
        return CommandOverrides.model_validate(raw)
    except ValidationError as exc:
        raise CommandValidationError("Invalid parameters", details=_validation_details(exc)) from exc


def apply_overrides(
    command: ParsedCommand,
    overrides: Union[CommandOverrides, Dict[str, Any], None],
    registry: OverlayRegistry = DEFAULT_REGISTRY,
) -> ParsedCommand:
    """Layer caller-supplied parameters over a parsed command.

    Controls and text are merged field by field; every other value replaces
    the parsed one. Raises ``CommandValidationError`` for an unknown overlay
    mode or out-of-range values, before any I/O happens.
    """
    params = coerce_overrides(overrides)
    if params is None:
        return command

    update: Dict[str, Any] = {}
    if params.overlayMode:
        mode = registry.normalize(params.overlayMode)
        if mode is None:
            raise CommandValidationError(
                f"Invalid overlay mode: {params.overlayMode}. Supported modes are: {', '.join(registry.modes)}.",
                details={"overlayMode": params.overlayMode},
            )
        update["overlayMode"] = mode
    if params.baseImageUrl:
        update["baseImageUrl"] = params.baseImageUrl
    if params.prompt:
        update["prompt"] = params.prompt
    if params.useParentImage is not None:
        update["useParentImage"] = params.useParentImage
    if params.action is not None:
        update["action"] = params.action

    try:
        if params.controls:
            current = command.controls.model_dump() if command.controls else {}
            update["controls"] = OverlayControls.model_validate({**current, **params.controls})
        if params.text:
            current = command.text.model_dump() if command.text else {}
            update["text"] = TextSpec.model_validate({**current, **params.text})
    except ValidationError as exc:
        raise CommandValidationError("Invalid parameters", details=_validation_details(exc)) from exc

    return command.model_copy(update=update)
