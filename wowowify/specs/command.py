from __future__ import annotations

import math
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common.enums import Action, FontFamily, FontStyle, TextPosition


_POSITION_ALIASES: Dict[str, TextPosition] = {
    "top-center": TextPosition.TOP,
    "center-top": TextPosition.TOP,
    "bottom-center": TextPosition.BOTTOM,
    "center-bottom": TextPosition.BOTTOM,
    "center-left": TextPosition.LEFT,
    "middle-left": TextPosition.LEFT,
    "center-right": TextPosition.RIGHT,
    "middle-right": TextPosition.RIGHT,
    "middle": TextPosition.CENTER,
    "centre": TextPosition.CENTER,
    "center-center": TextPosition.CENTER,
    "left-top": TextPosition.TOP_LEFT,
    "right-top": TextPosition.TOP_RIGHT,
    "left-bottom": TextPosition.BOTTOM_LEFT,
    "right-bottom": TextPosition.BOTTOM_RIGHT,
}


def normalize_position(value: Any) -> Optional[TextPosition]:
    """Map a user token such as ``"bottom_right"`` or ``"top center"`` onto the 3x3 grid."""
    if isinstance(value, TextPosition):
        return value
    if not isinstance(value, str):
        return None
    token = "-".join(value.strip().lower().replace("_", " ").replace("-", " ").split())
    if not token:
        return None
    try:
        return TextPosition(token)
    except ValueError:
        return _POSITION_ALIASES.get(token)


def font_from_style(token: Optional[str]) -> Tuple[Optional[FontFamily], Optional[FontStyle]]:
    """Translate a free style word into (family, weight); unknown words map to (None, None)."""
    if not token:
        return None, None
    t = token.strip().lower()
    if t in ("serif", "times"):
        return FontFamily.SERIF, None
    if t in ("mono", "monospace", "code", "courier"):
        return FontFamily.MONOSPACE, None
    if t in ("sans", "sans-serif", "roboto", "arial"):
        return FontFamily.SANS, None
    if t in ("thin", "light", "normal", "regular"):
        return None, FontStyle.NORMAL
    if t == "bold":
        return None, FontStyle.BOLD
    if t in ("handwriting", "script"):
        # no handwriting face ships; keep sans at normal weight
        return FontFamily.SANS, FontStyle.NORMAL
    return None, None


class OverlayControls(BaseModel):
    model_config = ConfigDict(frozen=True)

    scale: float = 1.0
    x: float = 0.0
    y: float = 0.0
    overlayColor: str = "#000000"
    overlayAlpha: float = 0.0

    @field_validator("scale")
    @classmethod
    def _positive_scale(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("scale must be a positive finite number")
        return v

    @field_validator("x", "y")
    @classmethod
    def _finite_offset(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("offsets must be finite")
        return v

    @field_validator("overlayAlpha")
    @classmethod
    def _clamp_alpha(cls, v: float) -> float:
        if math.isnan(v):
            raise ValueError("overlayAlpha must be a number")
        return min(1.0, max(0.0, v))

    @field_validator("overlayColor")
    @classmethod
    def _color(cls, v: str) -> str:
        v = (v or "").strip().lower()
        return v or "#000000"


class TextSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    position: TextPosition = TextPosition.CENTER
    fontSize: int = Field(32, gt=0)
    fontFamily: FontFamily = FontFamily.SANS
    fontStyle: FontStyle = FontStyle.BOLD
    color: str = "white"
    strokeColor: Optional[str] = "black"
    strokeWidth: int = Field(2, ge=0)
    backgroundColor: Optional[str] = None
    rotationDegrees: float = 0.0

    @field_validator("position", mode="before")
    @classmethod
    def _position(cls, v: Any) -> TextPosition:
        return normalize_position(v) or TextPosition.CENTER

    @field_validator("rotationDegrees")
    @classmethod
    def _rotation(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("rotationDegrees must be finite")
        return v


class ParsedCommand(BaseModel):
    """Structured intent derived from one free-text instruction.

    Frozen: stages that need different values build a new instance with
    ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    action: Action = Action.GENERATE
    prompt: Optional[str] = None
    baseImageUrl: Optional[str] = None
    useParentImage: bool = False
    overlayMode: Optional[str] = None
    controls: Optional[OverlayControls] = None
    text: Optional[TextSpec] = None

    @property
    def effective_controls(self) -> OverlayControls:
        return self.controls or OverlayControls()

    def history_fields(self) -> Dict[str, Any]:
        """Derived fields safe to keep after the request; the command itself is never stored."""
        return {
            "action": self.action.value,
            "overlayMode": self.overlayMode,
            "hasText": self.text is not None,
        }


class CommandOverrides(BaseModel):
    """Explicit parameters a caller supplies alongside (or instead of) free text."""

    action: Optional[Action] = None
    prompt: Optional[str] = None
    baseImageUrl: Optional[str] = None
    useParentImage: Optional[bool] = None
    overlayMode: Optional[str] = None
    controls: Optional[Dict[str, Any]] = None
    text: Optional[Dict[str, Any]] = None
