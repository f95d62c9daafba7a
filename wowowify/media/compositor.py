"""
Raster compositing with Pillow.

``compose`` is a pure function over bytes: base image in, full-size and
preview PNGs out. It never fetches anything; overlay asset bytes are pushed in
by the pipeline. Layers are applied strictly in order: tint, overlay stamp,
text (background box, shadow, stroke, fill).
"""
import re
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Tuple

from PIL import Image, ImageColor, ImageDraw, ImageFilter, UnidentifiedImageError

from wowowify.media.fonts import load_font, measurer
from wowowify.media.text_fit import LINE_HEIGHT, PADDING, fit, line_centers, resolve_anchor
from wowowify.shared.logging_utils import warning as log_warning
from wowowify.specs.command import OverlayControls, ParsedCommand, TextSpec
from wowowify.specs.common.errors import CompositionFatalError, CompositionRecoverableError

PREVIEW_WIDTH = 300
SHADOW_COLOR = (0, 0, 0, 178)
SHADOW_OFFSET = (2, 2)
SHADOW_BLUR = 3

RGBA = Tuple[int, int, int, int]

_RGBA_FLOAT = re.compile(
    r"^rgba?\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*(?:,\s*(\d*\.?\d+)(%?)\s*)?\)$",
    re.IGNORECASE,
)

_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError)


@dataclass
class ComposeResult:
    fullBuffer: bytes
    previewBuffer: bytes
    width: int
    height: int
    overlayApplied: bool = False
    warnings: List[str] = field(default_factory=list)


def parse_color(value: Optional[str], default: str = "#000000") -> RGBA:
    """Parse a CSS-ish color into RGBA; unparseable input yields ``default``.

    Accepts everything ``PIL.ImageColor`` does plus ``rgba()`` with a
    fractional alpha and ``transparent``.
    """
    for candidate in (value, default):
        if not candidate:
            continue
        token = candidate.strip()
        if token.lower() == "transparent":
            return (0, 0, 0, 0)
        m = _RGBA_FLOAT.match(token)
        if m:
            r, g, b = (min(255, int(m.group(i))) for i in (1, 2, 3))
            alpha = 255
            if m.group(4) is not None:
                a = float(m.group(4))
                a = a / 100 if m.group(5) else a
                alpha = int(round(min(1.0, max(0.0, a)) * 255))
            return (r, g, b, alpha)
        try:
            rgb = ImageColor.getrgb(token)
        except ValueError:
            continue
        return rgb if len(rgb) == 4 else (rgb[0], rgb[1], rgb[2], 255)  # type: ignore[return-value]
    return (0, 0, 0, 255)


def _decode(data: Optional[bytes]) -> Image.Image:
    if not data:
        raise ValueError("empty image data")
    img = Image.open(BytesIO(data))
    img.load()
    return img


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _apply_tint(canvas: Image.Image, controls: OverlayControls) -> Image.Image:
    r, g, b, a = parse_color(controls.overlayColor, "#000000")
    alpha = int(round(controls.overlayAlpha * a))
    if alpha <= 0:
        return canvas
    tint = Image.new("RGBA", canvas.size, (r, g, b, alpha))
    return Image.alpha_composite(canvas, tint)


def _apply_stamp(canvas: Image.Image, asset_bytes: Optional[bytes], controls: OverlayControls) -> Image.Image:
    try:
        asset = _decode(asset_bytes).convert("RGBA")
    except _DECODE_ERRORS as exc:
        raise CompositionRecoverableError(f"Overlay asset unusable: {exc}") from exc

    width, height = canvas.size
    aw, ah = asset.size
    sw = max(1, int(round(aw * controls.scale)))
    sh = max(1, int(round(ah * controls.scale)))
    ox = int(round((width - sw) / 2 + controls.x))
    oy = int(round((height - sh) / 2 + controls.y))

    # only resample the part of the stamp that lands on the canvas
    vx0, vy0 = max(0, ox), max(0, oy)
    vx1, vy1 = min(width, ox + sw), min(height, oy + sh)
    if vx1 <= vx0 or vy1 <= vy0:
        return canvas
    fx, fy = aw / sw, ah / sh
    src_box = ((vx0 - ox) * fx, (vy0 - oy) * fy, (vx1 - ox) * fx, (vy1 - oy) * fy)
    visible = asset.resize((vx1 - vx0, vy1 - vy0), Image.Resampling.LANCZOS, box=src_box)

    layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    layer.paste(visible, (vx0, vy0))
    return Image.alpha_composite(canvas, layer)


def _line_origin(draw: ImageDraw.ImageDraw, line: str, font, x: float, cy: float, align: str) -> Tuple[float, float]:
    left, top, right, bottom = draw.textbbox((0, 0), line, font=font)
    if align == "left":
        ox = x - left
    elif align == "right":
        ox = x - right
    else:
        ox = x - (left + right) / 2
    return ox, cy - (top + bottom) / 2


def _draw_text(canvas: Image.Image, spec: TextSpec, font_dir: Optional[str]) -> Image.Image:
    width, height = canvas.size
    family, style = spec.fontFamily, spec.fontStyle
    base_font = load_font(family, style, spec.fontSize, font_dir)
    fitted = fit(
        spec.content,
        width - 2 * PADDING,
        measurer(base_font),
        spec.fontSize,
        measure_at=lambda size: measurer(load_font(family, style, size, font_dir)),
    )
    if not fitted.lines:
        return canvas
    size = fitted.fontSize
    font = load_font(family, style, size, font_dir)
    anchor = resolve_anchor(spec.position, width, height, size)
    centers = line_centers(anchor.y, len(fitted.lines), size)

    layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    origins = [_line_origin(draw, line, font, anchor.x, cy, anchor.align) for line, cy in zip(fitted.lines, centers)]

    if spec.backgroundColor:
        block_w = max(font.getlength(line) for line in fitted.lines)
        block_h = len(fitted.lines) * size * LINE_HEIGHT
        if anchor.align == "left":
            x0 = anchor.x
        elif anchor.align == "right":
            x0 = anchor.x - block_w
        else:
            x0 = anchor.x - block_w / 2
        y0 = anchor.y - block_h / 2
        pad = PADDING / 2
        draw.rectangle(
            [x0 - pad, y0 - pad, x0 + block_w + pad, y0 + block_h + pad],
            fill=parse_color(spec.backgroundColor, "transparent"),
        )

    shadow = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    shadow_draw = ImageDraw.Draw(shadow)
    for line, (ox, oy) in zip(fitted.lines, origins):
        shadow_draw.text((ox + SHADOW_OFFSET[0], oy + SHADOW_OFFSET[1]), line, font=font, fill=SHADOW_COLOR)
    layer = Image.alpha_composite(layer, shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR)))

    draw = ImageDraw.Draw(layer)
    fill = parse_color(spec.color, "white")
    stroke = parse_color(spec.strokeColor, "black") if spec.strokeColor else None
    for line, (ox, oy) in zip(fitted.lines, origins):
        if stroke is not None and spec.strokeWidth > 0:
            draw.text((ox, oy), line, font=font, fill=stroke, stroke_width=spec.strokeWidth, stroke_fill=stroke)
        draw.text((ox, oy), line, font=font, fill=fill)

    if spec.rotationDegrees:
        # positive degrees turn clockwise
        layer = layer.rotate(-spec.rotationDegrees, resample=Image.Resampling.BICUBIC, center=(anchor.x, anchor.y))
    return Image.alpha_composite(canvas, layer)


def _encode(img: Image.Image, keep_alpha: bool) -> bytes:
    buf = BytesIO()
    (img if keep_alpha else img.convert("RGB")).save(buf, format="PNG")
    return buf.getvalue()


def _preview(canvas: Image.Image) -> Image.Image:
    width, height = canvas.size
    preview_height = max(1, int(round(height * PREVIEW_WIDTH / width)))
    return canvas.resize((PREVIEW_WIDTH, preview_height), Image.Resampling.LANCZOS)


def compose(
    base_bytes: bytes,
    command: ParsedCommand,
    overlay_asset_bytes: Optional[bytes] = None,
    *,
    font_dir: Optional[str] = None,
    run_trace_id: Optional[str] = None,
) -> ComposeResult:
    """Composite tint, overlay stamp and text onto ``base_bytes``.

    Raises ``CompositionFatalError`` only when the base image cannot be
    decoded. A missing or broken overlay asset is logged and skipped.
    """
    try:
        base = _decode(base_bytes)
    except _DECODE_ERRORS as exc:
        raise CompositionFatalError(f"Base image could not be decoded: {exc}") from exc

    keep_alpha = _has_alpha(base)
    canvas = base.convert("RGBA")
    controls = command.effective_controls
    warnings: List[str] = []

    canvas = _apply_tint(canvas, controls)

    overlay_applied = False
    if command.overlayMode:
        try:
            canvas = _apply_stamp(canvas, overlay_asset_bytes, controls)
            overlay_applied = True
        except CompositionRecoverableError as exc:
            log_warning(run_trace_id, "compositor:overlay_skipped", overlayMode=command.overlayMode, error=str(exc))
            warnings.append(str(exc))

    if command.text is not None and command.text.content.strip():
        canvas = _draw_text(canvas, command.text, font_dir)

    return ComposeResult(
        fullBuffer=_encode(canvas, keep_alpha),
        previewBuffer=_encode(_preview(canvas), keep_alpha),
        width=canvas.width,
        height=canvas.height,
        overlayApplied=overlay_applied,
        warnings=warnings,
    )
