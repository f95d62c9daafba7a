"""
Free-text command parser.

Turns an instruction such as ``"higherify a mountain landscape. scale to 0.5"``
into a ``ParsedCommand``. Rules run in a fixed order so the same input always
yields the same command:

1. overlay-mode keywords (exactly one distinct mode, whole words)
2. explicit generation phrasing (``<mode> a ...``, ``generate ...``, ``an image of ...``)
3. ``--text`` / ``--caption`` directives; a text-only command overlays the parent image
4. control phrases (scale, position, color, opacity), last writer wins
5. fallback on parent references and residual length

``parse`` never raises; on an internal failure it returns a generate command
carrying the raw text as prompt.
"""
import math
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from PIL import ImageColor

from wowowify.shared.logging_utils import info as log_info, error as log_error
from wowowify.specs.command import OverlayControls, ParsedCommand, TextSpec, font_from_style, normalize_position
from wowowify.specs.common.enums import Action, InterfaceTag
from wowowify.specs.overlays import DEFAULT_REGISTRY, OverlayRegistry

# Residual text shorter than this carries no subject of its own.
MIN_DESCRIPTIVE_LENGTH = 10

INTERFACE_DEFAULT_MODES = {InterfaceTag.FARCASTER: "degenify"}
FALLBACK_DEFAULT_MODE = "higherify"

_URL_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)

_SECTION_RE = re.compile(
    r"\[(?P<bracketed>(?i:prompt|overlay|text|caption|wowow))\]\s*:|(?<![\w\[-])(?P<bare>PROMPT|OVERLAY|TEXT|CAPTION|WOWOW):"
)
_SECTION_KINDS = {"PROMPT": "prompt", "WOWOW": "prompt", "OVERLAY": "overlay", "TEXT": "text", "CAPTION": "text"}

_TEXT_CONTENT_RE = re.compile(
    r"""(?<![\w-])--(?:text|caption)\s+
        (?:"(?P<dq>[^"]*)"
          | '(?P<sq>[^']*)'
          | (?P<bare>[^\s,.\-"'][^,.]*?)(?=\s*(?:--|[,.]|$)))""",
    re.IGNORECASE | re.VERBOSE,
)
_TEXT_MODIFIER_RE = re.compile(
    r"""(?<![\w-])--(?P<flag>
            (?:text|caption)-position
          | (?:text|font|caption)-size
          | (?:text|font|caption)-colou?r
          | (?:text|font|caption)-style
          | text-stroke-width
          | text-stroke
          | text-bg
          | text-rotate)
        \s+(?P<value>"[^"]*"|'[^']*'|[^\s,]+)""",
    re.IGNORECASE | re.VERBOSE,
)

_NUMBER = r"-?(?:\d+(?:\.\d+)?|\.\d+)(?:e[-+]?\d+)?(?!\w)"
_CONTROL_RE = re.compile(
    rf"""(?<![\w-])(?:
        (?:scale|resize|size)\s+(?:(?:to|by|of)\s+)?(?P<scale>{_NUMBER})
      | (?:position|move|place)\s+(?:(?:at|to)\s+)?(?P<x>{_NUMBER})\s*(?:,\s*|\s+)(?P<y>{_NUMBER})
      | (?:set\s+)?colou?r\s+(?:(?:to|of)\s+)?(?P<color>\#[0-9a-f]{{3,8}}\b|[a-z]+)
      | (?:set\s+)?(?:opacity|alpha|transparency)\s+(?:(?:to|of)\s+)?(?P<alpha>{_NUMBER})
    )""",
    re.IGNORECASE | re.VERBOSE,
)

_GENERATE_VERB_RE = re.compile(
    r"^\s*(?:please\s+)?(?:generate|create|make|draw)(?:\s+me)?\b\s*(?P<rest>.*)$", re.IGNORECASE | re.DOTALL
)
_IMAGE_OF_RE = re.compile(
    r"^\s*an?\s+(?:image|picture|photo|photograph)\s+(?:of|with)\s+(?P<rest>.+)$", re.IGNORECASE | re.DOTALL
)
_PARENT_REF_RE = re.compile(
    r"(?:\b(?:overlay|apply|use|put|add)\s+(?:(?:on|to|onto)\s+)?)?"
    r"\b(?:this|parent|above|previous|that)\s+(?:image|photo|picture|pic|cast|one)\b"
    r"|\b(?:overlay|apply)\s+(?:on|to|onto)\s+(?:this|it)\b",
    re.IGNORECASE,
)

_LEADING_TRIMS = [
    re.compile(r"^(?:an?|the)\s+", re.IGNORECASE),
    re.compile(r"^(?:image|picture|photo|photograph)\s+(?:of|with)\s+", re.IGNORECASE),
    re.compile(r"^(?:of|with|and|me)\s+", re.IGNORECASE),
]
_TRAILING_CONNECTOR_RE = re.compile(r"\s+(?:with|and|of|using|in|on|to)$", re.IGNORECASE)
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,;:!?])")
_REPEATED_PUNCT_RE = re.compile(r"([.,;:!?])[.,;:!?]+")
_EDGE_PUNCT = " \t\r\n.,;:!?-"


def _collapse(text: str) -> str:
    text = " ".join(text.split())
    text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
    text = _REPEATED_PUNCT_RE.sub(r"\1", text)
    return text.strip(_EDGE_PUNCT)


def _cut(text: str, spans: List[Tuple[int, int]]) -> str:
    """Remove ``spans`` from ``text``, leaving a space in each gap."""
    out, last = [], 0
    for start, end in sorted(spans):
        out.append(text[last:start])
        last = max(last, end)
    out.append(text[last:])
    return " ".join(out)


@lru_cache(maxsize=8)
def _mode_phrase_pattern(registry: OverlayRegistry) -> Pattern[str]:
    names = "|".join(re.escape(m) for m in sorted(registry.modes, key=lambda m: (-len(m), m)))
    return re.compile(
        rf"(?:\b(?:apply|use|with|add|put)\s+)?\b(?:{names})\b(?:\s+(?:overlay|style|effect|filter)\b)?",
        re.IGNORECASE,
    )


@lru_cache(maxsize=8)
def _mode_pronoun_pattern(registry: OverlayRegistry) -> Pattern[str]:
    names = "|".join(re.escape(m) for m in registry.modes)
    return re.compile(
        rf"\b(?:{names})\s+(?P<ref>this|it|the\s+(?:image|photo|picture))\b(?!\s*(?:is|was|looks))",
        re.IGNORECASE,
    )


def clean_prompt(text: str, registry: OverlayRegistry = DEFAULT_REGISTRY) -> str:
    """Strip mode words, leading articles/connectors and edge punctuation."""
    text = _mode_phrase_pattern(registry).sub(" ", text)
    text = _collapse(text)
    while text:
        before = text
        for pattern in _LEADING_TRIMS:
            text = pattern.sub("", text, count=1)
        text = _TRAILING_CONNECTOR_RE.sub("", text).strip(_EDGE_PUNCT)
        if text == before:
            break
    return text


def detect_modes(text: str, registry: OverlayRegistry = DEFAULT_REGISTRY) -> List[str]:
    """Distinct registered modes in order of first appearance."""
    seen: List[str] = []
    for m in registry.keyword_pattern.finditer(text):
        mode = registry.normalize(m.group(1))
        if mode and mode not in seen:
            seen.append(mode)
    return seen


def _is_color(value: str) -> bool:
    v = value.lower()
    return v.startswith("#") or v in ImageColor.colormap


def extract_controls(text: str) -> Tuple[Dict[str, Any], str]:
    """Scan control phrases left to right; later phrases overwrite earlier ones.

    Returns (control fields, text with the accepted phrases removed). A
    non-positive or non-finite scale is consumed but dropped.
    """
    fields: Dict[str, Any] = {}
    spans: List[Tuple[int, int]] = []
    for m in _CONTROL_RE.finditer(text):
        if m.group("scale") is not None:
            scale = float(m.group("scale"))
            if math.isfinite(scale) and scale > 0:
                fields["scale"] = scale
        elif m.group("x") is not None:
            x, y = float(m.group("x")), float(m.group("y"))
            if math.isfinite(x) and math.isfinite(y):
                fields["x"], fields["y"] = x, y
        elif m.group("color") is not None:
            if not _is_color(m.group("color")):
                continue
            fields["overlayColor"] = m.group("color").lower()
        elif m.group("alpha") is not None:
            fields["overlayAlpha"] = float(m.group("alpha"))
        spans.append(m.span())
    return fields, _cut(text, spans)


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value.rstrip(".")


def _apply_text_modifier(fields: Dict[str, Any], flag: str, value: str) -> None:
    flag = flag.lower()
    if flag.endswith("-position"):
        position = normalize_position(value)
        if position is not None:
            fields["position"] = position
    elif flag.endswith("-size"):
        if value.isdigit() and int(value) > 0:
            fields["fontSize"] = int(value)
    elif flag.endswith("-color") or flag.endswith("-colour"):
        fields["color"] = value.lower()
    elif flag.endswith("-style"):
        family, style = font_from_style(value)
        if family is not None:
            fields["fontFamily"] = family
        if style is not None:
            fields["fontStyle"] = style
    elif flag == "text-stroke-width":
        if value.isdigit():
            fields["strokeWidth"] = int(value)
    elif flag == "text-stroke":
        fields["strokeColor"] = value.lower()
    elif flag == "text-bg":
        fields["backgroundColor"] = value.lower()
    elif flag == "text-rotate":
        try:
            degrees = float(value)
        except ValueError:
            return
        if math.isfinite(degrees):
            fields["rotationDegrees"] = degrees


def extract_text(text: str) -> Tuple[Optional[TextSpec], str]:
    """Pull ``--text``/``--caption`` directives and their modifiers out of ``text``.

    Modifiers without any content are consumed and ignored.
    """
    content: Optional[str] = None
    fields: Dict[str, Any] = {}
    spans: List[Tuple[int, int]] = []
    for m in _TEXT_MODIFIER_RE.finditer(text):
        _apply_text_modifier(fields, m.group("flag"), _unquote(m.group("value")))
        spans.append(m.span())
    stripped = _cut(text, spans)

    spans = []
    for m in _TEXT_CONTENT_RE.finditer(stripped):
        value = next(g for g in (m.group("dq"), m.group("sq"), m.group("bare")) if g is not None)
        if value.strip():
            content = value.strip()
        spans.append(m.span())
    stripped = _cut(stripped, spans)

    if not content:
        return None, stripped
    return TextSpec(content=content, **fields), stripped


def _strip_parent_refs(text: str, registry: OverlayRegistry) -> Tuple[bool, str]:
    found = False
    m = _mode_pronoun_pattern(registry).search(text)
    if m:
        found = True
        text = text[: m.start("ref")] + " " + text[m.end("ref"):]
    spans = [m.span() for m in _PARENT_REF_RE.finditer(text)]
    if spans:
        found = True
        text = _cut(text, spans)
    return found, text


def _split_sections(text: str) -> Optional[Dict[str, str]]:
    markers = list(_SECTION_RE.finditer(text))
    if not markers:
        return None
    sections: Dict[str, str] = {}
    for i, m in enumerate(markers):
        name = (m.group("bracketed") or m.group("bare")).upper()
        end = markers[i + 1].start() if i + 1 < len(markers) else len(text)
        kind = _SECTION_KINDS[name]
        sections.setdefault(kind, text[m.end():end].strip())
    return sections


def _text_from_section(section: str) -> Optional[TextSpec]:
    parts = [p.strip() for p in section.split(",")]
    content = _unquote(parts[0]) if parts else ""
    if not content:
        return None
    fields: Dict[str, Any] = {}
    for part in parts[1:]:
        token = part.lower()
        position = normalize_position(token)
        if position is not None:
            fields["position"] = position
            continue
        m = re.match(r"^(?:size|font-size)\s+(\d+)$", token)
        if m and int(m.group(1)) > 0:
            fields["fontSize"] = int(m.group(1))
            continue
        m = re.match(r"^colou?r\s+(\S+)$", token)
        if m:
            fields["color"] = m.group(1)
            continue
        m = re.match(r"^(?:style\s+)?(\w+)$", token)
        if m:
            family, style = font_from_style(m.group(1))
            if family is not None:
                fields["fontFamily"] = family
            if style is not None:
                fields["fontStyle"] = style
    return TextSpec(content=content, **fields)


def _single_mode(text: str, registry: OverlayRegistry) -> Optional[str]:
    modes = detect_modes(text, registry)
    return modes[0] if len(modes) == 1 else None


def _controls(fields: Dict[str, Any]) -> Optional[OverlayControls]:
    return OverlayControls(**fields) if fields else None


def _finish(
    result: Dict[str, Any],
    context: InterfaceTag,
    registry: OverlayRegistry,
) -> ParsedCommand:
    if result.get("action") == Action.OVERLAY and not result.get("overlayMode") and result.get("text") is None:
        default_mode = INTERFACE_DEFAULT_MODES.get(context, FALLBACK_DEFAULT_MODE)
        result["overlayMode"] = registry.normalize(default_mode)
    return ParsedCommand(**result)


def _parse_structured(
    sections: Dict[str, str],
    base_url: Optional[str],
    context: InterfaceTag,
    parent_image_url: Optional[str],
    registry: OverlayRegistry,
) -> ParsedCommand:
    prompt: Optional[str] = None
    if sections.get("prompt"):
        raw_prompt = sections["prompt"]
        m = _GENERATE_VERB_RE.match(raw_prompt) or _IMAGE_OF_RE.match(raw_prompt)
        prompt = clean_prompt(m.group("rest") if m else raw_prompt, registry) or None

    overlay_section = sections.get("overlay") or ""
    mode = _single_mode(overlay_section, registry) if overlay_section else None
    control_fields, _ = extract_controls(overlay_section)
    text = _text_from_section(sections["text"]) if sections.get("text") else None

    result: Dict[str, Any] = {
        "baseImageUrl": base_url,
        "overlayMode": mode,
        "controls": _controls(control_fields),
        "text": text,
        "prompt": prompt,
    }
    if base_url:
        result["action"] = Action.OVERLAY
    elif prompt:
        result["action"] = Action.GENERATE
    elif mode and text is None and not parent_image_url:
        result["action"] = Action.GENERATE
        result["prompt"] = registry.default_prompt(mode)
    else:
        result["action"] = Action.OVERLAY
        result["useParentImage"] = True
    return _finish(result, context, registry)


def _parse(
    text: str,
    context: InterfaceTag,
    parent_image_url: Optional[str],
    registry: OverlayRegistry,
) -> ParsedCommand:
    work = text.strip()

    base_url: Optional[str] = None
    url_match = _URL_RE.search(work)
    if url_match:
        base_url = url_match.group(0).rstrip(".,;:!?)")
        work = work[: url_match.start()] + " " + work[url_match.start() + len(base_url):]

    sections = _split_sections(work)
    if sections:
        return _parse_structured(sections, base_url, context, parent_image_url, registry)

    text_spec, work = extract_text(work)
    control_fields, work = extract_controls(work)
    mode = _single_mode(work, registry)
    controls = _controls(control_fields)

    result: Dict[str, Any] = {
        "baseImageUrl": base_url,
        "overlayMode": mode,
        "controls": controls,
        "text": text_spec,
    }

    # 2. explicit generation
    prompt: Optional[str] = None
    generation = False
    if mode:
        m = re.search(rf"\b{re.escape(mode)}\s+an?\s+(?P<rest>.+)$", work, re.IGNORECASE | re.DOTALL)
        if m:
            generation, prompt = True, clean_prompt(m.group("rest"), registry)
    if not generation:
        m = _GENERATE_VERB_RE.match(work) or _IMAGE_OF_RE.match(work)
        if m:
            generation, prompt = True, clean_prompt(m.group("rest"), registry)

    parent_ref, residual_text = _strip_parent_refs(work, registry)
    residual = clean_prompt(residual_text, registry)

    if generation:
        result["action"] = Action.OVERLAY if base_url else Action.GENERATE
        result["prompt"] = prompt or (registry.default_prompt(mode) if mode else None)
        return _finish(result, context, registry)

    # 3. text-only overlay
    if text_spec is not None and len(residual) < MIN_DESCRIPTIVE_LENGTH:
        result["action"] = Action.OVERLAY
        result["useParentImage"] = base_url is None
        return _finish(result, context, registry)

    # 5. fallback
    if base_url:
        result["action"] = Action.OVERLAY
        result["prompt"] = residual or None
    elif parent_ref:
        result["action"] = Action.OVERLAY
        result["useParentImage"] = True
    elif len(residual) >= MIN_DESCRIPTIVE_LENGTH:
        result["action"] = Action.GENERATE
        result["prompt"] = residual
    elif mode:
        if parent_image_url:
            result["action"] = Action.OVERLAY
            result["useParentImage"] = True
        else:
            result["action"] = Action.GENERATE
            result["prompt"] = registry.default_prompt(mode)
    else:
        result["action"] = Action.GENERATE
        result["prompt"] = residual or None
    return _finish(result, context, registry)


def _interface(context: Union[InterfaceTag, str, None]) -> InterfaceTag:
    if isinstance(context, InterfaceTag):
        return context
    try:
        return InterfaceTag((context or "default").lower())
    except ValueError:
        return InterfaceTag.DEFAULT


def parse(
    text: Optional[str],
    context: Union[InterfaceTag, str, None] = InterfaceTag.DEFAULT,
    parent_image_url: Optional[str] = None,
    *,
    registry: OverlayRegistry = DEFAULT_REGISTRY,
) -> ParsedCommand:
    """Parse one instruction; never raises."""
    raw = text or ""
    try:
        command = _parse(raw, _interface(context), parent_image_url, registry)
    except Exception as exc:
        log_error(None, "parser:fallback", error=str(exc), textLength=len(raw))
        return ParsedCommand(action=Action.GENERATE, prompt=raw.strip() or None)
    log_info(
        None,
        "parser:parsed",
        action=command.action.value,
        overlayMode=command.overlayMode or "none",
        hasText=command.text is not None,
        useParentImage=command.useParentImage,
    )
    return command
