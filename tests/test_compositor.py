from __future__ import annotations

import pytest

from wowowify.media.compositor import PREVIEW_WIDTH, compose, parse_color
from wowowify.specs.command import OverlayControls, ParsedCommand, TextSpec
from wowowify.specs.common.enums import Action, TextPosition
from wowowify.specs.common.errors import CompositionFatalError

from conftest import make_png, open_png

RED = (255, 0, 0)


def _command(**fields) -> ParsedCommand:
    fields.setdefault("action", Action.OVERLAY)
    return ParsedCommand(**fields)


def test_missing_asset_keeps_tint_and_skips_stamp():
    base = make_png((512, 512), (255, 255, 255))
    cmd = _command(overlayMode="higherify", controls=OverlayControls(overlayAlpha=0.3))

    out = compose(base, cmd, b"")

    img = open_png(out.fullBuffer).convert("RGB")
    assert img.size == (512, 512)
    assert out.overlayApplied is False
    assert out.warnings
    # black at 30% over white, uniform everywhere
    for xy in [(0, 0), (256, 256), (511, 511)]:
        r, g, b = img.getpixel(xy)
        assert 175 <= r <= 182 and r == g == b


def test_stamp_is_centered_at_scale():
    base = make_png((100, 100), (255, 255, 255))
    asset = make_png((40, 40), RED, mode="RGBA")
    cmd = _command(overlayMode="degenify", controls=OverlayControls(scale=0.5))

    out = compose(base, cmd, asset)

    img = open_png(out.fullBuffer).convert("RGB")
    assert out.overlayApplied is True
    assert img.getpixel((50, 50)) == RED
    # 20x20 stamp spans 40..60
    assert img.getpixel((35, 50)) == (255, 255, 255)
    assert img.getpixel((65, 50)) == (255, 255, 255)


def test_stamp_offset_is_clipped_to_canvas():
    base = make_png((100, 100), (255, 255, 255))
    asset = make_png((40, 40), RED, mode="RGBA")
    cmd = _command(overlayMode="degenify", controls=OverlayControls(x=-50))

    img = open_png(compose(base, cmd, asset).fullBuffer).convert("RGB")

    # origin x = 30 - 50 = -20, so columns 0..19 are covered
    assert img.getpixel((5, 50)) == RED
    assert img.getpixel((50, 50)) == (255, 255, 255)


def test_stamp_fully_off_canvas_leaves_base():
    base = make_png((100, 100), (255, 255, 255))
    asset = make_png((40, 40), RED, mode="RGBA")
    cmd = _command(overlayMode="degenify", controls=OverlayControls(x=-1000))

    img = open_png(compose(base, cmd, asset).fullBuffer).convert("RGB")

    assert img.getpixel((50, 50)) == (255, 255, 255)


@pytest.mark.parametrize("data", [b"", b"definitely not an image"])
def test_undecodable_base_is_fatal(data):
    with pytest.raises(CompositionFatalError):
        compose(data, _command())


def test_preview_is_300_wide_with_aspect_ratio():
    out = compose(make_png((600, 400)), _command())

    preview = open_png(out.previewBuffer)
    assert preview.size == (PREVIEW_WIDTH, 200)
    assert (out.width, out.height) == (600, 400)


def test_alpha_channel_is_preserved():
    rgba = compose(make_png((32, 32), (0, 0, 0, 0), mode="RGBA"), _command())
    rgb = compose(make_png((32, 32)), _command())

    assert open_png(rgba.fullBuffer).mode == "RGBA"
    assert open_png(rgb.fullBuffer).mode == "RGB"


def test_text_is_drawn():
    base = make_png((200, 100), (0, 0, 0))
    cmd = _command(text=TextSpec(content="HELLO", fontSize=40, position=TextPosition.CENTER))

    img = open_png(compose(base, cmd).fullBuffer).convert("RGB")

    assert any(px != (0, 0, 0) for px in img.getdata())


def test_text_rotation_changes_output():
    base = make_png((200, 200), (0, 0, 0))
    flat = compose(base, _command(text=TextSpec(content="WIDE TEXT", fontSize=30)))
    turned = compose(base, _command(text=TextSpec(content="WIDE TEXT", fontSize=30, rotationDegrees=90)))

    assert flat.fullBuffer != turned.fullBuffer


def test_blank_text_is_ignored():
    base = make_png((50, 50), (0, 0, 0))
    out = compose(base, _command(text=TextSpec(content="   ")))

    img = open_png(out.fullBuffer).convert("RGB")
    assert all(px == (0, 0, 0) for px in img.getdata())


def _reddish(px) -> bool:
    r, g, b = px
    return r > 150 and g < 80 and b < 80


def test_text_background_box_covers_block_with_padding():
    base = make_png((200, 100), (0, 0, 0))
    text = TextSpec(content="HI", fontSize=20, backgroundColor="red", strokeColor=None)

    img = open_png(compose(base, _command(text=text)).fullBuffer).convert("RGB")

    # one 24px line centered at y=50, box padded 5px: rows 33..67
    assert _reddish(img.getpixel((100, 35)))
    assert _reddish(img.getpixel((100, 65)))
    assert img.getpixel((100, 28)) == (0, 0, 0)
    assert img.getpixel((100, 72)) == (0, 0, 0)
    assert img.getpixel((5, 50)) == (0, 0, 0)


def test_text_stroke_is_drawn_under_fill():
    base = make_png((200, 100), (0, 0, 0))

    def render(width: int):
        text = TextSpec(content="HI", fontSize=40, color="white", strokeColor="red", strokeWidth=width)
        return list(open_png(compose(base, _command(text=text)).fullBuffer).convert("RGB").getdata())

    plain, stroked = render(0), render(4)

    assert not any(_reddish(px) for px in plain)
    assert any(_reddish(px) for px in stroked)
    assert any(min(px) > 240 for px in stroked)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("rgba(0,0,0,0.5)", (0, 0, 0, 128)),
        ("rgba(10, 20, 30, 50%)", (10, 20, 30, 128)),
        ("rgb(1,2,3)", (1, 2, 3, 255)),
        ("#ff0000", (255, 0, 0, 255)),
        ("red", (255, 0, 0, 255)),
        ("transparent", (0, 0, 0, 0)),
        ("not-a-color", (0, 0, 0, 255)),
        (None, (0, 0, 0, 255)),
    ],
)
def test_parse_color(value, expected):
    assert parse_color(value) == expected


def test_parse_color_falls_back_to_given_default():
    assert parse_color("nope", "white") == (255, 255, 255, 255)
