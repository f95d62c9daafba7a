import os
from functools import lru_cache
from typing import Callable, List, Optional, Union

from PIL import ImageFont

from wowowify.shared.logging_utils import warning as log_warning
from wowowify.specs.common.enums import FontFamily, FontStyle

Font = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]

_FACES = {
    (FontFamily.SANS, FontStyle.BOLD): ["DejaVuSans-Bold.ttf", "LiberationSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf"],
    (FontFamily.SANS, FontStyle.NORMAL): ["DejaVuSans.ttf", "LiberationSans-Regular.ttf", "Arial.ttf", "arial.ttf"],
    (FontFamily.SERIF, FontStyle.BOLD): ["DejaVuSerif-Bold.ttf", "LiberationSerif-Bold.ttf", "Times New Roman Bold.ttf", "timesbd.ttf"],
    (FontFamily.SERIF, FontStyle.NORMAL): ["DejaVuSerif.ttf", "LiberationSerif-Regular.ttf", "Times New Roman.ttf", "times.ttf"],
    (FontFamily.MONOSPACE, FontStyle.BOLD): ["DejaVuSansMono-Bold.ttf", "LiberationMono-Bold.ttf", "Courier New Bold.ttf", "courbd.ttf"],
    (FontFamily.MONOSPACE, FontStyle.NORMAL): ["DejaVuSansMono.ttf", "LiberationMono-Regular.ttf", "Courier New.ttf", "cour.ttf"],
}

_SYSTEM_DIRS = [
    "/usr/share/fonts/truetype/dejavu",
    "/usr/share/fonts/dejavu",
    "/usr/share/fonts/truetype/liberation",
    "/usr/share/fonts/liberation",
    "/Library/Fonts",
    "/System/Library/Fonts/Supplemental",
]


def _candidates(family: FontFamily, style: FontStyle, font_dir: Optional[str]) -> List[str]:
    names = _FACES[(FontFamily(family), FontStyle(style))]
    dirs = ([font_dir] if font_dir else []) + _SYSTEM_DIRS
    paths = [os.path.join(d, n) for d in dirs for n in names]
    # bare names let Pillow search the platform font directories too
    return paths + names


@lru_cache(maxsize=64)
def load_font(family: FontFamily, style: FontStyle, size: int, font_dir: Optional[str] = None) -> Font:
    for candidate in _candidates(family, style, font_dir):
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    log_warning(None, "fonts:fallback_default", family=str(family), style=str(style), size=size)
    return ImageFont.load_default(size=size)


def measurer(font: Font) -> Callable[[str], float]:
    return lambda s: float(font.getlength(s))
