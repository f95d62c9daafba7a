from enum import Enum


class Action(str, Enum):
    GENERATE = "generate"
    OVERLAY = "overlay"


class InterfaceTag(str, Enum):
    WEB = "web"
    FARCASTER = "farcaster"
    FRAME = "frame"
    TELEGRAM = "telegram"
    DEFAULT = "default"


class TextPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP = "top"
    TOP_RIGHT = "top-right"
    LEFT = "left"
    CENTER = "center"
    RIGHT = "right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM = "bottom"
    BOTTOM_RIGHT = "bottom-right"


class FontFamily(str, Enum):
    SANS = "sans"
    SERIF = "serif"
    MONOSPACE = "monospace"


class FontStyle(str, Enum):
    BOLD = "bold"
    NORMAL = "normal"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class PipelinePhase(str, Enum):
    RECEIVED = "received"
    PARSED = "parsed"
    BASE_IMAGE_RESOLVING = "base_image_resolving"
    COMPOSING = "composing"
    STORED = "stored"
    PERSISTED = "persisted"
    COMPLETED = "completed"
    FAILED = "failed"
