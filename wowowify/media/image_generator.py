import base64
import binascii
import io
from typing import Dict, Optional, Tuple

import requests
from PIL import Image, ImageDraw

from wowowify.media.fonts import load_font
from wowowify.media.text_fit import wrap_text
from wowowify.shared.config import Settings
from wowowify.shared.deadline import Deadline
from wowowify.shared.logging_utils import info as log_info, error as log_error
from wowowify.specs.common.enums import FontFamily, FontStyle
from wowowify.specs.common.errors import ConfigurationError, GenerationError, PipelineTimeoutError


def generate_placeholder_image(caption: str, *, size: Tuple[int, int] = (512, 512)) -> Tuple[bytes, Dict]:
    """Create a simple placeholder image containing the caption text.

    Returns (png_bytes, metadata)
    """
    img = Image.new("RGB", size, color=(245, 245, 245))
    draw = ImageDraw.Draw(img)
    w, h = size
    title_font = load_font(FontFamily.SANS, FontStyle.BOLD, max(12, w // 18))
    body_font = load_font(FontFamily.SANS, FontStyle.NORMAL, max(12, w // 32))

    # Title
    title = "wowowify"
    draw.text((w / 2, h * 0.12), title, fill=(30, 30, 30), font=title_font, anchor="mm")

    # Caption block
    margin = w // 10
    lines = wrap_text(caption.strip(), w - margin * 2, lambda s: body_font.getlength(s))
    _, top, _, bottom = draw.textbbox((0, 0), "Ag", font=body_font)
    line_h = (bottom - top) + 8
    y = (h - len(lines) * line_h) / 2
    for line in lines:
        draw.text((w / 2, y), line, fill=(50, 50, 50), font=body_font, anchor="ma")
        y += line_h

    # Footer
    draw.text((w / 2, h - 24), "placeholder image", fill=(120, 120, 120), font=body_font, anchor="md")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue(), {"provider": "placeholder", "width": w, "height": h}


class ImageGenerator:
    """Prompt-to-raster client.

    ``venice`` posts to the Venice image API and decodes the first base64
    image; ``placeholder`` renders the prompt locally for offline runs.
    """

    def __init__(
        self,
        provider: str = "venice",
        *,
        api_key: Optional[str] = None,
        api_url: str = "https://api.venice.ai/api/v1/image/generate",
        model: str = "stable-diffusion-3.5",
        size: int = 512,
        timeout: float = 25.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.provider = provider
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.size = size
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "ImageGenerator":
        return cls(
            settings.image_provider,
            api_key=settings.venice_api_key,
            api_url=settings.venice_api_url,
            model=settings.venice_model,
            size=settings.generated_size,
            timeout=settings.generation_timeout_seconds,
            session=session,
        )

    def __call__(self, prompt: str, deadline: Optional[Deadline] = None) -> bytes:
        if self.provider == "placeholder":
            data, _meta = generate_placeholder_image(prompt, size=(self.size, self.size))
            return data
        if self.provider != "venice":
            raise ConfigurationError(f"Unknown image provider: {self.provider}")
        return self._venice(prompt, deadline)

    def _venice(self, prompt: str, deadline: Optional[Deadline]) -> bytes:
        if not self.api_key:
            raise ConfigurationError("VENICE_API_KEY is required for image generation")
        timeout = deadline.timeout(self.timeout) if deadline is not None else self.timeout
        payload = {
            "prompt": prompt,
            "model": self.model,
            "hide_watermark": True,
            "width": self.size,
            "height": self.size,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        log_info(None, "generator:request", provider="venice", model=self.model, promptLength=len(prompt))
        try:
            resp = self._session.post(self.api_url, json=payload, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            if deadline is not None and deadline.expired:
                raise PipelineTimeoutError(details={"step": "generate"}) from exc
            raise GenerationError("Image generation timed out") from exc
        except requests.RequestException as exc:
            raise GenerationError(f"Image generation request failed: {exc}") from exc

        if not resp.ok:
            log_error(None, "generator:http_error", status=resp.status_code, body=resp.text[:200])
            raise GenerationError(
                f"Image generation failed: {resp.status_code} {resp.reason or ''}".strip(),
                details={"httpStatus": resp.status_code},
            )
        try:
            images = resp.json().get("images") or []
        except ValueError as exc:
            raise GenerationError("Image generation returned invalid JSON") from exc
        if not images or not isinstance(images[0], str):
            raise GenerationError("No image data returned")
        encoded = images[0]
        if encoded.startswith("data:") and "," in encoded:
            encoded = encoded.split(",", 1)[1]
        try:
            return base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise GenerationError("Image generation returned undecodable data") from exc
