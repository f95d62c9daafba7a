from __future__ import annotations

from io import BytesIO
from typing import Callable, Dict, List, Tuple, Union

import pytest
from PIL import Image

from wowowify.pipeline.orchestrator import Pipeline
from wowowify.shared.config import Settings
from wowowify.shared.image_store import ImageStore
from wowowify.shared.kv_store import InMemoryKeyValueStore
from wowowify.shared.state import MemoryRunStateStore

ASSET_BASE = "https://assets.test"


def make_png(size: Tuple[int, int] = (64, 64), color=(255, 255, 255), mode: str = "RGB") -> bytes:
    buf = BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


def open_png(data: bytes) -> Image.Image:
    img = Image.open(BytesIO(data))
    img.load()
    return img


class FakeFetcher:
    """Maps URLs to bytes or to an exception to raise."""

    def __init__(self, responses: Dict[str, Union[bytes, Exception]]) -> None:
        self.responses = responses
        self.calls: List[str] = []

    def __call__(self, url, deadline=None) -> bytes:
        self.calls.append(url)
        outcome = self.responses.get(url)
        if outcome is None:
            from wowowify.specs.common.errors import FetchHttpError

            raise FetchHttpError(url, 404, "Not Found")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeGenerator:
    def __init__(self, result: Union[bytes, Exception, None] = None) -> None:
        self.result = result if result is not None else make_png((64, 64), (255, 255, 255))
        self.prompts: List[str] = []

    def __call__(self, prompt, deadline=None) -> bytes:
        self.prompts.append(prompt)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture()
def settings() -> Settings:
    return Settings(overlay_asset_base_url=ASSET_BASE, overlay_asset_dir=None, image_provider="placeholder")


@pytest.fixture()
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture()
def make_pipeline(settings, kv) -> Callable[..., Pipeline]:
    def _build(**overrides) -> Pipeline:
        kwargs = dict(
            fetch_bytes=FakeFetcher({}),
            generate_image=FakeGenerator(),
            image_store=ImageStore(kv),
            run_state=MemoryRunStateStore(),
            settings=settings,
        )
        kwargs.update(overrides)
        return Pipeline(**kwargs)

    return _build
