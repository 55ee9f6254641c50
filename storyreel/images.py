"""Scene image generation backends."""

from __future__ import annotations

import asyncio
import logging
import random
from pathlib import Path
from typing import Callable, Protocol
from urllib.parse import quote

import httpx

from storyreel.client import ApiClient
from storyreel.config import Settings
from storyreel.errors import ConfigMissing, StoryReelError

logger = logging.getLogger(__name__)

POLLINATIONS_URL = "https://image.pollinations.ai/prompt"
VOICEAPI_IMAGE_URL = "https://voiceapi.csv666.ru/api/v1"

ProgressFn = Callable[[str], None]


class ImageBackend(Protocol):
    async def generate(self, prompt: str, output_path: Path) -> Path: ...


class PollinationsImageBackend:
    """Free text-to-image service; the prompt goes in the URL path."""

    def __init__(self, width: int = 1280, height: int = 720, model: str = "flux",
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.width = width
        self.height = height
        self.model = model
        self._transport = transport

    def url_for(self, prompt: str, seed: int) -> str:
        return (
            f"{POLLINATIONS_URL}/{quote(prompt, safe='')}"
            f"?width={self.width}&height={self.height}&model={self.model}"
            f"&seed={seed}&nologo=true"
        )

    async def generate(self, prompt: str, output_path: Path) -> Path:
        url = self.url_for(prompt, random.randrange(1_000_000))
        async with ApiClient(transport=self._transport, timeout=120.0) as api:
            return await api.download(url, output_path)


class VoiceApiImageBackend:
    """Keyed image endpoint that returns the file body directly."""

    def __init__(self, api_key: str, base_url: str = VOICEAPI_IMAGE_URL,
                 aspect_ratio: str = "16:9",
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        key = api_key.strip()
        self.aspect_ratio = aspect_ratio
        self._base_url = base_url
        self._headers = {"x-api-key": key, "api-key": key, "Content-Type": "application/json"}
        self._transport = transport

    async def generate(self, prompt: str, output_path: Path) -> Path:
        async with ApiClient(self._base_url, headers=self._headers, timeout=120.0,
                             transport=self._transport) as api:
            return await api.download(
                "/image/create?as_file=true",
                output_path,
                method="POST",
                json={"prompt": prompt, "aspect_ratio": self.aspect_ratio},
            )


def make_image_backend(settings: Settings) -> ImageBackend:
    provider = settings.images.provider
    if provider == "free":
        return PollinationsImageBackend()
    if provider == "voiceapi":
        return VoiceApiImageBackend(settings.require("voiceapi_images"))
    raise ConfigMissing(f"Unknown image provider: {provider!r}")


async def generate_images(
    backend: ImageBackend,
    prompts: list[str],
    images_dir: Path,
    delay: float = 1.0,
    progress: ProgressFn | None = None,
    cancel: asyncio.Event | None = None,
) -> list[Path]:
    """Generate ``images/scene_<n>.jpg`` one at a time.

    A failed image is logged and skipped; the rest still run.
    """
    images_dir.mkdir(parents=True, exist_ok=True)
    saved: list[Path] = []
    for i, prompt in enumerate(prompts, 1):
        if cancel is not None and cancel.is_set():
            logger.warning("Image generation cancelled after %d/%d", i - 1, len(prompts))
            break
        message = f"Generating Image {i}/{len(prompts)}..."
        logger.info(message)
        if progress:
            progress(message)
        out = images_dir / f"scene_{i}.jpg"
        try:
            saved.append(await backend.generate(prompt, out))
        except StoryReelError as exc:
            logger.warning("Image %d failed: %s", i, exc)
            out.unlink(missing_ok=True)
            if progress:
                progress(f"Image {i} failed: {exc}")
        if i < len(prompts):
            await asyncio.sleep(delay)
    return saved
