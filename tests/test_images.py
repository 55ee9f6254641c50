import asyncio
import json
from urllib.parse import unquote

import httpx

from storyreel.config import ImageSettings, Settings
from storyreel.errors import ExternalServiceError
from storyreel.images import (
    PollinationsImageBackend,
    VoiceApiImageBackend,
    generate_images,
    make_image_backend,
)


def test_pollinations_url():
    url = PollinationsImageBackend().url_for("a dark forest / night", seed=42)
    assert url.startswith("https://image.pollinations.ai/prompt/a%20dark%20forest%20%2F%20night?")
    assert "width=1280&height=720&model=flux&seed=42&nologo=true" in url


def test_pollinations_downloads(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b"JPEG")

    backend = PollinationsImageBackend(transport=httpx.MockTransport(handler))
    out = asyncio.run(backend.generate("misty lake", tmp_path / "scene_1.jpg"))
    assert out.read_bytes() == b"JPEG"
    assert unquote(seen[0].url.path) == "/prompt/misty lake"


def test_voiceapi_image_request(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b"PNG")

    backend = VoiceApiImageBackend(" secret ", transport=httpx.MockTransport(handler))
    asyncio.run(backend.generate("castle", tmp_path / "scene_1.jpg"))
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/v1/image/create"
    assert request.url.params["as_file"] == "true"
    assert request.headers["x-api-key"] == "secret"
    assert request.headers["api-key"] == "secret"
    assert json.loads(request.content) == {"prompt": "castle", "aspect_ratio": "16:9"}


class FlakyBackend:
    def __init__(self, fail_on):
        self.fail_on = fail_on
        self.prompts = []

    async def generate(self, prompt, output_path):
        self.prompts.append(prompt)
        if len(self.prompts) == self.fail_on:
            raise ExternalServiceError("HTTP 500")
        output_path.write_bytes(b"img")
        return output_path


def test_generate_images_skips_failures(tmp_path):
    backend = FlakyBackend(fail_on=2)
    messages = []
    saved = asyncio.run(generate_images(backend, ["a", "b", "c"], tmp_path / "images",
                                        delay=0, progress=messages.append))
    assert [p.name for p in saved] == ["scene_1.jpg", "scene_3.jpg"]
    assert backend.prompts == ["a", "b", "c"]
    assert any("Image 2 failed" in m for m in messages)


def test_generate_images_honours_cancel(tmp_path):
    cancel = asyncio.Event()
    cancel.set()
    backend = FlakyBackend(fail_on=0)
    saved = asyncio.run(generate_images(backend, ["a", "b"], tmp_path / "images", delay=0, cancel=cancel))
    assert saved == []
    assert backend.prompts == []


def test_make_image_backend():
    assert isinstance(make_image_backend(Settings()), PollinationsImageBackend)
    settings = Settings(images=ImageSettings(provider="voiceapi"),
                        api_keys={"voiceapi_images": "k"})
    assert isinstance(make_image_backend(settings), VoiceApiImageBackend)
