"""Narration synthesis backends.

Every backend writes one audio file for the whole narration:

* ``voiceapi`` - task API: create, poll ``/status``, download ``/result``.
* ``genai``    - labs task API: create, poll, download the result URL.
* ``edge``     - Microsoft Edge voices via ``edge-tts``, chunked and concatenated.
* ``piper``    - local Piper binary, text on stdin.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Protocol

import edge_tts
import httpx

from storyreel.client import ApiClient, wait_for_task
from storyreel.config import Settings
from storyreel.errors import (
    ConfigMissing,
    ExternalProcessError,
    ExternalServiceError,
    MalformedResponse,
    ResourceMissing,
)
from storyreel.models import TaskStatus
from storyreel.segmenter import split_text_safe

logger = logging.getLogger(__name__)

VOICEAPI_URL = "https://voiceapi.csv666.ru"
GENAI_URL = "https://genaipro.vn/api/v1"

TASK_MAX_ATTEMPTS = 450
GENAI_MAX_ATTEMPTS = 600
EDGE_CHUNK_PAUSE = 0.5

ProgressFn = Callable[[str], None]


class TtsBackend(Protocol):
    async def synthesize(self, text: str, output_path: Path,
                         cancel: asyncio.Event | None = None) -> Path: ...


def _task_id(data: dict) -> str:
    task_id = data.get("task_id") or data.get("taskId")
    if not task_id:
        raise MalformedResponse(f"No task_id in response: {data}", payload=data)
    return str(task_id)


class TaskTtsBackend:
    """Voice-template task API; the voice is a template UUID."""

    _STATE_MAP = {
        "ending": "completed",
        "ending_processed": "completed",
        "error": "failed",
    }

    def __init__(self, api_key: str, voice: str, base_url: str = VOICEAPI_URL,
                 poll_interval: float = 2.0, max_attempts: int = TASK_MAX_ATTEMPTS,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.voice = voice
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._base_url = base_url
        self._headers = {"X-API-Key": api_key.strip()}
        self._transport = transport

    def parse_status(self, task_id: str, data: dict) -> TaskStatus:
        raw = str(data.get("status", "unknown"))
        status = self._STATE_MAP.get(raw, raw)
        return TaskStatus(task_id=task_id, status=status,
                          error=data.get("error") if status == "failed" else None)

    async def synthesize(self, text: str, output_path: Path,
                         cancel: asyncio.Event | None = None) -> Path:
        async with ApiClient(self._base_url, headers=self._headers,
                             transport=self._transport) as api:
            data = await api.post_json("/tasks", {"text": text, "template_uuid": self.voice})
            task_id = _task_id(data)
            logger.info("TTS task started (ID: %s). Waiting for result...", task_id)

            async def fetch() -> TaskStatus:
                return self.parse_status(task_id, await api.get_json(f"/tasks/{task_id}/status"))

            status = await wait_for_task(fetch, self.poll_interval, self.max_attempts, cancel)
            if not status.is_success:
                raise ExternalServiceError(f"TTS task {task_id} failed: {status.error or status.status}")
            logger.info("TTS task %s ready, downloading...", task_id)
            return await api.download(f"/tasks/{task_id}/result", output_path)


class GenAiTtsBackend:
    """Labs task API with Bearer auth; the finished task carries a result URL."""

    def __init__(self, api_key: str, voice: str, base_url: str = GENAI_URL,
                 model_id: str = "eleven_multilingual_v2", speed: float = 1.0,
                 poll_interval: float = 2.0, max_attempts: int = GENAI_MAX_ATTEMPTS,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.voice = voice
        self.model_id = model_id
        self.speed = speed
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._base_url = base_url
        self._headers = {"Authorization": f"Bearer {api_key.strip()}"}
        self._transport = transport

    @staticmethod
    def parse_status(task_id: str, data: dict) -> TaskStatus:
        status = str(data.get("status", "unknown"))
        return TaskStatus(
            task_id=task_id,
            status=status,
            output_url=data.get("result") if status == "completed" else None,
            error=data.get("error") if status == "failed" else None,
        )

    async def synthesize(self, text: str, output_path: Path,
                         cancel: asyncio.Event | None = None) -> Path:
        body = {
            "input": text,
            "voice_id": self.voice,
            "model_id": self.model_id,
            "speed": self.speed,
        }
        async with ApiClient(self._base_url, headers=self._headers,
                             transport=self._transport) as api:
            task_id = _task_id(await api.post_json("/labs/task", body))
            logger.info("GenAI task started (ID: %s)", task_id)

            async def fetch() -> TaskStatus:
                return self.parse_status(task_id, await api.get_json(f"/labs/task/{task_id}"))

            status = await wait_for_task(fetch, self.poll_interval, self.max_attempts, cancel)

        if not status.is_success:
            raise ExternalServiceError(f"GenAI task {task_id} failed: {status.error or status.status}")
        if not status.output_url:
            raise MalformedResponse(f"GenAI task {task_id} completed without a result URL")
        async with ApiClient(transport=self._transport) as dl:
            return await dl.download(status.output_url, output_path)


class EdgeTtsBackend:
    """Edge neural voices; long text is synthesized in sentence-bounded chunks."""

    def __init__(self, voice: str = "en-US-AriaNeural", chunk_size: int = 2500,
                 pause: float = EDGE_CHUNK_PAUSE,
                 communicate: Callable[..., Any] = edge_tts.Communicate,
                 progress: ProgressFn | None = None) -> None:
        self.voice = voice
        self.chunk_size = chunk_size
        self.pause = pause
        self._communicate = communicate
        self.progress = progress

    async def synthesize(self, text: str, output_path: Path,
                         cancel: asyncio.Event | None = None) -> Path:
        chunks = [c for c in split_text_safe(text, self.chunk_size) if c.strip()]
        if not chunks:
            raise ResourceMissing("Nothing to synthesize: narration is empty")
        logger.info("Text split into %d parts", len(chunks))

        output_path.write_bytes(b"")
        for i, chunk in enumerate(chunks):
            if cancel is not None and cancel.is_set():
                raise ExternalServiceError("Edge TTS cancelled")
            message = f"Processing part {i + 1}/{len(chunks)}..."
            logger.info(message)
            if self.progress:
                self.progress(message)

            part_path = output_path.parent / f"temp_part_{i}.mp3"
            try:
                await self._communicate(chunk, self.voice).save(str(part_path))
            except (edge_tts.exceptions.EdgeTTSException, OSError) as exc:
                part_path.unlink(missing_ok=True)
                raise ExternalServiceError(f"Edge TTS failed on part {i + 1}: {exc}") from exc
            with open(output_path, "ab") as out:
                out.write(part_path.read_bytes())
            part_path.unlink(missing_ok=True)
            await asyncio.sleep(self.pause)
        return output_path


class PiperTtsBackend:
    """Local Piper voice model."""

    def __init__(self, piper_dir: Path, model: str) -> None:
        self.piper_dir = Path(piper_dir)
        self.model = model

    @property
    def executable(self) -> Path:
        return self.piper_dir / ("piper.exe" if sys.platform == "win32" else "piper")

    @staticmethod
    def clean_text(text: str) -> str:
        return text.replace('"', "'").replace("\r\n", " ").replace("\n", " ")

    def command(self, output_path: Path) -> list[str]:
        return [str(self.executable), "-m", str(self.piper_dir / self.model), "-f", str(output_path)]

    def _run(self, text: str, output_path: Path) -> Path:
        if not self.executable.exists():
            raise ResourceMissing(f"Piper executable missing at: {self.executable}")
        if not (self.piper_dir / self.model).exists():
            raise ResourceMissing(f"Piper model missing at: {self.piper_dir / self.model}")

        cmd = self.command(output_path)
        result = subprocess.run(cmd, input=self.clean_text(text), capture_output=True, text=True)
        if result.returncode != 0:
            raise ExternalProcessError(
                f"Piper failed: {result.stderr[-500:]}",
                cmd=cmd, returncode=result.returncode, output=result.stderr,
            )
        return output_path

    async def synthesize(self, text: str, output_path: Path,
                         cancel: asyncio.Event | None = None) -> Path:
        return await asyncio.to_thread(self._run, text, output_path)


def make_tts_backend(settings: Settings, progress: ProgressFn | None = None) -> TtsBackend:
    tts = settings.tts
    attempts: dict[str, Any] = {"max_attempts": tts.max_attempts} if tts.max_attempts else {}
    if tts.provider == "edge":
        return EdgeTtsBackend(voice=tts.voice, chunk_size=tts.chunk_size, progress=progress)
    if tts.provider == "voiceapi":
        return TaskTtsBackend(settings.require("voiceapi"), tts.voice,
                              poll_interval=tts.poll_interval, **attempts)
    if tts.provider == "genai":
        return GenAiTtsBackend(settings.require("genai"), tts.voice,
                               poll_interval=tts.poll_interval, **attempts)
    if tts.provider == "piper":
        return PiperTtsBackend(settings.piper_dir, tts.voice)
    raise ConfigMissing(f"Unknown TTS provider: {tts.provider!r}")
