"""Shared async HTTP plumbing for the image and TTS backends.

Wraps :class:`httpx.AsyncClient` with error mapping, streamed downloads and
a bounded task-polling loop.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from storyreel.errors import ExternalServiceError, MalformedResponse, StageTimeout
from storyreel.models import TaskStatus

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 60.0
_DOWNLOAD_TIMEOUT = 300.0


class ApiClient:
    """Async client for one JSON API base URL.

    Usage::

        async with ApiClient("https://api.example.com", headers={...}) as api:
            data = await api.post_json("/tasks", {"text": "..."})
            await api.download("/tasks/1/result", "audio.mp3")
    """

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"HTTP {exc.response.status_code}: {exc.response.text[:500]}",
                status_code=exc.response.status_code,
                body=exc.response.text,
            ) from exc
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(f"Request timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Request failed: {exc}") from exc

    async def get_json(self, url: str, **kwargs: Any) -> dict:
        response = await self.request("GET", url, **kwargs)
        return _json(response)

    async def post_json(self, url: str, body: dict, **kwargs: Any) -> dict:
        response = await self.request("POST", url, json=body, **kwargs)
        return _json(response)

    async def download(self, url: str, output_path: str | Path, method: str = "GET",
                       **kwargs: Any) -> Path:
        """Stream a response body to ``output_path``."""
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)

        logger.debug("Downloading %s -> %s", url, output)
        kwargs.setdefault("timeout", _DOWNLOAD_TIMEOUT)
        try:
            async with self._client.stream(method, url, **kwargs) as response:
                response.raise_for_status()
                with open(output, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=8192):
                        f.write(chunk)
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"Download failed for {url}: HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Download failed for {url}: {exc}") from exc

        logger.debug("Downloaded: %s (%.1f KB)", output, output.stat().st_size / 1024)
        return output


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise MalformedResponse(f"Expected JSON, got: {response.text[:200]}", payload=response.text) from exc
    if not isinstance(data, dict):
        raise MalformedResponse(f"Expected a JSON object, got: {data!r}", payload=data)
    return data


async def wait_for_task(
    fetch: Callable[[], Awaitable[TaskStatus]],
    poll_interval: float = 2.0,
    max_attempts: int = 450,
    cancel: asyncio.Event | None = None,
) -> TaskStatus:
    """Poll ``fetch`` until it reports a terminal state.

    Sleeps before each check. Raises :class:`StageTimeout` after
    ``max_attempts`` non-terminal checks.
    """
    status: TaskStatus | None = None
    for attempt in range(1, max_attempts + 1):
        if cancel is not None and cancel.is_set():
            raise StageTimeout("Task polling cancelled")
        await asyncio.sleep(poll_interval)
        status = await fetch()
        logger.debug("Task %s: status=%s (attempt %d/%d)", status.task_id, status.status, attempt, max_attempts)
        if status.is_done:
            return status

    raise StageTimeout(
        f"Task did not complete after {max_attempts} checks. "
        f"Last status: {status.status if status else 'unknown'}"
    )
