"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

from typing import Any


class StoryReelError(Exception):
    """Base class for all pipeline errors."""

    error_kind = "error"


class ConfigMissing(StoryReelError):
    """A required credential or tool path is not configured."""

    error_kind = "config_missing"


class ExternalServiceError(StoryReelError):
    """An AI/API backend returned an error or an unusable response."""

    error_kind = "external_service"

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ExternalProcessError(StoryReelError):
    """ffmpeg, ffprobe, whisper or piper exited with a non-zero code."""

    error_kind = "external_process"

    def __init__(self, message: str, cmd: list[str] | None = None,
                 returncode: int | None = None, output: str = ""):
        self.cmd = cmd or []
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class StageTimeout(StoryReelError, TimeoutError):
    """A polling loop ran out of attempts."""

    error_kind = "timeout"


class ResourceMissing(StoryReelError):
    """An expected file or directory is absent."""

    error_kind = "resource_missing"


class MalformedResponse(StoryReelError):
    """A generation service returned a payload that could not be parsed."""

    error_kind = "malformed_response"

    def __init__(self, message: str, payload: Any = None):
        self.payload = payload
        super().__init__(message)


def error_kind_of(exc: BaseException) -> str:
    if isinstance(exc, StoryReelError):
        return exc.error_kind
    return "unexpected"
