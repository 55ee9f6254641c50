"""Configuration loading and the read-only run context.

``config.yaml`` is parsed once; :class:`Settings` is built from it and passed
explicitly into every stage. Nothing reads configuration globally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from storyreel.errors import ConfigMissing
from storyreel.models import SubtitleStyle
from storyreel.probe import ffprobe_for

_DEFAULT_CONFIG = "config.yaml"

DEFAULT_STORY_TEMPLATE = (
    "Write a gripping story titled \"{title}\" in {language}. "
    "Target length: about {length} characters."
)

LANGUAGE_CODES = {
    "English": "en",
    "Ukrainian": "uk",
    "German": "de",
    "Spanish": "es",
    "French": "fr",
}


def load_config(config_path: str | None = None) -> dict:
    """Load the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to ./config.yaml.

    Returns:
        Parsed config dict.

    Raises:
        FileNotFoundError: If config file doesn't exist.
    """
    path = Path(config_path or _DEFAULT_CONFIG)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get_project_root(config_path: str | None = None) -> Path:
    """Return the directory containing config.yaml."""
    path = Path(config_path or _DEFAULT_CONFIG)
    return path.resolve().parent


def resolve_path(value: str | Path, root: Path) -> Path:
    p = Path(value).expanduser()
    if not p.is_absolute():
        p = root / p
    return p


def language_code(language: str) -> str:
    """Map a language name (``English``) to a whisper language code."""
    if language in LANGUAGE_CODES.values():
        return language
    return LANGUAGE_CODES.get(language, "auto")


@dataclass(frozen=True)
class StorySettings:
    provider: str = "openai"  # openai | anthropic
    model: str = "gpt-4o-mini"
    max_iterations: int = 40
    turn_delay: float = 2.0
    part_retries: int = 2
    one_part: bool = False
    target_length: str = "25000"
    template: str = DEFAULT_STORY_TEMPLATE
    seo_template: str | None = None


@dataclass(frozen=True)
class ImageSettings:
    provider: str = "free"  # free | voiceapi
    count: int = 5
    prompt: str = "Cinematic background, 8k"
    prompt_mode: str = "fixed"  # fixed | scenes
    scene_chunk_size: int = 2000
    delay: float = 1.0


@dataclass(frozen=True)
class TtsSettings:
    provider: str = "edge"  # edge | voiceapi | genai | piper
    voice: str = "en-US-AriaNeural"
    chunk_size: int = 2500
    poll_interval: float = 2.0
    max_attempts: int | None = None  # backend default when unset


@dataclass(frozen=True)
class SlideshowSettings:
    slide_duration: float = 20.0
    fade_duration: float = 1.0
    width: int = 1920
    height: int = 1080
    fps: int = 30


@dataclass(frozen=True)
class Settings:
    """Immutable configuration context for one pipeline run."""
    output_dir: Path = Path("output")
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    whisper_dir: Path = Path("bin")
    whisper_custom_dir: Path | None = None
    piper_dir: Path = Path("bin/piper")
    api_keys: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    story: StorySettings = field(default_factory=StorySettings)
    images: ImageSettings = field(default_factory=ImageSettings)
    tts: TtsSettings = field(default_factory=TtsSettings)
    slideshow: SlideshowSettings = field(default_factory=SlideshowSettings)
    subtitles_enabled: bool = True
    subtitle_style: SubtitleStyle = field(default_factory=SubtitleStyle)

    @classmethod
    def from_config(cls, config: dict, root: Path | None = None) -> Settings:
        """Build settings from a parsed config dict.

        Relative paths are resolved against ``root`` (the config directory).
        """
        root = root or Path.cwd()
        tools = config.get("tools", {}) or {}
        ffmpeg = str(tools.get("ffmpeg") or "ffmpeg").replace('"', "")
        ffprobe = tools.get("ffprobe") or ffprobe_for(ffmpeg)
        custom = tools.get("whisper_custom_dir")

        keys = {
            name: str(section.get("api_key") or "").strip()
            for name, section in config.items()
            if isinstance(section, dict) and "api_key" in section
        }

        slideshow_raw = dict(config.get("slideshow") or {})
        width, height = str(slideshow_raw.pop("resolution", "1920x1080")).lower().split("x")
        subtitles = config.get("subtitles", {}) or {}

        return cls(
            output_dir=resolve_path(config.get("output_dir", "output"), root),
            ffmpeg=ffmpeg,
            ffprobe=ffprobe,
            whisper_dir=resolve_path(tools.get("whisper_dir", "bin"), root),
            whisper_custom_dir=resolve_path(custom, root) if custom else None,
            piper_dir=resolve_path(tools.get("piper_dir", "bin/piper"), root),
            api_keys=MappingProxyType(keys),
            story=StorySettings(**(config.get("story") or {})),
            images=ImageSettings(**(config.get("images") or {})),
            tts=TtsSettings(**(config.get("tts") or {})),
            slideshow=SlideshowSettings(width=int(width), height=int(height), **slideshow_raw),
            subtitles_enabled=bool(subtitles.get("enabled", True)),
            subtitle_style=SubtitleStyle.from_dict(subtitles.get("style")),
        )

    def require(self, name: str) -> str:
        """Return the API key for service ``name`` or raise ConfigMissing."""
        value = self.api_keys.get(name, "")
        if not value or value.startswith("YOUR_"):
            raise ConfigMissing(
                f"API key not configured. Set '{name}.api_key' in config.yaml."
            )
        return value


def load_settings(config_path: str | None = None) -> Settings:
    config = load_config(config_path)
    return Settings.from_config(config, get_project_root(config_path))
