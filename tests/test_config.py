from pathlib import Path

import pytest
import yaml

from storyreel.config import Settings, language_code, load_config, load_settings
from storyreel.errors import ConfigMissing


def _write(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_load_config_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "config.yaml"))


def test_load_settings_resolves_paths(tmp_path):
    cfg = _write(tmp_path / "config.yaml", {
        "output_dir": "out",
        "tools": {"ffmpeg": "/opt/ff/ffmpeg", "whisper_dir": "bin", "whisper_custom_dir": "wh"},
        "openai": {"api_key": " sk-1 "},
        "story": {"provider": "anthropic", "max_iterations": 70},
        "slideshow": {"resolution": "1280x720", "slide_duration": 10.0},
        "subtitles": {"enabled": False, "style": {"mode": "karaoke", "font_size": 48}},
    })
    settings = load_settings(str(cfg))
    assert settings.output_dir == tmp_path.resolve() / "out"
    assert settings.ffprobe == "/opt/ff/ffprobe"
    assert settings.whisper_custom_dir == tmp_path.resolve() / "wh"
    assert settings.require("openai") == "sk-1"
    assert settings.story.provider == "anthropic"
    assert settings.story.max_iterations == 70
    assert (settings.slideshow.width, settings.slideshow.height) == (1280, 720)
    assert settings.slideshow.slide_duration == 10.0
    assert settings.subtitles_enabled is False
    assert settings.subtitle_style.mode == "karaoke"
    assert settings.subtitle_style.font_size == 48


def test_defaults():
    settings = Settings.from_config({}, Path("/root"))
    assert settings.story.max_iterations == 40
    assert settings.tts.provider == "edge"
    assert settings.images.count == 5
    assert settings.subtitle_style.mode == "smooth"


def test_require_rejects_placeholders():
    settings = Settings.from_config({"genai": {"api_key": "YOUR_GENAI_KEY"}})
    with pytest.raises(ConfigMissing):
        settings.require("genai")
    with pytest.raises(ConfigMissing):
        settings.require("openai")


def test_settings_are_frozen():
    settings = Settings()
    with pytest.raises(AttributeError):
        settings.ffmpeg = "other"
    with pytest.raises(TypeError):
        settings.api_keys["x"] = "y"


def test_bad_subtitle_mode():
    with pytest.raises(ValueError):
        Settings.from_config({"subtitles": {"style": {"mode": "bouncy"}}})


@pytest.mark.parametrize("name, code", [
    ("English", "en"), ("Ukrainian", "uk"), ("German", "de"),
    ("Spanish", "es"), ("French", "fr"), ("Klingon", "auto"), ("de", "de"),
])
def test_language_code(name, code):
    assert language_code(name) == code
