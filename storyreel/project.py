"""Project folders, artifact names and the generation history."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from storyreel.errors import ResourceMissing

logger = logging.getLogger(__name__)

STORY = "story.txt"
DESCRIPTION = "description.txt"
SCRIPT = "final_script_for_audio.txt"
IMAGES_DIR = "images"
AUDIO = "audio.mp3"
SUBTITLES_SRT = "subtitles.srt"
SUBTITLES_ASS = "subtitles.ass"
SUBTITLES_JSON = "subtitles.json"
SOURCE_BG = "source_bg.mp4"
VIDEO = "video.mp4"

SUBTITLE_FILES = (SUBTITLES_SRT, SUBTITLES_ASS, SUBTITLES_JSON)

HISTORY_FILE = "history.json"
HISTORY_LIMIT = 50

_CYRILLIC_RE = re.compile(r"[а-яА-ЯіІїЇєЄґҐёЁ]")
_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9]")
_SCENE_NUM_RE = re.compile(r"(\d+)")
IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")


def safe_project_name(name: str, now: datetime | None = None) -> str:
    """ASCII-only folder name with a ``YYYY-MM-DDTHH-MM-SS`` suffix."""
    safe = _UNSAFE_RE.sub("_", _CYRILLIC_RE.sub("ua", name))
    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{safe}_{stamp}"


def _scene_number(path: Path) -> int:
    match = _SCENE_NUM_RE.search(path.stem)
    return int(match.group(1)) if match else 0


@dataclass
class Project:
    """A generated-video workspace on disk."""
    root: Path
    name: str
    created: datetime | None = None

    @classmethod
    def create(cls, output_dir: Path, name: str, now: datetime | None = None) -> Project:
        now = now or datetime.now()
        root = Path(output_dir) / safe_project_name(name, now)
        root.mkdir(parents=True, exist_ok=True)
        logger.info("Project folder: %s", root)
        return cls(root=root, name=name, created=now)

    @classmethod
    def open(cls, path: str | Path) -> Project:
        root = Path(path)
        if not root.is_dir():
            raise ResourceMissing(f"Project folder not found: {root}")
        return cls(root=root, name=root.name)

    def path(self, artifact: str) -> Path:
        return self.root / artifact

    @property
    def story_path(self) -> Path:
        return self.root / STORY

    @property
    def description_path(self) -> Path:
        return self.root / DESCRIPTION

    @property
    def script_path(self) -> Path:
        return self.root / SCRIPT

    @property
    def images_dir(self) -> Path:
        return self.root / IMAGES_DIR

    @property
    def audio_path(self) -> Path:
        return self.root / AUDIO

    @property
    def background_path(self) -> Path:
        return self.root / SOURCE_BG

    @property
    def video_path(self) -> Path:
        return self.root / VIDEO

    def image_paths(self) -> list[Path]:
        """Scene images ordered by their number (scene_2 before scene_10)."""
        if not self.images_dir.is_dir():
            return []
        images = [p for p in self.images_dir.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES]
        return sorted(images, key=lambda p: (_scene_number(p), p.name))

    def read_text(self, artifact: str) -> str | None:
        path = self.root / artifact
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write_text(self, artifact: str, text: str) -> Path:
        path = self.root / artifact
        path.write_text(text, encoding="utf-8")
        return path

    def narration(self) -> str:
        """Text to speak: the audio script if present, otherwise the story."""
        for artifact in (SCRIPT, STORY):
            text = self.read_text(artifact)
            if text and text.strip():
                return text
        raise ResourceMissing(f"No narration text in {self.root}")

    def remove_subtitles(self) -> list[Path]:
        """Delete stale subtitle tracks so they are not burned in."""
        removed = []
        for name in SUBTITLE_FILES:
            path = self.root / name
            if path.exists():
                path.unlink()
                removed.append(path)
        if removed:
            logger.info("Removed stale subtitles: %s", ", ".join(p.name for p in removed))
        return removed


# ------------------------------------------------------------------
# History
# ------------------------------------------------------------------

def load_history(output_dir: Path) -> list[dict]:
    path = Path(output_dir) / HISTORY_FILE
    if not path.exists():
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Ignoring unreadable history %s: %s", path, exc)
        return []
    return data if isinstance(data, list) else []


def _save_history(output_dir: Path, entries: list[dict]) -> None:
    path = Path(output_dir) / HISTORY_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(entries, f, indent=2, ensure_ascii=False)


def record_history(output_dir: Path, project: Project, title: str) -> list[dict]:
    """Prepend the project to the history, keeping the newest entries."""
    entries = load_history(output_dir)
    entries.insert(0, {
        "title": title,
        "projectName": project.name,
        "path": str(project.root),
        "date": (project.created or datetime.now()).isoformat(timespec="seconds"),
    })
    entries = entries[:HISTORY_LIMIT]
    _save_history(output_dir, entries)
    return entries


def clear_history(output_dir: Path) -> None:
    _save_history(output_dir, [])
