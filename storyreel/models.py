"""Data models for the story-video pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

LINE_END_PAD = 0.1  # seconds added after the last word of a subtitle line


@dataclass
class TranscriptSegment:
    """A timed piece of text: a phrase span or a single word."""
    text: str
    start: float  # seconds
    end: float  # seconds
    word_start: bool = True  # begins a new token (line breaks are allowed before it)

    def __post_init__(self) -> None:
        self.start = max(0.0, float(self.start))
        self.end = max(self.start, float(self.end))


@dataclass
class SubtitleLine:
    """A renderable display line made of consecutive words."""
    words: list[TranscriptSegment] = field(default_factory=list)

    @property
    def start(self) -> float:
        return self.words[0].start

    @property
    def end(self) -> float:
        return self.words[-1].end + LINE_END_PAD

    @property
    def char_count(self) -> int:
        return sum(len(w.text) for w in self.words)

    @property
    def text(self) -> str:
        return "".join(w.text for w in self.words).strip()


@dataclass(frozen=True)
class SubtitleStyle:
    """Styling for the burned-in subtitle track.

    Colours are ``#RRGGBB`` hex strings (or ready-made ``&HAABBGGRR`` values).
    ``mode`` selects how words are animated: ``static``, ``smooth`` or ``karaoke``.
    """
    font: str = "Arial"
    font_size: int = 60
    active_color: str = "#FFFF00"
    inactive_color: str = "#FFFFFF"
    outline_color: str = "#000000"
    outline_width: float = 3
    shadow: float = 0
    border_style: int = 1
    margin_side: int = 400
    margin_bottom: int = 150
    bold: bool = True
    italic: bool = False
    alignment: int = 2
    max_chars: int = 30
    mode: str = "smooth"
    play_res_x: int = 1920
    play_res_y: int = 1080

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SubtitleStyle:
        data = data or {}
        known = {f.name for f in fields(cls)}
        style = cls(**{k: v for k, v in data.items() if k in known})
        if style.mode not in ("static", "smooth", "karaoke"):
            raise ValueError(f"Unknown subtitle mode: {style.mode!r}")
        return style

    @property
    def word_timing(self) -> bool:
        """Whether this style needs word-level timestamps."""
        return self.mode != "static"


@dataclass
class SlideSlot:
    """One image display unit in a slideshow."""
    image_path: Path
    display_duration: float
    index: int


@dataclass
class ScenePrompt:
    """A narration chunk used to prompt one scene image."""
    id: int  # 1-based
    text: str


class StoryState(str, Enum):
    WRITING = "writing"
    CONTINUE = "continue"
    ERROR_RETRY = "error_retry"
    FINISHED = "finished"
    ABORTED = "aborted"


@dataclass
class StoryOutcome:
    """Result of the continuation loop."""
    text: str
    state: StoryState
    iterations: int


@dataclass
class TaskStatus:
    """Status of an asynchronous generation task."""
    task_id: str
    status: str  # pending | processing | completed | failed
    output_url: str | None = None
    error: str | None = None

    @property
    def is_done(self) -> bool:
        return self.status in ("completed", "failed")

    @property
    def is_success(self) -> bool:
        return self.status == "completed"


@dataclass
class StageResult:
    """Outcome of one pipeline stage."""
    stage: str
    ok: bool
    artifact_path: Path | None = None
    error_kind: str | None = None
    message: str = ""

    @classmethod
    def success(cls, stage: str, artifact_path: Path | None = None, message: str = "") -> StageResult:
        return cls(stage=stage, ok=True, artifact_path=artifact_path, message=message)

    @classmethod
    def failure(cls, stage: str, error_kind: str, message: str) -> StageResult:
        return cls(stage=stage, ok=False, error_kind=error_kind, message=message)


@dataclass
class PipelineResult:
    """Overall outcome: success flag plus the per-stage results."""
    project_dir: Path | None
    stages: list[StageResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.stages) and all(s.ok for s in self.stages)

    @property
    def error(self) -> str:
        failed = [f"{s.stage}: {s.message}" for s in self.stages if not s.ok]
        return "; ".join(failed)

    def stage(self, name: str) -> StageResult | None:
        for s in self.stages:
            if s.stage == name:
                return s
        return None
