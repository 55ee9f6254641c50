"""End-to-end orchestration: story -> script -> visuals -> audio -> subtitles -> video.

Each stage returns a :class:`StageResult`; errors are mapped to an
``error_kind`` instead of escaping, so callers get a complete report.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from storyreel.config import Settings, language_code
from storyreel.errors import ResourceMissing, StoryReelError, error_kind_of
from storyreel.images import ImageBackend, generate_images, make_image_backend
from storyreel.models import PipelineResult, StageResult, StoryState
from storyreel.project import (
    DESCRIPTION,
    SCRIPT,
    STORY,
    SUBTITLES_ASS,
    Project,
    record_history,
)
from storyreel.segmenter import segment_prompts
from storyreel.story import ChatSession, ContinuationEngine, build_initial_prompt, make_chat_session
from storyreel.subtitles import add_fade_to_srt, convert_srt_file, convert_transcript_file
from storyreel.transcribe import WhisperTranscriber
from storyreel.tts import TtsBackend, make_tts_backend
from storyreel.video import VISUAL_MODES, render_project

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str], None]


@dataclass
class StoryRequest:
    title: str
    language: str = "English"
    project_name: str | None = None
    template: str | None = None
    seo_template: str | None = None
    length: str | None = None
    one_part: bool | None = None


@dataclass
class MediaRequest:
    language: str = "English"
    visual_mode: str = "images"  # images | video
    background_video: Path | None = None
    image_prompts: list[str] = field(default_factory=list)
    subtitles: bool | None = None  # None: use the config setting


class Pipeline:
    """Runs the stages for one project at a time.

    Collaborators are built from ``settings`` unless injected.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[Settings], ChatSession] = make_chat_session,
        image_backend: ImageBackend | None = None,
        tts_backend: TtsBackend | None = None,
        transcriber: WhisperTranscriber | None = None,
        progress: ProgressFn | None = None,
        cancel: asyncio.Event | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self._image_backend = image_backend
        self._tts_backend = tts_backend
        self._transcriber = transcriber
        self.progress = progress
        self.cancel = cancel or asyncio.Event()
        self.clock = clock

    def _report(self, message: str) -> None:
        logger.info(message)
        if self.progress:
            self.progress(message)

    @property
    def image_backend(self) -> ImageBackend:
        if self._image_backend is None:
            self._image_backend = make_image_backend(self.settings)
        return self._image_backend

    @property
    def tts_backend(self) -> TtsBackend:
        if self._tts_backend is None:
            self._tts_backend = make_tts_backend(self.settings, self.progress)
        return self._tts_backend

    @property
    def transcriber(self) -> WhisperTranscriber:
        if self._transcriber is None:
            s = self.settings
            self._transcriber = WhisperTranscriber(s.whisper_dir, s.whisper_custom_dir, s.ffmpeg)
        return self._transcriber

    async def _stage(self, name: str, action: Callable[[], Awaitable[StageResult]]) -> StageResult:
        try:
            result = await action()
        except StoryReelError as exc:
            logger.error("Stage %s failed: %s", name, exc)
            result = StageResult.failure(name, exc.error_kind, str(exc))
        except Exception as exc:
            logger.exception("Stage %s crashed", name)
            result = StageResult.failure(name, error_kind_of(exc), str(exc))
        if not result.ok:
            self._report(f"{name} failed: {result.message}")
        return result

    # ------------------------------------------------------------------
    # Story
    # ------------------------------------------------------------------

    async def generate_story(self, request: StoryRequest) -> StageResult:
        """Create the project folder and write ``story.txt`` and ``description.txt``."""
        return await self._stage("story", lambda: self._generate_story(request))

    async def _generate_story(self, request: StoryRequest) -> StageResult:
        cfg = self.settings.story
        name = request.project_name or request.title
        session = self.session_factory(self.settings)
        project = Project.create(self.settings.output_dir, name, self.clock())

        one_part = cfg.one_part if request.one_part is None else request.one_part
        engine = ContinuationEngine(
            session,
            max_iterations=cfg.max_iterations,
            turn_delay=cfg.turn_delay,
            part_retries=cfg.part_retries,
            one_part=one_part,
            progress=self.progress,
            cancel=self.cancel,
        )
        self._report("Starting story generation...")
        first = build_initial_prompt(
            request.template or cfg.template,
            request.title,
            request.language,
            request.length or cfg.target_length,
            name,
            one_part,
        )
        outcome = await engine.run(first, request.language)
        project.write_text(STORY, outcome.text)
        self._report(f"Story saved ({len(outcome.text)} chars, {outcome.iterations} parts)")

        description = await engine.describe(request.seo_template or cfg.seo_template,
                                            request.title, request.language)
        if description:
            project.write_text(DESCRIPTION, description)

        record_history(self.settings.output_dir, project, request.title)

        message = "" if outcome.state is StoryState.FINISHED else f"stopped in state {outcome.state.value}"
        return StageResult.success("story", project.story_path, message)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def write_script(self, project: Project) -> StageResult:
        async def action() -> StageResult:
            text = project.read_text(STORY)
            if text is None or not text.strip():
                raise ResourceMissing(f"story.txt not found or empty in {project.root}")
            return StageResult.success("script", project.write_text(SCRIPT, text))
        return await self._stage("script", action)

    def image_prompts(self, project: Project, request: MediaRequest) -> list[str]:
        if request.image_prompts:
            return list(request.image_prompts)
        cfg = self.settings.images
        if cfg.prompt_mode == "scenes":
            return [p.text for p in segment_prompts(project.narration(), cfg.scene_chunk_size)]
        return [cfg.prompt] * cfg.count

    async def prepare_visuals(self, project: Project, request: MediaRequest) -> StageResult:
        async def action() -> StageResult:
            if request.visual_mode not in VISUAL_MODES:
                raise ValueError(f"Unknown visual mode: {request.visual_mode!r}")
            if request.visual_mode == "video":
                if request.background_video is not None:
                    if not request.background_video.exists():
                        raise ResourceMissing(f"Background video not found: {request.background_video}")
                    shutil.copyfile(request.background_video, project.background_path)
                    self._report("Background video copied.")
                elif not project.background_path.exists():
                    raise ResourceMissing("Video mode needs a background video")
                return StageResult.success("visuals", project.background_path)

            prompts = self.image_prompts(project, request)
            saved = await generate_images(
                self.image_backend, prompts, project.images_dir,
                delay=self.settings.images.delay, progress=self.progress, cancel=self.cancel,
            )
            if not saved:
                raise ResourceMissing("No images were generated")
            message = "" if len(saved) == len(prompts) else f"{len(prompts) - len(saved)} image(s) failed"
            return StageResult.success("visuals", project.images_dir, message)
        return await self._stage("visuals", action)

    async def synthesize_audio(self, project: Project) -> StageResult:
        async def action() -> StageResult:
            self._report(f"Generating audio ({self.settings.tts.provider})...")
            path = await self.tts_backend.synthesize(project.narration(), project.audio_path, self.cancel)
            self._report("Audio generated.")
            return StageResult.success("audio", path)
        return await self._stage("audio", action)

    async def make_subtitles(self, project: Project, language: str,
                             enabled: bool | None = None) -> StageResult:
        """Transcribe the narration and build ``subtitles.ass``.

        With subtitles disabled, stale tracks are removed instead.
        """
        if enabled is None:
            enabled = self.settings.subtitles_enabled

        async def action() -> StageResult:
            if not enabled:
                project.remove_subtitles()
                return StageResult.success("subtitles", None, "disabled")
            if not project.audio_path.exists():
                raise ResourceMissing(f"Audio file not found: {project.audio_path}")

            style = self.settings.subtitle_style
            project.remove_subtitles()
            self._report("Generating subtitles...")
            result = await asyncio.to_thread(
                self.transcriber.transcribe, project.audio_path, language_code(language), style.word_timing,
            )
            if result is None:
                return StageResult.failure("subtitles", "resource_missing",
                                           "Transcription produced no subtitles")

            ass_path = project.path(SUBTITLES_ASS)
            if result.json_path is not None:
                count = convert_transcript_file(result.json_path, ass_path, style)
            else:
                count = convert_srt_file(result.srt_path, ass_path, style)
            add_fade_to_srt(result.srt_path)
            self._report(f"Subtitles ready ({count} lines).")
            return StageResult.success("subtitles", ass_path)
        return await self._stage("subtitles", action)

    async def render(self, project: Project, visual_mode: str = "images") -> StageResult:
        def on_progress(pct: int) -> None:
            if self.progress:
                self.progress(f"Rendering: {pct}%")

        async def action() -> StageResult:
            self._report("Rendering video...")
            path = await asyncio.to_thread(render_project, project, visual_mode, self.settings, on_progress)
            self._report(f"Video saved: {path}")
            return StageResult.success("render", path)
        return await self._stage("render", action)

    async def produce(self, project: Project, request: MediaRequest) -> PipelineResult:
        """Run script, visuals, audio, subtitles and render for an existing story.

        Script, visuals and audio stop the run on failure. A subtitles failure
        is recorded and the video is rendered without them.
        """
        result = PipelineResult(project_dir=project.root)
        for step in (
            lambda: self.write_script(project),
            lambda: self.prepare_visuals(project, request),
            lambda: self.synthesize_audio(project),
        ):
            stage = await step()
            result.stages.append(stage)
            if not stage.ok:
                return result

        result.stages.append(await self.make_subtitles(project, request.language, request.subtitles))
        result.stages.append(await self.render(project, request.visual_mode))
        return result

    async def run(self, story: StoryRequest, media: MediaRequest) -> PipelineResult:
        """Generate the story, then produce the video."""
        story_result = await self.generate_story(story)
        if not story_result.ok or story_result.artifact_path is None:
            return PipelineResult(project_dir=None, stages=[story_result])
        project = Project.open(story_result.artifact_path.parent)
        result = await self.produce(project, media)
        result.stages.insert(0, story_result)
        return result
