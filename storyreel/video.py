"""Final render: audio + visuals + burned-in subtitles -> ``video.mp4``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from storyreel.config import Settings
from storyreel.errors import ResourceMissing
from storyreel.ffmpeg import FfmpegCommand, Filter, subtitles_filter
from storyreel.probe import probe_duration
from storyreel.project import SUBTITLES_ASS, SUBTITLES_SRT, VIDEO, Project
from storyreel.slideshow import SlideshowPlan, build_loop_command, build_slideshow_command, plan_slideshow
from storyreel.subtitles import srt_force_style

logger = logging.getLogger(__name__)

VISUAL_MODES = ("images", "video")


def subtitle_filter_for(project: Project, settings: Settings) -> Filter | None:
    """Prefer the styled ASS track; fall back to the SRT with a forced style."""
    if not settings.subtitles_enabled:
        return None
    if project.path(SUBTITLES_ASS).exists():
        return subtitles_filter(SUBTITLES_ASS)
    if project.path(SUBTITLES_SRT).exists():
        return subtitles_filter(SUBTITLES_SRT, srt_force_style(settings.subtitle_style))
    return None


def plan_for_project(project: Project, settings: Settings,
                     audio_duration: float | None = None) -> SlideshowPlan:
    if not project.images_dir.is_dir():
        raise ResourceMissing(f"Images folder not found: {project.images_dir}")
    if audio_duration is None:
        audio_duration = probe_duration(project.audio_path, settings.ffprobe)
    show = settings.slideshow
    return plan_slideshow(project.image_paths(), audio_duration, show.slide_duration, show.fade_duration)


def build_render_command(project: Project, visual_mode: str, settings: Settings,
                         audio_duration: float,
                         subtitle: Filter | None = None) -> FfmpegCommand:
    """Assemble the ffmpeg command; paths are relative to the project folder."""
    show = settings.slideshow
    if visual_mode == "video":
        if not project.background_path.exists():
            raise ResourceMissing(f"Background video not found: {project.background_path}")
        return build_loop_command(
            project.background_path.name, project.audio_path.name, VIDEO,
            ffmpeg=settings.ffmpeg, width=show.width, height=show.height, subtitle=subtitle,
        )
    if visual_mode != "images":
        raise ValueError(f"Unknown visual mode: {visual_mode!r}")

    plan = plan_for_project(project, settings, audio_duration)
    # Inputs are passed relative to the project root (the ffmpeg cwd).
    for slot in plan.slots:
        slot.image_path = slot.image_path.relative_to(project.root)
    logger.info(
        "Slideshow: %d images, %d slots, %.1fs audio", len(set(s.image_path for s in plan.slots)),
        len(plan.slots), audio_duration,
    )
    return build_slideshow_command(
        plan, project.audio_path.name, VIDEO,
        ffmpeg=settings.ffmpeg, width=show.width, height=show.height, fps=show.fps,
        subtitle=subtitle,
    )


def render_project(project: Project, visual_mode: str, settings: Settings,
                   progress: Callable[[int], None] | None = None) -> Path:
    """Render ``video.mp4`` in the project folder.

    Raises:
        ResourceMissing: Audio, images or background video are absent.
        ExternalProcessError: ffmpeg failed.
    """
    if not project.audio_path.exists():
        raise ResourceMissing(f"Audio file not found: {project.audio_path}")

    duration = probe_duration(project.audio_path, settings.ffprobe)
    subtitle = subtitle_filter_for(project, settings)
    if subtitle is None:
        logger.info("Rendering without subtitles")

    cmd = build_render_command(project, visual_mode, settings, duration, subtitle)
    logger.info("Rendering video (%s mode, %.1fs)...", visual_mode, duration)
    cmd.run(cwd=project.root, progress=progress, total_duration=duration)
    logger.info("Video saved: %s", project.video_path)
    return project.video_path
