"""Slideshow / loop timing planner.

Turns a pool of still images and a measured audio duration into slide slots
and an ``xfade`` chain, or builds the loop command for a background video.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path

from storyreel.errors import ResourceMissing
from storyreel.ffmpeg import FfmpegCommand, Filter, FilterChain, FilterGraph, format_value
from storyreel.models import SlideSlot

ENCODE_OPTIONS = [
    "-c:v", "libx264", "-preset", "medium", "-crf", "18",
    "-c:a", "aac", "-b:a", "192k",
    "-shortest",
]


@dataclass
class SlideshowPlan:
    """Slots and crossfade offsets for one render."""
    slots: list[SlideSlot]
    audio_duration: float
    slide_duration: float
    fade_duration: float
    offsets: list[float] = field(default_factory=list)

    @property
    def is_static(self) -> bool:
        return len(self.slots) == 1

    @property
    def effective_slide_time(self) -> float:
        return effective_slide_time(self.slide_duration, self.fade_duration)

    @property
    def timeline_duration(self) -> float:
        if self.is_static:
            return self.slots[0].display_duration
        n = len(self.slots)
        return n * self.slide_duration - (n - 1) * self.fade_duration


def effective_slide_time(slide_duration: float, fade_duration: float) -> float:
    if fade_duration < 0 or fade_duration >= slide_duration:
        raise ValueError(
            f"fade_duration ({fade_duration}) must be in [0, slide_duration={slide_duration})"
        )
    return slide_duration - fade_duration


def slots_needed(audio_duration: float, slide_duration: float, fade_duration: float) -> int:
    """Number of slides covering ``audio_duration``, plus one past the last crossfade."""
    effective = effective_slide_time(slide_duration, fade_duration)
    return math.ceil(audio_duration / effective) + 1


def crossfade_offsets(slot_count: int, effective: float) -> list[float]:
    """Start time of the transition into slot i, for i = 1..slot_count-1."""
    return [i * effective for i in range(1, slot_count)]


def plan_slideshow(
    images: list[Path],
    audio_duration: float,
    slide_duration: float = 20.0,
    fade_duration: float = 1.0,
) -> SlideshowPlan:
    """Lay out slide slots against the audio duration.

    One image is held for the whole audio with no transitions. With two or
    more, images are cycled round-robin until the timeline is covered.
    """
    if not images:
        raise ResourceMissing("No images found!")

    if len(images) == 1:
        return SlideshowPlan(
            slots=[SlideSlot(image_path=images[0], display_duration=audio_duration, index=0)],
            audio_duration=audio_duration,
            slide_duration=slide_duration,
            fade_duration=fade_duration,
        )

    count = slots_needed(audio_duration, slide_duration, fade_duration)
    slots = [
        SlideSlot(image_path=images[i % len(images)], display_duration=slide_duration, index=i)
        for i in range(count)
    ]
    return SlideshowPlan(
        slots=slots,
        audio_duration=audio_duration,
        slide_duration=slide_duration,
        fade_duration=fade_duration,
        offsets=crossfade_offsets(count, effective_slide_time(slide_duration, fade_duration)),
    )


def normalize_filters(width: int, height: int, fps: int | None = None) -> list[Filter]:
    """Scale-and-crop to fill the frame; xfade needs identical inputs."""
    filters = [
        Filter("scale", [width, height], {"force_original_aspect_ratio": "increase"}),
        Filter("crop", [width, height]),
        Filter("setsar", [1]),
    ]
    if fps:
        filters.append(Filter("fps", [fps]))
    return filters


def build_slideshow_graph(
    plan: SlideshowPlan,
    width: int = 1920,
    height: int = 1080,
    fps: int = 30,
    subtitle: Filter | None = None,
) -> FilterGraph:
    """Chain crossfades across all slots; subtitles go on the final stream only."""
    if plan.is_static:
        raise ValueError("A single-image plan has no crossfade graph")

    graph = FilterGraph()
    for slot in plan.slots:
        graph.add(normalize_filters(width, height, fps), inputs=[f"{slot.index}:v"], outputs=[f"s{slot.index}"])

    last = "s0"
    for i, offset in enumerate(plan.offsets, 1):
        out = f"v{i}"
        graph.add(
            [Filter("xfade", kwargs={
                "transition": "fade",
                "duration": plan.fade_duration,
                "offset": offset,
            })],
            inputs=[last, f"s{i}"],
            outputs=[out],
        )
        last = out

    if subtitle is not None:
        graph.add([Filter("format", ["yuv420p"])], inputs=[last], outputs=["v_pre"])
        graph.add([subtitle], inputs=["v_pre"], outputs=["v"])
    else:
        graph.add([Filter("format", ["yuv420p"])], inputs=[last], outputs=["v"])
    return graph


def build_slideshow_command(
    plan: SlideshowPlan,
    audio: str,
    output: str,
    ffmpeg: str = "ffmpeg",
    width: int = 1920,
    height: int = 1080,
    fps: int = 30,
    subtitle: Filter | None = None,
) -> FfmpegCommand:
    """Full render command for a plan (still image or crossfaded slideshow)."""
    cmd = FfmpegCommand(output=output, binary=ffmpeg)

    if plan.is_static:
        cmd.add_input(plan.slots[0].image_path.as_posix(), "-loop", "1")
        cmd.add_input(audio)
        filters = normalize_filters(width, height) + [Filter("format", ["yuv420p"])]
        if subtitle is not None:
            filters.append(subtitle)
        cmd.video_filter = FilterChain(filters=filters)
        cmd.maps = ["0:v", "1:a"]
        cmd.output_options = [*ENCODE_OPTIONS[:6], "-tune", "stillimage", *ENCODE_OPTIONS[6:]]
        return cmd

    for slot in plan.slots:
        cmd.add_input(slot.image_path.as_posix(), "-loop", "1", "-t", format_value(float(slot.display_duration)))
    audio_idx = cmd.add_input(audio)
    cmd.filter_complex = build_slideshow_graph(plan, width, height, fps, subtitle)
    cmd.maps = ["[v]", f"{audio_idx}:a"]
    cmd.output_options = list(ENCODE_OPTIONS)
    return cmd


def build_loop_command(
    video: str,
    audio: str,
    output: str,
    ffmpeg: str = "ffmpeg",
    width: int = 1920,
    height: int = 1080,
    subtitle: Filter | None = None,
) -> FfmpegCommand:
    """Loop a background video forever and cut it at the end of the audio."""
    cmd = FfmpegCommand(output=output, binary=ffmpeg)
    cmd.add_input(video, "-stream_loop", "-1")
    cmd.add_input(audio)
    filters = normalize_filters(width, height)
    if subtitle is not None:
        filters.append(subtitle)
    cmd.video_filter = FilterChain(filters=filters)
    cmd.maps = ["0:v", "1:a"]
    cmd.output_options = list(ENCODE_OPTIONS)
    return cmd
