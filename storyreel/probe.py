"""Audio duration probing via ffprobe."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

FALLBACK_DURATION = 300.0


def ffprobe_for(ffmpeg_path: str | None) -> str:
    """Derive the ffprobe binary that ships next to a custom ffmpeg."""
    if not ffmpeg_path:
        return "ffprobe"
    cleaned = ffmpeg_path.replace('"', "")
    if "ffmpeg" not in Path(cleaned).name.lower():
        return "ffprobe"
    return re.sub(r"ffmpeg(\.exe)?$", lambda m: "ffprobe" + (m.group(1) or ""), cleaned, flags=re.IGNORECASE)


def probe_duration(audio_path: str | Path, ffprobe: str = "ffprobe") -> float:
    """Return the playback duration of ``audio_path`` in seconds.

    Falls back to :data:`FALLBACK_DURATION` on any failure; the value only
    drives timing layout, so a bad probe must not stop the render.
    """
    cmd = [
        ffprobe, "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(audio_path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
        duration = float(result.stdout.strip())
    except Exception as exc:
        logger.warning("ffprobe failed for %s (using %.0fs): %s", audio_path, FALLBACK_DURATION, exc)
        return FALLBACK_DURATION
    if duration != duration or duration <= 0:  # NaN or empty stream
        logger.warning("ffprobe returned %r for %s (using %.0fs)", duration, audio_path, FALLBACK_DURATION)
        return FALLBACK_DURATION
    return duration
