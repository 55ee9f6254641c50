"""Narration transcription with the whisper.cpp command-line binary."""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from storyreel.errors import ExternalProcessError, ResourceMissing

logger = logging.getLogger(__name__)

MODEL_NAME = "ggml-base.bin"
TEMP_WAV = "temp_clean.wav"
OUTPUT_BASE = "subtitles"


@dataclass
class Transcription:
    srt_path: Path
    json_path: Path | None = None


def whisper_executable_name() -> str:
    return "whisper.exe" if sys.platform == "win32" else "whisper"


def resolve_whisper_paths(default_dir: Path, custom_dir: Path | None = None) -> tuple[Path, Path]:
    """Pick the whisper binary and model, preferring a complete custom directory.

    Raises:
        ResourceMissing: If the chosen directory lacks the binary or the model.
    """
    exe_name = whisper_executable_name()
    bin_dir = Path(default_dir)
    if custom_dir is not None:
        custom = Path(custom_dir)
        if (custom / exe_name).exists() and (custom / MODEL_NAME).exists():
            bin_dir = custom
            logger.info("Using custom whisper path: %s", bin_dir)
        else:
            logger.warning("Custom whisper path invalid, using default: %s", bin_dir)

    exe, model = bin_dir / exe_name, bin_dir / MODEL_NAME
    if not exe.exists():
        raise ResourceMissing(f"Whisper executable missing at: {exe}")
    if not model.exists():
        raise ResourceMissing(f"Whisper model missing at: {model}")
    return exe, model


def _run(cmd: list[str], cwd: Path | None = None) -> None:
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, cwd=cwd)
    except OSError as exc:
        raise ExternalProcessError(f"Cannot start {cmd[0]}: {exc}", cmd=cmd) from exc
    if result.returncode != 0:
        raise ExternalProcessError(
            f"{Path(cmd[0]).name} failed: {result.stderr[-500:]}",
            cmd=cmd, returncode=result.returncode, output=result.stderr,
        )


class WhisperTranscriber:
    """Transcribe ``audio.mp3`` into ``subtitles.srt`` and ``subtitles.json``."""

    def __init__(self, whisper_dir: Path, custom_dir: Path | None = None,
                 ffmpeg: str = "ffmpeg") -> None:
        self.whisper_dir = Path(whisper_dir)
        self.custom_dir = custom_dir
        self.ffmpeg = ffmpeg

    def convert_command(self, audio_path: Path, wav_path: Path) -> list[str]:
        return [
            self.ffmpeg, "-y", "-i", str(audio_path),
            "-ar", "16000", "-ac", "1", "-c:a", "pcm_s16le",
            "-map_metadata", "-1", "-fflags", "+bitexact",
            str(wav_path),
        ]

    @staticmethod
    def whisper_command(exe: Path, model: Path, language_code: str,
                        word_timestamps: bool) -> list[str]:
        cmd = [
            str(exe), "-m", str(model), "-f", TEMP_WAV,
            "-osrt", "-oj", "-of", OUTPUT_BASE,
            "-l", language_code,
        ]
        if word_timestamps:
            cmd += ["--max-len", "1", "--split-on-word"]
        else:
            cmd += ["--max-len", "40"]
        return cmd

    def transcribe(self, audio_path: Path, language_code: str = "auto",
                   word_timestamps: bool = True) -> Transcription | None:
        """Run whisper next to the audio file.

        Returns None when whisper finishes without writing an SRT (e.g. silence).
        """
        exe, model = resolve_whisper_paths(self.whisper_dir, self.custom_dir)
        work_dir = Path(audio_path).parent
        wav_path = work_dir / TEMP_WAV

        logger.info("Converting audio to 16kHz WAV...")
        _run(self.convert_command(audio_path, wav_path))
        try:
            logger.info("Running whisper (lang=%s, word timing=%s)...", language_code, word_timestamps)
            _run(self.whisper_command(exe, model, language_code, word_timestamps), cwd=work_dir)
        finally:
            wav_path.unlink(missing_ok=True)

        srt_path = work_dir / f"{OUTPUT_BASE}.srt"
        json_path = work_dir / f"{OUTPUT_BASE}.json"
        for ext, target in ((".srt", srt_path), (".json", json_path)):
            stray = work_dir / f"{TEMP_WAV}{ext}"
            if not target.exists() and stray.exists():
                shutil.move(str(stray), str(target))

        if not srt_path.exists():
            logger.warning("Whisper finished but no SRT file found (maybe silence)")
            return None
        logger.info("Subtitles generated: %s", srt_path)
        return Transcription(srt_path=srt_path, json_path=json_path if json_path.exists() else None)
