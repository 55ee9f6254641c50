"""Subtitle timing converter: transcripts -> styled ASS tracks.

Transcripts come from the transcription service as JSON with either
segment-level or word-level timestamps, or as SRT. Words are grouped into
display lines under a character budget and rendered as ASS dialogue events
in one of three modes:

- ``static``: whole-line fade in/out.
- ``smooth``: each word cross-fades from the base colour to the highlight
  colour when it is spoken (``\\t`` transforms relative to the line start).
- ``karaoke``: classic ``\\kf`` wipe sized to each word's duration.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable

from storyreel.errors import MalformedResponse
from storyreel.models import SubtitleLine, SubtitleStyle, TranscriptSegment

logger = logging.getLogger(__name__)

FADE_DURATION_MS = 200  # per-word colour transition
LINE_FADE_MS = 150  # whole-line fade in/out
SRT_FADE_IN_MS = 400
STYLE_NAME = "Karaoke"

_TIMESTAMP_RE = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2})(?:[,.](\d+))?$")
_OVERRIDE_RE = re.compile(r"\{\\[^}]*\}")


# ------------------------------------------------------------------
# Time and colour helpers
# ------------------------------------------------------------------

def parse_timestamp(value: Any) -> float:
    """Normalize a timestamp to seconds.

    Numbers pass through; ``H:MM:SS,mmm`` (or ``.mmm``) strings are parsed.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    m = _TIMESTAMP_RE.match(text)
    if not m:
        try:
            return float(text)
        except ValueError:
            raise ValueError(f"Unrecognized timestamp: {value!r}") from None
    hours, minutes, seconds, fraction = m.groups()
    frac = int(fraction) / (10 ** len(fraction)) if fraction else 0.0
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds) + frac


def format_ass_time(seconds: float) -> str:
    """Format seconds as ASS ``H:MM:SS.cc``."""
    cs = int(round(max(0.0, seconds) * 100))
    h, rem = divmod(cs, 360000)
    m, rem = divmod(rem, 6000)
    s, c = divmod(rem, 100)
    return f"{h}:{m:02d}:{s:02d}.{c:02d}"


def format_srt_time(seconds: float) -> str:
    ms = int(round(max(0.0, seconds) * 1000))
    h, rem = divmod(ms, 3600000)
    m, rem = divmod(rem, 60000)
    s, ms = divmod(rem, 1000)
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def hex_to_ass_color(color: str | None) -> str:
    """Convert ``#RRGGBB`` to ASS ``&H00BBGGRR``. ASS values pass through."""
    if not color:
        return "&H00FFFFFF"
    if color.upper().startswith("&H"):
        return color.upper()
    clean = color.lstrip("#")
    if len(clean) != 6:
        raise ValueError(f"Expected #RRGGBB colour, got {color!r}")
    r, g, b = clean[0:2], clean[2:4], clean[4:6]
    return f"&H00{b}{g}{r}".upper()


def ass_color_tag(color: str | None) -> str:
    """Inline override form of a colour (``&HBBGGRR&``), alpha dropped."""
    value = hex_to_ass_color(color).rstrip("&")
    return f"&H{value[-6:]}&"


def _escape(text: str) -> str:
    return (
        text.replace("\\", "")
        .replace("{", "(")
        .replace("}", ")")
        .replace("\r", "")
        .replace("\n", " ")
    )


# ------------------------------------------------------------------
# Transcript loading
# ------------------------------------------------------------------

def _span(item: dict) -> tuple[float, float]:
    timestamps = item.get("timestamps")
    if isinstance(timestamps, dict):
        return parse_timestamp(timestamps.get("from")), parse_timestamp(timestamps.get("to"))
    return parse_timestamp(item.get("start")), parse_timestamp(item.get("end"))


def _atomic_text(text: str) -> str:
    return text if text[0].isspace() else " " + text


def load_transcript(data: Any) -> list[TranscriptSegment]:
    """Flatten a transcription result into an ordered list of words.

    Accepts OpenAI-style ``{"segments": [...]}`` (optionally with ``words``),
    whisper.cpp ``{"transcription": [...]}`` or a bare list of segments.

    whisper.cpp entries are tokens: one begins a new word when its text has
    a leading space. Everything else is atomic. A segment's ``words`` are
    used when present, otherwise the segment itself is a single unit.
    """
    tokens = False
    if isinstance(data, list):
        raw = data
    elif isinstance(data, dict):
        raw = data.get("segments")
        if raw is None:
            raw = data.get("transcription")
            tokens = raw is not None
        if raw is None:
            raise MalformedResponse("Transcript has no 'segments' or 'transcription'", payload=data)
    else:
        raise MalformedResponse(f"Unexpected transcript type: {type(data).__name__}", payload=data)

    words: list[TranscriptSegment] = []
    for seg in raw:
        if not isinstance(seg, dict):
            raise MalformedResponse(f"Unexpected transcript segment: {seg!r}", payload=data)
        items = [seg] if tokens else (seg.get("words") or [seg])
        for item in items:
            text = item.get("word", item.get("text")) or ""
            if not text.strip():
                continue
            start, end = _span(item)
            if tokens:
                word_start = not words or text[0].isspace()
            else:
                text, word_start = _atomic_text(text), True
            words.append(TranscriptSegment(text=text, start=start, end=end, word_start=word_start))
    return words


def parse_srt(content: str) -> list[TranscriptSegment]:
    """Parse SRT cues into atomic segments (override tags removed)."""
    segments: list[TranscriptSegment] = []
    for block in re.split(r"\r?\n\s*\r?\n", content.strip()):
        lines = [ln for ln in block.splitlines() if ln.strip()]
        timing_idx = next((i for i, ln in enumerate(lines) if "-->" in ln), None)
        if timing_idx is None:
            continue
        start_raw, end_raw = (part.strip().split(" ")[0] for part in lines[timing_idx].split("-->"))
        text = " ".join(_OVERRIDE_RE.sub("", ln).strip() for ln in lines[timing_idx + 1:]).strip()
        if not text:
            continue
        segments.append(TranscriptSegment(
            text=" " + text,
            start=parse_timestamp(start_raw),
            end=parse_timestamp(end_raw),
            word_start=True,
        ))
    return segments


# ------------------------------------------------------------------
# Grouping and rendering
# ------------------------------------------------------------------

def group_lines(words: Iterable[TranscriptSegment], max_chars: int) -> list[SubtitleLine]:
    """Greedily group words into lines of at most ``max_chars`` characters.

    A line is only closed before a word that starts a new token, so an
    over-long single token ends up alone on its own line.
    """
    lines: list[SubtitleLine] = []
    current: list[TranscriptSegment] = []
    length = 0
    for word in words:
        if current and word.word_start and length + len(word.text) > max_chars:
            lines.append(SubtitleLine(words=current))
            current, length = [], 0
        current.append(word)
        length += len(word.text)
    if current:
        lines.append(SubtitleLine(words=current))
    return lines


def _word_texts(line: SubtitleLine) -> list[str]:
    texts = [_escape(w.text) for w in line.words]
    texts[0] = texts[0].lstrip()
    return texts


def render_event_text(line: SubtitleLine, style: SubtitleStyle) -> str:
    """Build the dialogue text for one line, including timing overrides."""
    prefix = f"{{\\fad({LINE_FADE_MS},{LINE_FADE_MS})}}"
    if style.mode == "static":
        return prefix + _escape(line.text)

    texts = _word_texts(line)
    parts: list[str] = [prefix]

    if style.mode == "smooth":
        active = ass_color_tag(style.active_color)
        for word, text in zip(line.words, texts):
            t_start = max(0, int(round((word.start - line.start) * 1000)))
            t_end = t_start + FADE_DURATION_MS
            parts.append(f"{{\\t({t_start},{t_end},\\1c{active})}}{text}")
        return "".join(parts)

    # karaoke: \k spacers for silences, \kf sweep per word
    cursor = line.start
    for word, text in zip(line.words, texts):
        gap = int(round((word.start - cursor) * 100))
        if gap > 0:
            parts.append(f"{{\\k{gap}}}")
        fill = max(1, int(round((word.end - word.start) * 100)))
        parts.append(f"{{\\kf{fill}}}{text}")
        cursor = max(cursor, word.end)
    return "".join(parts)


def build_ass_header(style: SubtitleStyle) -> str:
    # \kf sweeps Secondary -> Primary; \t transitions start from Primary.
    if style.mode == "karaoke":
        primary, secondary = style.active_color, style.inactive_color
    else:
        primary, secondary = style.inactive_color, style.active_color
    style_line = ",".join(str(v) for v in (
        STYLE_NAME,
        style.font,
        style.font_size,
        hex_to_ass_color(primary),
        hex_to_ass_color(secondary),
        hex_to_ass_color(style.outline_color),
        "&H00000000",
        -1 if style.bold else 0,
        -1 if style.italic else 0,
        0, 0, 100, 100, 0, 0,
        style.border_style,
        style.outline_width,
        style.shadow,
        style.alignment,
        style.margin_side,
        style.margin_side,
        style.margin_bottom,
        1,
    ))
    return (
        "[Script Info]\n"
        "Title: storyreel subtitles\n"
        "ScriptType: v4.00+\n"
        "WrapStyle: 0\n"
        "ScaledBorderAndShadow: yes\n"
        f"PlayResX: {style.play_res_x}\n"
        f"PlayResY: {style.play_res_y}\n"
        "\n"
        "[V4+ Styles]\n"
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, "
        "BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, "
        "BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding\n"
        f"Style: {style_line}\n"
        "\n"
        "[Events]\n"
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text\n"
    )


def build_ass(lines: list[SubtitleLine], style: SubtitleStyle) -> str:
    events = [
        f"Dialogue: 0,{format_ass_time(line.start)},{format_ass_time(line.end)},"
        f"{STYLE_NAME},,0,0,0,,{render_event_text(line, style)}"
        for line in lines
    ]
    return build_ass_header(style) + "\n".join(events) + ("\n" if events else "")


def build_track(words: list[TranscriptSegment], style: SubtitleStyle) -> tuple[str, int]:
    """Group and render ``words``; returns (ass_text, line_count)."""
    lines = group_lines(words, style.max_chars)
    return build_ass(lines, style), len(lines)


# ------------------------------------------------------------------
# File conversions
# ------------------------------------------------------------------

def convert_transcript_file(json_path: Path, ass_path: Path, style: SubtitleStyle) -> int:
    """Convert a transcription JSON file into an ASS track. Returns line count."""
    raw = json_path.read_text(encoding="utf-8")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("Unparseable transcript %s: %r", json_path, raw[:500])
        raise MalformedResponse(f"Invalid transcript JSON in {json_path.name}: {exc}", payload=raw) from exc

    text, count = build_track(load_transcript(data), style)
    ass_path.write_text(text, encoding="utf-8")
    logger.info("ASS track saved: %s (%d lines, mode=%s)", ass_path, count, style.mode)
    return count


def convert_srt_file(srt_path: Path, ass_path: Path, style: SubtitleStyle) -> int:
    """Convert an SRT file (segment-level timing) into an ASS track."""
    segments = parse_srt(srt_path.read_text(encoding="utf-8"))
    text, count = build_track(segments, style)
    ass_path.write_text(text, encoding="utf-8")
    logger.info("ASS track saved from SRT: %s (%d lines)", ass_path, count)
    return count


def add_fade_to_srt(srt_path: Path, fade_in_ms: int = SRT_FADE_IN_MS) -> bool:
    """Prefix every SRT text line with a fade-in tag. Safe to run twice."""
    if not srt_path.exists():
        return False
    tag = f"{{\\fad({fade_in_ms},0)}}"
    out = []
    for line in srt_path.read_text(encoding="utf-8").split("\n"):
        stripped = line.strip()
        if not stripped or stripped.isdigit() or "-->" in line or "{\\fad" in line:
            out.append(line)
        else:
            out.append(tag + line)
    srt_path.write_text("\n".join(out), encoding="utf-8")
    return True


def srt_force_style(style: SubtitleStyle) -> str:
    """``force_style`` value for burning an SRT with the configured look.

    SRT is rendered at libass' default 384x288 canvas, so sizes are scaled down
    from the ASS play resolution.
    """
    scale = 288 / style.play_res_y
    return ",".join([
        f"Fontname={style.font}",
        f"Bold={1 if style.bold else 0}",
        f"Italic={1 if style.italic else 0}",
        f"Fontsize={max(1, round(style.font_size * scale))}",
        f"PrimaryColour={hex_to_ass_color(style.inactive_color)}",
        f"OutlineColour={hex_to_ass_color(style.outline_color)}",
        f"BorderStyle={style.border_style}",
        f"Outline={style.outline_width}",
        f"Shadow={style.shadow}",
        f"MarginV={max(0, round(style.margin_bottom * scale))}",
        f"Alignment={style.alignment}",
    ])
