"""FFmpeg command builder.

Filter graphs are built as small AST objects (:class:`Filter`,
:class:`FilterChain`, :class:`FilterGraph`) and only serialized when the
command is turned into an argv list, so graph construction can be tested
without running ffmpeg.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

from storyreel.errors import ExternalProcessError

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int], None]

_PROGRESS_KEY_RE = re.compile(r"^\w+=")


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return f"{value:.3f}".rstrip("0").rstrip(".")
    return str(value)


@dataclass
class Filter:
    """A single filter, e.g. ``xfade=transition=fade:duration=1:offset=19``."""
    name: str
    args: list[Any] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        parts = [format_value(a) for a in self.args]
        parts += [f"{k}={format_value(v)}" for k, v in self.kwargs.items()]
        return f"{self.name}={':'.join(parts)}" if parts else self.name


@dataclass
class FilterChain:
    """Comma-joined filters with optional input/output pad labels."""
    filters: list[Filter]
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        return ins + ",".join(f.render() for f in self.filters) + outs


@dataclass
class FilterGraph:
    """Semicolon-joined chains for ``-filter_complex``."""
    chains: list[FilterChain] = field(default_factory=list)

    def add(self, filters: list[Filter], inputs: list[str] | None = None,
            outputs: list[str] | None = None) -> FilterChain:
        chain = FilterChain(filters=filters, inputs=inputs or [], outputs=outputs or [])
        self.chains.append(chain)
        return chain

    def iter_filters(self) -> Iterator[Filter]:
        for chain in self.chains:
            yield from chain.filters

    def render(self) -> str:
        return ";".join(c.render() for c in self.chains)


def subtitles_filter(filename: str, force_style: str | None = None) -> Filter:
    """Burn-in filter for an ``.ass`` or ``.srt`` file relative to the working dir."""
    kwargs: dict[str, Any] = {"filename": filename, "charenc": "UTF-8"}
    if force_style:
        kwargs["force_style"] = f"'{force_style}'"
    return Filter("subtitles", kwargs=kwargs)


@dataclass
class Input:
    path: str
    options: list[str] = field(default_factory=list)


@dataclass
class FfmpegCommand:
    """A structured ffmpeg invocation."""
    output: str
    binary: str = "ffmpeg"
    inputs: list[Input] = field(default_factory=list)
    video_filter: FilterChain | None = None
    filter_complex: FilterGraph | None = None
    maps: list[str] = field(default_factory=list)
    output_options: list[str] = field(default_factory=list)

    def add_input(self, path: str | Path, *options: str) -> int:
        """Append an input and return its stream index."""
        self.inputs.append(Input(path=str(path), options=list(options)))
        return len(self.inputs) - 1

    def to_args(self, extra: list[str] | None = None) -> list[str]:
        args = [self.binary, "-y"]
        for inp in self.inputs:
            args += [*inp.options, "-i", inp.path]
        if self.filter_complex is not None:
            args += ["-filter_complex", self.filter_complex.render()]
        if self.video_filter is not None:
            args += ["-vf", self.video_filter.render()]
        for m in self.maps:
            args += ["-map", m]
        args += self.output_options
        args += extra or []
        args.append(self.output)
        return args

    def __str__(self) -> str:
        return shlex.join(self.to_args())

    def run(
        self,
        cwd: str | Path | None = None,
        progress: ProgressFn | None = None,
        total_duration: float | None = None,
    ) -> None:
        """Run ffmpeg; raise :class:`ExternalProcessError` on a non-zero exit.

        With ``progress`` and ``total_duration`` set, ffmpeg's ``-progress``
        stream is parsed and the callback receives whole percentages.
        """
        logger.debug("Running: %s", self)
        if progress is None or not total_duration:
            args = self.to_args()
            try:
                result = subprocess.run(args, capture_output=True, text=True, cwd=cwd)
            except OSError as exc:
                raise ExternalProcessError(f"Cannot start {self.binary}: {exc}", cmd=args) from exc
            if result.returncode != 0:
                raise ExternalProcessError(
                    f"FFmpeg failed: {result.stderr[-500:]}",
                    cmd=args, returncode=result.returncode, output=result.stderr,
                )
            return

        args = self.to_args(extra=["-progress", "pipe:1", "-nostats"])
        tail: deque[str] = deque(maxlen=40)
        last_pct = -1
        try:
            proc = subprocess.Popen(
                args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, cwd=cwd,
            )
        except OSError as exc:
            raise ExternalProcessError(f"Cannot start {self.binary}: {exc}", cmd=args) from exc
        assert proc.stdout is not None
        finished = False
        try:
            for line in proc.stdout:
                line = line.strip()
                pct = parse_progress_line(line, total_duration)
                if pct is None:
                    if line and not _PROGRESS_KEY_RE.match(line):
                        tail.append(line)
                    continue
                if pct > last_pct:
                    last_pct = pct
                    progress(pct)
            finished = True
        finally:
            if not finished:
                proc.kill()
                proc.wait()
        returncode = proc.wait()
        if returncode != 0:
            output = "\n".join(tail)
            raise ExternalProcessError(
                f"FFmpeg failed: {output[-500:]}", cmd=args, returncode=returncode, output=output,
            )


def parse_progress_line(line: str, total_duration: float) -> int | None:
    """Turn an ``out_time_us=`` progress line into a 0-100 percentage."""
    key, _, value = line.partition("=")
    if key not in ("out_time_us", "out_time_ms") or not value.strip().isdigit():
        return None
    seconds = int(value) / 1_000_000
    return min(100, int(seconds / total_duration * 100))
