import subprocess

import pytest

from storyreel.errors import ExternalProcessError
from storyreel.ffmpeg import (
    FfmpegCommand,
    Filter,
    FilterChain,
    FilterGraph,
    format_value,
    parse_progress_line,
)


def test_format_value():
    assert format_value(19.0) == "19"
    assert format_value(0.5) == "0.5"
    assert format_value(1 / 3) == "0.333"
    assert format_value(True) == "1"
    assert format_value("fade") == "fade"


def test_filter_render():
    assert Filter("setsar", [1]).render() == "setsar=1"
    assert Filter("null").render() == "null"
    assert Filter("scale", [640, 360], {"flags": "lanczos"}).render() == "scale=640:360:flags=lanczos"


def test_chain_and_graph_render():
    graph = FilterGraph()
    graph.add([Filter("fps", [30]), Filter("format", ["yuv420p"])], inputs=["0:v"], outputs=["a"])
    graph.add([Filter("null")], inputs=["a"], outputs=["v"])
    assert graph.render() == "[0:v]fps=30,format=yuv420p[a];[a]null[v]"
    assert [f.name for f in graph.iter_filters()] == ["fps", "format", "null"]


def test_command_argument_order():
    cmd = FfmpegCommand(output="out.mp4", binary="/opt/ffmpeg")
    assert cmd.add_input("a.mp3") == 0
    assert cmd.add_input("b.png", "-loop", "1") == 1
    cmd.video_filter = FilterChain([Filter("null")])
    cmd.maps = ["1:v", "0:a"]
    cmd.output_options = ["-shortest"]
    assert cmd.to_args() == [
        "/opt/ffmpeg", "-y",
        "-i", "a.mp3",
        "-loop", "1", "-i", "b.png",
        "-vf", "null",
        "-map", "1:v", "-map", "0:a",
        "-shortest",
        "out.mp4",
    ]
    assert str(cmd).startswith("/opt/ffmpeg -y -i a.mp3")


def test_parse_progress_line():
    assert parse_progress_line("out_time_us=5000000", 10.0) == 50
    assert parse_progress_line("out_time_ms=20000000", 10.0) == 100
    assert parse_progress_line("frame=12", 10.0) is None
    assert parse_progress_line("out_time_us=N/A", 10.0) is None


def test_run_raises_on_failure(monkeypatch):
    def fake_run(args, **kwargs):
        return subprocess.CompletedProcess(args, 1, stdout="", stderr="x" * 600 + "boom")

    monkeypatch.setattr(subprocess, "run", fake_run)
    cmd = FfmpegCommand(output="out.mp4")
    with pytest.raises(ExternalProcessError) as excinfo:
        cmd.run()
    assert excinfo.value.returncode == 1
    assert excinfo.value.error_kind == "external_process"
    assert str(excinfo.value).endswith("boom")


def test_run_missing_binary(monkeypatch):
    def fake_run(args, **kwargs):
        raise FileNotFoundError("no ffmpeg")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(ExternalProcessError):
        FfmpegCommand(output="out.mp4").run()


class _FakeProc:
    def __init__(self, lines, returncode=0):
        self.stdout = iter(lines)
        self._rc = returncode
        self.killed = False
        self.waits = 0

    def kill(self):
        self.killed = True

    def wait(self):
        self.waits += 1
        return self._rc


def test_run_reports_progress(monkeypatch):
    seen_args = {}

    def fake_popen(args, **kwargs):
        seen_args["args"] = args
        return _FakeProc([
            "frame=1\n",
            "out_time_us=2500000\n",
            "out_time_us=2500000\n",
            "out_time_us=10000000\n",
            "progress=end\n",
        ])

    monkeypatch.setattr(subprocess, "Popen", fake_popen)
    seen = []
    FfmpegCommand(output="out.mp4").run(progress=seen.append, total_duration=10.0)
    assert seen == [25, 100]
    assert "-progress" in seen_args["args"]
    assert seen_args["args"][-1] == "out.mp4"


def test_run_with_progress_failure_keeps_tail(monkeypatch):
    monkeypatch.setattr(subprocess, "Popen", lambda args, **kw: _FakeProc(["Invalid data found\n"], 1))
    with pytest.raises(ExternalProcessError) as excinfo:
        FfmpegCommand(output="out.mp4").run(progress=lambda p: None, total_duration=5.0)
    assert "Invalid data found" in excinfo.value.output


def test_run_keeps_error_lines_containing_equals(monkeypatch):
    error = "Error initializing filter 'xfade' with args 'transition=fade:duration=1:offset=19'"
    monkeypatch.setattr(subprocess, "Popen", lambda args, **kw: _FakeProc(
        ["frame=10\n", "out_time_us=1000000\n", error + "\n", "progress=end\n"], 1))
    with pytest.raises(ExternalProcessError) as excinfo:
        FfmpegCommand(output="out.mp4").run(progress=lambda p: None, total_duration=5.0)
    assert excinfo.value.output == error


def test_run_kills_ffmpeg_when_progress_callback_raises(monkeypatch):
    proc = _FakeProc(["out_time_us=1000000\n", "out_time_us=2000000\n"])
    monkeypatch.setattr(subprocess, "Popen", lambda args, **kw: proc)

    def progress(pct):
        raise RuntimeError("ui closed")

    with pytest.raises(RuntimeError):
        FfmpegCommand(output="out.mp4").run(progress=progress, total_duration=5.0)
    assert proc.killed
    assert proc.waits == 1
