import subprocess
from pathlib import Path

import pytest

from storyreel.errors import ExternalProcessError, ResourceMissing
from storyreel.transcribe import WhisperTranscriber, resolve_whisper_paths, whisper_executable_name


def _whisper_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / whisper_executable_name()).write_text("")
    (path / "ggml-base.bin").write_text("")
    return path


def test_resolve_prefers_complete_custom_dir(tmp_path):
    default = _whisper_dir(tmp_path / "bin")
    custom = _whisper_dir(tmp_path / "custom")
    exe, model = resolve_whisper_paths(default, custom)
    assert exe.parent == custom
    assert model.name == "ggml-base.bin"


def test_resolve_falls_back_from_incomplete_custom_dir(tmp_path):
    default = _whisper_dir(tmp_path / "bin")
    custom = tmp_path / "custom"
    custom.mkdir()
    (custom / whisper_executable_name()).write_text("")
    exe, _ = resolve_whisper_paths(default, custom)
    assert exe.parent == default


def test_resolve_missing_everything(tmp_path):
    with pytest.raises(ResourceMissing):
        resolve_whisper_paths(tmp_path / "bin")


def test_whisper_command_word_timing():
    cmd = WhisperTranscriber.whisper_command(Path("w"), Path("m"), "uk", word_timestamps=True)
    assert cmd[:4] == ["w", "-m", "m", "-f"]
    assert ["-osrt", "-oj", "-of", "subtitles", "-l", "uk"] == cmd[5:11]
    assert cmd[-3:] == ["--max-len", "1", "--split-on-word"]
    cmd = WhisperTranscriber.whisper_command(Path("w"), Path("m"), "en", word_timestamps=False)
    assert cmd[-2:] == ["--max-len", "40"]


def _fake_run(outputs, calls):
    def run(cmd, capture_output=True, text=True, cwd=None):
        calls.append((cmd, cwd))
        if Path(cmd[0]).name == "ffmpeg":
            Path(cmd[-1]).write_bytes(b"wav")
        else:
            for name in outputs:
                (Path(cwd) / name).write_text("data", encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
    return run


def test_transcribe_produces_srt_and_json(tmp_path, monkeypatch):
    bin_dir = _whisper_dir(tmp_path / "bin")
    project = tmp_path / "proj"
    project.mkdir()
    audio = project / "audio.mp3"
    audio.write_bytes(b"mp3")
    calls = []
    monkeypatch.setattr(subprocess, "run", _fake_run(["subtitles.srt", "subtitles.json"], calls))

    result = WhisperTranscriber(bin_dir).transcribe(audio, "en", word_timestamps=True)
    assert result.srt_path == project / "subtitles.srt"
    assert result.json_path == project / "subtitles.json"
    convert, whisper = calls
    assert "-ar" in convert[0] and "16000" in convert[0]
    assert whisper[1] == project
    assert not (project / "temp_clean.wav").exists()


def test_transcribe_moves_stray_output(tmp_path, monkeypatch):
    bin_dir = _whisper_dir(tmp_path / "bin")
    audio = tmp_path / "audio.mp3"
    audio.write_bytes(b"mp3")
    monkeypatch.setattr(subprocess, "run", _fake_run(["temp_clean.wav.srt"], []))

    result = WhisperTranscriber(bin_dir).transcribe(audio, "auto", word_timestamps=False)
    assert result.srt_path == tmp_path / "subtitles.srt"
    assert result.srt_path.exists()
    assert result.json_path is None


def test_transcribe_no_output_returns_none(tmp_path, monkeypatch):
    bin_dir = _whisper_dir(tmp_path / "bin")
    audio = tmp_path / "audio.mp3"
    audio.write_bytes(b"mp3")
    monkeypatch.setattr(subprocess, "run", _fake_run([], []))
    assert WhisperTranscriber(bin_dir).transcribe(audio) is None


def test_transcribe_whisper_failure(tmp_path, monkeypatch):
    bin_dir = _whisper_dir(tmp_path / "bin")
    audio = tmp_path / "audio.mp3"
    audio.write_bytes(b"mp3")

    def run(cmd, **kwargs):
        if Path(cmd[0]).name == "ffmpeg":
            Path(cmd[-1]).write_bytes(b"wav")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        return subprocess.CompletedProcess(cmd, 3, stdout="", stderr="model load failed")

    monkeypatch.setattr(subprocess, "run", run)
    with pytest.raises(ExternalProcessError) as excinfo:
        WhisperTranscriber(bin_dir).transcribe(audio)
    assert "model load failed" in str(excinfo.value)
    assert not (tmp_path / "temp_clean.wav").exists()
