import json

import pytest

from storyreel.errors import MalformedResponse
from storyreel.models import SubtitleLine, SubtitleStyle, TranscriptSegment
from storyreel.subtitles import (
    add_fade_to_srt,
    ass_color_tag,
    build_ass,
    convert_srt_file,
    convert_transcript_file,
    format_ass_time,
    group_lines,
    hex_to_ass_color,
    load_transcript,
    parse_srt,
    parse_timestamp,
    render_event_text,
    srt_force_style,
)


def _w(text, start, end, word_start=True):
    return TranscriptSegment(text=text, start=start, end=end, word_start=word_start)


# ------------------------------------------------------------------
# Time and colour helpers
# ------------------------------------------------------------------

@pytest.mark.parametrize("value, expected", [
    ("00:01:02,500", 62.5),
    ("00:00:01.25", 1.25),
    ("1:00:00,000", 3600.0),
    (3.5, 3.5),
    ("4.75", 4.75),
    (None, 0.0),
])
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == pytest.approx(expected)


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        parse_timestamp("soon")


def test_format_ass_time():
    assert format_ass_time(0) == "0:00:00.00"
    assert format_ass_time(62.5) == "0:01:02.50"
    assert format_ass_time(3723.456) == "1:02:03.46"


def test_colour_conversion():
    assert hex_to_ass_color("#FFFF00") == "&H0000FFFF"
    assert hex_to_ass_color("#112233") == "&H00332211"
    assert ass_color_tag("#112233") == "&H332211&"


# ------------------------------------------------------------------
# Transcript loading
# ------------------------------------------------------------------

def test_load_transcript_prefers_words():
    data = {"segments": [{
        "start": 0.0, "end": 2.0, "text": " Hello world",
        "words": [
            {"word": " Hello", "start": 0.0, "end": 0.5},
            {"word": " world", "start": 0.6, "end": 1.0},
        ],
    }]}
    words = load_transcript(data)
    assert [w.text for w in words] == [" Hello", " world"]
    assert all(w.word_start for w in words)


def test_load_transcript_whisper_cpp_shape():
    data = {"transcription": [
        {"text": " Hel", "timestamps": {"from": "00:00:00,000", "to": "00:00:00,300"}},
        {"text": "lo", "timestamps": {"from": "00:00:00,300", "to": "00:00:00,500"}},
        {"text": " there", "timestamps": {"from": "00:00:00,600", "to": "00:00:01,000"}},
        {"text": " ", "timestamps": {"from": "00:00:01,000", "to": "00:00:01,100"}},
    ]}
    words = load_transcript(data)
    assert [w.text for w in words] == [" Hel", "lo", " there"]
    assert [w.word_start for w in words] == [True, False, True]
    assert words[1].start == pytest.approx(0.3)


def test_segments_without_words_are_atomic():
    data = {"segments": [
        {"text": "Hello there friend", "start": 0.0, "end": 1.0},
        {"text": "Second sentence here", "start": 1.0, "end": 2.0},
        {"text": "And a third one now", "start": 2.0, "end": 3.0},
    ]}
    words = load_transcript(data)
    assert all(w.word_start for w in words)
    lines = group_lines(words, 20)
    assert [line.text for line in lines] == [
        "Hello there friend", "Second sentence here", "And a third one now",
    ]
    assert len(group_lines(words, 100)) == 1
    assert group_lines(words, 100)[0].text == "Hello there friend Second sentence here And a third one now"


def test_segment_without_words_falls_back_to_itself():
    data = {"segments": [
        {"start": 0.0, "end": 1.0, "text": " Hi you",
         "words": [{"word": " Hi", "start": 0.0, "end": 0.4}, {"word": " you", "start": 0.5, "end": 1.0}]},
        {"start": 1.5, "end": 3.0, "text": "Goodbye now"},
    ]}
    words = load_transcript(data)
    assert [w.text for w in words] == [" Hi", " you", " Goodbye now"]
    assert words[-1].start == pytest.approx(1.5)
    assert words[-1].end == pytest.approx(3.0)


def test_load_transcript_clamps_times():
    words = load_transcript([{"text": " hi", "start": -1, "end": -2}])
    assert words[0].start == 0.0
    assert words[0].end == 0.0


def test_load_transcript_bad_shape():
    with pytest.raises(MalformedResponse):
        load_transcript({"foo": []})


def test_parse_srt_strips_tags():
    srt = (
        "1\n00:00:00,000 --> 00:00:01,500\n{\\fad(400,0)}Hello there\n\n"
        "2\n00:00:02,000 --> 00:00:03,000\nSecond\nline\n"
    )
    segs = parse_srt(srt)
    assert [s.text for s in segs] == [" Hello there", " Second line"]
    assert segs[1].start == pytest.approx(2.0)


# ------------------------------------------------------------------
# Grouping
# ------------------------------------------------------------------

def test_group_lines_respects_budget():
    words = [_w(" one", 0, 1), _w(" two", 1, 2), _w(" three", 2, 3), _w(" four", 3, 4)]
    lines = group_lines(words, max_chars=11)
    assert [line.text for line in lines] == ["one two", "three four"]
    for line in lines:
        assert line.char_count <= 11


def test_group_lines_never_splits_inside_a_word():
    words = [_w(" Hel", 0, 1), _w("lo", 1, 2, word_start=False), _w(" x", 2, 3)]
    lines = group_lines(words, max_chars=4)
    assert [line.text for line in lines] == ["Hello", "x"]


def test_group_lines_overlong_token_alone():
    words = [_w(" supercalifragilistic", 0, 1), _w(" ok", 1, 2)]
    lines = group_lines(words, max_chars=5)
    assert len(lines) == 2
    assert lines[0].text == "supercalifragilistic"


def test_line_end_pad():
    line = SubtitleLine(words=[_w(" a", 1.0, 1.5), _w(" b", 1.6, 2.0)])
    assert line.start == 1.0
    assert line.end == pytest.approx(2.1)


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------

def test_render_static():
    line = SubtitleLine(words=[_w(" hello", 0, 1), _w(" you", 1, 2)])
    text = render_event_text(line, SubtitleStyle(mode="static"))
    assert text == "{\\fad(150,150)}hello you"


def test_render_smooth_offsets():
    line = SubtitleLine(words=[_w(" hi", 1.0, 1.4), _w(" there", 1.5, 2.0)])
    text = render_event_text(line, SubtitleStyle(mode="smooth", active_color="#FFFF00"))
    assert "{\\t(0,200,\\1c&H00FFFF&)}hi" in text
    assert "{\\t(500,700,\\1c&H00FFFF&)} there" in text


def test_render_karaoke_gaps():
    line = SubtitleLine(words=[_w(" a", 0.0, 0.5), _w(" b", 1.0, 1.2)])
    text = render_event_text(line, SubtitleStyle(mode="karaoke"))
    assert text == "{\\fad(150,150)}{\\kf50}a{\\k50}{\\kf20} b"


def test_build_ass_header_and_events():
    style = SubtitleStyle(mode="static")
    line = SubtitleLine(words=[_w(" hello", 0, 1)])
    ass = build_ass([line], style)
    assert "[Script Info]" in ass
    assert "[V4+ Styles]" in ass
    assert "PlayResX: 1920" in ass
    assert "Dialogue: 0,0:00:00.00,0:00:01.10,Karaoke,,0,0,0,," in ass


def test_karaoke_style_swaps_colours():
    ass = build_ass([], SubtitleStyle(mode="karaoke", active_color="#FF0000", inactive_color="#00FF00"))
    style_line = next(ln for ln in ass.splitlines() if ln.startswith("Style:"))
    assert style_line.split(",")[3:5] == ["&H000000FF", "&H0000FF00"]


# ------------------------------------------------------------------
# Files
# ------------------------------------------------------------------

def test_convert_transcript_file(tmp_path):
    json_path = tmp_path / "subtitles.json"
    json_path.write_text(json.dumps({"transcription": [
        {"text": " Hello", "timestamps": {"from": "00:00:00,000", "to": "00:00:00,400"}},
        {"text": " world", "timestamps": {"from": "00:00:00,500", "to": "00:00:01,000"}},
    ]}), encoding="utf-8")
    ass_path = tmp_path / "subtitles.ass"
    count = convert_transcript_file(json_path, ass_path, SubtitleStyle(max_chars=30))
    assert count == 1
    assert ass_path.read_text(encoding="utf-8").count("Dialogue:") == 1


def test_convert_transcript_file_empty_track(tmp_path):
    json_path = tmp_path / "subtitles.json"
    json_path.write_text(json.dumps({"transcription": []}), encoding="utf-8")
    ass_path = tmp_path / "subtitles.ass"
    assert convert_transcript_file(json_path, ass_path, SubtitleStyle()) == 0
    content = ass_path.read_text(encoding="utf-8")
    assert "[Events]" in content
    assert "Dialogue:" not in content


def test_convert_transcript_file_bad_json(tmp_path):
    json_path = tmp_path / "subtitles.json"
    json_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(MalformedResponse):
        convert_transcript_file(json_path, tmp_path / "out.ass", SubtitleStyle())


def test_convert_srt_file(tmp_path):
    srt = tmp_path / "subtitles.srt"
    srt.write_text("1\n00:00:00,000 --> 00:00:01,000\nHello\n", encoding="utf-8")
    assert convert_srt_file(srt, tmp_path / "subtitles.ass", SubtitleStyle(mode="static")) == 1


def test_add_fade_to_srt_is_idempotent(tmp_path):
    srt = tmp_path / "subtitles.srt"
    srt.write_text("1\n00:00:00,000 --> 00:00:01,000\nHello\n\n2\n00:00:01,000 --> 00:00:02,000\nBye\n",
                   encoding="utf-8")
    assert add_fade_to_srt(srt)
    once = srt.read_text(encoding="utf-8")
    add_fade_to_srt(srt)
    assert srt.read_text(encoding="utf-8") == once
    assert once.count("{\\fad(400,0)}") == 2
    assert "{\\fad(400,0)}Hello" in once


def test_add_fade_to_missing_srt(tmp_path):
    assert add_fade_to_srt(tmp_path / "nope.srt") is False


def test_srt_force_style_scales_to_libass_canvas():
    style = SubtitleStyle(font_size=60, margin_bottom=150, play_res_y=1080)
    forced = srt_force_style(style)
    assert "Fontsize=16" in forced
    assert "MarginV=40" in forced
    assert "Fontname=Arial" in forced
