"""Tests for ffprobe parsing and segment filter helpers."""
import pytest

from shortsmith.utils.ffmpeg import FFmpegError, build_segment_filter, parse_probe_output


def _probe(streams, fmt=None):
    return {"streams": streams, "format": fmt or {}}


def test_parse_probe_output_with_audio():
    info = parse_probe_output(_probe(
        [
            {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080, "r_frame_rate": "30000/1001"},
            {"codec_type": "audio", "codec_name": "aac"},
        ],
        {"duration": "600.5", "format_name": "mov,mp4,m4a", "bit_rate": "4000000", "size": "300000000"},
    ))

    assert info.duration == 600.5
    assert (info.width, info.height) == (1920, 1080)
    assert info.fps == pytest.approx(29.97, abs=0.01)
    assert info.has_audio
    assert info.bit_rate == 4000000
    assert info.to_dict()["resolution"] == "1920x1080"
    assert info.to_dict()["size_mb"] == pytest.approx(286.1, abs=0.1)


def test_parse_probe_output_without_audio_falls_back_to_stream_duration():
    info = parse_probe_output(_probe(
        [{"codec_type": "video", "codec_name": "vp9", "width": 1280, "height": 720, "duration": "95.0"}],
    ))

    assert info.duration == 95.0
    assert not info.has_audio
    assert info.to_dict()["audio_codec"] == "none"
    assert info.bit_rate is None


def test_parse_probe_output_requires_video_stream():
    with pytest.raises(FFmpegError):
        parse_probe_output(_probe([{"codec_type": "audio", "codec_name": "aac"}]))


def test_segment_filter_scales_and_pads():
    graph = build_segment_filter(1280, 720)
    assert "scale=1280:720:force_original_aspect_ratio=decrease" in graph
    assert "pad=1280:720" in graph
    assert "drawtext" not in graph


def test_segment_filter_escapes_watermark():
    graph = build_segment_filter(1280, 720, watermark="@Short:Smith's 100%")
    assert "drawtext=text='@Short\\:Smith\\'s 100\\%'" in graph
