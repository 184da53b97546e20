import os
from fractions import Fraction
import pytest
from unittest.mock import patch

import ffmpeg

from errors import FrameCountMismatchError, FrameExtractionError, ProbeError
from utils.encoder import framerate_arg
from utils.media import (
    ExtractionReport,
    MediaInfo,
    extract_frames,
    ffmpeg_error_tail,
    frame_timestamps,
    map_in_batches,
    parse_frame_rate,
    probe_media,
)


def fake_extract(fail_at=()):
    """extract_frame stand-in that writes a small file, failing for chosen timestamps"""
    calls = []

    def _extract(source_path, dest_path, timestamp, size):
        calls.append(timestamp)
        if any(abs(timestamp - t) < 1e-9 for t in fail_at):
            raise ffmpeg.Error("ffmpeg", b"", b"Invalid data found when processing input")
        with open(dest_path, "wb") as f:
            f.write(b"frame")
    _extract.calls = calls
    return _extract


def test_parse_frame_rate():
    assert parse_frame_rate("30000/1001") == pytest.approx(29.97, abs=0.01)
    assert parse_frame_rate("25/1") == 25.0
    assert parse_frame_rate("0/0") == 0.0
    assert parse_frame_rate(None) == 0.0

def test_frame_timestamps():
    assert frame_timestamps(3, 2.0) == [0.0, 0.5, 1.0]
    assert frame_timestamps(3, 0) == []

def test_expected_frames_falls_back_to_duration():
    assert MediaInfo(10, 10, 2.0, 30.0, 0).expected_frames == 60
    assert MediaInfo(10, 10, 2.0, 30.0, 59).expected_frames == 59

def test_map_in_batches_keeps_order_and_reports():
    progress = []
    results = map_in_batches(lambda x: x * 2, [1, 2, 3, 4, 5], 2, lambda done, total: progress.append((done, total)))
    assert results == [2, 4, 6, 8, 10]
    assert progress == [(2, 5), (4, 5), (5, 5)]

def test_ffmpeg_error_tail():
    error = ffmpeg.Error("ffmpeg", b"", b"line one\nline two\n\nmoov atom not found\n")
    assert ffmpeg_error_tail(error, 2) == "line two | moov atom not found"


class TestProbe:

    @patch("utils.media.ffmpeg.probe")
    def test_probe_reads_first_video_stream(self, mock_probe):
        mock_probe.return_value = {
            "streams": [{
                "width": 1920,
                "height": 1080,
                "r_frame_rate": "30000/1001",
                "duration": "15.580000",
                "nb_read_frames": "467",
            }],
            "format": {"duration": "15.6"},
        }
        info = probe_media("clip.mov")
        assert (info.width, info.height, info.frame_count) == (1920, 1080, 467)
        assert info.duration == pytest.approx(15.58)
        mock_probe.assert_called_once_with("clip.mov", select_streams="v:0", count_frames=None)

    @patch("utils.media.ffmpeg.probe")
    def test_probe_without_video_stream(self, mock_probe):
        mock_probe.return_value = {"streams": [], "format": {}}
        with pytest.raises(ProbeError):
            probe_media("audio.m4a")

    @patch("utils.media.ffmpeg.probe")
    def test_probe_failure_is_readable(self, mock_probe):
        mock_probe.side_effect = ffmpeg.Error("ffprobe", b"", b"clip.mov: Invalid data found when processing input")
        with pytest.raises(ProbeError) as exc:
            probe_media("clip.mov")
        assert "Invalid data" in str(exc.value)


class TestExtractFrames:

    def test_one_file_per_frame(self, tmp_path):
        info = MediaInfo(1080, 1080, 1.0, 4.0, 4)
        fake = fake_extract()
        with patch("utils.media.extract_frame", side_effect=fake):
            report = extract_frames("clip.mov", str(tmp_path), info, 3240, batch_size=3)

        assert sorted(fake.calls) == [0.0, 0.25, 0.5, 0.75]
        assert report.extracted == 4
        assert not report.mismatch
        assert report.advisory() is None
        assert sorted(os.listdir(tmp_path)) == [f"frame_00000{i}.png" for i in range(1, 5)]

    def test_mismatch_is_reported_not_raised(self, tmp_path):
        info = MediaInfo(1080, 1080, 1.0, 4.0, 4)
        with patch("utils.media.extract_frame", side_effect=fake_extract(fail_at=[0.5])):
            report = extract_frames("clip.mov", str(tmp_path), info, 3240)

        assert report.expected == 4
        assert report.extracted == 3
        assert report.advisory() == "Frame count mismatch: extracted 3 of 4 frames"
        # Survivors are renumbered into a gap-free sequence for the encoder
        assert [os.path.basename(p) for p in report.frame_paths] == [
            "frame_000001.png", "frame_000002.png", "frame_000003.png"
        ]

    def test_strict_mode_raises_on_mismatch(self, tmp_path):
        info = MediaInfo(1080, 1080, 1.0, 4.0, 4)
        with patch("utils.media.extract_frame", side_effect=fake_extract(fail_at=[0.0])):
            with pytest.raises(FrameCountMismatchError):
                extract_frames("clip.mov", str(tmp_path), info, 3240, strict=True)

    def test_zero_frames_is_fatal(self, tmp_path):
        info = MediaInfo(1080, 1080, 0.5, 4.0, 2)
        with patch("utils.media.extract_frame", side_effect=fake_extract(fail_at=[0.0, 0.25])):
            with pytest.raises(FrameExtractionError):
                extract_frames("clip.mov", str(tmp_path), info, 3240)


def test_item_seven_scenario(tmp_path):
    """467 frames decoded from a 15.58s clip play back at ~29.97 fps"""
    info = MediaInfo(1080, 1080, 15.58, 30000 / 1001, 467)
    with patch("utils.media.extract_frame", side_effect=fake_extract()):
        report = extract_frames("clip.mov", str(tmp_path), info, 3240, batch_size=10)

    assert isinstance(report, ExtractionReport)
    assert report.extracted == 467
    assert round(float(Fraction(framerate_arg(report.extracted, info.duration, info.nominal_fps))), 2) == 29.97
    assert framerate_arg(report.extracted, info.duration, info.nominal_fps) == "23350/779"

@pytest.mark.parametrize("nominal_fps", [24.0, 30000 / 1001, 60.0])
def test_encoded_duration_independent_of_nominal_fps(nominal_fps):
    fps = float(Fraction(framerate_arg(467, 15.58, nominal_fps)))
    assert 467 / fps == pytest.approx(15.58)
