import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch
import ffmpeg

from app.errors import MediaValidationError, TranscodeError
from app.services.segmenter import MediaSegmenter, plan_chunks


def _fake_run(fail_on_call: int | None = None):
    """Stand-in for ``run_stream`` that writes the output file ffmpeg would produce."""
    calls = {"n": 0}

    def run(stream, timeout=None):
        calls["n"] += 1
        if fail_on_call is not None and calls["n"] == fail_on_call:
            raise ffmpeg.Error("ffmpeg", b"", b"Invalid data found when processing input")
        output = Path(ffmpeg.get_args(stream)[-1])
        output.write_bytes(b"RIFF" + b"\0" * 64)
        return b"", b""

    return run


@pytest.fixture
def source_video(tmp_path: Path) -> Path:
    path = tmp_path / "source.mp4"
    path.write_bytes(b"video-bytes")
    return path


@pytest.mark.parametrize(
    "total, length",
    [(65, 30), (60, 30), (29.5, 30), (1, 10), (3601.25, 45), (900, 300)],
)
def test_plan_chunks_partitions_the_timeline(total, length):
    chunks = plan_chunks(total, length)

    assert chunks[0].start_time == 0
    assert chunks[-1].end_time == pytest.approx(total)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_time == previous.end_time
    assert [c.index for c in chunks] == list(range(len(chunks)))
    assert all(c.duration > 0 for c in chunks)


def test_plan_chunks_65_seconds():
    chunks = plan_chunks(65, 30)

    assert [(c.start_time, c.end_time) for c in chunks] == [(0, 30), (30, 60), (60, 65)]


def test_plan_chunks_clamps_length_and_handles_zero():
    assert len(plan_chunks(100, 5)) == 10
    assert len(plan_chunks(1000, 900)) == 4
    assert plan_chunks(0, 30) == []


@patch("app.services.segmenter.probe_duration", return_value=65.0)
def test_segment_success(mock_duration, source_video: Path, tmp_path: Path):
    sleep = MagicMock()
    segmenter = MediaSegmenter(chunk_duration=30, timeout=5, pause=0.1, sleep=sleep)
    out_dir = tmp_path / "chunks"

    with patch("app.services.segmenter.run_stream", side_effect=_fake_run()) as mock_run:
        result = segmenter.segment(source_video, out_dir)

    assert result.total_duration == 65.0
    assert result.audio_path.exists()
    assert [(c.start_time, c.end_time) for c in result.chunks] == [(0, 30), (30, 60), (60, 65)]
    assert all(c.path.exists() and c.size > 0 for c in result.chunks)
    assert mock_run.call_count == 4  # extraction + 3 cuts
    assert sleep.call_count == 2

    extract_args = ffmpeg.get_args(mock_run.call_args_list[0].args[0])
    assert "-vn" in extract_args
    assert extract_args[extract_args.index("-ar") + 1] == "16000"
    assert extract_args[extract_args.index("-ac") + 1] == "1"
    assert extract_args[extract_args.index("-acodec") + 1] == "pcm_s16le"

    assert segmenter.cleanup(result) == 4
    assert list(out_dir.iterdir()) == []


@patch("app.services.segmenter.probe_duration", return_value=65.0)
def test_segment_failure_removes_partial_output(mock_duration, source_video: Path, tmp_path: Path):
    segmenter = MediaSegmenter(chunk_duration=30, timeout=5, pause=0, sleep=MagicMock())
    out_dir = tmp_path / "chunks"

    with patch("app.services.segmenter.run_stream", side_effect=_fake_run(fail_on_call=3)):
        with pytest.raises(TranscodeError) as excinfo:
            segmenter.segment(source_video, out_dir)

    assert "Invalid data" in str(excinfo.value)
    assert excinfo.value.phase == "chunking"
    assert list(out_dir.iterdir()) == []


@patch("app.services.segmenter.probe_duration", return_value=0.0)
def test_segment_zero_duration_is_validation_error(mock_duration, source_video: Path, tmp_path: Path):
    segmenter = MediaSegmenter(pause=0)
    out_dir = tmp_path / "chunks"

    with patch("app.services.segmenter.run_stream", side_effect=_fake_run()):
        with pytest.raises(MediaValidationError):
            segmenter.segment(source_video, out_dir)

    assert list(out_dir.iterdir()) == []


def test_segment_rejects_missing_and_empty_sources(tmp_path: Path):
    segmenter = MediaSegmenter(pause=0)
    empty = tmp_path / "empty.mp4"
    empty.write_bytes(b"")

    with pytest.raises(MediaValidationError):
        segmenter.segment(tmp_path / "missing.mp4", tmp_path / "out")
    with pytest.raises(MediaValidationError):
        segmenter.segment(empty, tmp_path / "out")


def test_segment_rejects_oversize_source(source_video: Path, tmp_path: Path):
    segmenter = MediaSegmenter(pause=0, max_source_bytes=4)

    with pytest.raises(MediaValidationError):
        segmenter.segment(source_video, tmp_path / "out")


def test_run_stream_kills_process_on_timeout():
    import subprocess

    from app.utils.ffmpeg import run_stream

    process = MagicMock()
    process.communicate.side_effect = [subprocess.TimeoutExpired("ffmpeg", 5), (b"", b"")]
    stream = MagicMock()

    with patch("ffmpeg.run_async", return_value=process):
        with pytest.raises(TranscodeError):
            run_stream(stream, timeout=5)

    process.kill.assert_called_once()


def test_run_stream_raises_ffmpeg_error_on_nonzero_exit():
    from app.utils.ffmpeg import run_stream

    process = MagicMock()
    process.communicate.return_value = (b"", b"boom")
    process.returncode = 1

    with patch("ffmpeg.run_async", return_value=process):
        with pytest.raises(ffmpeg.Error) as excinfo:
            run_stream(MagicMock(), timeout=5)

    assert excinfo.value.stderr == b"boom"
