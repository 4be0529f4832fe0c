"""Tests for chunk planning and the ffmpeg-backed media cutter (no ffmpeg required)."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from src.analysis.errors import ConfigError, CutError
from src.analysis.windower import MediaCutter, plan_chunks

# ---------------------------------------------------------------------------
# plan_chunks
# ---------------------------------------------------------------------------


class TestPlanChunks:
    def test_example_with_remainder(self) -> None:
        assert plan_chunks(1000, 300) == [
            (0, 300),
            (300, 600),
            (600, 900),
            (900, 1000),
        ]

    def test_twelve_minutes_in_five_minute_chunks(self) -> None:
        windows = plan_chunks(720, 300)
        lengths = [end - start for start, end in windows]
        assert lengths == [300, 300, 120]

    def test_exact_multiple_has_no_trailing_chunk(self) -> None:
        windows = plan_chunks(900, 300)
        assert len(windows) == 3
        assert windows[-1] == (600, 900)

    def test_shorter_than_one_chunk(self) -> None:
        assert plan_chunks(42.5, 300) == [(0, 42.5)]

    @pytest.mark.parametrize(
        ("total", "length"),
        [(1000, 300), (720, 300), (3600.7, 300), (59.9, 7.3), (10, 0.1), (1e-7, 1)],
    )
    def test_contiguous_exact_cover(self, total: float, length: float) -> None:
        """Windows start at 0, end at total, never gap or overlap."""
        windows = plan_chunks(total, length)
        assert windows[0][0] == 0
        assert windows[-1][1] == pytest.approx(total)
        for (_, prev_end), (next_start, _) in zip(windows, windows[1:]):
            assert next_start == pytest.approx(prev_end)
        assert sum(end - start for start, end in windows) == pytest.approx(total)
        for start, end in windows[:-1]:
            assert end - start == pytest.approx(length)
        assert windows[-1][1] - windows[-1][0] > 0

    @pytest.mark.parametrize(
        ("total", "length"),
        [(0, 300), (-5, 300), (100, 0), (100, -1), (float("nan"), 300), (100, float("inf"))],
    )
    def test_invalid_inputs_raise_config_error(self, total: float, length: float) -> None:
        with pytest.raises(ConfigError):
            plan_chunks(total, length)


# ---------------------------------------------------------------------------
# MediaCutter
# ---------------------------------------------------------------------------


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    result = MagicMock(spec=subprocess.CompletedProcess)
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def cutter(tmp_path: Path):
    """An opened MediaCutter whose binaries are 'found' and whose subprocess is mocked."""
    with (
        patch("src.analysis.windower.shutil.which", return_value="/usr/bin/ffmpeg"),
        patch("src.analysis.windower.subprocess.run", return_value=_completed()) as mock_run,
    ):
        media_cutter = MediaCutter(work_dir=tmp_path).open()
        mock_run.reset_mock()
        yield media_cutter, mock_run
        media_cutter.close()


class TestMediaCutterLifecycle:
    def test_missing_binary_raises_config_error(self) -> None:
        with patch("src.analysis.windower.shutil.which", return_value=None):
            with pytest.raises(ConfigError, match="not found"):
                MediaCutter().open()

    def test_context_manager_removes_work_dir(self, tmp_path: Path) -> None:
        with (
            patch("src.analysis.windower.shutil.which", return_value="/usr/bin/ffmpeg"),
            patch("src.analysis.windower.subprocess.run", return_value=_completed()),
        ):
            with MediaCutter(work_dir=tmp_path) as media_cutter:
                work_dir = media_cutter._require_open()
                (work_dir / "chunk_000.mp4").write_bytes(b"data")
                assert work_dir.exists()
            assert not work_dir.exists()

    def test_cut_requires_open(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            MediaCutter().cut(tmp_path / "lesson.mp4", 0, 0.0, 10.0)


class TestProbeDuration:
    def test_parses_ffprobe_output(self, cutter, tmp_path: Path) -> None:
        media_cutter, mock_run = cutter
        mock_run.return_value = _completed(stdout="720.480000\n")

        assert media_cutter.probe_duration(tmp_path / "lesson.mp4") == pytest.approx(720.48)
        command = mock_run.call_args.args[0]
        assert command[0] == "ffprobe"
        assert "format=duration" in command

    def test_unparseable_output_raises_cut_error(self, cutter, tmp_path: Path) -> None:
        media_cutter, mock_run = cutter
        mock_run.return_value = _completed(stdout="N/A\n")

        with pytest.raises(CutError):
            media_cutter.probe_duration(tmp_path / "lesson.mp4")

    def test_nonzero_exit_raises_cut_error(self, cutter, tmp_path: Path) -> None:
        media_cutter, mock_run = cutter
        mock_run.return_value = _completed(returncode=1, stderr="Invalid data found")

        with pytest.raises(CutError, match="Invalid data found") as exc_info:
            media_cutter.probe_duration(tmp_path / "lesson.mp4")
        assert exc_info.value.returncode == 1

    def test_undecodable_stderr_still_raises_cut_error(self) -> None:
        """Tool output is decoded leniently; a stray byte cannot mask the failure."""
        command = [
            sys.executable,
            "-c",
            "import sys; sys.stderr.buffer.write(b'bad title \\xff\\xfe'); sys.exit(1)",
        ]

        with pytest.raises(CutError) as exc_info:
            MediaCutter()._run(command, "Could not read duration of lesson.mp4")

        assert exc_info.value.returncode == 1
        assert "bad title \ufffd" in exc_info.value.stderr


class TestCut:
    def test_stream_copy_command_and_chunk(self, cutter, tmp_path: Path) -> None:
        media_cutter, mock_run = cutter
        source = tmp_path / "lesson.mp4"

        def fake_ffmpeg(command: list[str], **_: object) -> MagicMock:
            Path(command[-1]).write_bytes(b"chunk")
            return _completed()

        mock_run.side_effect = fake_ffmpeg

        chunk = media_cutter.cut(source, 2, 600.0, 720.0)

        command = mock_run.call_args.args[0]
        assert command[0] == "ffmpeg"
        # Seek before the input, copy streams, no re-encode
        assert command.index("-ss") < command.index("-i")
        assert command[command.index("-ss") + 1] == "600.000"
        assert command[command.index("-t") + 1] == "120.000"
        assert command[command.index("-c") + 1] == "copy"

        assert chunk.index == 2
        assert chunk.start_offset_seconds == 600.0
        assert chunk.end_offset_seconds == 720.0
        assert chunk.duration_seconds == 120.0
        assert chunk.artifact.name == "chunk_002.mp4"
        assert chunk.artifact.read_bytes() == b"chunk"

    def test_failure_raises_cut_error(self, cutter, tmp_path: Path) -> None:
        media_cutter, mock_run = cutter
        mock_run.return_value = _completed(returncode=234, stderr="moov atom not found")

        with pytest.raises(CutError, match="chunk 1"):
            media_cutter.cut(tmp_path / "lesson.mp4", 0, 0.0, 300.0)

    def test_discard_deletes_artifact(self, cutter, tmp_path: Path) -> None:
        media_cutter, mock_run = cutter

        def fake_ffmpeg(command: list[str], **_: object) -> MagicMock:
            Path(command[-1]).write_bytes(b"chunk")
            return _completed()

        mock_run.side_effect = fake_ffmpeg
        chunk = media_cutter.cut(tmp_path / "lesson.mov", 0, 0.0, 10.0)
        assert chunk.artifact.suffix == ".mov"

        media_cutter.discard(chunk)
        assert not chunk.artifact.exists()
        media_cutter.discard(chunk)  # idempotent
