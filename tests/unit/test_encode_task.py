"""
Unit tests for the encode task module.

Tests FFmpeg command construction, synthetic source selection and the
success check; subprocess.Popen is mocked.
"""

import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from capacity_finder.core.modules.processing.encode_task import (
    ERROR_LOG_NAME, PLAYLIST_NAME, SYNTHETIC_PATTERNS, EncodeSettings, FFmpegEncodeTask,
    build_encode_cmd, get_synthetic_source,
)
from capacity_finder.core.modules.processing.job_queue import Job


class TestEncodeCommand(unittest.TestCase):

    def setUp(self):
        self.settings = EncodeSettings()
        self.sink = Path("/tmp/out/job_1")

    def test_nvenc_settings(self):
        cmd = build_encode_cmd("testsrc2=size=1280x720:rate=30", 45, self.sink, self.settings)

        self.assertEqual(cmd[0], "ffmpeg")
        self.assertIn("h264_nvenc", cmd)
        self.assertEqual(cmd[cmd.index("-preset") + 1], "p4")
        self.assertEqual(cmd[cmd.index("-cq") + 1], "36")
        self.assertEqual(cmd[cmd.index("-b:v") + 1], "2M")
        self.assertEqual(cmd[cmd.index("-maxrate") + 1], "3M")
        self.assertEqual(cmd[cmd.index("-bufsize") + 1], "6M")
        self.assertEqual(cmd[cmd.index("-g") + 1], "60")
        self.assertEqual(cmd[cmd.index("-t") + 1], "45")
        self.assertIn("-an", cmd)

    def test_hls_output(self):
        cmd = build_encode_cmd("smptebars", 10.5, self.sink, self.settings, ffmpeg="/opt/ffmpeg")

        self.assertEqual(cmd[0], "/opt/ffmpeg")
        self.assertEqual(cmd[cmd.index("-f", cmd.index("-i")) + 1], "hls")
        self.assertEqual(cmd[cmd.index("-t") + 1], "10.5")
        self.assertEqual(cmd[-1], str(self.sink / PLAYLIST_NAME))
        self.assertEqual(cmd[cmd.index("-hls_segment_filename") + 1],
                         str(self.sink / "segment_%05d.ts"))

    def test_lavfi_input(self):
        cmd = build_encode_cmd("plasma", 5, self.sink, self.settings)
        self.assertEqual(cmd[cmd.index("-i") - 1], "lavfi")
        self.assertEqual(cmd[cmd.index("-i") + 1], "plasma")


class TestSyntheticSources(unittest.TestCase):

    def test_sources_cycle_with_job_index(self):
        settings = EncodeSettings(resolution="640x360", frame_rate=25)
        count = len(SYNTHETIC_PATTERNS)
        first = get_synthetic_source(0, settings)

        self.assertTrue(first.startswith("testsrc2=size=640x360:rate=25"))
        self.assertNotEqual(get_synthetic_source(1, settings), first)
        self.assertEqual(get_synthetic_source(count * 4, settings), first)

    def test_pattern_options_are_kept(self):
        source = get_synthetic_source(2, EncodeSettings())
        self.assertTrue(source.startswith("mandelbrot=size=1280x720:rate=30:maxiter=100"))

    def test_motion_effect_uses_resolution(self):
        source = get_synthetic_source(3, EncodeSettings(resolution="854x480"))
        self.assertIn("scale=854:480", source)

    def test_task_source_for(self):
        task = FFmpegEncodeTask(EncodeSettings())
        self.assertEqual(task.source_for(5), get_synthetic_source(5, task.settings))


class TestFFmpegEncodeTask(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.job = Job(id="j1", source="testsrc2", target_duration=2.0)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    @patch('subprocess.Popen')
    def test_launch_starts_ffmpeg_without_waiting(self, mock_popen):
        mock_popen.return_value = MagicMock(pid=1234)
        sink = self.test_dir / "job_j1"

        handle = FFmpegEncodeTask().launch(self.job, sink)

        self.assertIs(handle, mock_popen.return_value)
        cmd = mock_popen.call_args[0][0]
        self.assertEqual(cmd[cmd.index("-i") + 1], "testsrc2")
        self.assertEqual(mock_popen.call_args[1]["stdin"], subprocess.DEVNULL)
        self.assertTrue((sink / ERROR_LOG_NAME).exists())

    def test_success_requires_playlist(self):
        task = FFmpegEncodeTask()
        sink = self.test_dir / "job_j1"
        sink.mkdir()

        self.assertFalse(task.is_success(self.job, sink, 0))
        (sink / PLAYLIST_NAME).write_text("#EXTM3U\n", encoding="utf-8")
        self.assertTrue(task.is_success(self.job, sink, 0))
        self.assertFalse(task.is_success(self.job, sink, 1))

    def test_invalid_resolution(self):
        with self.assertRaises(ValueError):
            EncodeSettings(resolution="720p").dimensions


if __name__ == '__main__':
    unittest.main()
