import errno
import json
import os
import subprocess
import tempfile
import unittest
from unittest import mock

from reality_maker.errors import (
    CollaboratorError,
    NarrativeGenerationError,
    PreconditionError,
    ResourceError,
    is_retryable,
)
from reality_maker.services.ffmpeg_utils import (
    FFmpegError,
    build_ffmpeg_command,
    run_ffmpeg_capture,
    sanitize_ffmpeg_stderr,
)
from reality_maker.services.media import parse_frame_rate, probe_video
from reality_maker.services.scene_detector import FFmpegSceneDetector, importance_for_duration, parse_showinfo_times

from fakes import make_settings, touch

SHOWINFO = """\
[Parsed_showinfo_1 @ 0x5581] n:   0 pts:  36036 pts_time:1.2012  pos: 12345 fmt:yuv420p
[Parsed_showinfo_1 @ 0x5581] n:   1 pts:  39039 pts_time:1.8018  pos: 13345 fmt:yuv420p
[Parsed_showinfo_1 @ 0x5581] n:   2 pts: 450450 pts_time:15.015  pos: 99345 fmt:yuv420p
frame=  300 fps=120 q=-0.0 size=N/A time=00:00:10.01 bitrate=N/A
[Parsed_showinfo_1 @ 0x5581] n:   3 pts: 900900 pts_time:garbage pos: 1 fmt:yuv420p
"""


class TestSceneDetection(unittest.TestCase):
    def test_importance_by_duration(self) -> None:
        self.assertEqual(importance_for_duration(1.5), 0.3)
        self.assertEqual(importance_for_duration(3), 0.6)
        self.assertEqual(importance_for_duration(12), 0.8)
        self.assertEqual(importance_for_duration(45), 0.6)
        self.assertEqual(importance_for_duration(90), 0.5)

    def test_parse_showinfo_times(self) -> None:
        self.assertEqual(parse_showinfo_times(SHOWINFO, 1.0), [0.0, 1.2012, 15.015])
        self.assertEqual(parse_showinfo_times("", 1.0), [0.0])

    def test_detect_covers_whole_video(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            detector = FFmpegSceneDetector(make_settings(tmp))
            with mock.patch("reality_maker.services.scene_detector.get_media_duration", return_value=100.0), \
                    mock.patch.object(FFmpegSceneDetector, "_detect_with_ffmpeg", return_value=[0.0, 1.5, 40.123]):
                scenes = detector.detect("/uploads/a.mp4")

        self.assertEqual(
            [(s.start_time, s.end_time, s.importance_score) for s in scenes],
            [(0.0, 1.5, 0.3), (1.5, 40.12, 0.6), (40.12, 100.0, 0.6)],
        )

    def test_detect_requires_duration(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            detector = FFmpegSceneDetector(make_settings(tmp))
            with mock.patch("reality_maker.services.scene_detector.get_media_duration", return_value=0.0):
                with self.assertRaises(FFmpegError):
                    detector.detect("/uploads/a.mp4")


class TestVideoMetadata(unittest.TestCase):
    def test_parse_frame_rate(self) -> None:
        self.assertAlmostEqual(parse_frame_rate("30000/1001"), 29.97, places=2)
        self.assertEqual(parse_frame_rate("25"), 25.0)
        self.assertEqual(parse_frame_rate("0/0"), 30.0)
        self.assertEqual(parse_frame_rate(None, default=24.0), 24.0)
        self.assertEqual(parse_frame_rate("__import__('os')"), 30.0)

    def read_metadata(self, payload):
        with tempfile.TemporaryDirectory() as tmp:
            path = touch(os.path.join(tmp, "a.mp4"))
            completed = subprocess.CompletedProcess([], 0, stdout=json.dumps(payload), stderr="")
            with mock.patch("reality_maker.services.media.run_ffprobe_capture", return_value=completed):
                return probe_video(path)

    def test_reads_video_metadata(self) -> None:
        meta = self.read_metadata({
            "streams": [
                {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080, "r_frame_rate": "30/1"},
                {"codec_type": "audio", "codec_name": "aac"},
            ],
            "format": {"duration": "612.5", "size": "1048576", "bit_rate": "5000000"},
        })
        self.assertEqual(meta["duration"], 612.5)
        self.assertEqual(meta["resolution"], "1920x1080")
        self.assertEqual(meta["fps"], 30.0)
        self.assertTrue(meta["has_audio"])
        self.assertEqual(meta["audio_codec"], "aac")

    def test_metadata_without_video_stream(self) -> None:
        with self.assertRaises(ResourceError):
            self.read_metadata({"streams": [{"codec_type": "audio"}], "format": {}})

    def test_metadata_for_missing_file(self) -> None:
        with self.assertRaises(ResourceError):
            probe_video("/definitely/not/here.mp4")


class TestFFmpegUtils(unittest.TestCase):
    def test_build_command(self) -> None:
        self.assertEqual(build_ffmpeg_command(["-i", "a.mp4", "out.wav"]), ["ffmpeg", "-nostdin", "-i", "a.mp4", "out.wav"])
        self.assertEqual(
            build_ffmpeg_command(["ffmpeg", "-y", "-i", "a.mp4"], threads=2),
            ["ffmpeg", "-nostdin", "-threads", "2", "-y", "-i", "a.mp4"],
        )
        with self.assertRaises(ValueError):
            build_ffmpeg_command([])

    def test_sanitize_drops_banner(self) -> None:
        stderr = "ffmpeg version 6.0\nbuilt with gcc\nconfiguration: --enable-x\na.mp4: No such file or directory\n"
        self.assertEqual(sanitize_ffmpeg_stderr(stderr), "a.mp4: No such file or directory")
        self.assertEqual(sanitize_ffmpeg_stderr(""), "FFmpeg failed (no stderr)")

    def test_killed_process(self) -> None:
        killed = subprocess.CompletedProcess([], 137, stdout="", stderr="")
        with mock.patch("reality_maker.services.ffmpeg_utils.subprocess.run", return_value=killed):
            with self.assertRaises(FFmpegError) as ctx:
                run_ffmpeg_capture(["-i", "a.mp4", "out.mp4"])
        self.assertIn("out of memory", str(ctx.exception))
        self.assertEqual(ctx.exception.returncode, 137)
        self.assertTrue(ctx.exception.retryable)

    def test_unchecked_failure_returns_process(self) -> None:
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr="boom")
        with mock.patch("reality_maker.services.ffmpeg_utils.subprocess.run", return_value=failed):
            self.assertEqual(run_ffmpeg_capture(["-i", "a.mp4"], check=False).returncode, 1)

    def test_missing_binary_is_permanent(self) -> None:
        with mock.patch("reality_maker.services.ffmpeg_utils.subprocess.run", side_effect=FileNotFoundError("ffmpeg")):
            with self.assertRaises(FFmpegError) as ctx:
                run_ffmpeg_capture(["-i", "a.mp4", "out.mp4"])
        self.assertIn("binary not found", str(ctx.exception))
        self.assertFalse(is_retryable(ctx.exception))

    def test_missing_input_is_permanent(self) -> None:
        stderr = "ffmpeg version 6.0\n/uploads/gone.mp4: No such file or directory\n"
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr=stderr)
        with mock.patch("reality_maker.services.ffmpeg_utils.subprocess.run", return_value=failed):
            with self.assertRaises(FFmpegError) as ctx:
                run_ffmpeg_capture(["-i", "/uploads/gone.mp4", "out.mp4"])
        self.assertFalse(ctx.exception.retryable)

    def test_encoder_failure_is_retryable(self) -> None:
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr="Conversion failed!")
        with mock.patch("reality_maker.services.ffmpeg_utils.subprocess.run", return_value=failed):
            with self.assertRaises(FFmpegError) as ctx:
                run_ffmpeg_capture(["-i", "a.mp4", "out.mp4"])
        self.assertTrue(is_retryable(ctx.exception))


class TestRetryClassification(unittest.TestCase):
    def test_classification(self) -> None:
        self.assertTrue(is_retryable(CollaboratorError("timeout")))
        self.assertTrue(is_retryable(RuntimeError("unexpected")))
        self.assertFalse(is_retryable(PreconditionError("no videos")))
        self.assertFalse(is_retryable(NarrativeGenerationError(3)))
        self.assertFalse(is_retryable(ResourceError("missing")))
        self.assertFalse(is_retryable(FileNotFoundError("gone.mp4")))
        self.assertFalse(is_retryable(OSError(errno.ENOSPC, "No space left on device")))
        self.assertTrue(is_retryable(OSError(errno.ECONNRESET, "Connection reset")))


if __name__ == "__main__":
    unittest.main()
