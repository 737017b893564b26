import logging
from typing import List, Optional, Tuple

from reality_maker.config import Settings, get_settings
from reality_maker.models import DetectedScene
from reality_maker.services.ffmpeg_utils import FFmpegError, run_ffmpeg_capture, sanitize_ffmpeg_stderr
from reality_maker.services.media import get_media_duration

logger = logging.getLogger(__name__)


def importance_for_duration(duration: float) -> float:
    """
    Heuristic importance by scene length: very short and very long scenes
    matter less than mid-length ones.
    """
    if duration < 2:
        return 0.3
    if duration > 60:
        return 0.5
    if 5 < duration < 30:
        return 0.8
    return 0.6


class SceneDetector:
    """Interface: detect(video_path) -> list of DetectedScene, video-relative seconds."""

    def detect(self, video_path: str) -> List[DetectedScene]:
        raise NotImplementedError


class FFmpegSceneDetector(SceneDetector):
    """Detects shot changes with ffmpeg's scene score filter."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def detect(self, video_path: str) -> List[DetectedScene]:
        cfg = self.settings.scene_detection
        logger.info("Detecting scenes in %s (threshold %.2f)", video_path, cfg.threshold)

        duration = get_media_duration(video_path)
        if duration <= 0:
            raise FFmpegError(message=f"Could not determine duration of {video_path}")

        cut_times = self._detect_with_ffmpeg(video_path, cfg.threshold)
        scenes = [
            DetectedScene(
                start_time=round(start, 2),
                end_time=round(end, 2),
                importance_score=importance_for_duration(end - start),
            )
            for start, end in self._times_to_scenes(cut_times, duration)
        ]
        logger.info("Detected %d scenes in %.1fs of video", len(scenes), duration)
        return scenes

    def _detect_with_ffmpeg(self, video_path: str, threshold: float) -> List[float]:
        """Use FFmpeg to find scene change times."""
        cmd = [
            "ffmpeg",
            "-i", video_path,
            "-vf", f"select='gt(scene,{threshold})',showinfo",
            "-f", "null",
            "-",
        ]

        result = run_ffmpeg_capture(
            cmd,
            check=False,
            timeout=self.settings.scene_detection.timeout_seconds,
            threads=self.settings.ffmpeg.threads,
        )
        if result.returncode != 0:
            raise FFmpegError(
                message=f"FFmpeg scene detection failed:\n{sanitize_ffmpeg_stderr(result.stderr or '')}",
                stderr=result.stderr or "",
                returncode=result.returncode,
                cmd=list(cmd),
            )

        return parse_showinfo_times(result.stderr or "", self.settings.scene_detection.min_scene_duration)

    def _times_to_scenes(self, cut_times: List[float], total_duration: float) -> List[Tuple[float, float]]:
        """Convert scene change times to (start, end) tuples covering the whole video."""
        scenes = []
        for i, start in enumerate(cut_times):
            end = cut_times[i + 1] if i + 1 < len(cut_times) else total_duration
            if end > start:
                scenes.append((start, end))
        return scenes


def parse_showinfo_times(stderr: str, min_scene_duration: float) -> List[float]:
    """
    Pull pts_time values out of showinfo output. Always starts at 0; cuts closer
    than min_scene_duration to the previous one are dropped.
    """
    times = [0.0]
    for line in stderr.split("\n"):
        if "pts_time:" not in line:
            continue
        try:
            value = float(line.split("pts_time:")[1].split()[0])
        except (IndexError, ValueError):
            continue
        if value > times[-1] + min_scene_duration:
            times.append(value)
    return times
