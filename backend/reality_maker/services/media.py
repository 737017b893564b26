import json
import logging
import os
import re
from typing import Any, Dict, Optional

from reality_maker.config import Settings, get_settings
from reality_maker.errors import ResourceError
from reality_maker.services.ffmpeg_utils import FFmpegError, run_ffmpeg_capture, run_ffprobe_capture

logger = logging.getLogger(__name__)

_FRACTION_RE = re.compile(r"^(\d+)/(\d+)$")


def _require_file(path: str, label: str) -> None:
    if not path or not os.path.exists(path):
        raise ResourceError(f"{label} not found: {path}")


def parse_frame_rate(raw: Optional[str], default: float = 30.0) -> float:
    """Parse ffprobe's r_frame_rate ("30000/1001", "25") without eval."""
    if not raw:
        return default
    match = _FRACTION_RE.match(raw.strip())
    if match:
        num, den = int(match.group(1)), int(match.group(2))
        return num / den if den else default
    try:
        return float(raw)
    except ValueError:
        return default


def probe_video(video_path: str) -> Dict[str, Any]:
    """
    Read container and stream metadata with ffprobe.

    Returns:
        duration, size, bitrate, resolution ("WxH"), width, height, fps, codec,
        has_audio, audio_codec
    """
    _require_file(video_path, "Video")
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        video_path,
    ]
    result = run_ffprobe_capture(cmd, timeout=30)

    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        raise FFmpegError(message=f"Unreadable ffprobe output for {video_path}: {e}", cmd=cmd)

    streams = data.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if video_stream is None:
        raise ResourceError(f"No video stream found in {video_path}")

    fmt = data.get("format", {})
    width = int(video_stream.get("width", 0) or 0)
    height = int(video_stream.get("height", 0) or 0)
    return {
        "duration": float(fmt.get("duration", 0) or 0),
        "size": int(fmt.get("size", 0) or 0),
        "bitrate": int(fmt.get("bit_rate", 0) or 0),
        "resolution": f"{width}x{height}",
        "width": width,
        "height": height,
        "fps": parse_frame_rate(video_stream.get("r_frame_rate")),
        "codec": video_stream.get("codec_name", ""),
        "has_audio": audio_stream is not None,
        "audio_codec": (audio_stream or {}).get("codec_name"),
    }


def get_media_duration(path: str) -> float:
    """Duration of any media file in seconds, 0.0 when ffprobe reports none."""
    _require_file(path, "Media")
    result = run_ffprobe_capture(
        [
            "ffprobe",
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            path,
        ],
        timeout=30,
    )
    try:
        return float((result.stdout or "").strip() or 0)
    except ValueError:
        return 0.0


def extract_audio(video_path: str, output_path: str, settings: Optional[Settings] = None) -> str:
    """Extract mono 16 kHz PCM audio for transcription."""
    settings = settings or get_settings()
    _require_file(video_path, "Video")
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)

    run_ffmpeg_capture(
        [
            "ffmpeg",
            "-y",
            "-i", video_path,
            "-vn",
            "-acodec", "pcm_s16le",
            "-ar", "16000",
            "-ac", "1",
            "-loglevel", "error",
            output_path,
        ],
        timeout=600,
        threads=settings.ffmpeg.threads,
    )
    logger.debug("Extracted audio %s -> %s", video_path, output_path)
    return output_path
