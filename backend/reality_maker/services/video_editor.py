from __future__ import annotations

import logging
import os
import tempfile
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from reality_maker.config import Settings, get_settings
from reality_maker.errors import PreconditionError
from reality_maker.models import EditClip, EditPlan, NarrationClip, Scene, Video
from reality_maker.services.ffmpeg_utils import FFmpegError, run_ffmpeg_capture
from reality_maker.services.media import get_media_duration

logger = logging.getLogger(__name__)

ACT_ORDER = ("act_1", "act_2", "act_3")


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def build_edit_plan(
    project_id: str,
    structure: Mapping[str, Any],
    scenes: Sequence[Scene],
    videos: Sequence[Video],
) -> EditPlan:
    """
    Turn a validated narrative into an ordered cut list.

    Acts play in order and scenes in the order each act lists them. A scene id
    that is unknown or already used is skipped. cuts_and_trims apply per scene:
    "remove" drops it; "trim" and "split" keep [keep_from, keep_to] (video seconds,
    clamped to the scene). A trim that leaves nothing keeps the whole scene.
    """
    scenes_by_id = {s.id: s for s in scenes}
    videos_by_id = {v.id: v for v in videos}
    cuts = {c.get("scene_id"): c for c in structure.get("cuts_and_trims") or [] if isinstance(c, dict)}
    acts = structure.get("narrative_structure") or {}

    clips: List[EditClip] = []
    used = set()
    for act_name in ACT_ORDER:
        act = acts.get(act_name) or {}
        for scene_id in act.get("scenes") or []:
            scene = scenes_by_id.get(scene_id)
            if scene is None or scene_id in used:
                continue
            video = videos_by_id.get(scene.video_id)
            if video is None:
                continue
            used.add(scene_id)

            start, end = scene.start_time, scene.end_time
            cut = cuts.get(scene_id)
            if cut is not None:
                action = str(cut.get("action", "")).lower()
                if action == "remove":
                    continue
                if action in ("trim", "split"):
                    keep_from = _as_float(cut.get("keep_from"))
                    keep_to = _as_float(cut.get("keep_to"))
                    t_start = max(start, keep_from) if keep_from is not None else start
                    t_end = min(end, keep_to) if keep_to is not None else end
                    if t_end > t_start:
                        start, end = t_start, t_end
                    else:
                        logger.warning("Ignoring empty trim for scene %s", scene_id)

            clips.append(
                EditClip(
                    scene_id=scene_id,
                    video_id=video.id,
                    source_path=video.path,
                    start=start,
                    end=end,
                    act=act_name,
                    has_audio=video.has_audio,
                )
            )

    return EditPlan(
        project_id=project_id,
        clips=clips,
        total_duration=round(sum(c.duration for c in clips), 3),
    )


def plan_short(
    suggestion: Mapping[str, Any],
    scenes_by_id: Mapping[str, Scene],
    videos_by_id: Mapping[str, Video],
    max_duration: float = 60.0,
) -> Optional[EditClip]:
    """
    Resolve a shorts suggestion to a source range.

    The source is the first known scene the suggestion lists. start/end
    timestamps are video seconds; when missing or empty the whole scene is used.
    Shorts are capped at max_duration.
    """
    scene = next((scenes_by_id[sid] for sid in suggestion.get("scenes") or [] if sid in scenes_by_id), None)
    if scene is None:
        return None
    video = videos_by_id.get(scene.video_id)
    if video is None:
        return None

    start = _as_float(suggestion.get("start_timestamp"))
    end = _as_float(suggestion.get("end_timestamp"))
    if start is None or end is None or end <= start:
        start, end = scene.start_time, scene.end_time
    start = max(0.0, start)
    if video.duration > 0:
        end = min(end, video.duration)
    end = min(end, start + max_duration)
    if end <= start:
        return None

    return EditClip(
        scene_id=scene.id,
        video_id=video.id,
        source_path=video.path,
        start=start,
        end=end,
        act="short",
        has_audio=video.has_audio,
    )


class VideoEditorService:
    """
    FFmpeg-based renderer for edit plans, episodes and shorts.

    Every step writes a real file and checks it, so a broken intermediate fails
    the step instead of surfacing later as a confusing concat error.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _ffmpeg(self, args: List[str], timeout: float) -> None:
        run_ffmpeg_capture(args, check=True, timeout=timeout, threads=self.settings.ffmpeg.threads)

    def _require_file(self, path: str, *, label: str) -> None:
        if not os.path.exists(path):
            raise FFmpegError(message=f"FFmpeg produced no {label} file: {path}")
        if os.path.getsize(path) <= 0:
            raise FFmpegError(message=f"FFmpeg produced empty {label} file: {path}")

    def _write_concat_file(self, paths: Iterable[str]) -> str:
        fd, list_path = tempfile.mkstemp(prefix="concat_", suffix=".txt")
        os.close(fd)
        with open(list_path, "w", encoding="utf-8") as f:
            for p in paths:
                # concat demuxer expects `file '...path...'`
                escaped = os.path.abspath(p).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")
        return list_path

    def _scale_filter(self, resolution: str) -> str:
        w, h = resolution.lower().split("x")
        return (
            f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={self.settings.ffmpeg.fps}"
        )

    def _crop_filter(self, resolution: str) -> str:
        w, h = resolution.lower().split("x")
        return (
            f"scale={w}:{h}:force_original_aspect_ratio=increase,"
            f"crop={w}:{h},setsar=1,fps={self.settings.ffmpeg.fps}"
        )

    def extract_clip(self, clip: EditClip, output_path: str, *, vertical: bool = False) -> str:
        """Cut [start, end] from the source, normalized to the output resolution."""
        cfg = self.settings.ffmpeg
        if clip.duration <= 0:
            raise ValueError(f"Invalid clip range for scene {clip.scene_id}")
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)

        vf = self._crop_filter(cfg.short_resolution) if vertical else self._scale_filter(cfg.resolution)
        # Sources without audio get a silent track so every part concats cleanly.
        audio_map = "0:a:0" if clip.has_audio else "1:a"
        self._ffmpeg(
            [
                "ffmpeg",
                "-y",
                "-v", "error",
                "-ss", f"{clip.start:.3f}",
                "-t", f"{clip.duration:.3f}",
                "-i", clip.source_path,
                "-f", "lavfi", "-t", f"{clip.duration:.3f}", "-i", "anullsrc=r=44100:cl=stereo",
                "-filter_complex", f"[0:v]{vf}[v]",
                "-map", "[v]",
                "-map", audio_map,
                "-shortest",
                "-c:v", cfg.video_codec,
                "-b:v", cfg.video_bitrate,
                "-pix_fmt", "yuv420p",
                "-c:a", cfg.audio_codec,
                "-b:a", cfg.audio_bitrate,
                "-ar", "44100",
                "-ac", "2",
                output_path,
            ],
            timeout=1200,
        )
        self._require_file(output_path, label="clip")
        return output_path

    def _concat(self, paths: Sequence[str], output_path: str) -> None:
        list_path = self._write_concat_file(paths)
        try:
            self._ffmpeg(
                [
                    "ffmpeg",
                    "-y",
                    "-v", "error",
                    "-f", "concat",
                    "-safe", "0",
                    "-i", list_path,
                    "-c", "copy",
                    "-movflags", "+faststart",
                    output_path,
                ],
                timeout=1800,
            )
        finally:
            os.remove(list_path)
        self._require_file(output_path, label="concatenated")

    def render_rough_cut(self, plan: EditPlan, output_path: str) -> float:
        """Render the plan's clips back to back. Returns the rendered duration."""
        if not plan.clips:
            raise PreconditionError(f"Edit plan for project {plan.project_id} has no clips")

        work_dir = tempfile.mkdtemp(prefix="roughcut_", dir=self._temp_root())
        parts: List[str] = []
        try:
            for i, clip in enumerate(plan.clips):
                part = os.path.join(work_dir, f"clip_{i:04d}.mp4")
                self.extract_clip(clip, part)
                parts.append(part)
                logger.debug("Rendered clip %d/%d (%s)", i + 1, len(plan.clips), clip.scene_id)

            os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
            self._concat(parts, output_path)
        finally:
            for part in parts:
                if os.path.exists(part):
                    os.remove(part)
            os.rmdir(work_dir)

        duration = get_media_duration(output_path)
        logger.info("Rough cut rendered: %s (%.1fs, %d clips)", output_path, duration, len(plan.clips))
        return duration

    def render_episode(self, rough_cut_path: str, narrations: Sequence[NarrationClip], output_path: str) -> str:
        """
        Mix narration over the rough cut. Each narration starts at its timing
        offset; the source audio is ducked to ffmpeg.source_volume.
        """
        cfg = self.settings.ffmpeg
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)

        if not narrations:
            self._ffmpeg(
                ["ffmpeg", "-y", "-v", "error", "-i", rough_cut_path, "-c", "copy", "-movflags", "+faststart", output_path],
                timeout=600,
            )
            self._require_file(output_path, label="episode")
            return output_path

        args = ["ffmpeg", "-y", "-v", "error", "-i", rough_cut_path]
        filters = [f"[0:a]volume={cfg.source_volume}[a0]"]
        labels = ["[a0]"]
        for i, narration in enumerate(narrations, start=1):
            args += ["-i", narration.audio_path]
            delay_ms = max(0, int(round(narration.timing * 1000)))
            filters.append(f"[{i}:a]adelay={delay_ms}|{delay_ms},volume={cfg.narration_volume}[n{i}]")
            labels.append(f"[n{i}]")
        filters.append(f"{''.join(labels)}amix=inputs={len(labels)}:duration=first:normalize=0[aout]")

        args += [
            "-filter_complex", ";".join(filters),
            "-map", "0:v",
            "-map", "[aout]",
            "-c:v", "copy",
            "-c:a", cfg.audio_codec,
            "-b:a", cfg.audio_bitrate,
            "-movflags", "+faststart",
            output_path,
        ]
        self._ffmpeg(args, timeout=1800)
        self._require_file(output_path, label="episode")
        logger.info("Episode rendered with %d narration clips: %s", len(narrations), output_path)
        return output_path

    def render_short(self, clip: EditClip, output_path: str) -> str:
        """Cut a vertical short from the source video."""
        self.extract_clip(clip, output_path, vertical=True)
        logger.info("Short rendered: %s (%.1fs)", output_path, clip.duration)
        return output_path

    def _temp_root(self) -> str:
        os.makedirs(self.settings.temp_dir, exist_ok=True)
        return self.settings.temp_dir


def resolve_narration_start(position: str, timing: float, plan: EditPlan) -> float:
    """
    Place a narration point on the rough-cut timeline.

    "opening" starts at 0; "before_scene_<id>" / "after_scene_<id>" anchor to
    the start / end of that scene in the plan. Anything else, or a scene that was
    cut, falls back to the model's own timing offset.
    """
    position = position or ""
    if position == "opening":
        return 0.0

    t = 0.0
    bounds: Dict[str, tuple] = {}
    for clip in plan.clips:
        bounds.setdefault(clip.scene_id, (t, t + clip.duration))
        t += clip.duration

    for prefix, index in (("before_scene_", 0), ("after_scene_", 1)):
        if position.startswith(prefix):
            scene_bounds = bounds.get(position[len(prefix):])
            if scene_bounds is not None:
                return scene_bounds[index]

    return max(0.0, min(float(timing or 0.0), plan.total_duration))
