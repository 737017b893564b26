"""
Temporal association of transcript segments to detected scenes.

A segment belongs to a scene when it was transcribed from the scene's video and
lies entirely inside the scene's time range:

    scene.start_time <= segment.start  and  segment.end <= scene.end_time

Containment, not overlap: a segment that straddles a scene boundary is attributed
to neither scene.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Sequence

from reality_maker.models import Scene, SceneTranscript, TranscriptSegment


def _contained(scene: Scene, seg: TranscriptSegment) -> bool:
    return scene.start_time <= seg.start and seg.end <= scene.end_time


def _join_video(scenes: Sequence[Scene], segments: Sequence[TranscriptSegment]) -> Dict[str, List[TranscriptSegment]]:
    """
    Two-pointer join over one video's scenes and segments, both sorted by start.

    `lo` only moves forward: a segment starting before the current scene also
    starts before every later scene, so it can never be contained in one.
    """
    matches: Dict[str, List[TranscriptSegment]] = {}
    lo = 0
    n = len(segments)
    for scene in scenes:
        while lo < n and segments[lo].start < scene.start_time:
            lo += 1
        i = lo
        while i < n and segments[i].start <= scene.end_time:
            if _contained(scene, segments[i]):
                matches.setdefault(scene.id, []).append(segments[i])
            i += 1
    return matches


def build_scene_transcript(scene_id: str, segments: Sequence[TranscriptSegment]) -> SceneTranscript:
    lines = [f"{s.speaker}: {s.text}" for s in segments]

    speakers: List[str] = []
    for s in segments:
        if s.speaker not in speakers:
            speakers.append(s.speaker)

    emotions = [s.emotion for s in segments if s.emotion]

    return SceneTranscript(
        scene_id=scene_id,
        transcription="\n".join(lines),
        speakers=speakers,
        emotions=emotions or None,
        segments=list(segments),
    )


def associate_transcripts(
    scenes: Iterable[Scene],
    segments: Iterable[TranscriptSegment],
) -> Dict[str, SceneTranscript]:
    """
    Attribute transcript segments to the scenes that fully contain them.

    Returns {scene_id: SceneTranscript} for every scene with at least one segment.
    Inputs may arrive in any order; output is deterministic for a given input set.
    """
    scenes_by_video: Dict[str, List[Scene]] = defaultdict(list)
    for scene in scenes:
        scenes_by_video[scene.video_id].append(scene)

    segments_by_video: Dict[str, List[TranscriptSegment]] = defaultdict(list)
    for seg in segments:
        segments_by_video[seg.video_id].append(seg)

    result: Dict[str, SceneTranscript] = {}
    for video_id in sorted(scenes_by_video):
        video_scenes = sorted(scenes_by_video[video_id], key=lambda s: (s.start_time, s.end_time, s.id))
        video_segments = sorted(
            segments_by_video.get(video_id, []),
            key=lambda s: (s.start, s.end, s.speaker, s.text),
        )
        if not video_segments:
            continue
        for scene_id, matched in _join_video(video_scenes, video_segments).items():
            result[scene_id] = build_scene_transcript(scene_id, matched)
    return result
