import logging
import os
import uuid
from dataclasses import replace
from typing import Callable, List, Optional

from reality_maker.config import Settings
from reality_maker.errors import PreconditionError, ResourceError
from reality_maker.models import Project, ProjectStatus, Scene, StageResult, TranscriptSegment, Video
from reality_maker.services.job_dispatcher import Job
from reality_maker.services.media import extract_audio
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore
from reality_maker.services.scene_association import associate_transcripts
from reality_maker.services.scene_detector import SceneDetector
from reality_maker.services.transcription import SpeakerLabeler, Transcriber
from reality_maker.workers.stages.base import StageExecutor

logger = logging.getLogger(__name__)


class AnalysisStage(StageExecutor):
    """
    Scene detection + transcription for every video of a project, then one
    association pass that attaches transcript text to the scenes.

    Videos are processed one at a time. Progress runs 10 -> 80 across videos,
    90 after association.
    """

    stage = "analysis"
    running_status = ProjectStatus.ANALYZING

    def __init__(
        self,
        store: ProjectStore,
        state: ProjectStateMachine,
        detector: SceneDetector,
        transcriber: Transcriber,
        labeler: SpeakerLabeler,
        settings: Optional[Settings] = None,
        audio_extractor: Callable[[str, str], str] = extract_audio,
    ):
        super().__init__(store, state, settings)
        self.detector = detector
        self.transcriber = transcriber
        self.labeler = labeler
        self.audio_extractor = audio_extractor

    def _load_videos(self, project_id: str, video_ids: List[str]) -> List[Video]:
        videos = []
        for video_id in video_ids:
            video = self.store.get_video(video_id)
            if video is None or video.project_id != project_id:
                raise PreconditionError(f"Video {video_id} does not belong to project {project_id}")
            if not os.path.exists(video.path):
                raise ResourceError(f"Video file missing: {video.path}")
            videos.append(video)
        return videos

    def _detect(self, project_id: str, video: Video) -> List[Scene]:
        detected = self.detector.detect(video.path)
        scenes = []
        for d in detected:
            if d.end_time <= d.start_time or d.start_time < 0:
                logger.warning("Dropping invalid scene %.2f-%.2f from %s", d.start_time, d.end_time, video.id)
                continue
            scenes.append(
                Scene(
                    id=str(uuid.uuid4()),
                    video_id=video.id,
                    project_id=project_id,
                    start_time=d.start_time,
                    end_time=d.end_time,
                    importance_score=d.importance_score,
                )
            )
        return self.store.replace_video_scenes(project_id, video.id, scenes)

    def _transcribe(self, video: Video) -> List[TranscriptSegment]:
        os.makedirs(self.settings.temp_dir, exist_ok=True)
        audio_path = os.path.join(self.settings.temp_dir, f"{video.id}_audio.wav")
        try:
            self.audio_extractor(video.path, audio_path)
            segments = self.transcriber.transcribe(audio_path, video.id)
        finally:
            if os.path.exists(audio_path):
                os.remove(audio_path)

        labelled = self.labeler.label(segments)
        return [s if s.video_id == video.id else replace(s, video_id=video.id) for s in labelled]

    def run(self, job: Job, project: Project) -> StageResult:
        video_ids = list(job.data.get("video_ids") or [])
        if not video_ids:
            raise PreconditionError(f"Project {project.id} has no videos to analyze")

        videos = self._load_videos(project.id, video_ids)
        job.report_progress(10)

        all_scenes: List[Scene] = []
        all_segments: List[TranscriptSegment] = []
        for i, video in enumerate(videos):
            logger.info("Analyzing video %d/%d: %s", i + 1, len(videos), video.filename or video.path)

            scenes = self._detect(project.id, video)
            logger.info("Detected %d scenes", len(scenes))

            segments = self._transcribe(video)
            logger.info("Transcribed %d segments", len(segments))

            all_scenes.extend(scenes)
            all_segments.extend(segments)
            job.report_progress(10 + ((i + 1) / len(videos)) * 70)

        job.report_progress(80)

        associations = associate_transcripts(all_scenes, all_segments)
        for transcript in associations.values():
            self.store.attach_transcript(transcript)
        logger.info("Attached transcripts to %d/%d scenes", len(associations), len(all_scenes))

        job.report_progress(90)

        scene_ids = [s.id for s in all_scenes]
        return StageResult(
            summary={
                "project_id": project.id,
                "videos": len(videos),
                "scenes": len(all_scenes),
                "segments": len(all_segments),
                "scenes_with_transcript": len(associations),
            },
            next_payload={"project_id": project.id, "scene_ids": scene_ids},
        )
