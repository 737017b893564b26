import logging
import time
from typing import Any, Callable, Dict, List, Optional

from reality_maker.config import Settings
from reality_maker.errors import PreconditionError
from reality_maker.models import Project, ProjectStatus, Scene, StageResult, TranscriptSegment
from reality_maker.services.generative_backend import GenerativeBackend
from reality_maker.services.job_dispatcher import Job
from reality_maker.services.narrative_validator import generate_validated_narrative
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore
from reality_maker.services.showrunner_prompt import SHOWRUNNER_SYSTEM_PROMPT, build_showrunner_prompt
from reality_maker.workers.stages.base import StageExecutor

logger = logging.getLogger(__name__)


def narrative_stats(doc: Dict[str, Any]) -> Dict[str, Any]:
    metadata = doc.get("metadata") or {}
    return {
        "characters": len(doc.get("characters") or []),
        "key_moments": len(doc.get("key_moments") or []),
        "narration_points": len(doc.get("narration_points") or []),
        "shorts_suggestions": len(doc.get("shorts_suggestions") or []),
        "target_duration": metadata.get("episode_duration_target") or 0,
        "retention_score": metadata.get("retention_score") or 0,
    }


def scene_segments(scenes: List[Scene]) -> List[TranscriptSegment]:
    """Transcript segments stored on the scenes, in scene order."""
    segments = []
    for scene in scenes:
        for raw in (scene.metadata or {}).get("transcriptions", []):
            segments.append(TranscriptSegment.from_dict(raw))
    return segments


class ShowrunnerStage(StageExecutor):
    """Generates and stores the validated narrative document for a project."""

    stage = "showrunner"
    running_status = ProjectStatus.SHOWRUNNING

    def __init__(
        self,
        store: ProjectStore,
        state: ProjectStateMachine,
        backend: GenerativeBackend,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(store, state, settings)
        self.backend = backend
        self.sleep = sleep

    def run(self, job: Job, project: Project) -> StageResult:
        job.report_progress(10)

        scene_ids = list(job.data.get("scene_ids") or [])
        scenes = self.store.get_scenes(scene_ids) if scene_ids else self.store.list_scenes(project.id)
        scenes = [s for s in scenes if s.project_id == project.id]
        if not scenes:
            raise PreconditionError(f"Project {project.id} has no scenes to build a narrative from")
        logger.info("Loaded %d scenes", len(scenes))
        job.report_progress(20)

        videos = self.store.list_videos(project.id)
        segments = scene_segments(scenes)
        logger.info("Loaded %d transcript segments", len(segments))
        job.report_progress(30)

        user_prompt = build_showrunner_prompt(scenes, segments, videos, style=project.style)
        logger.debug("Prompt length: %d chars", len(user_prompt))

        self.backend.ensure_ready()
        job.report_progress(40)

        cfg = self.settings.showrunner
        doc = generate_validated_narrative(
            self.backend,
            SHOWRUNNER_SYSTEM_PROMPT,
            user_prompt,
            max_attempts=cfg.max_generation_attempts,
            retry_delay=cfg.generation_retry_delay_seconds,
            sleep=self.sleep,
        )
        job.report_progress(70)

        self.store.upsert_narrative(project.id, doc)
        logger.info("Narrative saved")
        job.report_progress(80)

        stats = narrative_stats(doc)
        logger.info("Narrative stats: %s", stats)

        return StageResult(
            summary={"project_id": project.id, "narrative": stats},
            next_payload={"project_id": project.id},
        )
