import logging
import re
from typing import List, Optional

from reality_maker.config import Settings
from reality_maker.errors import PreconditionError
from reality_maker.models import NarrationClip, Project, ProjectStatus, StageResult
from reality_maker.services.job_dispatcher import Job
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore
from reality_maker.services.speech import SpeechSynthesizer
from reality_maker.workers.stages.base import StageExecutor

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


class NarratorStage(StageExecutor):
    """Synthesizes one audio file per narration point."""

    stage = "narrator"
    running_status = ProjectStatus.NARRATING

    def __init__(
        self,
        store: ProjectStore,
        state: ProjectStateMachine,
        synthesizer: SpeechSynthesizer,
        settings: Optional[Settings] = None,
    ):
        super().__init__(store, state, settings)
        self.synthesizer = synthesizer

    def run(self, job: Job, project: Project) -> StageResult:
        narrative = self.store.get_narrative(project.id)
        if narrative is None:
            raise PreconditionError(f"Project {project.id} has no narrative")
        job.report_progress(10)

        points = [p for p in narrative.structure.get("narration_points") or [] if isinstance(p, dict)]
        clips: List[NarrationClip] = []
        for i, point in enumerate(points):
            text = str(point.get("suggestion") or point.get("text") or "").strip()
            if not text:
                logger.warning("Narration point %d has no text, skipping", i + 1)
                continue

            point_id = str(point.get("id") or f"narration_{i + 1}")
            filename = f"{i + 1:03d}_{_UNSAFE.sub('_', point_id)}.mp3"
            audio_path = self.synthesizer.synthesize(text, self.project_path(project.id, "narration", filename))

            try:
                timing = float(point.get("timing") or 0.0)
            except (TypeError, ValueError):
                timing = 0.0
            clips.append(
                NarrationClip(
                    id=point_id,
                    position=str(point.get("position") or ""),
                    timing=timing,
                    text=text,
                    audio_path=audio_path,
                )
            )
            job.report_progress(10 + ((i + 1) / len(points)) * 80)

        self.store.set_narrations(project.id, clips)
        logger.info("Synthesized %d narration clips", len(clips))

        return StageResult(
            summary={"project_id": project.id, "narrations": len(clips)},
            next_payload={"project_id": project.id},
        )
