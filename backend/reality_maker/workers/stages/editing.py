import logging
from typing import Optional

from reality_maker.config import Settings
from reality_maker.errors import PreconditionError
from reality_maker.models import Project, ProjectStatus, StageResult
from reality_maker.services.job_dispatcher import Job
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore
from reality_maker.services.video_editor import VideoEditorService, build_edit_plan
from reality_maker.workers.stages.base import StageExecutor

logger = logging.getLogger(__name__)


class EditingStage(StageExecutor):
    """Builds the cut list from the narrative and renders the rough cut."""

    stage = "editing"
    running_status = ProjectStatus.EDITING

    def __init__(
        self,
        store: ProjectStore,
        state: ProjectStateMachine,
        editor: VideoEditorService,
        settings: Optional[Settings] = None,
    ):
        super().__init__(store, state, settings)
        self.editor = editor

    def run(self, job: Job, project: Project) -> StageResult:
        narrative = self.store.get_narrative(project.id)
        if narrative is None:
            raise PreconditionError(f"Project {project.id} has no narrative")

        plan = build_edit_plan(
            project.id,
            narrative.structure,
            self.store.list_scenes(project.id),
            self.store.list_videos(project.id),
        )
        if not plan.clips:
            raise PreconditionError(f"Narrative for project {project.id} references no usable scenes")
        logger.info("Edit plan: %d clips, %.1fs", len(plan.clips), plan.total_duration)
        job.report_progress(20)

        rough_cut = self.project_path(project.id, "edit", "rough_cut.mp4")
        duration = self.editor.render_rough_cut(plan, rough_cut)
        job.report_progress(90)

        plan = plan.model_copy(update={"rough_cut_path": rough_cut, "total_duration": duration or plan.total_duration})
        self.store.save_edit_plan(plan)

        return StageResult(
            summary={"project_id": project.id, "clips": len(plan.clips), "duration": plan.total_duration},
            next_payload={"project_id": project.id},
        )
