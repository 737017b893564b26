import logging
import os
import uuid
from typing import List, Optional

from reality_maker.config import Settings
from reality_maker.errors import PreconditionError
from reality_maker.models import Export, ExportType, Project, ProjectStatus, StageResult
from reality_maker.services.job_dispatcher import Job
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore
from reality_maker.services.video_editor import VideoEditorService, plan_short, resolve_narration_start
from reality_maker.workers.stages.base import StageExecutor

logger = logging.getLogger(__name__)


class ExportStage(StageExecutor):
    """
    Renders the final artifacts: the narrated episode and one vertical short per
    usable shorts suggestion. Each artifact gets an Export record; a retried
    export does not record the same file twice.
    """

    stage = "export"
    running_status = ProjectStatus.EXPORTING

    def __init__(
        self,
        store: ProjectStore,
        state: ProjectStateMachine,
        editor: VideoEditorService,
        settings: Optional[Settings] = None,
    ):
        super().__init__(store, state, settings)
        self.editor = editor

    def _record(self, project_id: str, export_type: ExportType, path: str, known: set) -> Optional[Export]:
        filename = os.path.basename(path)
        if filename in known:
            return None
        known.add(filename)
        return self.store.add_export(
            Export(id=str(uuid.uuid4()), project_id=project_id, type=export_type, filename=filename, path=path)
        )

    def run(self, job: Job, project: Project) -> StageResult:
        plan = self.store.get_edit_plan(project.id)
        if plan is None or not plan.rough_cut_path:
            raise PreconditionError(f"Project {project.id} has no rendered rough cut")
        narrative = self.store.get_narrative(project.id)
        if narrative is None:
            raise PreconditionError(f"Project {project.id} has no narrative")

        out_dir = os.path.join(self.settings.exports_dir, project.id)
        os.makedirs(out_dir, exist_ok=True)
        known = {e.filename for e in self.store.list_exports(project.id)}
        created: List[Export] = []

        narrations = [
            n.model_copy(update={"timing": resolve_narration_start(n.position, n.timing, plan)})
            for n in narrative.narrations
        ]
        episode_path = self.editor.render_episode(plan.rough_cut_path, narrations, os.path.join(out_dir, "episode.mp4"))
        export = self._record(project.id, ExportType.EPISODE, episode_path, known)
        if export is not None:
            created.append(export)
        job.report_progress(50)

        suggestions = [s for s in narrative.structure.get("shorts_suggestions") or [] if isinstance(s, dict)]
        scenes_by_id = {s.id: s for s in self.store.list_scenes(project.id)}
        videos_by_id = {v.id: v for v in self.store.list_videos(project.id)}
        shorts = 0
        for i, suggestion in enumerate(suggestions):
            clip = plan_short(suggestion, scenes_by_id, videos_by_id)
            if clip is None:
                logger.warning("Shorts suggestion %d references no usable scene, skipping", i + 1)
                continue
            path = self.editor.render_short(clip, os.path.join(out_dir, f"short_{i + 1:02d}.mp4"))
            shorts += 1
            export = self._record(project.id, ExportType.SHORT, path, known)
            if export is not None:
                created.append(export)
            job.report_progress(50 + ((i + 1) / len(suggestions)) * 45)

        return StageResult(
            summary={
                "project_id": project.id,
                "episode": episode_path,
                "shorts": shorts,
                "exports_created": len(created),
            },
            next_payload=None,
        )
