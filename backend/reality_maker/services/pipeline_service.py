import logging
import os
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from reality_maker.config import Settings, get_settings
from reality_maker.errors import PreconditionError, ProjectTerminalError
from reality_maker.models import Export, JobStatusView, Narrative, Project, ProjectStatus, ProjectStatusView, Video
from reality_maker.services.job_dispatcher import JobDispatcher
from reality_maker.services.media import probe_video
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled"


class PipelineService:
    """
    Entry points for whatever fronts the pipeline (HTTP API, chat bot, CLI).

    Owns no state of its own: projects live in the ProjectStore, status changes
    go through the ProjectStateMachine and work is queued on the JobDispatcher.
    """

    def __init__(
        self,
        store: ProjectStore,
        state: ProjectStateMachine,
        dispatcher: JobDispatcher,
        settings: Optional[Settings] = None,
        prober: Callable[[str], Dict[str, Any]] = probe_video,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.state = state
        self.dispatcher = dispatcher
        self.prober = prober

    def create_project(self, title: Optional[str] = None, style: str = "DRAMATIC") -> Project:
        now = datetime.utcnow()
        project = Project(
            id=str(uuid.uuid4()),
            title=title or f"Project {now:%Y-%m-%d %H:%M}",
            style=(style or "DRAMATIC").upper(),
            created_at=now,
            updated_at=now,
        )
        self.store.create_project(project)
        logger.info("Created project %s (%s)", project.id, project.title)
        return project

    def register_video(self, project_id: str, path: str, filename: Optional[str] = None) -> Video:
        """
        Attach an uploaded file to a project. Metadata is probed once here and the
        project moves CREATED -> UPLOADING.
        """
        project = self.state.get(project_id)
        if project.status.is_terminal:
            raise ProjectTerminalError(project_id, project.status.value)
        if project.status not in (ProjectStatus.CREATED, ProjectStatus.UPLOADING):
            raise PreconditionError(f"Project {project_id} is already {project.status.value}; cannot add videos")

        meta = self.prober(path)
        video = Video(
            id=str(uuid.uuid4()),
            project_id=project_id,
            path=path,
            filename=filename or os.path.basename(path),
            duration=float(meta.get("duration", 0.0)),
            resolution=str(meta.get("resolution", "")),
            fps=float(meta.get("fps", 0.0)),
            has_audio=bool(meta.get("has_audio", True)),
        )
        self.store.add_video(video)
        self.state.transition(project_id, ProjectStatus.UPLOADING)
        logger.info("Registered video %s (%.1fs, %s) on project %s", video.id, video.duration, video.resolution, project_id)
        return video

    def start_processing(self, project_id: str) -> str:
        """Move a project with videos into ANALYZING and queue its analysis job."""
        project = self.state.get(project_id)
        if project.status.is_terminal:
            raise ProjectTerminalError(project_id, project.status.value)
        if project.status not in (ProjectStatus.CREATED, ProjectStatus.UPLOADING):
            raise PreconditionError(f"Project {project_id} is already {project.status.value}")

        video_ids = self.store.list_video_ids(project_id)
        if not video_ids:
            raise PreconditionError("No videos to process")

        if project.status == ProjectStatus.CREATED:
            self.state.transition(project_id, ProjectStatus.UPLOADING)
        self.state.transition(project_id, ProjectStatus.ANALYZING)
        return self.dispatcher.submit("analysis", {"project_id": project_id, "video_ids": video_ids})

    def enqueue(self, stage: str, payload: Dict[str, Any]) -> str:
        return self.dispatcher.submit(stage, payload)

    def get_job_status(self, stage: str, job_id: str) -> Optional[JobStatusView]:
        return self.dispatcher.get_job_status(stage, job_id)

    def get_project(self, project_id: str) -> Project:
        return self.state.get(project_id)

    def get_project_status(self, project_id: str) -> ProjectStatusView:
        return self.state.status_view(project_id)

    def cancel(self, project_id: str) -> bool:
        """
        Mark a project FAILED. Running work is not interrupted, but its completion
        can no longer advance the project.
        """
        return self.state.fail(project_id, CANCELLED_REASON)

    def delete_project(self, project_id: str) -> bool:
        return self.store.delete_project(project_id)

    def get_narrative(self, project_id: str) -> Optional[Narrative]:
        self.state.get(project_id)
        return self.store.get_narrative(project_id)

    def list_exports(self, project_id: str) -> List[Export]:
        self.state.get(project_id)
        return self.store.list_exports(project_id)
