import logging
import os
from typing import Any, Dict, Optional

from reality_maker.config import Settings, get_settings
from reality_maker.errors import InvalidTransitionError, ProjectNotFoundError, ProjectTerminalError
from reality_maker.logging_setup import log_context
from reality_maker.models import Project, ProjectStatus, StageResult
from reality_maker.services.ffmpeg_utils import FFmpegError
from reality_maker.services.job_dispatcher import Job
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore

logger = logging.getLogger(__name__)

SKIPPED_RESULT = {"skipped": True}


class StageExecutor:
    """
    One pipeline stage.

    Subclasses implement run(); __call__ is the job handler the worker pool hands
    to the dispatcher. It checks the project first: a missing project is a
    precondition failure. A terminal project, or one already past this stage
    (a late or duplicate job), turns the job into a no-op.
    """

    stage: str = ""
    running_status: ProjectStatus = ProjectStatus.CREATED

    def __init__(self, store: ProjectStore, state: ProjectStateMachine, settings: Optional[Settings] = None):
        self.store = store
        self.state = state
        self.settings = settings or get_settings()

    def __call__(self, job: Job) -> Dict[str, Any]:
        project_id = job.project_id
        with log_context(project_id=project_id, stage=self.stage):
            project = self.store.get_project(project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            if self._already_handled(project):
                logger.info("Project is %s, skipping %s job %s", project.status.value, self.stage, job.id)
                return dict(SKIPPED_RESULT)

            try:
                self.state.enter(project_id, self.running_status)
            except (ProjectTerminalError, InvalidTransitionError) as e:
                # Lost a race with a cancel or a duplicate job of this stage.
                if not self._already_handled(self.state.get(project_id)):
                    raise
                logger.info("Skipping %s job %s: %s", self.stage, job.id, e)
                return dict(SKIPPED_RESULT)

            logger.info("Starting %s (attempt %d/%d)", self.stage, job.attempts, job.max_attempts)
            try:
                result = self.run(job, project)
            except FFmpegError as e:
                # Job gets the sanitized message; full stderr stays in the logs.
                if e.stderr:
                    logger.error("FFmpeg stderr (full):\n%s", e.stderr)
                raise
            logger.info("Finished %s: %s", self.stage, result.summary)
            return result.to_dict()

    def run(self, job: Job, project: Project) -> StageResult:
        raise NotImplementedError

    def project_path(self, project_id: str, *parts: str) -> str:
        path = os.path.join(self.settings.project_dir(project_id), *parts)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        return path

    def _already_handled(self, project: Project) -> bool:
        """Terminal projects and projects past this stage make the job a duplicate."""
        return project.status.is_terminal or project.status.is_past(self.running_status)
