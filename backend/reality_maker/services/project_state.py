import logging
from typing import Any, Dict

from reality_maker.errors import (
    InvalidTransitionError,
    ProjectNotFoundError,
    ProjectTerminalError,
)
from reality_maker.models import Project, ProjectStatus, ProjectStatusView
from reality_maker.services.project_store import ProjectStore

logger = logging.getLogger(__name__)

# Observability only. Never branch on these.
STATUS_PROGRESS: Dict[ProjectStatus, int] = {
    ProjectStatus.CREATED: 0,
    ProjectStatus.UPLOADING: 10,
    ProjectStatus.ANALYZING: 30,
    ProjectStatus.SHOWRUNNING: 50,
    ProjectStatus.NARRATING: 65,
    ProjectStatus.EDITING: 80,
    ProjectStatus.EXPORTING: 90,
    ProjectStatus.COMPLETED: 100,
    ProjectStatus.FAILED: 0,
}

STATUS_ETA_SECONDS: Dict[ProjectStatus, int] = {
    ProjectStatus.CREATED: 600,
    ProjectStatus.UPLOADING: 300,
    ProjectStatus.ANALYZING: 180,
    ProjectStatus.SHOWRUNNING: 120,
    ProjectStatus.NARRATING: 60,
    ProjectStatus.EDITING: 180,
    ProjectStatus.EXPORTING: 120,
    ProjectStatus.COMPLETED: 0,
    ProjectStatus.FAILED: 0,
}


class ProjectStateMachine:
    """
    Authoritative owner of Project.status.

    Every status write is a conditional update on the project document, so
    concurrent stage workers can never move a project backwards or out of a
    terminal state.
    """

    def __init__(self, store: ProjectStore):
        self.store = store

    def get(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def transition(self, project_id: str, target: ProjectStatus) -> bool:
        """
        Move a project to `target`.

        Returns True when the status changed, False when the project was already
        in `target` (idempotent re-entry).

        Raises:
            ProjectNotFoundError: unknown project
            ProjectTerminalError: project is COMPLETED or FAILED
            InvalidTransitionError: target is not the successor of the current status
        """
        target = ProjectStatus(target)

        def apply(data: Dict[str, Any]) -> bool:
            current = ProjectStatus(data["status"])
            if current.is_terminal:
                raise ProjectTerminalError(project_id, current.value)
            if current == target:
                return False
            if current.successor != target:
                raise InvalidTransitionError(project_id, current.value, target.value)
            data["status"] = target.value
            return True

        changed = self._update(project_id, apply)
        if changed:
            logger.info("Project %s -> %s", project_id, target.value)
        return changed

    def enter(self, project_id: str, target: ProjectStatus) -> bool:
        """Alias used by stage executors when they start: same rules as transition()."""
        return self.transition(project_id, target)

    def fail(self, project_id: str, reason: str) -> bool:
        """
        Drive a non-terminal project to FAILED.

        Returns False (no-op) when the project is already terminal.
        """

        def apply(data: Dict[str, Any]) -> bool:
            if ProjectStatus(data["status"]).is_terminal:
                return False
            data["status"] = ProjectStatus.FAILED.value
            data["failure_reason"] = reason
            return True

        changed = self._update(project_id, apply)
        if changed:
            logger.warning("Project %s FAILED: %s", project_id, reason)
        return changed

    def _update(self, project_id: str, apply) -> bool:
        if self.store.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)
        return self.store.update_project(project_id, apply)

    def status_view(self, project_id: str) -> ProjectStatusView:
        project = self.get(project_id)
        return build_status_view(project)


def build_status_view(project: Project) -> ProjectStatusView:
    return ProjectStatusView(
        project_id=project.id,
        title=project.title,
        status=project.status,
        progress_percent=STATUS_PROGRESS[project.status],
        estimated_seconds_remaining=STATUS_ETA_SECONDS[project.status],
        failure_reason=project.failure_reason,
    )
