import json
import tempfile
import unittest

from reality_maker.errors import InvalidTransitionError, ProjectNotFoundError, ProjectTerminalError
from reality_maker.models import Project, ProjectStatus
from reality_maker.services.project_state import STATUS_ETA_SECONDS, STATUS_PROGRESS, ProjectStateMachine
from reality_maker.services.project_store import ProjectStore

from fakes import make_redis, make_settings

SUCCESS_PATH = [
    ProjectStatus.UPLOADING,
    ProjectStatus.ANALYZING,
    ProjectStatus.SHOWRUNNING,
    ProjectStatus.NARRATING,
    ProjectStatus.EDITING,
    ProjectStatus.EXPORTING,
    ProjectStatus.COMPLETED,
]


class TestProjectStateMachine(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.redis = make_redis()
        self.store = ProjectStore(self.redis, make_settings(self._tmp.name))
        self.state = ProjectStateMachine(self.store)
        self.store.create_project(Project(id="p1", title="Big House"))

    def status(self) -> ProjectStatus:
        return self.state.get("p1").status

    def test_successors_follow_the_pipeline(self) -> None:
        self.assertEqual(ProjectStatus.CREATED.successor, ProjectStatus.UPLOADING)
        self.assertEqual(ProjectStatus.EXPORTING.successor, ProjectStatus.COMPLETED)
        self.assertIsNone(ProjectStatus.COMPLETED.successor)
        self.assertIsNone(ProjectStatus.FAILED.successor)
        self.assertTrue(ProjectStatus.FAILED.is_terminal)
        self.assertFalse(ProjectStatus.EXPORTING.is_terminal)

    def test_order_on_the_success_path(self) -> None:
        self.assertTrue(ProjectStatus.NARRATING.is_past(ProjectStatus.ANALYZING))
        self.assertFalse(ProjectStatus.ANALYZING.is_past(ProjectStatus.ANALYZING))
        self.assertFalse(ProjectStatus.UPLOADING.is_past(ProjectStatus.ANALYZING))
        self.assertFalse(ProjectStatus.FAILED.is_past(ProjectStatus.CREATED))

    def test_walks_the_success_path(self) -> None:
        for target in SUCCESS_PATH:
            self.assertTrue(self.state.transition("p1", target))
            self.assertEqual(self.status(), target)

    def test_reentering_current_status_is_a_noop(self) -> None:
        self.state.transition("p1", ProjectStatus.UPLOADING)
        self.assertFalse(self.state.enter("p1", ProjectStatus.UPLOADING))
        self.assertEqual(self.status(), ProjectStatus.UPLOADING)

    def test_skipping_or_going_back_is_rejected(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            self.state.transition("p1", ProjectStatus.ANALYZING)

        self.state.transition("p1", ProjectStatus.UPLOADING)
        self.state.transition("p1", ProjectStatus.ANALYZING)
        with self.assertRaises(InvalidTransitionError) as ctx:
            self.state.transition("p1", ProjectStatus.UPLOADING)
        self.assertEqual(ctx.exception.current, "ANALYZING")
        self.assertEqual(self.status(), ProjectStatus.ANALYZING)

    def test_failed_is_not_reachable_through_transition(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            self.state.transition("p1", ProjectStatus.FAILED)

    def test_terminal_projects_never_move(self) -> None:
        for target in SUCCESS_PATH:
            self.state.transition("p1", target)

        with self.assertRaises(ProjectTerminalError):
            self.state.transition("p1", ProjectStatus.COMPLETED)
        self.assertFalse(self.state.fail("p1", "too late"))
        self.assertEqual(self.status(), ProjectStatus.COMPLETED)

    def test_fail_from_any_running_status(self) -> None:
        self.state.transition("p1", ProjectStatus.UPLOADING)
        self.state.transition("p1", ProjectStatus.ANALYZING)

        self.assertTrue(self.state.fail("p1", "analysis failed: no scenes"))
        project = self.state.get("p1")
        self.assertEqual(project.status, ProjectStatus.FAILED)
        self.assertEqual(project.failure_reason, "analysis failed: no scenes")

        self.assertFalse(self.state.fail("p1", "second reason"))
        self.assertEqual(self.state.get("p1").failure_reason, "analysis failed: no scenes")
        with self.assertRaises(ProjectTerminalError):
            self.state.enter("p1", ProjectStatus.SHOWRUNNING)

    def test_unknown_project(self) -> None:
        with self.assertRaises(ProjectNotFoundError):
            self.state.get("nope")
        with self.assertRaises(ProjectNotFoundError):
            self.state.transition("nope", ProjectStatus.UPLOADING)
        with self.assertRaises(ProjectNotFoundError):
            self.state.fail("nope", "reason")

    def test_status_changes_are_published(self) -> None:
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe("project_updates:p1")

        self.state.transition("p1", ProjectStatus.UPLOADING)

        messages = []
        for _ in range(5):
            message = pubsub.get_message(timeout=0.1)
            if message:
                messages.append(json.loads(message["data"]))
        pubsub.close()
        self.assertEqual([m["status"] for m in messages], ["UPLOADING"])

    def test_status_view(self) -> None:
        view = self.state.status_view("p1")
        self.assertEqual(view.title, "Big House")
        self.assertEqual(view.progress_percent, 0)
        self.assertEqual(view.estimated_seconds_remaining, 600)

        for target in SUCCESS_PATH[:3]:
            self.state.transition("p1", target)
        view = self.state.status_view("p1")
        self.assertEqual(view.status, ProjectStatus.SHOWRUNNING)
        self.assertEqual(view.progress_percent, 50)
        self.assertEqual(view.estimated_seconds_remaining, 120)

        self.state.fail("p1", "Cancelled")
        view = self.state.status_view("p1")
        self.assertEqual((view.progress_percent, view.estimated_seconds_remaining), (0, 0))
        self.assertEqual(view.failure_reason, "Cancelled")

    def test_status_tables_cover_every_status(self) -> None:
        self.assertEqual(set(STATUS_PROGRESS), set(ProjectStatus))
        self.assertEqual(set(STATUS_ETA_SECONDS), set(ProjectStatus))
        progress = [STATUS_PROGRESS[s] for s in [ProjectStatus.CREATED] + SUCCESS_PATH]
        self.assertEqual(progress, sorted(progress))


if __name__ == "__main__":
    unittest.main()
