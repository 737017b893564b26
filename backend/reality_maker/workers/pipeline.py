"""
Pipeline Worker - staged architecture

Runs every stage queue of the pipeline in one process:
1. analysis    scene detection + transcription + association
2. showrunner  AI narrative (validated JSON)
3. narrator    TTS for each narration point
4. editing     cut list + rough cut
5. export      narrated episode + vertical shorts

Stages never call each other. Each stage's completion listener moves the
project forward and queues the next stage with ids only; a permanent failure
moves the project to FAILED.

    python -m reality_maker.workers.pipeline
"""

import logging
import signal
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from reality_maker.config import Settings, get_settings
from reality_maker.errors import PreconditionError, ProjectNotFoundError
from reality_maker.logging_setup import configure_logging, log_context
from reality_maker.models import ProjectStatus
from reality_maker.services.generative_backend import create_backend
from reality_maker.services.job_dispatcher import STAGES, Job, JobDispatcher, StageListener
from reality_maker.services.project_state import ProjectStateMachine
from reality_maker.services.project_store import ProjectStore, connect_redis
from reality_maker.services.scene_detector import FFmpegSceneDetector
from reality_maker.services.speech import ElevenLabsSynthesizer
from reality_maker.services.transcription import RotatingSpeakerLabeler, WhisperTranscriber
from reality_maker.services.video_editor import VideoEditorService
from reality_maker.workers.stages.analysis import AnalysisStage
from reality_maker.workers.stages.base import StageExecutor
from reality_maker.workers.stages.editing import EditingStage
from reality_maker.workers.stages.export import ExportStage
from reality_maker.workers.stages.narrator import NarratorStage
from reality_maker.workers.stages.showrunner import ShowrunnerStage

logger = logging.getLogger(__name__)

# stage -> (status the project moves to when the stage succeeds, next stage)
STAGE_FLOW: Dict[str, tuple] = {
    "analysis": (ProjectStatus.SHOWRUNNING, "showrunner"),
    "showrunner": (ProjectStatus.NARRATING, "narrator"),
    "narrator": (ProjectStatus.EDITING, "editing"),
    "editing": (ProjectStatus.EXPORTING, "export"),
    "export": (ProjectStatus.COMPLETED, None),
}


class StageTransitionListener(StageListener):
    """
    Completion/failure listener for one stage.

    On success: advance the project, then queue the next stage. A project that
    became terminal meanwhile (cancelled, failed elsewhere) is left alone and
    nothing further is queued.

    Redis writes are retried a few times. If the next stage still cannot be
    queued, the project is failed so it never sits in a running status with no
    job behind it.
    """

    def __init__(
        self,
        stage: str,
        dispatcher: JobDispatcher,
        state: ProjectStateMachine,
        attempts: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.stage = stage
        self.dispatcher = dispatcher
        self.state = state
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.success_status, self.next_stage = STAGE_FLOW[stage]

    def _retrying(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        for attempt in range(1, self.attempts + 1):
            try:
                return fn(*args)
            except RedisError as e:
                if attempt >= self.attempts:
                    raise
                logger.warning("%s failed (attempt %d/%d): %s", what, attempt, self.attempts, e)
                self.sleep(self.retry_delay)

    def job_completed(self, job: Job, result: Dict[str, Any]) -> None:
        project_id = job.project_id
        with log_context(project_id=project_id, stage=self.stage):
            if result.get("skipped"):
                logger.info("%s job %s was a no-op, nothing to advance", self.stage, job.id)
                return
            try:
                self._advance(job, result)
            except RedisError as e:
                logger.exception("Could not continue after %s job %s", self.stage, job.id)
                self._retrying(
                    "fail project", self.state.fail, project_id, f"{self.stage} succeeded but could not continue: {e}"
                )

    def _advance(self, job: Job, result: Dict[str, Any]) -> None:
        project_id = job.project_id
        try:
            self._retrying("advance project", self.state.transition, project_id, self.success_status)
        except PreconditionError as e:
            logger.warning("Not advancing after %s job %s: %s", self.stage, job.id, e)
            return

        if self.next_stage is None:
            logger.info("Pipeline complete")
            return

        payload = result.get("next_payload") or {"project_id": project_id}
        job_id = self._retrying(f"queue {self.next_stage}", self.dispatcher.submit, self.next_stage, payload)
        logger.info("Queued %s job %s", self.next_stage, job_id)

    def job_failed(self, job: Job, reason: str) -> None:
        project_id = job.project_id
        with log_context(project_id=project_id, stage=self.stage):
            try:
                self._retrying("fail project", self.state.fail, project_id, f"{self.stage} failed: {reason}")
            except ProjectNotFoundError:
                logger.warning("Project of failed %s job %s no longer exists", self.stage, job.id)


class StageWorkerPool:
    """
    `concurrency` daemon threads polling one stage queue.

    Each poll first returns stalled jobs (expired leases) to the queue, then
    claims and runs at most one job.
    """

    def __init__(
        self,
        stage: str,
        dispatcher: JobDispatcher,
        handler: Callable[[Job], Dict[str, Any]],
        concurrency: int = 2,
        poll_interval: float = 2.0,
    ):
        self.stage = stage
        self.dispatcher = dispatcher
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def run_once(self) -> bool:
        """Process at most one job. Returns True if a job was claimed."""
        self.dispatcher.requeue_stalled(self.stage)
        return self.dispatcher.process_next(self.stage, self.handler) is not None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                busy = self.run_once()
            except Exception:
                # Redis hiccups must not kill the worker thread.
                logger.exception("%s worker loop error", self.stage)
                self._stop.wait(5)
                continue
            if not busy:
                self._stop.wait(self.poll_interval)

    def start(self) -> None:
        for i in range(self.concurrency):
            thread = threading.Thread(target=self._loop, name=f"{self.stage}-worker-{i + 1}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("%s pool started with %d workers", self.stage, self.concurrency)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


def build_executors(store: ProjectStore, state: ProjectStateMachine, settings: Settings) -> Dict[str, StageExecutor]:
    """Wire the production collaborators into one executor per stage."""
    editor = VideoEditorService(settings)
    return {
        "analysis": AnalysisStage(
            store,
            state,
            detector=FFmpegSceneDetector(settings),
            transcriber=WhisperTranscriber(settings),
            labeler=RotatingSpeakerLabeler.from_settings(settings),
            settings=settings,
        ),
        "showrunner": ShowrunnerStage(store, state, backend=create_backend(settings), settings=settings),
        "narrator": NarratorStage(store, state, synthesizer=ElevenLabsSynthesizer(settings), settings=settings),
        "editing": EditingStage(store, state, editor=editor, settings=settings),
        "export": ExportStage(store, state, editor=editor, settings=settings),
    }


class PipelineWorker:
    """Registers one listener per stage and runs one worker pool per stage."""

    def __init__(
        self,
        dispatcher: JobDispatcher,
        state: ProjectStateMachine,
        executors: Dict[str, Callable[[Job], Dict[str, Any]]],
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher
        self.state = state
        missing = [s for s in STAGES if s not in executors]
        if missing:
            raise ValueError(f"No executor for stages: {', '.join(missing)}")

        for stage in STAGES:
            dispatcher.register_listener(stage, StageTransitionListener(stage, dispatcher, state))

        self._shutdown = threading.Event()
        self.pools = {
            stage: StageWorkerPool(
                stage,
                dispatcher,
                executors[stage],
                concurrency=self.settings.queue.concurrency,
                poll_interval=self.settings.queue.poll_interval_seconds,
            )
            for stage in STAGES
        }

    def start(self) -> None:
        for pool in self.pools.values():
            pool.start()

    def stop(self) -> None:
        for pool in self.pools.values():
            pool.stop(timeout=5)

    def run_until_idle(self, max_rounds: int = 100) -> int:
        """
        Drain every queue in the calling thread, stage by stage, until no stage
        has runnable work. Returns the number of jobs processed.
        """
        processed = 0
        for _ in range(max_rounds):
            progressed = False
            for pool in self.pools.values():
                while pool.run_once():
                    processed += 1
                    progressed = True
            if not progressed:
                break
        return processed

    def request_shutdown(self, signum: Optional[int] = None, frame: Any = None) -> None:
        """Signal handler: let every pool finish its current job, then stop."""
        logger.info("Worker shutting down (signal %s)...", signum)
        self._shutdown.set()

    def run(self) -> None:
        """Main worker loop. Returns after SIGTERM/SIGINT or request_shutdown()."""
        previous = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGTERM, signal.SIGINT):
                previous[signum] = signal.signal(signum, self.request_shutdown)

        logger.info("Pipeline worker started (%s)", ", ".join(STAGES))
        self.start()
        try:
            while not self._shutdown.wait(1):
                pass
        finally:
            self.stop()
            for signum, handler in previous.items():
                signal.signal(signum, handler)


def main() -> None:
    """Entry point for the worker."""
    settings = get_settings()
    configure_logging(settings.app.log_level, settings.app.log_file)

    redis_client = connect_redis(settings)
    redis_client.ping()

    store = ProjectStore(redis_client, settings)
    state = ProjectStateMachine(store)
    dispatcher = JobDispatcher(redis_client, settings)
    worker = PipelineWorker(dispatcher, state, build_executors(store, state, settings), settings)
    worker.run()


if __name__ == "__main__":
    main()
