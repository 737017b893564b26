"""
Redis-backed job queues for the pipeline stages.

Per stage:
    pipeline:{stage}:wait       list, ids ready to run (lpush / rpop)
    pipeline:{stage}:delayed    zset, ids waiting for their retry backoff (score = ready time)
    pipeline:{stage}:active     zset, ids being worked on (score = lease expiry)
    pipeline:{stage}:completed  list, recently completed ids (bounded)
    pipeline:{stage}:failed     list, recently failed ids (bounded)

Job documents live at job:{id}. Every write to a job document is a WATCH/MULTI
conditional update and is published on job_updates:{id}. Once a job is
COMPLETED or FAILED it is never written again, so the terminal event (and the
stage listener call that follows it) happens exactly once.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import redis
from redis.exceptions import WatchError

from reality_maker.config import Settings, get_settings
from reality_maker.errors import InvalidPayloadError, UnknownStageError, is_retryable
from reality_maker.models import JobState, JobStatusView
from reality_maker.services.project_store import connect_redis

logger = logging.getLogger(__name__)

STAGES = ("analysis", "showrunner", "narrator", "editing", "export")

STALLED_REASON = "Job stalled more than allowable limit"


@dataclass
class Job:
    """The view of a claimed job handed to a stage executor."""
    id: str
    stage: str
    data: Dict[str, Any]
    attempts: int = 0
    max_attempts: int = 3
    progress: int = 0
    reporter: Optional[Callable[[str, int], bool]] = field(default=None, repr=False, compare=False)

    @property
    def project_id(self) -> str:
        return self.data.get("project_id", "")

    def report_progress(self, value: float) -> None:
        value = max(0, min(100, int(value)))
        if self.reporter is not None:
            self.reporter(self.id, value)
        self.progress = max(self.progress, value)

    @classmethod
    def from_record(cls, record: Dict[str, Any], reporter=None) -> "Job":
        return cls(
            id=record["job_id"],
            stage=record["stage"],
            data=dict(record.get("data") or {}),
            attempts=int(record.get("attempts", 0)),
            max_attempts=int(record.get("max_attempts", 3)),
            progress=int(record.get("progress", 0)),
            reporter=reporter,
        )


class StageListener:
    """Receives the one-time terminal events of a stage's jobs."""

    def job_completed(self, job: Job, result: Dict[str, Any]) -> None:
        pass

    def job_failed(self, job: Job, reason: str) -> None:
        pass


def validate_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Payloads carry identifiers only: strings or lists of strings."""
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Job payload must be an object")
    for key, value in payload.items():
        if not isinstance(key, str):
            raise InvalidPayloadError(f"Payload key {key!r} must be a string")
        if isinstance(value, str):
            continue
        if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
            continue
        raise InvalidPayloadError(f"Payload field '{key}' must be an identifier or a list of identifiers")
    return {k: list(v) if isinstance(v, tuple) else v for k, v in payload.items()}


class JobDispatcher:
    """
    Queues, retries and progress for stage jobs.

    A job is attempted up to queue.max_attempts times. Retryable failures are
    rescheduled after backoff_base_seconds * 2 ** (attempt - 1); anything else,
    or the last attempt, fails the job permanently.
    """

    def __init__(
        self,
        redis_client: Optional["redis.Redis"] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.redis = redis_client if redis_client is not None else connect_redis(self.settings)
        self.clock = clock
        self.job_prefix = "job:"
        self._listeners: Dict[str, StageListener] = {}
        self._terminal_states = {JobState.COMPLETED.value, JobState.FAILED.value}

    # --- keys -------------------------------------------------------------

    def _job_key(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    @staticmethod
    def _queue_key(stage: str, kind: str) -> str:
        return f"pipeline:{stage}:{kind}"

    def _check_stage(self, stage: str) -> str:
        if stage not in STAGES:
            raise UnknownStageError(stage)
        return stage

    # --- listeners --------------------------------------------------------

    def register_listener(self, stage: str, listener: StageListener) -> None:
        """Attach the single listener for a stage's terminal job events."""
        self._check_stage(stage)
        if stage in self._listeners:
            raise ValueError(f"A listener is already registered for stage '{stage}'")
        self._listeners[stage] = listener

    # --- atomic job updates ----------------------------------------------

    def _publish_payload(self, job_data: dict) -> str:
        return json.dumps(
            {
                "job_id": job_data.get("job_id"),
                "stage": job_data.get("stage"),
                "state": job_data.get("state"),
                "progress": job_data.get("progress"),
                "attempts": job_data.get("attempts"),
            }
        )

    def _update_job_atomic(
        self,
        job_id: str,
        apply_fn: Callable[[dict], bool],
        max_retries: int = 10,
    ) -> Optional[dict]:
        """
        Atomically update a job using Redis WATCH/MULTI.

        Terminal jobs (COMPLETED/FAILED) are never updated again.

        Returns:
            The written job document, or None if the job is missing, terminal,
            or apply_fn made no change.
        """
        key = self._job_key(job_id)

        for _ in range(max_retries):
            pipe = self.redis.pipeline()
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if not raw:
                    pipe.unwatch()
                    return None

                job_data = json.loads(raw)
                if job_data.get("state") in self._terminal_states:
                    pipe.unwatch()
                    return None

                if not apply_fn(job_data):
                    pipe.unwatch()
                    return None

                job_data["updated_at"] = datetime.utcnow().isoformat()

                pipe.multi()
                pipe.set(key, json.dumps(job_data))
                pipe.publish(f"job_updates:{job_id}", self._publish_payload(job_data))
                pipe.execute()
                return job_data
            except WatchError:
                # Another writer updated the key; retry.
                continue
            finally:
                pipe.reset()

        logger.warning("Gave up updating job %s after %d conflicting writes", job_id, max_retries)
        return None

    # --- submission & claiming -------------------------------------------

    def submit(self, stage: str, payload: Dict[str, Any]) -> str:
        """Enqueue a job for `stage` and return its id."""
        self._check_stage(stage)
        data = validate_payload(payload)

        job_id = str(uuid.uuid4())
        now = datetime.utcnow().isoformat()
        job_data = {
            "job_id": job_id,
            "stage": stage,
            "data": data,
            "state": JobState.WAITING.value,
            "attempts": 0,
            "max_attempts": self.settings.queue.max_attempts,
            "progress": 0,
            "result": None,
            "failure_reason": None,
            "ready_at": self.clock(),
            "created_at": now,
            "updated_at": now,
        }

        pipe = self.redis.pipeline()
        pipe.set(self._job_key(job_id), json.dumps(job_data))
        pipe.lpush(self._queue_key(stage, "wait"), job_id)
        pipe.execute()

        logger.info("Queued %s job %s %s", stage, job_id, data)
        return job_id

    def get_job(self, job_id: str) -> Optional[dict]:
        raw = self.redis.get(self._job_key(job_id))
        if raw:
            return json.loads(raw)
        return None

    def promote_delayed(self, stage: str) -> int:
        """Move delayed jobs whose backoff has elapsed onto the wait list."""
        delayed_key = self._queue_key(stage, "delayed")
        due = self.redis.zrangebyscore(delayed_key, 0, self.clock())
        promoted = 0
        for job_id in due:
            # zrem decides which poller owns the promotion.
            if self.redis.zrem(delayed_key, job_id):
                self.redis.lpush(self._queue_key(stage, "wait"), job_id)
                promoted += 1
        return promoted

    def claim(self, stage: str) -> Optional[Job]:
        """
        Take the next runnable job for `stage`, or None when the queue is empty.

        Claiming starts a new attempt: attempts is incremented and progress
        restarts at 0.
        """
        self._check_stage(stage)
        self.promote_delayed(stage)
        lease = self.settings.queue.lease_seconds

        while True:
            job_id = self.redis.rpop(self._queue_key(stage, "wait"))
            if not job_id:
                return None

            def apply(job_data: Dict[str, Any]) -> bool:
                if job_data.get("state") != JobState.WAITING.value:
                    return False
                job_data["state"] = JobState.ACTIVE.value
                job_data["attempts"] = int(job_data.get("attempts", 0)) + 1
                job_data["progress"] = 0
                job_data["started_at"] = datetime.utcnow().isoformat()
                return True

            self.redis.zadd(self._queue_key(stage, "active"), {job_id: self.clock() + lease})
            record = self._update_job_atomic(job_id, apply)
            if record is None:
                # Stale list entry (job finished or deleted meanwhile).
                self.redis.zrem(self._queue_key(stage, "active"), job_id)
                continue

            logger.info(
                "Claimed %s job %s (attempt %d/%d)",
                stage, job_id, record["attempts"], record["max_attempts"],
            )
            return Job.from_record(record, reporter=self.report_progress)

    # --- progress ---------------------------------------------------------

    def report_progress(self, job_id: str, value: float) -> bool:
        """
        Record progress for an active job. Values are clamped to [0, 100] and
        only ever increase within an attempt. Reporting renews the job's lease.
        """
        value = max(0, min(100, int(value)))
        stage_holder: Dict[str, str] = {}

        def apply(job_data: Dict[str, Any]) -> bool:
            stage_holder["stage"] = job_data.get("stage", "")
            if job_data.get("state") != JobState.ACTIVE.value:
                return False
            if value <= int(job_data.get("progress", 0)):
                return False
            job_data["progress"] = value
            return True

        record = self._update_job_atomic(job_id, apply)
        stage = stage_holder.get("stage")
        if stage:
            self.redis.zadd(
                self._queue_key(stage, "active"),
                {job_id: self.clock() + self.settings.queue.lease_seconds},
                xx=True,
            )
        if record is not None:
            logger.debug("%s job %s progress %d%%", record["stage"], job_id, value)
        return record is not None

    # --- terminal events --------------------------------------------------

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> bool:
        """
        Mark a job COMPLETED. Only the call that applies the terminal write
        notifies the stage listener.
        """
        result = result or {}

        def apply(job_data: Dict[str, Any]) -> bool:
            job_data["state"] = JobState.COMPLETED.value
            job_data["progress"] = 100
            job_data["result"] = result
            job_data["finished_at"] = datetime.utcnow().isoformat()
            return True

        record = self._update_job_atomic(job_id, apply)
        if record is None:
            return False

        stage = record["stage"]
        self.redis.zrem(self._queue_key(stage, "active"), job_id)
        self._retain(stage, "completed", job_id, self.settings.queue.keep_completed)
        logger.info("%s job %s completed", stage, job_id)

        listener = self._listeners.get(stage)
        if listener is not None:
            self._notify(listener.job_completed, Job.from_record(record), result)
        return True

    def fail(self, job_id: str, error: BaseException) -> bool:
        """
        Handle an exception raised by a stage executor.

        Retryable errors with attempts left go back to the queue after backoff.
        Returns True if the job was permanently failed by this call.
        """
        record = self.get_job(job_id)
        if record is None or record.get("state") in self._terminal_states:
            return False

        attempts = int(record.get("attempts", 0))
        max_attempts = int(record.get("max_attempts", self.settings.queue.max_attempts))
        reason = str(error) or type(error).__name__

        if is_retryable(error) and attempts < max_attempts:
            self._schedule_retry(record["stage"], job_id, attempts, reason)
            return False
        return self._fail_permanently(job_id, reason)

    def backoff_seconds(self, attempt: int) -> float:
        return self.settings.queue.backoff_base_seconds * (2 ** max(0, attempt - 1))

    def _schedule_retry(self, stage: str, job_id: str, attempt: int, reason: str) -> None:
        delay = self.backoff_seconds(attempt)
        ready_at = self.clock() + delay

        def apply(job_data: Dict[str, Any]) -> bool:
            job_data["state"] = JobState.WAITING.value
            job_data["failure_reason"] = reason
            job_data["ready_at"] = ready_at
            return True

        if self._update_job_atomic(job_id, apply) is None:
            return

        pipe = self.redis.pipeline()
        pipe.zrem(self._queue_key(stage, "active"), job_id)
        pipe.zadd(self._queue_key(stage, "delayed"), {job_id: ready_at})
        pipe.execute()
        logger.warning(
            "%s job %s attempt %d failed, retrying in %.1fs: %s",
            stage, job_id, attempt, delay, reason,
        )

    def _fail_permanently(self, job_id: str, reason: str) -> bool:
        def apply(job_data: Dict[str, Any]) -> bool:
            job_data["state"] = JobState.FAILED.value
            job_data["failure_reason"] = reason
            job_data["finished_at"] = datetime.utcnow().isoformat()
            return True

        record = self._update_job_atomic(job_id, apply)
        if record is None:
            return False

        stage = record["stage"]
        pipe = self.redis.pipeline()
        pipe.zrem(self._queue_key(stage, "active"), job_id)
        pipe.zrem(self._queue_key(stage, "delayed"), job_id)
        pipe.execute()
        self._retain(stage, "failed", job_id, self.settings.queue.keep_failed)
        logger.error("%s job %s failed permanently: %s", stage, job_id, reason)

        listener = self._listeners.get(stage)
        if listener is not None:
            self._notify(listener.job_failed, Job.from_record(record), reason)
        return True

    def _notify(self, callback: Callable[..., None], job: Job, arg: Any) -> None:
        try:
            callback(job, arg)
        except Exception:
            # The job outcome is already durable; a listener bug must not flip it.
            logger.exception("Listener for %s job %s raised", job.stage, job.id)

    def _retain(self, stage: str, kind: str, job_id: str, keep: int) -> None:
        """Keep the last `keep` finished job documents per stage; drop older ones."""
        list_key = self._queue_key(stage, kind)
        self.redis.lpush(list_key, job_id)
        if keep <= 0:
            return
        expired = self.redis.lrange(list_key, keep, -1)
        if expired:
            pipe = self.redis.pipeline()
            pipe.ltrim(list_key, 0, keep - 1)
            pipe.delete(*[self._job_key(jid) for jid in expired])
            pipe.execute()

    # --- crash recovery ---------------------------------------------------

    def requeue_stalled(self, stage: str) -> int:
        """
        Return active jobs whose lease expired (worker died) to the wait list,
        or fail them if they have used every attempt.
        """
        self._check_stage(stage)
        active_key = self._queue_key(stage, "active")
        expired = self.redis.zrangebyscore(active_key, 0, self.clock())
        requeued = 0

        for job_id in expired:
            if not self.redis.zrem(active_key, job_id):
                continue
            record = self.get_job(job_id)
            if record is None or record.get("state") != JobState.ACTIVE.value:
                continue

            if int(record.get("attempts", 0)) >= int(record.get("max_attempts", 1)):
                self._fail_permanently(job_id, STALLED_REASON)
                continue

            def apply(job_data: Dict[str, Any]) -> bool:
                if job_data.get("state") != JobState.ACTIVE.value:
                    return False
                job_data["state"] = JobState.WAITING.value
                return True

            if self._update_job_atomic(job_id, apply) is not None:
                self.redis.lpush(self._queue_key(stage, "wait"), job_id)
                requeued += 1
                logger.warning("Requeued stalled %s job %s", stage, job_id)
        return requeued

    # --- processing -------------------------------------------------------

    def process_next(self, stage: str, handler: Callable[[Job], Dict[str, Any]]) -> Optional[Job]:
        """
        Claim one job and run `handler` on it.

        The handler's return value becomes the job result; an exception goes
        through the retry policy. Returns the claimed job, or None if idle.
        """
        job = self.claim(stage)
        if job is None:
            return None
        try:
            result = handler(job)
        except Exception as e:
            logger.exception("%s job %s raised", stage, job.id)
            self.fail(job.id, e)
            return job
        self.complete(job.id, result)
        return job

    # --- queries ----------------------------------------------------------

    def get_job_status(self, stage: str, job_id: str) -> Optional[JobStatusView]:
        self._check_stage(stage)
        record = self.get_job(job_id)
        if record is None or record.get("stage") != stage:
            return None
        return JobStatusView(
            id=record["job_id"],
            stage=stage,
            state=JobState(record["state"]),
            progress=int(record.get("progress", 0)),
            attempts=int(record.get("attempts", 0)),
            data=record.get("data") or {},
            result=record.get("result"),
            failure_reason=record.get("failure_reason"),
        )

    def counts(self, stage: str) -> Dict[str, int]:
        self._check_stage(stage)
        return {
            "waiting": self.redis.llen(self._queue_key(stage, "wait")),
            "delayed": self.redis.zcard(self._queue_key(stage, "delayed")),
            "active": self.redis.zcard(self._queue_key(stage, "active")),
            "completed": self.redis.llen(self._queue_key(stage, "completed")),
            "failed": self.redis.llen(self._queue_key(stage, "failed")),
        }
