"""
Smoke test for terminal job writes and project status races against a real Redis.

Run from repo root:
  python backend/scripts/dispatcher_smoke.py
"""

from __future__ import annotations

import sys
import threading
import time


def main() -> int:
    # Allow `from reality_maker...` imports when running directly from repo root.
    sys.path.insert(0, "backend")

    from reality_maker.errors import PreconditionError  # noqa: WPS433
    from reality_maker.models import Project, ProjectStatus  # noqa: WPS433
    from reality_maker.services.job_dispatcher import JobDispatcher, StageListener  # noqa: WPS433
    from reality_maker.services.project_state import ProjectStateMachine  # noqa: WPS433
    from reality_maker.services.project_store import ProjectStore  # noqa: WPS433

    class Counter(StageListener):
        def __init__(self):
            self.completed = 0
            self.failed = 0

        def job_completed(self, job, result):
            self.completed += 1

        def job_failed(self, job, reason):
            self.failed += 1

    dispatcher = JobDispatcher()
    dispatcher.redis.ping()
    print("redis:ping ok")

    counter = Counter()
    dispatcher.register_listener("export", counter)
    created = []

    # 1) Completed should not flip to failed
    job1 = dispatcher.submit("export", {"project_id": "smoke"})
    created.append(job1)
    dispatcher.claim("export")
    dispatcher.complete(job1, {"episode": "out1"})
    applied = dispatcher.fail(job1, RuntimeError("late error"))
    print("test1 late-fail-applied", applied)
    print("test1 state", dispatcher.get_job(job1)["state"])
    assert dispatcher.get_job(job1)["state"] == "completed"
    assert applied is False

    # 2) Failed should not flip to completed
    job2 = dispatcher.submit("export", {"project_id": "smoke"})
    created.append(job2)
    dispatcher.claim("export")
    dispatcher.fail(job2, PreconditionError("cancelled"))
    applied2 = dispatcher.complete(job2, {"episode": "out2"})
    print("test2 complete-after-fail-applied", applied2)
    print("test2 state", dispatcher.get_job(job2)["state"])
    assert dispatcher.get_job(job2)["state"] == "failed"
    assert applied2 is False

    # 3) Concurrency: one completes, one fails; exactly one listener call.
    job3 = dispatcher.submit("export", {"project_id": "smoke"})
    created.append(job3)
    dispatcher.claim("export")
    before = counter.completed + counter.failed
    results = []

    def do_complete() -> None:
        results.append(("complete", dispatcher.complete(job3, {})))

    def do_fail() -> None:
        time.sleep(0.01)
        results.append(("fail", dispatcher.fail(job3, PreconditionError("boom"))))

    t1 = threading.Thread(target=do_complete)
    t2 = threading.Thread(target=do_fail)
    t1.start()
    t2.start()
    t1.join()
    t2.join()

    print("test3 results", results)
    print("test3 final state", dispatcher.get_job(job3)["state"])
    assert dispatcher.get_job(job3)["state"] in ("completed", "failed")
    assert counter.completed + counter.failed - before == 1

    # 4) Project status: racing advance vs. fail leaves a terminal or advanced project, never both.
    store = ProjectStore(dispatcher.redis, dispatcher.settings)
    state = ProjectStateMachine(store)
    store.create_project(Project(id="smoke", title="smoke", status=ProjectStatus.EXPORTING))
    outcomes = []

    def do_advance() -> None:
        try:
            outcomes.append(("advance", state.transition("smoke", ProjectStatus.COMPLETED)))
        except PreconditionError as e:
            outcomes.append(("advance", str(e)))

    def do_cancel() -> None:
        outcomes.append(("cancel", state.fail("smoke", "Cancelled")))

    t1 = threading.Thread(target=do_advance)
    t2 = threading.Thread(target=do_cancel)
    t1.start()
    t2.start()
    t1.join()
    t2.join()

    final = state.get("smoke").status
    print("test4 outcomes", outcomes)
    print("test4 final status", final.value)
    assert final in (ProjectStatus.COMPLETED, ProjectStatus.FAILED)

    # Cleanup
    store.delete_project("smoke")
    for job_id in created:
        dispatcher.redis.delete(f"job:{job_id}")
        dispatcher.redis.lrem("pipeline:export:completed", 0, job_id)
        dispatcher.redis.lrem("pipeline:export:failed", 0, job_id)

    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
