"""
Tests for the scheduler harness

Validates:
- Draining a queue one job at a time
- Errors inside a handler never escape a tick
- Interval jobs are registered with max_instances=1
"""

import pytest
from unittest.mock import AsyncMock

# Configure pytest-asyncio
pytestmark = pytest.mark.asyncio(loop_scope="function")

from conftest import make_leads
from lead_import_worker import WORKER_NAME
from scheduler_worker import WorkerScheduler, drain_queue
from services.job_queue import AdmissionLimiter, STATUS_COMPLETED, STATUS_PENDING_RETRY
from services.template_sync_worker import QUEUE_NAME


@pytest.fixture
def worker_scheduler(fake_db):
    worker_scheduler = WorkerScheduler(fake_db, poll_seconds=10)
    for queue in worker_scheduler.queues.values():
        queue.limiter = AdmissionLimiter(interval=0)
    return worker_scheduler


class TestDrain:

    async def test_drains_all_import_jobs(self, fake_db, worker_scheduler):
        queue = worker_scheduler.queue(WORKER_NAME)
        first = await queue.enqueue({"leads_to_insert": make_leads(3)})
        second = await queue.enqueue({"leads_to_insert": make_leads(2, start=3)})

        processed = await worker_scheduler.process_lead_import_jobs()

        assert processed == 2
        assert (await queue.get(first.job_id))["status"] == STATUS_COMPLETED
        assert (await queue.get(second.job_id))["status"] == STATUS_COMPLETED
        assert len(fake_db.leads.docs) == 5

    async def test_jobs_run_sequentially(self, fake_db, worker_scheduler):
        """Concurrency 1: a job is claimed only after the previous one finished"""
        queue = worker_scheduler.queue(WORKER_NAME)
        await queue.enqueue({"leads_to_insert": make_leads(1)})
        await queue.enqueue({"leads_to_insert": make_leads(1)})
        active_counts = []

        async def handler(db, queue, job):
            active_counts.append(sum(1 for d in fake_db.import_jobs.docs if d["status"] == "active"))
            await queue.complete(job["job_id"], {})

        await drain_queue(fake_db, queue, handler)

        assert active_counts == [1, 1]

    async def test_handler_exception_is_contained(self, fake_db, worker_scheduler):
        queue = worker_scheduler.queue(WORKER_NAME)
        handle = await queue.enqueue({"leads_to_insert": make_leads(1)})
        handler = AsyncMock(side_effect=RuntimeError("handler crashed"))

        processed = await drain_queue(fake_db, queue, handler)

        assert processed == 1
        assert (await queue.get(handle.job_id))["status"] == STATUS_PENDING_RETRY

    async def test_settled_job_is_not_failed_again(self, fake_db, worker_scheduler):
        """A handler that raises after recording completion leaves the job completed"""
        queue = worker_scheduler.queue(WORKER_NAME)
        handle = await queue.enqueue({"leads_to_insert": make_leads(1)})

        async def handler(db, queue, job):
            await queue.complete(job["job_id"], {})
            raise RuntimeError("cleanup failed")

        processed = await drain_queue(fake_db, queue, handler)

        assert processed == 1
        assert (await queue.get(handle.job_id))["status"] == STATUS_COMPLETED

    async def test_max_jobs_per_tick(self, fake_db, worker_scheduler):
        queue = worker_scheduler.queue(WORKER_NAME)
        for _ in range(3):
            await queue.enqueue({"leads_to_insert": make_leads(1)})

        processed = await drain_queue(fake_db, queue, AsyncMock(), max_jobs=2)

        assert processed == 2

    async def test_queue_error_does_not_escape(self, fake_db, worker_scheduler):
        fake_db.import_jobs.errors["find"] = RuntimeError("mongo down")

        assert await worker_scheduler.process_lead_import_jobs() == 0

    async def test_template_queue_is_separate(self, fake_db, worker_scheduler):
        await worker_scheduler.queue(WORKER_NAME).enqueue({"leads_to_insert": make_leads(1)})

        assert await worker_scheduler.process_template_sync_jobs() == 0
        assert fake_db.leads.docs == []


class TestLifecycle:

    async def test_start_registers_single_instance_jobs(self, worker_scheduler):
        worker_scheduler.start()
        try:
            info = worker_scheduler.info()
            assert info["running"] is True
            assert {job["id"] for job in info["jobs"]} == {"lead_import_worker", "template_sync_worker"}
            for job in worker_scheduler.scheduler.get_jobs():
                assert job.max_instances == 1
        finally:
            worker_scheduler.stop()

        assert worker_scheduler.info()["running"] is False

    async def test_queues_per_job_type(self, worker_scheduler):
        assert set(worker_scheduler.queues) == {WORKER_NAME, QUEUE_NAME}
