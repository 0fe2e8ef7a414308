"""
Tests for TrainingJobController.

Event intake, queue processing, retry/park behaviour, deletion handling and
one full run() cycle against the in-memory cluster.
"""

import asyncio

import pytest

from conftest import (
    FakeBackend,
    FakeKubernetesClient,
    make_object,
    make_resource,
    make_spec,
    unreachable,
)
from sagemaker_controller.backend.base import BackendOutcome, SubmitResult
from sagemaker_controller.controller import TrainingJobController
from sagemaker_controller.kubernetes.watcher import ADDED, DELETED, MODIFIED, WatchEvent
from sagemaker_controller.models import JobPhase, JobResource
from sagemaker_controller.retry import RequeueBackoff

KEY = "default/xgboost-mnist"


def slow_backoff() -> RequeueBackoff:
    """Backoff whose timers never fire during a test."""
    return RequeueBackoff(base_delay=30.0, max_delay=30.0, max_retry_seconds=600)


async def drain(controller: TrainingJobController) -> int:
    """Process queued keys inline until the queue is empty."""
    processed = 0
    while len(controller.queue):
        key = await controller.queue.get()
        try:
            await controller.process(key)
        finally:
            controller.queue.done(key)
        processed += 1
    return processed


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def submitted_object(job_name: str = "xgboost-mnist-abc", **kwargs):
    return make_object(status={"phase": "Submitted", "sageMakerTrainingJobName": job_name}, **kwargs)


@pytest.mark.unit
class TestEventIntake:

    @pytest.mark.asyncio
    async def test_added_resource_is_submitted(self, settings, fake_backend, fake_k8s, resource):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)

        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)

        assert len(fake_backend.submit_calls) == 1
        stored = controller.store[KEY]
        assert stored.status.phase == JobPhase.SUBMITTED
        assert stored.backend_job_name == fake_backend.submit_calls[0].job_name

    @pytest.mark.asyncio
    async def test_status_only_update_is_not_queued(self, settings, fake_backend, fake_k8s, resource):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)
        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)

        # Our own status write echoed back by the watch
        echoed = make_resource(status=fake_k8s.objects[KEY]["status"], resource_version="999")
        await controller.handle_event(WatchEvent(MODIFIED, echoed))

        assert len(controller.queue) == 0
        assert controller.store[KEY].resource_version == "999"

    @pytest.mark.asyncio
    async def test_spec_change_is_queued(self, settings, fake_backend, fake_k8s, resource):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)
        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)

        changed = make_resource(
            spec=make_spec(stoppingCondition={"maxRuntimeInSeconds": 3600}),
            status=fake_k8s.objects[KEY]["status"],
        )
        await controller.handle_event(WatchEvent(MODIFIED, changed))

        assert len(controller.queue) == 1
        await drain(controller)
        # Submitted jobs are refreshed, never resubmitted
        assert len(fake_backend.submit_calls) == 1
        assert len(fake_backend.describe_calls) == 1

    @pytest.mark.asyncio
    async def test_duplicate_events_queue_once(self, settings, fake_backend, fake_k8s, resource):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)

        await controller.handle_event(WatchEvent(ADDED, resource))
        await controller.handle_event(WatchEvent(MODIFIED, make_resource(spec=make_spec(stoppingCondition={"maxRuntimeInSeconds": 3600}), resource_version="2")))

        assert len(controller.queue) == 1

    @pytest.mark.asyncio
    async def test_resource_being_deleted_is_skipped(self, settings, fake_backend, fake_k8s):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)
        obj = make_object()
        obj["metadata"]["deletionTimestamp"] = "2026-10-18T10:00:00Z"

        await controller.handle_event(WatchEvent(ADDED, JobResource.from_object(obj)))
        await drain(controller)

        assert fake_backend.submit_calls == []


@pytest.mark.unit
class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retry(self, settings, fake_k8s, resource):
        backend = FakeBackend()
        backend.default_submit = unreachable()
        controller = TrainingJobController(fake_k8s, backend, settings, backoff=slow_backoff())

        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)

        assert controller.queue.is_scheduled(KEY)
        assert controller.backoff.attempts(KEY) == 1
        assert controller.store[KEY].status.phase == JobPhase.PENDING
        assert controller.store[KEY].backend_job_name is None
        controller.queue.shutdown()

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_transient(self, settings, fake_k8s, resource):
        backend = FakeBackend(submit_results=[unreachable(), unreachable()])
        controller = TrainingJobController(fake_k8s, backend, settings)

        await controller.handle_event(WatchEvent(ADDED, resource))
        for _ in range(3):
            await wait_until(lambda: len(controller.queue) > 0)
            await drain(controller)

        assert len(backend.submit_calls) == 3
        assert controller.store[KEY].status.phase == JobPhase.SUBMITTED
        assert controller.backoff.attempts(KEY) == 0

    @pytest.mark.asyncio
    async def test_exhausted_horizon_parks_resource(self, settings, fake_k8s, resource):
        backend = FakeBackend()
        backend.default_submit = unreachable()
        backoff = RequeueBackoff(base_delay=0.01, max_delay=0.05, max_retry_seconds=0)
        controller = TrainingJobController(fake_k8s, backend, settings, backoff=backoff)

        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)
        await asyncio.gather(*controller._park_tasks)

        assert not controller.queue.is_scheduled(KEY)
        assert controller._park_tasks == set()
        status = fake_k8s.objects[KEY]["status"]
        assert status["phase"] == "Pending"
        assert "Retry horizon exhausted" in status["reason"]
        assert "sageMakerTrainingJobName" not in status

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, settings, fake_k8s, resource):
        backend = FakeBackend(submit_results=[
            SubmitResult(outcome=BackendOutcome.PERMANENT, reason="ValidationException: bad instance type"),
        ])
        controller = TrainingJobController(fake_k8s, backend, settings)

        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)

        assert not controller.queue.is_scheduled(KEY)
        assert controller.store[KEY].status.phase == JobPhase.FAILED

    @pytest.mark.asyncio
    async def test_resync_skips_keys_waiting_on_backoff(self, settings, fake_k8s):
        backend = FakeBackend()
        backend.default_submit = unreachable()
        other = make_object(name="resnet", uid="11111111-2222-3333-4444-555555555555")
        fake_k8s.put(other)
        controller = TrainingJobController(fake_k8s, backend, settings, backoff=slow_backoff())

        await controller.handle_event(WatchEvent(ADDED, make_resource()))
        await drain(controller)
        backend.default_submit = None
        await controller.handle_event(WatchEvent(ADDED, JobResource.from_object(other)))
        await drain(controller)

        assert controller.resync() == 1
        controller.queue.shutdown()


@pytest.mark.unit
class TestDeletion:

    @pytest.mark.asyncio
    async def test_delete_submitted_cancels_once(self, settings, fake_backend, fake_k8s, resource):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)
        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)
        job_name = controller.store[KEY].backend_job_name

        final = controller.store[KEY]
        await controller.handle_event(WatchEvent(DELETED, final))
        await drain(controller)
        # Deleted again as seen by a later relist
        await controller.handle_event(WatchEvent(DELETED, final))
        await drain(controller)

        assert KEY not in controller.store
        assert len(fake_backend.cancel_calls) == 1
        assert fake_backend.cancel_calls[0][0] == job_name

    @pytest.mark.asyncio
    async def test_delete_uses_stored_status_when_event_is_stale(self, settings, fake_backend, fake_k8s, resource):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)
        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)

        # DELETED carrying the pre-submission snapshot
        await controller.handle_event(WatchEvent(DELETED, resource))
        await drain(controller)

        assert len(fake_backend.cancel_calls) == 1

    @pytest.mark.asyncio
    async def test_delete_during_submission_cancels_once(self, settings, fake_k8s, resource):
        backend = FakeBackend(submit_delay=0.1)
        controller = TrainingJobController(fake_k8s, backend, settings)
        await controller.handle_event(WatchEvent(ADDED, resource))

        key = await controller.queue.get()
        in_flight = asyncio.create_task(controller.process(key))
        await wait_until(lambda: len(backend.submit_calls) == 1)
        fake_k8s.remove("default", "xgboost-mnist")
        # The final event still carries the pre-submission status
        await controller.handle_event(WatchEvent(DELETED, resource))
        await in_flight
        controller.queue.done(key)
        await drain(controller)
        await controller.handle_relist([])
        await drain(controller)

        assert KEY not in controller.store
        assert len(backend.submit_calls) == 1
        assert [call[0] for call in backend.cancel_calls] == [backend.submit_calls[0].job_name]

    @pytest.mark.asyncio
    async def test_delete_unsubmitted_makes_no_backend_call(self, settings, fake_k8s, resource):
        backend = FakeBackend()
        backend.default_submit = unreachable()
        controller = TrainingJobController(fake_k8s, backend, settings, backoff=slow_backoff())
        await controller.handle_event(WatchEvent(ADDED, resource))
        await drain(controller)
        assert controller.queue.is_scheduled(KEY)

        await controller.handle_event(WatchEvent(DELETED, resource))
        await drain(controller)

        assert not controller.queue.is_scheduled(KEY)
        assert backend.cancel_calls == []
        assert len(backend.submit_calls) == 1

    @pytest.mark.asyncio
    async def test_relist_finalizes_vanished_resources(self, settings, fake_backend):
        k8s = FakeKubernetesClient([submitted_object()])
        controller = TrainingJobController(k8s, fake_backend, settings)
        await controller.handle_relist([make_resource(status={"phase": "Submitted", "sageMakerTrainingJobName": "xgboost-mnist-abc"})])
        await drain(controller)

        await controller.handle_relist([])
        await drain(controller)

        assert [call[0] for call in fake_backend.cancel_calls] == ["xgboost-mnist-abc"]

    @pytest.mark.asyncio
    async def test_recreated_resource_cancels_old_and_submits_new(self, settings, fake_backend):
        k8s = FakeKubernetesClient([make_object()])
        controller = TrainingJobController(k8s, fake_backend, settings)
        old = make_resource(status={"phase": "Submitted", "sageMakerTrainingJobName": "xgboost-mnist-old"})
        await controller.handle_event(WatchEvent(ADDED, old))
        await drain(controller)

        recreated = make_resource(uid="99999999-8888-7777-6666-555555555555")
        await controller.handle_event(WatchEvent(ADDED, recreated))
        await drain(controller)

        assert [call[0] for call in fake_backend.cancel_calls] == ["xgboost-mnist-old"]
        assert len(fake_backend.submit_calls) == 1
        assert fake_backend.submit_calls[0].job_name.endswith("99999999888877776666555555555555")


@pytest.mark.integration
class TestRun:

    @pytest.mark.asyncio
    async def test_run_submits_and_cancels_on_delete(self, settings, fake_backend, fake_k8s):
        controller = TrainingJobController(fake_k8s, fake_backend, settings)
        task = asyncio.create_task(controller.run())

        try:
            await wait_until(lambda: fake_k8s.objects[KEY].get("status", {}).get("sageMakerTrainingJobName"))
            final = dict(fake_k8s.objects[KEY])
            fake_k8s.remove("default", "xgboost-mnist")
            fake_k8s.events.append({"type": "DELETED", "object": final})

            await wait_until(lambda: len(fake_backend.cancel_calls) == 1)
        finally:
            controller.stop()
            await asyncio.wait_for(task, timeout=3.0)

        assert len(fake_backend.submit_calls) == 1
        assert fake_backend.cancel_calls[0][0] == final["status"]["sageMakerTrainingJobName"]

    @pytest.mark.asyncio
    async def test_run_processes_resources_in_parallel(self, settings):
        backend = FakeBackend(submit_delay=0.2)
        k8s = FakeKubernetesClient([
            make_object(name="job-a", uid="aaaaaaaa-0000-0000-0000-000000000001"),
            make_object(name="job-b", uid="bbbbbbbb-0000-0000-0000-000000000002"),
        ])
        controller = TrainingJobController(k8s, backend, settings)
        task = asyncio.create_task(controller.run())

        try:
            # Both submissions are in flight before the first finishes
            await wait_until(lambda: len(backend.submit_calls) == 2, timeout=0.15)
            await wait_until(lambda: all(
                o.get("status", {}).get("phase") == "Submitted" for o in k8s.objects.values()
            ))
        finally:
            controller.stop()
            await asyncio.wait_for(task, timeout=3.0)
