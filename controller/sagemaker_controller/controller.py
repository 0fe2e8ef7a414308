"""
TrainingJob Controller

Wires the watcher, the resource store, the work queue and the reconciler:

    watch events -> store (latest snapshot per key) -> work queue -> workers
                                                                     |
                                               reconcile / refresh / finalize
                                                                     |
                                                      status patches -> API

Concurrency:
- worker_count workers drain the queue; the queue never gives the same key
  to two workers, so a resource is reconciled by one worker at a time while
  unrelated resources proceed in parallel
- Transient failures are requeued with RequeueBackoff; once the retry
  horizon is exhausted the resource is parked until the next change/resync
- Deletion drops pending retries and queues a finalize (best-effort cancel)
  behind any in-flight reconcile of the same key
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from .backend import BaseTrainingBackend
from .config import get_settings
from .kubernetes.watcher import ADDED, DELETED, MODIFIED, TrainingJobWatcher, WatchEvent
from .models import JobResource
from .reconciler import ReconcileResult, Reconciler
from .retry import RequeueBackoff
from .status import StatusReporter
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class TrainingJobController:
    """
    Runs the TrainingJob control loop.

    Args:
        k8s_client: KubernetesClient
        backend: BaseTrainingBackend implementation
        settings: Settings (default: get_settings())
        reconciler: Optional pre-built Reconciler (tests)
        backoff: Optional pre-built RequeueBackoff (tests)
    """

    def __init__(
        self,
        k8s_client,
        backend: BaseTrainingBackend,
        settings=None,
        reconciler: Optional[Reconciler] = None,
        backoff: Optional[RequeueBackoff] = None,
    ):
        self.settings = settings or get_settings()
        self.k8s_client = k8s_client
        self.reporter = StatusReporter(k8s_client)
        self.reconciler = reconciler or Reconciler(backend, self.reporter, self.settings)
        self.backoff = backoff or RequeueBackoff(
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            max_retry_seconds=self.settings.max_retry_seconds,
        )
        self.queue = WorkQueue()
        self.watcher = TrainingJobWatcher(k8s_client, self.handle_relist, self.handle_event)

        self.store: Dict[str, JobResource] = {}       # key -> latest snapshot
        self.tombstones: Dict[str, JobResource] = {}  # key -> deleted snapshot awaiting finalize
        self._last_reason: Dict[str, Optional[str]] = {}
        self._tasks: List[asyncio.Task] = []
        self._park_tasks: Set[asyncio.Task] = set()  # in flight only, removed when done
        self._stopped = asyncio.Event()

        logger.info(f"[CONTROLLER] TrainingJob controller initialized with {self.settings.worker_count} workers")

    # =========================================================================
    # EVENT INTAKE
    # =========================================================================

    async def handle_event(self, event: WatchEvent) -> None:
        """Apply a watch event to the store and queue the affected key."""
        resource = event.resource
        key = resource.key

        if event.type == DELETED:
            self._handle_deleted(resource)
            return

        if event.type not in (ADDED, MODIFIED):
            return

        previous = self.store.get(key)
        self.store[key] = resource

        if previous is not None and previous.uid and resource.uid and previous.uid != resource.uid:
            # Deleted and recreated under the same name between two events
            self._handle_deleted(previous)
            self.store[key] = resource
            return

        if (
            previous is not None
            and previous.spec == resource.spec
            and previous.deletion_timestamp == resource.deletion_timestamp
            and previous.backend_job_name == resource.backend_job_name
        ):
            # Status-only change, typically our own write; a retry may be pending
            return

        self.queue.add(key)

    async def handle_relist(self, resources: List[JobResource]) -> None:
        """Reconcile the store against a full list: new/changed queued, vanished finalized."""
        listed = {resource.key for resource in resources}
        for key in list(self.store):
            if key not in listed:
                self._handle_deleted(self.store[key])

        for resource in resources:
            await self.handle_event(WatchEvent(type=MODIFIED, resource=resource))

    def _handle_deleted(self, resource: JobResource) -> None:
        key = resource.key
        known = self.store.pop(key, None)
        # The store may have a fresher status than the final event carries
        if known is not None and known.uid == resource.uid and known.is_submitted and not resource.is_submitted:
            resource = resource.with_status(known.status)

        self.queue.cancel_delayed(key)
        self.backoff.forget(key)
        self._last_reason.pop(key, None)
        self.tombstones[key] = resource
        self.queue.add(key)
        logger.info(f"[CONTROLLER] {key} deleted")

    # =========================================================================
    # WORKERS
    # =========================================================================

    async def worker(self, worker_id: int) -> None:
        logger.debug(f"[CONTROLLER] Worker {worker_id} started")
        while True:
            key = await self.queue.get()
            if key is None:
                break
            try:
                await self.process(key)
            except Exception as e:
                logger.error(f"[CONTROLLER] Unexpected error processing {key}: {e}", exc_info=True)
                if key in self.store:
                    self._requeue(key, str(e))
            finally:
                self.queue.done(key)
        logger.debug(f"[CONTROLLER] Worker {worker_id} stopped")

    async def process(self, key: str) -> None:
        """Handle one key: finalize a tombstone, then reconcile/refresh the live resource."""
        tombstone = self.tombstones.pop(key, None)
        if tombstone is not None:
            await self.reconciler.finalize(tombstone)

        resource = self.store.get(key)
        if resource is None:
            return

        if resource.deletion_timestamp:
            logger.debug(f"[CONTROLLER] {key} is being deleted, skipping")
            return

        if resource.is_submitted:
            result = await self.reconciler.refresh(resource)
        else:
            result = await self.reconciler.reconcile(resource)

        self._apply_result(key, result)

    def _apply_result(self, key: str, result: ReconcileResult) -> None:
        if key in self.store:
            self.store[key] = result.resource
        elif key in self.tombstones and result.resource.uid == self.tombstones[key].uid:
            # Deleted while we were talking to the backend; finalize with what we learned
            self.tombstones[key] = result.resource

        if result.should_retry and key in self.store:
            self._requeue(key, result.reason)
        else:
            self.backoff.forget(key)
            self._last_reason.pop(key, None)

    def _requeue(self, key: str, reason: Optional[str]) -> None:
        self._last_reason[key] = reason
        delay = self.backoff.next_delay(key)
        if delay is None:
            logger.warning(f"[CONTROLLER] {key} exhausted its retry horizon, parking until next resync")
            self.backoff.forget(key)
            task = asyncio.create_task(self._park(key))
            self._park_tasks.add(task)
            task.add_done_callback(self._park_tasks.discard)
            return
        logger.info(f"[CONTROLLER] Retrying {key} in {delay:.1f}s (attempt {self.backoff.attempts(key)})")
        self.queue.add_after(key, delay)

    async def _park(self, key: str) -> None:
        resource = self.store.get(key)
        if resource is None:
            return
        try:
            result = await self.reconciler.park(resource, self._last_reason.pop(key, None))
        except Exception as e:
            logger.error(f"[CONTROLLER] Could not record parked state of {key}: {e}")
            return
        if key in self.store and self.store[key].uid == result.resource.uid:
            self.store[key] = result.resource

    # =========================================================================
    # RESYNC
    # =========================================================================

    def resync(self) -> int:
        """Queue every known resource that is not already waiting on a backoff timer."""
        queued = 0
        for key in list(self.store):
            if self.queue.is_scheduled(key):
                continue
            self.queue.add(key)
            queued += 1
        logger.debug(f"[CONTROLLER] Resync queued {queued} TrainingJobs")
        return queued

    async def _resync_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.settings.resync_seconds)
            except asyncio.TimeoutError:
                self.resync()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def run(self) -> None:
        """Run watcher, workers and resync until stop() is called."""
        logger.info("[CONTROLLER] Starting TrainingJob controller")
        self._tasks = [
            asyncio.create_task(self.worker(i)) for i in range(self.settings.worker_count)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        watcher_task = asyncio.create_task(self.watcher.run())

        try:
            await self._stopped.wait()
        finally:
            self.watcher.stop()
            self.queue.shutdown()
            watcher_task.cancel()
            tasks = self._tasks + list(self._park_tasks)
            for task in tasks:
                task.cancel()
            await asyncio.gather(watcher_task, *tasks, return_exceptions=True)
            logger.info("[CONTROLLER] TrainingJob controller stopped")

    def stop(self) -> None:
        self._stopped.set()
