"""
TrainingJob Reconciler

Drives each TrainingJob toward consistency with the training backend.

Lifecycle handled here:
- reconcile: Pending -> Submitted (backend accepted), or -> Failed (permanent
  rejection). Transient failures leave the job Pending and ask for a retry.
- refresh: mirrors backend job state onto a Submitted job's status.
- finalize: best-effort stop of the backend job when the resource is deleted.

At-most-one submission per resource:
- A resource whose status already names a backend job is never resubmitted
- Calls for the same resource are serialized by a per-resource lock
- Accepted submissions are remembered in-process, so a stale snapshot
  (status not yet observed) is answered from memory instead of the backend
- Backend job names are deterministic, so even a second controller replica
  hits ResourceInUse instead of creating a twin job
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from pydantic import ValidationError

from .backend import (
    BackendOutcome,
    BaseTrainingBackend,
    CancelResult,
    SubmissionRequest,
    TERMINAL_BACKEND_STATUSES,
    build_submission,
    cloudwatch_log_url,
    owns_backend_job,
    target_for_spec,
)
from .config import get_settings
from .models import JobPhase, JobResource, TrainingJobSpec, TrainingJobStatus
from .status import StatusReporter, utc_timestamp

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    """What the caller should do after a reconciliation pass."""
    DONE = "done"    # Converged or terminal; wait for the next change
    RETRY = "retry"  # Transient failure; requeue with backoff


@dataclass
class ReconcileResult:
    action: ReconcileAction
    resource: JobResource
    reason: Optional[str] = None

    @property
    def should_retry(self) -> bool:
        return self.action == ReconcileAction.RETRY


def format_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic ValidationError into a one-line reason."""
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "spec"
        parts.append(f"{location}: {err.get('msg')}")
    return "Invalid spec - " + "; ".join(parts)


class Reconciler:
    """
    Reconciles TrainingJob resources against a training backend.

    Args:
        backend: BaseTrainingBackend implementation
        reporter: StatusReporter used to persist status
        settings: Settings (default: get_settings())
    """

    # Deleted identities remembered to suppress a second cancel from a late
    # DELETED or relist; uids are never reused, so old entries can go
    finalized_history = 4096

    def __init__(self, backend: BaseTrainingBackend, reporter: StatusReporter, settings=None):
        self.backend = backend
        self.reporter = reporter
        self.settings = settings or get_settings()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._accepted: Dict[str, TrainingJobStatus] = {}  # identity -> submitted status
        self._finalized: "OrderedDict[str, None]" = OrderedDict()  # recently finalized identities, oldest first

    def _identity(self, resource: JobResource) -> str:
        # uid distinguishes a recreated resource from its deleted predecessor
        return resource.uid or resource.key

    def _lock_for(self, resource: JobResource) -> asyncio.Lock:
        identity = self._identity(resource)
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def reconcile(self, resource: JobResource) -> ReconcileResult:
        """
        Submit the resource's training job unless that already happened.

        Args:
            resource: TrainingJob snapshot; name must be non-empty

        Returns:
            ReconcileResult with DONE or RETRY and the latest known snapshot

        Raises:
            ValueError: If the resource has no name
        """
        if not resource.name:
            raise ValueError("TrainingJob name must be non-empty")

        async with self._lock_for(resource):
            if resource.is_submitted:
                self._accepted.pop(self._identity(resource), None)
                logger.debug(f"[RECONCILE] {resource.key} already submitted as {resource.backend_job_name}")
                return ReconcileResult(ReconcileAction.DONE, resource)

            accepted = self._accepted.get(self._identity(resource))
            if accepted is not None:
                # Status write did not land (or is not observed yet); write it again
                logger.info(f"[RECONCILE] {resource.key} was accepted as {accepted.sagemaker_training_job_name}, re-recording status")
                return await self._persist(resource, accepted, ReconcileAction.DONE)

            if resource.status.phase == JobPhase.FAILED:
                logger.debug(f"[RECONCILE] {resource.key} is Failed, not retrying")
                return ReconcileResult(ReconcileAction.DONE, resource)

            try:
                spec = TrainingJobSpec.model_validate(resource.spec)
            except ValidationError as e:
                return await self._fail(resource, format_validation_error(e))

            request = build_submission(
                resource,
                spec,
                default_region=self.settings.aws_region,
                default_endpoint=self.settings.sagemaker_endpoint_url,
            )

            logger.info(f"[RECONCILE] Submitting {resource.key} as {request.job_name} via {request.target.describe()}")
            result = await self.backend.submit(request)

            if result.outcome == BackendOutcome.ACCEPTED:
                return await self._record_submission(resource, request, result.backend_job_name or request.job_name)

            if result.outcome == BackendOutcome.ALREADY_EXISTS:
                return await self._adopt_existing(resource, spec, request, result.reason)

            if result.outcome.is_retryable:
                return await self._wait(resource, f"Waiting for backend: {result.reason}")

            return await self._fail(resource, result.reason or "Backend rejected the submission")

    async def _adopt_existing(
        self,
        resource: JobResource,
        spec: TrainingJobSpec,
        request: SubmissionRequest,
        submit_reason: Optional[str],
    ) -> ReconcileResult:
        """
        The backend already has a job under our job name.

        Adopted only when describe confirms it exists and it carries this
        resource's owner tag (or, untagged, a uid-derived name). The name is
        never recorded on the strength of the create error alone.
        """
        described = await self.backend.describe(request.job_name, request.target, include_tags=True)
        if described.outcome == BackendOutcome.OK:
            if not owns_backend_job(resource, spec, described.tags):
                return await self._fail(
                    resource,
                    f"trainingJobName {request.job_name} already in use by another training job",
                )
            logger.info(f"[RECONCILE] Adopting existing backend job {request.job_name} for {resource.key}")
            return await self._record_submission(resource, request, request.job_name, described.status, described.secondary_status)
        if described.outcome.is_retryable:
            return await self._wait(resource, f"Waiting for backend: {described.reason}")
        return await self._fail(resource, submit_reason or "Backend job name is already in use")

    async def _record_submission(
        self,
        resource: JobResource,
        request: SubmissionRequest,
        job_name: str,
        backend_status: Optional[str] = None,
        secondary_status: Optional[str] = None,
    ) -> ReconcileResult:
        status = TrainingJobStatus(
            phase=JobPhase.SUBMITTED,
            sagemaker_training_job_name=job_name,
            backend_status=backend_status,
            secondary_status=secondary_status,
            last_check_time=utc_timestamp(),
            cloud_watch_log_url=cloudwatch_log_url(request.target.region, job_name),
        )
        # Remember before writing: a failed write must not lead to a resubmit
        self._accepted[self._identity(resource)] = status
        logger.info(f"[RECONCILE] ✅ {resource.key} submitted as {job_name}")
        return await self._persist(resource, status, ReconcileAction.DONE)

    async def _wait(self, resource: JobResource, reason: str) -> ReconcileResult:
        """Stay Pending and ask for a retry. Status is only written when the reason changes."""
        logger.warning(f"[RECONCILE] {resource.key} still pending: {reason}")
        if resource.status.phase == JobPhase.PENDING and resource.status.reason == reason:
            return ReconcileResult(ReconcileAction.RETRY, resource, reason)

        status = replace(resource.status, phase=JobPhase.PENDING, reason=reason)
        return await self._persist(resource, status, ReconcileAction.RETRY, reason)

    async def _fail(self, resource: JobResource, reason: str) -> ReconcileResult:
        logger.error(f"[RECONCILE] ❌ {resource.key} failed: {reason}")
        status = replace(
            resource.status,
            phase=JobPhase.FAILED,
            reason=reason,
            last_check_time=utc_timestamp(),
        )
        return await self._persist(resource, status, ReconcileAction.DONE, reason)

    async def _persist(
        self,
        resource: JobResource,
        status: TrainingJobStatus,
        action: ReconcileAction,
        reason: Optional[str] = None,
    ) -> ReconcileResult:
        updated = await self.reporter.update(resource, status)
        return ReconcileResult(action, updated or resource.with_status(status), reason)

    async def park(self, resource: JobResource, reason: Optional[str]) -> ReconcileResult:
        """Record that retries stopped for now; the job stays Pending until the next change or resync."""
        message = f"Retry horizon exhausted ({reason or 'backend unavailable'}); will retry on next resync"
        async with self._lock_for(resource):
            if resource.is_submitted or resource.status.phase != JobPhase.PENDING:
                return ReconcileResult(ReconcileAction.DONE, resource)
            status = replace(resource.status, reason=message)
            return await self._persist(resource, status, ReconcileAction.DONE, message)

    # =========================================================================
    # BACKEND STATE
    # =========================================================================

    def needs_refresh(self, resource: JobResource) -> bool:
        return (
            resource.is_submitted
            and resource.status.phase == JobPhase.SUBMITTED
            and resource.status.backend_status not in TERMINAL_BACKEND_STATUSES
        )

    async def refresh(self, resource: JobResource) -> ReconcileResult:
        """
        Mirror the backend job's state onto a Submitted resource.

        Backend Failed or a vanished job turn the resource Failed; the
        recorded backend job name is kept either way.
        """
        if not self.needs_refresh(resource):
            return ReconcileResult(ReconcileAction.DONE, resource)

        async with self._lock_for(resource):
            job_name = resource.backend_job_name
            target = target_for_spec(resource.spec, self.settings.aws_region, self.settings.sagemaker_endpoint_url)
            described = await self.backend.describe(job_name, target)

            if described.outcome.is_retryable:
                logger.warning(f"[RECONCILE] Could not refresh {resource.key}: {described.reason}")
                return ReconcileResult(ReconcileAction.RETRY, resource, described.reason)

            if described.outcome == BackendOutcome.NOT_FOUND:
                reason = f"Backend training job {job_name} no longer exists"
                return await self._fail(resource, reason)

            if described.outcome != BackendOutcome.OK:
                logger.warning(f"[RECONCILE] Refresh of {resource.key} rejected: {described.reason}")
                status = replace(resource.status, reason=described.reason, last_check_time=utc_timestamp())
                return await self._persist(resource, status, ReconcileAction.DONE, described.reason)

            if described.status == "Failed":
                status = replace(
                    resource.status,
                    phase=JobPhase.FAILED,
                    backend_status=described.status,
                    secondary_status=described.secondary_status,
                    reason=described.failure_reason or "Training job failed",
                    last_check_time=utc_timestamp(),
                )
                logger.error(f"[RECONCILE] ❌ Backend job {job_name} failed: {status.reason}")
                return await self._persist(resource, status, ReconcileAction.DONE, status.reason)

            if (
                described.status == resource.status.backend_status
                and described.secondary_status == resource.status.secondary_status
            ):
                return ReconcileResult(ReconcileAction.DONE, resource)

            status = replace(
                resource.status,
                backend_status=described.status,
                secondary_status=described.secondary_status,
                last_check_time=utc_timestamp(),
            )
            return await self._persist(resource, status, ReconcileAction.DONE)

    # =========================================================================
    # DELETION
    # =========================================================================

    async def finalize(self, resource: JobResource) -> Optional[CancelResult]:
        """
        Best-effort cancellation of the backend job of a deleted resource.

        Cancels at most once per resource. Never raises for backend errors.

        Returns:
            The CancelResult, or None when there was nothing to cancel
        """
        identity = self._identity(resource)
        async with self._lock_for(resource):
            if identity in self._finalized:
                return None
            self._finalized[identity] = None
            while len(self._finalized) > self.finalized_history:
                self._finalized.popitem(last=False)

            accepted = self._accepted.pop(identity, None)
            job_name = resource.backend_job_name or (accepted.sagemaker_training_job_name if accepted else None)
            backend_status = resource.status.backend_status or (accepted.backend_status if accepted else None)

        self._locks.pop(identity, None)

        if not job_name:
            logger.info(f"[RECONCILE] {resource.key} deleted before submission, nothing to cancel")
            return None
        if backend_status in TERMINAL_BACKEND_STATUSES:
            logger.info(f"[RECONCILE] {resource.key} deleted, backend job {job_name} already {backend_status}")
            return None

        target = target_for_spec(resource.spec, self.settings.aws_region, self.settings.sagemaker_endpoint_url)
        try:
            result = await self.backend.cancel(job_name, target)
        except Exception as e:
            logger.error(f"[RECONCILE] Cancel of {job_name} raised: {e}", exc_info=True)
            return None

        if result.outcome in (BackendOutcome.OK, BackendOutcome.ALREADY_TERMINAL):
            logger.info(f"[RECONCILE] {resource.key} deleted, backend job {job_name}: {result.outcome.value}")
        else:
            logger.warning(f"[RECONCILE] Best-effort cancel of {job_name} failed ({result.outcome.value}): {result.reason}")
        return result
