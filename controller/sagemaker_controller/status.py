"""
Status Reporter

Writes TrainingJob status through the status subresource and renders the
describe view. Spec is never touched.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .describe import describe_training_job
from .models import JobResource, TrainingJobStatus

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """Current time in RFC 3339, second precision, as Kubernetes formats it."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class StatusReporter:
    """Persists TrainingJobStatus onto the cluster."""

    def __init__(self, k8s_client):
        self.k8s_client = k8s_client

    async def update(self, resource: JobResource, status: TrainingJobStatus) -> Optional[JobResource]:
        """
        Replace the status of a resource.

        Returns:
            Snapshot returned by the API server, or None if the resource is gone
        """
        updated = await self.k8s_client.patch_training_job_status(
            resource.namespace,
            resource.name,
            status.to_dict(),
        )
        if updated is None:
            return None

        logger.info(
            f"[STATUS] {resource.key}: phase={status.phase.value}"
            + (f", job={status.sagemaker_training_job_name}" if status.sagemaker_training_job_name else "")
            + (f", reason={status.reason}" if status.reason else "")
        )
        return JobResource.from_object(updated)

    def describe(self, resource: JobResource) -> str:
        return describe_training_job(resource)
