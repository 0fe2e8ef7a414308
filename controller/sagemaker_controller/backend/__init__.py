"""
Training backend clients.

- BaseTrainingBackend: interface consumed by the reconciler
- SageMakerBackend: boto3 implementation with endpoint override support
- build_submission: TrainingJob spec -> CreateTrainingJob request
"""

from .base import (
    BackendOutcome,
    BackendTarget,
    BaseTrainingBackend,
    CancelResult,
    DescribeResult,
    SubmissionRequest,
    SubmitResult,
    TERMINAL_BACKEND_STATUSES,
)
from .request import (
    backend_job_name_for,
    build_submission,
    owns_backend_job,
    resolve_target,
    target_for_spec,
    to_pascal_keys,
)
from .sagemaker import SageMakerBackend, classify_error, cloudwatch_log_url

__all__ = [
    "BackendOutcome",
    "BackendTarget",
    "BaseTrainingBackend",
    "CancelResult",
    "DescribeResult",
    "SubmissionRequest",
    "SubmitResult",
    "TERMINAL_BACKEND_STATUSES",
    "backend_job_name_for",
    "build_submission",
    "owns_backend_job",
    "resolve_target",
    "target_for_spec",
    "to_pascal_keys",
    "SageMakerBackend",
    "classify_error",
    "cloudwatch_log_url",
]
