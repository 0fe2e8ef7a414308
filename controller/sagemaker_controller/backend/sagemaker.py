"""
SageMaker Training Backend

Thin boto3 wrapper over the SageMaker training job API
(CreateTrainingJob, DescribeTrainingJob, StopTrainingJob).

Endpoint routing:
- No override: boto3 resolves the public regional endpoint
  (https://api.sagemaker.<region>.amazonaws.com)
- Override (spec.sageMakerEndpoint or SAGEMAKER_ENDPOINT_URL): used verbatim
  as endpoint_url, e.g. a VPC interface (PrivateLink) endpoint

Error classification:
- Connection failures and timeouts, throttling, 5xx -> TRANSIENT
- Validation, malformed endpoint, missing/rejected credentials -> PERMANENT
- ResourceInUse on create -> ALREADY_EXISTS
- "Requested resource not found" on describe/stop -> NOT_FOUND

Credentials come from the default boto3 chain (IRSA on EKS, env vars,
instance profile).
"""

import asyncio
import logging
import re
import threading
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
)

from ..config import get_settings
from .base import (
    BackendOutcome,
    BackendTarget,
    BaseTrainingBackend,
    CancelResult,
    DescribeResult,
    SubmissionRequest,
    SubmitResult,
)

logger = logging.getLogger(__name__)

THROTTLING_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "SlowDown",
})

SERVER_ERROR_CODES = frozenset({
    "InternalFailure",
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
})

AUTH_ERROR_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredTokenException",
    "IncompleteSignature",
    "InvalidSignatureException",
    "SignatureDoesNotMatch",
})

# StopTrainingJob on a finished job: "... the training job is in status Completed."
_FINISHED_JOB_MESSAGE = re.compile(r"\bin status (Completed|Failed|Stopped|Stopping)\b")


def _client_error_details(exc: ClientError) -> Tuple[str, str, int]:
    error = exc.response.get("Error", {})
    code = error.get("Code", "Unknown")
    message = error.get("Message", str(exc))
    http_status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0
    return code, message, http_status


def _is_not_found(code: str, message: str) -> bool:
    if code in ("ResourceNotFound", "ResourceNotFoundException"):
        return True
    return code == "ValidationException" and "not found" in message.lower()


def classify_error(exc: Exception) -> Tuple[BackendOutcome, str]:
    """
    Classify an exception raised by a SageMaker call.

    Args:
        exc: Exception from boto3/botocore (or client construction)

    Returns:
        Tuple of (outcome, human-readable reason)
    """
    if isinstance(exc, ClientError):
        code, message, http_status = _client_error_details(exc)
        reason = f"{code}: {message}"
        if code in THROTTLING_ERROR_CODES or http_status == 429:
            return BackendOutcome.TRANSIENT, reason
        if code in SERVER_ERROR_CODES or http_status >= 500:
            return BackendOutcome.TRANSIENT, reason
        if code == "ResourceInUse":
            return BackendOutcome.ALREADY_EXISTS, reason
        if _is_not_found(code, message):
            return BackendOutcome.NOT_FOUND, reason
        if code in AUTH_ERROR_CODES:
            return BackendOutcome.PERMANENT, f"Authorization rejected - {reason}"
        return BackendOutcome.PERMANENT, reason

    # Connection refused, DNS failure, connect/read timeouts. With egress
    # restricted to a private endpoint these are what the public endpoint yields.
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return BackendOutcome.TRANSIENT, f"Backend unreachable: {exc}"

    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return BackendOutcome.PERMANENT, f"Credentials unavailable: {exc}"

    if isinstance(exc, ParamValidationError):
        return BackendOutcome.PERMANENT, f"Invalid request: {exc}"

    if isinstance(exc, BotoCoreError):
        return BackendOutcome.PERMANENT, str(exc)

    # botocore raises plain ValueError for an unparseable endpoint_url
    if isinstance(exc, ValueError):
        return BackendOutcome.PERMANENT, f"Invalid endpoint: {exc}"

    return BackendOutcome.TRANSIENT, f"{type(exc).__name__}: {exc}"


class SageMakerBackend(BaseTrainingBackend):
    """
    SageMaker implementation of BaseTrainingBackend.

    One boto3 client is created per (region, endpoint) pair and reused, so
    resources pointing at different private endpoints never share a
    connection pool.
    """

    def __init__(self, settings=None, session: Optional[boto3.session.Session] = None):
        self.settings = settings or get_settings()
        self._session = session or boto3.session.Session()
        self._clients: Dict[Tuple[str, Optional[str]], Any] = {}
        self._clients_lock = threading.Lock()

        self._config = Config(
            retries={
                "max_attempts": self.settings.sagemaker_max_attempts,
                "mode": "standard",
            },
            connect_timeout=self.settings.sagemaker_connect_timeout,
            read_timeout=self.settings.sagemaker_read_timeout,
        )

        logger.info(
            f"[SAGEMAKER] Backend initialized - default region: {self.settings.aws_region}, "
            f"endpoint: {self.settings.sagemaker_endpoint_url or '(AWS default)'}"
        )

    def _get_client(self, target: BackendTarget):
        """Get or create the boto3 client for a target. Raises ValueError on a bad endpoint."""
        cache_key = (target.region, target.endpoint_url)
        with self._clients_lock:
            sm_client = self._clients.get(cache_key)
            if sm_client is None:
                client_kwargs = {
                    "region_name": target.region,
                    "config": self._config,
                }
                if target.endpoint_url:
                    client_kwargs["endpoint_url"] = target.endpoint_url
                sm_client = self._session.client("sagemaker", **client_kwargs)
                self._clients[cache_key] = sm_client
                logger.info(f"[SAGEMAKER] Created client for {target.describe()}")
            return sm_client

    def _invoke(self, target: BackendTarget, operation: str, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        sm_client = self._get_client(target)
        return getattr(sm_client, operation)(**kwargs)

    async def _call(self, target: BackendTarget, operation: str, **kwargs) -> Dict[str, Any]:
        # Client construction loads the service model from disk, so it runs off the loop too
        return await asyncio.to_thread(self._invoke, target, operation, kwargs)

    async def submit(self, request: SubmissionRequest) -> SubmitResult:
        logger.info(f"[SAGEMAKER] Submitting training job {request.job_name} via {request.target.describe()}")
        try:
            await self._call(request.target, "create_training_job", **request.payload)
        except Exception as e:
            outcome, reason = classify_error(e)
            logger.warning(f"[SAGEMAKER] Submit of {request.job_name} failed ({outcome.value}): {reason}")
            return SubmitResult(outcome=outcome, reason=reason)

        logger.info(f"[SAGEMAKER] ✅ Training job accepted: {request.job_name}")
        return SubmitResult(outcome=BackendOutcome.ACCEPTED, backend_job_name=request.job_name)

    async def describe(self, job_name: str, target: BackendTarget, include_tags: bool = False) -> DescribeResult:
        try:
            response = await self._call(target, "describe_training_job", TrainingJobName=job_name)
            tags: Dict[str, str] = {}
            if include_tags and response.get("TrainingJobArn"):
                listed = await self._call(target, "list_tags", ResourceArn=response["TrainingJobArn"])
                tags = {tag["Key"]: tag.get("Value", "") for tag in listed.get("Tags", [])}
        except Exception as e:
            outcome, reason = classify_error(e)
            logger.warning(f"[SAGEMAKER] Describe of {job_name} failed ({outcome.value}): {reason}")
            return DescribeResult(outcome=outcome, reason=reason)

        return DescribeResult(
            outcome=BackendOutcome.OK,
            status=response.get("TrainingJobStatus"),
            secondary_status=response.get("SecondaryStatus"),
            failure_reason=response.get("FailureReason"),
            tags=tags,
        )

    async def cancel(self, job_name: str, target: BackendTarget) -> CancelResult:
        logger.info(f"[SAGEMAKER] Stopping training job {job_name}")
        try:
            await self._call(target, "stop_training_job", TrainingJobName=job_name)
        except Exception as e:
            outcome, reason = classify_error(e)
            if outcome == BackendOutcome.PERMANENT and isinstance(e, ClientError):
                _, message, _ = _client_error_details(e)
                if _FINISHED_JOB_MESSAGE.search(message):
                    outcome = BackendOutcome.ALREADY_TERMINAL
            logger.warning(f"[SAGEMAKER] Stop of {job_name} failed ({outcome.value}): {reason}")
            return CancelResult(outcome=outcome, reason=reason)

        logger.info(f"[SAGEMAKER] ✅ Stop requested for {job_name}")
        return CancelResult(outcome=BackendOutcome.OK)


def cloudwatch_log_url(region: str, job_name: str) -> str:
    """Console URL of the CloudWatch log streams for a training job."""
    return (
        f"https://{region}.console.aws.amazon.com/cloudwatch/home?region={region}"
        f"#logStream:group=/aws/sagemaker/TrainingJobs;prefix={job_name};streamFilter=typeLogStreamPrefix"
    )
