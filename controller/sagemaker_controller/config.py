from pydantic_settings import BaseSettings
from functools import lru_cache

from . import crd


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Custom Resource Definition
    # ==========================================================================
    crd_group: str = crd.GROUP
    crd_version: str = crd.VERSION
    crd_plural: str = crd.PLURAL

    # Namespace to watch. Empty string watches all namespaces.
    watch_namespace: str = ""

    # ==========================================================================
    # SageMaker Backend Settings
    # ==========================================================================
    # Default region when a TrainingJob does not carry spec.region
    aws_region: str = "us-east-1"

    # Controller-wide endpoint override. spec.sageMakerEndpoint on a resource wins.
    # Empty string means the public regional endpoint.
    sagemaker_endpoint_url: str = ""

    # Network timeouts for every SageMaker call (seconds)
    sagemaker_connect_timeout: int = 10
    sagemaker_read_timeout: int = 60

    # botocore-level attempts per call. Kept low: the work queue owns retries.
    sagemaker_max_attempts: int = 2

    # ==========================================================================
    # Reconciliation Settings
    # ==========================================================================
    worker_count: int = 4  # Concurrent reconciliations (distinct resources)

    # Requeue backoff: min(retry_max_delay, retry_base_delay * 2**attempt), jittered into [d/2, d]
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0

    # Total time a resource keeps being retried before it is parked as Pending
    # until the next watch event or resync
    max_retry_seconds: int = 600

    # Re-enqueue every known resource this often (refreshes Submitted jobs)
    resync_seconds: int = 300

    # ==========================================================================
    # Kubernetes API Settings
    # ==========================================================================
    watch_timeout_seconds: int = 300  # Server-side watch timeout before re-watching
    k8s_api_timeout_seconds: int = 30  # Request timeout for get/list/patch calls

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
