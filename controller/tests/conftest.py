"""
Test configuration and fixtures for pytest.

Fixtures include: controller settings tuned for fast retries, TrainingJob
specs/resources, an in-memory Kubernetes client and a scripted training
backend that records every call.
"""

import sys
import os
import copy
import asyncio
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add the controller directory to sys.path
controller_dir = Path(__file__).parent.parent
sys.path.insert(0, str(controller_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any package imports
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-west-2")
    os.environ.setdefault("AWS_REGION", "us-west-2")
    os.environ["LOG_LEVEL"] = "DEBUG"

    from sagemaker_controller.config import get_settings
    get_settings.cache_clear()

    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising the Kubernetes client layer")
    config.addinivalue_line("markers", "slow: mark test as slow running")


from sagemaker_controller.backend.base import (  # noqa: E402
    BackendOutcome,
    BackendTarget,
    BaseTrainingBackend,
    CancelResult,
    DescribeResult,
    SubmissionRequest,
    SubmitResult,
)
from sagemaker_controller.config import Settings  # noqa: E402
from sagemaker_controller.models import JobResource  # noqa: E402

ROLE_ARN = "arn:aws:iam::123456789012:role/SageMakerExecutionRole"
PRIVATELINK_ENDPOINT = "https://vpce-0abc123-xyz.api.sagemaker.us-west-2.vpce.amazonaws.com"


def make_spec(**overrides) -> Dict[str, Any]:
    """A valid TrainingJob spec, xgboost-mnist style."""
    spec = {
        "region": "us-west-2",
        "roleArn": ROLE_ARN,
        "algorithmSpecification": {
            "trainingImage": "433757028032.dkr.ecr.us-west-2.amazonaws.com/xgboost:1",
            "trainingInputMode": "File",
        },
        "hyperParameters": [
            {"name": "num_round", "value": "10"},
            {"name": "objective", "value": "multi:softmax"},
        ],
        "inputDataConfig": [
            {
                "channelName": "train",
                "dataSource": {
                    "s3DataSource": {
                        "s3DataType": "S3Prefix",
                        "s3Uri": "s3://my-bucket/xgboost-mnist/train/",
                        "s3DataDistributionType": "FullyReplicated",
                    }
                },
                "contentType": "text/csv",
            }
        ],
        "outputDataConfig": {"s3OutputPath": "s3://my-bucket/xgboost-mnist/models/"},
        "resourceConfig": {"instanceCount": 1, "instanceType": "ml.m4.xlarge", "volumeSizeInGB": 5},
        "stoppingCondition": {"maxRuntimeInSeconds": 86400},
    }
    spec.update(overrides)
    return {k: v for k, v in spec.items() if v is not None}


def make_object(
    name: str = "xgboost-mnist",
    namespace: str = "default",
    uid: str = "6a1f4c1e-0d4b-4a6e-9a9e-1f2d3c4b5a69",
    spec: Optional[Dict[str, Any]] = None,
    status: Optional[Dict[str, Any]] = None,
    resource_version: str = "1",
) -> Dict[str, Any]:
    """A raw TrainingJob custom object as the API server returns it."""
    obj = {
        "apiVersion": "sagemaker.aws.amazon.com/v1",
        "kind": "TrainingJob",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid,
            "resourceVersion": resource_version,
        },
        "spec": spec if spec is not None else make_spec(),
    }
    if status is not None:
        obj["status"] = status
    return obj


def make_resource(**kwargs) -> JobResource:
    return JobResource.from_object(make_object(**kwargs))


class FakeBackend(BaseTrainingBackend):
    """
    Scripted training backend.

    Results are consumed from per-operation lists; once a list is empty the
    default result is returned (ACCEPTED / OK). Every call is recorded.
    Jobs accepted by default are kept in `jobs` (name -> tags), so a second
    default submit under the same name hits ALREADY_EXISTS.
    """

    def __init__(
        self,
        submit_results: Optional[List[SubmitResult]] = None,
        describe_results: Optional[List[DescribeResult]] = None,
        cancel_results: Optional[List[CancelResult]] = None,
        submit_delay: float = 0.0,
    ):
        self.submit_results = list(submit_results or [])
        self.describe_results = list(describe_results or [])
        self.cancel_results = list(cancel_results or [])
        self.submit_delay = submit_delay
        self.default_submit: Optional[SubmitResult] = None
        self.submit_calls: List[SubmissionRequest] = []
        self.describe_calls: List[tuple] = []
        self.cancel_calls: List[tuple] = []
        self.jobs: Dict[str, Dict[str, str]] = {}

    async def submit(self, request: SubmissionRequest) -> SubmitResult:
        self.submit_calls.append(request)
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_results:
            return self.submit_results.pop(0)
        if self.default_submit is not None:
            return self.default_submit
        if request.job_name in self.jobs:
            return SubmitResult(outcome=BackendOutcome.ALREADY_EXISTS, reason="ResourceInUse: Training job names must be unique")
        self.jobs[request.job_name] = {t["Key"]: t["Value"] for t in request.payload.get("Tags") or []}
        return SubmitResult(outcome=BackendOutcome.ACCEPTED, backend_job_name=request.job_name)

    async def describe(self, job_name: str, target: BackendTarget, include_tags: bool = False) -> DescribeResult:
        self.describe_calls.append((job_name, target))
        if self.describe_results:
            return self.describe_results.pop(0)
        tags = dict(self.jobs.get(job_name) or {}) if include_tags else {}
        return DescribeResult(outcome=BackendOutcome.OK, status="InProgress", secondary_status="Starting", tags=tags)

    async def cancel(self, job_name: str, target: BackendTarget) -> CancelResult:
        self.cancel_calls.append((job_name, target))
        if self.cancel_results:
            return self.cancel_results.pop(0)
        return CancelResult(outcome=BackendOutcome.OK)


def unreachable() -> SubmitResult:
    return SubmitResult(
        outcome=BackendOutcome.TRANSIENT,
        reason='Backend unreachable: Could not connect to the endpoint URL: "https://api.sagemaker.us-west-2.amazonaws.com/"',
    )


class FakeKubernetesClient:
    """In-memory stand-in for KubernetesClient holding raw custom objects."""

    def __init__(self, objects: Optional[List[Dict[str, Any]]] = None):
        self.objects: Dict[str, Dict[str, Any]] = {}
        for obj in objects or []:
            self.put(obj)
        self.status_patches: List[tuple] = []
        self.events: List[Any] = []
        self.watch_resource_versions: List[str] = []
        self.list_resource_version = "100"
        self.watch_stopped = 0
        self.watch_idle_seconds = 0.05
        self._watch_stop = threading.Event()
        self._rv = 100

    def put(self, obj: Dict[str, Any]) -> None:
        meta = obj["metadata"]
        self.objects[f"{meta['namespace']}/{meta['name']}"] = copy.deepcopy(obj)

    def remove(self, namespace: str, name: str) -> None:
        self.objects.pop(f"{namespace}/{name}", None)

    async def list_training_jobs(self):
        return [copy.deepcopy(o) for o in self.objects.values()], self.list_resource_version

    async def patch_training_job_status(self, namespace: str, name: str, status: Dict[str, Any]):
        self.status_patches.append((namespace, name, copy.deepcopy(status)))
        obj = self.objects.get(f"{namespace}/{name}")
        if obj is None:
            return None
        current = obj.setdefault("status", {})
        for key, value in status.items():
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value
        self._rv += 1
        obj["metadata"]["resourceVersion"] = str(self._rv)
        return copy.deepcopy(obj)

    def stream_training_job_events(self, resource_version: str):
        """Yield queued events once, then idle like a quiet watch until it times out."""
        self.watch_resource_versions.append(resource_version)
        events, self.events = self.events, []

        def stream():
            for event in events:
                if isinstance(event, Exception):
                    raise event
                yield event
            self._watch_stop.wait(timeout=self.watch_idle_seconds)

        return stream()

    def stop_watch(self) -> None:
        self.watch_stopped += 1
        self._watch_stop.set()


@pytest.fixture
def settings():
    """Settings with fast retries for tests."""
    return Settings(
        aws_region="us-west-2",
        sagemaker_endpoint_url="",
        worker_count=2,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        max_retry_seconds=30,
        resync_seconds=3600,
    )


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_k8s():
    return FakeKubernetesClient([make_object()])


@pytest.fixture
def resource():
    return make_resource()
