"""
TrainingJob resource model.

JobResource is an immutable-by-convention snapshot of a TrainingJob custom
resource as delivered by the cluster API. The reconciler reads spec and
status from it and produces status patches; it never mutates spec.

TrainingJobSpec validates the parts of spec the backend submission needs.
Everything else is passed through to the backend request unchanged.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from . import crd


class JobPhase(str, Enum):
    """
    Controller-level phase of a TrainingJob.

    Attributes:
        PENDING: Not yet accepted by the backend (includes waiting on retries)
        SUBMITTED: Backend accepted the submission, backend job name recorded
        FAILED: Terminal failure with a human-readable reason
    """

    PENDING = "Pending"
    SUBMITTED = "Submitted"
    FAILED = "Failed"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "JobPhase":
        """Parse a stored phase; unknown or empty values read as PENDING."""
        if not value:
            return cls.PENDING
        for phase in cls:
            if phase.value.lower() == value.strip().lower():
                return phase
        return cls.PENDING

    def __str__(self) -> str:
        return self.value


@dataclass
class TrainingJobStatus:
    """Status subresource of a TrainingJob."""
    phase: JobPhase = JobPhase.PENDING
    sagemaker_training_job_name: Optional[str] = None
    reason: Optional[str] = None
    backend_status: Optional[str] = None
    secondary_status: Optional[str] = None
    last_check_time: Optional[str] = None
    cloud_watch_log_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrainingJobStatus":
        data = data or {}
        return cls(
            phase=JobPhase.from_string(data.get(crd.STATUS_PHASE)),
            sagemaker_training_job_name=data.get(crd.STATUS_JOB_NAME) or None,
            reason=data.get(crd.STATUS_REASON),
            backend_status=data.get(crd.STATUS_BACKEND_STATUS),
            secondary_status=data.get(crd.STATUS_SECONDARY_STATUS),
            last_check_time=data.get(crd.STATUS_LAST_CHECK_TIME),
            cloud_watch_log_url=data.get(crd.STATUS_LOG_URL),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase status body. Unset fields are sent as null."""
        return {
            crd.STATUS_PHASE: self.phase.value,
            crd.STATUS_JOB_NAME: self.sagemaker_training_job_name,
            crd.STATUS_REASON: self.reason,
            crd.STATUS_BACKEND_STATUS: self.backend_status,
            crd.STATUS_SECONDARY_STATUS: self.secondary_status,
            crd.STATUS_LAST_CHECK_TIME: self.last_check_time,
            crd.STATUS_LOG_URL: self.cloud_watch_log_url,
        }


@dataclass
class JobResource:
    """Snapshot of a TrainingJob custom resource."""
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: str = ""
    spec: Dict[str, Any] = field(default_factory=dict)
    status: TrainingJobStatus = field(default_factory=TrainingJobStatus)
    deletion_timestamp: Optional[str] = None

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "JobResource":
        """Build a snapshot from a raw custom object dict."""
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid", ""),
            resource_version=metadata.get("resourceVersion", ""),
            spec=dict(obj.get("spec") or {}),
            status=TrainingJobStatus.from_dict(obj.get("status")),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def backend_job_name(self) -> Optional[str]:
        return self.status.sagemaker_training_job_name

    @property
    def is_submitted(self) -> bool:
        return bool(self.status.sagemaker_training_job_name)

    @property
    def endpoint_override(self) -> Optional[str]:
        return self.spec.get(crd.SPEC_ENDPOINT) or None

    def with_status(self, status: TrainingJobStatus) -> "JobResource":
        return replace(self, status=status)


# =============================================================================
# Spec validation
# =============================================================================

_BACKEND_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9](-*[a-zA-Z0-9]){0,62}$")


class NameValue(BaseModel):
    name: str
    value: str


class TrainingJobSpec(BaseModel):
    """
    Validated view over TrainingJob.spec.

    Field names follow the CRD's camelCase keys through aliases. Only the
    fields the controller reasons about are typed; the request builder reads
    the remaining keys straight from the raw spec.
    """
    role_arn: str = Field(..., alias="roleArn", min_length=1)
    algorithm_specification: Dict[str, Any] = Field(..., alias="algorithmSpecification")
    output_data_config: Dict[str, Any] = Field(..., alias="outputDataConfig")
    resource_config: Dict[str, Any] = Field(..., alias="resourceConfig")
    stopping_condition: Dict[str, Any] = Field(..., alias="stoppingCondition")
    region: Optional[str] = None
    training_job_name: Optional[str] = Field(None, alias="trainingJobName")
    sagemaker_endpoint: Optional[str] = Field(None, alias="sageMakerEndpoint")
    hyper_parameters: List[NameValue] = Field(default_factory=list, alias="hyperParameters")
    input_data_config: List[Dict[str, Any]] = Field(default_factory=list, alias="inputDataConfig")

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("algorithm_specification")
    @classmethod
    def validate_algorithm(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v.get("trainingImage") and not v.get("algorithmName"):
            raise ValueError("algorithmSpecification needs trainingImage or algorithmName")
        return v

    @field_validator("output_data_config")
    @classmethod
    def validate_output(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v.get("s3OutputPath"):
            raise ValueError("outputDataConfig.s3OutputPath is required")
        return v

    @field_validator("training_job_name")
    @classmethod
    def validate_job_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _BACKEND_NAME_PATTERN.match(v):
            raise ValueError(
                f"trainingJobName '{v}' must be 1-63 alphanumeric characters or hyphens"
            )
        return v

    @field_validator("sagemaker_endpoint")
    @classmethod
    def validate_endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not re.match(r"^https?://[^\s/]+", v):
            raise ValueError(f"sageMakerEndpoint '{v}' is not an http(s) URL")
        return v
