"""
Base training backend interface and result types.

Backend calls never raise for backend-side failures. Every operation returns
a result tagged with a BackendOutcome so the reconciler can branch on the
failure kind (retry vs. give up) without an exception hierarchy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class BackendOutcome(str, Enum):
    """Classification of a backend call result."""
    ACCEPTED = "accepted"              # submit succeeded
    OK = "ok"                          # describe / cancel succeeded
    TRANSIENT = "transient"            # network timeout, throttling, 5xx - retry
    PERMANENT = "permanent"            # malformed request, bad endpoint, auth - do not retry
    NOT_FOUND = "not_found"            # backend job vanished
    ALREADY_EXISTS = "already_exists"  # submit hit an existing job with the same name
    ALREADY_TERMINAL = "already_terminal"  # cancel on a finished job

    @property
    def is_retryable(self) -> bool:
        return self == BackendOutcome.TRANSIENT


# Backend job states after which nothing changes anymore
TERMINAL_BACKEND_STATUSES = frozenset({"Completed", "Failed", "Stopped"})


@dataclass(frozen=True)
class BackendTarget:
    """Where to reach the backend. endpoint_url None means the regional default."""
    region: str
    endpoint_url: Optional[str] = None

    def describe(self) -> str:
        return self.endpoint_url or f"default endpoint ({self.region})"


@dataclass
class SubmissionRequest:
    """A fully built backend submission."""
    job_name: str
    target: BackendTarget
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubmitResult:
    outcome: BackendOutcome
    backend_job_name: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class DescribeResult:
    outcome: BackendOutcome
    status: Optional[str] = None
    secondary_status: Optional[str] = None
    failure_reason: Optional[str] = None
    reason: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)  # only filled when requested

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BACKEND_STATUSES


@dataclass
class CancelResult:
    outcome: BackendOutcome
    reason: Optional[str] = None


class BaseTrainingBackend(ABC):
    """
    Abstract base class for managed training backends.

    Implementations wrap a concrete service API and translate its failures
    into BackendOutcome values.
    """

    @abstractmethod
    async def submit(self, request: SubmissionRequest) -> SubmitResult:
        """
        Submit a training job.

        Args:
            request: Built submission with target and payload

        Returns:
            SubmitResult with ACCEPTED and the backend job name, or a failure outcome
        """
        pass

    @abstractmethod
    async def describe(self, job_name: str, target: BackendTarget, include_tags: bool = False) -> DescribeResult:
        """
        Look up a training job's current state.

        Args:
            job_name: Backend job name
            target: Where to reach the backend
            include_tags: Also fetch the job's tags (one extra call)

        Returns:
            DescribeResult with OK, NOT_FOUND, TRANSIENT or PERMANENT
        """
        pass

    @abstractmethod
    async def cancel(self, job_name: str, target: BackendTarget) -> CancelResult:
        """
        Best-effort stop of a training job.

        Returns:
            CancelResult with OK, ALREADY_TERMINAL, NOT_FOUND, TRANSIENT or PERMANENT
        """
        pass
