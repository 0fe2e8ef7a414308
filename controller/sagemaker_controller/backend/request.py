"""
Translation of a TrainingJob spec into a SageMaker CreateTrainingJob request.

The CRD mirrors the SageMaker API with camelCase keys, so most of the work
is a recursive key conversion to PascalCase. A few spec keys are controller
settings rather than API parameters and are stripped; a few maps carry
user-defined keys and are passed through verbatim.
"""

import re
from typing import Any, Dict, Optional

from .. import crd
from ..models import JobResource, TrainingJobSpec
from .base import BackendTarget, SubmissionRequest

# Spec keys consumed by the controller, never sent to the API
_CONTROLLER_KEYS = {crd.SPEC_ENDPOINT, "region", "trainingJobName", "hyperParameters"}

# Maps whose keys are user data (env var names, hook parameters)
_VERBATIM_MAPS = {"environment", "hookParameters", "collectionParameters", "ruleParameters"}


def to_pascal_keys(value: Any) -> Any:
    """Recursively upper-case the first letter of every dict key."""
    if isinstance(value, dict):
        converted = {}
        for key, item in value.items():
            if key in _VERBATIM_MAPS:
                converted[_pascal(key)] = dict(item or {})
            else:
                converted[_pascal(key)] = to_pascal_keys(item)
        return converted
    if isinstance(value, list):
        return [to_pascal_keys(item) for item in value]
    return value


def _pascal(key: str) -> str:
    return key[:1].upper() + key[1:]


def backend_job_name_for(resource: JobResource, spec: Optional[TrainingJobSpec] = None) -> str:
    """
    Deterministic backend job name for a resource.

    An explicit spec.trainingJobName wins. Otherwise the name is
    "<resource name>-<uid without dashes>", with the resource-name part
    shortened so the result fits SageMaker's 63-character limit. The uid
    suffix keeps names unique across delete/recreate of the same resource.
    """
    if spec is not None and spec.training_job_name:
        return spec.training_job_name

    base = re.sub(r"[^a-zA-Z0-9-]", "-", resource.name).strip("-") or "trainingjob"
    suffix = resource.uid.replace("-", "")
    if not suffix:
        return base[:crd.MAX_BACKEND_JOB_NAME_LENGTH].rstrip("-")

    room = crd.MAX_BACKEND_JOB_NAME_LENGTH - len(suffix) - 1
    if room <= 0:
        return suffix[:crd.MAX_BACKEND_JOB_NAME_LENGTH]
    return f"{base[:room].rstrip('-')}-{suffix}"


def target_for_spec(spec: Dict[str, Any], default_region: str, default_endpoint: str = "") -> BackendTarget:
    """Pick region and endpoint from a raw spec: spec override first, then controller defaults."""
    endpoint = spec.get(crd.SPEC_ENDPOINT) or default_endpoint or None
    return BackendTarget(region=spec.get("region") or default_region, endpoint_url=endpoint)


def owns_backend_job(resource: JobResource, spec: TrainingJobSpec, tags: Dict[str, str]) -> bool:
    """
    Whether an existing backend job was submitted for this resource.

    The owner tag decides when present. Without it, only a uid-derived
    name proves ownership; an explicit trainingJobName can be anybody's.
    """
    owner = tags.get(crd.OWNER_TAG_KEY)
    if owner is not None:
        return bool(resource.uid) and owner == resource.uid
    return not spec.training_job_name and bool(resource.uid)


def resolve_target(spec: TrainingJobSpec, default_region: str, default_endpoint: str = "") -> BackendTarget:
    """Pick region and endpoint for a validated spec."""
    endpoint = spec.sagemaker_endpoint or default_endpoint or None
    return BackendTarget(region=spec.region or default_region, endpoint_url=endpoint)


def build_submission(
    resource: JobResource,
    spec: TrainingJobSpec,
    default_region: str,
    default_endpoint: str = "",
) -> SubmissionRequest:
    """
    Build the CreateTrainingJob request for a resource.

    Args:
        resource: Snapshot being reconciled (name/uid feed the job name)
        spec: Validated spec
        default_region: Region used when spec.region is unset
        default_endpoint: Controller-wide endpoint override

    Returns:
        SubmissionRequest ready for BaseTrainingBackend.submit
    """
    job_name = backend_job_name_for(resource, spec)

    payload: Dict[str, Any] = {"TrainingJobName": job_name}
    for key, value in resource.spec.items():
        if key in _CONTROLLER_KEYS or value is None:
            continue
        payload[_pascal(key)] = to_pascal_keys(value)

    if spec.hyper_parameters:
        payload["HyperParameters"] = {hp.name: hp.value for hp in spec.hyper_parameters}

    if resource.uid:
        # Lets a later ResourceInUse be told apart from somebody else's job
        tags = [t for t in payload.get("Tags") or [] if t.get("Key") != crd.OWNER_TAG_KEY]
        tags.append({"Key": crd.OWNER_TAG_KEY, "Value": resource.uid})
        payload["Tags"] = tags

    return SubmissionRequest(
        job_name=job_name,
        target=resolve_target(spec, default_region, default_endpoint),
        payload=payload,
    )
