"""CRD schema constants for the TrainingJob custom resource."""

GROUP = "sagemaker.aws.amazon.com"
VERSION = "v1"
PLURAL = "trainingjobs"
KIND = "TrainingJob"

API_VERSION = f"{GROUP}/{VERSION}"

# Status keys. STATUS_JOB_NAME is rendered by kubectl describe as
# "Sage Maker Training Job Name:" and is relied upon by tooling.
STATUS_JOB_NAME = "sageMakerTrainingJobName"
STATUS_PHASE = "phase"
STATUS_REASON = "reason"
STATUS_BACKEND_STATUS = "backendStatus"
STATUS_SECONDARY_STATUS = "secondaryStatus"
STATUS_LAST_CHECK_TIME = "lastCheckTime"
STATUS_LOG_URL = "cloudWatchLogUrl"

# Spec key holding the endpoint override (e.g. a PrivateLink endpoint URL)
SPEC_ENDPOINT = "sageMakerEndpoint"

# SageMaker limits training job names to 63 characters
MAX_BACKEND_JOB_NAME_LENGTH = 63

# Tag placed on every backend job recording the uid of the resource that submitted it
OWNER_TAG_KEY = "sagemaker.aws.amazon.com/trainingjob-uid"
