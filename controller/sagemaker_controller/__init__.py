"""
SageMaker TrainingJob Controller

Watches TrainingJob custom resources and submits them to Amazon SageMaker,
optionally through a private (PrivateLink) endpoint, recording the assigned
training job name on the resource status.
"""

__version__ = "0.1.0"
