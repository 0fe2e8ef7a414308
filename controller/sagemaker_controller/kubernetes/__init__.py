"""
Kubernetes Module

- KubernetesClient: list/watch/get TrainingJobs, patch their status subresource
- TrainingJobWatcher: list-then-watch loop feeding the controller
"""

from .client import KubernetesClient, get_k8s_client
from .watcher import (
    ADDED,
    DELETED,
    MODIFIED,
    ResourceVersionExpired,
    TrainingJobWatcher,
    WatchEvent,
)

__all__ = [
    "KubernetesClient",
    "get_k8s_client",
    "TrainingJobWatcher",
    "WatchEvent",
    "ResourceVersionExpired",
    "ADDED",
    "MODIFIED",
    "DELETED",
]
