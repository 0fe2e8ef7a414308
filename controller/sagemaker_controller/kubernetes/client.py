"""
Kubernetes Client for TrainingJob Custom Resources

This module provides the controller's interface to the Kubernetes API:
listing and watching TrainingJob resources, reading single resources and
patching the status subresource. Spec is never written.

All blocking API calls are run through asyncio.to_thread so a slow API
server never blocks the event loop.
"""

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
import logging
import asyncio
from typing import Dict, Optional, Any, Iterator, List, Tuple

from ..retry import k8s_retry

logger = logging.getLogger(__name__)


class KubernetesClient:
    """
    Reads and watches TrainingJob resources and writes their status.

    Namespace handling: an empty namespace means cluster-wide list/watch.
    """

    def __init__(self, settings=None):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        from ..config import get_settings

        self.settings = settings or get_settings()

        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config()
                logger.info("Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

        self.custom_objects = client.CustomObjectsApi()

        self.group = self.settings.crd_group
        self.version = self.settings.crd_version
        self.plural = self.settings.crd_plural
        self.namespace = self.settings.watch_namespace
        self.request_timeout = self.settings.k8s_api_timeout_seconds

        self._watch: Optional[watch.Watch] = None

        logger.info(
            f"Kubernetes client initialized - {self.plural}.{self.group}/{self.version}, "
            f"namespace: {self.namespace or '(all)'}"
        )

    # =========================================================================
    # READS
    # =========================================================================

    @k8s_retry
    async def list_training_jobs(self) -> Tuple[List[Dict[str, Any]], str]:
        """
        List all TrainingJobs in the watched namespace(s).

        Returns:
            Tuple of (items, list resourceVersion to start a watch from)
        """
        if self.namespace:
            result = await asyncio.to_thread(
                self.custom_objects.list_namespaced_custom_object,
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=self.plural,
                _request_timeout=self.request_timeout
            )
        else:
            result = await asyncio.to_thread(
                self.custom_objects.list_cluster_custom_object,
                group=self.group,
                version=self.version,
                plural=self.plural,
                _request_timeout=self.request_timeout
            )

        items = result.get("items", [])
        resource_version = (result.get("metadata") or {}).get("resourceVersion", "")
        logger.debug(f"[K8S] Listed {len(items)} {self.plural} at resourceVersion {resource_version}")
        return items, resource_version

    # =========================================================================
    # STATUS WRITES
    # =========================================================================

    @k8s_retry
    async def patch_training_job_status(
        self,
        namespace: str,
        name: str,
        status: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Merge-patch the status subresource of a TrainingJob.

        Args:
            namespace: Resource namespace
            name: Resource name
            status: Status fields; None values delete the field

        Returns:
            The updated object, or None if the resource was deleted meanwhile
        """
        try:
            updated = await asyncio.to_thread(
                self.custom_objects.patch_namespaced_custom_object_status,
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
                body={"status": status},
                _request_timeout=self.request_timeout
            )
            logger.debug(f"[K8S] Patched status of {namespace}/{name}")
            return updated
        except ApiException as e:
            if e.status == 404:
                logger.info(f"[K8S] {namespace}/{name} is gone, status patch dropped")
                return None
            raise

    # =========================================================================
    # WATCH
    # =========================================================================

    def stream_training_job_events(self, resource_version: str) -> Iterator[Dict[str, Any]]:
        """
        Blocking generator of raw watch events starting after resource_version.

        Each event is {"type": ADDED|MODIFIED|DELETED|BOOKMARK|ERROR, "object": {...}}.
        The stream ends when the server-side timeout expires; callers re-watch.
        Must be consumed off the event loop.
        """
        self._watch = watch.Watch()
        kwargs = {
            "group": self.group,
            "version": self.version,
            "plural": self.plural,
            "resource_version": resource_version,
            "timeout_seconds": self.settings.watch_timeout_seconds,
            "allow_watch_bookmarks": True,
        }
        if self.namespace:
            func = self.custom_objects.list_namespaced_custom_object
            kwargs["namespace"] = self.namespace
        else:
            func = self.custom_objects.list_cluster_custom_object

        return self._watch.stream(func, **kwargs)

    def stop_watch(self) -> None:
        """Ask an in-progress watch stream to end after its next event."""
        if self._watch is not None:
            self._watch.stop()


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
