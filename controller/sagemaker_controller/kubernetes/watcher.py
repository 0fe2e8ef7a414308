"""
TrainingJob Watcher

List-then-watch loop over TrainingJob resources:
1. List all resources and hand the snapshot to the controller (relist)
2. Watch from the list's resourceVersion, forwarding each event
3. On watch timeout, resume from the last seen resourceVersion
4. On 410 Gone (resourceVersion too old) or any watch error, relist

The kubernetes watch stream is a blocking generator, so it is pumped on a
daemon thread into an asyncio.Queue consumed by the event loop.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from ..models import JobResource

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
BOOKMARK = "BOOKMARK"
ERROR = "ERROR"

HTTP_GONE = 410

# Sentinels passed from the pump thread
_END = "end"
_EVENT = "event"
_FAILURE = "failure"


@dataclass
class WatchEvent:
    type: str
    resource: JobResource


class ResourceVersionExpired(Exception):
    """The watch resourceVersion is too old; a relist is required."""


class TrainingJobWatcher:
    """
    Feeds TrainingJob changes into the controller.

    Args:
        k8s_client: KubernetesClient (list_training_jobs, stream_training_job_events, stop_watch)
        on_relist: Coroutine called with the full list of resources after every list
        on_event: Coroutine called with each ADDED/MODIFIED/DELETED WatchEvent
        error_backoff: Seconds to wait before relisting after a watch failure
    """

    def __init__(
        self,
        k8s_client,
        on_relist: Callable[[List[JobResource]], Awaitable[None]],
        on_event: Callable[[WatchEvent], Awaitable[None]],
        error_backoff: float = 5.0,
    ):
        self.k8s_client = k8s_client
        self.on_relist = on_relist
        self.on_event = on_event
        self.error_backoff = error_backoff
        self.resource_version: str = ""
        self._stopped = asyncio.Event()

    async def run(self) -> None:
        """Run list/watch cycles until stop() is called."""
        logger.info("[WATCH] Starting TrainingJob watcher")
        while not self._stopped.is_set():
            try:
                await self.relist()
                while not self._stopped.is_set():
                    await self.watch_once()
            except ResourceVersionExpired:
                logger.info(f"[WATCH] resourceVersion {self.resource_version} expired, relisting")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[WATCH] Watch failed: {e}", exc_info=True)
                await self._sleep(self.error_backoff)
        logger.info("[WATCH] Watcher stopped")

    async def relist(self) -> None:
        items, resource_version = await self.k8s_client.list_training_jobs()
        self.resource_version = resource_version
        resources = [JobResource.from_object(item) for item in items]
        logger.info(f"[WATCH] Listed {len(resources)} TrainingJobs at resourceVersion {resource_version}")
        await self.on_relist(resources)

    async def watch_once(self) -> None:
        """
        Consume one watch stream until the server closes it.

        Raises:
            ResourceVersionExpired: The stream reported 410 Gone
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def post(item) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Loop closed while the stream was still draining (shutdown)
                pass

        def pump(resource_version: str) -> None:
            try:
                for raw in self.k8s_client.stream_training_job_events(resource_version):
                    post((_EVENT, raw))
            except Exception as exc:
                post((_FAILURE, exc))
            finally:
                post((_END, None))

        thread = threading.Thread(
            target=pump,
            args=(self.resource_version,),
            name="trainingjob-watch",
            daemon=True,
        )
        thread.start()

        try:
            while True:
                kind, payload = await queue.get()
                if kind == _END:
                    return
                if kind == _FAILURE:
                    if isinstance(payload, ApiException) and payload.status == HTTP_GONE:
                        raise ResourceVersionExpired() from payload
                    raise payload
                await self._dispatch(payload)
        except BaseException:
            # Let the pump thread finish on its next event instead of lingering
            self.k8s_client.stop_watch()
            raise

    async def _dispatch(self, raw: Dict[str, Any]) -> None:
        event_type = raw.get("type")
        obj = raw.get("object") or {}

        if event_type == ERROR:
            code = obj.get("code") if isinstance(obj, dict) else None
            if code == HTTP_GONE:
                raise ResourceVersionExpired()
            raise RuntimeError(f"Watch error event: {obj}")

        metadata = obj.get("metadata") or {}
        if metadata.get("resourceVersion"):
            self.resource_version = metadata["resourceVersion"]

        if event_type == BOOKMARK:
            return

        if event_type not in (ADDED, MODIFIED, DELETED):
            logger.debug(f"[WATCH] Ignoring event type {event_type}")
            return

        resource = JobResource.from_object(obj)
        logger.debug(f"[WATCH] {event_type} {resource.key} (rv {resource.resource_version})")
        await self.on_event(WatchEvent(type=event_type, resource=resource))

    def stop(self) -> None:
        self._stopped.set()
        self.k8s_client.stop_watch()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
