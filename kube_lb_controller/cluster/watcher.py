"""List-then-watch threads delivering Kubernetes object events to the controller."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from threading import Event, Thread
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from .kube_client import ListCall

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30

EventHandler = Callable[[str, Any], None]
SyncHandler = Callable[[list[Any]], None]


class ResourceWatcher(Thread):
    """Streams events for one resource kind until ``stop_event`` is set.

    Every (re-)list hands the full object list to ``sync`` so the consumer can
    reconcile objects that disappeared while no watch was open. Watch events are
    then delivered one at a time to ``handler`` in the order received.
    """

    def __init__(
        self,
        kind: str,
        list_call: ListCall,
        handler: EventHandler,
        stop_event: Event,
        sync: SyncHandler | None = None,
        timeout_seconds: int = 300,
    ) -> None:
        super().__init__(name=f"watch-{kind}", daemon=True)
        self.kind = kind
        self._list_call = list_call
        self._handler = handler
        self._sync = sync
        self._stop_event = stop_event
        self._timeout_seconds = timeout_seconds
        self._watcher: watch.Watch | None = None

    def stop(self) -> None:
        self._stop_event.set()
        if self._watcher is not None:
            self._watcher.stop()

    def run(self) -> None:
        backoff = 1
        resource_version: str | None = None

        while not self._stop_event.is_set():
            try:
                if resource_version is None:
                    resource_version = self.relist()
                resource_version = self._watch(resource_version)
                backoff = 1
            except ApiException as exc:
                if exc.status == 410:
                    logger.warning("%s watch resource version expired, re-listing", self.kind)
                    resource_version = None
                    continue
                if exc.status in (401, 403):
                    logger.error(
                        "Kubernetes API denied %s watch (status=%s); check RBAC permissions",
                        self.kind, exc.status,
                    )
                else:
                    logger.exception("Kubernetes API error while watching %s", self.kind)
                resource_version = None
                backoff = self._backoff(backoff)
            except Exception:
                logger.exception("Unexpected error while watching %s", self.kind)
                resource_version = None
                backoff = self._backoff(backoff)

        logger.info("%s watcher stopped", self.kind)

    def relist(self) -> str | None:
        """List all objects, hand them to the sync callback and return the list version."""
        result = self._list_call.func(**self._list_call.kwargs)
        items = list(result.items or [])
        logger.info("Listed %d %s", len(items), self.kind)
        if self._sync is not None:
            self._sync(items)
        else:
            for item in items:
                self._deliver("ADDED", item)
        metadata = getattr(result, "metadata", None)
        return getattr(metadata, "resource_version", None)

    def _watch(self, resource_version: str | None) -> str | None:
        self._watcher = watch.Watch()
        try:
            stream = self._watcher.stream(
                self._list_call.func,
                resource_version=resource_version,
                timeout_seconds=self._timeout_seconds,
                **self._list_call.kwargs,
            )
            for event in stream:
                if self._stop_event.is_set():
                    break
                event_type = str(event.get("type", ""))
                obj = event.get("object")
                if event_type == "ERROR":
                    # Expired resource versions surface as an ERROR event on some servers
                    logger.warning("%s watch returned an error event, re-listing", self.kind)
                    return None
                if obj is None:
                    continue
                metadata = getattr(obj, "metadata", None)
                if metadata is not None and metadata.resource_version:
                    resource_version = metadata.resource_version
                self._deliver(event_type, obj)
        finally:
            self._watcher.stop()
            self._watcher = None
        return resource_version

    def _deliver(self, event_type: str, obj: Any) -> None:
        try:
            self._handler(event_type, obj)
        except Exception:
            logger.exception("Handler failed for %s %s event", self.kind, event_type)

    def _backoff(self, current: int) -> int:
        jittered = current * (0.5 + random.random())
        logger.debug("Backing off %s watch for %.1fs", self.kind, jittered)
        self._stop_event.wait(timeout=jittered)
        return min(current * 2, MAX_BACKOFF_SECONDS)
