# ABOUTME: Thread-backed list/watch informer for one resource type
# ABOUTME: Keeps a local object cache and dispatches add/update/delete callbacks

"""
List + watch with a local cache, one daemon thread per resource type.

    list  ----> cache seeded, on_add() for every object, has_synced set
     |
    watch from the list's resourceVersion
     |    ADDED     -> on_add()     (on_update() if the key is cached)
     |    MODIFIED  -> on_update(old, new)
     |    DELETED   -> on_delete()
     |    BOOKMARK  -> resourceVersion only
     |
    stream ends (server timeout)  -> watch again from the last resourceVersion
    410 Gone                      -> relist and diff against the cache;
                                     vanished objects are delivered as
                                     DeletedFinalStateUnknown tombstones
    other errors                  -> jittered exponential backoff, 30s cap

Callbacks run on the informer thread and must return quickly.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes import watch
from kubernetes.client.rest import ApiException

from resource_sync.models import DeletedFinalStateUnknown

if TYPE_CHECKING:
    from collections.abc import Callable

    from resource_sync.models import GVR
    from resource_sync.utils.kube import KubeApi

logger = structlog.get_logger(__name__)

MAX_BACKOFF_SECONDS = 30.0


@dataclass
class EventHandlers:
    """Callbacks of one informer. on_update may be None for add/delete only."""

    on_add: Callable[[dict[str, Any]], None]
    on_delete: Callable[[dict[str, Any] | DeletedFinalStateUnknown], None]
    on_update: Callable[[dict[str, Any], dict[str, Any]], None] | None = None


def _interrupt(response: Any) -> None:
    """Unblock a thread reading `response` and release its connection."""
    response.shutdown()
    response.close()


def join_informers(informers: list[Informer], timeout: float) -> list[Informer]:
    """
    Wait up to `timeout` seconds in total for stopped informers to exit.

    Returns:
        The informers whose thread is still running.
    """
    deadline = time.monotonic() + timeout
    for informer in informers:
        informer.join(max(0.0, deadline - time.monotonic()))
    return [informer for informer in informers if informer.is_alive()]


def object_key(obj: dict[str, Any]) -> str:
    """Cache key: "namespace/name", or "name" for cluster-scoped objects."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    name = metadata.get("name", "")
    return f"{namespace}/{name}" if namespace else name


class Informer:
    """Watches one GVR cluster-wide and mirrors it in memory."""

    def __init__(
        self,
        api: KubeApi,
        gvr: GVR,
        handlers: EventHandlers,
        watch_timeout: int = 1800,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize informer.

        Args:
            api: Raw JSON Kubernetes API
            gvr: Resource type to watch
            handlers: Event callbacks
            watch_timeout: Server-side timeout of one watch request
            rng: Random source for reconnect jitter
        """
        self.gvr = gvr
        self._api = api
        self._handlers = handlers
        self._watch_timeout = watch_timeout
        self._rng = rng or random.Random()
        self._cache: dict[str, dict[str, Any]] = {}
        self._cache_lock = threading.Lock()
        self._stop = threading.Event()
        self._response: Any = None
        self._response_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.has_synced = threading.Event()
        self._log = logger.bind(gvr=str(gvr))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self.run,
            name=f"informer-{self.gvr}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """
        Stop the informer and interrupt the open watch stream.

        A quiet watch blocks in a socket read until the server timeout, so the
        stop flag alone would only be seen on the next event. Shutting the
        response down wakes the reader thread immediately.
        """
        self._stop.set()
        with self._response_lock:
            response = self._response
        if response is not None:
            _interrupt(response)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def list_cached(self) -> list[dict[str, Any]]:
        """Snapshot of every cached object."""
        with self._cache_lock:
            return list(self._cache.values())

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    def run(self) -> None:
        """List, then watch until stop() is called."""
        resource_version = self._initial_list()
        backoff = 1.0

        while not self._stop.is_set():
            if resource_version is None:
                resource_version = self._relist()
                if resource_version is None:
                    backoff = self._sleep(backoff)
                    continue

            watcher = watch.Watch()
            try:
                for event in watcher.stream(
                    self._open_stream,
                    self.gvr.api_path,
                    resource_version=resource_version,
                    timeout_seconds=self._watch_timeout,
                    allow_watch_bookmarks=True,
                ):
                    if self._stop.is_set():
                        break
                    resource_version = self._handle_event(event) or resource_version
                backoff = 1.0
            except ApiException as e:
                if e.status == 410:
                    self._log.info("Watch resource version expired, re-listing")
                    resource_version = None
                    continue
                self._log.warning("Watch failed", status=e.status, reason=e.reason)
                backoff = self._sleep(backoff)
            except Exception:
                if self._stop.is_set():
                    break
                self._log.exception("Unexpected watch error")
                backoff = self._sleep(backoff)
            finally:
                watcher.stop()
                with self._response_lock:
                    self._response = None

        self._log.debug("Informer stopped")

    def _open_stream(self, path: str, **kwargs: Any) -> Any:
        # No docstring: Watch.stream then yields events with plain dict objects.
        # The raw urllib3 response is kept so stop() can shut it down.
        response = self._api.list_collection(path, **kwargs)
        with self._response_lock:
            self._response = response
        if self._stop.is_set():
            _interrupt(response)
        return response

    def _sleep(self, backoff: float) -> float:
        self._stop.wait(timeout=backoff * (0.5 + self._rng.random()))
        return min(backoff * 2, MAX_BACKOFF_SECONDS)

    def _initial_list(self) -> str | None:
        backoff = 1.0
        while not self._stop.is_set():
            try:
                items, resource_version = self._list()
            except ApiException as e:
                self._log.warning("Initial list failed", status=e.status, reason=e.reason)
            except Exception:
                self._log.exception("Unexpected error during initial list")
            else:
                with self._cache_lock:
                    self._cache = {object_key(item): item for item in items}
                for item in items:
                    self._dispatch(self._handlers.on_add, item)
                self.has_synced.set()
                self._log.debug("Informer synced", objects=len(items))
                return resource_version
            backoff = self._sleep(backoff)
        return None

    def _relist(self) -> str | None:
        """Replace the cache with a fresh list and emit the difference."""
        try:
            items, resource_version = self._list()
        except ApiException as e:
            self._log.warning("Re-list failed", status=e.status, reason=e.reason)
            return None
        except Exception:
            self._log.exception("Unexpected error during re-list")
            return None

        fresh = {object_key(item): item for item in items}
        with self._cache_lock:
            previous, self._cache = self._cache, fresh

        for key, obj in previous.items():
            if key not in fresh:
                self._dispatch(self._handlers.on_delete, DeletedFinalStateUnknown(key, obj))
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch(self._handlers.on_add, obj)
            elif self._handlers.on_update is not None:
                self._dispatch(self._handlers.on_update, old, obj)
        return resource_version

    def _list(self) -> tuple[list[dict[str, Any]], str | None]:
        response = self._api.list_collection(self.gvr.api_path)
        kind = response.get("kind", "")
        item_kind = kind[: -len("List")] if kind.endswith("List") else kind
        items = []
        for item in response.get("items") or []:
            # List responses of built-in types omit apiVersion and kind per item.
            item.setdefault("apiVersion", self.gvr.api_version)
            if item_kind:
                item.setdefault("kind", item_kind)
            items.append(item)
        return items, (response.get("metadata") or {}).get("resourceVersion")

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _handle_event(self, event: dict[str, Any]) -> str | None:
        """Apply one watch event; returns the new resourceVersion if any."""
        event_type = event.get("type")
        obj = event.get("object")
        if not isinstance(obj, dict):
            return None

        if event_type == "ERROR":
            raise ApiException(status=obj.get("code"), reason=obj.get("message"))

        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        if event_type == "BOOKMARK":
            return resource_version

        key = object_key(obj)
        if event_type in ("ADDED", "MODIFIED"):
            with self._cache_lock:
                old = self._cache.get(key)
                self._cache[key] = obj
            if old is None:
                self._dispatch(self._handlers.on_add, obj)
            elif self._handlers.on_update is not None:
                self._dispatch(self._handlers.on_update, old, obj)
        elif event_type == "DELETED":
            with self._cache_lock:
                self._cache.pop(key, None)
            self._dispatch(self._handlers.on_delete, obj)

        return resource_version

    def _dispatch(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            self._log.exception("Informer event handler failed")
