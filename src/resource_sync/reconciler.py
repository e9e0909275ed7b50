# ABOUTME: Watch manager that starts, restarts and stops the sync pipeline per configuration
# ABOUTME: Wires discovery, informers, the debounce buffer, the MCP client, status and resync

"""
Watch manager for ResourceSyncConfig objects.

=============================================================================
LIFECYCLE OF ONE CONFIGURATION
=============================================================================

    Absent --create--> Starting --ok--> Running --spec changed--> Restarting
                          |                |                           |
                          | error          | deleted                   v
                          v                v                        Running
                    status WatcherError  Stopped

reconcile() is idempotent. It is called on create/update/resume and every
`requeue_seconds` by the operator, and decides what to do from the fresh
object and the registry:

    object gone              -> stop_watcher() (no-op when nothing runs)
    no watcher yet           -> start_watcher()
    watcher, spec changed    -> stop_watcher() + start_watcher()
    watcher, spec unchanged  -> status refresh only

=============================================================================
WHAT A RUNNING CONFIGURATION OWNS (WatcherState)
=============================================================================

    informers       one per discovered GVR, plus one for CRDs that adds and
                    removes informers as CRDs come and go
    queue           bounded ChangeQueue fed by the informer callbacks
    buffer          DebounceBuffer, its run() loop is an asyncio task
    client          SyncClient for this configuration's endpoint
    resync task     sends the whole informer cache every resync interval

stop_watcher() releases all of it, so configurations can be created and
deleted repeatedly without leaking threads, tasks or connections.
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import AsyncExitStack
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from resource_sync.buffer import ChangeQueue, DebounceBuffer
from resource_sync.config import ResourceSyncConfig, config_changed
from resource_sync.discovery import DiscoveryError, discover_resources, gvr_from_crd
from resource_sync.identity import (
    build_id,
    build_resource_id,
    extract_data,
    identifier_from_object,
    is_relevant_change,
    should_skip_resource,
)
from resource_sync.informer import EventHandlers, Informer, join_informers
from resource_sync.models import CRD_GVR, DeletedFinalStateUnknown, ResourceChange
from resource_sync.registry import WatcherState
from resource_sync.utils.client import SyncClient
from resource_sync.utils.credentials import SecretTokenResolver
from resource_sync.utils.kube import KubeApi, load_api_client
from resource_sync.utils.logging import new_correlation_id

if TYPE_CHECKING:
    from collections.abc import Callable

    from resource_sync.config import ControllerSettings
    from resource_sync.models import GVR
    from resource_sync.registry import ActiveConfigRegistry

logger = structlog.get_logger(__name__)

READY_CONDITION = "Ready"


def _now() -> datetime:
    return datetime.now(UTC)


def _timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# =============================================================================
# STATUS
# =============================================================================


def build_status(
    active: bool,
    watched_types: int,
    last_error: str = "",
    state: WatcherState | None = None,
    previous: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Build the status block of a ResourceSyncConfig.

    The Ready condition keeps its lastTransitionTime while its status does
    not change. Counters come from the running watcher when there is one.
    """
    now = now or _now()
    previous = previous or {}

    if active:
        condition = {
            "type": READY_CONDITION,
            "status": "True",
            "reason": "WatcherActive",
            "message": f"Watching {watched_types} resource types",
        }
    elif last_error:
        condition = {
            "type": READY_CONDITION,
            "status": "False",
            "reason": "WatcherError",
            "message": last_error,
        }
    else:
        condition = {
            "type": READY_CONDITION,
            "status": "False",
            "reason": "WatcherInactive",
            "message": "Resource watcher is not running",
        }

    transition = _timestamp(now)
    for existing in previous.get("conditions") or []:
        if existing.get("type") == READY_CONDITION and existing.get("status") == condition["status"]:
            transition = existing.get("lastTransitionTime") or transition
    condition["lastTransitionTime"] = transition

    conditions = [
        c for c in previous.get("conditions") or [] if c.get("type") != READY_CONDITION
    ]
    conditions.append(condition)

    status: dict[str, Any] = {
        "active": active,
        "watchedResourceTypes": watched_types,
        "lastError": last_error or None,
        "conditions": conditions,
    }

    if state is not None:
        metrics = state.buffer.get_metrics()
        status["totalResourcesSynced"] = (
            metrics.total_upserts + metrics.total_deletes + state.total_resynced
        )
        status["syncErrors"] = metrics.sync_errors + state.resync_errors
        status["lastSyncTime"] = _timestamp(metrics.last_flush_time)
        status["lastResyncTime"] = _timestamp(state.last_resync_time)
        if not last_error:
            status["lastError"] = metrics.last_error or state.last_resync_error

    return status


# =============================================================================
# RECONCILER
# =============================================================================


class ResourceSyncReconciler:
    """
    Runs one sync pipeline per ResourceSyncConfig.

    Collaborators are injectable so the reconciler can be driven without a
    cluster: pass `kube_api`, `custom_api` and `core_api` mocks, and
    replace `discover`, `informer_factory` or `client_factory` as needed.
    """

    def __init__(
        self,
        settings: ControllerSettings,
        registry: ActiveConfigRegistry,
        api_client: k8s_client.ApiClient | None = None,
        kube_api: KubeApi | None = None,
        custom_api: k8s_client.CustomObjectsApi | None = None,
        core_api: k8s_client.CoreV1Api | None = None,
        discover: Callable[[KubeApi], list[GVR]] = discover_resources,
        informer_factory: Callable[..., Informer] = Informer,
        client_factory: Callable[[ResourceSyncConfig], SyncClient] | None = None,
        recorder: Callable[[dict[str, Any], str, str, str], None] | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._api_client = api_client
        self._kube_api = kube_api
        self._custom_api = custom_api
        self._core_api = core_api
        self._discover = discover
        self._informer_factory = informer_factory
        self._client_factory = client_factory or self._build_sync_client
        self._recorder = recorder

    @property
    def registry(self) -> ActiveConfigRegistry:
        return self._registry

    # =========================================================================
    # CLIENTS
    # =========================================================================

    def ensure_clients(self) -> None:
        """Create the Kubernetes API clients on first use."""
        if self._kube_api and self._custom_api and self._core_api:
            return
        if self._api_client is None:
            self._api_client = load_api_client()
        if self._kube_api is None:
            self._kube_api = KubeApi(self._api_client)
        if self._custom_api is None:
            self._custom_api = k8s_client.CustomObjectsApi(self._api_client)
        if self._core_api is None:
            self._core_api = k8s_client.CoreV1Api(self._api_client)

    def _build_sync_client(self, config: ResourceSyncConfig) -> SyncClient:
        resolver = SecretTokenResolver(
            self._core_api,
            config.namespace,
            config.spec.mcp_auth_secret_ref,
        )
        return SyncClient(
            config.spec.mcp_endpoint,
            token_resolver=resolver,
            timeout=self._settings.http_timeout,
            max_retries=self._settings.max_retries,
            initial_backoff=self._settings.initial_backoff,
            max_backoff=self._settings.max_backoff,
        )

    # =========================================================================
    # RECONCILE
    # =========================================================================

    async def reconcile(self, namespace: str, name: str) -> float | None:
        """
        Bring the watcher of `namespace/name` in line with the cluster.

        Returns:
            Seconds until the next reconcile, or None when the object is
            gone or invalid and there is nothing to revisit.

        Raises:
            ApiException: Reading the object failed with anything but 404
        """
        key = f"{namespace}/{name}"
        new_correlation_id()
        log = logger.bind(config=key)
        self.ensure_clients()
        s = self._settings

        try:
            obj = await asyncio.to_thread(
                self._custom_api.get_namespaced_custom_object,
                s.config_group,
                s.config_version,
                namespace,
                s.config_plural,
                name,
            )
        except ApiException as e:
            if e.status == 404:
                log.info("ResourceSyncConfig deleted, stopping resource watcher")
                await self.stop_watcher(key)
                return None
            raise

        try:
            config = ResourceSyncConfig.from_object(obj)
        except ValidationError as e:
            message = f"invalid spec: {e.errors()[0].get('msg', e)}"
            log.warning("Invalid ResourceSyncConfig", error=message)
            await self.stop_watcher(key)
            await self.update_status(obj, active=False, watched_types=0, last_error=message)
            return None

        log.info(
            "Reconciling ResourceSyncConfig",
            mcp_endpoint=config.spec.mcp_endpoint,
            debounce_window=config.spec.debounce_window,
            resync_interval=config.spec.resync_interval,
        )

        existing = self._registry.get(key)
        if existing is not None:
            if not config_changed(existing.config.spec, config.spec):
                await self.update_status(
                    obj,
                    active=True,
                    watched_types=len(existing.watched_gvrs()),
                    state=existing,
                )
                return s.requeue_seconds
            log.info("ResourceSyncConfig changed, restarting watcher")
            await self.stop_watcher(key)

        try:
            state = await self.start_watcher(config)
        except Exception as e:
            log.exception("Failed to start resource watcher")
            await self.update_status(obj, active=False, watched_types=0, last_error=str(e))
            self._record_event(
                obj, "Warning", "WatcherFailed", f"Failed to start resource watcher: {e}"
            )
            return s.requeue_seconds

        await self.update_status(
            obj, active=True, watched_types=len(state.watched_gvrs()), state=state
        )
        self._record_event(obj, "Normal", "WatcherStarted", "Resource watcher started successfully")
        log.info("ResourceSyncConfig reconciled successfully")
        return s.requeue_seconds

    # =========================================================================
    # START / STOP
    # =========================================================================

    async def start_watcher(self, config: ResourceSyncConfig) -> WatcherState:
        """
        Discover resource types and start the full pipeline for `config`.

        Raises:
            ApiException: Discovery could not reach the API server
        """
        self.ensure_clients()
        log = logger.bind(config=config.key)

        gvrs = await asyncio.to_thread(self._discover, self._kube_api)

        loop = asyncio.get_running_loop()
        queue = ChangeQueue(self._settings.queue_size, loop)
        stack = AsyncExitStack()
        sync_client = await stack.enter_async_context(self._client_factory(config))
        buffer = DebounceBuffer(
            window=config.spec.debounce_window,
            client=sync_client,
            queue=queue,
        )
        state = WatcherState(
            config=config,
            queue=queue,
            buffer=buffer,
            client=sync_client,
            exit_stack=stack,
        )

        try:
            for gvr in gvrs:
                if gvr != CRD_GVR:
                    state.add_informer(gvr, self._new_informer(state, gvr))
            state.add_informer(
                CRD_GVR,
                self._informer_factory(
                    self._kube_api,
                    CRD_GVR,
                    EventHandlers(
                        on_add=self.make_on_crd_add(state),
                        on_delete=self.make_on_crd_delete(state),
                    ),
                    watch_timeout=self._settings.informer_watch_timeout,
                ),
            )

            for informer in state.informers().values():
                informer.start()

            state.buffer_task = asyncio.create_task(buffer.run(), name=f"debounce-{config.key}")
            state.resync_task = asyncio.create_task(
                self._resync_loop(state), name=f"resync-{config.key}"
            )
        except BaseException:
            await self._teardown(state, drain=False)
            raise

        previous = self._registry.register(config.key, state)
        if previous is not None:
            await self._teardown(previous, drain=False)

        log.info("Resource watcher started", informers=len(state.watched_gvrs()))
        return state

    async def stop_watcher(self, key: str, drain: bool = False) -> bool:
        """
        Stop and forget the watcher of `key`.

        With drain=True the changes still pending are flushed first, bounded
        by `shutdown_flush_timeout`. Returns False when nothing was running.
        """
        state = self._registry.pop(key)
        if state is None:
            return False
        await self._teardown(state, drain=drain)
        logger.info("Resource watcher stopped", config=key, drained=drain)
        return True

    async def stop_all(self, drain: bool = False) -> None:
        for key in self._registry.keys():
            await self.stop_watcher(key, drain=drain)

    async def _teardown(self, state: WatcherState, drain: bool) -> None:
        informers = list(state.informers().values())
        for informer in informers:
            informer.stop()
        state.queue.close()

        tasks = [t for t in (state.buffer_task, state.resync_task) if t is not None]
        if state.resync_task is not None:
            state.resync_task.cancel()

        if drain and state.buffer_task is not None:
            try:
                # The run loop consumes what is queued and returns on close.
                await asyncio.wait_for(
                    asyncio.shield(state.buffer_task), self._settings.shutdown_flush_timeout
                )
                await asyncio.wait_for(
                    state.buffer.flush(), self._settings.shutdown_flush_timeout
                )
            except TimeoutError:
                logger.warning(
                    "Final flush timed out",
                    config=state.config.key,
                    pending=state.buffer.pending_count(),
                )

        if state.buffer_task is not None:
            state.buffer_task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await state.exit_stack.aclose()

        running = await asyncio.to_thread(
            join_informers, informers, self._settings.informer_stop_timeout
        )
        if running:
            logger.warning(
                "Informer threads still running after stop",
                config=state.config.key,
                gvrs=[str(informer.gvr) for informer in running],
            )

    # =========================================================================
    # EVENT INGESTION (called on informer threads)
    # =========================================================================

    def _new_informer(self, state: WatcherState, gvr: GVR) -> Informer:
        return self._informer_factory(
            self._kube_api,
            gvr,
            EventHandlers(
                on_add=self.make_on_add(state),
                on_update=self.make_on_update(state),
                on_delete=self.make_on_delete(state),
            ),
            watch_timeout=self._settings.informer_watch_timeout,
        )

    @staticmethod
    def _enqueue(state: WatcherState, change: ResourceChange) -> None:
        if not state.queue.offer(change):
            logger.debug("Change queue full, dropping change", config=state.config.key, id=change.id)

    def make_on_add(self, state: WatcherState) -> Callable[[dict[str, Any]], None]:
        def on_add(obj: dict[str, Any]) -> None:
            self._enqueue(state, ResourceChange.upsert(build_resource_id(obj), extract_data(obj)))

        return on_add

    def make_on_update(self, state: WatcherState) -> Callable[[dict[str, Any], dict[str, Any]], None]:
        def on_update(old: dict[str, Any], new: dict[str, Any]) -> None:
            if is_relevant_change(old, new):
                self._enqueue(state, ResourceChange.upsert(build_resource_id(new), extract_data(new)))

        return on_update

    def make_on_delete(
        self, state: WatcherState
    ) -> Callable[[dict[str, Any] | DeletedFinalStateUnknown], None]:
        def on_delete(obj: dict[str, Any] | DeletedFinalStateUnknown) -> None:
            if isinstance(obj, DeletedFinalStateUnknown):
                obj = obj.obj
            identifier = identifier_from_object(obj)
            self._enqueue(state, ResourceChange.delete(build_id(identifier), identifier))

        return on_delete

    def make_on_crd_add(self, state: WatcherState) -> Callable[[dict[str, Any]], None]:
        def on_crd_add(obj: dict[str, Any]) -> None:
            try:
                gvr = gvr_from_crd(obj)
            except DiscoveryError as e:
                logger.info("Failed to extract GVR from CRD", crd=e.resource, reason=e.reason)
                return
            if should_skip_resource(gvr.group, gvr.resource) or state.has_informer(gvr):
                return
            if state.queue.closed:
                return

            informer = self._new_informer(state, gvr)
            if not state.add_informer(gvr, informer):
                return
            informer.start()
            if state.queue.closed:
                # Stopped while this informer was being added.
                informer.stop()
                return
            logger.info("New CRD detected, informer created", gvr=str(gvr))

        return on_crd_add

    def make_on_crd_delete(
        self, state: WatcherState
    ) -> Callable[[dict[str, Any] | DeletedFinalStateUnknown], None]:
        def on_crd_delete(obj: dict[str, Any] | DeletedFinalStateUnknown) -> None:
            if isinstance(obj, DeletedFinalStateUnknown):
                obj = obj.obj
            try:
                gvr = gvr_from_crd(obj)
            except DiscoveryError as e:
                logger.info("Failed to extract GVR from deleted CRD", crd=e.resource, reason=e.reason)
                return
            if gvr == CRD_GVR:
                return
            informer = state.remove_informer(gvr)
            if informer is not None:
                informer.stop()
                logger.info("CRD deleted, informer removed", gvr=str(gvr))

        return on_crd_delete

    # =========================================================================
    # RESYNC
    # =========================================================================

    async def perform_resync(self, state: WatcherState) -> int:
        """
        Send every cached object of every informer (CRDs excluded).

        Returns:
            Number of resources sent. An empty cache still sends an empty
            snapshot; 0 without informers or without a client.

        Raises:
            SyncError, PartialSyncError, CredentialError: from the client
        """
        informers = [inf for gvr, inf in state.informers().items() if gvr != CRD_GVR]
        if not informers or state.client is None:
            return 0

        resources = [extract_data(obj) for inf in informers for obj in inf.list_cached()]

        new_correlation_id()
        log = logger.bind(config=state.config.key, resources=len(resources))
        log.info("Resync started")
        await state.client.resync(resources)
        state.last_resync_time = _now()
        state.total_resynced += len(resources)
        log.info("Resync completed")
        return len(resources)

    async def _resync_loop(self, state: WatcherState) -> None:
        interval = state.config.spec.resync_interval * 60
        while True:
            await asyncio.sleep(interval)
            try:
                await self.perform_resync(state)
            except Exception as e:
                state.resync_errors += 1
                state.last_resync_error = str(e)
                logger.warning("Resync failed", config=state.config.key, error=str(e))

    # =========================================================================
    # STATUS AND EVENTS
    # =========================================================================

    async def update_status(
        self,
        obj: dict[str, Any],
        active: bool,
        watched_types: int,
        last_error: str = "",
        state: WatcherState | None = None,
    ) -> None:
        """Patch the status subresource; failures are logged, not raised."""
        metadata = obj.get("metadata") or {}
        status = build_status(
            active,
            watched_types,
            last_error=last_error,
            state=state,
            previous=obj.get("status"),
        )
        s = self._settings
        try:
            await asyncio.to_thread(
                self._custom_api.patch_namespaced_custom_object_status,
                s.config_group,
                s.config_version,
                metadata.get("namespace", ""),
                s.config_plural,
                metadata.get("name", ""),
                {"status": status},
            )
        except ApiException as e:
            logger.error(
                "Failed to update ResourceSyncConfig status",
                config=f"{metadata.get('namespace')}/{metadata.get('name')}",
                status=e.status,
                reason=e.reason,
            )

    def _record_event(self, obj: dict[str, Any], event_type: str, reason: str, message: str) -> None:
        if self._recorder is None:
            return
        try:
            self._recorder(obj, event_type, reason, message)
        except Exception:
            logger.exception("Failed to record Kubernetes event", reason=reason)
