# ABOUTME: kopf operator handlers and CLI entry point for the Resource Sync controller
# ABOUTME: Routes ResourceSyncConfig lifecycle events to the watch manager

"""
Operator wiring.

=============================================================================
HANDLERS
=============================================================================

    @kopf.on.startup      settings, logging, reconciler in memo
    @kopf.on.create       reconcile()
    @kopf.on.update       reconcile()   (restarts the watcher if needed)
    @kopf.on.resume       reconcile()   (operator restarted)
    @kopf.timer           reconcile()   every requeue_seconds (status refresh)
    @kopf.on.delete       stop_watcher()
    @kopf.on.cleanup      stop_all(drain=True)

kopf serializes the change handlers of one object, but the timer runs
alongside them, so two reconciles of the same configuration may overlap.
The registry copes: registering a watcher tears down the one it replaces.
The reconciler is shared through kopf's memo, which every handler receives.

=============================================================================
RUNNING
=============================================================================

    k8s-resource-sync               # watches ResourceSyncConfigs cluster-wide

Settings come from RESOURCE_SYNC_* variables (see config.py). They are read
once at import, since kopf binds handlers to their resource and timer
interval when the decorators run.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import kopf
import structlog

from resource_sync import __version__
from resource_sync.config import ControllerSettings, load_settings
from resource_sync.reconciler import ResourceSyncReconciler
from resource_sync.registry import ActiveConfigRegistry
from resource_sync.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

SETTINGS = load_settings()

GROUP = SETTINGS.config_group
VERSION = SETTINGS.config_version
PLURAL = SETTINGS.config_plural
FINALIZER = f"{GROUP}/resource-sync"


def post_event(obj: dict[str, Any], event_type: str, reason: str, message: str) -> None:
    """Record a Kubernetes Event on `obj` through kopf's event poster."""
    kopf.event(obj, type=event_type, reason=reason, message=message)


def build_reconciler(settings: ControllerSettings) -> ResourceSyncReconciler:
    return ResourceSyncReconciler(
        settings,
        ActiveConfigRegistry(),
        recorder=post_event,
    )


# =============================================================================
# STARTUP / CLEANUP
# =============================================================================


@kopf.on.startup()
async def startup(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any) -> None:
    """Load controller settings and create the shared reconciler."""
    controller_settings = memo.get("settings") or SETTINGS
    memo["settings"] = controller_settings

    settings.persistence.finalizer = FINALIZER
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=GROUP)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=GROUP, key="last-handled-configuration"
    )
    settings.posting.level = logging.INFO

    if memo.get("reconciler") is None:
        memo["reconciler"] = build_reconciler(controller_settings)
    logger.info("Resource sync controller starting", version=__version__)


@kopf.on.cleanup()
async def cleanup(memo: kopf.Memo, **_: Any) -> None:
    """Flush pending changes and stop every watcher."""
    reconciler: ResourceSyncReconciler | None = memo.get("reconciler")
    if reconciler is None:
        return
    logger.info("Resource sync controller shutting down", active=reconciler.registry.count())
    await reconciler.stop_all(drain=True)


# =============================================================================
# RESOURCESYNCCONFIG HANDLERS
# =============================================================================


@kopf.on.create(GROUP, VERSION, PLURAL)
@kopf.on.update(GROUP, VERSION, PLURAL, field="spec")
@kopf.on.resume(GROUP, VERSION, PLURAL)
async def config_changed(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
    """Start, restart or refresh the watcher of one configuration."""
    reconciler: ResourceSyncReconciler = memo["reconciler"]
    await reconciler.reconcile(namespace, name)


@kopf.timer(
    GROUP,
    VERSION,
    PLURAL,
    interval=SETTINGS.requeue_seconds,
    initial_delay=SETTINGS.requeue_seconds,
)
async def periodic_reconcile(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
    """Refresh status and recover a watcher that failed to start."""
    reconciler: ResourceSyncReconciler = memo["reconciler"]
    await reconciler.reconcile(namespace, name)


@kopf.on.delete(GROUP, VERSION, PLURAL)
async def config_deleted(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
    """Stop the watcher of a deleted configuration."""
    reconciler: ResourceSyncReconciler = memo["reconciler"]
    await reconciler.stop_watcher(f"{namespace}/{name}")


# =============================================================================
# ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the Resource Sync operator."""
    configure_logging(level=SETTINGS.log_level, json_output=SETTINGS.json_logs)
    logger.info("Resource sync operator starting", version=__version__)

    memo = kopf.Memo(settings=SETTINGS, reconciler=build_reconciler(SETTINGS))
    try:
        kopf.run(
            clusterwide=True,
            liveness_endpoint="http://0.0.0.0:8080/healthz",
            memo=memo,
        )
    except KeyboardInterrupt:
        logger.info("Operator interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Operator error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
