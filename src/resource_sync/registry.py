# ABOUTME: Runtime state of active sync configurations and the registry holding them
# ABOUTME: Thread-safe map from "namespace/name" to the running watcher of that configuration

"""Active configuration registry."""

from __future__ import annotations

import threading
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncio
    from datetime import datetime

    from resource_sync.buffer import ChangeQueue, DebounceBuffer
    from resource_sync.config import ResourceSyncConfig
    from resource_sync.informer import Informer
    from resource_sync.models import GVR
    from resource_sync.utils.client import SyncClient


@dataclass
class WatcherState:
    """Everything one running configuration owns."""

    config: ResourceSyncConfig
    queue: ChangeQueue
    buffer: DebounceBuffer
    client: SyncClient | None = None
    exit_stack: AsyncExitStack = field(default_factory=AsyncExitStack, repr=False)
    buffer_task: asyncio.Task[None] | None = None
    resync_task: asyncio.Task[None] | None = None
    last_resync_time: datetime | None = None
    total_resynced: int = 0
    resync_errors: int = 0
    last_resync_error: str | None = None
    _informers: dict[GVR, Informer] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_informer(self, gvr: GVR, informer: Informer) -> bool:
        """Add an informer unless one already exists for `gvr`."""
        with self._lock:
            if gvr in self._informers:
                return False
            self._informers[gvr] = informer
            return True

    def remove_informer(self, gvr: GVR) -> Informer | None:
        with self._lock:
            return self._informers.pop(gvr, None)

    def has_informer(self, gvr: GVR) -> bool:
        with self._lock:
            return gvr in self._informers

    def informers(self) -> dict[GVR, Informer]:
        """Snapshot of the informers keyed by GVR."""
        with self._lock:
            return dict(self._informers)

    def watched_gvrs(self) -> list[GVR]:
        with self._lock:
            return sorted(self._informers)


class ActiveConfigRegistry:
    """
    Maps configuration keys to watcher state.

    Only the reconciler's start/stop transitions write to it; status
    reporting reads from it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, WatcherState] = {}

    def register(self, key: str, state: WatcherState) -> WatcherState | None:
        """Store `state` under `key`, returning what was there before."""
        with self._lock:
            previous = self._states.get(key)
            self._states[key] = state
            return previous

    def pop(self, key: str) -> WatcherState | None:
        with self._lock:
            return self._states.pop(key, None)

    def get(self, key: str) -> WatcherState | None:
        with self._lock:
            return self._states.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._states)

    def count(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._states

    def watched_gvrs(self, key: str) -> list[GVR]:
        """GVRs watched by the configuration `key` (empty when inactive)."""
        state = self.get(key)
        if state is None:
            return []
        return state.watched_gvrs()
