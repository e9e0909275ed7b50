# ABOUTME: Configuration management for the Resource Sync controller
# ABOUTME: Handles environment settings and the ResourceSyncConfig custom resource spec

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The controller is configured from TWO places:

1. PROCESS SETTINGS (environment variables, RESOURCE_SYNC_* prefix)
   - How the controller itself behaves: log level, queue size, HTTP timeout,
     retry policy. These are the same for every sync configuration.

2. SYNC CONFIGURATIONS (ResourceSyncConfig custom resources)
   - Where to send data and how often: MCP endpoint, debounce window,
     resync interval, auth secret. One controller can serve many of them.

Both are pydantic models, so bad input fails loudly at the boundary instead
of surfacing later as a confusing runtime error.

=============================================================================
THE RESOURCESYNCCONFIG CUSTOM RESOURCE
=============================================================================

    apiVersion: dot-ai.devopstoolkit.live/v1alpha1
    kind: ResourceSyncConfig
    metadata:
      name: default-sync
      namespace: dot-ai
    spec:
      mcpEndpoint: http://mcp.dot-ai.svc:3456
      mcpAuthSecretRef:
        name: mcp-auth
        key: token
      debounceWindowSeconds: 10
      resyncIntervalMinutes: 60

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

    RESOURCE_SYNC_LOG_LEVEL          -> Logging level (default: INFO)
    RESOURCE_SYNC_JSON_LOGS          -> JSON log lines (default: true)
    RESOURCE_SYNC_QUEUE_SIZE         -> Bounded change queue capacity
    RESOURCE_SYNC_REQUEUE_SECONDS    -> Periodic reconcile interval
    RESOURCE_SYNC_HTTP_TIMEOUT       -> Timeout for one sync request
    RESOURCE_SYNC_MAX_RETRIES        -> Retries after the first attempt
    RESOURCE_SYNC_INITIAL_BACKOFF    -> First retry delay in seconds
    RESOURCE_SYNC_MAX_BACKOFF        -> Upper bound for the retry delay
    RESOURCE_SYNC_ENV_FILE           -> Optional .env file to load
"""

# =============================================================================
# IMPORTS
# =============================================================================

from __future__ import annotations

import os
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# DEFAULTS
# =============================================================================

# Used when the custom resource leaves a field unset or sets it to zero or a
# negative number.
DEFAULT_DEBOUNCE_WINDOW_SECONDS = 10
DEFAULT_RESYNC_INTERVAL_MINUTES = 60


# =============================================================================
# CUSTOM RESOURCE MODELS
# =============================================================================


class SecretReference(BaseModel):
    """
    Reference to one key inside a Kubernetes Secret.

    The Secret always lives in the same namespace as the ResourceSyncConfig
    that points at it, so no namespace field is needed here.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(default="", description="Secret name")
    key: str = Field(default="", description="Key within the secret data")


class ResourceSyncConfigSpec(BaseModel):
    """
    The `spec` block of a ResourceSyncConfig.

    Field aliases match the camelCase JSON of the custom resource, while
    Python code uses snake_case:

        spec = ResourceSyncConfigSpec.model_validate(obj["spec"])
        spec.mcp_endpoint          # from "mcpEndpoint"
        spec.debounce_window       # effective value with default applied

    The model is frozen: a running watcher keeps the spec it was started with
    and compares it to the freshly fetched one to decide whether to restart.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    mcp_endpoint: str = Field(alias="mcpEndpoint", description="MCP endpoint URL")
    mcp_auth_secret_ref: SecretReference | None = Field(
        default=None,
        alias="mcpAuthSecretRef",
        description="Secret holding the bearer token for the MCP endpoint",
    )
    debounce_window_seconds: int = Field(
        default=0,
        alias="debounceWindowSeconds",
        description="Seconds to collect changes before sending a batch",
    )
    resync_interval_minutes: int = Field(
        default=0,
        alias="resyncIntervalMinutes",
        description="Minutes between full resyncs",
    )

    @field_validator("mcp_endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """
        Ensure the endpoint has a scheme and no trailing slash.

            "mcp.example.com"          -> "https://mcp.example.com"
            "http://mcp.local:3456/"   -> "http://mcp.local:3456"

        The sync path itself is appended by the client, not here, so the
        spec keeps exactly what the user wrote (minus cosmetic differences).
        """
        v = v.strip()
        if not v:
            raise ValueError("mcpEndpoint must not be empty")
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")

    @property
    def debounce_window(self) -> int:
        """Effective debounce window in seconds (default 10)."""
        if self.debounce_window_seconds <= 0:
            return DEFAULT_DEBOUNCE_WINDOW_SECONDS
        return self.debounce_window_seconds

    @property
    def resync_interval(self) -> int:
        """Effective resync interval in minutes (default 60)."""
        if self.resync_interval_minutes <= 0:
            return DEFAULT_RESYNC_INTERVAL_MINUTES
        return self.resync_interval_minutes


class ResourceSyncConfig(BaseModel):
    """A ResourceSyncConfig custom resource: identity plus spec."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    namespace: str
    spec: ResourceSyncConfigSpec

    @property
    def key(self) -> str:
        """Registry key for this configuration ("namespace/name")."""
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ResourceSyncConfig:
        """
        Build from the raw custom object returned by the Kubernetes API.

        Only metadata.name, metadata.namespace and spec are read. Status,
        resourceVersion and generation are deliberately dropped so that two
        objects differing only in metadata compare equal.
        """
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            spec=ResourceSyncConfigSpec.model_validate(obj.get("spec") or {}),
        )


def config_changed(old: ResourceSyncConfigSpec, new: ResourceSyncConfigSpec) -> bool:
    """
    Return True when a running watcher must be restarted for `new`.

    Compares only the fields that shape the pipeline, using effective values,
    so switching `debounceWindowSeconds` from unset to 10 is not a change.
    """
    if old.mcp_endpoint != new.mcp_endpoint:
        return True
    if old.debounce_window != new.debounce_window:
        return True
    if old.resync_interval != new.resync_interval:
        return True
    return old.mcp_auth_secret_ref != new.mcp_auth_secret_ref


# =============================================================================
# CONTROLLER SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Process-wide controller settings read from RESOURCE_SYNC_* variables.

    USAGE:
    ------
        settings = load_settings()
        settings.queue_size        # 10000
        settings.max_retries       # 3
    """

    model_config = SettingsConfigDict(
        env_prefix="RESOURCE_SYNC_",
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(
        default=True,
        description="Emit JSON log lines instead of colored console output",
    )
    # Containers ship stdout to a log aggregator, so JSON is the default.
    # Set RESOURCE_SYNC_JSON_LOGS=false when running locally.

    # -------------------------------------------------------------------------
    # PIPELINE
    # -------------------------------------------------------------------------

    queue_size: int = Field(
        default=10000,
        ge=1,
        description="Capacity of the bounded change queue per configuration",
    )
    # When the queue is full, new changes are DROPPED and counted. Informer
    # threads never wait for a slow MCP endpoint. The periodic resync heals
    # whatever was dropped.

    requeue_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Interval of the periodic reconcile that refreshes status",
    )

    informer_watch_timeout: int = Field(
        default=1800,
        ge=1,
        description="Server-side timeout for one watch request, in seconds",
    )

    informer_stop_timeout: float = Field(
        default=5.0,
        gt=0,
        description="How long a teardown waits for informer threads to exit",
    )

    shutdown_flush_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for the final flush performed on shutdown",
    )

    # -------------------------------------------------------------------------
    # TRANSPORT
    # -------------------------------------------------------------------------

    http_timeout: float = Field(default=60.0, gt=0, description="Sync request timeout")
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    initial_backoff: float = Field(default=1.0, gt=0, description="First retry delay")
    max_backoff: float = Field(default=30.0, gt=0, description="Retry delay upper bound")

    # -------------------------------------------------------------------------
    # CUSTOM RESOURCE COORDINATES
    # -------------------------------------------------------------------------

    config_group: str = Field(default="dot-ai.devopstoolkit.live")
    config_version: str = Field(default="v1alpha1")
    config_plural: str = Field(default="resourcesyncconfigs")


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ControllerSettings:
    """
    Load settings from the environment with validation.

    If RESOURCE_SYNC_ENV_FILE is set, variables are also read from that file,
    which is handy for running the controller against a local kind cluster.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ControllerSettings(
        _env_file=os.environ.get("RESOURCE_SYNC_ENV_FILE"),
    )
