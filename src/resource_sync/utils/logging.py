# ABOUTME: Structured logging with correlation IDs for the Resource Sync controller
# ABOUTME: Configures structlog and groups the log lines of one flush, resync or reconcile

"""
Structured logging with correlation IDs.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module provides two observability features:

1. STRUCTURED LOGGING: every log line is a set of key/value pairs, rendered
   as JSON in the cluster and as colored text on a developer machine.

2. CORRELATION IDs: a short identifier attached to every log line produced by
   one unit of work. In this controller a "unit of work" is:
   - one debounce flush (record -> HTTP call -> requeue)
   - one full resync
   - one reconcile of a ResourceSyncConfig

=============================================================================
WHY CORRELATION IDs HERE?
=============================================================================

Many configurations run concurrently in one process, each with its own
buffer task, resync task and retry loop. Without a correlation ID, the
lines of a failing flush interleave with everything else:

    {"correlation_id": "a1b2c3d4", "event": "Flushing changes", "upserts": 12}
    {"correlation_id": "9f8e7d6c", "event": "Resync started", "config": "ns/b"}
    {"correlation_id": "a1b2c3d4", "event": "Retrying sync request", "attempt": 1}
    {"correlation_id": "a1b2c3d4", "event": "Sync completed", "upserted": 12}

Filter with: `jq 'select(.correlation_id == "a1b2c3d4")'`

=============================================================================
CONTEXT VARIABLES (contextvars)
=============================================================================

The ID lives in a ContextVar. Each asyncio task gets its own copy of the
context, so the buffer task of config A never sees the ID of config B's
resync task, even though both run on the same event loop.
"""

# =============================================================================
# IMPORTS
# =============================================================================
#
# Standard library:
# - logging: Log level constants (DEBUG, INFO, ...) as integers
# - uuid: Generate correlation IDs
# - ContextVar: Task-local storage for the correlation ID
#
# Third-party:
# - structlog: Structured logging with JSON output and processors
# =============================================================================

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping

# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate a new one.

    Code running outside any unit of work (startup, informer threads) still
    gets an ID, so every log line is correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for the current context.

    Args:
        cid: The correlation ID to set. An empty string makes the next
             get_correlation_id() call generate a fresh one.
    """
    correlation_id.set(cid)


def new_correlation_id() -> str:
    """Start a new unit of work: generate, store and return a fresh ID."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor that adds the correlation ID to every event.

    Args:
        logger: The structlog wrapped logger (unused but required by API)
        method_name: The logging method name (unused but required by API)
        event_dict: Dictionary containing log event data to enrich

    Returns:
        The event_dict with "correlation_id" field added.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: Fields bound with structlog.contextvars
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_correlation_id: Our correlation ID
    5. Renderer: JSON (cluster) or colored console (local)

    Args:
        level: Logging level name ("DEBUG", "INFO", ...)
        json_output: JSON lines when True, colored console output otherwise
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
