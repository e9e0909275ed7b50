# ABOUTME: Kubernetes Resource Sync controller package initialization
# ABOUTME: Exposes version information for the resource change-capture pipeline

"""
Kubernetes Resource Sync - keeps an external MCP index in step with the cluster.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

This package is a Kubernetes controller. For every ResourceSyncConfig custom
resource in the cluster it:

1. DISCOVERS every resource type the cluster serves (built-in and CRDs)
2. WATCHES each type with an informer (list + watch + local cache)
3. CLASSIFIES mutations - only adds, deletes and label changes matter
4. DEBOUNCES them - many changes to one resource collapse into one
5. SHIPS batches to the MCP sync endpoint with retries
6. RESYNCS periodically - the full cache is sent to heal any drift

=============================================================================
WHAT IS A "RESOURCE CHANGE"?
=============================================================================

Kubernetes emits a stream of watch events (ADDED, MODIFIED, DELETED) for every
object. Most MODIFIED events are noise for an index that tracks identity and
labels: status updates, resourceVersion bumps, annotation churn. The pipeline
turns the raw stream into a small number of meaningful upserts and deletes:

    ADDED    pod/web-1           -> upsert  default:v1:Pod:web-1
    MODIFIED pod/web-1 (status)  -> ignored
    MODIFIED pod/web-1 (labels)  -> upsert  default:v1:Pod:web-1  (replaces)
    DELETED  pod/web-1           -> delete  default:v1:Pod:web-1  (wins)

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

resource_sync/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Settings (env vars) and the ResourceSyncConfig spec
├── models.py            <- Value types: GVR, ResourceIdentifier, ResourceData, ...
├── identity.py          <- Resource IDs and change classification
├── buffer.py            <- Debounce buffer and the bounded change queue
├── discovery.py         <- Finds watchable resource types
├── informer.py          <- Thread-backed list/watch cache per resource type
├── registry.py          <- Registry of active configurations
├── reconciler.py        <- Watch manager: start/stop/restart per configuration
├── operator.py          <- kopf handlers and the CLI entry point
└── utils/
    ├── client.py        <- HTTP client for the MCP sync endpoint
    ├── credentials.py   <- Bearer token lookup from Kubernetes Secrets
    ├── kube.py          <- Raw JSON access for discovery and list/watch
    └── logging.py       <- Structured logging with correlation IDs
"""

# =============================================================================
# VERSION INFORMATION
# =============================================================================

# Semantic Versioning (MAJOR.MINOR.PATCH). The version is also sent in the
# User-Agent header of every sync request.

__version__ = "0.1.0"

# =============================================================================
# PUBLIC API DEFINITION
# =============================================================================

# The controller runs as a process (see operator.main), so only the version
# is re-exported. Import the submodules directly when embedding the pipeline.

__all__ = ["__version__"]
