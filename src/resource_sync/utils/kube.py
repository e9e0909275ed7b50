# ABOUTME: Thin Kubernetes API wrapper returning plain JSON objects
# ABOUTME: Used for discovery and for list/watch of resource types known only at runtime

"""
Schema-less access to the Kubernetes API.

The generated `kubernetes.client` classes cover built-in types only. The sync
pipeline watches whatever the cluster serves, CRDs included, so objects are
handled as the JSON dicts the API server returns. This wrapper reuses the
authenticated `ApiClient` of the official library and asks it for raw JSON
instead of typed models.
"""

from __future__ import annotations

from typing import Any

import structlog
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

logger = structlog.get_logger(__name__)


def load_api_client() -> client.ApiClient:
    """
    Build an ApiClient from in-cluster credentials, falling back to kubeconfig.

    Raises:
        ConfigException: Neither configuration source is usable
    """
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig Kubernetes configuration")
    return client.ApiClient()


class KubeApi:
    """Raw JSON access on top of an authenticated ApiClient."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._api_client = api_client

    @property
    def api_client(self) -> client.ApiClient:
        return self._api_client

    def get_json(self, path: str, **query: Any) -> dict[str, Any]:
        """
        GET `path` and return the decoded JSON body.

        Raises:
            ApiException: Non-2xx response
        """
        return self._api_client.call_api(
            path,
            "GET",
            query_params=[(k, v) for k, v in query.items() if v is not None],
            header_params={"Accept": "application/json"},
            response_type="object",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
        )

    def list_collection(
        self,
        path: str,
        watch: bool = False,
        resource_version: str | None = None,
        timeout_seconds: int | None = None,
        allow_watch_bookmarks: bool | None = None,
        _preload_content: bool = True,
        _request_timeout: Any = None,
    ) -> Any:
        """
        List or watch every object of one collection across all namespaces.

        Compatible with `kubernetes.watch.Watch().stream()`, which passes
        `watch=True` and `_preload_content=False` and then reads the event
        stream itself. Without those flags the decoded list is returned.
        """
        query: list[tuple[str, Any]] = []
        if watch:
            query.append(("watch", "true"))
        if resource_version:
            query.append(("resourceVersion", resource_version))
        if timeout_seconds is not None:
            query.append(("timeoutSeconds", timeout_seconds))
        if allow_watch_bookmarks:
            query.append(("allowWatchBookmarks", "true"))

        return self._api_client.call_api(
            path,
            "GET",
            query_params=query,
            header_params={"Accept": "application/json"},
            response_type="object",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
            _preload_content=_preload_content,
            _request_timeout=_request_timeout,
        )
