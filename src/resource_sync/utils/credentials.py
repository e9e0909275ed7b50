# ABOUTME: Bearer token resolution for the MCP sync endpoint
# ABOUTME: Reads a token from a key of a Kubernetes Secret in the config's namespace

"""Bearer token lookup from Kubernetes Secrets."""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import TYPE_CHECKING

import structlog
from kubernetes.client.rest import ApiException

if TYPE_CHECKING:
    from kubernetes.client import CoreV1Api

    from resource_sync.config import SecretReference

logger = structlog.get_logger(__name__)


class CredentialError(Exception):
    """The configured auth secret cannot produce a token.

    A sync attempt that hits this error is aborted: sending the batch without
    an Authorization header would only trade a clear error for a 401.
    """

    def __init__(self, secret_name: str, namespace: str, reason: str) -> None:
        self.secret_name = secret_name
        self.namespace = namespace
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"auth secret '{self.secret_name}' in namespace '{self.namespace}': {self.reason}"


class SecretTokenResolver:
    """Resolve the bearer token referenced by a ResourceSyncConfig."""

    def __init__(
        self,
        core_api: CoreV1Api | None,
        namespace: str,
        secret_ref: SecretReference | None,
    ) -> None:
        """Initialize resolver.

        Args:
            core_api: Kubernetes CoreV1 API used to read the secret
            namespace: Namespace of the ResourceSyncConfig (and the secret)
            secret_ref: Secret name and key, or None for no authentication
        """
        self._core_api = core_api
        self._namespace = namespace
        self._secret_ref = secret_ref

    @property
    def configured(self) -> bool:
        """True when a secret reference with a name is set."""
        return self._secret_ref is not None and bool(self._secret_ref.name)

    async def resolve(self) -> str | None:
        """Return the token, or None when no secret is referenced.

        The secret is read on every call so rotated tokens are picked up on
        the next flush without restarting the watcher.

        Raises:
            CredentialError: Secret missing, key missing or value empty
        """
        secret_ref = self._secret_ref
        if secret_ref is None or not secret_ref.name:
            return None
        name, key = secret_ref.name, secret_ref.key

        if self._core_api is None:
            raise CredentialError(name, self._namespace, "no Kubernetes client configured")

        try:
            secret = await asyncio.to_thread(
                self._core_api.read_namespaced_secret, name, self._namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise CredentialError(name, self._namespace, "not found") from e
            raise CredentialError(name, self._namespace, f"failed to fetch: {e.reason}") from e

        data = secret.data or {}
        if key not in data:
            raise CredentialError(name, self._namespace, f"does not contain key '{key}'")

        try:
            token = base64.b64decode(data[key] or "").decode("utf-8").strip()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise CredentialError(name, self._namespace, f"key '{key}' is not valid") from e

        if not token:
            raise CredentialError(name, self._namespace, f"key '{key}' is empty")

        logger.debug("Resolved auth token from secret", secret=name, key=key)
        return token
