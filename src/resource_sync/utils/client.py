# ABOUTME: MCP resource sync client with retry logic and partial-failure handling
# ABOUTME: Sends batched upserts/deletes and full resyncs to the MCP sync endpoint

"""
MCP resource sync client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module is the only place the controller talks to the MCP service. It:

1. BUILDS the JSON request body for a batch (or a full resync)
2. AUTHENTICATES with a bearer token read from a Kubernetes Secret
3. RETRIES failed requests with exponential backoff and jitter
4. DISTINGUISHES total failure from partial failure

=============================================================================
THE SYNC ENDPOINT
=============================================================================

    POST {endpoint}/api/v1/resources/sync

Request:
    {
        "upserts": [{"name": "nginx", "namespace": "default", "kind": "Deployment",
                     "apiVersion": "apps/v1", "labels": {...}, "annotations": {...},
                     "updatedAt": "2025-01-01T10:00:00+00:00"}],
        "deletes": ["default:v1:Pod:web-1"],
        "isResync": false
    }

Response (success):
    {"success": true, "data": {"upserted": 1, "deleted": 1}}

Response (partial failure):
    {"success": false,
     "error": {"code": "PARTIAL_FAILURE", "message": "1 of 2 failed",
               "details": {"upserted": 1, "deleted": 0,
                           "failures": [{"id": "default:v1:Pod:web-1",
                                         "error": "embedding failed"}]}}}

A resync (isResync=true) carries every resource the controller knows about
and no deletes: MCP treats it as the authoritative full state and removes
anything it holds that is not in the list.

=============================================================================
TOTAL FAILURE vs PARTIAL FAILURE
=============================================================================

    Transport error, HTTP 5xx, {"success": false} without details
        -> RETRIED with backoff, then SyncError
        -> caller may safely retry the WHOLE batch

    {"success": false} WITH error.details
        -> NOT retried, PartialSyncError carrying the parsed response
        -> caller retries ONLY the IDs listed in get_failures()

    Auth secret missing / empty
        -> CredentialError immediately, nothing is sent

=============================================================================
RETRY SCHEDULE
=============================================================================

    delay(attempt) = min(initial_backoff * 2^(attempt-1), max_backoff) +/- 25%

With the defaults (1s initial, 30s cap, 3 retries) a fully failing batch
takes about 1 + 2 + 4 = 7 seconds before giving up. Jitter comes from an
injected random.Random so tests can seed it.
"""

# =============================================================================
# IMPORTS
# =============================================================================

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from resource_sync import __version__

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from resource_sync.models import ResourceData
    from resource_sync.utils.credentials import SecretTokenResolver

logger = structlog.get_logger(__name__)

# Path appended to the configured endpoint unless it is already there.
SYNC_PATH = "/api/v1/resources/sync"


# =============================================================================
# ERRORS
# =============================================================================


class SyncError(Exception):
    """
    A sync request failed as a whole.

    Raised after retries are exhausted. Nothing in the batch is known to
    have been applied, so the caller should keep the whole batch pending.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: SyncResponse | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"MCP sync error ({self.status_code}): {self.message}"
        return f"MCP sync error: {self.message}"


class PartialSyncError(SyncError):
    """
    Some items of a batch were rejected.

    `response` is always set. Its get_failures() lists the IDs to retry;
    everything else in the batch was applied.
    """

    response: SyncResponse

    def __init__(self, response: SyncResponse) -> None:
        super().__init__(
            f"partial failure: {response.error_message}",
            response=response,
        )


# =============================================================================
# RESPONSE DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class SyncFailure:
    """One resource the MCP service could not process."""

    id: str
    error: str


@dataclass
class SyncResponse:
    """
    Parsed response of the sync endpoint.

    The raw `data` and `error` objects are kept as dicts. Any of them may be
    absent when MCP omits empty fields, so the accessors below use defaults.
    """

    success: bool
    data: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    meta: dict[str, Any] | None = field(default=None, repr=False)

    @classmethod
    def from_api_response(cls, payload: dict[str, Any]) -> SyncResponse:
        """Create a SyncResponse from the decoded JSON body."""
        return cls(
            success=bool(payload.get("success", False)),
            data=payload.get("data") or None,
            error=payload.get("error") or None,
            meta=payload.get("meta") or None,
        )

    @property
    def upserted(self) -> int:
        """Number of upserts the MCP service applied."""
        return int((self.data or {}).get("upserted", 0) or 0)

    @property
    def deleted(self) -> int:
        """Number of deletes the MCP service applied."""
        return int((self.data or {}).get("deleted", 0) or 0)

    @property
    def details(self) -> dict[str, Any] | None:
        """error.details, present only on partial failures."""
        if not self.error:
            return None
        return self.error.get("details") or None

    @property
    def error_message(self) -> str:
        """Best available human-readable error description."""
        if self.error:
            if self.error.get("message"):
                return str(self.error["message"])
            if self.error.get("code"):
                return f"error code: {self.error['code']}"
        return "unknown error"

    def get_failures(self) -> list[SyncFailure]:
        """Per-item failures of a partial failure (empty otherwise)."""
        failures = (self.details or {}).get("failures") or []
        return [
            SyncFailure(id=str(item.get("id", "")), error=str(item.get("error", "")))
            for item in failures
            if isinstance(item, dict)
        ]


# =============================================================================
# HELPERS
# =============================================================================


def normalize_endpoint(endpoint: str) -> str:
    """
    Return the full sync URL for a configured endpoint.

        "https://mcp.example.com"                        -> ".../api/v1/resources/sync"
        "https://mcp.example.com/"                       -> ".../api/v1/resources/sync"
        "https://mcp.example.com/api/v1/resources/sync"  -> unchanged
    """
    endpoint = endpoint.rstrip("/")
    if endpoint.endswith(SYNC_PATH):
        return endpoint
    return f"{endpoint}{SYNC_PATH}"


# =============================================================================
# SYNC CLIENT
# =============================================================================


class SyncClient:
    """
    Async client for the MCP resource sync endpoint.

    LIFECYCLE:
    ----------
        async with SyncClient(endpoint, token_resolver=resolver) as client:
            response = await client.sync_resources(upserts, deletes)

    The reconciler keeps one client per active configuration and closes it
    when the configuration is stopped.
    """

    def __init__(
        self,
        endpoint: str,
        token_resolver: SecretTokenResolver | None = None,
        timeout: float = 60.0,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """
        Initialize sync client.

        Args:
            endpoint: MCP base URL or full sync URL
            token_resolver: Source of the bearer token, None for no auth
            timeout: HTTP request timeout in seconds
            max_retries: Retries after the first attempt (0 = single attempt)
            initial_backoff: Delay before the first retry, in seconds
            max_backoff: Upper bound for any retry delay, in seconds
            rng: Random source for jitter (seed it in tests)
            sleep: Async sleep used between attempts (asyncio.sleep by default)
        """
        self._endpoint = normalize_endpoint(endpoint)
        self._token_resolver = token_resolver
        self._timeout = timeout
        self._max_retries = max(0, max_retries)
        self._initial_backoff = initial_backoff if initial_backoff > 0 else 1.0
        self._max_backoff = max_backoff if max_backoff > 0 else 30.0
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def __aenter__(self) -> SyncClient:
        """Create the HTTP connection pool."""
        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"k8s-resource-sync/{__version__}",
            },
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    async def sync_resources(
        self,
        upserts: Sequence[ResourceData],
        deletes: Sequence[str],
    ) -> SyncResponse:
        """
        Send an incremental batch.

        Args:
            upserts: Snapshots to create or update
            deletes: Resource IDs to remove

        Returns:
            SyncResponse of the successful attempt

        Raises:
            PartialSyncError: Some items failed (see response.get_failures())
            SyncError: The batch failed after all retries
            CredentialError: The auth secret could not be resolved
        """
        body = {
            "upserts": [item.to_dict() for item in upserts],
            "deletes": list(deletes),
            "isResync": False,
        }
        return await self._send_with_retry(body)

    async def resync(self, all_resources: Sequence[ResourceData]) -> SyncResponse:
        """
        Send the complete set of known resources as a full resync.

        Same transport and errors as sync_resources(); the body has
        isResync=true and no deletes.
        """
        body = {
            "upserts": [item.to_dict() for item in all_resources],
            "deletes": [],
            "isResync": True,
        }
        return await self._send_with_retry(body)

    def calculate_backoff(self, attempt: int) -> float:
        """
        Delay in seconds before retry number `attempt` (1-based).

        initial_backoff * 2^(attempt-1), capped at max_backoff, then
        randomized by +/-25%.
        """
        backoff = self._initial_backoff * (2 ** max(0, attempt - 1))
        backoff = min(backoff, self._max_backoff)
        jitter = backoff * 0.25 * (self._rng.random() * 2 - 1)
        return backoff + jitter

    # =========================================================================
    # RETRY LOOP
    # =========================================================================

    def _wait(self, retry_state: RetryCallState) -> float:
        # attempt_number counts finished attempts, so after the first failure
        # it is 1 and the first retry waits initial_backoff.
        return self.calculate_backoff(retry_state.attempt_number)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "Retrying MCP sync request",
            attempt=retry_state.attempt_number,
            max_retries=self._max_retries,
            backoff=round(retry_state.upcoming_sleep, 3),
            error=str(exc) if exc else None,
        )

    async def _send_with_retry(self, body: dict[str, Any]) -> SyncResponse:
        """
        Run _send() under the retry policy.

        THE RETRY PREDICATE:
        --------------------
        Only SyncError is retried, and never its PartialSyncError subclass.
        CredentialError is not a SyncError, so a missing secret fails fast.
        asyncio cancellation interrupts the sleep between attempts and
        propagates immediately.
        """
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._wait,
            retry=(
                retry_if_exception_type(SyncError)
                & retry_if_not_exception_type(PartialSyncError)
            ),
            before_sleep=self._log_retry,
            **kwargs,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(body)
                    if response.success:
                        return response
                    if response.details is not None:
                        raise PartialSyncError(response)
                    raise SyncError(
                        f"MCP returned error: {response.error_message}",
                        response=response,
                    )
        except RetryError as e:
            last = e.last_attempt.exception()
            raise SyncError(
                f"failed after {self._max_retries} retries: {last}",
                status_code=getattr(last, "status_code", None),
                response=getattr(last, "response", None),
            ) from last

        # AsyncRetrying either returns from inside the loop or raises.
        raise SyncError("retry loop ended without a result")  # pragma: no cover

    async def _send(self, body: dict[str, Any]) -> SyncResponse:
        """
        Perform one HTTP request.

        Returns the parsed response for any 2xx status, including
        `{"success": false}` bodies; the retry loop decides what to do with
        those. A 2xx body that is not a JSON object counts as success.

        Raises:
            SyncError: Transport failure or non-2xx status
            CredentialError: Auth secret could not be resolved
            RuntimeError: Client used outside `async with`
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        headers: dict[str, str] = {}
        if self._token_resolver is not None:
            token = await self._token_resolver.resolve()
            if token:
                headers["Authorization"] = f"Bearer {token}"

        log = logger.bind(endpoint=self._endpoint, is_resync=body["isResync"])
        log.debug(
            "Sending sync request",
            upserts=len(body["upserts"]),
            deletes=len(body["deletes"]),
        )

        try:
            response = await self._client.post(self._endpoint, json=body, headers=headers)
        except httpx.HTTPError as e:
            log.warning("HTTP request failed", error=str(e))
            raise SyncError(f"HTTP request failed: {e}") from e

        if not response.is_success:
            text = response.text
            log.warning("MCP sync HTTP error", status=response.status_code, body=text[:200])
            raise SyncError(
                f"HTTP {response.status_code}: {text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            log.info("Response is not a JSON object, treating as successful", body=response.text[:200])
            return SyncResponse(
                success=True,
                data={"upserted": len(body["upserts"]), "deleted": len(body["deletes"])},
            )

        result = SyncResponse.from_api_response(payload)
        log.info(
            "Sync request completed",
            success=result.success,
            upserted=result.upserted,
            deleted=result.deleted,
        )
        return result
