"""
Provider client: read-only access to the Unipile REST API.

All requests go through ``UnipileClient._get``, which enforces:

    - Read-only: only methods in ``ALLOWED_HTTP_METHODS`` are ever sent.
    - Throttling: a global minimum delay between consecutive requests and a
      small in-flight window, because Unipile rate-limits per API key.
    - Timeouts: every request carries an explicit ``httpx.Timeout``.
    - Retries: transient failures (network, timeout, 5xx) back off
      exponentially; 429 waits for ``Retry-After`` (or the configured
      cooldown); auth and other 4xx errors propagate immediately.

The ``MessagingProvider`` ABC keeps the orchestrator independent of the
concrete provider.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from inboxsync.errors import (
    AuthError,
    MappingError,
    ProviderError,
    RateLimitError,
    UnavailableError,
)

logger = logging.getLogger("inboxsync.provider")

# Every entry here must be side-effect free at the provider.
ALLOWED_HTTP_METHODS: FrozenSet[str] = frozenset({"GET"})

_DEFAULT_DSN = "api6.unipile.com:13670"
_VALID_PAGINATION = {"cursor", "offset"}

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class ProviderPage:
    """One page of a paginated listing."""

    items: List[Dict[str, Any]]
    next_page: Any = None


class MessagingProvider(ABC):
    """Abstract read-only messaging provider."""

    @abstractmethod
    async def list_accounts(self) -> List[Dict[str, Any]]:
        """Return every account connected under the API key."""
        ...

    @abstractmethod
    async def list_conversations(
        self,
        account_id: str,
        page: Any = None,
        limit: Optional[int] = None,
    ) -> ProviderPage:
        """Return one page of conversations, most recently active first."""
        ...

    @abstractmethod
    async def list_messages(
        self,
        account_id: str,
        conversation_id: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Return up to *limit* messages of one conversation, any order."""
        ...

    @abstractmethod
    async def list_attendees(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Return the attendees of a conversation, possibly including ``is_self``."""
        ...

    async def close(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> "MessagingProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given in seconds; HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)


def _extract_items(data: Any, path: str) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get("items")
        if items is None:
            return []
        if isinstance(items, list):
            return items
    raise MappingError(f"Unexpected response envelope from {path}")


class UnipileClient(MessagingProvider):
    """Async Unipile API client.

    Args:
        base_url: API root, e.g. ``https://api6.unipile.com:13670/api/v1``.
        api_key: Value for the ``X-API-KEY`` header.
        timeout_seconds: Per-request timeout.
        max_retries: Retries after the first attempt for retryable errors.
        backoff_base_seconds: Multiplier for the exponential backoff.
        backoff_max_seconds: Upper bound for a single backoff wait.
        rate_limit_cooldown_seconds: Wait after a 429 without ``Retry-After``.
        max_cooldown_seconds: Upper bound for any 429 wait.
        min_request_interval_seconds: Minimum spacing between requests.
        max_concurrency: Requests allowed in flight at once.
        page_size: Default page size for conversation listings.
        pagination: ``"cursor"`` or ``"offset"`` depending on deployment.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
        sleep: Awaitable sleep used for throttling and retry waits.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 20.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        rate_limit_cooldown_seconds: float = 10.0,
        max_cooldown_seconds: float = 120.0,
        min_request_interval_seconds: float = 0.5,
        max_concurrency: int = 2,
        page_size: int = 50,
        pagination: str = "cursor",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise AuthError("Unipile API key is not configured")
        if pagination not in _VALID_PAGINATION:
            raise ValueError(f"Unsupported pagination style: {pagination!r}")

        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"X-API-KEY": api_key, "Accept": "application/json"},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._max_retries = max(0, int(max_retries))
        self._backoff = wait_exponential(
            multiplier=backoff_base_seconds,
            min=backoff_base_seconds,
            max=backoff_max_seconds,
        )
        self._cooldown = max(0.0, rate_limit_cooldown_seconds)
        self._max_cooldown = max(self._cooldown, max_cooldown_seconds)
        self._min_interval = max(0.0, min_request_interval_seconds)
        self._semaphore = asyncio.Semaphore(max(1, int(max_concurrency)))
        self._throttle_lock = asyncio.Lock()
        self._last_request_at: Optional[float] = None
        self._page_size = max(1, int(page_size))
        self._pagination = pagination
        self._sleep = sleep

    # ----- request plumbing -----------------------------------------------

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            if self._last_request_at is not None:
                wait = self._min_interval - (time.monotonic() - self._last_request_at)
                if wait > 0:
                    await self._sleep(wait)
            self._last_request_at = time.monotonic()

    def _wait_strategy(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError):
            cooldown = exc.retry_after if exc.retry_after is not None else self._cooldown
            return min(cooldown, self._max_cooldown)
        return self._backoff(retry_state)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Provider request failed (attempt %d): %s; retrying in %.1fs",
            retry_state.attempt_number,
            exc,
            wait,
        )

    def _check_response(self, response: httpx.Response, path: str) -> Any:
        status = response.status_code
        if status in (401, 403):
            raise AuthError(
                f"Provider rejected credentials for {path} (HTTP {status})",
                status_code=status,
            )
        if status == 429:
            raise RateLimitError(
                f"Provider rate limit hit on {path}",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise UnavailableError(
                f"Provider error on {path} (HTTP {status})", status_code=status
            )
        if status >= 400:
            raise ProviderError(
                f"Provider refused {path} (HTTP {status}): {response.text[:200]}",
                status_code=status,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UnavailableError(
                f"Provider returned a non-JSON body for {path}", status_code=status
            ) from exc

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
    ) -> Any:
        if method not in ALLOWED_HTTP_METHODS:
            logger.critical("BLOCKED  | method=%s path=%s", method, path)
            raise PermissionError(
                f"UnipileClient: {method} is denied; only {sorted(ALLOWED_HTTP_METHODS)} are permitted."
            )

        async with self._semaphore:
            await self._throttle()
            try:
                response = await self._http.request(method, path, params=params)
            except httpx.TimeoutException as exc:
                raise UnavailableError(f"Provider request to {path} timed out") from exc
            except httpx.TransportError as exc:
                raise UnavailableError(f"Provider request to {path} failed: {exc}") from exc
        logger.debug("GET %s -> %d", path, response.status_code)
        return self._check_response(response, path)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._wait_strategy,
            retry=retry_if_exception_type((UnavailableError, RateLimitError)),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        data: Any = None
        async for attempt in retrying:
            with attempt:
                data = await self._send("GET", path, clean)
        return data

    # ----- resources --------------------------------------------------------

    async def list_accounts(self) -> List[Dict[str, Any]]:
        accounts: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        seen_cursors: set[str] = set()
        while True:
            data = await self._get("/accounts", {"cursor": cursor})
            accounts.extend(_extract_items(data, "/accounts"))
            cursor = data.get("cursor") if isinstance(data, dict) else None
            if not cursor:
                break
            if cursor in seen_cursors:
                logger.warning("Provider repeated accounts cursor %r; stopping", cursor)
                break
            seen_cursors.add(cursor)
        logger.info("Provider lists %d accounts", len(accounts))
        return accounts

    async def list_conversations(
        self,
        account_id: str,
        page: Any = None,
        limit: Optional[int] = None,
    ) -> ProviderPage:
        size = max(1, int(limit or self._page_size))
        params: Dict[str, Any] = {"account_id": account_id, "limit": size}
        if self._pagination == "cursor":
            params["cursor"] = page
        else:
            params["offset"] = int(page or 0)

        data = await self._get("/chats", params)
        items = _extract_items(data, "/chats")
        if not items:
            return ProviderPage(items=[], next_page=None)

        if self._pagination == "cursor":
            next_page = data.get("cursor") if isinstance(data, dict) else None
        else:
            next_page = params["offset"] + len(items)
        return ProviderPage(items=items, next_page=next_page or None)

    async def list_messages(
        self,
        account_id: str,
        conversation_id: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        data = await self._get(
            "/messages",
            {"account_id": account_id, "chat_id": conversation_id, "limit": max(1, int(limit))},
        )
        return _extract_items(data, "/messages")

    async def list_attendees(self, conversation_id: str) -> List[Dict[str, Any]]:
        path = f"/chats/{conversation_id}/attendees"
        return _extract_items(await self._get(path), path)

    async def close(self) -> None:
        await self._http.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def _resolve_base_url(config: Dict[str, Any]) -> str:
    base_url = config.get("base_url")
    if base_url:
        return str(base_url)
    dsn = str(config.get("dsn") or _DEFAULT_DSN).strip()
    if dsn.startswith("http://") or dsn.startswith("https://"):
        return dsn.rstrip("/") + "/api/v1"
    return f"https://{dsn}/api/v1"


def create_provider(
    config: Dict[str, Any],
    api_key: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MessagingProvider:
    """Create the provider client from the ``[unipile]`` config section."""
    base_url = _resolve_base_url(config)
    logger.info("Using Unipile provider at %s", base_url)
    return UnipileClient(
        base_url,
        api_key,
        timeout_seconds=float(config.get("timeout_seconds", 20.0)),
        max_retries=int(config.get("max_retries", 3)),
        backoff_base_seconds=float(config.get("backoff_base_seconds", 1.0)),
        backoff_max_seconds=float(config.get("backoff_max_seconds", 30.0)),
        rate_limit_cooldown_seconds=float(config.get("rate_limit_cooldown_seconds", 10.0)),
        max_cooldown_seconds=float(config.get("max_cooldown_seconds", 120.0)),
        min_request_interval_seconds=float(config.get("min_request_interval_seconds", 0.5)),
        max_concurrency=int(config.get("max_concurrency", 2)),
        page_size=int(config.get("page_size", 50)),
        pagination=str(config.get("pagination", "cursor")),
        transport=transport,
    )
