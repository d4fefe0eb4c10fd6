"""Long-running operation polling.

Control-plane APIs answer slow requests with ``202 Accepted``, a status
reference (``Location``, ``Azure-AsyncOperation`` or ``Operation-Location``)
and a ``Retry-After`` hint. ``OperationPoller`` follows the reference until a
completion predicate is satisfied, sleeping for the server-provided delay
between checks, and gives up with ``OperationTimeoutError`` once the attempt
ceiling or deadline is reached.

Completion predicates:
    until_no_retry_after       status response no longer carries Retry-After (default)
    until_status(404)          status code is one of the given codes (delete flows)
    until_provisioning_state() ARM ``status``/``provisioningState`` is terminal
"""
from __future__ import annotations
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import requests

from .client import CloudClient
from .exceptions import OperationFailedError, OperationTimeoutError

ASYNC_HEADERS = ("Location", "Azure-AsyncOperation", "Operation-Location")

DEFAULT_MAX_ATTEMPTS = 120
DEFAULT_TIMEOUT = 3600
DEFAULT_DELAY = 5

logger = logging.getLogger(__name__)


def operation_location(response: requests.Response) -> Optional[str]:
    """Return the status reference of an asynchronous response, or None."""
    for header in ASYNC_HEADERS:
        value = response.headers.get(header)
        if value:
            return value
    return None


def retry_after_seconds(response: requests.Response) -> Optional[float]:
    """Parse the Retry-After hint into seconds.

    Returns None when the header is absent. HTTP-date values are converted
    relative to now. Unparseable values also give None, so the caller falls
    back to its default delay.
    """
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        when = None
    if when is None:
        logger.warning("[poller] Ignoring unparseable Retry-After value %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class Completion:
    """Predicate deciding whether a status response ends the poll loop.

    ``accepted_statuses`` lists error codes the status request should return
    instead of raising, so the predicate can see them.
    """

    accepted_statuses: Tuple[int, ...] = ()

    def __call__(self, response: requests.Response) -> bool:
        raise NotImplementedError


class _NoRetryAfter(Completion):
    def __call__(self, response: requests.Response) -> bool:
        return "Retry-After" not in response.headers

    def __repr__(self) -> str:
        return "until_no_retry_after"


class _StatusIn(Completion):
    def __init__(self, codes: Iterable[int]):
        self.codes = tuple(codes)
        self.accepted_statuses = tuple(code for code in self.codes if code >= 400)

    def __call__(self, response: requests.Response) -> bool:
        return response.status_code in self.codes

    def __repr__(self) -> str:
        return f"until_status{self.codes}"


class _ProvisioningState(Completion):
    def __init__(self, succeeded: Iterable[str], failed: Iterable[str]):
        self.succeeded = {s.lower() for s in succeeded}
        self.failed = {s.lower() for s in failed}

    def __call__(self, response: requests.Response) -> bool:
        body = json_or_empty(response)
        state = body.get("status") or (body.get("properties") or {}).get("provisioningState")
        if not state:
            return False
        if state.lower() in self.failed:
            error = body.get("error") or (body.get("properties") or {}).get("error") or {}
            raise OperationFailedError(response.url, state, error.get("message", "") if isinstance(error, dict) else str(error))
        return state.lower() in self.succeeded

    def __repr__(self) -> str:
        return "until_provisioning_state"


until_no_retry_after: Completion = _NoRetryAfter()


def until_status(*codes: int) -> Completion:
    """Complete once the status response has one of ``codes``."""
    if not codes:
        raise ValueError("until_status needs at least one status code")
    return _StatusIn(codes)


def until_provisioning_state(
    succeeded: Iterable[str] = ("Succeeded",),
    failed: Iterable[str] = ("Failed", "Canceled"),
) -> Completion:
    """Complete on a terminal ARM state; failed states raise OperationFailedError."""
    return _ProvisioningState(succeeded, failed)


def json_or_empty(response: requests.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class OperationPoller:
    """Waits for long-running operations started through a CloudClient.

    Usage:
        poller = OperationPoller(client, max_attempts=60)
        initial = client.post("/environments", json=payload)
        final = poller.wait(initial)
    """

    def __init__(
        self,
        client: CloudClient,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        default_delay: float = DEFAULT_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize poller.

        Args:
            client: Client used for status requests
            max_attempts: Maximum number of status checks
            timeout: Wall-clock ceiling in seconds (None disables it)
            default_delay: Delay used when a pending response has no Retry-After
            sleep: Sleep function
            clock: Monotonic clock function
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.default_delay = default_delay
        self._sleep = sleep
        self._clock = clock

    def wait(
        self,
        response: requests.Response,
        until: Optional[Completion] = None,
        status_url: Optional[str] = None,
    ) -> requests.Response:
        """Poll until the operation started by ``response`` completes.

        Args:
            response: Initiating response
            until: Completion predicate (default: until_no_retry_after)
            status_url: URI to poll when the response carries no status reference

        Returns:
            The response that satisfied the predicate, or ``response`` itself
            when the operation completed synchronously

        Raises:
            OperationTimeoutError: Attempt ceiling or deadline reached
            OperationFailedError: Predicate observed a failed terminal state
            CloudAPIError: A status request failed
        """
        until = until or until_no_retry_after
        current_url = operation_location(response) or status_url
        if not current_url:
            return response

        deadline = self._clock() + self.timeout if self.timeout is not None else None
        current = response
        for attempt in range(1, self.max_attempts + 1):
            delay = retry_after_seconds(current)
            if delay is None:
                delay = self.default_delay
            if deadline is not None and self._clock() + delay > deadline:
                raise OperationTimeoutError(current_url, attempt - 1, current.status_code)
            if delay > 0:
                logger.info("[poller] Waiting %ss before status check %d on %s", delay, attempt, current_url)
                self._sleep(delay)

            current = self.client.get(current_url, allowed_statuses=until.accepted_statuses)
            if until(current):
                logger.info("[poller] Operation complete after %d status check(s) (status %d)", attempt, current.status_code)
                return current
            current_url = operation_location(current) or current_url

        raise OperationTimeoutError(current_url, self.max_attempts, current.status_code)


def invoke_and_wait(
    client: CloudClient,
    method: str,
    path: str,
    json: Any = None,
    until: Optional[Completion] = None,
    poller: Optional[OperationPoller] = None,
    **request_kwargs,
) -> requests.Response:
    """Issue one request and wait for the operation it starts."""
    poller = poller or OperationPoller(client)
    initial = client.request(method, path, json=json, **request_kwargs)
    return poller.wait(initial, until=until)
