"""Typed exceptions for Microsoft cloud control-plane operations."""
from __future__ import annotations
from typing import Optional


class CloudError(Exception):
    """Base exception for all cloud admin operations."""
    pass


class CloudAPIError(CloudError):
    """HTTP error from a control-plane API.

    Attributes:
        status_code: HTTP status code
        message: Error message from response
        endpoint: API endpoint that failed
    """

    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")

    @property
    def retryable(self) -> bool:
        """True for throttling and server-side failures."""
        return self.status_code == 429 or self.status_code >= 500


class AuthenticationError(CloudError):
    """Token acquisition failed."""
    pass


class ConfigurationError(CloudError):
    """Required setting missing or invalid."""
    pass


class ResourceNotFoundError(CloudError):
    """Referenced resource (role, environment, principal) does not exist."""
    pass


class OperationTimeoutError(CloudError):
    """Long-running operation still pending when the poll ceiling was reached.

    Attributes:
        status_url: Status URI that was being polled
        attempts: Number of status checks made
        last_status: Status code of the last status response
    """

    def __init__(self, status_url: str, attempts: int, last_status: Optional[int] = None):
        self.status_url = status_url
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Operation at {status_url} still pending after {attempts} status check(s) "
            f"(last status {last_status})"
        )


class OperationFailedError(CloudError):
    """Long-running operation reached a failed terminal state."""

    def __init__(self, status_url: str, state: str, detail: str = ""):
        self.status_url = status_url
        self.state = state
        self.detail = detail
        message = f"Operation at {status_url} ended in state '{state}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class SqlError(CloudError):
    """Database driver error while provisioning SQL users."""

    def __init__(self, server: str, database: str, detail: str):
        self.server = server
        self.database = database
        self.detail = detail
        super().__init__(f"SQL error on {server}/{database}: {detail}")
