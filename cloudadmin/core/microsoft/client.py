"""Low-level HTTP client for Microsoft control-plane REST APIs.

One ``CloudClient`` per API surface (Graph, BAP, ARM, Dataverse). Each call is
a single authenticated request; retries and polling live elsewhere.
"""
from __future__ import annotations
import json as jsonlib
import logging
from typing import Any, Dict, Iterable, Optional

import requests

from .exceptions import CloudAPIError

REQUEST_TIMEOUT = 30

logger = logging.getLogger(__name__)


class CloudClient:
    """HTTP client with bearer authentication and centralized error handling.

    Usage:
        credential = ClientSecretCredential(tenant, client_id, secret)
        client = CloudClient("https://graph.microsoft.com/v1.0", credential,
                             "https://graph.microsoft.com/.default")
        response = client.get("/groups", params={"$filter": "displayName eq 'ops'"})
    """

    def __init__(self, base_url: str, credential, scope: str, timeout: int = REQUEST_TIMEOUT):
        """Initialize client.

        Args:
            base_url: API root, relative paths are appended to it
            credential: Object exposing ``get_token(scope)``
            scope: Token scope for this API
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.credential = credential
        self.scope = scope
        self.timeout = timeout

    def url_for(self, path: str) -> str:
        """Resolve ``path`` against the base URL; absolute URLs pass through."""
        if path.startswith("https://") or path.startswith("http://"):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        allowed_statuses: Iterable[int] = (),
    ) -> requests.Response:
        """Execute one authenticated request and return the raw response.

        Args:
            method: HTTP method
            path: Absolute URL or path relative to the base URL
            params: Query parameters
            json: Body, serialized to JSON when not None
            headers: Extra headers
            allowed_statuses: Error statuses returned instead of raised

        Returns:
            Response object

        Raises:
            CloudAPIError: On HTTP status >= 400 not listed in allowed_statuses
        """
        url = self.url_for(path)
        send_headers = dict(headers or {})
        send_headers["Authorization"] = f"Bearer {self.credential.get_token(self.scope)}"
        data = None
        if json is not None:
            send_headers.setdefault("Content-Type", "application/json")
            data = jsonlib.dumps(json)

        logger.debug("[http] %s %s", method.upper(), url)
        resp = requests.request(
            method.upper(),
            url,
            params=params,
            data=data,
            headers=send_headers,
            timeout=self.timeout,
        )
        self._handle_error(resp, allowed_statuses)
        return resp

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> requests.Response:
        return self.request("GET", path, params=params, **kwargs)

    def post(self, path: str, json: Any = None, **kwargs) -> requests.Response:
        return self.request("POST", path, json=json, **kwargs)

    def put(self, path: str, json: Any = None, **kwargs) -> requests.Response:
        return self.request("PUT", path, json=json, **kwargs)

    def patch(self, path: str, json: Any = None, **kwargs) -> requests.Response:
        return self.request("PATCH", path, json=json, **kwargs)

    def delete(self, path: str, **kwargs) -> requests.Response:
        return self.request("DELETE", path, **kwargs)

    def head(self, path: str, **kwargs) -> requests.Response:
        return self.request("HEAD", path, **kwargs)

    def get_paged(self, path: str, params: Optional[Dict[str, Any]] = None, next_key: str = "@odata.nextLink") -> list:
        """Collect ``value`` items across pages linked by ``next_key``."""
        items: list = []
        url: Optional[str] = path
        while url:
            resp = self.get(url, params=params)
            body = resp.json() or {}
            items.extend(body.get("value", []))
            url = body.get(next_key)
            # nextLink already carries the query string
            params = None
        return items

    def _handle_error(self, resp: requests.Response, allowed_statuses: Iterable[int] = ()) -> None:
        """Raise CloudAPIError for error statuses the caller did not expect."""
        if resp.status_code >= 400 and resp.status_code not in tuple(allowed_statuses):
            raise CloudAPIError(resp.status_code, resp.text, resp.url)
