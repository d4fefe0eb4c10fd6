"""Bearer token credentials for Microsoft Entra ID.

Credentials are explicit objects handed to each client; nothing here keeps a
process-wide session.
"""
from __future__ import annotations
import logging

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential as AzureClientSecretCredential

from .exceptions import AuthenticationError

DEFAULT_AUTHORITY = "https://login.microsoftonline.com"

logger = logging.getLogger(__name__)


class StaticTokenCredential:
    """Wraps a bearer token obtained elsewhere (e.g. an Azure DevOps service connection)."""

    def __init__(self, token: str):
        if not token:
            raise AuthenticationError("Empty bearer token")
        self._token = token

    def get_token(self, scope: str) -> str:
        return self._token


class ClientSecretCredential:
    """Service principal credential backed by ``azure.identity``.

    Token caching and refresh are handled by the underlying library credential.

    Usage:
        credential = ClientSecretCredential(tenant_id, client_id, client_secret)
        token = credential.get_token("https://graph.microsoft.com/.default")
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        authority: str = DEFAULT_AUTHORITY,
    ):
        if not tenant_id or not client_id or not client_secret:
            raise AuthenticationError("tenant_id, client_id and client_secret are all required")
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.authority = authority.rstrip("/")
        self._credential = AzureClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret,
            authority=self.authority,
        )

    def get_token(self, scope: str) -> str:
        """Return an access token string for ``scope``.

        Raises:
            AuthenticationError: If Entra ID rejects the client credentials
        """
        logger.debug("[auth] Requesting token for client %s, scope %s", self.client_id, scope)
        try:
            return self._credential.get_token(scope).token
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"Token request for client {self.client_id} failed: {e.message}") from e
