"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cloudadmin.core.microsoft.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                logger.debug("[settings] Loaded %s from /run/secrets", secret_name)
                return secret_value
        except OSError as e:
            logger.warning("[settings] Failed to read /run/secrets/%s: %s", secret_name, e)

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            logger.debug("[settings] Loaded %s from environment", env_var)
            return secret_value

    return None


def _get_int(var_name: str, default: int, minimum: int = 0) -> int:
    """Read an integer setting, rejecting junk and values below ``minimum``."""
    raw = os.environ.get(var_name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{var_name} must be an integer, got '{raw}'")
    if value < minimum:
        raise ConfigurationError(f"{var_name} must be >= {minimum}, got {value}")
    return value


@dataclass
class AppConfig:
    """Application configuration container."""
    # Identity
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    authority_host: str = "https://login.microsoftonline.com"

    # Targets
    subscription_id: str = ""
    graph_url: str = "https://graph.microsoft.com/v1.0"
    bap_url: str = "https://api.bap.microsoft.com"
    arm_url: str = "https://management.azure.com"

    # HTTP and long-running operations
    request_timeout: int = 30
    lro_max_attempts: int = 120
    lro_timeout_seconds: int = 3600
    lro_default_delay: int = 5

    @property
    def client_secret_resolved(self) -> str:
        """Get the service principal secret.

        Priority:
        1. Configured value in client_secret
        2. Docker secrets: /run/secrets/azure_client_secret (or azure-client-secret)
        3. Environment variable: AZURE_CLIENT_SECRET

        Raises:
            ConfigurationError: If no secret is available
        """
        if self.client_secret:
            return self.client_secret

        for secret_name in ["azure_client_secret", "azure-client-secret"]:
            secret_path = Path("/run/secrets") / secret_name
            if secret_path.exists():
                secret = secret_path.read_text().strip()
                if secret:
                    return secret

        secret = os.environ.get("AZURE_CLIENT_SECRET")
        if secret:
            return secret

        raise ConfigurationError(
            "AZURE_CLIENT_SECRET not found. "
            "Provide it via Docker secrets, environment variable or --client-secret."
        )


def load_settings() -> AppConfig:
    """Load settings from environment and /run/secrets."""
    client_secret: Optional[str] = _load_secret_from_file("azure_client_secret", "AZURE_CLIENT_SECRET")

    config = AppConfig(
        tenant_id=os.environ.get("AZURE_TENANT_ID", ""),
        client_id=os.environ.get("AZURE_CLIENT_ID", ""),
        client_secret=client_secret or "",
        authority_host=os.environ.get("AZURE_AUTHORITY_HOST", "https://login.microsoftonline.com").rstrip("/"),
        subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
        graph_url=os.environ.get("GRAPH_URL", "https://graph.microsoft.com/v1.0").rstrip("/"),
        bap_url=os.environ.get("BAP_URL", "https://api.bap.microsoft.com").rstrip("/"),
        arm_url=os.environ.get("ARM_URL", "https://management.azure.com").rstrip("/"),
        request_timeout=_get_int("REQUEST_TIMEOUT", 30, minimum=1),
        lro_max_attempts=_get_int("LRO_MAX_ATTEMPTS", 120, minimum=1),
        lro_timeout_seconds=_get_int("LRO_TIMEOUT_SECONDS", 3600, minimum=1),
        lro_default_delay=_get_int("LRO_DEFAULT_DELAY", 5),
    )
    logger.debug(
        "[settings] tenant=%s; client_id=%s; lro_max_attempts=%d",
        config.tenant_id or "<unset>", config.client_id or "<unset>", config.lro_max_attempts,
    )
    return config
