"""Microsoft cloud control-plane client library.

Architecture:
- auth.py: Bearer token credentials (client secret, static token)
- client.py: HTTP client with authentication and error handling
- operations.py: Long-running operation poller and completion predicates
- powerplatform.py: Power Platform environments and Dataverse users
- graph.py: Entra ID applications, groups and directory roles
- resources.py: Azure Resource Manager resource groups and deployments
- sql.py: Azure SQL contained users
- exceptions.py: Typed exceptions for error handling

Usage:
    from cloudadmin.core.microsoft import ClientSecretCredential, CloudClient, GraphService

    credential = ClientSecretCredential(tenant_id, client_id, client_secret)
    graph = GraphService(CloudClient(GRAPH_URL, credential, GRAPH_SCOPE))
    group = graph.ensure_group("platform-admins")
"""
from .auth import (
    ClientSecretCredential,
    StaticTokenCredential,
    DEFAULT_AUTHORITY,
)
from .client import CloudClient, REQUEST_TIMEOUT
from .exceptions import (
    CloudError,
    CloudAPIError,
    AuthenticationError,
    ConfigurationError,
    ResourceNotFoundError,
    OperationTimeoutError,
    OperationFailedError,
    SqlError,
)
from .operations import (
    OperationPoller,
    Completion,
    invoke_and_wait,
    operation_location,
    retry_after_seconds,
    until_no_retry_after,
    until_status,
    until_provisioning_state,
)
from .powerplatform import (
    PowerPlatformService,
    EnvironmentInfo,
    SystemUserInfo,
    BAP_URL,
    BAP_SCOPE,
)
from .graph import (
    GraphService,
    ApplicationInfo,
    ClientSecretInfo,
    GroupInfo,
    RoleAssignmentInfo,
    GRAPH_URL,
    GRAPH_SCOPE,
)
from .resources import (
    ResourceManagerService,
    DeploymentResult,
    ARM_URL,
    ARM_SCOPE,
)
from .sql import SqlUserService, SQL_SCOPE

__all__ = [
    # Credentials and client
    "ClientSecretCredential",
    "StaticTokenCredential",
    "DEFAULT_AUTHORITY",
    "CloudClient",
    "REQUEST_TIMEOUT",

    # Exceptions
    "CloudError",
    "CloudAPIError",
    "AuthenticationError",
    "ConfigurationError",
    "ResourceNotFoundError",
    "OperationTimeoutError",
    "OperationFailedError",
    "SqlError",

    # Polling
    "OperationPoller",
    "Completion",
    "invoke_and_wait",
    "operation_location",
    "retry_after_seconds",
    "until_no_retry_after",
    "until_status",
    "until_provisioning_state",

    # Services
    "PowerPlatformService",
    "GraphService",
    "ResourceManagerService",
    "SqlUserService",

    # Results
    "EnvironmentInfo",
    "SystemUserInfo",
    "ApplicationInfo",
    "ClientSecretInfo",
    "GroupInfo",
    "RoleAssignmentInfo",
    "DeploymentResult",

    # Endpoints
    "BAP_URL",
    "BAP_SCOPE",
    "GRAPH_URL",
    "GRAPH_SCOPE",
    "ARM_URL",
    "ARM_SCOPE",
    "SQL_SCOPE",
]
