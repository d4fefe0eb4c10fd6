"""Azure Resource Manager resource groups and template deployments."""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .client import CloudClient
from .operations import OperationPoller, until_provisioning_state

ARM_URL = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
RESOURCE_GROUP_API_VERSION = "2021-04-01"
DEPLOYMENT_API_VERSION = "2021-04-01"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentResult:
    name: str
    provisioning_state: str
    outputs: Dict[str, Any] = field(default_factory=dict)


def _wrap_parameters(parameters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Wrap plain values as ARM parameter objects; already wrapped ones pass through."""
    wrapped: Dict[str, Any] = {}
    for key, value in (parameters or {}).items():
        if isinstance(value, dict) and ("value" in value or "reference" in value):
            wrapped[key] = value
        else:
            wrapped[key] = {"value": value}
    return wrapped


class ResourceManagerService:
    """Service for resource groups and deployments in a subscription."""

    def __init__(self, client: CloudClient, poller: Optional[OperationPoller] = None):
        self.client = client
        self.poller = poller or OperationPoller(client)

    @staticmethod
    def _group_path(subscription_id: str, name: str) -> str:
        return f"/subscriptions/{subscription_id}/resourcegroups/{name}"

    def resource_group_exists(self, subscription_id: str, name: str) -> bool:
        resp = self.client.head(
            self._group_path(subscription_id, name),
            params={"api-version": RESOURCE_GROUP_API_VERSION},
            allowed_statuses=(404,),
        )
        return resp.status_code == 204

    def ensure_resource_group(self, subscription_id: str, name: str, location: str, tags: Optional[Dict[str, str]] = None) -> dict:
        """Create or update a resource group (PUT is idempotent on ARM)."""
        payload: Dict[str, Any] = {"location": location}
        if tags:
            payload["tags"] = dict(tags)
        resp = self.client.put(
            self._group_path(subscription_id, name),
            json=payload,
            params={"api-version": RESOURCE_GROUP_API_VERSION},
        )
        logger.info("[arm] Resource group '%s' %s", name, "created" if resp.status_code == 201 else "updated")
        return resp.json()

    def delete_resource_group(self, subscription_id: str, name: str) -> None:
        """Delete a resource group and wait for ARM to finish."""
        initial = self.client.delete(
            self._group_path(subscription_id, name),
            params={"api-version": RESOURCE_GROUP_API_VERSION},
            allowed_statuses=(404,),
        )
        if initial.status_code == 404:
            logger.info("[arm] Resource group '%s' does not exist", name)
            return
        self.poller.wait(initial)
        logger.info("[arm] Resource group '%s' deleted", name)

    def deploy_template(
        self,
        subscription_id: str,
        resource_group: str,
        deployment_name: str,
        template: Dict[str, Any],
        parameters: Optional[Dict[str, Any]] = None,
        mode: str = "Incremental",
    ) -> DeploymentResult:
        """Deploy an ARM template into a resource group and wait for the result.

        Args:
            subscription_id: Subscription id
            resource_group: Target resource group
            deployment_name: Deployment name
            template: Template document
            parameters: Parameter values, plain or ``{"value": ...}`` shaped
            mode: Incremental or Complete

        Returns:
            Final provisioning state and template outputs

        Raises:
            OperationFailedError: If the deployment fails or is canceled
            OperationTimeoutError: If it does not finish within the poll ceiling
        """
        path = f"{self._group_path(subscription_id, resource_group)}/providers/Microsoft.Resources/deployments/{deployment_name}"
        params = {"api-version": DEPLOYMENT_API_VERSION}
        payload = {
            "properties": {
                "mode": mode,
                "template": template,
                "parameters": _wrap_parameters(parameters),
            }
        }
        initial = self.client.put(path, json=payload, params=params)
        logger.info("[arm] Deployment '%s' submitted to '%s'", deployment_name, resource_group)
        self.poller.wait(
            initial,
            until=until_provisioning_state(),
            status_url=self.client.url_for(f"{path}?api-version={DEPLOYMENT_API_VERSION}"),
        )

        body = self.client.get(path, params=params).json()
        props = body.get("properties") or {}
        outputs = {key: (value or {}).get("value") for key, value in (props.get("outputs") or {}).items()}
        result = DeploymentResult(
            name=body.get("name", deployment_name),
            provisioning_state=props.get("provisioningState", ""),
            outputs=outputs,
        )
        logger.info("[arm] Deployment '%s' finished: %s", deployment_name, result.provisioning_state)
        return result
