"""Power Platform environment lifecycle and Dataverse user provisioning."""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .client import CloudClient
from .exceptions import CloudAPIError, ResourceNotFoundError
from .operations import OperationPoller, json_or_empty, operation_location, until_status

BAP_URL = "https://api.bap.microsoft.com"
BAP_SCOPE = "https://service.powerapps.com/.default"
BAP_API_VERSION = "2021-04-01"
ENVIRONMENTS_PATH = "/providers/Microsoft.BusinessAppPlatform/scopes/admin/environments"
DATAVERSE_API = "/api/data/v9.2"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnvironmentInfo:
    name: str
    display_name: str
    location: str
    environment_sku: str
    state: str
    instance_url: str = ""
    domain_name: str = ""

    @classmethod
    def from_api(cls, body: dict) -> "EnvironmentInfo":
        props = body.get("properties") or {}
        metadata = props.get("linkedEnvironmentMetadata") or {}
        return cls(
            name=body.get("name", ""),
            display_name=props.get("displayName", ""),
            location=body.get("location", ""),
            environment_sku=props.get("environmentSku", ""),
            state=props.get("provisioningState") or props.get("states", {}).get("management", {}).get("id", ""),
            instance_url=(metadata.get("instanceUrl") or "").rstrip("/"),
            domain_name=metadata.get("domainName", ""),
        )


@dataclass(frozen=True)
class SystemUserInfo:
    user_id: str
    role_ids: Tuple[str, ...] = field(default_factory=tuple)


class PowerPlatformService:
    """Service for Power Platform environments (BAP admin API) and Dataverse users.

    Dataverse calls go to the environment's own instance URL, so the service
    builds one client per instance through ``dataverse_client_factory``.
    """

    def __init__(
        self,
        client: CloudClient,
        poller: Optional[OperationPoller] = None,
        dataverse_client_factory: Optional[Callable[[str], CloudClient]] = None,
    ):
        """Initialize service.

        Args:
            client: Client bound to the BAP admin API
            poller: Poller for environment create/delete (defaults to one over ``client``)
            dataverse_client_factory: Builds a client for a Dataverse instance URL
        """
        self.client = client
        self.poller = poller or OperationPoller(client)
        self._dataverse_client_factory = dataverse_client_factory or self._default_dataverse_client

    def _default_dataverse_client(self, instance_url: str) -> CloudClient:
        instance_url = instance_url.rstrip("/")
        return CloudClient(
            f"{instance_url}{DATAVERSE_API}",
            self.client.credential,
            f"{instance_url}/.default",
            timeout=self.client.timeout,
        )

    def _params(self, **extra) -> dict:
        params = {"api-version": BAP_API_VERSION}
        params.update(extra)
        return params

    # ─────────────────────────────────────────────────────────────────────
    # Environments
    # ─────────────────────────────────────────────────────────────────────

    def get_environment(self, name: str) -> Optional[EnvironmentInfo]:
        """Return the environment or None if it does not exist."""
        resp = self.client.get(
            f"{ENVIRONMENTS_PATH}/{name}",
            params=self._params(**{"$expand": "properties.linkedEnvironmentMetadata"}),
            allowed_statuses=(404,),
        )
        if resp.status_code == 404:
            return None
        return EnvironmentInfo.from_api(resp.json())

    def list_environments(self) -> List[EnvironmentInfo]:
        """Return every environment visible to the caller."""
        bodies = self.client.get_paged(ENVIRONMENTS_PATH, params=self._params(), next_key="nextLink")
        return [EnvironmentInfo.from_api(body) for body in bodies]

    def get_environment_by_display_name(self, display_name: str) -> Optional[EnvironmentInfo]:
        for env in self.list_environments():
            if env.display_name == display_name:
                return env
        return None

    def create_environment(
        self,
        display_name: str,
        location: str,
        sku: str = "Sandbox",
        currency: str = "USD",
        language: int = 1033,
        domain_name: Optional[str] = None,
        security_group_id: Optional[str] = None,
    ) -> EnvironmentInfo:
        """Create an environment with a Dataverse database and wait for provisioning.

        An environment with the same display name is returned as-is.

        Args:
            display_name: Environment display name
            location: Geography, e.g. "europe" or "unitedstates"
            sku: Sandbox, Production, Trial or Developer
            currency: Base currency code
            language: Base language LCID
            domain_name: Dataverse URL prefix
            security_group_id: Entra group restricting environment access

        Returns:
            Provisioned environment
        """
        existing = self.get_environment_by_display_name(display_name)
        if existing:
            logger.info("[environment] '%s' already exists (name=%s)", display_name, existing.name)
            return existing

        metadata = {
            "baseLanguage": language,
            "currency": {"code": currency},
        }
        if domain_name:
            metadata["domainName"] = domain_name
        if security_group_id:
            metadata["securityGroupId"] = security_group_id

        payload = {
            "location": location,
            "properties": {
                "displayName": display_name,
                "environmentSku": sku,
                "databaseType": "CommonDataService",
                "linkedEnvironmentMetadata": metadata,
            },
        }
        initial = self.client.post(
            "/providers/Microsoft.BusinessAppPlatform/environments",
            json=payload,
            params=self._params(),
        )
        final = self.poller.wait(initial)
        name = json_or_empty(final).get("name") or json_or_empty(initial).get("name")
        if not name:
            found = self.get_environment_by_display_name(display_name)
            if not found:
                raise ResourceNotFoundError(f"Environment '{display_name}' not found after creation")
            name = found.name

        env = self.get_environment(name)
        if env is None:
            raise ResourceNotFoundError(f"Environment '{name}' not found after creation")
        logger.info("[environment] '%s' created (name=%s, url=%s)", display_name, env.name, env.instance_url)
        return env

    def delete_environment(self, name: str) -> None:
        """Delete an environment and wait until it is gone.

        Raises:
            CloudAPIError: If the platform refuses the deletion
        """
        validate = self.client.post(
            f"{ENVIRONMENTS_PATH}/{name}/validateDelete",
            params=self._params(),
        )
        verdict = json_or_empty(validate)
        if verdict.get("canInitiateDelete") is False:
            errors = verdict.get("errors") or []
            raise CloudAPIError(validate.status_code, f"Environment cannot be deleted: {errors}", validate.url)

        env_url = f"{ENVIRONMENTS_PATH}/{name}"
        initial = self.client.delete(env_url, params=self._params(), allowed_statuses=(404,))
        if initial.status_code == 404:
            logger.info("[environment] '%s' already deleted", name)
            return
        if operation_location(initial):
            self.poller.wait(initial)
        else:
            # Without an operation reference, the environment URL answers 404 once deletion has finished
            self.poller.wait(
                initial,
                until=until_status(404),
                status_url=self.client.url_for(f"{env_url}?api-version={BAP_API_VERSION}"),
            )
        logger.info("[environment] '%s' deleted", name)

    # ─────────────────────────────────────────────────────────────────────
    # Dataverse system users
    # ─────────────────────────────────────────────────────────────────────

    def _root_business_unit(self, dataverse: CloudClient) -> str:
        resp = dataverse.get(
            "/businessunits",
            params={"$select": "businessunitid", "$filter": "_parentbusinessunitid_value eq null"},
        )
        units = resp.json().get("value", [])
        if not units:
            raise ResourceNotFoundError("Root business unit not found")
        return units[0]["businessunitid"]

    def _find_system_user(self, dataverse: CloudClient, field_name: str, value: str) -> Optional[dict]:
        resp = dataverse.get(
            "/systemusers",
            params={
                "$select": "systemuserid,_businessunitid_value",
                "$filter": f"{field_name} eq {value}",
            },
        )
        users = resp.json().get("value", [])
        return users[0] if users else None

    def add_system_user(
        self,
        instance_url: str,
        azure_ad_object_id: str,
        business_unit_id: Optional[str] = None,
    ) -> str:
        """Ensure a Dataverse system user exists for an Entra user and return its id."""
        dataverse = self._dataverse_client_factory(instance_url)
        existing = self._find_system_user(dataverse, "azureactivedirectoryobjectid", azure_ad_object_id)
        if existing:
            logger.info("[dataverse] System user for %s already exists (id=%s)", azure_ad_object_id, existing["systemuserid"])
            return existing["systemuserid"]

        business_unit_id = business_unit_id or self._root_business_unit(dataverse)
        payload = {
            "azureactivedirectoryobjectid": azure_ad_object_id,
            "businessunitid@odata.bind": f"/businessunits({business_unit_id})",
        }
        resp = dataverse.post("/systemusers", json=payload, headers={"Prefer": "return=representation"})
        user_id = resp.json()["systemuserid"]
        logger.info("[dataverse] System user created for %s (id=%s)", azure_ad_object_id, user_id)
        return user_id

    def ensure_application_user(self, instance_url: str, app_id: str, role_names: List[str]) -> SystemUserInfo:
        """Register an application (service principal) user and grant it security roles."""
        dataverse = self._dataverse_client_factory(instance_url)
        existing = self._find_system_user(dataverse, "applicationid", app_id)
        if existing:
            user_id = existing["systemuserid"]
            logger.info("[dataverse] Application user for %s already exists (id=%s)", app_id, user_id)
        else:
            business_unit_id = self._root_business_unit(dataverse)
            resp = dataverse.post(
                "/systemusers",
                json={
                    "applicationid": app_id,
                    "businessunitid@odata.bind": f"/businessunits({business_unit_id})",
                },
                headers={"Prefer": "return=representation"},
            )
            user_id = resp.json()["systemuserid"]
            logger.info("[dataverse] Application user created for %s (id=%s)", app_id, user_id)
        return self.assign_security_roles(instance_url, user_id, role_names)

    def assign_security_roles(self, instance_url: str, user_id: str, role_names: List[str]) -> SystemUserInfo:
        """Associate security roles (by name) with a system user.

        Raises:
            ResourceNotFoundError: If a role name does not exist in the user's business unit
        """
        dataverse = self._dataverse_client_factory(instance_url)
        user = dataverse.get(f"/systemusers({user_id})", params={"$select": "_businessunitid_value"}).json()
        business_unit_id = user.get("_businessunitid_value")

        role_ids: List[str] = []
        for role_name in role_names:
            escaped = role_name.replace("'", "''")
            role_filter = f"name eq '{escaped}'"
            if business_unit_id:
                role_filter += f" and _businessunitid_value eq {business_unit_id}"
            resp = dataverse.get("/roles", params={"$select": "roleid,name", "$filter": role_filter})
            roles = resp.json().get("value", [])
            if not roles:
                raise ResourceNotFoundError(f"Security role '{role_name}' not found")
            role_id = roles[0]["roleid"]
            dataverse.post(
                f"/systemusers({user_id})/systemuserroles_association/$ref",
                json={"@odata.id": f"{dataverse.base_url}/roles({role_id})"},
            )
            logger.info("[dataverse] Assigned role '%s' to %s", role_name, user_id)
            role_ids.append(role_id)

        return SystemUserInfo(user_id=user_id, role_ids=tuple(role_ids))
