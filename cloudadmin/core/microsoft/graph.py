"""Entra ID administration through Microsoft Graph."""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import quote

from .client import CloudClient
from .exceptions import CloudAPIError, ResourceNotFoundError

GRAPH_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplicationInfo:
    app_id: str
    object_id: str
    display_name: str

    @classmethod
    def from_api(cls, body: dict) -> "ApplicationInfo":
        return cls(app_id=body["appId"], object_id=body["id"], display_name=body.get("displayName", ""))


@dataclass(frozen=True)
class ClientSecretInfo:
    key_id: str
    secret_text: str
    end_date_time: str


@dataclass(frozen=True)
class GroupInfo:
    group_id: str
    display_name: str
    mail_nickname: str

    @classmethod
    def from_api(cls, body: dict) -> "GroupInfo":
        return cls(group_id=body["id"], display_name=body.get("displayName", ""), mail_nickname=body.get("mailNickname", ""))


@dataclass(frozen=True)
class RoleAssignmentInfo:
    assignment_id: str
    role_definition_id: str
    principal_id: str
    directory_scope_id: str


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


def _mail_nickname(display_name: str) -> str:
    nickname = re.sub(r"[^A-Za-z0-9_.-]", "", display_name)
    return nickname[:64] or "group"


class GraphService:
    """Service for Entra ID applications, groups and directory roles."""

    def __init__(self, client: CloudClient):
        """Initialize Graph service.

        Args:
            client: Client bound to the Graph v1.0 endpoint
        """
        self.client = client

    def _first(self, path: str, filter_expr: str) -> Optional[dict]:
        resp = self.client.get(path, params={"$filter": filter_expr})
        values = resp.json().get("value", [])
        return values[0] if values else None

    # ─────────────────────────────────────────────────────────────────────
    # Applications
    # ─────────────────────────────────────────────────────────────────────

    def get_application(self, display_name: str) -> Optional[ApplicationInfo]:
        """Return the app registration with this display name, or None."""
        body = self._first("/applications", f"displayName eq '{_odata_quote(display_name)}'")
        return ApplicationInfo.from_api(body) if body else None

    def ensure_application(
        self,
        display_name: str,
        sign_in_audience: str = "AzureADMyOrg",
        redirect_uris: Optional[List[str]] = None,
    ) -> ApplicationInfo:
        """Idempotently create an app registration.

        The lookup and the create are separate calls, so two concurrent runs
        can still create duplicates.
        """
        existing = self.get_application(display_name)
        if existing:
            logger.info("[graph] Application '%s' already exists (appId=%s)", display_name, existing.app_id)
            return existing

        payload = {"displayName": display_name, "signInAudience": sign_in_audience}
        if redirect_uris:
            payload["web"] = {"redirectUris": list(redirect_uris)}
        resp = self.client.post("/applications", json=payload)
        app = ApplicationInfo.from_api(resp.json())
        logger.info("[graph] Application '%s' created (appId=%s)", display_name, app.app_id)
        return app

    def add_client_secret(self, object_id: str, display_name: str, months: int = 12) -> ClientSecretInfo:
        """Add a password credential to an application. The secret is only returned once."""
        end = datetime.now(timezone.utc) + timedelta(days=30 * months)
        payload = {
            "passwordCredential": {
                "displayName": display_name,
                "endDateTime": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
        }
        body = self.client.post(f"/applications/{object_id}/addPassword", json=payload).json()
        logger.info("[graph] Client secret '%s' added (keyId=%s)", display_name, body.get("keyId"))
        return ClientSecretInfo(
            key_id=body["keyId"],
            secret_text=body["secretText"],
            end_date_time=body.get("endDateTime", ""),
        )

    def ensure_service_principal(self, app_id: str) -> str:
        """Return the service principal object id for an app, creating it if needed."""
        existing = self._first("/servicePrincipals", f"appId eq '{_odata_quote(app_id)}'")
        if existing:
            return existing["id"]
        body = self.client.post("/servicePrincipals", json={"appId": app_id}).json()
        logger.info("[graph] Service principal created for %s (id=%s)", app_id, body["id"])
        return body["id"]

    def delete_application(self, object_id: str) -> None:
        self.client.delete(f"/applications/{object_id}")
        logger.info("[graph] Application %s deleted", object_id)

    # ─────────────────────────────────────────────────────────────────────
    # Users and groups
    # ─────────────────────────────────────────────────────────────────────

    def get_user_id(self, user_principal_name: str) -> Optional[str]:
        # Guest UPNs contain "#EXT#"
        resp = self.client.get(
            f"/users/{quote(user_principal_name, safe='@')}",
            params={"$select": "id"},
            allowed_statuses=(404,),
        )
        if resp.status_code == 404:
            return None
        return resp.json()["id"]

    def get_group(self, display_name: str) -> Optional[GroupInfo]:
        body = self._first("/groups", f"displayName eq '{_odata_quote(display_name)}'")
        return GroupInfo.from_api(body) if body else None

    def ensure_group(self, display_name: str, description: str = "", mail_nickname: Optional[str] = None) -> GroupInfo:
        """Idempotently create a mail-disabled security group."""
        existing = self.get_group(display_name)
        if existing:
            logger.info("[graph] Group '%s' already exists (id=%s)", display_name, existing.group_id)
            return existing

        payload = {
            "displayName": display_name,
            "mailEnabled": False,
            "mailNickname": mail_nickname or _mail_nickname(display_name),
            "securityEnabled": True,
        }
        if description:
            payload["description"] = description
        group = GroupInfo.from_api(self.client.post("/groups", json=payload).json())
        logger.info("[graph] Group '%s' created (id=%s)", display_name, group.group_id)
        return group

    def add_group_member(self, group_id: str, member_object_id: str) -> bool:
        """Add a directory object to a group.

        Returns:
            True if added, False if it was already a member
        """
        try:
            self.client.post(
                f"/groups/{group_id}/members/$ref",
                json={"@odata.id": f"{self.client.base_url}/directoryObjects/{member_object_id}"},
            )
        except CloudAPIError as e:
            if e.status_code == 400 and "already exist" in e.message:
                return False
            raise
        logger.info("[graph] Added %s to group %s", member_object_id, group_id)
        return True

    def remove_group_member(self, group_id: str, member_object_id: str) -> bool:
        """Remove a member. Returns False if it was not a member."""
        resp = self.client.delete(f"/groups/{group_id}/members/{member_object_id}/$ref", allowed_statuses=(404,))
        if resp.status_code == 404:
            return False
        logger.info("[graph] Removed %s from group %s", member_object_id, group_id)
        return True

    def list_group_members(self, group_id: str) -> List[dict]:
        return self.client.get_paged(f"/groups/{group_id}/members", params={"$select": "id,displayName,userPrincipalName"})

    # ─────────────────────────────────────────────────────────────────────
    # Directory roles
    # ─────────────────────────────────────────────────────────────────────

    def assign_directory_role(self, principal_id: str, role_name: str, directory_scope_id: str = "/") -> RoleAssignmentInfo:
        """Assign a directory role (e.g. "Application Administrator") to a principal.

        Raises:
            ResourceNotFoundError: If no role definition has that display name
        """
        role = self._first("/roleManagement/directory/roleDefinitions", f"displayName eq '{_odata_quote(role_name)}'")
        if not role:
            raise ResourceNotFoundError(f"Directory role '{role_name}' not found")

        assignments = self.client.get_paged(
            "/roleManagement/directory/roleAssignments",
            params={"$filter": f"principalId eq '{principal_id}' and roleDefinitionId eq '{role['id']}'"},
        )
        existing = next(
            (a for a in assignments if a.get("directoryScopeId", "/") == directory_scope_id),
            None,
        )
        if existing:
            logger.info("[graph] Role '%s' already assigned to %s", role_name, principal_id)
            body = existing
        else:
            body = self.client.post(
                "/roleManagement/directory/roleAssignments",
                json={
                    "principalId": principal_id,
                    "roleDefinitionId": role["id"],
                    "directoryScopeId": directory_scope_id,
                },
            ).json()
            logger.info("[graph] Role '%s' assigned to %s", role_name, principal_id)

        return RoleAssignmentInfo(
            assignment_id=body["id"],
            role_definition_id=body.get("roleDefinitionId", role["id"]),
            principal_id=body.get("principalId", principal_id),
            directory_scope_id=body.get("directoryScopeId", directory_scope_id),
        )
