from __future__ import annotations

import logging
import string
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import GraphFailure
from .graph_client import GraphClient

logger = logging.getLogger(__name__)

MICROSOFT_GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"
ENTERPRISE_APP_TAG = "WindowsAzureActiveDirectoryIntegratedApp"
USER_PARTITIONS = tuple(string.ascii_lowercase + string.digits)

Row = Dict[str, Any]


@dataclass
class TenantExecutionContext:
    tenant_id: str
    graph: GraphClient
    client_factory: Optional[Callable[[], GraphClient]] = None


def _odata_type(record: Dict[str, Any]) -> str:
    return record.get("@odata.type", "").replace("#microsoft.graph.", "")


class TenantOperations:
    """Inventory, audit and permission operations executed within a tenant context.

    Each operation returns flat rows (one dict per record) ready to be
    serialized by the caller.
    """

    def __init__(self, context: TenantExecutionContext):
        self.context = context

    @property
    def graph(self) -> GraphClient:
        return self.context.graph

    def list_users(self, top: int = 10) -> List[Row]:
        data = self.graph.get_json(
            "/users",
            params={"$top": top, "$select": "id,displayName,userPrincipalName,accountEnabled"},
        )
        return [
            {
                "id": user.get("id"),
                "displayName": user.get("displayName"),
                "userPrincipalName": user.get("userPrincipalName"),
                "accountEnabled": user.get("accountEnabled"),
            }
            for user in data.get("value", [])
        ]

    def add_group_owners(self, group_id: str, user_ids: Iterable[str]) -> List[Row]:
        """Add each user as an owner of the group and report a status per user.

        Users that already own the group are not posted again. A failure for
        one user is recorded in its row and does not stop the others.
        """
        existing = {
            owner["id"]
            for owner in self.graph.paginate(f"/groups/{group_id}/owners", params={"$select": "id"})
        }
        report: List[Row] = []
        for user_id in user_ids:
            if user_id in existing:
                report.append({"groupId": group_id, "userId": user_id, "status": "AlreadyOwner"})
                continue
            try:
                self.graph.post(
                    f"/groups/{group_id}/owners/$ref",
                    json={"@odata.id": f"{self.graph.base_url}/directoryObjects/{user_id}"},
                )
            except GraphFailure as exc:
                logger.warning("Failed to add owner %s to group %s: %s", user_id, group_id, exc)
                report.append(
                    {"groupId": group_id, "userId": user_id, "status": f"Failed: {exc.message}"}
                )
                continue
            existing.add(user_id)
            report.append({"groupId": group_id, "userId": user_id, "status": "Added"})
        return report

    def list_subscribed_skus(self) -> List[Row]:
        rows: List[Row] = []
        for sku in self.graph.paginate("/subscribedSkus"):
            enabled = (sku.get("prepaidUnits") or {}).get("enabled", 0)
            consumed = sku.get("consumedUnits", 0)
            rows.append(
                {
                    "skuPartNumber": sku.get("skuPartNumber"),
                    "skuId": sku.get("skuId"),
                    "capabilityStatus": sku.get("capabilityStatus"),
                    "enabledUnits": enabled,
                    "consumedUnits": consumed,
                    "availableUnits": enabled - consumed,
                }
            )
        return rows

    def list_enterprise_apps(self) -> List[Row]:
        records = self.graph.paginate(
            "/servicePrincipals",
            params={
                "$filter": f"tags/any(t:t eq '{ENTERPRISE_APP_TAG}')",
                "$select": "id,appId,displayName,accountEnabled,publisherName,signInAudience",
                "$count": "true",
                "$top": 999,
            },
            headers={"ConsistencyLevel": "eventual"},
        )
        return [
            {
                "id": sp.get("id"),
                "appId": sp.get("appId"),
                "displayName": sp.get("displayName"),
                "accountEnabled": sp.get("accountEnabled"),
                "publisherName": sp.get("publisherName"),
                "signInAudience": sp.get("signInAudience"),
            }
            for sp in records
        ]

    def list_mfa_registration(self) -> List[Row]:
        rows: List[Row] = []
        for detail in self.graph.paginate("/reports/authenticationMethods/userRegistrationDetails"):
            rows.append(
                {
                    "userPrincipalName": detail.get("userPrincipalName"),
                    "userDisplayName": detail.get("userDisplayName"),
                    "isAdmin": detail.get("isAdmin"),
                    "isMfaCapable": detail.get("isMfaCapable"),
                    "isMfaRegistered": detail.get("isMfaRegistered"),
                    "isPasswordlessCapable": detail.get("isPasswordlessCapable"),
                    "defaultMfaMethod": detail.get("defaultMfaMethod"),
                    "methodsRegistered": ";".join(detail.get("methodsRegistered") or []),
                }
            )
        return rows

    def list_admin_role_members(self) -> List[Row]:
        rows: List[Row] = []
        for role in self.graph.paginate("/directoryRoles"):
            members = self.graph.paginate(
                f"/directoryRoles/{role['id']}/members",
                params={"$select": "id,displayName,userPrincipalName"},
            )
            for member in members:
                rows.append(
                    {
                        "roleName": role.get("displayName"),
                        "roleId": role.get("id"),
                        "memberId": member.get("id"),
                        "memberType": _odata_type(member),
                        "displayName": member.get("displayName"),
                        "userPrincipalName": member.get("userPrincipalName"),
                    }
                )
        return rows

    def audit_service_principal_permissions(self, service_principal_id: str) -> List[Row]:
        """List the application and delegated Graph permissions granted to a service principal."""
        sp = self.graph.get_json(
            f"/servicePrincipals/{service_principal_id}", params={"$select": "id,displayName"}
        )
        resources: Dict[str, Dict[str, Any]] = {}

        def resource(resource_id: str) -> Dict[str, Any]:
            if resource_id not in resources:
                resources[resource_id] = self.graph.get_json(
                    f"/servicePrincipals/{resource_id}",
                    params={"$select": "id,displayName,appRoles"},
                )
            return resources[resource_id]

        rows: List[Row] = []
        for assignment in self.graph.paginate(
            f"/servicePrincipals/{service_principal_id}/appRoleAssignments"
        ):
            target = resource(assignment["resourceId"])
            roles = {role["id"]: role.get("value") for role in target.get("appRoles", [])}
            rows.append(
                {
                    "servicePrincipal": sp.get("displayName"),
                    "permissionType": "Application",
                    "resource": target.get("displayName"),
                    "permission": roles.get(assignment.get("appRoleId"), assignment.get("appRoleId")),
                    "consentType": "Admin",
                    "principalId": None,
                }
            )

        grants = self.graph.paginate(
            "/oauth2PermissionGrants",
            params={"$filter": f"clientId eq '{service_principal_id}'"},
        )
        for grant in grants:
            target = resource(grant["resourceId"])
            for scope in (grant.get("scope") or "").split():
                rows.append(
                    {
                        "servicePrincipal": sp.get("displayName"),
                        "permissionType": "Delegated",
                        "resource": target.get("displayName"),
                        "permission": scope,
                        "consentType": grant.get("consentType"),
                        "principalId": grant.get("principalId"),
                    }
                )
        return rows

    def assign_managed_identity_permissions(
        self, managed_identity_id: str, permissions: Iterable[str]
    ) -> List[Row]:
        """Grant Microsoft Graph application permissions to a managed identity.

        Every permission name is validated before any assignment is written.
        """
        permissions = list(dict.fromkeys(permissions))
        graph_sp = next(
            iter(
                self.graph.paginate(
                    "/servicePrincipals",
                    params={
                        "$filter": f"appId eq '{MICROSOFT_GRAPH_APP_ID}'",
                        "$select": "id,displayName,appRoles",
                    },
                )
            ),
            None,
        )
        if graph_sp is None:
            raise LookupError("Microsoft Graph service principal not found in tenant")

        role_ids = {
            role["value"]: role["id"]
            for role in graph_sp.get("appRoles", [])
            if "Application" in role.get("allowedMemberTypes", [])
        }
        unknown = [name for name in permissions if name not in role_ids]
        if unknown:
            raise ValueError(f"Unknown Microsoft Graph application permissions: {', '.join(unknown)}")

        assigned = {
            assignment["appRoleId"]
            for assignment in self.graph.paginate(
                f"/servicePrincipals/{managed_identity_id}/appRoleAssignments"
            )
            if assignment.get("resourceId") == graph_sp["id"]
        }

        rows: List[Row] = []
        for name in permissions:
            status = "AlreadyAssigned"
            if role_ids[name] not in assigned:
                self.graph.post(
                    f"/servicePrincipals/{managed_identity_id}/appRoleAssignments",
                    json={
                        "principalId": managed_identity_id,
                        "resourceId": graph_sp["id"],
                        "appRoleId": role_ids[name],
                    },
                )
                status = "Assigned"
            rows.append({"managedIdentityId": managed_identity_id, "permission": name, "status": status})
        return rows

    def count_users_partitioned(self, max_workers: int = 8) -> List[Row]:
        if self.context.client_factory is None:
            raise ValueError("A client factory is required for partitioned counts")
        return count_users_partitioned(self.context.client_factory, max_workers=max_workers)


def count_users_partitioned(
    client_factory: Callable[[], GraphClient],
    partitions: Iterable[str] = USER_PARTITIONS,
    max_workers: int = 8,
) -> List[Row]:
    """Count users per displayName prefix in parallel.

    Each worker opens its own session (and so its own executor) from
    ``client_factory`` and closes it when done.
    """

    def count_partition(prefix: str) -> Row:
        with client_factory() as client:
            count = client.count("/users", params={"$filter": f"startswith(displayName,'{prefix}')"})
        return {"partition": prefix, "count": count}

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(count_partition, list(partitions)))
