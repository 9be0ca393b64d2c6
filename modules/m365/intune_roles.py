# ================================================================
# File     : modules/m365/intune_roles.py
# Purpose  : Intune RBAC role assignments + the Azure AD "Intune
#            Administrator" directory role → AuditRecords
# Notes    : Intune RBAC assigns roles to groups; members are group ids
# ================================================================

from typing import Any, Dict, List

from core.records import AuditRecord, IntuneDetail, PrincipalType, Service
from core.utils import fncPrintMessage, fncToTable, fncNewRunId
from handlers.graph.graph_helpers import fncHydratePrincipals

REQUIRED_PERMS = [
    "DeviceManagementRBAC.Read.All",
    "RoleManagement.Read.Directory",
    "Directory.Read.All",
]

# Built-in Azure AD role template "Intune Administrator"
INTUNE_ADMIN_ROLE_ID = "3a2c62db-5318-420d-8d74-23affee5d9d5"
INTUNE_ADMIN_ROLE_NAME = "Intune Administrator"


def _get_rbac_assignments(client) -> List[Dict[str, Any]]:
    """[{roleId, roleName, isBuiltIn, members, scope}] for every Intune role assignment."""
    out = []
    definitions = client.get_all("deviceManagement/roleDefinitions?$select=id,displayName,isBuiltIn") or []
    for d in definitions:
        try:
            assignments = client.get_all(f"deviceManagement/roleDefinitions/{d['id']}/roleAssignments")
        except Exception as ex:
            fncPrintMessage(f"Could not list assignments for Intune role {d.get('displayName')}: {ex}", "warn")
            continue
        for a in assignments or []:
            scopes = a.get("resourceScopes") or []
            out.append({
                "roleId": d.get("id"),
                "roleName": d.get("displayName") or "(unknown Intune role)",
                "isBuiltIn": d.get("isBuiltIn"),
                "members": a.get("members") or [],
                "scope": ",".join(scopes) if scopes else "/",
            })
    return out


def _get_directory_admins(client) -> List[Dict[str, Any]]:
    return client.get_all(
        "roleManagement/directory/roleAssignments"
        f"?$filter=roleDefinitionId eq '{INTUNE_ADMIN_ROLE_ID}'"
        "&$select=id,principalId,roleDefinitionId,directoryScopeId"
    ) or []


def _record(pid: str, info: Dict[str, Any], role_name: str, role_id: str, scope: str,
            detail: IntuneDetail, auth_type) -> AuditRecord:
    return AuditRecord(
        service=Service.INTUNE,
        principalId=pid,
        principalType=info.get("type") or PrincipalType.UNKNOWN,
        userPrincipalName=info.get("userPrincipalName"),
        displayName=info.get("displayName") or pid,
        userEnabled=info.get("accountEnabled"),
        lastSignIn=info.get("lastSignIn"),
        roleName=role_name,
        roleDefinitionId=role_id,
        scope=scope,
        authenticationType=auth_type,
        serviceDetail=detail,
    )


def run(client, args) -> List[AuditRecord]:
    run_id = fncNewRunId("intune")
    fncPrintMessage(f"Collecting Intune role assignments (run={run_id})", "info")

    rbac = _get_rbac_assignments(client)
    try:
        directory = _get_directory_admins(client)
    except Exception as ex:
        fncPrintMessage(f"Intune Administrator directory role lookup failed: {ex}", "warn")
        directory = []

    ids = [m for a in rbac for m in a["members"]] + [d.get("principalId") for d in directory]
    principals = fncHydratePrincipals(client, ids)
    auth_type = client.authentication_type

    records: List[AuditRecord] = []
    for a in rbac:
        for member in a["members"]:
            records.append(_record(member, principals.get(member, {}), a["roleName"], a["roleId"], a["scope"],
                                   IntuneDetail(roleSource="IntuneRBAC", isBuiltIn=a["isBuiltIn"]), auth_type))
    for d in directory:
        pid = d.get("principalId")
        if not pid:
            continue
        records.append(_record(pid, principals.get(pid, {}), INTUNE_ADMIN_ROLE_NAME, INTUNE_ADMIN_ROLE_ID,
                               d.get("directoryScopeId") or "/",
                               IntuneDetail(roleSource="AzureAD", isBuiltIn=True), auth_type))

    print(fncToTable(
        [{"principal": r.userKey or r.displayName, "role": r.roleName,
          "source": r.serviceDetail.roleSource} for r in records],
        max_rows=20,
    ))
    fncPrintMessage(f"Intune roles: {len(records)} assignments ({len(rbac)} RBAC role assignments)", "success")
    return records
