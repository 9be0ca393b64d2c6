# ================================================================
# File     : modules/m365/azuread_roles.py
# Purpose  : Azure AD directory role assignments → AuditRecords
#            (permanent, PIM eligible and PIM activated)
# Notes    : PIM endpoints need Entra ID P2; without it we warn and
#            return permanent assignments only
# ================================================================

from typing import Any, Dict, List, Set, Tuple

from core.records import AuditRecord, AssignmentType, PrincipalType, Service, fncParseDateTime
from core.utils import fncPrintMessage, fncToTable, fncNewRunId
from handlers.graph.graph_helpers import fncHydratePrincipals

REQUIRED_PERMS = [
    "RoleManagement.Read.Directory",
    "Directory.Read.All",
    "AuditLog.Read.All",   # optional: last sign-in
]

SCHEDULE_SELECT = "id,principalId,roleDefinitionId,directoryScopeId,startDateTime,endDateTime,assignmentType"


# ----------------------- Helpers -----------------------

def _get_role_definitions(client) -> Dict[str, str]:
    rows = client.get_all("roleManagement/directory/roleDefinitions?$select=id,displayName")
    return {r.get("id"): r.get("displayName") or "(unknown role)" for r in rows or []}


def _get_permanent_assignments(client) -> List[Dict[str, Any]]:
    return client.get_all(
        "roleManagement/directory/roleAssignments?$select=id,principalId,roleDefinitionId,directoryScopeId"
    ) or []


def _get_pim(client, endpoint: str, label: str) -> List[Dict[str, Any]]:
    try:
        return client.get_all(endpoint) or []
    except Exception as ex:
        fncPrintMessage(f"PIM {label} lookup failed (Entra ID P2 required?): {ex}", "warn")
        return []


def _key(row: Dict[str, Any]) -> Tuple[str, str, str]:
    return (row.get("principalId"), row.get("roleDefinitionId"), row.get("directoryScopeId") or "/")


def _record(row: Dict[str, Any], defs: Dict[str, str], principals: Dict[str, Dict[str, Any]],
            kind: AssignmentType, auth_type, pim: bool) -> AuditRecord:
    pid = row.get("principalId")
    info = principals.get(pid) or {}
    ptype = info.get("type") or PrincipalType.UNKNOWN
    upn = info.get("userPrincipalName")
    if ptype is PrincipalType.SERVICE_PRINCIPAL and not upn:
        upn = "System Generated"
    role_id = row.get("roleDefinitionId")
    return AuditRecord(
        service=Service.AZURE_AD,
        principalId=pid,
        principalType=ptype,
        userPrincipalName=upn,
        displayName=info.get("displayName") or pid,
        userEnabled=info.get("accountEnabled"),
        lastSignIn=info.get("lastSignIn"),
        roleName=defs.get(role_id) or role_id or "(unknown role)",
        roleDefinitionId=role_id,
        assignmentType=kind,
        assignedDateTime=fncParseDateTime(row.get("startDateTime")) if pim else None,
        pimEndDateTime=fncParseDateTime(row.get("endDateTime")) if pim else None,
        scope=row.get("directoryScopeId") or "/",
        authenticationType=auth_type,
    )


# ----------------------- Main -----------------------

def run(client, args) -> List[AuditRecord]:
    run_id = fncNewRunId("aadroles")
    fncPrintMessage(f"Collecting Azure AD role assignments (run={run_id})", "info")

    defs = _get_role_definitions(client)
    perms = _get_permanent_assignments(client)
    eligible = _get_pim(client, f"roleManagement/directory/roleEligibilityScheduleInstances?$select={SCHEDULE_SELECT}",
                        "eligible")
    activated = [
        r for r in _get_pim(client, f"roleManagement/directory/roleAssignmentScheduleInstances?$select={SCHEDULE_SELECT}",
                            "active")
        if str(r.get("assignmentType") or "").lower() == "activated"
    ]

    # Activated PIM roles also show up in roleAssignments; count them once
    activated_keys: Set[Tuple[str, str, str]] = {_key(r) for r in activated}
    perms = [r for r in perms if _key(r) not in activated_keys]

    principal_ids = [r.get("principalId") for r in (perms + eligible + activated) if r.get("principalId")]
    principals = fncHydratePrincipals(client, principal_ids)
    auth_type = client.authentication_type

    records: List[AuditRecord] = []
    records += [_record(r, defs, principals, AssignmentType.ACTIVE, auth_type, pim=False)
                for r in perms if r.get("principalId")]
    records += [_record(r, defs, principals, AssignmentType.ELIGIBLE_PIM, auth_type, pim=True)
                for r in eligible if r.get("principalId")]
    records += [_record(r, defs, principals, AssignmentType.ACTIVE_PIM, auth_type, pim=True)
                for r in activated if r.get("principalId")]

    preview = [
        {"principal": r.userKey or r.displayName, "type": r.principalType.value,
         "role": r.roleName, "assignment": r.assignmentType.value}
        for r in records
    ]
    print(fncToTable(preview, max_rows=20))

    fncPrintMessage(
        f"Azure AD roles: {len(perms)} permanent, {len(eligible)} eligible, {len(activated)} activated",
        "success",
    )
    return records
