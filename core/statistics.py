# ================================================================
# File     : statistics.py
# Purpose  : Summary statistics over a collection of AuditRecords
# Notes    : Pure: no I/O, no globals, no timestamps in the output.
#            "now" only sets the inactivity cutoff; the report bundle
#            owns the generation time.
# ================================================================

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.config import AuditPolicy
from core.records import AuditRecord, AssignmentType, AuthenticationType, PrincipalType, SERVICE_ORDER

GLOBAL_ADMIN_ROLE = "Global Administrator"

# Scope strings that mean "whole tenant"
ORG_WIDE_SCOPES = {"", "/", "organization", "tenant", "directory"}


def fncIsOrganizationWide(scope: Optional[str]) -> bool:
    return (scope or "").strip().lower() in ORG_WIDE_SCOPES


def fncIsInactive(record: AuditRecord, now: datetime, inactive_days: int) -> bool:
    """Enabled account whose last sign-in is older than the cutoff."""
    if record.userEnabled is not True or record.lastSignIn is None:
        return False
    return record.lastSignIn < now - timedelta(days=inactive_days)


def _sorted_counts(counter: Counter) -> Dict[str, int]:
    # highest first, ties by name so output is stable
    return dict(sorted(counter.items(), key=lambda kv: (-kv[1], kv[0])))


# ================================================================
# Function: fncComputeStatistics
# Purpose : Counts, groupings and flagged record buckets
# Notes   : Record buckets hold the AuditRecords themselves; counts
#           are derived with len(). None fields drop the record from
#           the affected bucket only.
# ================================================================
def fncComputeStatistics(records: Sequence[AuditRecord],
                         policy: Optional[AuditPolicy] = None,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
    policy = policy or AuditPolicy()
    now = now or datetime.now(timezone.utc)

    global_admins: List[AuditRecord] = []
    disabled: List[AuditRecord] = []
    inactive: List[AuditRecord] = []
    pim_eligible: List[AuditRecord] = []
    pim_active: List[AuditRecord] = []
    permanent: List[AuditRecord] = []
    service_principals: List[AuditRecord] = []
    client_secret: List[AuditRecord] = []

    by_service: Counter = Counter()
    by_role: Counter = Counter()
    by_user: Counter = Counter()
    org_wide = 0
    scoped = 0

    for r in records:
        by_service[r.service.value] += 1
        by_role[r.roleName or "(unnamed role)"] += 1
        if r.userKey:
            by_user[r.userKey] += 1

        if r.roleName == GLOBAL_ADMIN_ROLE:
            global_admins.append(r)
        if r.userEnabled is False:
            disabled.append(r)
        if fncIsInactive(r, now, policy.inactiveDays):
            inactive.append(r)

        if r.assignmentType is AssignmentType.ELIGIBLE_PIM:
            pim_eligible.append(r)
        elif r.assignmentType is AssignmentType.ACTIVE_PIM:
            pim_active.append(r)
        else:
            permanent.append(r)

        if r.principalType is PrincipalType.SERVICE_PRINCIPAL:
            service_principals.append(r)
        if r.authenticationType is AuthenticationType.CLIENT_SECRET:
            client_secret.append(r)

        if fncIsOrganizationWide(r.scope):
            org_wide += 1
        else:
            scoped += 1

    services_audited = [s.value for s in SERVICE_ORDER if s.value in by_service]
    excessive = {u: n for u, n in _sorted_counts(by_user).items() if n > policy.maxRolesPerUser}

    return {
        "totalAssignments": len(records),
        "uniqueUsers": len(by_user),
        "servicesAudited": services_audited,
        "globalAdmins": global_admins,
        "disabledUsers": disabled,
        "inactiveUsers": inactive,
        "pimEligible": pim_eligible,
        "pimActive": pim_active,
        "permanentAssignments": permanent,
        "servicePrincipals": service_principals,
        "clientSecretAuth": client_secret,
        "byService": {s: by_service[s] for s in services_audited},
        "byRole": _sorted_counts(by_role),
        "byUser": _sorted_counts(by_user),
        "usersWithExcessiveRoles": excessive,
        "organizationWideRoles": org_wide,
        "scopedRoles": scoped,
    }


# ================================================================
# Function: fncStatisticsSummary
# Purpose : Flat {label: number} view used by the console, HTML
#           summary table and the XLSX Summary sheet
# ================================================================
def fncStatisticsSummary(stats: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "Total Assignments": stats["totalAssignments"],
        "Unique Users": stats["uniqueUsers"],
        "Services Audited": len(stats["servicesAudited"]),
        "Global Administrators": len(stats["globalAdmins"]),
        "Disabled Users With Roles": len(stats["disabledUsers"]),
        "Inactive Users": len(stats["inactiveUsers"]),
        "PIM Eligible": len(stats["pimEligible"]),
        "PIM Active": len(stats["pimActive"]),
        "Permanent Assignments": len(stats["permanentAssignments"]),
        "Service Principal Assignments": len(stats["servicePrincipals"]),
        "Client Secret Authentications": len(stats["clientSecretAuth"]),
        "Users With Excessive Roles": len(stats["usersWithExcessiveRoles"]),
        "Organisation-wide Roles": stats["organizationWideRoles"],
        "Scoped Roles": stats["scopedRoles"],
    }
