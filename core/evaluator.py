# ================================================================
# File     : evaluator.py
# Purpose  : Turn statistics into severity-bucketed alerts and
#            remediation recommendations
# Notes    : Each rule is independent: no precedence, no override.
#            Thresholds come from AuditPolicy.
# ================================================================

from typing import Any, Dict, List, Optional, Sequence

from core.analysis import INTUNE_SERVICE_ADMIN_ROLES
from core.config import AuditPolicy
from core.records import AuditRecord, Service

SEVERITIES = ("critical", "high", "medium", "low")
HORIZONS = ("immediate", "shortTerm", "longTerm")


def _empty_result() -> Dict[str, Dict[str, List[str]]]:
    return {
        "alerts": {s: [] for s in SEVERITIES},
        "recommendations": {h: [] for h in HORIZONS},
    }


def _distinct_users(rows: Sequence[AuditRecord]) -> int:
    return len({r.userKey or r.principalId for r in rows})


# ================================================================
# Function: fncEvaluate
# Purpose : Apply the static policy rules
# Notes   : stats is the dict from fncComputeStatistics
# ================================================================
def fncEvaluate(records: Sequence[AuditRecord],
                stats: Dict[str, Any],
                policy: Optional[AuditPolicy] = None) -> Dict[str, Dict[str, List[str]]]:
    policy = policy or AuditPolicy()
    result = _empty_result()
    alerts = result["alerts"]
    recs = result["recommendations"]

    ga = len(stats["globalAdmins"])
    if ga > policy.maxGlobalAdmins:
        severity = "critical" if ga >= policy.maxGlobalAdmins * 2 else "high"
        alerts[severity].append(
            f"{ga} Global Administrator assignments exceed the recommended maximum of {policy.maxGlobalAdmins}"
        )
        recs["immediate"].append(
            f"Reduce Global Administrator assignments to {policy.maxGlobalAdmins} or fewer and "
            "move day-to-day work to least-privileged roles"
        )

    disabled = stats["disabledUsers"]
    if disabled:
        alerts["high"].append(
            f"{len(disabled)} role assignments belong to {_distinct_users(disabled)} disabled account(s)"
        )
        recs["immediate"].append("Remove role assignments held by disabled accounts")

    if not stats["pimEligible"] and stats["totalAssignments"] > 0:
        alerts["medium"].append("No PIM eligible assignments found; all privileged access is standing access")
        recs["shortTerm"].append("Convert permanent privileged assignments to PIM eligible assignments")

    secret = stats["clientSecretAuth"]
    if secret:
        alerts["medium"].append(f"{len(secret)} assignments were collected with client secret authentication")
        recs["shortTerm"].append("Replace client secrets with certificate-based app authentication")

    excessive = stats["usersWithExcessiveRoles"]
    if excessive:
        alerts["medium"].append(
            f"{len(excessive)} user(s) hold more than {policy.maxRolesPerUser} role assignments"
        )
        recs["shortTerm"].append("Review users with role sprawl and remove roles that are not needed")

    inactive = stats["inactiveUsers"]
    if inactive:
        alerts["medium"].append(
            f"{_distinct_users(inactive)} enabled account(s) with roles have not signed in for "
            f"{policy.inactiveDays}+ days"
        )
        recs["shortTerm"].append("Review inactive privileged accounts and remove or disable them")

    intune_admins = {
        r.userKey or r.principalId
        for r in records
        if r.service is Service.INTUNE and r.roleName in INTUNE_SERVICE_ADMIN_ROLES
    }
    if len(intune_admins) > policy.maxIntuneServiceAdmins:
        alerts["medium"].append(
            f"{len(intune_admins)} Intune service administrators exceed the recommended maximum of "
            f"{policy.maxIntuneServiceAdmins}"
        )
        recs["shortTerm"].append("Move Intune administrators to scoped Intune RBAC roles")

    org_wide = stats["organizationWideRoles"]
    scoped = stats["scopedRoles"]
    if org_wide > policy.orgWideRatio * scoped and org_wide > policy.orgWideMinimum:
        alerts["low"].append(
            f"{org_wide} organisation-wide role assignments versus {scoped} scoped assignments"
        )
        recs["longTerm"].append("Scope role assignments to administrative units, sites or role groups")

    return result


# ================================================================
# Function: fncAlertRows
# Purpose : Flatten alerts to [{severity, message}] for tables/sheets
# ================================================================
def fncAlertRows(evaluation: Dict[str, Dict[str, List[str]]]) -> List[Dict[str, str]]:
    return [
        {"severity": sev.title(), "message": msg}
        for sev in SEVERITIES
        for msg in evaluation["alerts"].get(sev, [])
    ]


def fncAlertCount(evaluation: Dict[str, Dict[str, List[str]]]) -> int:
    return sum(len(v) for v in evaluation["alerts"].values())
