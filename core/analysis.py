# ================================================================
# File     : analysis.py
# Purpose  : Per-service, per-principal, cross-service and PIM
#            breakdowns over AuditRecords
# Notes    : Optional service sub-analyses are dispatched through
#            SERVICE_METADATA["analysis"]; a disabled flag omits the key
# ================================================================

from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.config import AuditPolicy
from core.records import (
    AuditRecord,
    AssignmentType,
    IntuneDetail,
    PrincipalType,
    SERVICE_METADATA,
    SERVICE_ORDER,
    Service,
)

INTUNE_SERVICE_ADMIN_ROLES = {"Intune Administrator", "Intune Service Administrator"}


def _top(counter: Counter) -> Optional[str]:
    if not counter:
        return None
    return sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


# ---------- service-specific sub-analyses ----------

def _exchange_analysis(records: Sequence[AuditRecord], policy: AuditPolicy) -> Dict[str, Any]:
    synced, cloud, unknown = set(), set(), set()
    role_groups: Counter = Counter()
    for r in records:
        d = r.serviceDetail
        synced_flag = getattr(d, "onPremisesSynced", None)
        if synced_flag is True:
            synced.add(r.principalId)
        elif synced_flag is False:
            cloud.add(r.principalId)
        else:
            unknown.add(r.principalId)
        role_groups[getattr(d, "roleGroup", None) or r.roleName] += 1
    return {
        "hybridDetected": bool(synced),
        "hybridSyncedPrincipals": len(synced),
        "cloudOnlyPrincipals": len(cloud),
        "unknownSyncPrincipals": len(unknown - synced - cloud),
        "roleGroups": dict(sorted(role_groups.items(), key=lambda kv: (-kv[1], kv[0]))),
    }


def _intune_analysis(records: Sequence[AuditRecord], policy: AuditPolicy) -> Dict[str, Any]:
    rbac = 0
    azure_ad = 0
    for r in records:
        d = r.serviceDetail
        if isinstance(d, IntuneDetail) and d.roleSource == "AzureAD":
            azure_ad += 1
        else:
            rbac += 1
    total = rbac + azure_ad
    service_admins = {
        r.userKey or r.principalId for r in records if r.roleName in INTUNE_SERVICE_ADMIN_ROLES
    }
    return {
        "intuneRbacAssignments": rbac,
        "azureAdAssignments": azure_ad,
        "rbacRatio": round(rbac / total, 2) if total else 0.0,
        "serviceAdmins": len(service_admins),
        "exceedsServiceAdminLimit": len(service_admins) > policy.maxIntuneServiceAdmins,
    }


def _sharepoint_analysis(records: Sequence[AuditRecord], policy: AuditPolicy) -> Dict[str, Any]:
    per_site: Counter = Counter()
    storage: Dict[str, float] = {}
    titles: Dict[str, str] = {}
    for r in records:
        d = r.serviceDetail
        site = getattr(d, "siteUrl", None) or r.scope or "(unknown site)"
        per_site[site] += 1
        size = getattr(d, "storageUsedMb", None)
        if size is not None:
            storage[site] = max(storage.get(site, 0.0), float(size))
        if getattr(d, "siteTitle", None):
            titles[site] = d.siteTitle
    largest = sorted(storage.items(), key=lambda kv: (-kv[1], kv[0]))[:5]
    return {
        "sites": len(per_site),
        "assignmentsBySite": dict(sorted(per_site.items(), key=lambda kv: (-kv[1], kv[0]))),
        "totalStorageMb": round(sum(storage.values()), 2),
        "largestSites": [
            {"siteUrl": url, "siteTitle": titles.get(url), "storageUsedMb": mb} for url, mb in largest
        ],
    }


SUB_ANALYSERS: Dict[str, Callable[[Sequence[AuditRecord], AuditPolicy], Dict[str, Any]]] = {
    "exchangeAnalysis": _exchange_analysis,
    "intuneAnalysis": _intune_analysis,
    "sharePointAnalysis": _sharepoint_analysis,
}


# ================================================================
# Function: fncAnalyzeByService
# Purpose : totals, unique users and top role per service
# Notes   : Sub-analysis attached only for services whose flag is set
# ================================================================
def fncAnalyzeByService(records: Sequence[AuditRecord],
                        include_exchange_hybrid: bool = False,
                        include_intune_rbac: bool = False,
                        include_sharepoint_sites: bool = False,
                        policy: Optional[AuditPolicy] = None) -> Dict[str, Dict[str, Any]]:
    policy = policy or AuditPolicy()
    enabled = {
        "exchangeAnalysis": include_exchange_hybrid,
        "intuneAnalysis": include_intune_rbac,
        "sharePointAnalysis": include_sharepoint_sites,
    }

    grouped: Dict[Service, List[AuditRecord]] = defaultdict(list)
    for r in records:
        grouped[r.service].append(r)

    out: Dict[str, Dict[str, Any]] = {}
    for service in SERVICE_ORDER:
        rows = grouped.get(service)
        if not rows:
            continue
        roles = Counter(r.roleName for r in rows)
        entry: Dict[str, Any] = {
            "totalAssignments": len(rows),
            "uniqueUsers": len({r.userKey for r in rows if r.userKey}),
            "topRole": _top(roles),
        }
        key = SERVICE_METADATA[service]["analysis"]
        if key and enabled.get(key):
            entry[key] = SUB_ANALYSERS[key](rows, policy)
        out[service.value] = entry
    return out


# ================================================================
# Function: fncAnalyzeByPrincipal
# Purpose : Assignment and distinct-principal counts per principal type
# ================================================================
def fncAnalyzeByPrincipal(records: Sequence[AuditRecord]) -> Dict[str, Dict[str, int]]:
    assignments: Counter = Counter()
    principals: Dict[str, set] = defaultdict(set)
    for r in records:
        assignments[r.principalType.value] += 1
        principals[r.principalType.value].add(r.principalId)
    return {
        ptype.value: {
            "assignments": assignments[ptype.value],
            "uniquePrincipals": len(principals[ptype.value]),
        }
        for ptype in PrincipalType
        if assignments[ptype.value]
    }


# ================================================================
# Function: fncAnalyzeCrossService
# Purpose : Which users hold roles in more than one service
# Notes   : Combination counters are plain pairwise co-occurrence,
#           names ordered as in SERVICE_ORDER ("Exchange+AzureAD"
#           comes out as "AzureAD+Exchange")
# ================================================================
def fncAnalyzeCrossService(records: Sequence[AuditRecord]) -> Dict[str, Any]:
    user_services: Dict[str, set] = defaultdict(set)
    for r in records:
        if r.userKey:
            user_services[r.userKey].add(r.service)

    multi = {u: s for u, s in user_services.items() if len(s) > 1}
    combos: Counter = Counter()
    for services in multi.values():
        ordered = [s for s in SERVICE_ORDER if s in services]
        for a, b in combinations(ordered, 2):
            combos[f"{a.value}+{b.value}"] += 1

    return {
        "usersWithMultipleServices": len(multi),
        "userServices": {
            u: [s.value for s in SERVICE_ORDER if s in services]
            for u, services in sorted(multi.items())
        },
        "combinations": dict(sorted(combos.items(), key=lambda kv: (-kv[1], kv[0]))),
    }


# ================================================================
# Function: fncAnalyzePIM
# Purpose : PIM usage: eligible vs activated vs permanent, expiry
# Notes   : enabled = at least one PIM record exists
# ================================================================
def fncAnalyzePIM(records: Sequence[AuditRecord],
                  now: Optional[datetime] = None,
                  expiring_days: int = 30) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    horizon = now + timedelta(days=expiring_days)

    eligible = [r for r in records if r.assignmentType is AssignmentType.ELIGIBLE_PIM]
    active = [r for r in records if r.assignmentType is AssignmentType.ACTIVE_PIM]
    pim = eligible + active

    expiring = [r for r in pim if r.pimEndDateTime is not None and now <= r.pimEndDateTime <= horizon]
    return {
        "enabled": bool(pim),
        "totalEligible": len(eligible),
        "totalActive": len(active),
        "permanentAssignments": len(records) - len(pim),
        "eligibleByRole": dict(Counter(r.roleName for r in eligible).most_common()),
        "expiringSoon": len(expiring),
        "noEndDate": sum(1 for r in pim if r.pimEndDateTime is None),
    }


# ================================================================
# Function: fncBuildAnalysis
# Purpose : Bundle every analyser output for the renderer / JSON
# Notes   : options keys: exchange_hybrid, intune_rbac, sharepoint_sites
# ================================================================
def fncBuildAnalysis(records: Sequence[AuditRecord],
                     options: Optional[Dict[str, Any]] = None,
                     policy: Optional[AuditPolicy] = None,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
    options = options or {}
    policy = policy or AuditPolicy()
    return {
        "serviceAnalysis": fncAnalyzeByService(
            records,
            include_exchange_hybrid=bool(options.get("exchange_hybrid")),
            include_intune_rbac=bool(options.get("intune_rbac")),
            include_sharepoint_sites=bool(options.get("sharepoint_sites")),
            policy=policy,
        ),
        "principalAnalysis": fncAnalyzeByPrincipal(records),
        "crossServiceAnalysis": fncAnalyzeCrossService(records),
        "pimAnalysis": fncAnalyzePIM(records, now=now, expiring_days=policy.pimExpiringDays),
    }
