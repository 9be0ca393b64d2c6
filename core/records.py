# ================================================================
# File     : records.py
# Purpose  : AuditRecord data model + the single service metadata table
# Notes    : Records are frozen; collectors build them, the pipeline
#            only reads them. JSON shape uses camelCase keys.
# ================================================================

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from core.utils import fncPrintMessage, fncReadJSON


class Service(str, Enum):
    AZURE_AD = "AzureAD"
    SHAREPOINT = "SharePoint"
    EXCHANGE = "Exchange"
    TEAMS = "Teams"
    PURVIEW = "Purview"
    INTUNE = "Intune"
    DEFENDER = "Defender"
    POWER_PLATFORM = "PowerPlatform"


class PrincipalType(str, Enum):
    USER = "User"
    GROUP = "Group"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    UNKNOWN = "Unknown"


class AssignmentType(str, Enum):
    ACTIVE = "Active"
    ELIGIBLE_PIM = "Eligible (PIM)"
    ACTIVE_PIM = "Active (PIM)"

    @property
    def is_pim(self) -> bool:
        return self is not AssignmentType.ACTIVE


class AuthenticationType(str, Enum):
    CERTIFICATE = "Certificate"
    CLIENT_SECRET = "ClientSecret"
    INTERACTIVE = "Interactive"


# ----- service-specific detail (tagged by AuditRecord.service) -----

@dataclass(frozen=True)
class ExchangeDetail:
    roleGroup: Optional[str] = None
    onPremisesSynced: Optional[bool] = None
    recipientType: Optional[str] = None


@dataclass(frozen=True)
class SharePointDetail:
    siteUrl: Optional[str] = None
    siteTitle: Optional[str] = None
    storageUsedMb: Optional[float] = None


@dataclass(frozen=True)
class IntuneDetail:
    roleSource: str = "IntuneRBAC"   # IntuneRBAC | AzureAD
    isBuiltIn: Optional[bool] = None


ServiceDetail = Union[ExchangeDetail, SharePointDetail, IntuneDetail]

_DETAIL_TYPES = {
    Service.EXCHANGE: ExchangeDetail,
    Service.SHAREPOINT: SharePointDetail,
    Service.INTUNE: IntuneDetail,
}


# ----- service metadata table -----
# Every per-service switch (badge colour, icon, sub-analysis) reads from here.
# "analysis" names the optional sub-analysis key in core.analysis.

SERVICE_METADATA: Dict[Service, Dict[str, Optional[str]]] = {
    Service.AZURE_AD:       {"label": "Azure AD",        "colour": "#0078d4", "icon": "🔐", "analysis": None},
    Service.SHAREPOINT:     {"label": "SharePoint",      "colour": "#038387", "icon": "📁", "analysis": "sharePointAnalysis"},
    Service.EXCHANGE:       {"label": "Exchange Online", "colour": "#0364b8", "icon": "📧", "analysis": "exchangeAnalysis"},
    Service.TEAMS:          {"label": "Teams",           "colour": "#6264a7", "icon": "💬", "analysis": None},
    Service.PURVIEW:        {"label": "Purview",         "colour": "#8764b8", "icon": "🛡", "analysis": None},
    Service.INTUNE:         {"label": "Intune",          "colour": "#107c10", "icon": "📱", "analysis": "intuneAnalysis"},
    Service.DEFENDER:       {"label": "Defender",        "colour": "#d13438", "icon": "🛡", "analysis": None},
    Service.POWER_PLATFORM: {"label": "Power Platform",  "colour": "#742774", "icon": "⚡", "analysis": None},
}

SERVICE_ORDER: List[Service] = list(SERVICE_METADATA.keys())

# UPN placeholders collectors emit when a principal has no real UPN
PLACEHOLDER_UPNS = {"Unknown", "System Generated"}


def fncServiceMeta(service: Union[Service, str]) -> Dict[str, Optional[str]]:
    return SERVICE_METADATA[Service(service)]


# ----- timestamp helpers -----

def fncParseDateTime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        # Graph returns 7 fractional digits; fromisoformat wants <= 6
        if "." in s:
            head, _, tail = s.partition(".")
            frac = ""
            rest = ""
            for i, ch in enumerate(tail):
                if not ch.isdigit():
                    rest = tail[i:]
                    break
                frac += ch
            s = f"{head}.{frac[:6]}{rest}" if frac else f"{head}{rest}"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _fmt_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class AuditRecord:
    """One role assignment of one principal in one M365 service.

    pimEndDateTime is PIM metadata: on an Eligible or Active (PIM) record
    None means the end date is unknown. Permanent assignments never carry it.
    """

    service: Service
    principalId: str
    roleName: str
    assignmentType: AssignmentType = AssignmentType.ACTIVE
    principalType: PrincipalType = PrincipalType.UNKNOWN
    userPrincipalName: Optional[str] = None
    displayName: Optional[str] = None
    userEnabled: Optional[bool] = None
    lastSignIn: Optional[datetime] = None
    roleDefinitionId: Optional[str] = None
    assignedDateTime: Optional[datetime] = None
    pimEndDateTime: Optional[datetime] = None
    scope: str = "/"
    authenticationType: AuthenticationType = AuthenticationType.CERTIFICATE
    serviceDetail: Optional[ServiceDetail] = None

    def __post_init__(self):
        if not self.service:
            raise ValueError("AuditRecord.service is required")
        if not self.principalId:
            raise ValueError("AuditRecord.principalId is required")
        # Coerce plain strings so callers can pass "Exchange" etc.
        object.__setattr__(self, "service", Service(self.service))
        object.__setattr__(self, "assignmentType", AssignmentType(self.assignmentType))
        object.__setattr__(self, "principalType", PrincipalType(self.principalType))
        object.__setattr__(self, "authenticationType", AuthenticationType(self.authenticationType))
        for name in ("lastSignIn", "assignedDateTime", "pimEndDateTime"):
            object.__setattr__(self, name, fncParseDateTime(getattr(self, name)))
        if self.pimEndDateTime is not None and not self.assignmentType.is_pim:
            raise ValueError(
                f"pimEndDateTime set on a {self.assignmentType.value} assignment; only PIM assignments carry it"
            )
        expected = _DETAIL_TYPES.get(self.service)
        if self.serviceDetail is not None and not isinstance(self.serviceDetail, expected or ()):
            raise ValueError(
                f"{type(self.serviceDetail).__name__} does not belong to service {self.service.value}"
            )

    @property
    def isPim(self) -> bool:
        return self.assignmentType.is_pim

    @property
    def userKey(self) -> Optional[str]:
        """UPN used for per-user grouping; None for placeholders."""
        upn = (self.userPrincipalName or "").strip()
        if not upn or upn in PLACEHOLDER_UPNS:
            return None
        return upn

    def to_dict(self) -> Dict[str, Any]:
        detail = None
        if self.serviceDetail is not None:
            detail = dict(vars(self.serviceDetail))
        return {
            "service": self.service.value,
            "principalId": self.principalId,
            "principalType": self.principalType.value,
            "userPrincipalName": self.userPrincipalName,
            "displayName": self.displayName,
            "userEnabled": self.userEnabled,
            "lastSignIn": _fmt_dt(self.lastSignIn),
            "roleName": self.roleName,
            "roleDefinitionId": self.roleDefinitionId,
            "assignmentType": self.assignmentType.value,
            "assignedDateTime": _fmt_dt(self.assignedDateTime),
            "pimEndDateTime": _fmt_dt(self.pimEndDateTime),
            "scope": self.scope,
            "authenticationType": self.authenticationType.value,
            "serviceDetail": detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRecord":
        if not isinstance(data, dict):
            raise ValueError(f"expected an assignment object, got {type(data).__name__}")
        service = Service(data.get("service"))
        detail_raw = data.get("serviceDetail")
        detail = None
        if isinstance(detail_raw, dict) and service in _DETAIL_TYPES:
            detail_type = _DETAIL_TYPES[service]
            # keys from other exporters are ignored
            known = {f.name for f in fields(detail_type)}
            detail = detail_type(**{k: v for k, v in detail_raw.items() if k in known})
        return cls(
            service=service,
            principalId=data.get("principalId"),
            principalType=data.get("principalType") or PrincipalType.UNKNOWN,
            userPrincipalName=data.get("userPrincipalName"),
            displayName=data.get("displayName"),
            userEnabled=data.get("userEnabled"),
            lastSignIn=fncParseDateTime(data.get("lastSignIn")),
            roleName=data.get("roleName") or "",
            roleDefinitionId=data.get("roleDefinitionId"),
            assignmentType=data.get("assignmentType") or AssignmentType.ACTIVE,
            assignedDateTime=fncParseDateTime(data.get("assignedDateTime")),
            pimEndDateTime=fncParseDateTime(data.get("pimEndDateTime")),
            scope=data.get("scope") if data.get("scope") is not None else "/",
            authenticationType=data.get("authenticationType") or AuthenticationType.CERTIFICATE,
            serviceDetail=detail,
        )


# ================================================================
# Function: fncLoadRecords
# Purpose : Load AuditRecords from a JSON file
# Notes   : Accepts a bare list or a JSON report ({"assignments": [...]})
# ================================================================
def fncLoadRecords(path: str) -> List[AuditRecord]:
    data = fncReadJSON(path, safe=False)
    rows = data.get("assignments", []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise ValueError(f"{path}: expected a list of assignments")
    records = [AuditRecord.from_dict(r) for r in rows]
    fncPrintMessage(f"Loaded {len(records)} audit records from {path}", "info")
    return records
