# ================================================================
# File     : handlers/graph/graph_helpers.py
# Purpose  : Safer Graph helpers shared by the collectors
# Notes    : $select fallback for properties a tenant cannot return,
#            and principal hydration (users, groups, service principals)
# ================================================================

import re
from typing import Any, Dict, Iterable, List, Tuple

from core.records import PrincipalType, fncParseDateTime
from core.utils import fncPrintMessage

OR_LIMIT = 15          # Graph limit for OR'd / in() filter values
GET_BY_IDS_LIMIT = 1000

USER_FIELDS = [
    "id", "displayName", "userPrincipalName", "accountEnabled",
    "onPremisesSyncEnabled", "signInActivity",
]

_TYPE_MAP = {
    "#microsoft.graph.user": PrincipalType.USER,
    "#microsoft.graph.group": PrincipalType.GROUP,
    "#microsoft.graph.serviceprincipal": PrincipalType.SERVICE_PRINCIPAL,
}


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def safe_select_get_all(client, base_endpoint: str, fields: List[str]) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Calls client.get_all with a $select list. If Graph returns 400 with
    "Could not find a property named 'X'", we warn, drop X, retry, and set
    X = None on every returned row.
    Returns: (items, missing_fields)
    """
    sep = "&" if "?" in base_endpoint else "?"
    endpoint = f"{base_endpoint}{sep}$select={','.join(fields)}" if fields else base_endpoint
    try:
        items = client.get_all(endpoint)
        for it in items:
            for f in fields:
                it.setdefault(f, None)
        return items, []
    except Exception as ex:
        m = re.search(r"Could not find a property named '([^']+)'", str(ex))
        if not m or m.group(1) not in fields:
            raise

        missing = m.group(1)
        fncPrintMessage(f"Property not found: '{missing}' - retrying without it.", "warn")
        items, more_missing = safe_select_get_all(client, base_endpoint, [f for f in fields if f != missing])
        for it in items:
            it[missing] = None
        return items, [missing] + more_missing


def _get_by_ids(client, ids: List[str]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for chunk in _chunks(ids, GET_BY_IDS_LIMIT):
        data = client.post("directoryObjects/getByIds",
                           {"ids": chunk, "types": ["user", "group", "servicePrincipal"]})
        out.extend(data.get("value", []) if isinstance(data, dict) else [])
    return out


def _user_details(client, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    """accountEnabled + signInActivity need a users query; getByIds omits them."""
    wanted = set(user_ids)
    out: Dict[str, Dict[str, Any]] = {}
    for chunk in _chunks(user_ids, OR_LIMIT):
        id_list = ",".join(f"'{i}'" for i in chunk)
        try:
            rows, missing = safe_select_get_all(client, f"users?$filter=id in ({id_list})", USER_FIELDS)
        except Exception as ex:
            fncPrintMessage(f"User detail fetch failed (sign-in data needs AuditLog.Read.All): {ex}", "warn")
            continue
        if "signInActivity" in missing:
            fncPrintMessage("Sign-in activity unavailable; inactivity checks will be skipped.", "debug")
        for r in rows:
            if r.get("id") in wanted:
                out[r["id"]] = r
    return out


# ================================================================
# Function: fncHydratePrincipals
# Purpose : Resolve principal ids to type, names and account state
# Notes   : Unresolvable ids (deleted objects) come back as Unknown
# ================================================================
def fncHydratePrincipals(client, principal_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    ids = list(dict.fromkeys(i for i in principal_ids if i))
    if not ids:
        return {}

    try:
        objects = _get_by_ids(client, ids)
    except Exception as ex:
        fncPrintMessage(f"directoryObjects/getByIds failed: {ex}", "warn")
        objects = []

    out: Dict[str, Dict[str, Any]] = {}
    for o in objects:
        if not isinstance(o, dict) or "id" not in o:
            continue
        ptype = _TYPE_MAP.get(str(o.get("@odata.type", "")).lower(), PrincipalType.UNKNOWN)
        out[o["id"]] = {
            "type": ptype,
            "displayName": o.get("displayName"),
            "userPrincipalName": o.get("userPrincipalName"),
            "accountEnabled": o.get("accountEnabled"),
            "lastSignIn": None,
            "onPremisesSynced": o.get("onPremisesSyncEnabled"),
        }

    user_ids = [k for k, v in out.items() if v["type"] is PrincipalType.USER]
    for uid, u in _user_details(client, user_ids).items():
        info = out.get(uid)
        if info is None:
            continue
        info["accountEnabled"] = u.get("accountEnabled", info["accountEnabled"])
        info["onPremisesSynced"] = u.get("onPremisesSyncEnabled", info["onPremisesSynced"])
        activity = u.get("signInActivity") or {}
        info["lastSignIn"] = fncParseDateTime(activity.get("lastSignInDateTime"))

    for pid in ids:
        out.setdefault(pid, {
            "type": PrincipalType.UNKNOWN,
            "displayName": pid,
            "userPrincipalName": "Unknown",
            "accountEnabled": None,
            "lastSignIn": None,
            "onPremisesSynced": None,
        })
    return out
