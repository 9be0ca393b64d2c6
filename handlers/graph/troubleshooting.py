# ================================================================
# File     : handlers/graph/troubleshooting.py
# Purpose  : Connection test + remediation hints for auth/Graph errors
# Notes    : Probes the endpoints the collectors depend on and maps
#            AADSTS / Graph error codes to what to fix in the tenant
# ================================================================

import re
from typing import Any, Dict, List, Optional

from core.utils import fncPrintMessage, fncToTable

# Endpoint probes: (label, endpoint, permission it needs, required?)
CONNECTION_PROBES = [
    ("Organization", "organization?$select=id,displayName", "Directory.Read.All", True),
    ("Directory roles", "roleManagement/directory/roleDefinitions?$top=1&$select=id", "RoleManagement.Read.Directory", True),
    ("PIM eligibility", "roleManagement/directory/roleEligibilityScheduleInstances?$top=1",
     "RoleManagement.Read.Directory (Entra ID P2)", False),
    ("Intune roles", "deviceManagement/roleDefinitions?$top=1&$select=id", "DeviceManagementRBAC.Read.All", False),
]

ERROR_HINTS = {
    "AADSTS700027": "Certificate not registered on the app. Upload the .cer from --cert show to "
                    "App registrations > Certificates & secrets, and check the thumbprint matches.",
    "AADSTS7000215": "Invalid client secret. The secret value (not the secret ID) must be configured; "
                     "check it has not expired.",
    "AADSTS700016": "Application not found in the tenant. Check client_id and tenant_id, and that "
                    "the app is registered (or consented) in this tenant.",
    "AADSTS90002": "Tenant not found. Check tenant_id is the directory (tenant) GUID or a verified domain.",
    "AADSTS700024": "Client assertion is outside its validity window. Check the system clock and the "
                    "certificate validity dates (--cert test).",
    "AADSTS7000222": "The client secret has expired. Create a new secret or switch to a certificate (--cert new).",
    "Authorization_RequestDenied": "Missing Graph application permission. Grant the permissions listed "
                                   "below and click 'Grant admin consent'.",
    "403": "Forbidden. The app lacks an application permission or admin consent for this endpoint.",
}

REQUIRED_PERMISSIONS = [
    "Directory.Read.All",
    "RoleManagement.Read.Directory",
    "AuditLog.Read.All (optional: last sign-in)",
    "DeviceManagementRBAC.Read.All (optional: Intune RBAC)",
]


# ================================================================
# Function: fncDiagnoseError
# Purpose : Map an error message/code to remediation hints
# Notes   : Returns a list; empty when nothing is recognised
# ================================================================
def fncDiagnoseError(message: Any) -> List[str]:
    text = str(message or "")
    hints = [hint for code, hint in ERROR_HINTS.items() if re.search(rf"\b{code}\b", text)]
    if "Forbidden" in text and ERROR_HINTS["403"] not in hints:
        hints.append(ERROR_HINTS["403"])
    return hints


# ================================================================
# Function: fncTestConnection
# Purpose : Probe each Graph endpoint the collectors use
# Notes   : Required probe failures make the overall result False
# ================================================================
def fncTestConnection(client) -> Dict[str, Any]:
    results = []
    ok = True
    for label, endpoint, permission, required in CONNECTION_PROBES:
        try:
            client.get(endpoint)
            results.append({"check": label, "status": "OK", "permission": permission, "detail": ""})
        except Exception as ex:
            status = "FAIL" if required else "WARN"
            ok = ok and not required
            hints = fncDiagnoseError(ex)
            results.append({"check": label, "status": status, "permission": permission,
                            "detail": hints[0] if hints else str(ex)[:120]})

    print(fncToTable(results))
    if ok:
        fncPrintMessage("Connection test passed.", "success")
    else:
        fncPrintMessage("Connection test failed; run with --troubleshoot for guidance.", "error")
    return {"ok": ok, "checks": results}


# ================================================================
# Function: fncShowTroubleshooting
# Purpose : Print setup checklist, plus hints for a specific error
# ================================================================
def fncShowTroubleshooting(error: Optional[Any] = None) -> List[str]:
    hints = fncDiagnoseError(error) if error else []
    if error:
        fncPrintMessage(f"Error: {error}", "error")
        if hints:
            for h in hints:
                fncPrintMessage(h, "warn")
        else:
            fncPrintMessage("No known remediation for this error; rerun with --debug for details.", "info")

    fncPrintMessage("Setup checklist:", "info")
    print(fncToTable([
        {"step": 1, "check": "App registration exists; tenant_id and client_id set in config.json or M365AUDIT_* env"},
        {"step": 2, "check": "Certificate created (--cert new) and .cer uploaded to the app"},
        {"step": 3, "check": "certificate_thumbprint in config matches --cert show"},
        {"step": 4, "check": "Application permissions granted with admin consent"},
        {"step": 5, "check": "Entra ID P2 licence for PIM data"},
    ]))
    fncPrintMessage("Required application permissions: " + ", ".join(REQUIRED_PERMISSIONS), "info")
    return hints
