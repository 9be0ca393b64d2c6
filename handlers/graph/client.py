# ================================================================
# File     : client.py
# Purpose  : Microsoft Graph API read-only client for M365 role data
# Notes    : App-only auth: certificate (preferred) or client secret.
#            - GET/POST + pagination + retries. No destructive ops.
#            - One token refresh on 401; bounded 429 back-off
#            - Token renewed when it has under 5 minutes left
# ================================================================

import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import msal
import requests

from core.records import AuthenticationType
from core.utils import fncPrintMessage, fncRetry, fncMask

GRAPH_ROOT = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
DEFAULT_AUTHORITY = "https://login.microsoftonline.com"
TOKEN_SKEW = 300  # seconds
MAX_THROTTLE_RETRIES = 5
DEFAULT_RETRY_AFTER = 5


class GraphError(Exception):
    """Graph or token endpoint returned an error."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


def _retry_after(value: Optional[str]) -> int:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return DEFAULT_RETRY_AFTER
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


class GraphClient:
    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        certificate: Optional[Dict[str, str]] = None,
        client_secret: Optional[str] = None,
        authority: str = DEFAULT_AUTHORITY,
        timeout: int = 60,
    ):
        if not tenant_id or not client_id:
            raise GraphError("Tenant ID and client ID are required (config file or M365AUDIT_* env vars)")
        if not certificate and not client_secret:
            raise GraphError("No credential: create a certificate (--cert new) or set a client secret")

        self.tenant_id = tenant_id
        self.client_id = client_id
        self.timeout = timeout

        # Certificate wins when both are configured
        if certificate:
            credential: Any = {"private_key": certificate["private_key"], "thumbprint": certificate["thumbprint"]}
            self.authentication_type = AuthenticationType.CERTIFICATE
            fncPrintMessage(f"Using certificate credential (thumbprint {fncMask(certificate['thumbprint'])})", "debug")
        else:
            credential = client_secret
            self.authentication_type = AuthenticationType.CLIENT_SECRET
            fncPrintMessage("Using client secret credential; certificates are recommended.", "warn")

        self.authority = f"{authority.rstrip('/')}/{tenant_id}"
        fncPrintMessage(f"Connecting to Microsoft Graph for tenant {tenant_id}...", "info")
        self.app = msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=credential,
            authority=self.authority,
        )

        self.token = ""
        self.expires_at = 0.0
        self._renew_token()
        fncPrintMessage("Graph client ready (read-only).", "success")

    # ---------- Token ----------

    def _renew_token(self) -> None:
        """Client-credentials token from MSAL (its cache first); raises GraphError with the AADSTS text."""
        result = self.app.acquire_token_silent(GRAPH_SCOPE, account=None) \
            or self.app.acquire_token_for_client(scopes=GRAPH_SCOPE)
        if "access_token" not in result:
            desc = result.get("error_description") or result.get("error") or "Unknown error"
            fncPrintMessage(f"Token request failed: {desc}", "error")
            raise GraphError(f"Failed to acquire access token: {desc}", code=result.get("error"))

        self.token = result["access_token"]
        try:
            self.expires_at = float(result.get("expires_on") or 0)
        except (TypeError, ValueError):
            self.expires_at = 0.0
        if not self.expires_at:
            self.expires_at = time.time() + float(result.get("expires_in", 3600))
        fncPrintMessage("Access token acquired.", "debug")

    def _headers(self) -> Dict[str, str]:
        if time.time() >= self.expires_at - TOKEN_SKEW:
            fncPrintMessage("Access token close to expiry, renewing.", "debug")
            self._renew_token()
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "ConsistencyLevel": "eventual",
        }

    # ---------- HTTP handling ----------

    @staticmethod
    def _error_detail(response: requests.Response) -> Dict[str, str]:
        try:
            body = response.json()
        except ValueError:
            return {"code": "", "message": response.text}
        err = body.get("error") or {}
        if isinstance(err, str):
            return {"code": err, "message": body.get("error_description", "")}
        return {"code": err.get("code") or "", "message": err.get("message") or ""}

    def _send(self, method: str, url: str, params=None, json_body=None) -> requests.Response:
        return requests.request(method, url, headers=self._headers(), params=params,
                                json=json_body, timeout=self.timeout)

    def _request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
                 json_body: Optional[Dict[str, Any]] = None, _retried: bool = False,
                 _throttled: int = 0) -> Dict[str, Any]:
        response = self._send(method, url, params, json_body)
        status = response.status_code

        if status in (200, 201):
            return response.json()
        if status == 204:
            return {}

        if status == 429 and _throttled < MAX_THROTTLE_RETRIES:
            wait = _retry_after(response.headers.get("Retry-After"))
            fncPrintMessage(f"Throttled by Graph, waiting {wait}s before retrying...", "warn")
            time.sleep(wait)
            return self._request(method, url, params, json_body, _retried=_retried, _throttled=_throttled + 1)

        detail = self._error_detail(response)

        if status == 401 and not _retried:
            if "InvalidAuthenticationToken" in detail["code"] or "expired" in detail["message"].lower():
                fncPrintMessage("Graph rejected the token as expired, renewing once.", "warn")
                self._renew_token()
                return self._request(method, url, params, json_body, _retried=True, _throttled=_throttled)

        fncPrintMessage(f"Graph API Error [{status}] {detail['code']}: {detail['message']}", "debug")
        raise GraphError(
            f"Graph API request failed with status {status}: {detail['code']} {detail['message']}".strip(),
            status=status,
            code=detail["code"],
        )

    def _call(self, method: str, url: str, params=None, json_body=None) -> Dict[str, Any]:
        # network errors are retried; Graph errors are not
        return fncRetry(lambda: self._request(method, url, params=params, json_body=json_body),
                        exceptions=(requests.RequestException,))

    @staticmethod
    def _url(endpoint: str) -> str:
        if endpoint.startswith("https://"):
            return endpoint
        return f"{GRAPH_ROOT}/{endpoint.strip().lstrip('/')}"

    # ---------- Public API ----------

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Single-page GET. Use get_all for collections."""
        url = self._url(endpoint)
        fncPrintMessage(f"GET {url}", "debug")
        return self._call("GET", url, params=params)

    def post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST for read-style actions only (e.g. directoryObjects/getByIds)."""
        url = self._url(endpoint)
        fncPrintMessage(f"POST {url}", "debug")
        return self._call("POST", url, json_body=body)

    def get_all(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Every item of a collection, following @odata.nextLink.
        A non-collection response comes back as a one-item list.
        """
        url: Optional[str] = self._url(endpoint)
        items: List[Dict[str, Any]] = []
        page_no = 0
        while url:
            page_no += 1
            fncPrintMessage(f"GET page {page_no}: {url}", "debug")
            page = self._call("GET", url, params=params if page_no == 1 else None)
            if page_no == 1 and isinstance(page, dict) and "value" not in page:
                return [page]
            items.extend(page.get("value", []))
            url = page.get("@odata.nextLink")
        return items
