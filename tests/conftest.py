"""Shared fixtures and helpers for the M365RoleAudit test suite."""

from datetime import datetime, timedelta, timezone
from html.parser import HTMLParser

import pytest

from core.config import AuditPolicy
from core.records import (
    AuditRecord,
    AssignmentType,
    AuthenticationType,
    ExchangeDetail,
    IntuneDetail,
    PrincipalType,
    Service,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_record(**overrides) -> AuditRecord:
    """Enabled user with an Azure AD role and a recent sign-in, unless overridden."""
    fields = {
        "service": Service.AZURE_AD,
        "principalId": "p-1",
        "principalType": PrincipalType.USER,
        "userPrincipalName": "alice@contoso.com",
        "displayName": "Alice",
        "userEnabled": True,
        "lastSignIn": NOW - timedelta(days=2),
        "roleName": "User Administrator",
        "roleDefinitionId": "fe930be7-5e62-47db-91af-98c3a49a38b1",
        "assignmentType": AssignmentType.ACTIVE,
        "scope": "/",
        "authenticationType": AuthenticationType.CERTIFICATE,
    }
    fields.update(overrides)
    return AuditRecord(**fields)


def make_users(count: int, **overrides):
    return [
        make_record(principalId=f"p-{i}", userPrincipalName=f"user{i}@contoso.com",
                    displayName=f"User {i}", **overrides)
        for i in range(count)
    ]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def policy():
    return AuditPolicy()


@pytest.fixture
def mixed_records():
    """Small tenant: PIM, disabled, inactive, service principal, Exchange and Intune rows."""
    return [
        make_record(principalId="u-alice", roleName="Global Administrator"),
        make_record(principalId="u-alice", roleName="Exchange Administrator", service=Service.EXCHANGE,
                    serviceDetail=ExchangeDetail(roleGroup="Organization Management", onPremisesSynced=True)),
        make_record(principalId="u-bob", userPrincipalName="bob@contoso.com", displayName="Bob",
                    roleName="Global Administrator", assignmentType=AssignmentType.ELIGIBLE_PIM,
                    pimEndDateTime=NOW + timedelta(days=10)),
        make_record(principalId="u-carol", userPrincipalName="carol@contoso.com", displayName="Carol",
                    roleName="Security Reader", userEnabled=False),
        make_record(principalId="u-dave", userPrincipalName="dave@contoso.com", displayName="Dave",
                    roleName="Helpdesk Administrator", lastSignIn=NOW - timedelta(days=200)),
        make_record(principalId="sp-1", principalType=PrincipalType.SERVICE_PRINCIPAL,
                    userPrincipalName="System Generated", displayName="Backup App",
                    roleName="Directory Readers", userEnabled=None, lastSignIn=None),
        make_record(principalId="u-erin", userPrincipalName="erin@contoso.com", displayName="Erin",
                    service=Service.INTUNE, roleName="Help Desk Operator", scope="/scopeTags/1",
                    serviceDetail=IntuneDetail(roleSource="IntuneRBAC", isBuiltIn=True)),
    ]


class ReportDOM(HTMLParser):
    """Collects table rows (owning table id, classes, text) and status tags."""

    def __init__(self, html: str):
        super().__init__()
        self.rows = []
        self.status_tags = []
        self.table_ids = []
        self._tables = []
        self._open_rows = []
        self._in_status = False
        self.feed(html)

    def handle_starttag(self, tag, attrs):
        attrs = dict(attrs)
        classes = (attrs.get("class") or "").split()
        if tag == "table":
            self._tables.append(attrs.get("id"))
            if attrs.get("id"):
                self.table_ids.append(attrs["id"])
        elif tag == "tr":
            owner = next((t for t in reversed(self._tables) if t), None)
            self._open_rows.append({"table": owner, "classes": classes, "text": ""})
        elif tag == "span" and "status-tag" in classes:
            self._in_status = True
            self.status_tags.append("")

    def handle_endtag(self, tag):
        if tag == "table" and self._tables:
            self._tables.pop()
        elif tag == "tr" and self._open_rows:
            self.rows.append(self._open_rows.pop())
        elif tag == "span" and self._in_status:
            self._in_status = False

    def handle_data(self, data):
        for row in self._open_rows:
            row["text"] += data
        if self._in_status:
            self.status_tags[-1] += data.strip()

    def rows_in(self, table_id: str, css_class: str):
        return [r for r in self.rows if r["table"] == table_id and css_class in r["classes"]]


@pytest.fixture
def parse_html():
    return ReportDOM
