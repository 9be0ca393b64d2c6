"""End-to-end tests for the command-line entry point (M365RoleAudit.py)."""

import json

import pytest

import core.config
import M365RoleAudit

from conftest import make_record
from core.records import ExchangeDetail, Service


@pytest.fixture(autouse=True)
def app_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setattr(core.config, "APP_HOME", home)
    for name in ("M365AUDIT_TENANT_ID", "M365AUDIT_CLIENT_ID", "M365AUDIT_CERT_PATH",
                 "M365AUDIT_CERT_THUMBPRINT", "M365AUDIT_CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def records_file(tmp_path):
    path = tmp_path / "records.json"
    rows = [
        make_record().to_dict(),
        make_record(principalId="p-2", userPrincipalName="bob@contoso.com", userEnabled=False).to_dict(),
        make_record(service=Service.EXCHANGE, roleName="Organization Management",
                    serviceDetail=ExchangeDetail(onPremisesSynced=True)).to_dict(),
    ]
    path.write_text(json.dumps(rows), encoding="utf-8")
    return path


class TestInputMode:

    def test_renders_requested_formats(self, tmp_path, records_file):
        out = tmp_path / "reports"
        code = M365RoleAudit.main(["--input", str(records_file), "--export", "json,csv", "xlsx",
                                   "--output", str(out), "--org-name", "Contoso"])
        assert code == 0
        names = sorted(p.name for p in out.iterdir())
        assert [n.rsplit(".", 1)[1] for n in names] == ["csv", "json", "xlsx"]
        assert all(n.startswith("M365RoleAudit_Contoso_") for n in names)

    def test_default_format_is_html(self, tmp_path, records_file):
        out = tmp_path / "reports"
        assert M365RoleAudit.main(["--input", str(records_file), "--output", str(out)]) == 0
        assert [p.suffix for p in out.iterdir()] == [".html"]

    def test_service_report(self, tmp_path, records_file):
        out = tmp_path / "reports"
        code = M365RoleAudit.main(["--input", str(records_file), "--service", "Exchange",
                                   "--export", "json", "--output", str(out)])
        assert code == 0
        (report,) = list(out.iterdir())
        doc = json.loads(report.read_text(encoding="utf-8"))
        assert report.name.startswith("M365RoleAudit_Exchange_")
        assert len(doc["assignments"]) == 1
        assert "exchangeAnalysis" in doc["analysis"]["serviceAnalysis"]["Exchange"]

    def test_missing_input_file(self, tmp_path):
        assert M365RoleAudit.main(["--input", str(tmp_path / "nope.json")]) == 1

    def test_extra_detail_keys_are_accepted(self, tmp_path):
        row = make_record(service=Service.EXCHANGE, roleName="Organization Management").to_dict()
        row["serviceDetail"] = {"roleGroup": "OM", "isHybrid": True}
        path = tmp_path / "foreign.json"
        path.write_text(json.dumps([row]), encoding="utf-8")
        out = tmp_path / "reports"
        assert M365RoleAudit.main(["--input", str(path), "--export", "json", "--output", str(out)]) == 0

    def test_malformed_rows_exit_cleanly(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps([["Exchange", "p-1"]]), encoding="utf-8")
        assert M365RoleAudit.main(["--input", str(path)]) == 1

    def test_empty_input_file(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text("[]")
        out = tmp_path / "reports"
        assert M365RoleAudit.main(["--input", str(path), "--output", str(out)]) == 1
        assert not out.exists() or list(out.iterdir()) == []


class TestOtherModes:

    def test_certificate_commands(self, app_home):
        assert M365RoleAudit.main(["--cert", "show"]) == 1
        assert M365RoleAudit.main(["--cert", "new"]) == 0

        saved = json.loads((app_home / "config.json").read_text(encoding="utf-8"))
        assert len(saved["m365"]["certificate_thumbprint"]) == 40

        assert M365RoleAudit.main(["--cert", "show"]) == 0
        assert M365RoleAudit.main(["--cert", "test"]) == 0
        assert M365RoleAudit.main(["--cert", "new"]) == 1
        assert M365RoleAudit.main(["--cert", "remove"]) == 0
        assert not (app_home / "certs" / "m365roleaudit.pem").exists()

    def test_troubleshoot(self):
        assert M365RoleAudit.main(["--troubleshoot"]) == 0

    def test_collection_without_credentials(self):
        assert M365RoleAudit.main(["--run-all"]) == 1

    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            M365RoleAudit.fncParseArguments(["--run-all", "--troubleshoot"])
