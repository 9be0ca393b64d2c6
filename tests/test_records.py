"""Tests for the AuditRecord model and service metadata table (core/records.py)."""

import json
from datetime import datetime, timezone

import pytest

from core.records import (
    AuditRecord,
    AssignmentType,
    ExchangeDetail,
    IntuneDetail,
    PrincipalType,
    SERVICE_METADATA,
    Service,
    fncLoadRecords,
    fncParseDateTime,
    fncServiceMeta,
)

from conftest import make_record


class TestAuditRecordConstruction:
    """Required fields, enum coercion and detail tagging."""

    def test_missing_principal_id_raises(self):
        with pytest.raises(ValueError, match="principalId"):
            make_record(principalId="")

    def test_missing_service_raises(self):
        with pytest.raises(ValueError, match="service"):
            make_record(service=None)

    def test_unknown_assignment_type_raises(self):
        with pytest.raises(ValueError):
            make_record(assignmentType="Permanent-ish")

    def test_plain_strings_are_coerced_to_enums(self):
        r = make_record(service="Exchange", assignmentType="Eligible (PIM)", principalType="Group")
        assert r.service is Service.EXCHANGE
        assert r.assignmentType is AssignmentType.ELIGIBLE_PIM
        assert r.principalType is PrincipalType.GROUP
        assert r.isPim is True

    def test_records_are_frozen(self):
        r = make_record()
        with pytest.raises(Exception):
            r.roleName = "Global Administrator"

    def test_detail_must_match_service(self):
        with pytest.raises(ValueError, match="does not belong"):
            make_record(service=Service.AZURE_AD, serviceDetail=ExchangeDetail(roleGroup="x"))

    def test_detail_for_matching_service_is_kept(self):
        r = make_record(service=Service.INTUNE, serviceDetail=IntuneDetail(roleSource="AzureAD"))
        assert r.serviceDetail.roleSource == "AzureAD"

    def test_pim_record_without_end_date_means_unknown(self):
        r = make_record(assignmentType=AssignmentType.ELIGIBLE_PIM, pimEndDateTime=None)
        assert r.isPim is True
        assert r.pimEndDateTime is None

    def test_permanent_assignment_cannot_carry_pim_end_date(self):
        with pytest.raises(ValueError, match="only PIM assignments"):
            make_record(assignmentType=AssignmentType.ACTIVE, pimEndDateTime="2026-04-01T00:00:00Z")

    def test_placeholder_upns_have_no_user_key(self):
        assert make_record(userPrincipalName="System Generated").userKey is None
        assert make_record(userPrincipalName="Unknown").userKey is None
        assert make_record(userPrincipalName=None).userKey is None
        assert make_record(userPrincipalName="alice@contoso.com").userKey == "alice@contoso.com"


class TestDateParsing:
    """Graph timestamps (Z suffix, 7 fractional digits) parse to aware datetimes."""

    def test_graph_seven_digit_fraction(self):
        dt = fncParseDateTime("2025-11-03T08:15:30.1234567Z")
        assert dt == datetime(2025, 11, 3, 8, 15, 30, 123456, tzinfo=timezone.utc)

    def test_naive_value_becomes_utc(self):
        assert fncParseDateTime("2025-01-01T00:00:00").tzinfo is timezone.utc

    def test_empty_values(self):
        assert fncParseDateTime(None) is None
        assert fncParseDateTime("") is None

    def test_record_normalises_string_timestamps(self):
        r = make_record(lastSignIn="2025-06-01T10:00:00Z")
        assert r.lastSignIn == datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)


class TestJSONShape:
    """to_dict/from_dict use the camelCase JSON shape."""

    def test_to_dict_keys_and_values(self):
        d = make_record(service=Service.EXCHANGE,
                        serviceDetail=ExchangeDetail(roleGroup="Recipient Management")).to_dict()
        assert d["service"] == "Exchange"
        assert d["assignmentType"] == "Active"
        assert d["serviceDetail"]["roleGroup"] == "Recipient Management"
        assert d["lastSignIn"].endswith("+00:00")

    def test_from_dict_restores_record(self):
        original = make_record(assignmentType=AssignmentType.ACTIVE_PIM,
                               pimEndDateTime="2026-04-01T00:00:00Z")
        assert AuditRecord.from_dict(original.to_dict()) == original

    def test_from_dict_rejects_unknown_service(self):
        with pytest.raises(ValueError):
            AuditRecord.from_dict({"service": "Yammer", "principalId": "x", "roleName": "r"})

    def test_from_dict_ignores_unknown_detail_keys(self):
        row = make_record(service=Service.EXCHANGE, roleName="Organization Management").to_dict()
        row["serviceDetail"] = {"roleGroup": "OM", "isHybrid": True}
        record = AuditRecord.from_dict(row)
        assert record.serviceDetail == ExchangeDetail(roleGroup="OM")

    def test_from_dict_rejects_non_object_rows(self):
        with pytest.raises(ValueError, match="assignment object"):
            AuditRecord.from_dict(["Exchange", "p-1"])

    def test_load_records_accepts_report_shape(self, tmp_path):
        path = tmp_path / "report.json"
        path.write_text(json.dumps({"assignments": [make_record().to_dict(), make_record(principalId="p-2").to_dict()]}))
        records = fncLoadRecords(str(path))
        assert [r.principalId for r in records] == ["p-1", "p-2"]

    def test_load_records_accepts_bare_list(self, tmp_path):
        path = tmp_path / "records.json"
        path.write_text(json.dumps([make_record().to_dict()]))
        assert len(fncLoadRecords(str(path))) == 1


class TestServiceMetadata:
    """One metadata table drives badges and sub-analysis dispatch."""

    def test_every_service_has_metadata(self):
        for service in Service:
            meta = SERVICE_METADATA[service]
            assert meta["colour"].startswith("#")
            assert meta["label"]

    def test_lookup_by_name(self):
        assert fncServiceMeta("Intune")["analysis"] == "intuneAnalysis"
        assert fncServiceMeta(Service.AZURE_AD)["analysis"] is None
