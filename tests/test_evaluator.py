"""Tests for the security/compliance evaluator (core/evaluator.py)."""

from datetime import timedelta

from core.config import AuditPolicy
from core.evaluator import HORIZONS, SEVERITIES, fncAlertCount, fncAlertRows, fncEvaluate
from core.records import AssignmentType, AuthenticationType, Service
from core.statistics import fncComputeStatistics

from conftest import NOW, make_record, make_users


def evaluate(records, policy=None):
    policy = policy or AuditPolicy()
    return fncEvaluate(records, fncComputeStatistics(records, policy=policy, now=NOW), policy)


def messages(result, severity):
    return result["alerts"][severity]


def has_ga_alert(result):
    return any("Global Administrator" in m for sev in ("critical", "high") for m in messages(result, sev))


class TestShape:

    def test_all_buckets_present_even_when_empty(self):
        result = evaluate([make_record(assignmentType=AssignmentType.ELIGIBLE_PIM)])
        assert set(result["alerts"]) == set(SEVERITIES)
        assert set(result["recommendations"]) == set(HORIZONS)
        assert fncAlertCount(result) == 0
        assert fncAlertRows(result) == []


class TestGlobalAdminRule:
    """More than maxGlobalAdmins Global Administrators raises high, double raises critical."""

    def test_six_global_admins_alert(self):
        result = evaluate(make_users(6, roleName="Global Administrator"))
        assert has_ga_alert(result)
        assert any("Global Administrator" in m for m in messages(result, "high"))

    def test_five_global_admins_no_alert(self):
        assert not has_ga_alert(evaluate(make_users(5, roleName="Global Administrator")))

    def test_double_threshold_is_critical(self):
        result = evaluate(make_users(10, roleName="Global Administrator"))
        assert any("Global Administrator" in m for m in messages(result, "critical"))
        assert not any("Global Administrator" in m for m in messages(result, "high"))

    def test_threshold_from_policy(self):
        records = make_users(3, roleName="Global Administrator")
        assert not has_ga_alert(evaluate(records))
        assert has_ga_alert(evaluate(records, AuditPolicy(maxGlobalAdmins=2)))


class TestOtherRules:

    def test_disabled_user_is_high(self):
        result = evaluate([make_record(userEnabled=False, assignmentType=AssignmentType.ELIGIBLE_PIM)])
        assert any("disabled" in m for m in messages(result, "high"))
        assert result["recommendations"]["immediate"]

    def test_no_pim_is_medium(self):
        result = evaluate([make_record()])
        assert any("PIM" in m for m in messages(result, "medium"))

    def test_client_secret_is_medium(self):
        result = evaluate([make_record(authenticationType=AuthenticationType.CLIENT_SECRET,
                                       assignmentType=AssignmentType.ELIGIBLE_PIM)])
        assert any("client secret" in m for m in messages(result, "medium"))

    def test_role_sprawl_is_medium(self):
        records = [make_record(roleName=f"Role {i}", assignmentType=AssignmentType.ELIGIBLE_PIM) for i in range(6)]
        result = evaluate(records)
        assert any("more than 5 role" in m for m in messages(result, "medium"))

    def test_inactive_user_is_medium(self):
        result = evaluate([make_record(lastSignIn=NOW - timedelta(days=120),
                                       assignmentType=AssignmentType.ELIGIBLE_PIM)])
        assert any("have not signed in" in m for m in messages(result, "medium"))

    def test_intune_service_admins(self):
        records = make_users(4, service=Service.INTUNE, roleName="Intune Administrator",
                             assignmentType=AssignmentType.ELIGIBLE_PIM)
        result = evaluate(records)
        assert any("Intune service administrators" in m for m in messages(result, "medium"))
        assert not any("Intune" in m for m in messages(evaluate(records[:3]), "medium"))

    def test_org_wide_ratio_is_low(self):
        records = make_users(21, scope="/", assignmentType=AssignmentType.ELIGIBLE_PIM)
        result = evaluate(records)
        assert any("organisation-wide" in m for m in messages(result, "low"))
        assert messages(evaluate(records[:20]), "low") == []

    def test_rules_fire_independently(self):
        records = make_users(6, roleName="Global Administrator", userEnabled=False)
        result = evaluate(records)
        high = messages(result, "high")
        assert any("Global Administrator" in m for m in high)
        assert any("disabled" in m for m in high)
        assert any("PIM" in m for m in messages(result, "medium"))

    def test_alert_rows_are_ordered_by_severity(self):
        records = make_users(10, roleName="Global Administrator", userEnabled=False)
        rows = fncAlertRows(evaluate(records))
        assert rows[0]["severity"] == "Critical"
        assert [r["severity"] for r in rows] == sorted(
            (r["severity"] for r in rows), key=lambda s: SEVERITIES.index(s.lower()))
