"""Tests for the service, principal, cross-service and PIM analysers (core/analysis.py)."""

from datetime import timedelta

from core.analysis import (
    fncAnalyzeByPrincipal,
    fncAnalyzeByService,
    fncAnalyzeCrossService,
    fncAnalyzePIM,
    fncBuildAnalysis,
)
from core.config import AuditPolicy
from core.records import AssignmentType, IntuneDetail, Service, SharePointDetail

from conftest import NOW, make_record


class TestServiceAnalysis:
    """Per-service totals and flag-gated sub-analysis."""

    def test_totals_and_top_role(self, mixed_records):
        out = fncAnalyzeByService(mixed_records)
        assert list(out) == ["AzureAD", "Exchange", "Intune"]
        assert out["AzureAD"]["totalAssignments"] == 5
        assert out["AzureAD"]["uniqueUsers"] == 4
        assert out["AzureAD"]["topRole"] == "Global Administrator"

    def test_sub_analysis_omitted_without_flag(self, mixed_records):
        out = fncAnalyzeByService(mixed_records)
        assert "exchangeAnalysis" not in out["Exchange"]
        assert "intuneAnalysis" not in out["Intune"]

    def test_exchange_hybrid_flag(self, mixed_records):
        out = fncAnalyzeByService(mixed_records, include_exchange_hybrid=True)
        exchange = out["Exchange"]["exchangeAnalysis"]
        assert exchange["hybridDetected"] is True
        assert exchange["hybridSyncedPrincipals"] == 1
        assert exchange["roleGroups"] == {"Organization Management": 1}
        assert "intuneAnalysis" not in out["Intune"]

    def test_intune_rbac_ratio(self):
        records = [
            make_record(service=Service.INTUNE, principalId="a", roleName="Help Desk Operator",
                        serviceDetail=IntuneDetail(roleSource="IntuneRBAC")),
            make_record(service=Service.INTUNE, principalId="b", userPrincipalName="b@contoso.com",
                        roleName="Intune Administrator", serviceDetail=IntuneDetail(roleSource="AzureAD")),
        ]
        intune = fncAnalyzeByService(records, include_intune_rbac=True)["Intune"]["intuneAnalysis"]
        assert intune["intuneRbacAssignments"] == 1
        assert intune["azureAdAssignments"] == 1
        assert intune["rbacRatio"] == 0.5
        assert intune["serviceAdmins"] == 1
        assert intune["exceedsServiceAdminLimit"] is False

    def test_sharepoint_sites(self):
        records = [
            make_record(service=Service.SHAREPOINT, principalId="a", roleName="Site Owner",
                        serviceDetail=SharePointDetail(siteUrl="https://contoso.sharepoint.com/sites/hr",
                                                       siteTitle="HR", storageUsedMb=2048.5)),
            make_record(service=Service.SHAREPOINT, principalId="b", roleName="Site Owner",
                        userPrincipalName="b@contoso.com",
                        serviceDetail=SharePointDetail(siteUrl="https://contoso.sharepoint.com/sites/hr")),
        ]
        sp = fncAnalyzeByService(records, include_sharepoint_sites=True)["SharePoint"]["sharePointAnalysis"]
        assert sp["sites"] == 1
        assert sp["totalStorageMb"] == 2048.5
        assert sp["largestSites"][0]["siteTitle"] == "HR"


class TestPrincipalAnalysis:

    def test_counts_by_type(self, mixed_records):
        out = fncAnalyzeByPrincipal(mixed_records)
        assert out["User"] == {"assignments": 6, "uniquePrincipals": 5}
        assert out["ServicePrincipal"] == {"assignments": 1, "uniquePrincipals": 1}
        assert "Group" not in out


class TestCrossService:
    """Users holding roles in more than one service."""

    def test_multi_service_user(self, mixed_records):
        out = fncAnalyzeCrossService(mixed_records)
        assert out["usersWithMultipleServices"] == 1
        assert out["userServices"] == {"alice@contoso.com": ["AzureAD", "Exchange"]}
        assert out["combinations"] == {"AzureAD+Exchange": 1}

    def test_three_services_give_pairwise_counts(self):
        records = [make_record(service=s, roleName="r") for s in (Service.INTUNE, Service.AZURE_AD, Service.EXCHANGE)]
        combos = fncAnalyzeCrossService(records)["combinations"]
        assert combos == {"AzureAD+Exchange": 1, "AzureAD+Intune": 1, "Exchange+Intune": 1}


class TestPIMAnalysis:

    def test_single_eligible_record(self):
        out = fncAnalyzePIM([make_record(assignmentType=AssignmentType.ELIGIBLE_PIM)], now=NOW)
        assert out["enabled"] is True
        assert out["totalActive"] == 0
        assert out["totalEligible"] == 1
        assert out["noEndDate"] == 1

    def test_no_pim_records(self):
        out = fncAnalyzePIM([make_record()], now=NOW)
        assert out["enabled"] is False
        assert out["permanentAssignments"] == 1

    def test_expiring_soon(self):
        records = [
            make_record(assignmentType=AssignmentType.ELIGIBLE_PIM, pimEndDateTime=NOW + timedelta(days=5)),
            make_record(assignmentType=AssignmentType.ACTIVE_PIM, pimEndDateTime=NOW + timedelta(days=90)),
        ]
        out = fncAnalyzePIM(records, now=NOW, expiring_days=30)
        assert out["expiringSoon"] == 1
        assert out["totalActive"] == 1


class TestBuildAnalysis:

    def test_bundle_keys_and_options(self, mixed_records):
        out = fncBuildAnalysis(mixed_records, options={"intune_rbac": True}, policy=AuditPolicy(), now=NOW)
        assert set(out) == {"serviceAnalysis", "principalAnalysis", "crossServiceAnalysis", "pimAnalysis"}
        assert "intuneAnalysis" in out["serviceAnalysis"]["Intune"]
        assert "exchangeAnalysis" not in out["serviceAnalysis"]["Exchange"]
