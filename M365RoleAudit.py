#!/usr/bin/env python3
# ================================================================
# Tool     : M365RoleAudit
# Purpose  : Certificate-based audit of Microsoft 365 role assignments
# Notes    : Collects (or loads) role assignments, then renders
#            HTML / JSON / CSV / XLSX audit reports
# ================================================================

import argparse
import pathlib
import sys

from core.config import (
    APP_HOME,
    fncInitConfig,
    fncApplyCliOverrides,
    fncIsDebug,
    fncGetPolicy,
    fncUpdateConfigField,
    fncSaveConfig,
)
from core.utils import fncPrintMessage, fncSetDebug, fncDisplayBanner, fncToTable
from core.module_loader import fncRunModule, fncRunAllModules, fncDiscoverModules
from core.records import Service, fncLoadRecords
from core.statistics import fncComputeStatistics, fncStatisticsSummary
from core.evaluator import fncEvaluate, fncAlertRows
from core.exports import fncExportList, fncRenderReports, fncRenderServiceReport

VERSION = "v1.0"


# ================================================================
# Function: fncParseArguments
# Purpose  : Define and parse command-line arguments
# ================================================================
def fncParseArguments(argv=None):
    parser = argparse.ArgumentParser(
        prog="M365RoleAudit",
        description="M365RoleAudit - Microsoft 365 role assignment and PIM audit"
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "--scan",
        help="Name of collector module to execute (e.g., azuread_roles, intune_roles)"
    )
    group.add_argument(
        "--run-all",
        action="store_true",
        help="Run all available collector modules"
    )
    group.add_argument(
        "--input",
        metavar="FILE",
        help="Render reports from a JSON file of audit records instead of collecting"
    )
    group.add_argument(
        "--test-connection",
        action="store_true",
        help="Authenticate and probe the Graph endpoints the collectors use"
    )
    group.add_argument(
        "--cert",
        choices=["new", "show", "test", "remove"],
        help="Manage the self-signed certificate used for app-only auth"
    )
    group.add_argument(
        "--troubleshoot",
        action="store_true",
        help="Show setup checklist and remediation hints"
    )

    parser.add_argument(
        "--skip",
        help="Comma-separated module names to skip with --run-all",
        default=""
    )

    parser.add_argument(
        "--export",
        nargs="*",
        metavar="FMT[,FMT...]",
        help="Export formats: html, json, csv, xlsx. Example: --export html,xlsx json",
        default=None
    )

    parser.add_argument("--output", metavar="DIR", help="Folder for report files")
    parser.add_argument("--org-name", metavar="NAME", help="Organisation name shown in reports and file names")
    parser.add_argument(
        "--service",
        choices=[s.value for s in Service],
        help="Render a single-service report with that service's detail analysis"
    )
    parser.add_argument("--exchange-hybrid", action="store_true", help="Include Exchange hybrid analysis")
    parser.add_argument("--intune-rbac", action="store_true", help="Include Intune RBAC analysis")
    parser.add_argument("--sharepoint-sites", action="store_true", help="Include SharePoint site analysis")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing certificate with --cert new")

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug output"
    )

    return parser.parse_args(argv)


def _cert_dir(cfg: dict) -> pathlib.Path:
    return pathlib.Path(cfg.get("m365", {}).get("certificate_path") or (APP_HOME / "certs")).expanduser()


# ================================================================
# Function: fncCertificateCommand
# Purpose  : --cert new|show|test|remove
# Notes    : "new" stores the thumbprint back into config.json
# ================================================================
def fncCertificateCommand(action: str, cfg: dict, force: bool = False) -> int:
    from handlers.certificates import (
        CertificateError,
        fncNewAuditCertificate,
        fncFindAuditCertificate,
        fncRemoveAuditCertificate,
        fncTestAuditCertificate,
    )

    cert_dir = _cert_dir(cfg)
    try:
        if action == "new":
            info = fncNewAuditCertificate(cert_dir, force=force)
            cfg = fncUpdateConfigField(cfg, "m365.certificate_thumbprint", info["thumbprint"])
            fncSaveConfig(cfg)
            print(fncToTable([info]))
        elif action == "show":
            info = fncFindAuditCertificate(cert_dir)
            if not info:
                fncPrintMessage("No certificate found. Create one with --cert new.", "warn")
                return 1
            print(fncToTable([{"field": k, "value": v} for k, v in info.items()]))
        elif action == "test":
            expected = cfg.get("m365", {}).get("certificate_thumbprint") or None
            return 0 if fncTestAuditCertificate(cert_dir, expected_thumbprint=expected)["valid"] else 1
        elif action == "remove":
            fncRemoveAuditCertificate(cert_dir)
    except CertificateError as ex:
        fncPrintMessage(str(ex), "error")
        return 1
    return 0


# ================================================================
# Function: fncInitClient
# Purpose  : Build the Graph client from config
# Notes    : Certificate from the cert folder wins over a client secret
# ================================================================
def fncInitClient(cfg: dict):
    from handlers.certificates import CertificateError, fncLoadCertificateCredential
    from handlers.graph.client import GraphClient, GraphError
    from handlers.graph.troubleshooting import fncShowTroubleshooting

    m365 = cfg.get("m365", {})
    certificate = None
    try:
        certificate = fncLoadCertificateCredential(_cert_dir(cfg))
    except CertificateError as ex:
        if not m365.get("client_secret"):
            fncPrintMessage(str(ex), "error")
            return None
        fncPrintMessage(f"No certificate available ({ex}); falling back to client secret.", "debug")

    try:
        return GraphClient(
            tenant_id=m365.get("tenant_id"),
            client_id=m365.get("client_id"),
            certificate=certificate,
            client_secret=m365.get("client_secret") or None,
            authority=m365.get("authority") or "https://login.microsoftonline.com",
        )
    except GraphError as ex:
        fncShowTroubleshooting(ex)
        return None


def _analysis_options(args) -> dict:
    return {
        "exchange_hybrid": args.exchange_hybrid,
        "intune_rbac": args.intune_rbac,
        "sharepoint_sites": args.sharepoint_sites,
    }


# ================================================================
# Function: fncSummarise
# Purpose  : Console summary + alerts for a set of records
# ================================================================
def fncSummarise(records, policy) -> None:
    stats = fncComputeStatistics(records, policy)
    print(fncToTable([{"metric": k, "value": v} for k, v in fncStatisticsSummary(stats).items()]))
    alerts = fncAlertRows(fncEvaluate(records, stats, policy))
    if alerts:
        print(fncToTable(alerts))
    else:
        fncPrintMessage("No alerts raised.", "success")


# ================================================================
# Function: fncExportRecords
# Purpose  : Write the requested formats (or one service report)
# ================================================================
def fncExportRecords(records, args, cfg: dict) -> dict:
    formats = fncExportList(args.export) or ["html"]
    policy = fncGetPolicy(cfg)
    org_name = cfg.get("organization_name") or None
    reports_root = pathlib.Path(cfg.get("reports_root") or (APP_HOME / "reports")).expanduser()

    if args.service:
        written = {}
        for fmt in formats:
            path = fncRenderServiceReport(records, args.service, fmt, org_name=org_name,
                                          policy=policy, reports_root=reports_root)
            if path:
                written[fmt] = path
        return written

    return fncRenderReports(records, formats, org_name=org_name, options=_analysis_options(args),
                            policy=policy, reports_root=reports_root)


# ================================================================
# Function: main
# Purpose  : Main entry point for M365RoleAudit execution
# Notes    : Handles CLI parsing, config loading, client init,
#            collection and report rendering. Returns exit code.
# ================================================================
def main(argv=None) -> int:
    args = fncParseArguments(argv)

    cfg = fncInitConfig()
    cfg = fncApplyCliOverrides(cfg, args)
    fncSetDebug(fncIsDebug(cfg))

    fncDisplayBanner(VERSION)
    if fncIsDebug(cfg):
        fncPrintMessage("Debug output enabled.", "debug")

    if args.troubleshoot:
        from handlers.graph.troubleshooting import fncShowTroubleshooting
        fncShowTroubleshooting()
        return 0

    if args.cert:
        return fncCertificateCommand(args.cert, cfg, force=args.force)

    if args.input:
        try:
            records = fncLoadRecords(args.input)
        except (OSError, ValueError) as ex:
            fncPrintMessage(f"Cannot load records from {args.input}: {ex}", "error")
            return 1
    else:
        client = fncInitClient(cfg)
        if not client:
            fncPrintMessage("Unable to continue without a valid Graph client.", "error")
            return 1

        if args.test_connection:
            from handlers.graph.troubleshooting import fncTestConnection
            return 0 if fncTestConnection(client)["ok"] else 1

        if args.run_all:
            skip_list = [m.strip() for m in args.skip.split(",") if m.strip()]
            records = fncRunAllModules(client, args, skip_list=skip_list)
        else:
            if args.scan not in fncDiscoverModules():
                fncPrintMessage(f"Unknown module '{args.scan}'. Available: {', '.join(fncDiscoverModules())}", "error")
                return 1
            fncPrintMessage(f"Running scan module: {args.scan}", "info")
            records = fncRunModule(args.scan, client, args)

    if not records:
        fncPrintMessage("No role assignments found; no reports written.", "warn")
        return 1

    fncSummarise(records, fncGetPolicy(cfg))
    written = fncExportRecords(records, args, cfg)
    if not written:
        fncPrintMessage("No reports were written.", "error")
        return 1

    fncPrintMessage("Audit complete.", "success")
    return 0


if __name__ == "__main__":
    sys.exit(main())
