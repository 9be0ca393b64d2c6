# ================================================================
# File     : exports.py
# Purpose  : Report pipeline entry points and the JSON / CSV / XLSX
#            writers (HTML lives in core.reporting)
# Notes    : aggregate → analyse → evaluate once, then one file per
#            format. A failed write returns None and leaves no file.
# ================================================================

import json
import pathlib
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from core.analysis import fncBuildAnalysis
from core.config import APP_HOME, AuditPolicy
from core.evaluator import HORIZONS, fncAlertRows, fncEvaluate
from core.records import AuditRecord, SERVICE_METADATA, SERVICE_ORDER, Service
from core.reporting import fncRecordStatus, fncWriteHTMLReport
from core.statistics import fncComputeStatistics, fncStatisticsSummary
from core.utils import fncAtomicWrite, fncExportCSV, fncPrintMessage, fncTimestamp, fncWriteJSON

SUPPORTED_FORMATS = ("html", "json", "csv", "xlsx")

# sub-analysis key -> render option that enables it
ANALYSIS_OPTIONS = {
    "exchangeAnalysis": "exchange_hybrid",
    "intuneAnalysis": "intune_rbac",
    "sharePointAnalysis": "sharepoint_sites",
}

SHEET_NAME_MAX = 31
TOP_N = 50

FILLS = {
    "Critical": PatternFill(start_color="FF9999", end_color="FF9999", fill_type="solid"),
    "High": PatternFill(start_color="FFC000", end_color="FFC000", fill_type="solid"),
    "Medium": PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid"),
    "Low": PatternFill(start_color="DDEBF7", end_color="DDEBF7", fill_type="solid"),
    "DISABLED": PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid"),
    "INACTIVE": PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid"),
    "ENABLED": PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid"),
}


# ================================================================
# Function: fncExportList
# Purpose  : Flatten --export list-of-lists from argparse
# Notes    : "html,json xlsx" → {"html", "json", "xlsx"}
# ================================================================
def fncExportList(args_export) -> List[str]:
    if not args_export:
        return []
    out: List[str] = []
    chunks = args_export if isinstance(args_export, (list, tuple)) else [args_export]
    for chunk in chunks:
        for part in str(chunk).replace(",", " ").split():
            fmt = part.strip().lower()
            if fmt not in SUPPORTED_FORMATS:
                fncPrintMessage(f"Unknown export format ignored: {fmt}", "warn")
                continue
            if fmt not in out:
                out.append(fmt)
    return out


# ================================================================
# Function: fncGetExportPath
# Purpose  : Timestamp-derived output path under the reports root
# ================================================================
def fncGetExportPath(fmt: str, org_name: Optional[str] = None,
                     root: Optional[pathlib.Path] = None, stem: str = "M365RoleAudit") -> pathlib.Path:
    root = pathlib.Path(root) if root else APP_HOME / "reports"
    org_slug = re.sub(r"[^A-Za-z0-9]+", "-", org_name or "").strip("-") or "tenant"
    return root / f"{stem}_{org_slug}_{fncTimestamp(compact=True)}.{fmt}"


# ================================================================
# Function: fncBuildAuditBundle
# Purpose  : Run statistics, analysers and evaluator exactly once
# ================================================================
def fncBuildAuditBundle(records: Sequence[AuditRecord],
                        options: Optional[Dict[str, Any]] = None,
                        policy: Optional[AuditPolicy] = None,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
    policy = policy or AuditPolicy()
    now = now or datetime.now(timezone.utc)
    stats = fncComputeStatistics(records, policy=policy, now=now)
    analysis = fncBuildAnalysis(records, options=options, policy=policy, now=now)
    evaluation = fncEvaluate(records, stats, policy=policy)
    return {"generatedAt": now, "statistics": stats, "analysis": analysis,
            "evaluation": evaluation, "policy": policy}


# ---------- JSON ----------

def _jsonable(value: Any) -> Any:
    if isinstance(value, AuditRecord):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def fncBuildJSONDocument(records: Sequence[AuditRecord], bundle: Dict[str, Any],
                         org_name: Optional[str] = None) -> Dict[str, Any]:
    stats = bundle["statistics"]
    return {
        "metadata": {
            "tool": "M365RoleAudit",
            "organization": org_name,
            "generatedAt": bundle["generatedAt"].isoformat(),
            "recordCount": len(records),
            "servicesAudited": stats["servicesAudited"],
            "policy": bundle["policy"].to_dict(),
        },
        "summary": fncStatisticsSummary(stats),
        "statistics": _jsonable(stats),
        "analysis": _jsonable(bundle["analysis"]),
        "evaluation": _jsonable(bundle["evaluation"]),
        "assignments": [r.to_dict() for r in records],
    }


# ---------- CSV ----------

def _flat_row(record: AuditRecord, status: str) -> Dict[str, Any]:
    row = record.to_dict()
    detail = row.pop("serviceDetail")
    row["serviceDetail"] = json.dumps(detail, ensure_ascii=False) if detail else None
    row["status"] = status
    return row


# ---------- XLSX ----------

def fncSheetName(name: str) -> str:
    clean = re.sub(r"[\[\]\:\*\?\/\\]", "-", name)
    return clean[:SHEET_NAME_MAX]


def _write_sheet(wb: Workbook, title: str, headers: List[str], rows: Iterable[List[Any]],
                 colour_col: Optional[str] = None) -> None:
    ws = wb.create_sheet(fncSheetName(title))
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    colour_idx = headers.index(colour_col) if colour_col else None
    widths = [len(h) for h in headers]
    for row in rows:
        ws.append(row)
        for i, v in enumerate(row):
            widths[i] = max(widths[i], len(str(v)) if v is not None else 0)
        if colour_idx is not None:
            fill = FILLS.get(str(row[colour_idx]))
            if fill:
                ws.cell(row=ws.max_row, column=colour_idx + 1).fill = fill
    for i, w in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = min(60, w + 2)
    ws.freeze_panes = "A2"


def fncBuildWorkbook(records: Sequence[AuditRecord], bundle: Dict[str, Any],
                     org_name: Optional[str] = None) -> Workbook:
    stats = bundle["statistics"]
    evaluation = bundle["evaluation"]
    policy: AuditPolicy = bundle["policy"]
    now = bundle["generatedAt"]
    status = {id(r): fncRecordStatus(r, now, policy.inactiveDays) for r in records}

    wb = Workbook()
    wb.remove(wb.active)

    summary_rows = [["Organization", org_name or "-"], ["Generated", now.isoformat()]]
    summary_rows += [[k, v] for k, v in fncStatisticsSummary(stats).items()]
    _write_sheet(wb, "Summary", ["Metric", "Value"], summary_rows)

    alert_rows = [[a["severity"], a["message"]] for a in fncAlertRows(evaluation)]
    _write_sheet(wb, "Alerts", ["Severity", "Message"], alert_rows, colour_col="Severity")

    horizon_titles = {"immediate": "Immediate", "shortTerm": "Short Term", "longTerm": "Long Term"}
    rec_rows = [[horizon_titles[h], msg] for h in HORIZONS for msg in evaluation["recommendations"][h]]
    _write_sheet(wb, "Recommendations", ["Horizon", "Recommendation"], rec_rows)

    top_roles = list(stats["byRole"].items())[:TOP_N]
    _write_sheet(wb, "Top Roles", ["Role", "Assignments"], [[k, v] for k, v in top_roles])

    excessive = stats["usersWithExcessiveRoles"]
    top_users = list(stats["byUser"].items())[:TOP_N]
    _write_sheet(wb, "Top Users", ["User", "Assignments", "Excessive Roles"],
                 [[u, n, "Yes" if u in excessive else "No"] for u, n in top_users])

    flat = [_flat_row(r, status[id(r)]) for r in records]
    headers = list(flat[0].keys()) if flat else ["service"]
    _write_sheet(wb, "All Assignments", headers, [[row.get(h) for h in headers] for row in flat],
                 colour_col="status" if flat else None)

    for service in SERVICE_ORDER:
        rows = [r for r in records if r.service is service]
        if not rows:
            continue
        by_role = sorted(rows, key=lambda r: (r.roleName, r.userKey or r.displayName or r.principalId))
        _write_sheet(
            wb, f"{service.value} by Role",
            ["Role", "Principal", "Principal Type", "Assignment", "Scope", "Status"],
            [[r.roleName, r.userKey or r.displayName or r.principalId, r.principalType.value,
              r.assignmentType.value, r.scope, status[id(r)]] for r in by_role],
            colour_col="Status",
        )
        users = [r for r in rows if r.userKey]
        by_user = sorted(users, key=lambda r: (r.userKey, r.roleName))
        _write_sheet(
            wb, f"{service.value} by User",
            ["User", "Display Name", "Role", "Assignment", "Scope", "Status"],
            [[r.userKey, r.displayName, r.roleName, r.assignmentType.value, r.scope, status[id(r)]]
             for r in by_user],
            colour_col="Status",
        )
    return wb


def _write_xlsx(path: str, records: Sequence[AuditRecord], bundle: Dict[str, Any],
                org_name: Optional[str]) -> None:
    wb = fncBuildWorkbook(records, bundle, org_name)
    fncAtomicWrite(path, wb.save)
    fncPrintMessage(f"Saved XLSX → {path}", "success")


def _write_csv(path: str, records: Sequence[AuditRecord], bundle: Dict[str, Any]) -> None:
    policy: AuditPolicy = bundle["policy"]
    now = bundle["generatedAt"]
    fncExportCSV(path, [_flat_row(r, fncRecordStatus(r, now, policy.inactiveDays)) for r in records])


# ================================================================
# Function: fncWriteArtifact
# Purpose  : Write one format from a pre-built bundle
# Notes    : Returns the path, or None after reporting the error
# ================================================================
def fncWriteArtifact(records: Sequence[AuditRecord], bundle: Dict[str, Any], fmt: str,
                     output_path: Optional[str] = None, org_name: Optional[str] = None,
                     reports_root: Optional[pathlib.Path] = None,
                     title: str = "Role Assignment Audit") -> Optional[str]:
    fmt = fmt.lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported report format: {fmt}")
    path = str(output_path or fncGetExportPath(fmt, org_name, reports_root))

    try:
        if fmt == "html":
            fncWriteHTMLReport(path, records, bundle["statistics"], bundle["analysis"],
                               bundle["evaluation"], org_name=org_name, policy=bundle["policy"],
                               title=title, now=bundle["generatedAt"])
        elif fmt == "json":
            fncWriteJSON(path, fncBuildJSONDocument(records, bundle, org_name))
        elif fmt == "csv":
            _write_csv(path, records, bundle)
        else:
            _write_xlsx(path, records, bundle, org_name)
    except Exception as ex:
        fncPrintMessage(f"Failed to write {fmt.upper()} report to {path}: {ex}", "error")
        return None
    return path


# ================================================================
# Function: fncRenderReport
# Purpose  : records → one report file in the requested format
# Notes    : Empty input → warning and None (no file)
# ================================================================
def fncRenderReport(records: Sequence[AuditRecord], fmt: str,
                    output_path: Optional[str] = None,
                    org_name: Optional[str] = None,
                    options: Optional[Dict[str, Any]] = None,
                    policy: Optional[AuditPolicy] = None,
                    reports_root: Optional[pathlib.Path] = None,
                    now: Optional[datetime] = None,
                    title: str = "Role Assignment Audit") -> Optional[str]:
    records = list(records)
    if not records:
        fncPrintMessage("No audit records supplied - nothing to report.", "warn")
        return None
    bundle = fncBuildAuditBundle(records, options=options, policy=policy, now=now)
    return fncWriteArtifact(records, bundle, fmt, output_path=output_path, org_name=org_name,
                            reports_root=reports_root, title=title)


# ================================================================
# Function: fncRenderReports
# Purpose  : Several formats from a single aggregation pass
# Notes    : Returns {fmt: path} for the formats that were written
# ================================================================
def fncRenderReports(records: Sequence[AuditRecord], formats: Iterable[str],
                     org_name: Optional[str] = None,
                     options: Optional[Dict[str, Any]] = None,
                     policy: Optional[AuditPolicy] = None,
                     reports_root: Optional[pathlib.Path] = None,
                     now: Optional[datetime] = None,
                     title: str = "Role Assignment Audit") -> Dict[str, str]:
    records = list(records)
    if not records:
        fncPrintMessage("No audit records supplied - nothing to report.", "warn")
        return {}
    bundle = fncBuildAuditBundle(records, options=options, policy=policy, now=now)
    written: Dict[str, str] = {}
    for fmt in formats:
        path = fncWriteArtifact(records, bundle, fmt, org_name=org_name,
                                reports_root=reports_root, title=title)
        if path:
            written[fmt] = path
    if written:
        fncPrintMessage(f"Exports written → {', '.join(written.values())}", "success")
    return written


# ================================================================
# Function: fncRenderServiceReport
# Purpose  : Single-service report with that service's sub-analysis on
# ================================================================
def fncRenderServiceReport(records: Sequence[AuditRecord], service, fmt: str = "html",
                           output_path: Optional[str] = None,
                           org_name: Optional[str] = None,
                           policy: Optional[AuditPolicy] = None,
                           reports_root: Optional[pathlib.Path] = None,
                           now: Optional[datetime] = None) -> Optional[str]:
    service = Service(service)
    meta = SERVICE_METADATA[service]
    options = {}
    if meta["analysis"]:
        options[ANALYSIS_OPTIONS[meta["analysis"]]] = True
    subset = [r for r in records if r.service is service]
    if not subset:
        fncPrintMessage(f"No {meta['label']} records supplied - nothing to report.", "warn")
        return None
    if output_path is None:
        output_path = str(fncGetExportPath(fmt, org_name, reports_root, stem=f"M365RoleAudit_{service.value}"))
    return fncRenderReport(subset, fmt, output_path=output_path, org_name=org_name, options=options,
                           policy=policy, now=now, title=f"{meta['label']} Role Audit")
