# ================================================================
# File     : core/reporting.py
# Purpose  : Render the role audit as one self-contained HTML page
#            (KPI cards, alerts, service badges, expandable per-role
#            and per-user detail rows, capped assignments table)
# Notes    : Markup lives in a Jinja2 template; Python only shapes
#            the view model. Autoescaping is on for every value.
# ================================================================

import json
import datetime
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from jinja2 import DictLoader, Environment

from core.config import AuditPolicy
from core.evaluator import SEVERITIES
from core.records import AuditRecord, SERVICE_METADATA, SERVICE_ORDER, Service
from core.statistics import fncIsInactive, fncStatisticsSummary
from core.utils import fncAtomicWrite, fncPrintMessage


# ---------- tiny helpers ----------

def _fmt_dt(value: Optional[datetime.datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"

def _json_pretty(val: Any) -> str:
    return json.dumps(val, ensure_ascii=False, indent=2, default=str)

def _json_summary(val: Any, limit: int = 140) -> str:
    """Compact one-line summary of JSON for the <summary> text."""
    compact = json.dumps(val, ensure_ascii=False, separators=(",", ":"), default=str)
    if len(compact) > limit:
        return compact[:limit] + " … +" + str(len(compact) - limit) + " chars"
    return compact


# ----- status helpers (for coloured pills) -----

STATUS_CLASSES = {
    "DISABLED": "crit",
    "INACTIVE": "warn",
    "ENABLED": "ok",
    "UNKNOWN": "unknown",
}

SEVERITY_CLASSES = {
    "critical": "crit",
    "high": "high",
    "medium": "warn",
    "low": "soon",
}

def fncRecordStatus(record: AuditRecord, now: datetime.datetime, inactive_days: int) -> str:
    if record.userEnabled is False:
        return "DISABLED"
    if fncIsInactive(record, now, inactive_days):
        return "INACTIVE"
    if record.userEnabled is True:
        return "ENABLED"
    return "UNKNOWN"


def _badge(service: Service) -> Dict[str, str]:
    meta = SERVICE_METADATA[service]
    return {"name": service.value, "label": meta["label"], "colour": meta["colour"], "icon": meta["icon"]}


# ---------- base CSS ----------

def _base_css() -> str:
    return """
:root{
  --accent:#4fb3ff; --accent2:#1f7ae0;
  --text:#1b2330; --bg:#f5f7fb; --card:#ffffff; --border:#e3e8ef; --muted:#667085;
}
@media (prefers-color-scheme: dark){
  :root{ --bg:#0e1217; --card:#1b212a; --text:#e7edf7; --border:#2a3340; --muted:#9fb2cc; }
}
*{box-sizing:border-box} html,body{margin:0;padding:0}
body{font:15px/1.5 "Segoe UI",Roboto,Arial,system-ui;background:var(--bg);color:var(--text);}
.header{
  position:relative; background:linear-gradient(90deg,var(--accent2),var(--accent));
  color:#fff; padding:22px 28px; border-bottom:1px solid rgba(255,255,255,.18);
  box-shadow:0 4px 14px rgba(0,0,0,.25)
}
.header h1{margin:0;font-weight:800;letter-spacing:.3px;font-size:1.9rem}
.header h2{margin:4px 0 2px 0;font-weight:500;opacity:.95}
.header p{margin:4px 0 0 0;opacity:.85;font-size:.9rem}

.container{width:95%;max-width:1900px;margin:24px auto;background:var(--card);
border:1px solid var(--border);border-radius:12px;padding:22px 26px;box-shadow:0 10px 30px rgba(0,0,0,.20)}
h3{color:var(--accent);border-bottom:2px solid color-mix(in srgb,var(--accent) 60%, transparent);
padding-bottom:6px;margin:16px 0 8px 0;font-weight:700;letter-spacing:.2px}
.card{margin:18px 0}
.card h4{margin:0 0 8px 0;font-size:1.05rem}
.tablewrap{overflow-x:auto}

table{width:100%;border-collapse:separate;border-spacing:0;margin-top:8px;
border:1px solid var(--border);border-radius:10px;overflow:hidden;
background:color-mix(in srgb,var(--card) 92%, #000 8%)}
th,td{padding:10px 12px;border-bottom:1px solid var(--border);
word-break:break-word;overflow-wrap:anywhere;white-space:normal}
th{white-space:nowrap;background:linear-gradient(90deg,color-mix(in srgb,var(--accent2) 85%, #000 15%), var(--accent));
color:#fff;text-align:left;font-weight:700}
tr:last-child td{border-bottom:none}
table.summary{width:min(760px,100%)}
table.summary th{width:38%;background:color-mix(in srgb,var(--accent2) 92%, #000 8%);color:#fff}
table.summary td{background:color-mix(in srgb,var(--card) 95%, #000 5%);color:var(--text)}
tr.more-row td{text-align:center;font-style:italic;color:var(--muted)}
.footer{width:95%;max-width:1200px;margin:26px auto 12px auto;color:var(--muted);
text-align:center;font-size:.9rem}

.pill{display:inline-flex;align-items:center;justify-content:center;
padding:2px 10px;border-radius:9999px;font-weight:700;border:1px solid var(--border);
white-space:nowrap;line-height:1;font-variant-numeric:tabular-nums}
.pill.xs{padding:1px 6px;font-size:.8rem}
.pill.ok{ background:#10b98126; border:none; color:#10b981 }
.pill.warn{ background:#f59e0b26; border:none; color:#f59e0b }
.pill.high{ background:#f9731626; border:none; color:#f97316 }
.pill.crit{ background:#ef444426; border:none; color:#ef4444 }
.pill.soon{ background:#60a5fa26; border:none; color:#60a5fa }
.pill.unknown{ background:#64748b26; border:none; color:#94a3b8 }

.svc-badge{display:inline-block;padding:2px 8px;border-radius:6px;color:#fff;
font-size:.8rem;font-weight:700;margin:1px 2px;white-space:nowrap}

/* KPI cards */
.grid{display:grid; gap:12px}
.grid.kpis{grid-template-columns:repeat(auto-fit,minmax(200px,1fr))}
.card-rounded{border-radius:12px; box-shadow:0 6px 18px rgba(0,0,0,.08); border:1px solid var(--border)}
.kpi{padding:14px 16px}
.kpi .label{color:var(--muted); font-weight:600}
.kpi .value{font-size:1.8rem; font-weight:800; margin-top:4px}
.kpi.danger .value{color:#ef4444} .kpi.warning .value{color:#f59e0b} .kpi.success .value{color:#10b981}

/* alerts */
ul.alerts{list-style:none;padding:0;margin:0}
ul.alerts li{padding:6px 0;border-bottom:1px dashed var(--border)}
ul.alerts li:last-child{border-bottom:none}

/* JSON pretty dropdown */
.cp-json > summary{
  cursor:pointer; list-style:none; outline:none;
  padding:6px 10px; border:1px solid var(--border); border-radius:8px;
  font-family: ui-monospace, SFMono-Regular, Menlo, Consolas, monospace;
  font-size:.85rem; white-space:nowrap; overflow:hidden; text-overflow:ellipsis;
}
.cp-json pre{margin:0; padding:12px 14px; border:1px solid var(--border); border-top:none;
  max-height:360px; overflow:auto; font-size:.85rem}

/* expandable rows */
.ra-clickable{cursor:pointer}
.ra-clickable:hover td{background:rgba(79,179,255,.08)}
.ra-chevron{display:inline-block;width:1em;opacity:.85}
.ra-hide{display:none}
tr.ra-detail > td{padding:0 0 0 28px;background:color-mix(in srgb,var(--card) 94%, #000 6%)}
tr.ra-detail table{margin:8px 0 12px 0}
.ra-toolbar{display:flex;gap:10px;align-items:center;margin:6px 2px 0 2px;flex-wrap:wrap}
.ra-toolbar input[type="search"]{padding:6px 10px;border-radius:999px;border:1px solid var(--border);
  background:var(--card);color:var(--text);min-width:220px;outline:none}
.ra-toolbar .btn{padding:6px 12px;border:1px solid var(--border);border-radius:999px;
  background:var(--card);color:var(--text);cursor:pointer;font-weight:600}
"""


REPORT_JS = r"""
(function () {
  function toggle(tr, open) {
    const detail = document.getElementById(tr.dataset.target);
    if (!detail) return;
    tr.classList.toggle('ra-open', open);
    detail.classList.toggle('ra-hide', !open);
    const chev = tr.querySelector('.ra-chevron');
    if (chev) chev.textContent = open ? '▾' : '▸';
  }

  document.querySelectorAll('tr.ra-clickable').forEach(tr => {
    tr.addEventListener('click', () => toggle(tr, !tr.classList.contains('ra-open')));
  });

  document.querySelectorAll('[data-action]').forEach(btn => {
    btn.addEventListener('click', () => {
      const table = document.getElementById(btn.dataset.table);
      if (!table) return;
      const open = btn.dataset.action === 'expand';
      table.querySelectorAll('tr.ra-clickable').forEach(tr => toggle(tr, open));
    });
  });

  document.querySelectorAll('input[data-filter]').forEach(input => {
    const table = document.getElementById(input.dataset.filter);
    if (!table) return;
    const rows = Array.from(table.querySelectorAll('tbody tr.assignment-row'));
    input.addEventListener('input', () => {
      const q = (input.value || '').toLowerCase();
      rows.forEach(tr => {
        tr.style.display = (!q || tr.textContent.toLowerCase().includes(q)) ? '' : 'none';
      });
    });
  });
})();
"""


REPORT_TEMPLATE = """<!DOCTYPE html>
<html lang="en"><head>
<meta charset="UTF-8"><title>{{ title }}{% if org_name %} - {{ org_name }}{% endif %}</title>
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<style>{{ css | safe }}</style></head><body>

{%- macro badge(b) -%}
<span class="svc-badge" style="background:{{ b.colour }}" title="{{ b.label }}">{{ b.icon }} {{ b.name }}</span>
{%- endmacro %}

{%- macro more_row(extra, colspan) -%}
{% if extra > 0 %}<tr class="more-row"><td colspan="{{ colspan }}">...and {{ extra }} more - export for full data</td></tr>{% endif %}
{%- endmacro %}

{%- macro detail_table(rows, extra) -%}
<table class="detail">
  <thead><tr><th>Principal</th><th>Type</th><th>Service</th><th>Role</th><th>Assignment</th><th>Scope</th><th>Status</th></tr></thead>
  <tbody>
  {% for r in rows %}
    <tr class="detail-row"><td>{{ r.principal }}</td><td>{{ r.principalType }}</td><td>{{ badge(r.badge) }}</td><td>{{ r.roleName }}</td>
    <td>{{ r.assignmentType }}</td><td>{{ r.scope }}</td><td><span class="pill xs {{ r.statusClass }}">{{ r.status }}</span></td></tr>
  {% endfor %}
  {{ more_row(extra, 7) }}
  </tbody>
</table>
{%- endmacro %}

  <div class="header">
    <h1>🔐 M365 Role Audit Report</h1>
    <h2>{{ subtitle }}</h2>
    <p>Generated on {{ generated }}</p>
  </div>

<div class="container">
  <div class="grid kpis">
  {% for k in kpis %}
    <div class="card-rounded kpi {{ k.tone }}"><div class="label">{{ k.label }}</div><div class="value">{{ k.value }}</div></div>
  {% endfor %}
  </div>

  <h3>Summary</h3>
  <table class="summary" id="tbl-summary">
  {% for label, value in summary.items() %}<tr><th>{{ label }}</th><td>{{ value }}</td></tr>
  {% endfor %}
  </table>

  <h3>Security Alerts</h3>
  <div class="card" id="alerts">
  {% if alerts %}
    <ul class="alerts">
    {% for a in alerts %}<li class="alert alert-{{ a.severity }}"><span class="pill xs {{ a.cls }}">{{ a.severity | upper }}</span> {{ a.message }}</li>
    {% endfor %}
    </ul>
  {% else %}<p>No alerts raised.</p>{% endif %}
  </div>

  <h3>Recommendations</h3>
  <div class="card" id="recommendations">
  {% for horizon, items in recommendations %}
    {% if items %}<h4>{{ horizon }}</h4><ul>{% for item in items %}<li>{{ item }}</li>{% endfor %}</ul>{% endif %}
  {% else %}<p>No recommendations.</p>{% endfor %}
  </div>

  <h3>Services</h3>
  <div class="card tablewrap">
  <table id="tbl-services">
    <thead><tr><th>Service</th><th>Assignments</th><th>Unique Users</th><th>Top Role</th><th>Service Analysis</th></tr></thead>
    <tbody>
    {% for s in services %}
      <tr class="service-row"><td>{{ badge(s.badge) }}</td><td>{{ s.totalAssignments }}</td><td>{{ s.uniqueUsers }}</td><td>{{ s.topRole or '-' }}</td>
      <td>{% if s.detail is not none %}<details class="cp-json"><summary>{{ s.detailSummary }}</summary><pre>{{ s.detailPretty }}</pre></details>{% else %}-{% endif %}</td></tr>
    {% endfor %}
    </tbody>
  </table>
  </div>

  <h3>Privileged Identity Management</h3>
  <table class="summary" id="tbl-pim">
  {% for label, value in pim.items() %}<tr><th>{{ label }}</th><td>{{ value }}</td></tr>
  {% endfor %}
  </table>

  {% if cross_service %}
  <h3>Users Across Multiple Services</h3>
  <div class="card tablewrap">
  <table id="tbl-cross-service">
    <thead><tr><th>User</th><th>Services</th></tr></thead>
    <tbody>
    {% for u in cross_service.rows %}<tr><td>{{ u.user }}</td><td>{% for b in u.badges %}{{ badge(b) }}{% endfor %}</td></tr>
    {% endfor %}
    {{ more_row(cross_service.extra, 2) }}
    </tbody>
  </table>
  </div>
  {% endif %}

  {% for section in groups %}
  <h3>{{ section.title }}</h3>
  <div class="card">
    <div class="ra-toolbar">
      <button class="btn" data-action="expand" data-table="{{ section.id }}">Expand all</button>
      <button class="btn" data-action="collapse" data-table="{{ section.id }}">Collapse all</button>
    </div>
    <div class="tablewrap">
    <table id="{{ section.id }}">
      <thead><tr><th>{{ section.keyLabel }}</th><th>Assignments</th><th>Principals</th><th>Services</th><th>PIM</th></tr></thead>
      <tbody>
      {% for g in section.rows %}
        <tr class="ra-clickable group-row" data-target="{{ section.id }}-d{{ loop.index }}">
          <td><span class="ra-chevron">▸</span> {{ g.key }}</td><td>{{ g.count }}</td><td>{{ g.principals }}</td>
          <td>{% for b in g.badges %}{{ badge(b) }}{% endfor %}</td><td>{{ g.pim }}</td></tr>
        <tr class="ra-detail ra-hide" id="{{ section.id }}-d{{ loop.index }}"><td colspan="5">{{ detail_table(g.details, g.detailsExtra) }}</td></tr>
      {% endfor %}
      {{ more_row(section.extra, 5) }}
      </tbody>
    </table>
    </div>
  </div>
  {% endfor %}

  <h3>All Assignments</h3>
  <div class="card">
    <div class="ra-toolbar"><input type="search" placeholder="Search assignments…" aria-label="Search assignments" data-filter="tbl-all-assignments"></div>
    <div class="tablewrap">
    <table id="tbl-all-assignments">
      <thead><tr><th>Service</th><th>Principal</th><th>Type</th><th>Role</th><th>Assignment</th><th>Scope</th><th>Last Sign-in</th><th>PIM End</th><th>Auth</th><th>Status</th></tr></thead>
      <tbody>
      {% for r in assignments %}
        <tr class="assignment-row"><td>{{ badge(r.badge) }}</td><td>{{ r.principal }}</td><td>{{ r.principalType }}</td><td>{{ r.roleName }}</td>
        <td>{{ r.assignmentType }}</td><td>{{ r.scope }}</td><td>{{ r.lastSignIn }}</td><td>{{ r.pimEnd }}</td><td>{{ r.authenticationType }}</td>
        <td><span class="pill xs {{ r.statusClass }} status-tag">{{ r.status }}</span></td></tr>
      {% endfor %}
      {{ more_row(assignments_extra, 10) }}
      </tbody>
    </table>
    </div>
  </div>
</div>
<div class="footer">
  <p>Generated by <b>M365RoleAudit</b> from {{ total }} role assignments.</p>
  <p>&copy; {{ year }} M365RoleAudit</p>
</div>
<script>{{ js | safe }}</script>
</body></html>
"""

_ENV = Environment(loader=DictLoader({"report.html": REPORT_TEMPLATE}), autoescape=True)


# ---------- view model ----------

def _row(record: AuditRecord, now: datetime.datetime, policy: AuditPolicy) -> Dict[str, Any]:
    status = fncRecordStatus(record, now, policy.inactiveDays)
    return {
        "badge": _badge(record.service),
        "principal": record.userKey or record.displayName or record.principalId,
        "principalType": record.principalType.value,
        "roleName": record.roleName,
        "assignmentType": record.assignmentType.value,
        "scope": record.scope,
        "lastSignIn": _fmt_dt(record.lastSignIn),
        "pimEnd": _fmt_dt(record.pimEndDateTime),
        "authenticationType": record.authenticationType.value,
        "status": status,
        "statusClass": STATUS_CLASSES[status],
    }


def _group_rows(grouped: Dict[str, List[AuditRecord]], now, policy: AuditPolicy) -> List[Dict[str, Any]]:
    limit = policy.tableRowLimit
    rows = []
    for key, recs in sorted(grouped.items(), key=lambda kv: (-len(kv[1]), kv[0])):
        services = {r.service for r in recs}
        rows.append({
            "key": key,
            "count": len(recs),
            "principals": len({r.principalId for r in recs}),
            "badges": [_badge(s) for s in SERVICE_ORDER if s in services],
            "pim": sum(1 for r in recs if r.isPim),
            "details": [_row(r, now, policy) for r in recs[:limit]],
            "detailsExtra": max(0, len(recs) - limit),
        })
    return rows


def _kpis(stats: Dict[str, Any], evaluation: Dict[str, Any]) -> List[Dict[str, Any]]:
    crit_high = len(evaluation["alerts"]["critical"]) + len(evaluation["alerts"]["high"])
    return [
        {"label": "Role Assignments", "value": stats["totalAssignments"], "tone": "primary"},
        {"label": "Unique Users", "value": stats["uniqueUsers"], "tone": "primary"},
        {"label": "Services Audited", "value": len(stats["servicesAudited"]), "tone": "primary"},
        {"label": "Global Administrators", "value": len(stats["globalAdmins"]),
         "tone": "danger" if crit_high else "success"},
        {"label": "PIM Eligible", "value": len(stats["pimEligible"]),
         "tone": "success" if stats["pimEligible"] else "warning"},
        {"label": "Critical/High Alerts", "value": crit_high, "tone": "danger" if crit_high else "success"},
    ]


def _pim_table(pim: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "PIM In Use": "Yes" if pim["enabled"] else "No",
        "Eligible Assignments": pim["totalEligible"],
        "Activated Assignments": pim["totalActive"],
        "Permanent Assignments": pim["permanentAssignments"],
        "Expiring Soon": pim["expiringSoon"],
        "No End Date": pim["noEndDate"],
    }


# ================================================================
# Function: fncBuildHTMLReport
# Purpose : Render the full report to a string
# Notes   : Tables are capped at policy.tableRowLimit rows with a
#           "...and N more" footer row; JSON/CSV/XLSX carry all rows
# ================================================================
def fncBuildHTMLReport(records: Sequence[AuditRecord],
                       stats: Dict[str, Any],
                       analysis: Dict[str, Any],
                       evaluation: Dict[str, Any],
                       org_name: Optional[str] = None,
                       policy: Optional[AuditPolicy] = None,
                       title: str = "Role Assignment Audit",
                       now: Optional[datetime.datetime] = None) -> str:
    policy = policy or AuditPolicy()
    limit = policy.tableRowLimit
    now = now or datetime.datetime.now(datetime.timezone.utc)

    by_role: Dict[str, List[AuditRecord]] = defaultdict(list)
    by_user: Dict[str, List[AuditRecord]] = defaultdict(list)
    for r in records:
        by_role[r.roleName or "(unnamed role)"].append(r)
        if r.userKey:
            by_user[r.userKey].append(r)

    role_rows = _group_rows(by_role, now, policy)
    user_rows = _group_rows(by_user, now, policy)

    services = []
    for name, entry in analysis["serviceAnalysis"].items():
        service = Service(name)
        key = SERVICE_METADATA[service]["analysis"]
        detail = entry.get(key) if key else None
        services.append({
            "badge": _badge(service),
            "totalAssignments": entry["totalAssignments"],
            "uniqueUsers": entry["uniqueUsers"],
            "topRole": entry["topRole"],
            "detail": detail,
            "detailSummary": _json_summary(detail) if detail is not None else "",
            "detailPretty": _json_pretty(detail) if detail is not None else "",
        })

    cross = analysis["crossServiceAnalysis"]
    cross_rows = [
        {"user": u, "badges": [_badge(Service(s)) for s in svcs]}
        for u, svcs in cross["userServices"].items()
    ]

    alerts = [
        {"severity": sev, "cls": SEVERITY_CLASSES[sev], "message": msg}
        for sev in SEVERITIES
        for msg in evaluation["alerts"][sev]
    ]
    horizon_titles = {"immediate": "Immediate", "shortTerm": "Short Term", "longTerm": "Long Term"}
    recommendations = [
        (horizon_titles.get(h, h), items) for h, items in evaluation["recommendations"].items() if items
    ]

    subtitle = title if not org_name else f"{title} - {org_name}"
    template = _ENV.get_template("report.html")
    return template.render(
        title="M365 Role Audit",
        subtitle=subtitle,
        org_name=org_name,
        generated=now.strftime("%Y-%m-%d %H:%M:%S UTC"),
        year=now.year,
        css=_base_css(),
        js=REPORT_JS,
        kpis=_kpis(stats, evaluation),
        summary=fncStatisticsSummary(stats),
        alerts=alerts,
        recommendations=recommendations,
        services=services,
        pim=_pim_table(analysis["pimAnalysis"]),
        cross_service={"rows": cross_rows[:limit], "extra": max(0, len(cross_rows) - limit)} if cross_rows else None,
        groups=[
            {"id": "tbl-roles", "title": "Assignments by Role", "keyLabel": "Role",
             "rows": role_rows[:limit], "extra": max(0, len(role_rows) - limit)},
            {"id": "tbl-users", "title": "Assignments by User", "keyLabel": "User",
             "rows": user_rows[:limit], "extra": max(0, len(user_rows) - limit)},
        ],
        assignments=[_row(r, now, policy) for r in list(records)[:limit]],
        assignments_extra=max(0, len(records) - limit),
        total=len(records),
    )


# ================================================================
# Function: fncWriteHTMLReport
# Purpose : Render and write the HTML report
# Notes   : Atomic write; exceptions propagate to the caller
# ================================================================
def fncWriteHTMLReport(filename: str,
                       records: Sequence[AuditRecord],
                       stats: Dict[str, Any],
                       analysis: Dict[str, Any],
                       evaluation: Dict[str, Any],
                       org_name: Optional[str] = None,
                       policy: Optional[AuditPolicy] = None,
                       title: str = "Role Assignment Audit",
                       now: Optional[datetime.datetime] = None) -> str:
    fncPrintMessage(f"Generating HTML report: {filename}", "info")
    html_doc = fncBuildHTMLReport(records, stats, analysis, evaluation,
                                  org_name=org_name, policy=policy, title=title, now=now)

    def _write(tmp: str) -> None:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(html_doc)

    fncAtomicWrite(filename, _write)
    fncPrintMessage(f"HTML report written to {filename}", "success")
    return filename
