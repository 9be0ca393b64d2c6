# ================================================================
# File     : config.py
# Purpose  : Configuration management for M365RoleAudit
# Notes    : Handles initial creation, loading, and saving of config,
#            plus the audit policy thresholds used by the evaluator
# ================================================================

import pathlib
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from core.utils import fncPrintMessage, fncEnsureFolder, fncReadJSON, fncWriteJSON, fncLoadEnv

APP_HOME = pathlib.Path.home() / ".m365roleaudit"


@dataclass(frozen=True)
class AuditPolicy:
    """Organisational thresholds; every rule in the evaluator reads one of these."""

    maxGlobalAdmins: int = 5
    inactiveDays: int = 90
    maxRolesPerUser: int = 5
    maxIntuneServiceAdmins: int = 3
    orgWideRatio: float = 2.0
    orgWideMinimum: int = 20
    tableRowLimit: int = 150
    pimExpiringDays: int = 30

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AuditPolicy":
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            fncPrintMessage(f"Ignoring unknown policy keys: {', '.join(unknown)}", "warn")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ================================================================
# Function: fncDefaultConfig
# Purpose : Return a default configuration dictionary
# Notes   : Called when config file does not exist
# ================================================================
def fncDefaultConfig() -> dict:
    return {
        "version": "1.0",
        "app_home": str(APP_HOME),
        "reports_root": str(APP_HOME / "reports"),
        "organization_name": "",
        "debug": False,
        "m365": {
            "tenant_id": "",
            "client_id": "",
            "certificate_path": str(APP_HOME / "certs"),
            "certificate_thumbprint": "",
            "client_secret": "",
            "authority": "https://login.microsoftonline.com"
        },
        "policy": AuditPolicy().to_dict()
    }


# ================================================================
# Function: fncInitConfig
# Purpose : Create or load configuration file
# Notes   : Ensures base folder exists; returns full config dict
# ================================================================
def fncInitConfig(config_path: str = None) -> dict:
    path = pathlib.Path(config_path or (APP_HOME / "config.json"))

    fncEnsureFolder(path.parent)

    if not path.exists():
        fncPrintMessage(f"No config found at {path}. Creating default...", "warn")
        cfg = fncDefaultConfig()
        fncWriteJSON(str(path), cfg)
        return fncApplyEnvOverrides(cfg)
    return fncLoadConfig(str(path))


# ================================================================
# Function: fncLoadConfig
# Purpose : Load configuration file and apply environment overrides
# Notes   : Missing sections are filled from the defaults
# ================================================================
def fncLoadConfig(config_path: str) -> dict:
    loaded = fncReadJSON(config_path)
    cfg = fncDefaultConfig()
    for key, value in (loaded or {}).items():
        if isinstance(value, dict) and isinstance(cfg.get(key), dict):
            cfg[key].update(value)
        else:
            cfg[key] = value

    fncPrintMessage(f"Loaded configuration from {config_path}", "debug")
    return fncApplyEnvOverrides(cfg)


# ================================================================
# Function: fncApplyEnvOverrides
# Purpose : Environment variables win over the config file
# Notes   : Useful in CI/CD or containers
# ================================================================
def fncApplyEnvOverrides(cfg: dict) -> dict:
    m365 = cfg.setdefault("m365", {})
    env_map = {
        "tenant_id": "M365AUDIT_TENANT_ID",
        "client_id": "M365AUDIT_CLIENT_ID",
        "certificate_path": "M365AUDIT_CERT_PATH",
        "certificate_thumbprint": "M365AUDIT_CERT_THUMBPRINT",
        "client_secret": "M365AUDIT_CLIENT_SECRET",
    }
    for key, env_name in env_map.items():
        m365[key] = fncLoadEnv(env_name, m365.get(key))
    return cfg


# ================================================================
# Function: fncSaveConfig
# Purpose : Save configuration file safely
# Notes   : Used after certificate creation to persist the thumbprint
# ================================================================
def fncSaveConfig(cfg: dict, config_path: str = None) -> None:
    path = pathlib.Path(config_path or (APP_HOME / "config.json"))
    fncEnsureFolder(path.parent)
    fncWriteJSON(str(path), cfg)
    fncPrintMessage(f"Configuration saved → {path}", "success")


# ================================================================
# Function: fncUpdateConfigField
# Purpose : Update a specific nested key in the config
# Notes   : Example: fncUpdateConfigField(cfg, "m365.client_id", "abc123")
# ================================================================
def fncUpdateConfigField(cfg: dict, path: str, value) -> dict:
    parts = path.split(".")
    ref = cfg
    for key in parts[:-1]:
        ref = ref.setdefault(key, {})
    ref[parts[-1]] = value
    fncPrintMessage(f"Updated config field: {path}", "debug")
    return cfg


# ================================================================
# Function: fncGetPolicy
# Purpose : Build the AuditPolicy from the config "policy" block
# ================================================================
def fncGetPolicy(cfg: dict) -> AuditPolicy:
    return AuditPolicy.from_dict(cfg.get("policy"))


# ================================================================
# Function: fncApplyCliOverrides
# Purpose : Apply command-line flags to the loaded config
# Notes   : Handles --debug, --org-name and --output
# ================================================================
def fncApplyCliOverrides(cfg: dict, args) -> dict:
    if getattr(args, "debug", False):
        cfg["debug"] = True
    if getattr(args, "org_name", None):
        cfg["organization_name"] = args.org_name
    if getattr(args, "output", None):
        cfg["reports_root"] = args.output
    return cfg


# ================================================================
# Function: fncIsDebug
# Purpose : Return whether debug mode is enabled in config
# ================================================================
def fncIsDebug(cfg: dict) -> bool:
    return bool(cfg.get("debug", False))
