# ================================================================
# File     : module_loader.py
# Purpose  : Discover and run the data-collection modules
# Notes    : Each module under modules/m365 defines run(client, args)
#            returning a list of AuditRecords. Modules run one after
#            another; a failing module contributes no records.
# ================================================================

import importlib
import pathlib
import traceback
from typing import List, Optional

from core.records import AuditRecord
from core.utils import fncPrintMessage

MODULE_PACKAGE = "modules.m365"
MODULE_DIR = pathlib.Path(__file__).resolve().parent.parent / "modules" / "m365"


# ================================================================
# Function: fncLoadModule
# Purpose : Import a collector module by name
# Notes   : Returns the imported module or None if not found
# ================================================================
def fncLoadModule(module_name: str):
    mod_path = f"{MODULE_PACKAGE}.{module_name}"
    try:
        mod = importlib.import_module(mod_path)
    except ModuleNotFoundError:
        fncPrintMessage(f"Module not found: {module_name}", "error")
        return None
    fncPrintMessage(f"Loaded module: {mod_path}", "debug")
    return mod


# ================================================================
# Function: fncRunModule
# Purpose : Execute a collector's run(client, args)
# Notes   : Exceptions are reported and turned into an empty result
# ================================================================
def fncRunModule(module_name: str, client, args) -> List[AuditRecord]:
    mod = fncLoadModule(module_name)
    if not mod or not hasattr(mod, "run"):
        if mod:
            fncPrintMessage(f"Module {module_name} missing 'run' function.", "warn")
        return []
    try:
        fncPrintMessage(f"Starting module: {module_name}", "info")
        records = list(mod.run(client, args) or [])
    except Exception as ex:
        fncPrintMessage(f"Module {module_name} raised an exception: {ex}", "error")
        fncPrintMessage(traceback.format_exc(), "debug")
        return []
    fncPrintMessage(f"Module complete: {module_name} ({len(records)} records)", "success")
    return records


# ================================================================
# Function: fncDiscoverModules
# Purpose : List collector modules in modules/m365
# Notes   : Ignores __init__.py and files starting with '_'
# ================================================================
def fncDiscoverModules(base: Optional[pathlib.Path] = None) -> List[str]:
    base = base or MODULE_DIR
    if not base.is_dir():
        fncPrintMessage(f"No modules directory (expected: {base})", "warn")
        return []
    mods = [p.stem for p in sorted(base.iterdir())
            if p.is_file() and p.suffix == ".py" and not p.name.startswith("_")]
    fncPrintMessage(f"Discovered modules: {mods}", "debug")
    return mods


# ================================================================
# Function: fncRunAllModules
# Purpose : Run every discovered collector and concatenate records
# ================================================================
def fncRunAllModules(client, args, skip_list: Optional[List[str]] = None) -> List[AuditRecord]:
    skip_list = skip_list or []
    modules = fncDiscoverModules()
    if not modules:
        return []

    fncPrintMessage(f"Running {len(modules)} modules", "info")
    records: List[AuditRecord] = []
    for mod in modules:
        if mod in skip_list:
            fncPrintMessage(f"Skipping module (skip-list): {mod}", "debug")
            continue
        records.extend(fncRunModule(mod, client, args))

    fncPrintMessage(f"All modules completed ({len(records)} records).", "success")
    return records
