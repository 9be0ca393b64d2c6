# ================================================================
# File     : utils.py
# Purpose  : Common helpers for M365RoleAudit (console, files, time)
# Notes    : Console output is the only logging channel; all file
#            writes go through a temp file so a failure leaves nothing
# ================================================================

import os
import csv
import json
import time
import uuid
import pathlib
import tempfile
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from colorama import Fore, Style, init as _colorama_init
from tabulate import tabulate

_colorama_init(autoreset=True)

DEBUG_ENABLED = False

_LEVELS = {
    "info": (Fore.CYAN, "[•]"),
    "warn": (Fore.YELLOW, "[!]"),
    "error": (Fore.RED, "[✗]"),
    "success": (Fore.GREEN, "[✓]"),
    "debug": (Fore.MAGENTA, "[∆]"),
}


# ================================================================
# Function: fncSetDebug
# Purpose : Globally enable/disable debug output
# Notes   : Called from main after parsing --debug
# ================================================================
def fncSetDebug(enabled: bool) -> None:
    global DEBUG_ENABLED
    DEBUG_ENABLED = bool(enabled)


# ================================================================
# Function: fncPrintMessage
# Purpose : Standardised console output with levels and colours
# Notes   : Levels: info, warn, error, success, debug
# ================================================================
def fncPrintMessage(message: str, level: str = "info") -> None:
    if level == "debug" and not DEBUG_ENABLED:
        return
    colour, mark = _LEVELS.get(level, ("", "[ ]"))
    print(f"{colour}{mark} {message}{Style.RESET_ALL}")


# ================================================================
# Function: fncDisplayBanner
# Purpose : Print the start-up banner
# ================================================================
def fncDisplayBanner(version: str = "v1.0") -> None:
    banner_lines = [
        " __  __ _____  __  ____    ____        _        _             _ _ _   ",
        "|  \\/  |___ / / /_| ___|  |  _ \\ ___ | | ___  / \\  _   _  __| (_) |_ ",
        "| |\\/| | |_ \\| '_ \\___ \\  | |_) / _ \\| |/ _ \\/ _ \\| | | |/ _` | | __|",
        "| |  | |___) | (_) |__) | |  _ < (_) | |  __/ ___ \\ |_| | (_| | | |_ ",
        "|_|  |_|____/ \\___/____/  |_| \\_\\___/|_|\\___/_/   \\_\\__,_|\\__,_|_|\\__|",
    ]
    print()
    for line in banner_lines:
        print(f"{Fore.BLUE}{line}{Style.RESET_ALL}")
    print(f"{Fore.CYAN}\nM365RoleAudit {version} - who holds the keys to your tenant{Style.RESET_ALL}\n")


# ================================================================
# Function: fncEnsureFolder
# Purpose : Create a folder if it does not exist
# Notes   : Returns pathlib.Path object
# ================================================================
def fncEnsureFolder(path) -> pathlib.Path:
    p = pathlib.Path(path).expanduser().resolve()
    p.mkdir(parents=True, exist_ok=True)
    return p


# ================================================================
# Function: fncLoadEnv
# Purpose : Read environment variable with default
# Notes   : Strips quotes; returns default if unset
# ================================================================
def fncLoadEnv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.getenv(name, default)
    if isinstance(val, str):
        return val.strip().strip('"').strip("'")
    return val


# ================================================================
# Function: fncReadJSON
# Purpose : Load JSON from file safely
# Notes   : Returns {} on failure when safe=True
# ================================================================
def fncReadJSON(path: str, safe: bool = True) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as ex:
        if safe:
            fncPrintMessage(f"Could not read JSON '{path}': {ex}", "warn")
            return {}
        raise


# ================================================================
# Function: fncAtomicWrite
# Purpose : Write a file through a sibling temp file + os.replace
# Notes   : writer(tmp_path) does the actual writing; on any error the
#           temp file is removed and the exception propagates
# ================================================================
def fncAtomicWrite(path, writer: Callable[[str], None]) -> pathlib.Path:
    p = pathlib.Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=str(p.parent))
    os.close(fd)
    try:
        writer(tmp)
        os.replace(tmp, p)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    return p


# ================================================================
# Function: fncWriteJSON
# Purpose : Write data to JSON with nice formatting
# Notes   : UTF-8; 2-space indent; datetimes via default=str
# ================================================================
def fncWriteJSON(path: str, data: Any) -> pathlib.Path:
    def _write(tmp: str) -> None:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)

    p = fncAtomicWrite(path, _write)
    fncPrintMessage(f"Saved JSON → {p}", "success")
    return p


# ================================================================
# Function: fncExportCSV
# Purpose : Save list[dict] to CSV
# Notes   : Headers follow the first row's key order, then any extras
# ================================================================
def fncExportCSV(path: str, rows: Iterable[Dict[str, Any]]) -> pathlib.Path:
    rows = list(rows)
    headers: List[str] = []
    for r in rows:
        for k in r.keys():
            if k not in headers:
                headers.append(k)

    def _write(tmp: str) -> None:
        with open(tmp, "w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=headers)
            if headers:
                w.writeheader()
            for r in rows:
                w.writerow({k: ("" if r.get(k) is None else r.get(k)) for k in headers})

    p = fncAtomicWrite(path, _write)
    if not rows:
        fncPrintMessage(f"Created empty CSV → {p}", "warn")
    else:
        fncPrintMessage(f"Saved CSV → {p}", "success")
    return p


# ================================================================
# Function: fncTimestamp
# Purpose : Return a timestamp string
# Notes   : compact=True gives a filename-safe form (20260101-120000)
# ================================================================
def fncTimestamp(compact: bool = False) -> str:
    now = datetime.now(timezone.utc)
    if compact:
        return now.strftime("%Y%m%d-%H%M%S")
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


# ================================================================
# Function: fncRetry
# Purpose : Call fn until it succeeds or attempts run out
# Notes   : Waits backoff**n seconds between tries; the last failure
#           is re-raised
# ================================================================
def fncRetry(fn, attempts: int = 3, backoff: float = 1.5, exceptions: Tuple = (Exception,)):
    attempt = 1
    while True:
        try:
            return fn()
        except exceptions as ex:
            if attempt >= attempts:
                fncPrintMessage(f"Giving up after {attempts} tries: {ex}", "error")
                raise
            delay = backoff ** (attempt - 1)
            fncPrintMessage(f"Try {attempt} of {attempts} failed ({ex}), next in {delay:.1f}s", "warn")
            time.sleep(delay)
            attempt += 1


# ================================================================
# Function: fncToTable
# Purpose : Console table (github format) for dict or list rows
# Notes   : max_rows truncates and appends a "...and N more" line
# ================================================================
def fncToTable(rows: Iterable[Any], headers: Optional[List[str]] = None, max_rows: Optional[int] = None) -> str:
    rows = list(rows)
    if not rows:
        return "(nothing to show)"

    hidden = len(rows) - max_rows if max_rows and len(rows) > max_rows else 0
    shown = rows[:len(rows) - hidden]

    if isinstance(shown[0], dict):
        columns = headers or list(shown[0])
        text = tabulate([[r.get(c, "") for c in columns] for r in shown], headers=columns, tablefmt="github")
    else:
        text = tabulate(shown, headers=headers or "firstrow", tablefmt="github")
    return f"{text}\n...and {hidden} more" if hidden else text


# ================================================================
# Function: fncMask
# Purpose : Hide the middle of a secret or thumbprint for display
# ================================================================
def fncMask(value: Optional[str], show: int = 4) -> str:
    if not value:
        return ""
    hidden = len(value) - 2 * show
    if hidden <= 0:
        return "*" * len(value)
    return value[:show] + "*" * hidden + value[-show:]


def fncNewRunId(prefix: str = "run") -> str:
    """Short id printed with each collector run, e.g. aad-1f3c9e2a."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"
