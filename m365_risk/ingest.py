"""
Offline loading of exported CSV files into TriageInputs.

Robust to messy exports: BOM, Excel "sep=," first line, unknown delimiters,
latin1 files and empty files. Each file is assigned a source kind from its
name, falling back to its header.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from pandas.errors import EmptyDataError, ParserError

from .common import canonical_column
from .models import SourceKind
from .pipeline import TriageInputs


# -----------------------------
# CSV robustness helpers
# -----------------------------

DELIMITER_CANDIDATES = [",", ";", "\t", "|"]


def sniff_delimiter(path: Path) -> str:
    try:
        with path.open("r", encoding="utf-8-sig", errors="ignore") as f:
            sample = f.read(8192)
        lines = sample.splitlines()
        if lines and lines[0].lower().startswith("sep="):
            sample = "\n".join(lines[1:])
        return csv.Sniffer().sniff(sample, delimiters="".join(DELIMITER_CANDIDATES)).delimiter
    except (csv.Error, OSError):
        return ","


def detect_skiprows_for_excel_sep(path: Path) -> int:
    try:
        with path.open("r", encoding="utf-8-sig", errors="ignore") as f:
            first = f.readline().strip().lower()
    except OSError:
        return 0
    return 1 if first.startswith("sep=") else 0


def read_csv_any(path: Path, delimiter: str, **kwargs) -> pd.DataFrame:
    """
    read_csv wrapper:
    - skips the Excel/portal first line "sep=,"
    - tries engine='c' then engine='python'
    - tries encoding utf-8-sig then latin1
    """
    if kwargs.get("skiprows") is None:
        kwargs["skiprows"] = detect_skiprows_for_excel_sep(path)

    last_err: Optional[Exception] = None
    for enc in ("utf-8-sig", "latin1"):
        for engine in ("c", "python"):
            try:
                return pd.read_csv(path, encoding=enc, sep=delimiter, engine=engine, **kwargs)
            except EmptyDataError:
                raise
            except (ParserError, UnicodeDecodeError, ValueError) as e:
                last_err = e

    assert last_err is not None
    raise last_err


# -----------------------------
# Source kind detection
# -----------------------------

NAME_HINTS = [
    (SourceKind.MFA_STATUS, ("mfa", "strongauth")),
    (SourceKind.PASSWORD_CHANGE, ("passwordchange", "passwordreset", "password")),
    (SourceKind.MESSAGE_TRACE, ("messagetrace", "mailtrace", "tracemessage")),
    (SourceKind.MAIL_RULE, ("inboxrule", "mailrule", "mailboxrule")),
    (SourceKind.DELEGATION, ("delegat", "mailboxpermission", "folderpermission")),
    (SourceKind.APP_REGISTRATION, ("appregistration", "serviceprincipal", "enterpriseapp", "oauthapp", "applications")),
    (SourceKind.SIGNIN, ("signin", "logon", "login")),
    (SourceKind.ADMIN_AUDIT, ("audit", "ual", "unified", "adminlog")),
]

COLUMN_HINTS = [
    (SourceKind.MESSAGE_TRACE, {"senderaddress", "recipientaddress"}),
    (SourceKind.MAIL_RULE, {"mailboxownerid"}),
    (SourceKind.MAIL_RULE, {"forwardto", "name"}),
    (SourceKind.DELEGATION, {"accessrights", "user"}),
    (SourceKind.MFA_STATUS, {"userprincipalname", "mfastatus"}),
    (SourceKind.MFA_STATUS, {"userprincipalname", "strongauthenticationrequirements"}),
    (SourceKind.APP_REGISTRATION, {"appid", "displayname"}),
    (SourceKind.SIGNIN, {"userprincipalname", "ipaddress", "resulttype"}),
    (SourceKind.SIGNIN, {"userprincipalname", "appdisplayname"}),
    (SourceKind.ADMIN_AUDIT, {"auditdata"}),
    (SourceKind.ADMIN_AUDIT, {"operation", "userid"}),
]


def detect_source_kind(path: Path, columns: Optional[List[str]] = None) -> Optional[SourceKind]:
    name = canonical_column(path.stem)
    for kind, hints in NAME_HINTS:
        if any(h in name for h in hints):
            return kind
    if columns:
        cols = {canonical_column(c) for c in columns}
        for kind, required in COLUMN_HINTS:
            if required <= cols:
                return kind
    return None


# -----------------------------
# Directory loading
# -----------------------------

def load_csv(path: Path) -> Optional[pd.DataFrame]:
    if path.stat().st_size < 5:
        logging.warning(f"[skip] empty file: {path.name}")
        return None
    delimiter = sniff_delimiter(path)
    try:
        return read_csv_any(path, delimiter, dtype=str, keep_default_na=False)
    except EmptyDataError:
        logging.warning(f"[skip] EmptyDataError: {path.name}")
        return None


def load_logdir(logdir: Path, risky_addresses: Optional[List[str]] = None) -> TriageInputs:
    """Read every CSV under logdir (recursively) and group the rows by source kind."""
    frames: Dict[SourceKind, List[pd.DataFrame]] = {}
    csv_files = sorted(p for p in logdir.rglob("*.csv") if p.is_file())
    if not csv_files:
        logging.warning(f"[ingest] no CSV files found under {logdir}")

    for f in csv_files:
        try:
            df = load_csv(f)
        except (ParserError, UnicodeDecodeError, ValueError, OSError) as e:
            logging.error(f"[error] reading {f.name}: {e}")
            continue
        if df is None or df.empty:
            continue
        kind = detect_source_kind(f, [str(c) for c in df.columns])
        if kind is None:
            logging.info(f"[skip] unknown source kind: {f.name}")
            continue
        logging.info(f"[{kind.value}] {f.name}: {len(df)} rows")
        frames.setdefault(kind, []).append(df)

    inputs = TriageInputs(risky_addresses=list(risky_addresses or []))
    for kind in sorted(frames, key=lambda k: k.value):
        parts = frames[kind]
        inputs.add(kind, parts[0] if len(parts) == 1 else pd.concat(parts, ignore_index=True, sort=False))
    return inputs


def read_address_list(path: Path) -> List[str]:
    """One address per line; blank lines and '#' comments are ignored."""
    out: List[str] = []
    for line in path.read_text(encoding="utf-8-sig").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            out.append(line)
    return out
