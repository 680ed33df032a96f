"""Small helpers shared across modules (string coercion, timestamps, columns)."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd


def safe_str(x: Any) -> str:
    if x is None:
        return ""
    try:
        if pd.isna(x):
            return ""
    except (TypeError, ValueError):
        pass
    return str(x).strip()


_EPOCH_RE = re.compile(r"^\d{10,13}(\.\d+)?$")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse one timestamp into an aware UTC datetime.

    Accepts datetime / pandas Timestamp objects, ISO and "mixed" strings, and
    epoch seconds or milliseconds. Returns None when the value is empty or
    unparseable.
    """
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = safe_str(value)
        if not text:
            return None
        try:
            if _EPOCH_RE.match(text):
                num = float(text)
                ts = pd.to_datetime(num, unit="ms" if num > 1e12 else "s", utc=True)
            else:
                ts = pd.to_datetime(text, errors="coerce", utc=True)
        except (ValueError, OverflowError, TypeError):
            return None
        if ts is None or pd.isna(ts):
            return None
        dt = ts.to_pydatetime()

    if isinstance(dt, pd.Timestamp):
        if pd.isna(dt):
            return None
        dt = dt.to_pydatetime()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


_TRUE_WORDS = {"true", "yes", "y", "1", "enabled", "enforced", "on", "registered", "capable"}
_FALSE_WORDS = {"false", "no", "n", "0", "disabled", "off", "none", "notregistered", "not registered"}


def parse_bool(value: Any) -> Optional[bool]:
    """Normalize the many boolean spellings found in exports; None when unknown."""
    if isinstance(value, bool):
        return value
    text = safe_str(value).lower()
    if not text:
        return None
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    try:
        return float(text) != 0.0
    except ValueError:
        return None


def canonical_column(name: Any) -> str:
    """'User Principal Name', 'user_principal_name' and 'userPrincipalName' all become 'userprincipalname'."""
    return re.sub(r"[\s_\-\.\(\)/]+", "", safe_str(name).lower())


def find_col(columns: Iterable[str], candidates: Sequence[str], substring: bool = False) -> Optional[str]:
    """
    Return the first column whose canonical form equals a candidate's, honouring candidate order.

    With substring=True a second pass accepts the first column (in column order)
    whose canonical name contains a candidate, e.g. 'Date (UTC)' for 'Date'.
    """
    cols = list(columns)
    lookup: Dict[str, str] = {}
    for c in cols:
        lookup.setdefault(canonical_column(c), c)
    cands = [canonical_column(c) for c in candidates]

    # exact
    for cand in cands:
        hit = lookup.get(cand)
        if hit is not None:
            return hit

    # substring
    if substring:
        for c in cols:
            cl = canonical_column(c)
            for cand in cands:
                if cand and cand in cl:
                    return c
    return None


def sample(values: Iterable[Any], limit: int) -> tuple:
    """First `limit` distinct non-empty values, in input order."""
    out: List[str] = []
    seen = set()
    for v in values:
        s = safe_str(v)
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
        if len(out) >= limit:
            break
    return tuple(out)


def hours_between(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() / 3600.0, 2)


def iso(dt: Optional[datetime]) -> str:
    return dt.isoformat() if dt else ""
