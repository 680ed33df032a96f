"""Writers for the run outputs: CSV + JSONL per record type, a markdown report, optional XLSX."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pandas as pd

from .common import safe_str
from .models import RiskTier
from .pipeline import TriageResult

RISK_COLUMNS = ["identity", "display_name", "cumulative_score", "risk_tier"]
PATTERN_COLUMNS = [
    "pattern_type", "source_address", "target_identity", "failed_attempt_count", "distinct_identity_count",
    "time_span_hours", "first_seen", "last_seen", "risk_level", "confirmed_breach", "breach_time",
    "minutes_to_breach", "targeted_identities",
]
INDICATOR_COLUMNS = ["sender_identity", "indicator_type", "message_count", "risk_score", "detail", "evidence"]


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def _frame(rows: List[Dict[str, Any]], columns: List[str]) -> pd.DataFrame:
    if not rows:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame(rows)
    for c in df.columns:
        if df[c].map(lambda v: isinstance(v, (dict, list))).any():
            df[c] = df[c].map(lambda v: json.dumps(v, ensure_ascii=False, sort_keys=True))
    return df


def risk_records_frame(result: TriageResult) -> pd.DataFrame:
    return _frame([r.to_row() for r in result.records], RISK_COLUMNS)


def attack_patterns_frame(result: TriageResult) -> pd.DataFrame:
    return _frame([p.to_row() for p in result.attack_patterns], PATTERN_COLUMNS)


def abuse_indicators_frame(result: TriageResult) -> pd.DataFrame:
    return _frame([i.to_row() for i in result.abuse_indicators], INDICATOR_COLUMNS)


def _write_pair(rows: List[Dict[str, Any]], df: pd.DataFrame, outdir: Path, stem: str) -> Tuple[Path, Path]:
    csv_path = outdir / f"{stem}.csv"
    jsonl_path = outdir / f"{stem}.jsonl"
    df.to_csv(csv_path, index=False)
    with jsonl_path.open("w", encoding="utf-8") as f:
        for r in rows:
            f.write(json.dumps(r, ensure_ascii=False, sort_keys=True, default=str) + "\n")
    return csv_path, jsonl_path


def write_results(result: TriageResult, outdir: Path) -> Dict[str, Path]:
    ensure_dir(outdir)
    paths: Dict[str, Path] = {}
    paths["identity_risk"], _ = _write_pair([r.to_row() for r in result.records], risk_records_frame(result), outdir, "identity_risk")
    paths["attack_patterns"], _ = _write_pair([p.to_row() for p in result.attack_patterns], attack_patterns_frame(result), outdir, "attack_patterns")
    paths["abuse_indicators"], _ = _write_pair([i.to_row() for i in result.abuse_indicators], abuse_indicators_frame(result), outdir, "abuse_indicators")

    summary_path = outdir / "run_summary.json"
    summary_path.write_text(json.dumps(result.summary.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    paths["run_summary"] = summary_path
    return paths


# -----------------------------
# Markdown report
# -----------------------------

def md_table(rows: List[Dict[str, Any]], headers: List[str], max_rows: int = 25) -> str:
    """
    Lightweight markdown table without requiring tabulate.
    """
    rows = rows[:max_rows]
    widths = {h: len(h) for h in headers}
    for r in rows:
        for h in headers:
            widths[h] = max(widths[h], len(safe_str(r.get(h, ""))[:200]))

    def fmt_row(r: Dict[str, Any]) -> str:
        return "| " + " | ".join(safe_str(r.get(h, ""))[:200].replace("|", "/").ljust(widths[h]) for h in headers) + " |"
    head = "| " + " | ".join(h.ljust(widths[h]) for h in headers) + " |"
    sep = "| " + " | ".join("-" * widths[h] for h in headers) + " |"
    body = "\n".join(fmt_row(r) for r in rows) if rows else ""
    return "\n".join([head, sep, body]).strip()


def generate_report_md(result: TriageResult, outdir: Path, title: str = "M365 Identity Risk Report") -> Path:
    ensure_dir(outdir)
    p = outdir / "report.md"
    tier_counts = [{"tier": t.value, "identities": sum(1 for r in result.records if r.risk_tier is t)}
                   for t in sorted(RiskTier, reverse=True)]
    summary = result.summary.to_dict()

    md = [f"# {title}", ""]
    md.append("## Identities by tier")
    md.append(md_table(tier_counts, ["tier", "identities"]))
    md.append("")
    md.append("## Highest risk identities (top 50)")
    top = [r.to_row() for r in result.records if r.cumulative_score > 0][:50]
    md.append(md_table(top, RISK_COLUMNS, max_rows=50) if top else "_No identity scored above zero._")
    md.append("")
    md.append("## Attack patterns")
    rows = [p.to_row() for p in result.attack_patterns]
    md.append(md_table(rows, ["pattern_type", "source_address", "target_identity", "failed_attempt_count",
                              "distinct_identity_count", "risk_level", "minutes_to_breach"], max_rows=50) if rows else "_None detected._")
    md.append("")
    md.append("## Mail abuse indicators")
    rows = [i.to_row() for i in result.abuse_indicators]
    md.append(md_table(rows, ["sender_identity", "indicator_type", "message_count", "risk_score", "detail"], max_rows=50) if rows else "_None detected._")
    md.append("")
    md.append("## Run completeness")
    md.append(f"- Records accepted: {summary['accepted']}")
    md.append(f"- Records dropped: {summary['dropped']}")
    md.append(f"- Events skipped by detectors: {summary['skipped']}")
    md.append(f"- Missing sources: {', '.join(summary['missing_sources']) or 'none'}")
    md.append("")
    p.write_text("\n".join(md), encoding="utf-8")
    return p


def write_xlsx(result: TriageResult, outdir: Path) -> Path:
    ensure_dir(outdir)
    p = outdir / "report.xlsx"
    with pd.ExcelWriter(p, engine="openpyxl") as writer:
        risk_records_frame(result).to_excel(writer, index=False, sheet_name="identity_risk")
        attack_patterns_frame(result).to_excel(writer, index=False, sheet_name="attack_patterns")
        abuse_indicators_frame(result).to_excel(writer, index=False, sheet_name="abuse_indicators")
    return p
