"""
m365-risk: offline compromise triage over exported Microsoft 365 identity and mail logs.

Reads the CSV exports under --logdir (sign-ins, audit log, inbox rules, mailbox
delegations, app registrations, MFA status, message trace, password changes),
runs the attack-pattern and mail-abuse detectors, and writes one risk record
per identity.

Outputs (under --outdir):
  - identity_risk.csv / .jsonl
  - attack_patterns.csv / .jsonl
  - abuse_indicators.csv / .jsonl
  - run_summary.json, report.md
  - report.xlsx (with --xlsx)
"""

from __future__ import annotations

import argparse
import logging
import sys
import warnings
from pathlib import Path
from typing import List, Optional

from .config import load_config
from .context import RunContext
from .errors import ConfigurationError, NoInputError
from .export import generate_report_md, write_results, write_xlsx
from .ingest import load_logdir, read_address_list
from .pipeline import run_triage

TOOL_VERSION = "1.0.0"


def setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noisy pandas warnings for mixed timestamp formats
    warnings.filterwarnings("ignore", message="Could not infer format")


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="m365-risk",
        description="Score Microsoft 365 identities for likely compromise from exported CSV logs.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--logdir", required=True, help="Folder with CSV exports (recursive).")
    p.add_argument("--outdir", default="./out", help="Output folder.")
    p.add_argument("--config", default="", help="Optional YAML file overriding thresholds and weights.")
    p.add_argument("--risky-ips", default="", help="Optional file with externally flagged addresses, one per line.")
    p.add_argument("--xlsx", action="store_true", help="Also write report.xlsx (openpyxl).")
    p.add_argument("--report-title", default="M365 Identity Risk Report", help="Title of report.md.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbose logs (-v info, -vv debug).")
    p.add_argument("--version", action="version", version=f"%(prog)s {TOOL_VERSION}")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging(args.verbose)

    logdir = Path(args.logdir).expanduser().resolve()
    outdir = Path(args.outdir).expanduser().resolve()

    if not logdir.exists():
        print(f"[!] logdir does not exist: {logdir}")
        return 2

    try:
        config = load_config(Path(args.config).expanduser().resolve() if args.config else None)
    except ConfigurationError as e:
        print(f"[!] configuration error: {e}")
        return 2

    risky: List[str] = []
    if args.risky_ips:
        risky_path = Path(args.risky_ips).expanduser().resolve()
        if not risky_path.exists():
            print(f"[!] risky address file does not exist: {risky_path}")
            return 2
        risky = read_address_list(risky_path)

    inputs = load_logdir(logdir, risky_addresses=risky)
    context = RunContext(config=config)
    try:
        result = run_triage(inputs, context)
    except NoInputError as e:
        print(f"[!] {e}")
        return 2

    paths = write_results(result, outdir)
    md_path = generate_report_md(result, outdir, title=args.report_title)
    xlsx_path = write_xlsx(result, outdir) if args.xlsx else None

    flagged = sum(1 for r in result.records if r.cumulative_score > 0)
    print("[OK] Analysis completed.")
    print(f" - Identities:  {len(result.records)} ({flagged} with findings)")
    print(f" - Risk:        {paths['identity_risk']}  (and identity_risk.jsonl)")
    print(f" - Patterns:    {paths['attack_patterns']}  (and attack_patterns.jsonl)")
    print(f" - Indicators:  {paths['abuse_indicators']}  (and abuse_indicators.jsonl)")
    print(f" - Summary:     {paths['run_summary']}")
    print(f" - Report MD:   {md_path}")
    if xlsx_path:
        print(f" - XLSX:        {xlsx_path}")
    if result.summary.degraded:
        print(" - Note: some records or sources were skipped; see run_summary.json")
    return 0


if __name__ == "__main__":
    sys.exit(main())
