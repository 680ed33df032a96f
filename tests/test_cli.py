from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd

from m365_risk.cli import main
from m365_risk.export import md_table, write_results
from m365_risk.models import SourceKind
from m365_risk.pipeline import TriageInputs, run_triage

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def signin_csv() -> str:
    lines = ["UserPrincipalName,CreatedDateTime,IPAddress,ResultType"]
    for m in (0, 2, 4, 6, 8, 10):
        lines.append(f"alice@corp.com,{(T0 + timedelta(minutes=m)).strftime('%Y-%m-%dT%H:%M:%SZ')},203.0.113.5,50126")
    lines.append(f"alice@corp.com,{(T0 + timedelta(minutes=15)).strftime('%Y-%m-%dT%H:%M:%SZ')},203.0.113.5,0")
    lines.append(f"bob@corp.com,{T0.strftime('%Y-%m-%dT%H:%M:%SZ')},198.51.100.7,0")
    return "\n".join(lines) + "\n"


def make_logdir(tmp_path: Path) -> Path:
    logdir = tmp_path / "logs"
    logdir.mkdir()
    (logdir / "SignInLogs.csv").write_text(signin_csv(), encoding="utf-8")
    (logdir / "MessageTrace.csv").write_text(
        "SenderAddress,RecipientAddress,Subject,ToIP,MessageId\n"
        "carol@corp.com,x@ext.example,status report,203.0.113.5,m-1\n",
        encoding="utf-8",
    )
    return logdir


def test_main_writes_all_outputs(tmp_path, capsys):
    logdir = make_logdir(tmp_path)
    outdir = tmp_path / "out"

    rc = main(["--logdir", str(logdir), "--outdir", str(outdir), "--xlsx", "--report-title", "Contoso triage"])

    assert rc == 0
    for name in ("identity_risk.csv", "identity_risk.jsonl", "attack_patterns.csv", "attack_patterns.jsonl",
                 "abuse_indicators.csv", "abuse_indicators.jsonl", "run_summary.json", "report.md", "report.xlsx"):
        assert (outdir / name).exists(), name

    risk = pd.read_csv(outdir / "identity_risk.csv")
    assert risk["identity"].tolist()[0] == "alice@corp.com"
    assert risk.loc[0, "risk_tier"] == "Critical"
    assert json.loads(risk.loc[0, "evidence"])["confirmed_breach"] == ["203.0.113.5 6 failures (Medium)"]

    rows = [json.loads(line) for line in (outdir / "abuse_indicators.jsonl").read_text(encoding="utf-8").splitlines()]
    assert [(r["sender_identity"], r["indicator_type"]) for r in rows] == [("carol@corp.com", "RiskyIPCorrelation")]

    summary = json.loads((outdir / "run_summary.json").read_text(encoding="utf-8"))
    assert summary["accepted"]["signin"] == 8
    assert "mfa_status" in summary["missing_sources"]

    report = (outdir / "report.md").read_text(encoding="utf-8")
    assert report.startswith("# Contoso triage")
    assert "ConfirmedBreach" in report

    assert "[OK] Analysis completed." in capsys.readouterr().out


def test_main_applies_config_and_risky_list(tmp_path):
    logdir = make_logdir(tmp_path)
    config = tmp_path / "risk.yaml"
    config.write_text("attack:\n  breach_min_failures: 7\n", encoding="utf-8")
    risky = tmp_path / "risky.txt"
    risky.write_text("198.51.100.7\n", encoding="utf-8")
    outdir = tmp_path / "out"

    rc = main(["--logdir", str(logdir), "--outdir", str(outdir), "--config", str(config), "--risky-ips", str(risky)])

    assert rc == 0
    patterns = pd.read_csv(outdir / "attack_patterns.csv")
    assert patterns.empty
    risk = pd.read_csv(outdir / "identity_risk.csv")
    assert risk["cumulative_score"].max() == 0


def test_main_rejects_bad_arguments(tmp_path):
    assert main(["--logdir", str(tmp_path / "missing")]) == 2

    logdir = make_logdir(tmp_path)
    bad = tmp_path / "bad.yaml"
    bad.write_text("weights:\n  mfa_absent: -5\n", encoding="utf-8")
    assert main(["--logdir", str(logdir), "--config", str(bad)]) == 2
    assert main(["--logdir", str(logdir), "--risky-ips", str(tmp_path / "nope.txt")]) == 2

    empty = tmp_path / "empty"
    empty.mkdir()
    assert main(["--logdir", str(empty), "--outdir", str(tmp_path / "out")]) == 2


def test_write_results_with_no_findings(tmp_path):
    inputs = TriageInputs()
    inputs.add(SourceKind.MFA_STATUS, [{"UserPrincipalName": "a@corp.com", "MFAStatus": "Enforced"}])
    paths = write_results(run_triage(inputs), tmp_path)

    assert pd.read_csv(paths["attack_patterns"]).empty
    assert (tmp_path / "attack_patterns.jsonl").read_text(encoding="utf-8") == ""
    assert pd.read_csv(paths["identity_risk"])["risk_tier"].tolist() == ["Low"]


def test_md_table():
    table = md_table([{"a": "x|y", "b": 1}], ["a", "b"])
    assert table.splitlines() == ["| a   | b |", "| --- | - |", "| x/y | 1 |"]
