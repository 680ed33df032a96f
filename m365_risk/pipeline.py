"""
Run orchestration: normalize -> detectors (in parallel) -> aggregation.

The attack-pattern detector and the mail content passes share no data and run
on separate worker threads. The risky-address correlation pass runs after
both finish, so it sees addresses flagged by sign-in risk, by the caller and by
the attack patterns. Aggregation is the single join point.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .aggregation import FindingSet, aggregate_all
from .attack_patterns import MULTIPLE_SOURCES, AttackPatternDetector
from .context import RunContext
from .errors import NoInputError
from .mail_abuse import MailAbuseDetector, indicator_sort_key
from .models import (
    AbuseIndicator,
    AttackPattern,
    AuthEvent,
    IdentityRiskRecord,
    PasswordChangeAnomaly,
    RiskTier,
    SourceKind,
)
from .normalizer import NormalizedBatch, RawRecords, normalize
from .password_changes import detect_password_change_anomalies

# MFA first so its display names win in the identity cache
NORMALIZE_ORDER = (
    SourceKind.MFA_STATUS,
    SourceKind.SIGNIN,
    SourceKind.ADMIN_AUDIT,
    SourceKind.MAIL_RULE,
    SourceKind.DELEGATION,
    SourceKind.APP_REGISTRATION,
    SourceKind.PASSWORD_CHANGE,
    SourceKind.MESSAGE_TRACE,
)


@dataclass
class TriageInputs:
    """Raw rows per source kind plus any externally flagged addresses."""

    sources: Dict[SourceKind, RawRecords] = field(default_factory=dict)
    risky_addresses: List[str] = field(default_factory=list)

    def add(self, kind: SourceKind, rows: RawRecords) -> None:
        self.sources[SourceKind(kind)] = rows


@dataclass
class TriageResult:
    attack_patterns: List[AttackPattern]
    abuse_indicators: List[AbuseIndicator]
    password_anomalies: List[PasswordChangeAnomaly]
    records: List[IdentityRiskRecord]
    findings: FindingSet
    context: RunContext

    @property
    def summary(self):
        return self.context.summary


def signin_risky_addresses(events: Iterable[AuthEvent]) -> Set[str]:
    """Source addresses of sign-ins the identity provider itself rated High or above."""
    return {ev.source_address for ev in events
            if ev.source_address and ev.risk_level is not None and ev.risk_level >= RiskTier.HIGH}


def normalize_inputs(inputs: TriageInputs, context: RunContext) -> Dict[SourceKind, NormalizedBatch]:
    batches: Dict[SourceKind, NormalizedBatch] = {}
    for kind in NORMALIZE_ORDER:
        batch = normalize(inputs.sources.get(kind), kind, context)
        if not batch.records:
            context.summary.record_missing(kind.value)
            logging.info(f"[run] no usable {kind.value} records; that category contributes nothing")
        batches[kind] = batch
    return batches


def run_triage(inputs: TriageInputs, context: Optional[RunContext] = None, max_workers: int = 3) -> TriageResult:
    """
    Full detection pass over one tenant's dataset.

    Raises NoInputError when no source produced a single usable record. Any
    other exception raised by a stage propagates; partial results are never
    returned.
    """
    ctx = context or RunContext()
    batches = normalize_inputs(inputs, ctx)
    if not any(batch.records for batch in batches.values()):
        raise NoInputError("no usable records in any input source; nothing to score")

    auth_events: List[AuthEvent] = batches[SourceKind.SIGNIN].records
    attack = AttackPatternDetector(ctx)
    mail = MailAbuseDetector(ctx)
    outbound = mail.outbound(batches[SourceKind.MESSAGE_TRACE].records)

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="m365-risk") as pool:
        f_patterns = pool.submit(attack.detect, auth_events)
        f_mail = pool.submit(mail.detect_content, outbound)
        f_pw = pool.submit(detect_password_change_anomalies, batches[SourceKind.PASSWORD_CHANGE].records, ctx)
        patterns = f_patterns.result()
        content_indicators = f_mail.result()
        pw_anomalies = f_pw.result()

    risky: Set[str] = {a.strip() for a in inputs.risky_addresses if a and a.strip()}
    risky |= signin_risky_addresses(auth_events)
    risky |= {p.source_address for p in patterns if p.source_address and p.source_address != MULTIPLE_SOURCES}
    indicators = content_indicators + mail.detect_risky_ip_correlation(outbound, sorted(risky))
    indicators.sort(key=indicator_sort_key)

    findings = FindingSet(
        auth_events=auth_events,
        admin_operations=batches[SourceKind.ADMIN_AUDIT].records,
        mail_rules=batches[SourceKind.MAIL_RULE].records,
        delegations=batches[SourceKind.DELEGATION].records,
        app_registrations=batches[SourceKind.APP_REGISTRATION].records,
        mfa_status=batches[SourceKind.MFA_STATUS].records,
        password_changes=batches[SourceKind.PASSWORD_CHANGE].records,
        attack_patterns=patterns,
        abuse_indicators=indicators,
        password_anomalies=pw_anomalies,
    )
    records = aggregate_all(findings, ctx)

    tiers = {t.value: sum(1 for r in records if r.risk_tier is t) for t in RiskTier}
    logging.info(f"[run] identities={len(records)} patterns={len(patterns)} indicators={len(indicators)} tiers={tiers}")
    if ctx.summary.degraded:
        logging.warning(f"[run] detection pass degraded: {ctx.summary.to_dict()}")

    return TriageResult(
        attack_patterns=patterns,
        abuse_indicators=indicators,
        password_anomalies=pw_anomalies,
        records=records,
        findings=findings,
        context=ctx,
    )
