"""
Risk aggregation: folds every finding for an identity into one score and tier.

The engine is a pure reduction. Each finding adds a fixed, signal-specific
number of points, the sum is classified through fixed tier thresholds, and the
same finding set always yields the same record regardless of input order.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import DetectionConfig
from .context import RunContext, identity_key
from .models import (
    AbuseIndicator,
    AdminOperationEvent,
    AppRegistrationFinding,
    AttackPattern,
    AuthEvent,
    DelegationFinding,
    IdentityRiskRecord,
    MailRuleFinding,
    MFAStatusRecord,
    PasswordChangeAnomaly,
    PasswordChangeEvent,
    PatternType,
    RiskTier,
)

# Category names used in category_counts / evidence
UNUSUAL_LOCATION = "unusual_location"
HIGH_RISK_SIGNIN = "high_risk_signin"
HIGH_RISK_ADMIN_OPERATION = "high_risk_admin_operation"
SUSPICIOUS_MAIL_RULE = "suspicious_mail_rule"
SUSPICIOUS_DELEGATION = "suspicious_delegation"
HIGH_RISK_APP_REGISTRATION = "high_risk_app_registration"
MFA_ABSENT = "mfa_absent"
ADMIN_WITHOUT_MFA = "admin_without_mfa"
PASSWORD_SPRAY = "password_spray"
BRUTE_FORCE = "brute_force"
CONFIRMED_BREACH = "confirmed_breach"
MAIL_ABUSE = "mail_abuse"
PASSWORD_CHANGE_ANOMALY = "password_change_anomaly"

CATEGORIES = (
    UNUSUAL_LOCATION, HIGH_RISK_SIGNIN, HIGH_RISK_ADMIN_OPERATION, SUSPICIOUS_MAIL_RULE,
    SUSPICIOUS_DELEGATION, HIGH_RISK_APP_REGISTRATION, MFA_ABSENT, ADMIN_WITHOUT_MFA,
    PASSWORD_SPRAY, BRUTE_FORCE, CONFIRMED_BREACH, MAIL_ABUSE, PASSWORD_CHANGE_ANOMALY,
)

_PATTERN_CATEGORY = {
    PatternType.PASSWORD_SPRAY: PASSWORD_SPRAY,
    PatternType.BRUTE_FORCE: BRUTE_FORCE,
    PatternType.CONFIRMED_BREACH: CONFIRMED_BREACH,
}


@dataclass
class FindingSet:
    """Everything the detectors and the normalizer produced for one run."""

    auth_events: List[AuthEvent] = field(default_factory=list)
    admin_operations: List[AdminOperationEvent] = field(default_factory=list)
    mail_rules: List[MailRuleFinding] = field(default_factory=list)
    delegations: List[DelegationFinding] = field(default_factory=list)
    app_registrations: List[AppRegistrationFinding] = field(default_factory=list)
    mfa_status: List[MFAStatusRecord] = field(default_factory=list)
    password_changes: List[PasswordChangeEvent] = field(default_factory=list)
    attack_patterns: List[AttackPattern] = field(default_factory=list)
    abuse_indicators: List[AbuseIndicator] = field(default_factory=list)
    password_anomalies: List[PasswordChangeAnomaly] = field(default_factory=list)


@dataclass
class IdentityFindings:
    """The slice of a FindingSet that belongs to one identity."""

    auth_events: List[AuthEvent] = field(default_factory=list)
    admin_operations: List[AdminOperationEvent] = field(default_factory=list)
    mail_rules: List[MailRuleFinding] = field(default_factory=list)
    delegations: List[DelegationFinding] = field(default_factory=list)
    app_registrations: List[AppRegistrationFinding] = field(default_factory=list)
    mfa_status: List[MFAStatusRecord] = field(default_factory=list)
    attack_patterns: List[AttackPattern] = field(default_factory=list)
    abuse_indicators: List[AbuseIndicator] = field(default_factory=list)
    password_anomalies: List[PasswordChangeAnomaly] = field(default_factory=list)


def collect_findings(findings: FindingSet, config: DetectionConfig) -> Dict[str, IdentityFindings]:
    """Bucket findings per identity. Only identities present in some source get a bucket."""
    buckets: Dict[str, IdentityFindings] = defaultdict(IdentityFindings)

    for ev in findings.auth_events:
        buckets[identity_key(ev.identity)].auth_events.append(ev)
    for op in findings.admin_operations:
        buckets[identity_key(op.identity)].admin_operations.append(op)
    for rule in findings.mail_rules:
        buckets[identity_key(rule.identity)].mail_rules.append(rule)
    for d in findings.delegations:
        buckets[identity_key(d.identity)].delegations.append(d)
    tenant = identity_key(config.tenant_identity)
    for app in findings.app_registrations:
        buckets[tenant].app_registrations.append(app)
    for m in findings.mfa_status:
        buckets[identity_key(m.identity)].mfa_status.append(m)
    for pc in findings.password_changes:
        # raw changes only materialize the identity; scoring comes from password_anomalies
        buckets[identity_key(pc.identity)]
    for p in findings.attack_patterns:
        targets = p.targeted_identities or ((p.target_identity,) if p.target_identity else ())
        for target in targets:
            buckets[identity_key(target)].attack_patterns.append(p)
    for ind in findings.abuse_indicators:
        buckets[identity_key(ind.sender_identity)].abuse_indicators.append(ind)
    for a in findings.password_anomalies:
        buckets[identity_key(a.identity)].password_anomalies.append(a)

    buckets.pop("", None)
    return dict(buckets)


class _Tally:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.score = 0
        self.counts: Dict[str, int] = {c: 0 for c in CATEGORIES}
        self.evidence: Dict[str, set] = defaultdict(set)

    def add(self, category: str, points: int, evidence: str, count: int = 1) -> None:
        self.score += points
        self.counts[category] += count
        if evidence:
            self.evidence[category].add(evidence)

    def bounded_evidence(self) -> Dict[str, tuple]:
        return {c: tuple(sorted(items)[: self.limit]) for c, items in sorted(self.evidence.items()) if items}


def aggregate(identity: str, findings: IdentityFindings, config: Optional[DetectionConfig] = None,
              display_name: str = "") -> IdentityRiskRecord:
    """Score one identity. Order of the findings inside each list does not matter."""
    cfg = config or DetectionConfig()
    w = cfg.weights
    tally = _Tally(cfg.evidence_limit)
    trusted = {c.strip().lower() for c in cfg.trusted_countries if c.strip()}

    # Sign-ins
    risky_signins = []
    for ev in findings.auth_events:
        if ev.is_success and trusted and ev.country and ev.country.strip().lower() not in trusted:
            tally.add(UNUSUAL_LOCATION, w.unusual_location, f"{ev.timestamp.isoformat()} {ev.country} {ev.source_address}")
        if ev.risk_level is not None and ev.risk_level >= RiskTier.HIGH:
            risky_signins.append(ev)
    if risky_signins:
        tally.add(HIGH_RISK_SIGNIN, w.high_risk_signin, "", count=len(risky_signins))
        for ev in risky_signins:
            tally.evidence[HIGH_RISK_SIGNIN].add(f"{ev.timestamp.isoformat()} {ev.risk_level.value} {ev.source_address}")

    # Admin operations
    for op in findings.admin_operations:
        if op.risk_level is not None and op.risk_level >= RiskTier.HIGH:
            tally.add(HIGH_RISK_ADMIN_OPERATION, w.high_risk_admin_operation, f"{op.timestamp.isoformat()} {op.operation}")

    # Mailbox configuration
    for rule in findings.mail_rules:
        if rule.suspicious:
            tally.add(SUSPICIOUS_MAIL_RULE, w.suspicious_mail_rule, f"{rule.rule_name}: {'; '.join(rule.reasons)}".rstrip(": "))
    for d in findings.delegations:
        if d.suspicious:
            tally.add(SUSPICIOUS_DELEGATION, w.suspicious_delegation, f"{d.delegate} ({d.access_rights})")
    for app in findings.app_registrations:
        if app.high_risk:
            tally.add(HIGH_RISK_APP_REGISTRATION, w.high_risk_app_registration, f"{app.app_name}: {'; '.join(app.reasons)}".rstrip(": "))

    # MFA
    if findings.mfa_status:
        enabled = any(m.mfa_enabled for m in findings.mfa_status)
        is_admin = any(m.is_admin for m in findings.mfa_status)
        if not enabled:
            tally.add(MFA_ABSENT, w.mfa_absent, "no MFA enforcement or registration")
            if is_admin:
                tally.add(ADMIN_WITHOUT_MFA, w.admin_without_mfa, "administrative role without MFA")

    # Attack patterns
    for p in findings.attack_patterns:
        category = _PATTERN_CATEGORY[p.pattern_type]
        if p.pattern_type is PatternType.CONFIRMED_BREACH or p.confirmed_breach:
            points = w.confirmed_breach
        else:
            points = w.pattern_points(p.risk_level)
        tally.add(category, points, f"{p.source_address} {p.failed_attempt_count} failures ({p.risk_level.value})")

    # Mail abuse
    for ind in findings.abuse_indicators:
        tally.add(MAIL_ABUSE, ind.risk_score, f"{ind.indicator_type.value}: {ind.detail}")

    # Password changes
    for a in findings.password_anomalies:
        tally.add(PASSWORD_CHANGE_ANOMALY, a.score, "; ".join(a.triggered_rules))

    if not display_name:
        names = sorted({m.display_name for m in findings.mfa_status if m.display_name}
                       | {ev.display_name for ev in findings.auth_events if ev.display_name})
        display_name = names[0] if names else ""

    score = max(0, tally.score)
    return IdentityRiskRecord(
        identity=identity,
        display_name=display_name,
        cumulative_score=score,
        risk_tier=cfg.tiers.classify(score),
        category_counts=dict(tally.counts),
        evidence=tally.bounded_evidence(),
    )


def record_sort_key(r: IdentityRiskRecord):
    return (-r.cumulative_score, r.identity)


def aggregate_all(findings: FindingSet, context: Optional[RunContext] = None) -> List[IdentityRiskRecord]:
    """One record per identity seen in any source, sorted by score descending then identity."""
    ctx = context or RunContext()
    cfg = ctx.config
    buckets = collect_findings(findings, cfg)
    tenant = identity_key(cfg.tenant_identity)

    records: List[IdentityRiskRecord] = []
    for identity in sorted(buckets):
        default_name = "Tenant-wide" if identity == tenant else ""
        name = ctx.display_name_for(identity, default_name)
        records.append(aggregate(identity, buckets[identity], cfg, display_name=name))
    records.sort(key=record_sort_key)
    return records
