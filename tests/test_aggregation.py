from __future__ import annotations

from datetime import datetime, timedelta, timezone

from m365_risk.aggregation import (
    CONFIRMED_BREACH,
    HIGH_RISK_SIGNIN,
    MFA_ABSENT,
    PASSWORD_SPRAY,
    SUSPICIOUS_MAIL_RULE,
    FindingSet,
    IdentityFindings,
    aggregate,
    aggregate_all,
)
from m365_risk.config import DetectionConfig, TierThresholds, config_from_dict
from m365_risk.context import RunContext
from m365_risk.models import (
    AbuseIndicator,
    AdminOperationEvent,
    AppRegistrationFinding,
    AttackPattern,
    AuthEvent,
    IndicatorType,
    MailRuleFinding,
    MFAStatusRecord,
    Outcome,
    PasswordChangeAnomaly,
    PatternType,
    RiskTier,
)

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def breach(identity="alice@corp", address="203.0.113.5", failures=6, tier=RiskTier.MEDIUM):
    return AttackPattern(
        pattern_type=PatternType.CONFIRMED_BREACH,
        source_address=address,
        target_identity=identity,
        failed_attempt_count=failures,
        distinct_identity_count=1,
        time_span_hours=0.25,
        first_seen=T0,
        last_seen=T0 + timedelta(minutes=15),
        risk_level=tier,
        confirmed_breach=True,
        targeted_identities=(identity,),
        breach_time=T0 + timedelta(minutes=15),
        minutes_to_breach=5.0,
    )


def spray(targets, tier=RiskTier.CRITICAL):
    return AttackPattern(
        pattern_type=PatternType.PASSWORD_SPRAY,
        source_address="198.51.100.9",
        target_identity=None,
        failed_attempt_count=60,
        distinct_identity_count=len(targets),
        time_span_hours=3.0,
        first_seen=T0,
        last_seen=T0 + timedelta(hours=3),
        risk_level=tier,
        targeted_identities=tuple(targets),
    )


def signin(identity, minutes=0, country="", risk=None):
    return AuthEvent(
        timestamp=T0 + timedelta(minutes=minutes),
        identity=identity,
        source_address="192.0.2.1",
        outcome=Outcome.SUCCESS,
        country=country,
        risk_level=risk,
    )


def by_identity(records):
    return {r.identity: r for r in records}


def test_confirmed_breach_adds_fifty_points():
    record = aggregate("alice@corp", IdentityFindings(attack_patterns=[breach()]))
    assert record.cumulative_score == 50
    assert record.risk_tier is RiskTier.CRITICAL
    assert record.category_counts[CONFIRMED_BREACH] == 1
    assert record.evidence[CONFIRMED_BREACH] == ("203.0.113.5 6 failures (Medium)",)


def test_tier_boundaries():
    tiers = TierThresholds()
    assert tiers.classify(0) is RiskTier.LOW
    assert tiers.classify(14) is RiskTier.LOW
    assert tiers.classify(15) is RiskTier.MEDIUM
    assert tiers.classify(29) is RiskTier.MEDIUM
    assert tiers.classify(30) is RiskTier.HIGH
    assert tiers.classify(49) is RiskTier.HIGH
    assert tiers.classify(50) is RiskTier.CRITICAL


def test_mfa_absent_and_admin_bonus():
    findings = FindingSet(mfa_status=[
        MFAStatusRecord("admin@corp", mfa_enabled=False, is_admin=True),
        MFAStatusRecord("user@corp", mfa_enabled=False),
        MFAStatusRecord("safe@corp", mfa_enabled=True, is_admin=True),
    ])
    records = by_identity(aggregate_all(findings))

    assert records["admin@corp"].cumulative_score == 50
    assert records["admin@corp"].risk_tier is RiskTier.CRITICAL
    assert records["user@corp"].cumulative_score == 40
    assert records["user@corp"].risk_tier is RiskTier.HIGH
    assert records["safe@corp"].cumulative_score == 0
    assert records["safe@corp"].risk_tier is RiskTier.LOW


def test_mfa_enabled_in_any_record_wins():
    findings = IdentityFindings(mfa_status=[
        MFAStatusRecord("u@corp", mfa_enabled=False),
        MFAStatusRecord("u@corp", mfa_enabled=True),
    ])
    assert aggregate("u@corp", findings).category_counts[MFA_ABSENT] == 0


def test_spray_points_go_to_every_targeted_identity():
    targets = [f"victim{i}@corp" for i in range(3)]
    records = aggregate_all(FindingSet(attack_patterns=[spray(targets)]))

    assert [r.identity for r in records] == targets
    assert all(r.cumulative_score == 50 for r in records)
    assert all(r.category_counts[PASSWORD_SPRAY] == 1 for r in records)


def test_pattern_points_follow_tier():
    findings = IdentityFindings(attack_patterns=[spray(["v@corp"], RiskTier.MEDIUM)])
    assert aggregate("v@corp", findings).cumulative_score == 20


def test_high_risk_signin_scores_once():
    events = [signin("bob@corp", m, risk=RiskTier.HIGH) for m in range(3)]
    events.append(signin("bob@corp", 10, risk=RiskTier.MEDIUM))
    record = aggregate("bob@corp", IdentityFindings(auth_events=events))

    assert record.cumulative_score == 15
    assert record.category_counts[HIGH_RISK_SIGNIN] == 3
    assert record.risk_tier is RiskTier.MEDIUM


def test_unusual_location_needs_trusted_countries():
    events = [signin("carol@corp", 0, country="RU"), signin("carol@corp", 5, country="US")]
    assert aggregate("carol@corp", IdentityFindings(auth_events=events)).cumulative_score == 0

    cfg = config_from_dict({"trusted_countries": ["US"]})
    assert aggregate("carol@corp", IdentityFindings(auth_events=events), cfg).cumulative_score == 5


def test_each_suspicious_rule_scores_and_evidence_is_bounded():
    rules = [MailRuleFinding("dave@corp", f"rule{i}", True, ("forwards externally",)) for i in range(8)]
    rules.append(MailRuleFinding("dave@corp", "benign", False))
    record = aggregate("dave@corp", IdentityFindings(mail_rules=rules))

    assert record.cumulative_score == 8 * 15
    assert record.category_counts[SUSPICIOUS_MAIL_RULE] == 8
    assert len(record.evidence[SUSPICIOUS_MAIL_RULE]) == DetectionConfig().evidence_limit
    assert record.evidence[SUSPICIOUS_MAIL_RULE][0] == "rule0: forwards externally"


def test_app_registrations_land_on_tenant_record():
    findings = FindingSet(app_registrations=[
        AppRegistrationFinding("Mailer", "11111111-1111-1111-1111-111111111111", True, ("Mail.Send",)),
        AppRegistrationFinding("Intranet", "22222222-2222-2222-2222-222222222222", False),
    ])
    [record] = aggregate_all(findings)
    assert record.identity == "(tenant)"
    assert record.display_name == "Tenant-wide"
    assert record.cumulative_score == 20
    assert record.risk_tier is RiskTier.MEDIUM


def test_mixed_signals_add_up():
    findings = IdentityFindings(
        admin_operations=[
            AdminOperationEvent(T0, "erin@corp", "Add member to role.", risk_level=RiskTier.CRITICAL),
            AdminOperationEvent(T0, "erin@corp", "UserLoggedIn"),
        ],
        abuse_indicators=[AbuseIndicator("erin@corp", IndicatorType.EXCESSIVE_VOLUME, 150, 15, detail="150 outbound messages")],
        password_anomalies=[PasswordChangeAnomaly("erin@corp", 3, 60, ("rapid_changes: >=3 in 24h",))],
    )
    record = aggregate("erin@corp", findings)
    assert record.cumulative_score == 10 + 15 + 60
    assert record.risk_tier is RiskTier.CRITICAL


def test_identities_are_merged_case_insensitively():
    findings = FindingSet(
        attack_patterns=[breach(identity="Alice@Corp")],
        mfa_status=[MFAStatusRecord("alice@corp", mfa_enabled=False, display_name="Alice Example")],
    )
    [record] = aggregate_all(findings)
    assert record.identity == "alice@corp"
    assert record.cumulative_score == 90
    assert record.display_name == "Alice Example"


def test_only_identities_seen_in_sources_get_records():
    findings = FindingSet(auth_events=[signin("quiet@corp")])
    records = aggregate_all(findings)
    assert [(r.identity, r.cumulative_score, r.risk_tier) for r in records] == [("quiet@corp", 0, RiskTier.LOW)]


def test_records_sorted_by_score_then_identity():
    findings = FindingSet(
        mfa_status=[MFAStatusRecord("b@corp", False), MFAStatusRecord("a@corp", False), MFAStatusRecord("c@corp", True)],
        attack_patterns=[breach(identity="z@corp")],
    )
    assert [r.identity for r in aggregate_all(findings)] == ["z@corp", "a@corp", "b@corp", "c@corp"]


def test_aggregation_is_order_independent():
    rules = [MailRuleFinding("f@corp", f"r{i}", True, (f"reason {i}",)) for i in range(7)]
    events = [signin("f@corp", m, risk=RiskTier.HIGH) for m in range(6)]
    forward = FindingSet(mail_rules=list(rules), auth_events=list(events), attack_patterns=[breach("f@corp")])
    backward = FindingSet(mail_rules=rules[::-1], auth_events=events[::-1], attack_patterns=[breach("f@corp")])

    assert aggregate_all(forward) == aggregate_all(backward)


def test_display_name_cache_is_used():
    ctx = RunContext()
    ctx.remember_display_name("Grace@Corp", "Grace Example")
    ctx.remember_display_name("grace@corp", "Someone Else")
    [record] = aggregate_all(FindingSet(auth_events=[signin("grace@corp")]), ctx)
    assert record.display_name == "Grace Example"
