from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from m365_risk.attack_patterns import MULTIPLE_SOURCES, AttackPatternDetector
from m365_risk.context import RunContext
from m365_risk.models import AuthEvent, Outcome, PatternType, RiskTier

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def auth(identity, address, minutes, outcome=Outcome.FAILURE):
    return AuthEvent(
        timestamp=T0 + timedelta(minutes=minutes),
        identity=identity,
        source_address=address,
        outcome=outcome,
        application_id="00000002-0000-0ff1-ce00-000000000000",
    )


def by_type(patterns, pattern_type):
    return [p for p in patterns if p.pattern_type is pattern_type]


def test_spray_needs_volume_and_fanout():
    events = [auth(f"user{i % 5}@corp", "192.0.2.10", i) for i in range(10)]
    patterns = AttackPatternDetector().detect(events)

    sprays = by_type(patterns, PatternType.PASSWORD_SPRAY)
    assert len(sprays) == 1
    spray = sprays[0]
    assert spray.source_address == "192.0.2.10"
    assert spray.target_identity is None
    assert spray.failed_attempt_count == 10
    assert spray.distinct_identity_count == 5
    assert spray.risk_level is RiskTier.MEDIUM
    assert spray.targeted_identities == tuple(f"user{i}@corp" for i in range(5))
    assert not by_type(patterns, PatternType.CONFIRMED_BREACH)


def test_spray_below_identity_floor_is_ignored():
    events = [auth(f"user{i % 4}@corp", "192.0.2.10", i) for i in range(40)]
    patterns = AttackPatternDetector().detect(events)
    assert not by_type(patterns, PatternType.PASSWORD_SPRAY)


def test_spray_critical_scenario():
    # 60 failures across 25 identities within 3 hours
    events = [auth(f"victim{i % 25}@corp", "198.51.100.9", i * 3) for i in range(60)]
    patterns = AttackPatternDetector().detect(events)

    sprays = by_type(patterns, PatternType.PASSWORD_SPRAY)
    assert len(sprays) == 1
    assert sprays[0].risk_level is RiskTier.CRITICAL
    assert sprays[0].failed_attempt_count == 60
    assert sprays[0].distinct_identity_count == 25
    assert sprays[0].time_span_hours == 2.95
    assert not by_type(patterns, PatternType.CONFIRMED_BREACH)


def test_spray_high_tier_on_identity_count():
    events = [auth(f"user{i % 10}@corp", "192.0.2.77", i) for i in range(12)]
    sprays = by_type(AttackPatternDetector().detect(events), PatternType.PASSWORD_SPRAY)
    assert sprays[0].risk_level is RiskTier.HIGH


def test_confirmed_breach_concrete_scenario():
    events = [auth("alice@corp", "203.0.113.5", m) for m in (0, 2, 4, 6, 8, 10)]
    events.append(auth("alice@corp", "203.0.113.5", 15, Outcome.SUCCESS))

    patterns = AttackPatternDetector().detect(events)

    assert len(patterns) == 1
    breach = patterns[0]
    assert breach.pattern_type is PatternType.CONFIRMED_BREACH
    assert breach.confirmed_breach is True
    assert breach.failed_attempt_count == 6
    assert breach.risk_level is RiskTier.MEDIUM
    assert breach.target_identity == "alice@corp"
    assert breach.source_address == "203.0.113.5"
    assert breach.minutes_to_breach == 5.0
    assert breach.breach_time == T0 + timedelta(minutes=15)


def test_success_from_other_address_never_confirms_breach():
    events = [auth("alice@corp", "203.0.113.5", m) for m in range(6)]
    events.append(auth("alice@corp", "198.18.0.44", 15, Outcome.SUCCESS))

    patterns = AttackPatternDetector().detect(events)
    assert not by_type(patterns, PatternType.CONFIRMED_BREACH)


def test_other_address_success_is_skipped_for_later_same_address_success():
    events = [auth("alice@corp", "203.0.113.5", m) for m in range(6)]
    events.append(auth("alice@corp", "198.18.0.44", 12, Outcome.SUCCESS))
    events.append(auth("alice@corp", "203.0.113.5", 30, Outcome.SUCCESS))

    breaches = by_type(AttackPatternDetector().detect(events), PatternType.CONFIRMED_BREACH)
    assert len(breaches) == 1
    assert breaches[0].breach_time == T0 + timedelta(minutes=30)


def test_four_failures_then_success_is_not_a_breach():
    events = [auth("bob@corp", "203.0.113.8", m) for m in range(4)]
    events.append(auth("bob@corp", "203.0.113.8", 10, Outcome.SUCCESS))
    assert AttackPatternDetector().detect(events) == []


def test_success_outside_window_is_not_a_breach():
    events = [auth("alice@corp", "203.0.113.5", m) for m in range(6)]
    events.append(auth("alice@corp", "203.0.113.5", 121, Outcome.SUCCESS))
    assert not by_type(AttackPatternDetector().detect(events), PatternType.CONFIRMED_BREACH)


def test_success_before_last_failure_does_not_count():
    events = [auth("alice@corp", "203.0.113.5", m) for m in (0, 1, 2, 3, 20, 21)]
    events.append(auth("alice@corp", "203.0.113.5", 10, Outcome.SUCCESS))
    assert not by_type(AttackPatternDetector().detect(events), PatternType.CONFIRMED_BREACH)


def test_one_breach_per_pair():
    events = [auth("alice@corp", "203.0.113.5", m) for m in range(6)]
    events += [auth("alice@corp", "203.0.113.5", m, Outcome.SUCCESS) for m in (15, 20, 25)]
    assert len(by_type(AttackPatternDetector().detect(events), PatternType.CONFIRMED_BREACH)) == 1


def test_breach_tiers():
    high = [auth("carol@corp", "203.0.113.9", m) for m in range(10)]
    high.append(auth("carol@corp", "203.0.113.9", 30, Outcome.SUCCESS))
    critical = [auth("dave@corp", "203.0.113.10", m * 2) for m in range(20)]
    critical.append(auth("dave@corp", "203.0.113.10", 60, Outcome.SUCCESS))

    breaches = {p.target_identity: p for p in by_type(AttackPatternDetector().detect(high + critical), PatternType.CONFIRMED_BREACH)}
    assert breaches["carol@corp"].risk_level is RiskTier.HIGH
    assert breaches["dave@corp"].risk_level is RiskTier.CRITICAL


def test_brute_force_single_and_multiple_sources():
    single = [auth("erin@corp", "192.0.2.50", m) for m in range(12)]
    multi = [auth("frank@corp", f"192.0.2.{60 + m % 3}", m) for m in range(30)]

    brutes = {p.target_identity: p for p in by_type(AttackPatternDetector().detect(single + multi), PatternType.BRUTE_FORCE)}
    assert brutes["erin@corp"].source_address == "192.0.2.50"
    assert brutes["erin@corp"].risk_level is RiskTier.MEDIUM
    assert brutes["frank@corp"].source_address == MULTIPLE_SOURCES
    assert brutes["frank@corp"].risk_level is RiskTier.HIGH


def test_brute_force_critical_and_co_occurring_patterns():
    events = [auth("gina@corp", "192.0.2.99", m) for m in range(55)]
    events.append(auth("gina@corp", "192.0.2.99", 60, Outcome.SUCCESS))

    patterns = AttackPatternDetector().detect(events)
    types = {p.pattern_type for p in patterns}
    assert types == {PatternType.BRUTE_FORCE, PatternType.CONFIRMED_BREACH}
    brute = by_type(patterns, PatternType.BRUTE_FORCE)[0]
    assert brute.risk_level is RiskTier.CRITICAL


def test_output_is_independent_of_event_order():
    events = [auth(f"victim{i % 7}@corp", "198.51.100.1", i) for i in range(30)]
    events += [auth("alice@corp", "203.0.113.5", m) for m in range(8)]
    events.append(auth("alice@corp", "203.0.113.5", 20, Outcome.SUCCESS))

    expected = AttackPatternDetector().detect(events)
    shuffled = list(events)
    random.Random(7).shuffle(shuffled)
    assert AttackPatternDetector().detect(shuffled) == expected


def test_events_without_timestamp_are_skipped_and_counted():
    ctx = RunContext()
    events = [auth("alice@corp", "203.0.113.5", m) for m in range(3)]
    events.append(AuthEvent(timestamp=None, identity="alice@corp", source_address="203.0.113.5", outcome=Outcome.FAILURE))

    failures, _ = AttackPatternDetector(ctx).split(events)
    assert len(failures) == 3
    assert ctx.summary.skipped["attack_patterns"] == 1
