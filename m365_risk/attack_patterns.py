"""
Attack-pattern detection over sign-in events.

- Password spray: one source address -> many identities failing.
- Brute force: one identity failing many times, from any addresses.
- Confirmed breach: >= N failures from one (identity, address) pair followed by a
  success for the same identity from the same address inside the window.

All three run over the whole reporting window and may report the same identity.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .common import hours_between
from .config import AttackThresholds
from .context import RunContext
from .models import AttackPattern, AuthEvent, PatternType, RiskTier

MULTIPLE_SOURCES = "multiple"

_PATTERN_ORDER = {PatternType.CONFIRMED_BREACH: 0, PatternType.PASSWORD_SPRAY: 1, PatternType.BRUTE_FORCE: 2}


# -----------------------------
# Tiering
# -----------------------------

def spray_tier(failures: int, identities: int, t: AttackThresholds) -> RiskTier:
    if identities >= t.spray_critical_identities or failures >= t.spray_critical_failures:
        return RiskTier.CRITICAL
    if identities >= t.spray_high_identities or failures >= t.spray_high_failures:
        return RiskTier.HIGH
    return RiskTier.MEDIUM


def brute_force_tier(failures: int, t: AttackThresholds) -> RiskTier:
    if failures >= t.brute_critical_failures:
        return RiskTier.CRITICAL
    if failures >= t.brute_high_failures:
        return RiskTier.HIGH
    return RiskTier.MEDIUM


def breach_tier(failures: int, t: AttackThresholds) -> RiskTier:
    if failures >= t.breach_critical_failures:
        return RiskTier.CRITICAL
    if failures >= t.breach_high_failures:
        return RiskTier.HIGH
    return RiskTier.MEDIUM


def pattern_sort_key(p: AttackPattern) -> Tuple[int, str, str]:
    return (_PATTERN_ORDER[p.pattern_type], p.source_address, p.target_identity or "")


# -----------------------------
# Detector
# -----------------------------

class AttackPatternDetector:
    """Groups authentication failures and emits AttackPattern records."""

    name = "attack_patterns"

    def __init__(self, context: Optional[RunContext] = None) -> None:
        self.context = context or RunContext()
        self.thresholds = self.context.config.attack

    def detect(self, events: Iterable[AuthEvent]) -> List[AttackPattern]:
        failures, successes = self.split(events)
        patterns: List[AttackPattern] = []
        patterns.extend(self.detect_password_spray(failures))
        patterns.extend(self.detect_brute_force(failures))
        patterns.extend(self.detect_confirmed_breach(failures, successes))
        patterns.sort(key=pattern_sort_key)
        logging.info(f"[attack] {len(failures)} failures / {len(successes)} successes -> {len(patterns)} patterns")
        return patterns

    def split(self, events: Iterable[AuthEvent]) -> Tuple[List[AuthEvent], List[AuthEvent]]:
        failures: List[AuthEvent] = []
        successes: List[AuthEvent] = []
        skipped = 0
        for ev in events:
            if not isinstance(ev.timestamp, datetime) or not ev.identity:
                skipped += 1
                continue
            if ev.is_failure:
                failures.append(ev)
            elif ev.is_success:
                successes.append(ev)
        if skipped:
            self.context.summary.record_skip(self.name, skipped)
            logging.warning(f"[attack] skipped {skipped} sign-in events without timestamp or identity")
        return failures, successes

    def detect_password_spray(self, failures: List[AuthEvent]) -> List[AttackPattern]:
        t = self.thresholds
        by_source: Dict[str, List[AuthEvent]] = defaultdict(list)
        for ev in failures:
            if ev.source_address:
                by_source[ev.source_address].append(ev)

        patterns: List[AttackPattern] = []
        for address in sorted(by_source):
            group = by_source[address]
            identities = sorted({ev.identity for ev in group})
            if len(group) < t.spray_min_failures or len(identities) < t.spray_min_identities:
                continue
            first = min(ev.timestamp for ev in group)
            last = max(ev.timestamp for ev in group)
            tier = spray_tier(len(group), len(identities), t)
            logging.info(f"[spray] {address}: failures={len(group)} identities={len(identities)} tier={tier.value}")
            patterns.append(AttackPattern(
                pattern_type=PatternType.PASSWORD_SPRAY,
                source_address=address,
                target_identity=None,
                failed_attempt_count=len(group),
                distinct_identity_count=len(identities),
                time_span_hours=hours_between(first, last),
                first_seen=first,
                last_seen=last,
                risk_level=tier,
                targeted_identities=tuple(identities),
            ))
        return patterns

    def detect_brute_force(self, failures: List[AuthEvent]) -> List[AttackPattern]:
        t = self.thresholds
        by_identity: Dict[str, List[AuthEvent]] = defaultdict(list)
        for ev in failures:
            by_identity[ev.identity].append(ev)

        patterns: List[AttackPattern] = []
        for identity in sorted(by_identity):
            group = by_identity[identity]
            if len(group) < t.brute_min_failures:
                continue
            addresses = {ev.source_address for ev in group if ev.source_address}
            source = next(iter(addresses)) if len(addresses) == 1 else MULTIPLE_SOURCES
            first = min(ev.timestamp for ev in group)
            last = max(ev.timestamp for ev in group)
            tier = brute_force_tier(len(group), t)
            logging.info(f"[brute] {identity}: failures={len(group)} sources={len(addresses)} tier={tier.value}")
            patterns.append(AttackPattern(
                pattern_type=PatternType.BRUTE_FORCE,
                source_address=source,
                target_identity=identity,
                failed_attempt_count=len(group),
                distinct_identity_count=1,
                time_span_hours=hours_between(first, last),
                first_seen=first,
                last_seen=last,
                risk_level=tier,
                targeted_identities=(identity,),
            ))
        return patterns

    def detect_confirmed_breach(self, failures: List[AuthEvent], successes: List[AuthEvent]) -> List[AttackPattern]:
        """
        Failure -> success on the same (identity, source address) pair.

        The success must come after the pair's last failure and no later than
        the breach window measured from its first failure. A success for the
        same identity from any other address never confirms the breach.
        """
        t = self.thresholds
        window = timedelta(minutes=t.breach_window_minutes)

        by_pair: Dict[Tuple[str, str], List[AuthEvent]] = defaultdict(list)
        for ev in failures:
            if ev.source_address:
                by_pair[(ev.identity, ev.source_address)].append(ev)

        successes_by_identity: Dict[str, List[AuthEvent]] = defaultdict(list)
        for ev in successes:
            successes_by_identity[ev.identity].append(ev)
        for evs in successes_by_identity.values():
            evs.sort(key=lambda e: (e.timestamp, e.source_address))

        patterns: List[AttackPattern] = []
        for identity, address in sorted(by_pair):
            group = sorted(by_pair[(identity, address)], key=lambda e: e.timestamp)
            if len(group) < t.breach_min_failures:
                continue
            first = group[0].timestamp
            last = group[-1].timestamp
            deadline = first + window

            match: Optional[AuthEvent] = None
            for success in successes_by_identity.get(identity, ()):
                if not (last < success.timestamp <= deadline):
                    continue
                if success.source_address != address:
                    logging.debug(f"[breach] {identity}: success from {success.source_address or '-'} ignored, failures came from {address}")
                    continue
                match = success
                break

            if match is None:
                continue

            minutes = round((match.timestamp - last).total_seconds() / 60.0, 2)
            tier = breach_tier(len(group), t)
            logging.warning(f"[breach] {identity} from {address}: {len(group)} failures then success after {minutes}m (tier={tier.value})")
            patterns.append(AttackPattern(
                pattern_type=PatternType.CONFIRMED_BREACH,
                source_address=address,
                target_identity=identity,
                failed_attempt_count=len(group),
                distinct_identity_count=1,
                time_span_hours=hours_between(first, match.timestamp),
                first_seen=first,
                last_seen=match.timestamp,
                risk_level=tier,
                confirmed_breach=True,
                targeted_identities=(identity,),
                breach_time=match.timestamp,
                minutes_to_breach=minutes,
            ))
        return patterns


def detect_attack_patterns(events: Iterable[AuthEvent], context: Optional[RunContext] = None) -> List[AttackPattern]:
    return AttackPatternDetector(context).detect(events)
