"""Password-change anomaly scoring (rapid resets, many initiators, off-hours changes)."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .config import PasswordChangeRules
from .context import RunContext
from .models import PasswordChangeAnomaly, PasswordChangeEvent


def max_in_window(timestamps: List[datetime], window: timedelta) -> int:
    """Largest number of timestamps falling inside any window of the given width (sorted input)."""
    best = 0
    start = 0
    for end, ts in enumerate(timestamps):
        while ts - timestamps[start] > window:
            start += 1
        best = max(best, end - start + 1)
    return best


def is_off_hours(ts: datetime, rules: PasswordChangeRules, tzinfo=None) -> bool:
    local = ts.astimezone(tzinfo) if tzinfo is not None else ts
    if rules.weekends_off_hours and local.weekday() >= 5:
        return True
    return not (rules.business_hours_start <= local.hour < rules.business_hours_end)


def score_identity(identity: str, events: List[PasswordChangeEvent], rules: PasswordChangeRules, tzinfo=None) -> Optional[PasswordChangeAnomaly]:
    timestamps = sorted(e.timestamp for e in events)
    initiators = sorted({e.initiator for e in events if e.initiator})
    score = 0
    triggered: List[str] = []

    if max_in_window(timestamps, timedelta(hours=rules.rapid_window_hours)) >= rules.rapid_count:
        score += rules.rapid_points
        triggered.append(f"rapid_changes: >={rules.rapid_count} in {rules.rapid_window_hours}h")
    if max_in_window(timestamps, timedelta(hours=rules.very_rapid_window_hours)) >= rules.very_rapid_count:
        score += rules.very_rapid_points
        triggered.append(f"very_rapid_changes: >={rules.very_rapid_count} in {rules.very_rapid_window_hours}h")
    if len(initiators) > rules.max_initiators:
        score += rules.initiators_points
        triggered.append(f"multiple_initiators: {len(initiators)}")
    off_hours = sum(1 for ts in timestamps if is_off_hours(ts, rules, tzinfo))
    if off_hours >= rules.off_hours_count:
        score += rules.off_hours_points
        triggered.append(f"off_hours_changes: {off_hours}")
    if len(timestamps) >= rules.total_count:
        score += rules.total_points
        triggered.append(f"frequent_changes: {len(timestamps)}")

    if not score:
        return None
    return PasswordChangeAnomaly(
        identity=identity,
        change_count=len(timestamps),
        score=score,
        triggered_rules=tuple(triggered),
        initiators=tuple(initiators),
    )


def detect_password_change_anomalies(events: Iterable[PasswordChangeEvent], context: Optional[RunContext] = None) -> List[PasswordChangeAnomaly]:
    ctx = context or RunContext()
    rules = ctx.config.password_changes
    tzinfo = ctx.config.tzinfo

    by_identity: Dict[str, List[PasswordChangeEvent]] = defaultdict(list)
    for ev in events:
        if ev.identity and isinstance(ev.timestamp, datetime):
            by_identity[ev.identity].append(ev)
        else:
            ctx.summary.record_skip("password_changes")

    anomalies: List[PasswordChangeAnomaly] = []
    for identity in sorted(by_identity):
        anomaly = score_identity(identity, by_identity[identity], rules, tzinfo)
        if anomaly:
            logging.info(f"[pwchange] {identity}: score={anomaly.score} rules={list(anomaly.triggered_rules)}")
            anomalies.append(anomaly)
    return anomalies
