"""
Canonical record types shared by the normalizer, the detectors and the aggregator.

Every record is an immutable dataclass. Enumerations are str-valued so they
serialize directly into CSV / JSON rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# -----------------------------
# Enumerations
# -----------------------------

class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class RiskTier(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskTier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> Optional["RiskTier"]:
        """Map free text such as 'high', 'HIGH ' or 'critical' onto a tier; None if unknown."""
        if isinstance(value, RiskTier):
            return value
        text = str(value or "").strip().lower()
        for tier in cls:
            if tier.value.lower() == text:
                return tier
        return None


_TIER_RANK = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2, RiskTier.CRITICAL: 3}


class PatternType(str, Enum):
    PASSWORD_SPRAY = "PasswordSpray"
    BRUTE_FORCE = "BruteForce"
    CONFIRMED_BREACH = "ConfirmedBreach"


class IndicatorType(str, Enum):
    EXCESSIVE_VOLUME = "ExcessiveVolume"
    IDENTICAL_SUBJECTS = "IdenticalSubjects"
    SPAM_KEYWORD = "SpamKeyword"
    RISKY_IP_CORRELATION = "RiskyIPCorrelation"
    EXCESSIVE_FAILURES = "ExcessiveFailures"


class SourceKind(str, Enum):
    SIGNIN = "signin"
    ADMIN_AUDIT = "admin_audit"
    MAIL_RULE = "mail_rule"
    DELEGATION = "delegation"
    APP_REGISTRATION = "app_registration"
    MFA_STATUS = "mfa_status"
    MESSAGE_TRACE = "message_trace"
    PASSWORD_CHANGE = "password_change"


# -----------------------------
# Input records
# -----------------------------

@dataclass(frozen=True)
class AuthEvent:
    timestamp: datetime
    identity: str
    source_address: str
    outcome: Outcome
    application_id: str = ""
    country: str = ""
    risk_level: Optional[RiskTier] = None
    display_name: str = ""

    @property
    def is_failure(self) -> bool:
        return self.outcome is Outcome.FAILURE

    @property
    def is_success(self) -> bool:
        return self.outcome is Outcome.SUCCESS


@dataclass(frozen=True)
class AdminOperationEvent:
    timestamp: datetime
    identity: str
    operation: str
    result: str = ""
    risk_level: Optional[RiskTier] = None


@dataclass(frozen=True)
class MailRuleFinding:
    identity: str
    rule_name: str
    suspicious: bool
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DelegationFinding:
    identity: str
    delegate: str
    access_rights: str
    suspicious: bool
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AppRegistrationFinding:
    app_name: str
    app_id: str
    high_risk: bool
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MFAStatusRecord:
    identity: str
    mfa_enabled: bool
    display_name: str = ""
    is_admin: bool = False


@dataclass(frozen=True)
class PasswordChangeEvent:
    timestamp: datetime
    identity: str
    initiator: str = ""


@dataclass(frozen=True)
class MailMessageRecord:
    sender: str
    recipient: str = ""
    subject: str = ""
    status: str = ""
    source_ip: str = ""
    destination_ip: str = ""
    size_bytes: int = 0
    received_at: Optional[datetime] = None
    direction: str = ""
    message_id: str = ""

    @property
    def is_outbound(self) -> bool:
        return self.direction != "inbound"


# -----------------------------
# Detector output
# -----------------------------

@dataclass(frozen=True)
class AttackPattern:
    pattern_type: PatternType
    source_address: str
    target_identity: Optional[str]
    failed_attempt_count: int
    distinct_identity_count: int
    time_span_hours: float
    first_seen: datetime
    last_seen: datetime
    risk_level: RiskTier
    confirmed_breach: bool = False
    targeted_identities: Tuple[str, ...] = ()
    breach_time: Optional[datetime] = None
    minutes_to_breach: Optional[float] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "pattern_type": self.pattern_type.value,
            "source_address": self.source_address,
            "target_identity": self.target_identity or "",
            "failed_attempt_count": self.failed_attempt_count,
            "distinct_identity_count": self.distinct_identity_count,
            "time_span_hours": self.time_span_hours,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "risk_level": self.risk_level.value,
            "confirmed_breach": self.confirmed_breach,
            "breach_time": self.breach_time.isoformat() if self.breach_time else "",
            "minutes_to_breach": self.minutes_to_breach if self.minutes_to_breach is not None else "",
            "targeted_identities": ";".join(self.targeted_identities),
        }


@dataclass(frozen=True)
class AbuseIndicator:
    sender_identity: str
    indicator_type: IndicatorType
    message_count: int
    risk_score: int
    evidence: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    detail: str = ""

    def to_row(self) -> Dict[str, Any]:
        return {
            "sender_identity": self.sender_identity,
            "indicator_type": self.indicator_type.value,
            "message_count": self.message_count,
            "risk_score": self.risk_score,
            "detail": self.detail,
            "evidence": {k: list(v) for k, v in self.evidence.items()},
        }


@dataclass(frozen=True)
class PasswordChangeAnomaly:
    identity: str
    change_count: int
    score: int
    triggered_rules: Tuple[str, ...]
    initiators: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IdentityRiskRecord:
    identity: str
    display_name: str
    cumulative_score: int
    risk_tier: RiskTier
    category_counts: Dict[str, int] = field(default_factory=dict)
    evidence: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "identity": self.identity,
            "display_name": self.display_name,
            "cumulative_score": self.cumulative_score,
            "risk_tier": self.risk_tier.value,
        }
        for category, count in sorted(self.category_counts.items()):
            row[f"count_{category}"] = count
        row["evidence"] = {k: list(v) for k, v in sorted(self.evidence.items())}
        return row
