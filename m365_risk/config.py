"""
Detection thresholds, weights and tier boundaries.

Defaults reproduce the built-in rule set. A YAML file can override any value:

    attack:
      spray_min_failures: 15
    weights:
      mfa_absent: 30
    tenant_domains: [contoso.com]

Unknown keys or invalid values raise ConfigurationError at load time; nothing
is re-validated mid-run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dateutil import tz

from .errors import ConfigurationError
from .models import IndicatorType, RiskTier


# -----------------------------
# Sections
# -----------------------------

@dataclass(frozen=True)
class AttackThresholds:
    spray_min_failures: int = 10
    spray_min_identities: int = 5
    spray_critical_identities: int = 20
    spray_critical_failures: int = 50
    spray_high_identities: int = 10
    spray_high_failures: int = 25

    brute_min_failures: int = 10
    brute_critical_failures: int = 50
    brute_high_failures: int = 25

    breach_min_failures: int = 5
    breach_window_minutes: int = 120
    breach_critical_failures: int = 20
    breach_high_failures: int = 10


@dataclass(frozen=True)
class MailAbuseThresholds:
    volume_threshold: int = 100
    identical_subject_threshold: int = 50
    min_subject_length: int = 5
    keyword_min_matches: int = 3
    failure_threshold: int = 10
    evidence_sample_size: int = 5
    spam_keywords: List[str] = field(default_factory=lambda: [
        "invoice", "payment", "urgent", "wire transfer", "gift card",
        "verify your account", "password", "bitcoin", "lottery", "winner",
    ])

    volume_weight: int = 15
    identical_subject_weight: int = 25
    keyword_weight: int = 10
    risky_ip_weight: int = 30
    failure_weight: int = 15

    def weight_for(self, indicator: IndicatorType) -> int:
        return {
            IndicatorType.EXCESSIVE_VOLUME: self.volume_weight,
            IndicatorType.IDENTICAL_SUBJECTS: self.identical_subject_weight,
            IndicatorType.SPAM_KEYWORD: self.keyword_weight,
            IndicatorType.RISKY_IP_CORRELATION: self.risky_ip_weight,
            IndicatorType.EXCESSIVE_FAILURES: self.failure_weight,
        }[indicator]


@dataclass(frozen=True)
class RiskWeights:
    unusual_location: int = 5
    high_risk_signin: int = 15
    high_risk_admin_operation: int = 10
    suspicious_mail_rule: int = 15
    suspicious_delegation: int = 8
    high_risk_app_registration: int = 20
    mfa_absent: int = 40
    admin_without_mfa: int = 10
    confirmed_breach: int = 50
    pattern_low: int = 10
    pattern_medium: int = 20
    pattern_high: int = 30
    pattern_critical: int = 50

    def pattern_points(self, tier: RiskTier) -> int:
        return {
            RiskTier.LOW: self.pattern_low,
            RiskTier.MEDIUM: self.pattern_medium,
            RiskTier.HIGH: self.pattern_high,
            RiskTier.CRITICAL: self.pattern_critical,
        }[tier]


@dataclass(frozen=True)
class PasswordChangeRules:
    rapid_count: int = 3
    rapid_window_hours: int = 24
    rapid_points: int = 25
    very_rapid_count: int = 2
    very_rapid_window_hours: int = 6
    very_rapid_points: int = 35
    max_initiators: int = 2
    initiators_points: int = 20
    off_hours_count: int = 2
    off_hours_points: int = 15
    business_hours_start: int = 6
    business_hours_end: int = 22
    weekends_off_hours: bool = True
    total_count: int = 5
    total_points: int = 20


@dataclass(frozen=True)
class TierThresholds:
    critical: int = 50
    high: int = 30
    medium: int = 15

    def classify(self, score: int) -> RiskTier:
        if score >= self.critical:
            return RiskTier.CRITICAL
        if score >= self.high:
            return RiskTier.HIGH
        if score >= self.medium:
            return RiskTier.MEDIUM
        return RiskTier.LOW


@dataclass(frozen=True)
class DetectionConfig:
    attack: AttackThresholds = field(default_factory=AttackThresholds)
    mail: MailAbuseThresholds = field(default_factory=MailAbuseThresholds)
    weights: RiskWeights = field(default_factory=RiskWeights)
    password_changes: PasswordChangeRules = field(default_factory=PasswordChangeRules)
    tiers: TierThresholds = field(default_factory=TierThresholds)

    tenant_identity: str = "(tenant)"
    tenant_domains: List[str] = field(default_factory=list)
    trusted_countries: List[str] = field(default_factory=list)
    timezone: str = "UTC"
    evidence_limit: int = 5

    def validate(self) -> "DetectionConfig":
        for section in (self.attack, self.mail, self.weights, self.password_changes, self.tiers):
            for f in fields(section):
                value = getattr(section, f.name)
                if isinstance(value, bool) or isinstance(value, list):
                    continue
                if not isinstance(value, int) or value < 0:
                    raise ConfigurationError(f"{type(section).__name__}.{f.name} must be a non-negative integer, got {value!r}")

        if not (self.tiers.critical > self.tiers.high > self.tiers.medium > 0):
            raise ConfigurationError(
                f"tier thresholds must be strictly descending (critical > high > medium > 0), "
                f"got {self.tiers.critical}/{self.tiers.high}/{self.tiers.medium}"
            )
        m = self.mail
        non_ip = {"volume_weight": m.volume_weight, "keyword_weight": m.keyword_weight, "failure_weight": m.failure_weight}
        if any(m.identical_subject_weight < w for w in non_ip.values()):
            raise ConfigurationError(
                f"mail.identical_subject_weight ({m.identical_subject_weight}) must be at least every other "
                f"non-IP weight {non_ip}"
            )
        if m.risky_ip_weight < m.identical_subject_weight:
            raise ConfigurationError(
                f"mail.risky_ip_weight ({m.risky_ip_weight}) must be the highest mail weight, "
                f"got identical_subject_weight={m.identical_subject_weight}"
            )
        if self.attack.breach_window_minutes <= 0:
            raise ConfigurationError("attack.breach_window_minutes must be positive")
        if self.attack.breach_min_failures < 1:
            raise ConfigurationError("attack.breach_min_failures must be at least 1")
        pc = self.password_changes
        if not (0 <= pc.business_hours_start < pc.business_hours_end <= 24):
            raise ConfigurationError("password_changes business hours must satisfy 0 <= start < end <= 24")
        if self.evidence_limit < 1:
            raise ConfigurationError("evidence_limit must be at least 1")
        if not self.tenant_identity.strip():
            raise ConfigurationError("tenant_identity must not be empty")
        if tz.gettz(self.timezone) is None:
            raise ConfigurationError(f"unknown timezone: {self.timezone!r}")
        if not all(isinstance(k, str) and k.strip() for k in self.mail.spam_keywords):
            raise ConfigurationError("mail.spam_keywords must be a list of non-empty strings")
        return self

    @property
    def tzinfo(self):
        return tz.gettz(self.timezone)


# -----------------------------
# Loading
# -----------------------------

def _overlay(base: Any, data: Dict[str, Any], path: str) -> Any:
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path or 'config'} must be a mapping, got {type(data).__name__}")
    known = {f.name: f for f in fields(base)}
    changes: Dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).strip().replace("-", "_")
        if name not in known:
            raise ConfigurationError(f"unknown config key: {path + '.' if path else ''}{key}")
        current = getattr(base, name)
        if is_dataclass(current):
            changes[name] = _overlay(current, value or {}, f"{path + '.' if path else ''}{name}")
        elif isinstance(current, list):
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, list):
                raise ConfigurationError(f"{path + '.' if path else ''}{name} must be a list")
            changes[name] = [str(v).strip() for v in value]
        elif isinstance(current, bool):
            if not isinstance(value, bool):
                raise ConfigurationError(f"{path + '.' if path else ''}{name} must be true or false")
            changes[name] = value
        elif isinstance(current, int):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{path + '.' if path else ''}{name} must be an integer, got {value!r}")
            changes[name] = value
        else:
            changes[name] = str(value)
    return replace(base, **changes)


def config_from_dict(data: Optional[Dict[str, Any]]) -> DetectionConfig:
    cfg = DetectionConfig()
    if data:
        cfg = _overlay(cfg, data, "")
    return cfg.validate()


def load_config(path: Optional[Path]) -> DetectionConfig:
    if not path:
        return DetectionConfig().validate()
    if not path.exists():
        raise ConfigurationError(f"config file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse YAML config {path}: {e}") from e

    cfg = config_from_dict(data or {})
    logging.info(f"[config] loaded detection config from {path}")
    return cfg
