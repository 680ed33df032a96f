"""Compromise triage for Microsoft 365 tenants: attack patterns, mail abuse and per-identity risk."""

from .aggregation import FindingSet, IdentityFindings, aggregate, aggregate_all
from .attack_patterns import AttackPatternDetector, detect_attack_patterns
from .config import DetectionConfig, config_from_dict, load_config
from .context import RunContext, RunSummary
from .errors import ConfigurationError, MalformedRecord, NoInputError, TriageError
from .mail_abuse import MailAbuseDetector, detect_mail_abuse
from .models import (
    AbuseIndicator,
    AdminOperationEvent,
    AppRegistrationFinding,
    AttackPattern,
    AuthEvent,
    DelegationFinding,
    IdentityRiskRecord,
    IndicatorType,
    MailMessageRecord,
    MailRuleFinding,
    MFAStatusRecord,
    Outcome,
    PasswordChangeAnomaly,
    PasswordChangeEvent,
    PatternType,
    RiskTier,
    SourceKind,
)
from .normalizer import NormalizedBatch, normalize
from .password_changes import detect_password_change_anomalies
from .pipeline import TriageInputs, TriageResult, run_triage

__version__ = "1.0.0"

__all__ = [
    "AbuseIndicator",
    "AdminOperationEvent",
    "AppRegistrationFinding",
    "AttackPattern",
    "AttackPatternDetector",
    "AuthEvent",
    "ConfigurationError",
    "DelegationFinding",
    "DetectionConfig",
    "FindingSet",
    "IdentityFindings",
    "IdentityRiskRecord",
    "IndicatorType",
    "MFAStatusRecord",
    "MailAbuseDetector",
    "MailMessageRecord",
    "MailRuleFinding",
    "MalformedRecord",
    "NoInputError",
    "NormalizedBatch",
    "Outcome",
    "PasswordChangeAnomaly",
    "PasswordChangeEvent",
    "PatternType",
    "RiskTier",
    "RunContext",
    "RunSummary",
    "SourceKind",
    "TriageError",
    "TriageInputs",
    "TriageResult",
    "aggregate",
    "aggregate_all",
    "config_from_dict",
    "detect_attack_patterns",
    "detect_mail_abuse",
    "detect_password_change_anomalies",
    "load_config",
    "normalize",
    "run_triage",
]
