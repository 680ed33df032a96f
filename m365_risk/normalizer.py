"""
Event normalizer: maps provider-specific exports onto the canonical records in models.py.

Column lookup is a fixed table per source kind, matched case-insensitively and
tolerant of separator differences ('User Principal Name' == 'userPrincipalName').
A record that cannot be normalized is dropped and counted; a batch never fails
as a whole. The input is never mutated.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from .common import find_col, parse_bool, parse_timestamp, safe_str
from .context import RunContext, identity_key
from .errors import MalformedRecord
from .models import (
    AdminOperationEvent,
    AppRegistrationFinding,
    AuthEvent,
    DelegationFinding,
    MailMessageRecord,
    MailRuleFinding,
    MFAStatusRecord,
    Outcome,
    PasswordChangeEvent,
    RiskTier,
    SourceKind,
)


# -----------------------------
# Column lookup tables
# -----------------------------

TIME_CANDIDATES = [
    "CreatedDateTime", "createdDateTimeUtc", "CreatedDateTime (UTC)", "Date (UTC)", "TimeGenerated",
    "CreationDate", "CreationTime", "ActivityDateTime", "ActivityDate", "SignInDateTime",
    "LogDateTime", "Timestamp", "DateTime", "Date", "Time",
]

FIELD_MAP: Dict[SourceKind, Dict[str, List[str]]] = {
    SourceKind.SIGNIN: {
        "identity": ["UserPrincipalName", "UPN", "Username", "User", "UserId", "Identity"],
        "timestamp": TIME_CANDIDATES,
        "source_address": ["IPAddress", "ClientIP", "Client IP Address", "SourceAddress", "IP"],
        "outcome": ["Outcome", "SignInOutcome"],
        "result_type": ["ResultType", "Status.errorCode", "ErrorCode", "Status Error Code", "Sign-in error code"],
        "status": ["Status", "ResultStatus", "Result"],
        "application": ["AppId", "ApplicationId", "AppDisplayName", "Application", "App", "ResourceDisplayName"],
        "country": ["Location.countryOrRegion", "CountryOrRegion", "Country", "Location Country", "Location"],
        "risk_level": ["RiskLevelDuringSignIn", "RiskLevelAggregated", "RiskLevel"],
        "display_name": ["UserDisplayName", "DisplayName"],
    },
    SourceKind.ADMIN_AUDIT: {
        "identity": ["UserId", "UserIds", "Actor", "ActorUserId", "InitiatedBy", "UserPrincipalName", "User"],
        "timestamp": TIME_CANDIDATES,
        "operation": ["Operation", "Operations", "ActivityDisplayName", "Activity", "OperationName"],
        "result": ["ResultStatus", "Result", "Status"],
        "risk_level": ["RiskLevel", "Severity", "Risk"],
        "audit_data": ["AuditData"],
    },
    SourceKind.MAIL_RULE: {
        "identity": ["MailboxOwnerId", "MailboxOwner", "Mailbox", "UserPrincipalName", "Identity", "User"],
        "rule_name": ["RuleName", "Name", "DisplayName"],
        "suspicious": ["Suspicious", "IsSuspicious"],
        "reasons": ["Reasons", "SuspiciousReasons", "Reason"],
        "forward_to": ["ForwardTo", "ForwardAsAttachmentTo", "RedirectTo", "ForwardingSmtpAddress"],
        "delete": ["DeleteMessage", "SoftDeleteMessage"],
        "mark_as_read": ["MarkAsRead"],
        "move_to_folder": ["MoveToFolder"],
        "description": ["Description", "Actions", "RuleDescription"],
    },
    SourceKind.DELEGATION: {
        "identity": ["Identity", "Mailbox", "MailboxOwner", "UserPrincipalName"],
        "delegate": ["User", "Delegate", "Trustee", "GrantedTo", "Grantee"],
        "access_rights": ["AccessRights", "Permission", "Permissions", "Rights"],
        "inherited": ["IsInherited", "Inherited"],
        "suspicious": ["Suspicious", "IsSuspicious"],
        "reasons": ["Reasons", "SuspiciousReasons", "Reason"],
    },
    SourceKind.APP_REGISTRATION: {
        "app_name": ["DisplayName", "AppDisplayName", "ApplicationName", "Name"],
        "app_id": ["AppId", "ApplicationId", "ClientId", "Id"],
        "high_risk": ["HighRisk", "IsHighRisk", "Suspicious", "IsSuspicious"],
        "risk_level": ["RiskLevel", "Risk"],
        "permissions": ["Permissions", "RequiredResourceAccess", "Scopes", "ApiPermissions"],
        "reasons": ["Reasons", "RiskReasons", "Reason"],
    },
    SourceKind.MFA_STATUS: {
        "identity": ["UserPrincipalName", "UPN", "User", "Identity"],
        "mfa_state": ["MFAStatus", "MfaEnabled", "PerUserMfaState", "StrongAuthenticationRequirements",
                      "IsMfaRegistered", "MFAEnforced", "MFA"],
        "display_name": ["DisplayName", "UserDisplayName", "Name"],
        "is_admin": ["IsAdmin", "Admin", "IsPrivileged"],
    },
    SourceKind.MESSAGE_TRACE: {
        "sender": ["SenderAddress", "Sender", "From", "FromAddress"],
        "recipient": ["RecipientAddress", "Recipient", "To", "ToAddress"],
        "subject": ["Subject", "MessageSubject"],
        "status": ["Status", "DeliveryStatus", "Event"],
        "source_ip": ["FromIP", "SourceIP", "OriginalClientIP", "ClientIP"],
        "destination_ip": ["ToIP", "DestinationIP", "OriginalServerIP"],
        "size_bytes": ["Size", "SizeBytes", "MessageSize"],
        "received_at": ["Received", "ReceivedDateTime", "Date", "Timestamp"],
        "direction": ["Direction", "MessageDirection"],
        "message_id": ["MessageId", "MessageTraceId", "InternetMessageId", "NetworkMessageId"],
    },
    SourceKind.PASSWORD_CHANGE: {
        "identity": ["TargetUserPrincipalName", "TargetUser", "Target", "UserPrincipalName", "Identity", "User"],
        "timestamp": TIME_CANDIDATES,
        "initiator": ["InitiatedBy", "Initiator", "Actor", "ActorUserPrincipalName", "UserId"],
    },
}

REQUIRED: Dict[SourceKind, Tuple[str, ...]] = {
    SourceKind.SIGNIN: ("identity", "timestamp"),
    SourceKind.ADMIN_AUDIT: ("identity", "timestamp", "operation"),
    SourceKind.MAIL_RULE: ("identity",),
    SourceKind.DELEGATION: ("identity", "delegate"),
    SourceKind.APP_REGISTRATION: (),
    SourceKind.MFA_STATUS: ("identity", "mfa_state"),
    SourceKind.MESSAGE_TRACE: ("sender",),
    SourceKind.PASSWORD_CHANGE: ("identity", "timestamp"),
}

# time columns also match by substring ('Date (UTC)', 'Activity Date (UTC)')
SUBSTRING_FIELDS = {"timestamp", "received_at"}


# -----------------------------
# Classification dictionaries
# -----------------------------

ADMIN_OPERATION_TIERS: List[Tuple[RiskTier, List[str]]] = [
    (RiskTier.CRITICAL, [
        r"add member to role", r"add-rolegroupmember", r"new-managementroleassignment",
        r"add management role assignment", r"set domain authentication", r"set federation settings",
        r"add service principal credentials", r"update application.*certificates and secrets",
    ]),
    (RiskTier.HIGH, [
        r"inboxrule", r"updateinboxrules", r"set-mailbox\b", r"add-mailboxpermission",
        r"add-mailboxfolderpermission", r"set-mailboxfolderpermission", r"add-recipientpermission",
        r"new-transportrule", r"set-transportrule", r"new-inboundconnector", r"set-inboundconnector",
        r"new-outboundconnector", r"set-outboundconnector", r"add service principal",
        r"add app role assignment", r"consent to application", r"add delegated permission grant",
        r"oauth", r"set-organizationconfig", r"set-transportconfig", r"set-authenticationpolicy",
        r"disable strong authentication", r"set-conditionalaccesspolicy", r"delete conditional access policy",
    ]),
    (RiskTier.MEDIUM, [
        r"add user", r"reset user password", r"update user", r"set user", r"delete user",
        r"add group", r"add member to group", r"update group", r"set-casmailbox",
        r"set-mailboxcalendarconfiguration",
    ]),
]

_ADMIN_RES = [(tier, re.compile("|".join(pats), re.I)) for tier, pats in ADMIN_OPERATION_TIERS]

FORWARDING_KEYWORDS = [
    "forwardingsmtpaddress", "forwardingaddress", "delivertomailboxandforward",
    "redirectto", "forwardto", "forwardasattachmentto", "forward", "redirect",
]

RULE_HIDING_FOLDERS = {"rss feeds", "rss subscriptions", "rss", "archive", "conversation history", "junk email", "deleted items"}

FORWARD_RE = re.compile("|".join(re.escape(k) for k in FORWARDING_KEYWORDS), re.I)
DELETE_RE = re.compile(r"delete|permanently remove", re.I)
MARK_READ_RE = re.compile(r"mark(ed)?\s*as\s*read|markasread", re.I)

PRIVILEGED_RIGHTS = ("fullaccess", "sendas", "sendonbehalf")
SELF_PRINCIPALS = {"nt authority\\self", "self", "default", "anonymous"}

DANGEROUS_OAUTH_SCOPES = {
    "mail.read", "mail.readwrite", "mail.send", "mailboxsettings.readwrite",
    "full_access_as_app", "ews.accessasuser.all", "files.readwrite.all", "sites.readwrite.all",
    "directory.readwrite.all", "user.readwrite.all", "application.readwrite.all",
    "approleassignment.readwrite.all", "rolemanagement.readwrite.directory",
}

FAILURE_STATUS_RE = re.compile(r"fail|error|denied|blocked|interrupt", re.I)


def classify_admin_operation(operation: str) -> Optional[RiskTier]:
    """Keyword table lookup for an audit operation name; None when the operation is not sensitive."""
    op = safe_str(operation)
    if not op:
        return None
    for tier, rx in _ADMIN_RES:
        if rx.search(op):
            return tier
    return None


def parse_audit_data(value: Any) -> Dict[str, Any]:
    """AuditData JSON of a Unified Audit Log row; {} when absent or not an object."""
    if isinstance(value, dict):
        return value
    text = safe_str(value)
    if not text.startswith("{"):
        return {}
    try:
        data = json.loads(text)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def oauth_scopes_from_audit_data(data: Dict[str, Any]) -> List[str]:
    """Dangerous OAuth scopes mentioned anywhere in an AuditData object (consent grants, app role updates)."""
    if not data:
        return []
    txt = json.dumps(data, ensure_ascii=False).lower()
    return sorted(s for s in DANGEROUS_OAUTH_SCOPES if s in txt)


def _country(value: Any) -> str:
    # portal exports carry 'City, State, Country' in one Location column
    return safe_str(value).rsplit(",", 1)[-1].strip()


def _signin_outcome(outcome: str, result_type: str, status: str) -> Optional[Outcome]:
    out = outcome.lower()
    if out in {"success", "succeeded", "successful"}:
        return Outcome.SUCCESS
    if out in {"failure", "failed", "fail"}:
        return Outcome.FAILURE

    # Entra exports: ResultType 0 => success, anything else is an error code
    rt = result_type.split(".")[0] if re.fullmatch(r"\d+(\.0+)?", result_type) else result_type
    if rt.isdigit():
        return Outcome.SUCCESS if int(rt) == 0 else Outcome.FAILURE

    st = f"{status} {result_type}".lower()
    if "success" in st:
        return Outcome.SUCCESS
    if FAILURE_STATUS_RE.search(st):
        return Outcome.FAILURE
    return None


def _split_reasons(value: Any) -> Tuple[str, ...]:
    text = safe_str(value)
    if not text:
        return ()
    return tuple(p.strip() for p in re.split(r"[;|\n]+", text) if p.strip())


def _domain(address: str) -> str:
    return address.rsplit("@", 1)[1].lower() if "@" in address else ""


# -----------------------------
# Record builders
# -----------------------------

def _timestamp(values: Dict[str, Any]):
    ts = parse_timestamp(values.get("timestamp"))
    if ts is None:
        raise MalformedRecord("bad_timestamp", "timestamp")
    return ts


def _build_signin(values: Dict[str, Any], ctx: RunContext) -> AuthEvent:
    ts = _timestamp(values)
    outcome = _signin_outcome(safe_str(values.get("outcome")), safe_str(values.get("result_type")), safe_str(values.get("status")))
    if outcome is None:
        raise MalformedRecord("unknown_outcome", "status")
    identity = identity_key(values["identity"])
    display_name = safe_str(values.get("display_name"))
    ctx.remember_display_name(identity, display_name)
    return AuthEvent(
        timestamp=ts,
        identity=identity,
        source_address=safe_str(values.get("source_address")),
        outcome=outcome,
        application_id=safe_str(values.get("application")),
        country=_country(values.get("country")),
        risk_level=RiskTier.parse(values.get("risk_level")),
        display_name=display_name,
    )


def _prepare_admin(values: Dict[str, Any]) -> Dict[str, Any]:
    """Fill identity / operation / time / result from the AuditData blob when the flat columns are empty."""
    data = parse_audit_data(values.get("audit_data"))
    values["audit_data"] = data
    for name, key in (("identity", "UserId"), ("operation", "Operation"), ("timestamp", "CreationTime"), ("result", "ResultStatus")):
        if not safe_str(values.get(name)) and data.get(key) is not None:
            values[name] = data[key]
    return values


def _build_admin(values: Dict[str, Any], ctx: RunContext) -> AdminOperationEvent:
    operation = safe_str(values.get("operation"))
    tier = RiskTier.parse(values.get("risk_level"))
    if tier is None:
        tier = classify_admin_operation(operation)
    if oauth_scopes_from_audit_data(values.get("audit_data") or {}) and (tier is None or tier < RiskTier.HIGH):
        tier = RiskTier.HIGH
    return AdminOperationEvent(
        timestamp=_timestamp(values),
        # UserIds may list several principals; the first is the actor
        identity=identity_key(safe_str(values["identity"]).split(",")[0]),
        operation=operation,
        result=safe_str(values.get("result")),
        risk_level=tier,
    )


def _build_mail_rule(values: Dict[str, Any], ctx: RunContext) -> MailRuleFinding:
    flag = parse_bool(values.get("suspicious"))
    reasons = list(_split_reasons(values.get("reasons")))

    if flag is None:
        forward_to = safe_str(values.get("forward_to"))
        description = safe_str(values.get("description"))
        folder = safe_str(values.get("move_to_folder"))
        if forward_to:
            reasons.append(f"forwards to {forward_to}")
        elif FORWARD_RE.search(description):
            reasons.append("forwarding action")
        if parse_bool(values.get("delete")) or DELETE_RE.search(description):
            reasons.append("deletes messages")
        if parse_bool(values.get("mark_as_read")) or MARK_READ_RE.search(description):
            reasons.append("marks messages as read")
        folder_name = folder.split("\\")[-1].split("/")[-1].strip().lower()
        if folder_name in RULE_HIDING_FOLDERS:
            reasons.append(f"moves messages to {folder}")
        flag = bool(reasons)

    return MailRuleFinding(
        identity=identity_key(values["identity"]),
        rule_name=safe_str(values.get("rule_name")) or "(unnamed rule)",
        suspicious=flag,
        reasons=tuple(reasons),
    )


def _build_delegation(values: Dict[str, Any], ctx: RunContext) -> DelegationFinding:
    identity = identity_key(values["identity"])
    delegate = safe_str(values.get("delegate"))
    rights = safe_str(values.get("access_rights"))
    flag = parse_bool(values.get("suspicious"))
    reasons = list(_split_reasons(values.get("reasons")))

    if flag is None:
        if parse_bool(values.get("inherited")):
            # inherited grants come from org-level admin permissions, not from the mailbox owner
            flag = False
        elif delegate.lower() in SELF_PRINCIPALS or identity_key(delegate) == identity:
            flag = False
        else:
            rights_l = rights.lower().replace(" ", "")
            for right in PRIVILEGED_RIGHTS:
                if right in rights_l:
                    reasons.append(f"{right} granted to {delegate}")
            domain = _domain(delegate)
            tenant_domains = {d.lower() for d in ctx.config.tenant_domains}
            if domain and tenant_domains and domain not in tenant_domains:
                reasons.append(f"external delegate domain {domain}")
            flag = bool(reasons)

    return DelegationFinding(
        identity=identity,
        delegate=delegate,
        access_rights=rights,
        suspicious=flag,
        reasons=tuple(reasons),
    )


def _build_app_registration(values: Dict[str, Any], ctx: RunContext) -> AppRegistrationFinding:
    app_name = safe_str(values.get("app_name"))
    app_id = safe_str(values.get("app_id"))
    if not app_name and not app_id:
        raise MalformedRecord("missing_app_name", "app_name")

    flag = parse_bool(values.get("high_risk"))
    reasons = list(_split_reasons(values.get("reasons")))
    if flag is None:
        tier = RiskTier.parse(values.get("risk_level"))
        if tier is not None:
            flag = tier >= RiskTier.HIGH
            if flag:
                reasons.append(f"risk level {tier.value}")
    if flag is None:
        scopes = {s.lower() for s in re.split(r"[\s,;|]+", safe_str(values.get("permissions"))) if s}
        dangerous = sorted(scopes & DANGEROUS_OAUTH_SCOPES)
        if dangerous:
            reasons.append("dangerous permissions: " + ", ".join(dangerous))
        flag = bool(dangerous)

    return AppRegistrationFinding(app_name=app_name or app_id, app_id=app_id, high_risk=flag, reasons=tuple(reasons))


def _build_mfa(values: Dict[str, Any], ctx: RunContext) -> MFAStatusRecord:
    enabled = parse_bool(values.get("mfa_state"))
    if enabled is None:
        raise MalformedRecord("unknown_mfa_state", "mfa_state")
    identity = identity_key(values["identity"])
    display_name = safe_str(values.get("display_name"))
    ctx.remember_display_name(identity, display_name)
    return MFAStatusRecord(
        identity=identity,
        mfa_enabled=enabled,
        display_name=display_name,
        is_admin=bool(parse_bool(values.get("is_admin"))),
    )


def _direction(values: Dict[str, Any], sender: str, ctx: RunContext) -> str:
    raw = safe_str(values.get("direction")).lower()
    if raw:
        if raw.startswith("in"):
            return "inbound"
        if raw.startswith("out") or raw.startswith("orig"):
            return "outbound"
        return raw
    tenant_domains = {d.lower() for d in ctx.config.tenant_domains}
    if tenant_domains:
        return "outbound" if _domain(sender) in tenant_domains else "inbound"
    return ""


def _build_message(values: Dict[str, Any], ctx: RunContext) -> MailMessageRecord:
    sender = identity_key(values["sender"])
    size_text = safe_str(values.get("size_bytes"))
    try:
        size = int(float(size_text)) if size_text else 0
    except ValueError:
        size = 0
    return MailMessageRecord(
        sender=sender,
        recipient=identity_key(values.get("recipient")),
        subject=safe_str(values.get("subject")),
        status=safe_str(values.get("status")),
        source_ip=safe_str(values.get("source_ip")),
        destination_ip=safe_str(values.get("destination_ip")),
        size_bytes=size,
        received_at=parse_timestamp(values.get("received_at")),
        direction=_direction(values, sender, ctx),
        message_id=safe_str(values.get("message_id")),
    )


def _build_password_change(values: Dict[str, Any], ctx: RunContext) -> PasswordChangeEvent:
    return PasswordChangeEvent(
        timestamp=_timestamp(values),
        identity=identity_key(values["identity"]),
        initiator=identity_key(values.get("initiator")),
    )


_BUILDERS: Dict[SourceKind, Callable[[Dict[str, Any], RunContext], Any]] = {
    SourceKind.SIGNIN: _build_signin,
    SourceKind.ADMIN_AUDIT: _build_admin,
    SourceKind.MAIL_RULE: _build_mail_rule,
    SourceKind.DELEGATION: _build_delegation,
    SourceKind.APP_REGISTRATION: _build_app_registration,
    SourceKind.MFA_STATUS: _build_mfa,
    SourceKind.MESSAGE_TRACE: _build_message,
    SourceKind.PASSWORD_CHANGE: _build_password_change,
}

_PREPARE: Dict[SourceKind, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    SourceKind.ADMIN_AUDIT: _prepare_admin,
}


# -----------------------------
# Batch entry point
# -----------------------------

@dataclass
class NormalizedBatch:
    kind: SourceKind
    records: List[Any] = field(default_factory=list)
    dropped: int = 0

    def __len__(self) -> int:
        return len(self.records)


RawRecords = Union[pd.DataFrame, Iterable[Mapping]]


def _as_rows(raw_records: Optional[RawRecords]) -> Tuple[List[str], List[Any]]:
    if raw_records is None:
        return [], []
    if isinstance(raw_records, pd.DataFrame):
        frame = raw_records.rename(columns=str)
        return list(frame.columns), frame.to_dict("records")
    rows = list(raw_records)
    columns: Dict[str, None] = {}
    for row in rows:
        if isinstance(row, Mapping):
            for c in row.keys():
                columns.setdefault(str(c), None)
    return list(columns), rows


def normalize(raw_records: Optional[RawRecords], source_kind: Union[SourceKind, str], context: Optional[RunContext] = None) -> NormalizedBatch:
    """
    Normalize one source's raw rows into canonical records.

    Rows missing a required field, with an unparseable timestamp or with an
    outcome that cannot be determined are dropped and counted in
    ``context.summary``.
    """
    kind = SourceKind(source_kind)
    ctx = context or RunContext()
    batch = NormalizedBatch(kind=kind)

    columns, rows = _as_rows(raw_records)
    if not rows:
        return batch

    mapping = {name: find_col(columns, candidates, substring=name in SUBSTRING_FIELDS)
               for name, candidates in FIELD_MAP[kind].items()}
    unmapped = [name for name in REQUIRED[kind] if mapping.get(name) is None]
    if unmapped:
        logging.warning(f"[normalize] {kind.value}: no column for required field(s) {unmapped}; columns={columns[:20]}")

    builder = _BUILDERS[kind]
    for rownum, row in enumerate(rows, start=1):
        try:
            if not isinstance(row, Mapping):
                raise MalformedRecord("not_a_mapping")
            values = {name: (row.get(col) if col is not None else None) for name, col in mapping.items()}
            if kind in _PREPARE:
                values = _PREPARE[kind](values)
            for name in REQUIRED[kind]:
                if not safe_str(values.get(name)):
                    raise MalformedRecord(f"missing_{name}", name)
            batch.records.append(builder(values, ctx))
        except MalformedRecord as e:
            batch.dropped += 1
            ctx.summary.record_drop(kind.value, e.reason)
            logging.debug(f"[normalize] {kind.value} row {rownum} dropped: {e.reason}")

    ctx.summary.record_accepted(kind.value, len(batch.records))
    if batch.dropped:
        logging.warning(f"[normalize] {kind.value}: kept {len(batch.records)} records, dropped {batch.dropped}")
    else:
        logging.info(f"[normalize] {kind.value}: kept {len(batch.records)} records")
    return batch
