"""
Outbound mail abuse detection over message-trace records.

Five independent passes, each emitting AbuseIndicator records with a fixed
weight per indicator type. Tiering is left to the aggregator.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .common import sample
from .context import RunContext
from .models import AbuseIndicator, IndicatorType, MailMessageRecord

FAILED_STATUS_RE = re.compile(r"fail|bounce|reject|block|undeliver", re.I)

_INDICATOR_ORDER = {t: i for i, t in enumerate(IndicatorType)}


def normalize_subject(subject: str) -> str:
    return " ".join((subject or "").split()).lower()


def indicator_sort_key(i: AbuseIndicator) -> Tuple[str, int, str]:
    return (i.sender_identity, _INDICATOR_ORDER[i.indicator_type], i.detail)


class MailAbuseDetector:
    """Flags senders whose outbound traffic looks like spam or compromise-driven abuse."""

    name = "mail_abuse"

    def __init__(self, context: Optional[RunContext] = None) -> None:
        self.context = context or RunContext()
        self.thresholds = self.context.config.mail

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def detect(self, messages: Iterable[MailMessageRecord], risky_addresses: Optional[Iterable[str]] = None) -> List[AbuseIndicator]:
        outbound = self.outbound(messages)
        indicators = self.detect_content(outbound)
        indicators.extend(self.detect_risky_ip_correlation(outbound, risky_addresses or ()))
        indicators.sort(key=indicator_sort_key)
        return indicators

    def detect_content(self, outbound: List[MailMessageRecord]) -> List[AbuseIndicator]:
        """The four passes that need nothing but the messages themselves."""
        indicators: List[AbuseIndicator] = []
        indicators.extend(self.detect_excessive_volume(outbound))
        indicators.extend(self.detect_identical_subjects(outbound))
        indicators.extend(self.detect_spam_keywords(outbound))
        indicators.extend(self.detect_excessive_failures(outbound))
        logging.info(f"[mail] {len(outbound)} outbound messages -> {len(indicators)} content indicators")
        return indicators

    def outbound(self, messages: Iterable[MailMessageRecord]) -> List[MailMessageRecord]:
        out: List[MailMessageRecord] = []
        skipped = 0
        for m in messages:
            if not m.sender:
                skipped += 1
                continue
            if m.is_outbound:
                out.append(m)
        if skipped:
            self.context.summary.record_skip(self.name, skipped)
        return out

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------
    def detect_excessive_volume(self, outbound: List[MailMessageRecord]) -> List[AbuseIndicator]:
        t = self.thresholds
        by_sender = self._by_sender(outbound)
        found: List[AbuseIndicator] = []
        for sender in sorted(by_sender):
            msgs = by_sender[sender]
            if len(msgs) <= t.volume_threshold:
                continue
            logging.info(f"[mail] excessive volume: {sender} sent {len(msgs)} messages")
            found.append(self._indicator(
                sender, IndicatorType.EXCESSIVE_VOLUME, msgs,
                detail=f"{len(msgs)} outbound messages (threshold {t.volume_threshold})",
            ))
        return found

    def detect_identical_subjects(self, outbound: List[MailMessageRecord]) -> List[AbuseIndicator]:
        t = self.thresholds
        groups: Dict[Tuple[str, str], List[MailMessageRecord]] = defaultdict(list)
        for m in outbound:
            subject = normalize_subject(m.subject)
            if len(subject) > t.min_subject_length:
                groups[(m.sender, subject)].append(m)

        found: List[AbuseIndicator] = []
        for sender, subject in sorted(groups):
            msgs = groups[(sender, subject)]
            if len(msgs) <= t.identical_subject_threshold:
                continue
            logging.info(f"[mail] mass identical subject: {sender} x{len(msgs)} '{subject[:60]}'")
            found.append(self._indicator(
                sender, IndicatorType.IDENTICAL_SUBJECTS, msgs,
                detail=f"subject '{subject[:120]}' sent {len(msgs)} times",
            ))
        return found

    def detect_spam_keywords(self, outbound: List[MailMessageRecord]) -> List[AbuseIndicator]:
        t = self.thresholds
        found: List[AbuseIndicator] = []
        keywords = sorted({k.strip().lower() for k in t.spam_keywords if k.strip()})
        for keyword in keywords:
            by_sender: Dict[str, List[MailMessageRecord]] = defaultdict(list)
            for m in outbound:
                if keyword in normalize_subject(m.subject):
                    by_sender[m.sender].append(m)
            for sender in sorted(by_sender):
                msgs = by_sender[sender]
                if len(msgs) <= t.keyword_min_matches:
                    continue
                found.append(self._indicator(
                    sender, IndicatorType.SPAM_KEYWORD, msgs,
                    detail=f"keyword '{keyword}' in {len(msgs)} subjects",
                ))
        return found

    def detect_risky_ip_correlation(self, outbound: List[MailMessageRecord], risky_addresses: Iterable[str]) -> List[AbuseIndicator]:
        """One indicator per sender with any message to or from a flagged address, whatever the count."""
        risky: Set[str] = {a.strip() for a in risky_addresses if a and a.strip()}
        if not risky:
            return []

        by_sender: Dict[str, List[MailMessageRecord]] = defaultdict(list)
        hits: Dict[str, List[str]] = defaultdict(list)
        for m in outbound:
            matched = [ip for ip in (m.source_ip, m.destination_ip) if ip and ip in risky]
            if matched:
                by_sender[m.sender].append(m)
                hits[m.sender].extend(matched)

        found: List[AbuseIndicator] = []
        for sender in sorted(by_sender):
            msgs = by_sender[sender]
            addresses = sample(hits[sender], self.thresholds.evidence_sample_size)
            logging.warning(f"[mail] {sender}: {len(msgs)} messages touch flagged addresses {list(addresses)}")
            found.append(self._indicator(
                sender, IndicatorType.RISKY_IP_CORRELATION, msgs,
                detail=f"{len(msgs)} messages via flagged addresses " + ", ".join(addresses),
                extra={"addresses": addresses},
            ))
        return found

    def detect_excessive_failures(self, outbound: List[MailMessageRecord]) -> List[AbuseIndicator]:
        t = self.thresholds
        by_sender: Dict[str, List[MailMessageRecord]] = defaultdict(list)
        for m in outbound:
            if FAILED_STATUS_RE.search(m.status or ""):
                by_sender[m.sender].append(m)

        found: List[AbuseIndicator] = []
        for sender in sorted(by_sender):
            msgs = by_sender[sender]
            if len(msgs) <= t.failure_threshold:
                continue
            found.append(self._indicator(
                sender, IndicatorType.EXCESSIVE_FAILURES, msgs,
                detail=f"{len(msgs)} failed/bounced/rejected/blocked messages (threshold {t.failure_threshold})",
            ))
        return found

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _by_sender(messages: List[MailMessageRecord]) -> Dict[str, List[MailMessageRecord]]:
        out: Dict[str, List[MailMessageRecord]] = defaultdict(list)
        for m in messages:
            out[m.sender].append(m)
        return out

    def _indicator(self, sender: str, kind: IndicatorType, msgs: List[MailMessageRecord], detail: str,
                   extra: Optional[Dict[str, Tuple[str, ...]]] = None) -> AbuseIndicator:
        n = self.thresholds.evidence_sample_size
        evidence: Dict[str, Tuple[str, ...]] = {
            "message_ids": sample((m.message_id for m in msgs), n),
            "recipients": sample((m.recipient for m in msgs), n),
            "subjects": sample((m.subject for m in msgs), n),
        }
        if extra:
            evidence.update(extra)
        return AbuseIndicator(
            sender_identity=sender,
            indicator_type=kind,
            message_count=len(msgs),
            risk_score=self.thresholds.weight_for(kind),
            evidence=evidence,
            detail=detail,
        )


def detect_mail_abuse(messages: Iterable[MailMessageRecord], risky_addresses: Optional[Iterable[str]] = None,
                      context: Optional[RunContext] = None) -> List[AbuseIndicator]:
    return MailAbuseDetector(context).detect(messages, risky_addresses)
