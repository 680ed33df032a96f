"""Per-run state: configuration, identity cache and the completeness summary."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import DetectionConfig


def identity_key(identity: Any) -> str:
    """Canonical identity key: trimmed and lower-cased UPN / address."""
    return str(identity or "").strip().lower()


@dataclass
class RunSummary:
    """
    Counters describing how complete a detection pass was.

    - dropped: records removed by the normalizer, per source kind
    - drop_reasons: the same, broken down by reason
    - accepted: records kept, per source kind
    - skipped: events ignored inside a detector (e.g. no timestamp), per detector
    - missing_sources: source kinds that were absent or empty
    """

    dropped: Counter = field(default_factory=Counter)
    drop_reasons: Counter = field(default_factory=Counter)
    accepted: Counter = field(default_factory=Counter)
    skipped: Counter = field(default_factory=Counter)
    missing_sources: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_drop(self, kind: str, reason: str) -> None:
        with self._lock:
            self.dropped[kind] += 1
            self.drop_reasons[f"{kind}:{reason}"] += 1

    def record_accepted(self, kind: str, count: int) -> None:
        with self._lock:
            self.accepted[kind] += count

    def record_skip(self, detector: str, count: int = 1) -> None:
        with self._lock:
            self.skipped[detector] += count

    def record_missing(self, kind: str) -> None:
        with self._lock:
            if kind not in self.missing_sources:
                self.missing_sources.append(kind)

    @property
    def degraded(self) -> bool:
        return bool(self.dropped or self.skipped or self.missing_sources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": dict(sorted(self.accepted.items())),
            "dropped": dict(sorted(self.dropped.items())),
            "drop_reasons": dict(sorted(self.drop_reasons.items())),
            "skipped": dict(sorted(self.skipped.items())),
            "missing_sources": sorted(self.missing_sources),
            "degraded": self.degraded,
        }


@dataclass
class RunContext:
    """Everything a component needs for one run; replaces process-wide globals."""

    config: DetectionConfig = field(default_factory=DetectionConfig)
    summary: RunSummary = field(default_factory=RunSummary)
    display_names: Dict[str, str] = field(default_factory=dict)

    def remember_display_name(self, identity: str, display_name: str) -> None:
        key = identity_key(identity)
        name = (display_name or "").strip()
        if key and name and key not in self.display_names:
            self.display_names[key] = name

    def display_name_for(self, identity: str, default: Optional[str] = None) -> str:
        return self.display_names.get(identity_key(identity), default if default is not None else "")
