"""
Release content hashing.

The hash covers a canonical snapshot of each rule's meaning, so
reformatting an applies-when expression or reordering the batch leaves it
unchanged while any change to a covered field alters it.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from regtruth.arbitration.deterministic import _as_date
from regtruth.storage.records import RuleRecord


def _canonical_applies_when(raw: str | None) -> Any:
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw.strip()


def rule_snapshot(rule: RuleRecord) -> dict[str, Any]:
    return {
        "concept_slug": rule.concept_slug,
        "applies_when": _canonical_applies_when(rule.applies_when),
        "value": rule.value,
        "value_type": rule.value_type,
        "effective_from": _as_date(rule.effective_from).isoformat(),
        "effective_until": _as_date(rule.effective_until).isoformat() if rule.effective_until else None,
    }


def compute_release_hash(rules: Iterable[RuleRecord]) -> str:
    snapshots = sorted(
        json.dumps(rule_snapshot(rule), sort_keys=True, separators=(",", ":"))
        for rule in rules
    )
    payload = "[" + ",".join(snapshots) + "]"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
