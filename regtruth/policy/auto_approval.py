"""
Auto-approval policy.

One versioned lookup table, loaded from YAML, behind a single entry point:
``is_auto_approval_allowed``. Callers must not reimplement any part of
this decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel

from regtruth.core.models import AuthorityLevel, RiskTier

DEFAULT_ALLOWLIST_PATH = Path(__file__).parent / "data" / "allowlist.yaml"


@dataclass(frozen=True)
class AllowlistEntry:
    source_slug: str
    concept_prefix: str
    authority_levels: frozenset[AuthorityLevel]
    max_tier: RiskTier
    min_confidence: float

    def covers(self, source_slug: str, concept_slug: str) -> bool:
        return source_slug == self.source_slug and concept_slug.startswith(self.concept_prefix)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_slug": self.source_slug,
            "concept_prefix": self.concept_prefix,
            "authority_levels": sorted(level.value for level in self.authority_levels),
            "max_tier": self.max_tier.value,
            "min_confidence": self.min_confidence,
        }


@dataclass(frozen=True)
class AutoApprovalAllowlist:
    version: str
    entries: tuple[AllowlistEntry, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutoApprovalAllowlist:
        entries = tuple(
            AllowlistEntry(
                source_slug=entry["source_slug"],
                concept_prefix=entry["concept_prefix"],
                authority_levels=frozenset(AuthorityLevel(a) for a in entry["authority_levels"]),
                max_tier=RiskTier(entry["max_tier"]),
                min_confidence=float(entry["min_confidence"]),
            )
            for entry in data.get("entries") or []
        )
        return cls(version=str(data["version"]), entries=entries)


class AutoApprovalDecision(BaseModel):
    allowed: bool
    reason: str
    allowlist_version: str
    matched_entry: dict[str, Any] | None = None


def load_allowlist(path: Path | str | None = None) -> AutoApprovalAllowlist:
    """Load an allowlist YAML file."""
    with open(path or DEFAULT_ALLOWLIST_PATH, encoding="utf-8") as f:
        return AutoApprovalAllowlist.from_dict(yaml.safe_load(f))


@lru_cache
def get_allowlist() -> AutoApprovalAllowlist:
    """Get the packaged allowlist (cached)."""
    return load_allowlist()


def is_auto_approval_allowed(
    *,
    source_slug: str | None,
    concept_slug: str,
    authority_level: AuthorityLevel | str,
    risk_tier: RiskTier | str,
    confidence: float,
    allowlist: AutoApprovalAllowlist | None = None,
) -> AutoApprovalDecision:
    """Decide whether a rule may be approved without a human.

    A rule qualifies only when an entry for its source covers its concept
    prefix, lists its authority level, allows its tier and its confidence
    meets the entry's floor. T0/T1 never qualify.
    """
    allowlist = allowlist or get_allowlist()
    authority_level = AuthorityLevel(authority_level)
    risk_tier = RiskTier(risk_tier)

    def deny(reason: str, entry: AllowlistEntry | None = None) -> AutoApprovalDecision:
        return AutoApprovalDecision(
            allowed=False,
            reason=reason,
            allowlist_version=allowlist.version,
            matched_entry=entry.to_dict() if entry else None,
        )

    if risk_tier.is_high_stakes:
        return deny(f"{risk_tier.value} rules always require human approval")
    if not source_slug:
        return deny("Auto-approval requires a source slug")

    candidates = [e for e in allowlist.entries if e.covers(source_slug, concept_slug)]
    if not candidates:
        return deny(f"No allowlist entry for source '{source_slug}' and concept '{concept_slug}'")

    last_reason = ""
    for entry in candidates:
        if authority_level not in entry.authority_levels:
            last_reason = f"Authority {authority_level.value} not allowlisted for {entry.concept_prefix}*"
            continue
        if risk_tier.rank < entry.max_tier.rank:
            last_reason = f"Tier {risk_tier.value} exceeds allowlisted maximum {entry.max_tier.value}"
            continue
        if confidence < entry.min_confidence:
            last_reason = f"Confidence {confidence:.2f} below allowlisted minimum {entry.min_confidence:.2f}"
            continue
        return AutoApprovalDecision(
            allowed=True,
            reason=f"Allowlisted: {source_slug} / {entry.concept_prefix}*",
            allowlist_version=allowlist.version,
            matched_entry=entry.to_dict(),
        )

    return deny(last_reason)
