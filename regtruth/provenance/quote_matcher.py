"""
Locate a rule's supporting quote inside raw evidence text.

Exact substring search runs first. When it fails, both sides are
normalized (compatibility forms, spacing, typographic quotes and soft
hyphens) and searched again. Offsets from a normalized hit are mapped
back to the raw text on a best-effort basis.
"""

from __future__ import annotations

import logging
import re
import unicodedata

from pydantic import BaseModel

from regtruth.core.models import MatchType, RiskTier

logger = logging.getLogger(__name__)

QUOTE_PREVIEW_LENGTH = 80

_DOUBLE_QUOTES = re.compile(
    "[\u201C\u201D\u201E\u201F\u00AB\u00BB\u2039\u203A\u275D\u275E\u276E\u276F\uFF02]"
)
_APOSTROPHES = re.compile("[\u2018\u2019\u201A\u201B\u2032\uFF07]")
_WHITESPACE = re.compile(r"\s+")


class QuoteMatch(BaseModel):
    """Where (and how) a quote was found."""
    found: bool
    match_type: MatchType
    start: int | None = None
    end: int | None = None
    offsets_exact: bool = False
    evidence_hash: str | None = None
    quote_preview: str = ""


class TierAcceptance(BaseModel):
    acceptable: bool
    reason: str


def quote_preview(quote: str) -> str:
    return quote[:QUOTE_PREVIEW_LENGTH]


def _fold(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\u00A0", " ")
    text = text.replace("\u00AD", "")
    text = _DOUBLE_QUOTES.sub('"', text)
    return _APOSTROPHES.sub("'", text)


def normalize_for_match(text: str) -> str:
    """Normalize text for tolerant comparison.

    Applies NFKC, maps non-breaking spaces to spaces, drops soft hyphens,
    folds typographic quotes and apostrophes to their ASCII forms, then
    collapses whitespace and trims.
    """
    return _WHITESPACE.sub(" ", _fold(text)).strip()


def _normalize_with_offsets(raw: str) -> tuple[str, list[int]]:
    """Normalize character by character, remembering each output char's raw index."""
    chars: list[str] = []
    positions: list[int] = []
    for index, ch in enumerate(raw):
        for out in _fold(ch):
            if out.isspace():
                if not chars or chars[-1] == " ":
                    continue
                out = " "
            chars.append(out)
            positions.append(index)
    if chars and chars[-1] == " ":
        chars.pop()
        positions.pop()
    return "".join(chars), positions


def find_quote_in_evidence(
    raw_content: str,
    quote: str,
    evidence_hash: str | None = None,
) -> QuoteMatch:
    """Search for a quote in raw evidence.

    Args:
        raw_content: The immutable evidence text
        quote: The quote recorded on the source pointer
        evidence_hash: Content hash of the evidence, carried into the result

    Returns:
        QuoteMatch with match_type exact, normalized or not_found
    """
    preview = quote_preview(quote)

    if not quote or not quote.strip() or not raw_content:
        return QuoteMatch(
            found=False, match_type=MatchType.NOT_FOUND,
            evidence_hash=evidence_hash, quote_preview=preview,
        )

    start = raw_content.find(quote)
    if start >= 0:
        return QuoteMatch(
            found=True,
            match_type=MatchType.EXACT,
            start=start,
            end=start + len(quote),
            offsets_exact=True,
            evidence_hash=evidence_hash,
            quote_preview=preview,
        )

    normalized_quote = normalize_for_match(quote)
    if not normalized_quote:
        return QuoteMatch(
            found=False, match_type=MatchType.NOT_FOUND,
            evidence_hash=evidence_hash, quote_preview=preview,
        )

    mapped, positions = _normalize_with_offsets(raw_content)
    index = mapped.find(normalized_quote)
    if index >= 0:
        logger.debug(f"[Provenance] Normalized match for quote '{preview}'")
        return QuoteMatch(
            found=True,
            match_type=MatchType.NORMALIZED,
            start=positions[index],
            end=positions[index + len(normalized_quote) - 1] + 1,
            evidence_hash=evidence_hash,
            quote_preview=preview,
        )

    # Combining sequences can compose differently char by char than as a whole
    if normalized_quote in normalize_for_match(raw_content):
        return QuoteMatch(
            found=True, match_type=MatchType.NORMALIZED,
            evidence_hash=evidence_hash, quote_preview=preview,
        )

    return QuoteMatch(
        found=False, match_type=MatchType.NOT_FOUND,
        evidence_hash=evidence_hash, quote_preview=preview,
    )


def validate_quote_in_evidence(
    raw_content: str,
    quote: str,
    risk_tier: RiskTier | str,
    evidence_hash: str | None = None,
) -> tuple[QuoteMatch, TierAcceptance]:
    """Find a quote and judge the match against the rule's tier."""
    match = find_quote_in_evidence(raw_content, quote, evidence_hash)
    return match, is_match_type_acceptable_for_tier(match.match_type, risk_tier)


def is_match_type_acceptable_for_tier(
    match_type: MatchType | str,
    risk_tier: RiskTier | str,
) -> TierAcceptance:
    """Tier policy for quote matches.

    not_found is never acceptable. exact always is. normalized is accepted
    for T2/T3 (and flagged for audit) but rejected for T0/T1.
    """
    match_type = MatchType(match_type)
    risk_tier = RiskTier(risk_tier)

    if match_type == MatchType.NOT_FOUND:
        return TierAcceptance(acceptable=False, reason="Quote not found in evidence")
    if match_type == MatchType.EXACT:
        return TierAcceptance(acceptable=True, reason="Exact match")
    if risk_tier.is_high_stakes:
        return TierAcceptance(
            acceptable=False,
            reason=f"{risk_tier.value} rules require an exact quote match, got normalized",
        )
    return TierAcceptance(
        acceptable=True,
        reason="Normalized match accepted for T2/T3 (logged for audit)",
    )


def verify_offset_invariant(raw_content: str, quote: str, start: int | None, end: int | None) -> bool:
    """True when stored exact offsets slice the quote back out of the evidence."""
    if start is None or end is None:
        return False
    if start < 0 or end > len(raw_content) or start >= end:
        return False
    return raw_content[start:end] == quote
