"""Routing rules that enter review."""

from regtruth.review.conflict_detector import ConflictSeed, detect_structural_conflicts, windows_overlap
from regtruth.review.reviewer import ReviewOutcome, ReviewResult, Reviewer

__all__ = [
    "ConflictSeed",
    "ReviewOutcome",
    "ReviewResult",
    "Reviewer",
    "detect_structural_conflicts",
    "windows_overlap",
]
