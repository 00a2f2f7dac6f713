"""Auto-approval policy."""

from regtruth.policy.auto_approval import (
    AutoApprovalAllowlist,
    AutoApprovalDecision,
    get_allowlist,
    is_auto_approval_allowed,
    load_allowlist,
)

__all__ = [
    "AutoApprovalAllowlist",
    "AutoApprovalDecision",
    "get_allowlist",
    "is_auto_approval_allowed",
    "load_allowlist",
]
