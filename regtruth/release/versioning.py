"""Semantic versioning for releases, driven by the risk tiers in the batch."""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import BaseModel

from regtruth.core.models import RiskTier

logger = logging.getLogger(__name__)

INITIAL_VERSION = "0.0.0"


class VersionBump(BaseModel):
    version: str
    release_type: str  # major | minor | patch
    suggested_version: str | None = None
    overridden: bool = False


def parse_version(version: str) -> tuple[int, int, int]:
    parts = version.strip().lstrip("v").split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Not a semantic version: {version!r}")
    major, minor, patch = (int(p) for p in parts)
    return major, minor, patch


def release_type_for(tiers: Iterable[RiskTier | str]) -> str:
    tiers = {RiskTier(t) for t in tiers}
    if RiskTier.T0 in tiers:
        return "major"
    if RiskTier.T1 in tiers:
        return "minor"
    return "patch"


def compute_next_version(
    previous_version: str | None,
    tiers: Iterable[RiskTier | str],
    suggested_version: str | None = None,
) -> VersionBump:
    """Bump major for any T0, minor for any T1, patch otherwise.

    A suggested version that disagrees is logged and ignored.
    """
    major, minor, patch = parse_version(previous_version or INITIAL_VERSION)
    release_type = release_type_for(tiers)

    if release_type == "major":
        version = f"{major + 1}.0.0"
    elif release_type == "minor":
        version = f"{major}.{minor + 1}.0"
    else:
        version = f"{major}.{minor}.{patch + 1}"

    overridden = suggested_version is not None and suggested_version.strip().lstrip("v") != version
    if overridden:
        logger.warning(
            f"[Release] Suggested version {suggested_version} ignored; "
            f"{release_type} bump from {previous_version or INITIAL_VERSION} gives {version}"
        )

    return VersionBump(
        version=version,
        release_type=release_type,
        suggested_version=suggested_version,
        overridden=overridden,
    )
