"""
In-memory cache for model arbitration outputs.

Raw payloads are cached, never parsed objects: each hit is validated
against the current ``ArbiterOutput`` schema, and a payload that no longer
fits is evicted and treated as a miss.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Any

from pydantic import ValidationError

from regtruth.arbitration.schemas import (
    AgentError,
    AgentOk,
    AgentResult,
    AgentSchemaInvalid,
    ArbiterOutput,
)
from regtruth.core.interfaces import ArbitrationClient

logger = logging.getLogger(__name__)


def cache_key(claim_a: str, claim_b: str, conflict_type: str) -> str:
    payload = json.dumps([claim_a, claim_b, conflict_type])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ArbiterOutputCache:
    """Thread-safe cache of raw arbitration payloads."""

    def __init__(self, schema_version: str, max_size: int = 500):
        """Initialize the cache.

        Args:
            schema_version: Version tag stored alongside each payload
            max_size: Maximum number of payloads to cache
        """
        self._cache: dict[str, tuple[str, dict[str, Any]]] = {}
        self._schema_version = schema_version
        self._max_size = max_size
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._invalidated = 0

    def get(self, key: str) -> ArbiterOutput | None:
        """Get a cached output, re-validated against the current schema."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None
            stored_version, raw = entry
            try:
                output = ArbiterOutput.model_validate(raw)
            except ValidationError:
                logger.info(
                    f"[AgentCache] Evicting payload cached under {stored_version}: "
                    f"no longer matches {self._schema_version}"
                )
                del self._cache[key]
                self._invalidated += 1
                self._misses += 1
                return None
            self._hits += 1
            return output

    def put(self, key: str, raw: dict[str, Any]) -> None:
        with self._lock:
            if len(self._cache) >= self._max_size:
                self._evict()
            self._cache[key] = (self._schema_version, raw)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _evict(self) -> None:
        """Drop the older half of the entries."""
        keys = list(self._cache)
        for key in keys[: len(keys) // 2 or 1]:
            del self._cache[key]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "invalidated": self._invalidated,
                "hit_rate": self._hits / total if total else 0.0,
            }


def run_arbitration(
    client: ArbitrationClient,
    claim_a: str,
    claim_b: str,
    conflict_type: str,
    cache: ArbiterOutputCache | None = None,
) -> AgentResult:
    """Ask the model to arbitrate, going through the cache when one is given."""
    key = cache_key(claim_a, claim_b, conflict_type)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return AgentOk(output=cached, from_cache=True)

    try:
        raw = client.arbitrate(claim_a, claim_b, conflict_type)
    except Exception as e:  # external call; reported as a tagged error
        logger.error(f"[Arbiter] Model call failed: {e}")
        return AgentError(error=str(e))

    try:
        output = ArbiterOutput.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"[Arbiter] Model output failed schema validation: {e.error_count()} errors")
        return AgentSchemaInvalid(
            errors=[err["msg"] for err in e.errors()],
            raw=raw if isinstance(raw, dict) else None,
        )

    if cache is not None:
        cache.put(key, raw)
    return AgentOk(output=output)
