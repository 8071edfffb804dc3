"""Redis-backed exclusivity claims for tag-combination refinement.

A claim is a ``SET NX PX`` key holding a random token; only the holder's
token can release it, and it expires on its own if the holder dies.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence

from redis.asyncio import Redis  # type: ignore[import-untyped]

_PREFIX = "memgarden:refine"

# Compare-and-delete so a late release never drops someone else's claim.
_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


def claim_key(combination: Sequence[str]) -> str:
    return f"{_PREFIX}:{','.join(sorted(combination))}"


class RefinementClaims:
    """Per-combination exclusivity tokens shared by every worker."""

    def __init__(self, redis: Redis, *, ttl_seconds: int = 300) -> None:
        self._redis = redis
        self._ttl_ms = ttl_seconds * 1000
        self._release = redis.register_script(_RELEASE_SCRIPT)

    async def acquire(self, combination: Sequence[str]) -> str | None:
        """Return a token if the claim was taken, ``None`` if already held."""
        token = uuid.uuid4().hex
        acquired = await self._redis.set(
            claim_key(combination), token, nx=True, px=self._ttl_ms
        )
        return token if acquired else None

    async def release(self, combination: Sequence[str], token: str) -> bool:
        released = await self._release(keys=[claim_key(combination)], args=[token])
        return bool(released)

    async def is_held(self, combination: Sequence[str]) -> bool:
        return bool(await self._redis.exists(claim_key(combination)))
