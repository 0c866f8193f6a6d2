"""
Redis cache of last known identity resolutions.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from shared.errors import ExternalServiceError
from shared.logging import get_logger

from ..models import IdentityKind, ResolvedIdentity
from ..plans.catalog import PlanCatalog


class RedisIdentityCache:
    """Stores the last successful resolution per wallet pair.

    Entries are only read when the store cannot answer; what comes back is
    always marked stale. Cache failures are logged and never surface to the
    resolution path.
    """

    IDENTITY_PREFIX = "identity:last:"

    def __init__(self, redis_url: str, catalog: PlanCatalog, ttl_seconds: int = 3600):
        self.redis_url = redis_url
        self.catalog = catalog
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("billing.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis cache started")

        except (RedisError, OSError) as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ExternalServiceError("redis", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    async def remember(self, identity: ResolvedIdentity) -> bool:
        """Store a fresh resolution as the last known state of its wallet pair."""
        if self.redis is None or identity.stale or self.ttl_seconds <= 0:
            return False
        try:
            await self.redis.setex(
                self._identity_key(identity.wallet_address, identity.chain_id),
                self.ttl_seconds,
                json.dumps(self._serialize(identity))
            )
            return True
        except (RedisError, OSError) as e:
            self.logger.warning("Error caching identity", identity_id=identity.identity_id, error=str(e))
            return False

    async def last_known(self, wallet_address: str, chain_id: str) -> Optional[ResolvedIdentity]:
        """Last known resolution for a wallet pair, marked stale."""
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(self._identity_key(wallet_address, chain_id))
        except (RedisError, OSError) as e:
            self.logger.warning("Error reading cached identity", wallet_address=wallet_address, error=str(e))
            return None

        if not cached:
            return None

        try:
            return self._deserialize(json.loads(cached))
        except (ValueError, KeyError) as e:
            self.logger.warning("Discarding unreadable cached identity", wallet_address=wallet_address, error=str(e))
            return None

    async def forget(self, wallet_address: str, chain_id: str) -> bool:
        """Drop the entry for a wallet pair that is no longer bound."""
        if self.redis is None:
            return False
        try:
            await self.redis.delete(self._identity_key(wallet_address, chain_id))
            return True
        except (RedisError, OSError) as e:
            self.logger.warning("Error deleting cached identity", wallet_address=wallet_address, error=str(e))
            return False

    async def health_check(self) -> bool:
        """Check Redis health."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError):
            return False

    def _identity_key(self, wallet_address: str, chain_id: str) -> str:
        return f"{self.IDENTITY_PREFIX}{wallet_address}:{chain_id}"

    @staticmethod
    def _serialize(identity: ResolvedIdentity) -> Dict[str, Any]:
        return {
            "kind": identity.kind.value,
            "identity_id": identity.identity_id,
            "primary_identity_id": identity.primary_identity_id,
            "parent_identity_id": identity.parent_identity_id,
            "wallet_address": identity.wallet_address,
            "chain_id": identity.chain_id,
            "plan": identity.plan.name,
            "trial_started_at": identity.trial_started_at.isoformat() if identity.trial_started_at else None,
            "trial_consumed": identity.trial_consumed,
            "resolved_at": identity.resolved_at.isoformat(),
        }

    def _deserialize(self, data: Dict[str, Any]) -> ResolvedIdentity:
        trial_started_at = data.get("trial_started_at")
        return ResolvedIdentity(
            kind=IdentityKind(data["kind"]),
            identity_id=data["identity_id"],
            primary_identity_id=data["primary_identity_id"],
            parent_identity_id=data.get("parent_identity_id"),
            wallet_address=data["wallet_address"],
            chain_id=data["chain_id"],
            plan=self.catalog.get_plan(data.get("plan")),
            trial_started_at=datetime.fromisoformat(trial_started_at) if trial_started_at else None,
            trial_consumed=data.get("trial_consumed", False),
            resolved_at=datetime.fromisoformat(data["resolved_at"]),
            stale=True,
        )
