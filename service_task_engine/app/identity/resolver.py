"""
Identity resolution from external (authentication) ids to canonical
personnel ids.

Tasks have historically been assigned with both forms, so both must keep
working. Resolution order:

1. direct: the external id is itself a personnel record id
2. linked: a personnel record stores the external id in its link field
3. email: a personnel record has the given email address
4. degraded: no record found; the raw external id is used and a warning
   is logged. Degraded results are not cached.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shared.config import BaseConfig
from shared.errors import IdentityResolutionDegraded, ValidationError
from shared.logging import get_logger

from ..store.base import DocumentStore, QueryFilter

DIRECT = "direct"
LINKED = "linked"
EMAIL = "email"
DEGRADED = "degraded"


@dataclass(frozen=True)
class ResolvedIdentity:
    """Result of resolving one external id."""
    external_id: str
    personnel_id: str
    method: str
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "personnel_id": self.personnel_id,
            "method": self.method,
            "degraded": self.degraded,
        }


class IdentityResolver:
    """Resolves external ids through the fallback chain, memoized per external id."""

    def __init__(self, store: DocumentStore, config: BaseConfig, metrics: Optional[Any] = None):
        self.store = store
        self.config = config
        self.metrics = metrics
        self.collection = config.personnel_collection
        self.logger = get_logger("task-engine.identity")
        self._cache: Dict[str, ResolvedIdentity] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def cached(self, external_id: str) -> Optional[ResolvedIdentity]:
        return self._cache.get(external_id)

    def clear_cache(self) -> int:
        """Drop every memoized mapping and return how many there were."""
        cleared = len(self._cache)
        self._cache.clear()
        self.logger.info("Identity cache cleared", entries=cleared)
        return cleared

    def aliases_for(self, personnel_id: str) -> List[str]:
        """External ids known to map onto a personnel id."""
        return sorted(
            external_id for external_id, resolved in self._cache.items()
            if resolved.personnel_id == personnel_id and external_id != personnel_id
        )

    async def resolve(self, external_id: str, email: Optional[str] = None) -> str:
        return (await self.resolve_detailed(external_id, email)).personnel_id

    async def resolve_strict(self, external_id: str, email: Optional[str] = None) -> str:
        """Like resolve, but raise IdentityResolutionDegraded instead of falling back."""
        resolved = await self.resolve_detailed(external_id, email)
        if resolved.degraded:
            raise IdentityResolutionDegraded(external_id, email)
        return resolved.personnel_id

    async def resolve_detailed(self, external_id: str, email: Optional[str] = None) -> ResolvedIdentity:
        if not external_id:
            raise ValidationError("external_id is required")

        cached = self._cache.get(external_id)
        if cached is not None:
            return cached

        resolved = await self._lookup(external_id, email)
        if self.metrics:
            self.metrics.increment_counter("identity_resolutions_total", method=resolved.method)

        if resolved.degraded:
            self.logger.warning(
                "Identity resolution degraded, using raw external id",
                external_id=external_id,
                email=email
            )
            return resolved

        # Concurrent first-time lookups compute the same chain result
        self._cache[external_id] = resolved
        self.logger.debug(
            "Identity resolved",
            external_id=external_id,
            personnel_id=resolved.personnel_id,
            method=resolved.method
        )
        return resolved

    async def _lookup(self, external_id: str, email: Optional[str]) -> ResolvedIdentity:
        record = await self.store.get(self.collection, external_id)
        if record is not None:
            return ResolvedIdentity(external_id, record["id"], DIRECT)

        linked = await self.store.query(
            self.collection, [QueryFilter(self.config.identity_link_field, "==", external_id)], limit=1
        )
        if linked:
            return ResolvedIdentity(external_id, linked[0]["id"], LINKED)

        if email:
            by_email = await self.store.query(
                self.collection, [QueryFilter(self.config.email_field, "==", email)], limit=1
            )
            if by_email:
                return ResolvedIdentity(external_id, by_email[0]["id"], EMAIL)

        return ResolvedIdentity(external_id, external_id, DEGRADED, degraded=True)
