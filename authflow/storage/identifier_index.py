from __future__ import annotations

from typing import Iterable, Optional

from authflow.storage.keys import FlowNamespace, identifier_key, unique_identifiers
from authflow.storage.session_store import CacheBatch, KeyValueCache


class IdentifierIndex:
    """Identifier -> active session id, one namespace per flow family.

    Linking an identifier overwrites whatever session it pointed at before, so
    at most one session is discoverable per identifier and namespace.
    """

    def __init__(self, cache: KeyValueCache, namespace: FlowNamespace):
        self.cache = cache
        self.namespace = namespace

    def _key(self, identifier: str) -> str:
        return identifier_key(self.namespace, identifier)

    async def link(self, identifier: str, session_id: str, ttl_seconds: int) -> None:
        await self.cache.set(self._key(identifier), session_id, int(ttl_seconds))

    async def resolve(self, identifier: Optional[str]) -> Optional[str]:
        normalized = unique_identifiers([identifier])
        if not normalized:
            return None
        return await self.cache.get(self._key(normalized[0]))

    async def unlink(self, identifier: str) -> None:
        await self.cache.delete(self._key(identifier))

    def stage_link(
        self,
        batch: CacheBatch,
        identifiers: Iterable[Optional[str]],
        session_id: str,
        ttl_seconds: int,
    ) -> None:
        for identifier in unique_identifiers(identifiers):
            batch.set(self._key(identifier), session_id, int(ttl_seconds))

    def stage_unlink(self, batch: CacheBatch, identifiers: Iterable[Optional[str]]) -> None:
        keys = [self._key(i) for i in unique_identifiers(identifiers)]
        if keys:
            batch.delete(*keys)


__all__ = ["IdentifierIndex"]
