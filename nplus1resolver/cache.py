""" Association cache (per unit of work) and the optional cross-unit-of-work cache backend """

import time
from typing import Any, Dict, Optional, Protocol, Tuple

from dogpile.cache.api import NO_VALUE
from dogpile.cache.region import CacheRegion

from .schema import AssociationDescriptor, EntityRef


class AssociationCache:
    """ Per-unit-of-work memo: (owner, association) -> resolved value

    An entry, once written, is never overwritten: a second put() keeps the first value.
    There's no eviction: the whole thing is dropped when the unit of work ends.
    """

    def __init__(self):
        self._entries: Dict[Tuple[EntityRef, AssociationDescriptor], Any] = {}

    def get(self, owner: EntityRef, descriptor: AssociationDescriptor):
        """ Get the resolved value, or `NO_VALUE` """
        return self._entries.get((owner, descriptor), NO_VALUE)

    def put(self, owner: EntityRef, descriptor: AssociationDescriptor, value):
        """ Store a resolved value. Returns the value that's actually stored """
        return self._entries.setdefault((owner, descriptor), value)

    def clear(self):
        self._entries.clear()

    def __contains__(self, item: Tuple[EntityRef, AssociationDescriptor]):
        return item in self._entries

    def __len__(self):
        return len(self._entries)


class CacheBackend(Protocol):
    """ Cross-unit-of-work cache. Absence is always a valid answer """

    def get(self, key: str):
        """ Get a value, or `NO_VALUE` """

    def set(self, key: str, value, ttl: Optional[float]):
        """ Store a value for `ttl` seconds (forever, if None) """


class DogpileCacheBackend:
    """ CacheBackend on top of a dogpile.cache region

    Usage:

        region = make_region().configure('dogpile.cache.memory')
        resolver = Resolver(storage, cache_backend=DogpileCacheBackend(region), cache_ttl=60)

    Regions only know about one expiration time, so the per-entry TTL travels along with the value.
    """

    def __init__(self, region: CacheRegion):
        self.region = region

    def get(self, key: str):
        stored = self.region.get(key, ignore_expiration=True)
        if stored is NO_VALUE:
            return NO_VALUE

        expires_at, value = stored
        if expires_at is not None and expires_at <= time.time():
            self.region.delete(key)
            return NO_VALUE
        return value

    def set(self, key: str, value, ttl: Optional[float]):
        expires_at = time.time() + ttl if ttl is not None else None
        self.region.set(key, (expires_at, value))


def cache_key(owner: EntityRef, descriptor: AssociationDescriptor) -> str:
    """ Backend key for an association of one owner

    Example: 'nplus1:Number.fruits:(1,)'
    """
    return f'nplus1:{descriptor}:{owner.key!r}'
