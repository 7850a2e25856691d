""" The resolver engine: one unit of work worth of association loading

Every (owner, association) pair goes through a little state machine:

    UNRESOLVED -> PENDING -> RESOLVED
                          -> FAILED

* EAGER associations are RESOLVED right away: the root query has JOINed them.
* LAZY_BATCH associations become PENDING on first access: the owner (and all its siblings) are
  registered with the batch collector, and you get a `Deferred` placeholder.
* When the placeholder is forced (or on flush()), the whole pending batch is loaded with one query per chunk,
  and every owner in it becomes RESOLVED at once. Or FAILED, if the query fails.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

from dogpile.cache.api import NO_VALUE

from .cache import AssociationCache, CacheBackend, cache_key
from .collector import DEFAULT_BATCH_WIDTH, BatchCollector
from .exc import BatchFetchError, InvalidPlanError, LazyLoadingAttributeError, ResolverClosedError
from .plan import FetchMode, FetchPlan, PlannedAssociation
from .schema import AssociationDescriptor, EntityRef, describe
from .storage import StorageExecutor


logger = logging.getLogger(__name__)


class ResolutionState(enum.Enum):
    UNRESOLVED = 'unresolved'
    PENDING = 'pending'
    RESOLVED = 'resolved'
    FAILED = 'failed'


@dataclass
class ResolverStats:
    """ What happened during one unit of work """
    root_queries: int = 0  # fetch() calls
    batch_fetches: int = 0  # bulk queries issued
    fetched_owners: int = 0  # owner keys sent to the storage
    failed_batches: int = 0  # drains that ended up FAILED
    cache_hits: int = 0  # reads of an already RESOLVED association
    backend_hits: int = 0  # owners served by the cross-unit-of-work cache backend
    resolved: int = 0  # association cache entries written


class Deferred:
    """ A placeholder for an association value that may not be loaded yet

    Nothing happens behind your back: the value is only loaded when you call get().
    """
    __slots__ = ('_resolver', 'owner', 'descriptor')

    def __init__(self, resolver: 'Resolver', owner: EntityRef, descriptor: AssociationDescriptor):
        self._resolver = resolver
        self.owner = owner
        self.descriptor = descriptor

    @property
    def state(self) -> ResolutionState:
        return self._resolver._state_of(self.owner, self.descriptor)

    @property
    def resolved(self) -> bool:
        return self.state is ResolutionState.RESOLVED

    def get(self):
        """ Get the value. Loads the whole pending batch if necessary

        Raises:
            BatchFetchError: the batch this owner belongs to has failed
        """
        return self._resolver._force(self.owner, self.descriptor)

    def __repr__(self):
        return f'<Deferred {self.owner}.{self.descriptor.name}: {self.state.value}>'


class Resolver:
    """ Association resolver for one unit of work (one request, one transaction)

    Owns the association cache and the batch collector; both are discarded by close().
    Not thread-safe: a unit of work is single-threaded by contract.

    Usage:

        with Resolver(SqlAlchemyStorage(ssn)) as resolver:
            users = resolver.fetch(select(User), FetchPlan(User, lazy_batch('articles')))

            for user in users:
                resolver.get(user, 'articles')  # one query for all of them

        resolver.stats.batch_fetches  # -> 1
    """

    def __init__(self,
                 storage: StorageExecutor,
                 cache_backend: CacheBackend = None,
                 cache_ttl: Optional[float] = None,
                 batch_width: int = DEFAULT_BATCH_WIDTH):
        """
        Args:
            storage: The storage to run queries with
            cache_backend: Optional cross-unit-of-work cache to consult before every bulk fetch
            cache_ttl: Time-to-live for values put into `cache_backend`
            batch_width: Default max number of owners per bulk query
        """
        self.storage = storage
        self.cache_backend = cache_backend
        self.cache_ttl = cache_ttl

        self.cache = AssociationCache()
        self.collector = BatchCollector(batch_width)
        self.stats = ResolverStats()

        self._plans: Dict[type, FetchPlan] = {}
        self._owners: Dict[type, Dict[EntityRef, object]] = {}
        self._states: Dict[Tuple[EntityRef, AssociationDescriptor], ResolutionState] = {}
        self._failures: Dict[Tuple[EntityRef, AssociationDescriptor], BatchFetchError] = {}
        self._closed = False

    # region Public API

    def fetch(self, query, plan: FetchPlan) -> list:
        """ Run the root query with the plan applied, and track the loaded owners

        Args:
            query: The root query, e.g. select(User)
            plan: The plan for its associations
        """
        self._check_open()
        entities = self.storage.execute(plan.resolve(query))
        self.stats.root_queries += 1
        self.track(entities, plan)
        return entities

    def track(self, entities: Iterable, plan: FetchPlan) -> List[EntityRef]:
        """ Put entities loaded elsewhere under the plan's control

        EAGER associations that are loaded on them become RESOLVED.
        """
        self._check_open()
        self._plans[plan.root] = plan

        refs = []
        for entity in entities:
            ref = self.storage.identify(entity)
            self._owners.setdefault(ref.type, {}).setdefault(ref, entity)
            refs.append(ref)

            for planned in plan.eager_entries:
                value = self.storage.loaded_value(entity, planned.descriptor)
                if value is not NO_VALUE:
                    self._resolve(ref, planned, value)
        return refs

    def load(self, owner, name: str) -> Deferred:
        """ Access an association: get a placeholder for its value

        The first access to a LAZY_BATCH association registers this owner, and every other tracked owner
        of the same type that still doesn't have it, for a bulk load.
        Touching one, you're likely going to touch them all.

        Raises:
            LazyLoadingAttributeError: the association is not covered by a fetch plan
        """
        self._check_open()
        ref, planned = self._lookup(owner, name)
        descriptor = planned.descriptor
        state = self._state_of(ref, descriptor)

        if state is ResolutionState.RESOLVED:
            self.stats.cache_hits += 1
        elif state is ResolutionState.UNRESOLVED:
            if planned.mode is FetchMode.EAGER:
                # Eager, but not loaded: tracked without the JOIN
                raise LazyLoadingAttributeError(ref.type.__name__, name, reason='EAGER, but it was not loaded by the root query')
            self._register_with_siblings(ref, planned)

        return Deferred(self, ref, descriptor)

    def get(self, owner, name: str):
        """ Get the value of an association right now. Same as load(owner, name).get() """
        return self.load(owner, name).get()

    def state(self, owner, name: str) -> ResolutionState:
        """ Where the association of this owner is in its lifecycle """
        self._check_open()
        ref, planned = self._lookup(owner, name)
        return self._state_of(ref, planned.descriptor)

    def flush(self, association: Union[str, AssociationDescriptor] = None, owner_type: type = None):
        """ Load pending batches right now

        Args:
            association: The association to flush (name or descriptor). Default: every pending one
            owner_type: When the association is given by name: the owner class

        Raises:
            BatchFetchError: a batch has failed. Batches after it are not flushed.
        """
        self._check_open()
        if association is None:
            descriptors = self.collector.descriptors
        else:
            descriptors = [self._descriptor(association, owner_type)]

        for descriptor in descriptors:
            self._drain(descriptor)

    def retry(self, association: Union[str, AssociationDescriptor], owner=None, owner_type: type = None):
        """ Make FAILED owners UNRESOLVED again, so that the next access loads them once more

        A failed batch is never retried automatically: that's for you to decide.

        Args:
            association: The association (name or descriptor)
            owner: Only retry for this one owner. Default: every failed owner of this association
            owner_type: When the association is given by name and no owner is given: the owner class
        """
        self._check_open()
        if owner is not None:
            ref = self.storage.identify(owner)
            descriptor = self._descriptor(association, ref.type)
            keys = [(ref, descriptor)]
        else:
            descriptor = self._descriptor(association, owner_type)
            keys = [key for key in self._failures if key[1] == descriptor]

        for key in keys:
            if self._failures.pop(key, None) is not None:
                del self._states[key]

    def close(self) -> ResolverStats:
        """ End the unit of work: drop the cache and every pending batch

        Returns:
            Statistics for the unit of work
        """
        self.cache.clear()
        self.collector.clear()
        self._plans.clear()
        self._owners.clear()
        self._states.clear()
        self._failures.clear()
        self._closed = True
        return self.stats

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    # endregion

    # region State machine

    def _state_of(self, ref: EntityRef, descriptor: AssociationDescriptor) -> ResolutionState:
        return self._states.get((ref, descriptor), ResolutionState.UNRESOLVED)

    def _register_with_siblings(self, ref: EntityRef, planned: PlannedAssociation):
        """ UNRESOLVED -> PENDING for this owner, and for every sibling that's UNRESOLVED as well """
        descriptor = planned.descriptor
        batch_width = planned.batch_width

        self._register(ref, descriptor, batch_width)

        # Siblings: owners of every class that goes by the same plan, subclasses included
        for owner_type, owners in self._owners.items():
            plan = self._plan_for(owner_type)
            if plan is None or plan.root is not descriptor.owner:
                continue
            for sibling in owners:
                if self._state_of(sibling, descriptor) is ResolutionState.UNRESOLVED:
                    self._register(sibling, descriptor, batch_width)

    def _register(self, ref: EntityRef, descriptor: AssociationDescriptor, batch_width: Optional[int]):
        self.collector.register(ref, descriptor, batch_width)
        self._states[ref, descriptor] = ResolutionState.PENDING

    def _force(self, ref: EntityRef, descriptor: AssociationDescriptor):
        """ Get the value, draining the pending batch if the owner is in it """
        self._check_open()
        state = self._state_of(ref, descriptor)

        if state is ResolutionState.PENDING:
            self._drain(descriptor)
            state = self._state_of(ref, descriptor)

        if state is ResolutionState.RESOLVED:
            return self.cache.get(ref, descriptor)
        elif state is ResolutionState.FAILED:
            raise self._failures[ref, descriptor]
        else:
            # retry() has been called after this placeholder was handed out
            raise LazyLoadingAttributeError(ref.type.__name__, descriptor.name, reason='it was reset; access it again')

    def _drain(self, descriptor: AssociationDescriptor):
        """ PENDING -> RESOLVED | FAILED for every owner in the pending batch

        All or nothing: if one chunk fails, the whole drained batch fails, and nothing goes into the cache.
        """
        chunks = self.collector.drain_chunks(descriptor)
        if not chunks:
            return
        owners: List[EntityRef] = [ref for chunk in chunks for ref in chunk]

        # Log
        if logger.isEnabledFor(logging.INFO):
            logger.info(
                "%s: batch loading of %s instances in %s chunk(s)",
                descriptor, len(owners), len(chunks)
            )

        planned = self._planned(descriptor)
        nested = planned.nested

        try:
            results: Dict[EntityRef, list] = {}
            fetched: List[EntityRef] = []
            for chunk in chunks:
                fetched.extend(self._fetch_chunk(descriptor, chunk, nested, results))
        except Exception as e:
            raise self._fail(descriptor, owners, e) from e

        for ref in owners:
            related = results.get(ref, [])
            value = tuple(related) if descriptor.is_many else (related[0] if related else None)
            self._resolve(ref, planned, value)

        # Only a complete drain gets shared with other units of work
        if self.cache_backend is not None:
            for ref in fetched:
                self._backend_set(ref, descriptor, results[ref])

    def _fetch_chunk(self, descriptor: AssociationDescriptor, chunk: List[EntityRef], nested: Optional[FetchPlan],
                     results: Dict[EntityRef, list]) -> List[EntityRef]:
        """ Load one chunk of owners into `results`: from the cache backend where possible, from the storage otherwise

        Returns:
            The owners that were loaded from the storage
        """
        misses = chunk
        if self.cache_backend is not None:
            misses = []
            for ref in chunk:
                cached = self._backend_get(ref, descriptor)
                if cached is NO_VALUE:
                    misses.append(ref)
                else:
                    results[ref] = self.storage.adopt(cached)
            self.stats.backend_hits += len(chunk) - len(misses)
            if len(misses) < len(chunk):
                logger.debug("%s: %s instances served from the cache backend", descriptor, len(chunk) - len(misses))

        if not misses:
            return []

        refs_by_key = {ref.key: ref for ref in misses}
        rows = self.storage.execute_batch(descriptor, list(refs_by_key), nested)
        self.stats.batch_fetches += 1
        self.stats.fetched_owners += len(misses)

        for key, ref in refs_by_key.items():
            results[ref] = list(rows.get(key, ()))
        return misses

    def _backend_get(self, ref: EntityRef, descriptor: AssociationDescriptor):
        """ Read from the cache backend. A backend that's down is a miss: the storage will answer """
        try:
            return self.cache_backend.get(cache_key(ref, descriptor))
        except Exception as e:
            logger.warning("%s: cache backend read for %s failed, loading from the storage: %s", descriptor, ref, e)
            return NO_VALUE

    def _backend_set(self, ref: EntityRef, descriptor: AssociationDescriptor, value: list):
        """ Write to the cache backend. The value is already RESOLVED here: a failed write changes nothing """
        try:
            self.cache_backend.set(cache_key(ref, descriptor), value, self.cache_ttl)
        except Exception as e:
            logger.warning("%s: cache backend write for %s failed: %s", descriptor, ref, e)

    def _resolve(self, ref: EntityRef, planned: PlannedAssociation, value):
        """ -> RESOLVED: write the value into the cache and onto the entity """
        descriptor = planned.descriptor
        if (ref, descriptor) in self.cache:
            return

        value = self.cache.put(ref, descriptor, value)
        self._states[ref, descriptor] = ResolutionState.RESOLVED
        self.stats.resolved += 1

        entity = self._owners.get(ref.type, {}).get(ref)
        if entity is not None:
            self.storage.populate(entity, descriptor, value)

        # The related objects come under the nested plan
        if planned.nested is not None and value:
            self.track(value if descriptor.is_many else [value], planned.nested)

    def _fail(self, descriptor: AssociationDescriptor, owners: List[EntityRef], original: Exception) -> BatchFetchError:
        """ -> FAILED for every owner of the batch. Returns the error to raise """
        error = BatchFetchError(descriptor, owners, original)
        for ref in owners:
            self._states[ref, descriptor] = ResolutionState.FAILED
            self._failures[ref, descriptor] = error
        self.stats.failed_batches += 1

        logger.warning("%s: bulk fetch for %s instances failed: %s", descriptor, len(owners), original)
        return error

    # endregion

    # region Helpers

    def _lookup(self, owner, name: str) -> Tuple[EntityRef, PlannedAssociation]:
        """ Find the owner's reference and the planned association """
        ref = self.storage.identify(owner)
        plan = self._plan_for(ref.type)
        planned = plan.entry(name) if plan is not None else None
        if planned is None:
            raise LazyLoadingAttributeError(ref.type.__name__, name)

        # An owner nobody has tracked yet: adopt it
        self._owners.setdefault(ref.type, {}).setdefault(ref, owner)
        return ref, planned

    def _plan_for(self, owner_type: type) -> Optional[FetchPlan]:
        """ The plan of a class, or of its nearest base class: a plan for Animal covers a Dog as well """
        for cls in owner_type.__mro__:
            plan = self._plans.get(cls)
            if plan is not None:
                return plan
        return None

    def _planned(self, descriptor: AssociationDescriptor) -> PlannedAssociation:
        plan = self._plans.get(descriptor.owner)
        planned = plan.entry(descriptor.name) if plan is not None else None
        if planned is None or planned.descriptor != descriptor:
            # The plan has been replaced since this batch was registered
            planned = PlannedAssociation(descriptor, FetchMode.LAZY_BATCH)
        return planned

    def _descriptor(self, association: Union[str, AssociationDescriptor], owner_type: Optional[type]) -> AssociationDescriptor:
        if isinstance(association, AssociationDescriptor):
            return association
        if owner_type is None:
            # Find the only plan that knows this name
            candidates = [plan.root for plan in self._plans.values() if association in plan]
            if not candidates:
                raise InvalidPlanError(f'No fetch plan has an association named {association!r}')
            if len(candidates) > 1:
                names = ', '.join(root.__name__ for root in candidates)
                raise InvalidPlanError(f'Association {association!r} is ambiguous ({names}); give owner_type')
            owner_type = candidates[0]

        # The planned descriptor: subclasses share the one of their base class
        plan = self._plan_for(owner_type)
        if plan is not None and association in plan:
            return plan.entry(association).descriptor

        descriptors = describe(owner_type)
        if association not in descriptors:
            raise InvalidPlanError(f'{owner_type.__name__} has no relationship named {association!r}')
        return descriptors[association]

    def _check_open(self):
        if self._closed:
            raise ResolverClosedError('This unit of work has already ended')

    # endregion
