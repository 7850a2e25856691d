from contextlib import contextmanager
from typing import ContextManager, List

from sqlalchemy.orm import Session

from .resolver import Resolver
from .schema import EntityRef
from .storage import SqlAlchemyStorage


@contextmanager
def unit_of_work(session: Session, **kwargs) -> ContextManager[Resolver]:
    """ A Resolver for this Session, for the duration of the `with` block

    Usage:

        with unit_of_work(ssn, batch_width=100) as resolver:
            users = resolver.fetch(select(User), plan)
            ...

        resolver.stats  # -> ResolverStats(...)

    Args:
        session: The Session to load things with
        kwargs: Resolver() arguments: cache_backend, cache_ttl, batch_width
    """
    resolver = Resolver(SqlAlchemyStorage(session), **kwargs)
    with resolver:
        yield resolver


def pending_owners(resolver: Resolver) -> List[EntityRef]:
    """ Every owner waiting in some pending batch of this resolver """
    return [
        ref
        for descriptor in resolver.collector.descriptors
        for ref in resolver.collector.pending(descriptor)
    ]
