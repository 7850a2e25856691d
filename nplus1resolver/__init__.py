""" An SqlAlchemy association resolver that solves the N+1 problem with batch loading

TL;DR
=====

What happens if you touch an unloaded relationship while looping over results from the DB?

```python
users = ssn.query(User).all()

for user in users:
    user.articles  # load a relationship
```

Right. If you have 1000 users, you'll end up with 1000 queries.

Here's how you load that relationship for all those users with just one query:

```python
from nplus1resolver import FetchPlan, lazy_batch, unit_of_work

with unit_of_work(ssn) as resolver:
    users = resolver.fetch(select(User), FetchPlan(User, lazy_batch('articles')))

    for user in users:
        resolver.get(user, 'articles')
```

It will only make 1 query to load all the users, then when it sees that you want articles,
it will only make 1 additional query to load all articles¹ for those users.

¹: it will actually make 1 query per 500 users.

The N+1 Problem
===============

You load N objects with one query. Then some code touches a relationship on each of them,
and SqlAlchemy lazy-loads it: one query per object. That's N+1 queries,
and the number grows with the size of your result.

Crying shame.

The Solution
============

Tell the resolver, up front, which associations you're going to need, and how:

    plan = FetchPlan(User,
        eager('profile'),  # JOIN it right in the initial query
        lazy_batch('articles'),  # defer it; load in bulk when it's needed
    )

EAGER associations are loaded with a `joinedload()`: they're available right away.

LAZY_BATCH associations are not loaded at all: they get a `raiseload()`, so that SqlAlchemy
would never lazy-load them behind your back. When you need one, ask the resolver:

    resolver.load(user, 'articles')  # -> Deferred placeholder
    resolver.get(user, 'articles')  # -> the value

When you touch one of them, the resolver assumes that you're going to iterate through all of them:
every user it knows gets registered for the bulk load. Then, one query per 500 users loads
the relationship for all of them:

    SELECT users.id, articles.*
    FROM users JOIN articles ON users.id = articles.user_id
    WHERE users.id IN (...)

The loaded value is put into the resolver's cache, and onto the instance itself:
from now on, `user.articles` just works, without any queries.

Every association of every owner goes through a simple state machine:

    UNRESOLVED -> PENDING -> RESOLVED | FAILED

If the bulk query fails, every owner in that batch becomes FAILED, and every attempt
to get the value raises the same `BatchFetchError`. There's no automatic fallback to
per-instance loading: that would be the N+1 problem again. Call `resolver.retry()` if you want to.

Unit of work
============

A resolver lives as long as one unit of work: one request, one transaction.
It's not thread-safe; don't share it.
When it's closed, it gives you the statistics:

    with unit_of_work(ssn) as resolver:
        ...

    resolver.stats
    # ResolverStats(root_queries=1, batch_fetches=1, fetched_owners=10, ...)

To share results between units of work, give it a cache backend:

    region = make_region().configure('dogpile.cache.memory')

    with unit_of_work(ssn, cache_backend=DogpileCacheBackend(region), cache_ttl=60) as resolver:
        ...

Logging
=======

All logging is done to the 'nplus1resolver.*' loggers:

    05:09:37 [I] nplus1resolver.resolver: Number.fruits: batch loading of 4 instances in 1 chunk(s)

Other Included Tools
====================

`safeguard_session(ssn)`
------------------------

Watches a Session for relationship lazy loads and logs a warning for every one of them.
Use it to find out where the N+1 problem is.

    safeguard_session(ssn, raise_on_lazyload=True)

Will raise `LazyLoadingAttributeError` instead: use it in unit-tests.

`describe(Model)`
-----------------

Gives you an `AssociationDescriptor` for every relationship of a model.
"""

# Fetch plans
from .plan import FetchPlan, FetchMode, eager, lazy_batch

# The resolver
from .resolver import Resolver, ResolverStats, ResolutionState, Deferred
from .util import unit_of_work

# Building blocks
from .schema import EntityRef, AssociationDescriptor, Cardinality, Direction, describe
from .collector import BatchCollector, DEFAULT_BATCH_WIDTH
from .cache import AssociationCache, CacheBackend, DogpileCacheBackend
from .storage import StorageExecutor, SqlAlchemyStorage

# Safeguard
from .safeguard import safeguard_session, safeguard_session_disable, is_safeguard_enabled, lazy_load_count

# Exceptions
from .exc import InvalidPlanError, BatchFetchError, LazyLoadingAttributeError, ResolverClosedError
