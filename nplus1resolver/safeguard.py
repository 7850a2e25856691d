""" Safeguard: notice the N+1 problem on a plain Session

The resolver only helps where you use it. Everywhere else, SqlAlchemy happily lazy-loads
a relationship once per instance. The safeguard is a session-wide catch-all that notices those lazy loads:

    safeguard_session(ssn)

    for user in ssn.query(User):
        user.articles  # WARNING: User.articles: lazy load of a relationship for User(1,)

    lazy_load_count(ssn)  # -> N

In unit-tests, make it fail loudly instead:

    safeguard_session(ssn, raise_on_lazyload=True)
"""

import logging

import sqlalchemy as sa
import sqlalchemy.event
import sqlalchemy.orm

from .exc import LazyLoadingAttributeError


logger = logging.getLogger(__name__)


def safeguard_session(ssn: sa.orm.Session, raise_on_lazyload: bool = False):
    """ Enable the safeguard for this session

    Args:
        ssn: The session to watch
        raise_on_lazyload: Raise LazyLoadingAttributeError instead of logging a warning
    """
    ssn.info[SESSION_MARKER] = {'raise': raise_on_lazyload}
    ssn.info.setdefault(SESSION_COUNTER, 0)


def safeguard_session_disable(ssn: sa.orm.Session):
    """ Disable the safeguard for this session """
    ssn.info.pop(SESSION_MARKER, None)


def is_safeguard_enabled(ssn: sa.orm.Session) -> bool:
    """ Has safeguard_session() been called on this session? """
    return SESSION_MARKER in ssn.info


def lazy_load_count(ssn: sa.orm.Session) -> int:
    """ How many relationship lazy loads the safeguard has seen on this session """
    return ssn.info.get(SESSION_COUNTER, 0)


SESSION_MARKER = ':nplus1resolver:safeguard'
SESSION_COUNTER = ':nplus1resolver:lazy-loads'


# region Event listeners

@sa.event.listens_for(sa.orm.Session, 'do_orm_execute')
def on_orm_execute(orm_execute_state: sa.orm.ORMExecuteState):
    # Is safeguard enabled for this session?
    session: sa.orm.Session = orm_execute_state.session
    if not is_safeguard_enabled(session):
        return

    # Only look at relationship lazy loads.
    # selectinload() and friends are relationship loads too, but they load all instances at once:
    # they have no `lazy_loaded_from`
    if not orm_execute_state.is_relationship_load:
        return
    state = orm_execute_state.lazy_loaded_from
    if state is None:
        return

    # Okay, somebody is lazy-loading a relationship for one single instance.
    session.info[SESSION_COUNTER] = session.info.get(SESSION_COUNTER, 0) + 1
    model_name = state.class_.__name__
    attr_name = _relationship_name(orm_execute_state)

    if session.info[SESSION_MARKER]['raise']:
        raise LazyLoadingAttributeError(model_name, attr_name, reason='lazy loading is forbidden by the safeguard')

    logger.warning(
        "%s.%s: lazy load of a relationship for %s%r",
        model_name, attr_name,
        model_name, state.identity,
    )


def _relationship_name(orm_execute_state: sa.orm.ORMExecuteState) -> str:
    """ Get the name of the relationship being lazy-loaded """
    # The path alternates between entities and properties: (Mapper, RelationshipProperty, ...)
    path = orm_execute_state.loader_strategy_path
    if path is not None and path.path:
        return getattr(path.path[-1], 'key', '?')
    return '?'

# endregion
