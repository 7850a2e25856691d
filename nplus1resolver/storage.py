""" Storage executors: the only place where SQL is actually run """

from typing import Iterable, List, Mapping, Protocol, Sequence, Tuple

from dogpile.cache.api import NO_VALUE
from funcy import group_values
from sqlalchemy import Column, select, tuple_
from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.orm import Mapper, Session, aliased, class_mapper
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.base import instance_state
from sqlalchemy.orm.state import InstanceState
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import ColumnElement

from .schema import AssociationDescriptor, EntityRef


class StorageExecutor(Protocol):
    """ What the resolver needs from the storage layer. Errors are treated opaquely """

    def execute(self, query) -> list:
        """ Run the root query, return entities """

    def execute_batch(self, descriptor: AssociationDescriptor, owner_keys: Sequence[Tuple], plan=None) -> Mapping[Tuple, list]:
        """ Load an association for many owners at once; return related objects grouped by owner key """

    def identify(self, entity) -> EntityRef:
        """ Get the identity of a loaded entity """

    def loaded_value(self, entity, descriptor: AssociationDescriptor):
        """ Get the value of an association loaded together with the entity, or `NO_VALUE` """

    def populate(self, entity, descriptor: AssociationDescriptor, value):
        """ Put a resolved value onto the entity itself """

    def adopt(self, values: Iterable) -> list:
        """ Bring objects that came from a cache into the current unit of work """


class SqlAlchemyStorage:
    """ Storage executor on top of an SqlAlchemy Session """

    def __init__(self, session: Session):
        self.session = session

    def execute(self, query: Select) -> list:
        # unique(): joinedload() of a collection yields the same owner many times
        return self.session.execute(query).unique().scalars().all()

    def execute_batch(self, descriptor: AssociationDescriptor, owner_keys: Sequence[Tuple], plan=None) -> Mapping[Tuple, list]:
        """ Load the `descriptor` association for all the owners with one query

        Args:
            descriptor: The association to load
            owner_keys: Primary keys of the owners
            plan: A FetchPlan to apply to the related objects

        Returns:
            { owner primary key: [related object, ...] }.
            Owners with no related objects are not in the dict.
        """
        q = load_related_by_primary_keys(descriptor, owner_keys, plan)

        # We're going to make SQL queries, so we have to temporarily disable Session's autoflush.
        # If we don't, it may try to save any unsaved instances.
        with self.session.no_autoflush:
            rows = self.session.execute(q).unique().all()

        # Every row is: (pk_col1, pk_col2, ..., related_object)
        return group_values(
            (tuple(row[:-1]), row[-1])
            for row in rows
        )

    def identify(self, entity) -> EntityRef:
        state: InstanceState = instance_state(entity)
        # The identity is only there for persistent instances
        if state.identity is None:
            raise InvalidRequestError(f'{entity!r} is not persistent: it has no identity to load associations for')
        return EntityRef(state.class_, state.identity)

    def loaded_value(self, entity, descriptor: AssociationDescriptor):
        state: InstanceState = instance_state(entity)
        if descriptor.name not in state.dict:
            return NO_VALUE

        value = state.dict[descriptor.name]
        if descriptor.is_many:
            # A dict-like mapped collection: we only want the objects
            if isinstance(value, dict):
                value = value.values()
            return tuple(value)
        return value

    def populate(self, entity, descriptor: AssociationDescriptor, value):
        state: InstanceState = instance_state(entity)

        # Never overwrite what's been loaded or modified
        if descriptor.name in state.dict:
            return

        # Set the value of the missing attribute.
        # This is how it immediately becomes loaded.
        # The collection loading code always expects a list, even for dict-like mapped collections
        set_committed_value(entity, descriptor.name, list(value) if descriptor.is_many else value)

    def adopt(self, values: Iterable) -> list:
        # Objects from the cache belong to no Session. merge() copies them into ours without a query
        return [self.session.merge(value, load=False) for value in values]


def load_related_by_primary_keys(descriptor: AssociationDescriptor, owner_keys: Sequence[Tuple], plan=None) -> Select:
    """ Build a query that loads the related objects of many owners, by the owners' primary keys

    The query looks like this:

        SELECT owner.pk_col1, owner.pk_col2, target.*
        FROM owner JOIN target ON ...
        WHERE (owner.pk_col1, owner.pk_col2) IN ((:val, :val), (:val, :val), ...)

    Because it joins along the relationship() itself, it works for every direction:
    many-to-one, one-to-many, many-to-many (through the secondary table).
    """
    Model = descriptor.owner
    mapper: Mapper = class_mapper(Model)
    relationship = mapper.relationships[descriptor.name]
    pk_columns = get_primary_key_columns(mapper)

    # A self-referential relationship needs an alias: otherwise the owner would be joined to itself
    self_referential = descriptor.target is Model or issubclass(descriptor.target, Model)
    target = aliased(descriptor.target) if self_referential else descriptor.target
    attribute = getattr(Model, descriptor.name)

    q = select(
        # The primary key: to group related objects by owner
        *pk_columns,
        # The related object itself
        target,
    ).select_from(
        Model
    ).join(
        attribute.of_type(target) if self_referential else attribute
    ).where(
        build_primary_key_condition(pk_columns, owner_keys)
    )

    # Predictable order: the one the relationship() declares, or the primary key
    if relationship.order_by and not self_referential:
        q = q.order_by(*relationship.order_by)
    else:
        target_mapper: Mapper = class_mapper(descriptor.target)
        q = q.order_by(*(
            getattr(target, target_mapper.get_property_by_column(col).key)
            for col in target_mapper.primary_key
        ))

    if plan is not None:
        q = plan.resolve(q, target)
    return q


def build_primary_key_condition(pk_columns: Tuple[Column, ...], identities: Iterable[Tuple]) -> ColumnElement:
    """ Build an IN(...) condition for a primary key to select many instances at once

    Args:
        pk_columns: The columns to filter with
        identities: An iterable of identities (primary key values)

    This conditon builder uses tuples for composite primary keys:

        WHERE (pk_col1, pk_col2) IN ((:val, :val), (:val, :val), ...)

    and a plain IN(...) when there's just one column:

        WHERE pk_col IN (:val, :val, ...)
    """
    identities: List[Tuple] = list(identities)
    if len(pk_columns) == 1:
        return pk_columns[0].in_([identity[0] for identity in identities])
    return tuple_(*pk_columns).in_(identities)


def get_primary_key_columns(mapper: Mapper) -> Tuple[Column, ...]:
    """ Get a tuple of primary key columns for a Mapper

    If you have a Model, use class_mapper(model)
    """
    return mapper.primary_key
