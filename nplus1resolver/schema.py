""" Static metadata: entity references and association descriptors """

import enum
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Tuple

from sqlalchemy.orm import Mapper, RelationshipProperty, class_mapper
from sqlalchemy.orm.exc import UnmappedClassError

from .exc import InvalidPlanError


@dataclass(frozen=True)
class EntityRef:
    """ Identity of a loaded owner row: its mapped class + its primary key tuple

    This is exactly what SqlAlchemy keeps in its identity map, minus the identity token.
    """
    type: type
    key: Tuple

    def __str__(self):
        return f'{self.type.__name__}{self.key!r}'


class Cardinality(enum.Enum):
    ONE = 'one'
    MANY = 'many'


class Direction(enum.Enum):
    """ Where the foreign key lives """
    OWNER_HOLDS_KEY = 'owner'  # many-to-one
    TARGET_HOLDS_KEY = 'target'  # one-to-many
    LINK_TABLE = 'secondary'  # many-to-many


# SqlAlchemy relationship direction -> ours
_DIRECTIONS = {
    'MANYTOONE': Direction.OWNER_HOLDS_KEY,
    'ONETOMANY': Direction.TARGET_HOLDS_KEY,
    'MANYTOMANY': Direction.LINK_TABLE,
}


@dataclass(frozen=True)
class AssociationDescriptor:
    """ Static description of one relationship: Owner.name -> Target """
    owner: type
    name: str
    target: type
    cardinality: Cardinality
    direction: Direction

    @property
    def is_many(self) -> bool:
        return self.cardinality is Cardinality.MANY

    def empty_value(self):
        """ The value of this association for an owner that has nothing related """
        return () if self.is_many else None

    def __str__(self):
        return f'{self.owner.__name__}.{self.name}'


def describe(Model: type) -> Mapping[str, AssociationDescriptor]:
    """ Get descriptors for every relationship() of a Model

    Raises:
        InvalidPlanError: the class is not mapped
    """
    try:
        return _describe(Model)
    except UnmappedClassError as e:
        raise InvalidPlanError(f'{Model!r} is not a mapped class') from e


@lru_cache(typed=True)
def _describe(Model: type) -> Mapping[str, AssociationDescriptor]:
    mapper: Mapper = class_mapper(Model)
    return {
        name: descriptor_for(mapper, relationship)
        for name, relationship in mapper.relationships.items()
    }


def descriptor_for(mapper: Mapper, relationship: RelationshipProperty) -> AssociationDescriptor:
    """ Make a descriptor out of an SqlAlchemy relationship() """
    return AssociationDescriptor(
        owner=mapper.class_,
        name=relationship.key,
        target=relationship.mapper.class_,
        cardinality=Cardinality.MANY if relationship.uselist else Cardinality.ONE,
        direction=_DIRECTIONS[relationship.direction.name],
    )
