""" Fetch plans: which associations to join right away, and which to batch-load later

Usage:

    from nplus1resolver import FetchPlan, eager, lazy_batch

    plan = FetchPlan(User,
        # Load these with a JOIN in the initial query
        eager('profile'),
        # Load these later, in bulk, for all users at once
        lazy_batch('articles', batch_width=100),
        # ... and every other relationship
        lazy_batch('*'),
    )
"""

import enum
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Union

from funcy import lflatten
from sqlalchemy.orm import joinedload, raiseload
from sqlalchemy.sql import Select

from .exc import InvalidPlanError
from .schema import AssociationDescriptor, describe


class FetchMode(enum.Enum):
    EAGER = 'eager'  # JOIN in the initial query
    LAZY_BATCH = 'lazy_batch'  # deferred, then loaded in bulk


@dataclass(frozen=True)
class PlanEntry:
    """ What the user has asked for: an association name (or '*'), and how to load it """
    name: str
    mode: FetchMode
    batch_width: Optional[int] = None
    nested: Optional['FetchPlan'] = None


@dataclass(frozen=True)
class PlannedAssociation:
    """ A validated plan entry, with its descriptor resolved """
    descriptor: AssociationDescriptor
    mode: FetchMode
    batch_width: Optional[int] = None
    nested: Optional['FetchPlan'] = None

    @property
    def name(self) -> str:
        return self.descriptor.name


def eager(*names: str, nested: 'FetchPlan' = None) -> List[PlanEntry]:
    """ Load these associations with a JOIN in the initial query

    Args:
        names: Relationship names, or '*' for all the remaining ones
        nested: A plan for the related objects
    """
    return [PlanEntry(name, FetchMode.EAGER, nested=nested) for name in names]


def lazy_batch(*names: str, batch_width: int = None, nested: 'FetchPlan' = None) -> List[PlanEntry]:
    """ Defer these associations; load them later, in bulk, for every owner at once

    Args:
        names: Relationship names, or '*' for all the remaining ones
        batch_width: Max number of owners per bulk query
        nested: A plan for the related objects
    """
    return [PlanEntry(name, FetchMode.LAZY_BATCH, batch_width=batch_width, nested=nested) for name in names]


class FetchPlan:
    """ An ordered set of associations of `root`, each marked EAGER or LAZY_BATCH

    The plan is validated right here, at construction time.

    Raises:
        InvalidPlanError: unknown association, an association listed twice, bad batch width, mismatched nested plan
    """

    def __init__(self, root: type, *entries: Union[PlanEntry, List[PlanEntry]]):
        self.root = root
        self._associations: Dict[str, PlannedAssociation] = {}

        descriptors = describe(root)
        entries: List[PlanEntry] = lflatten(entries)

        # Explicitly named associations go first: the '*' takes whatever is left
        star_entries = [entry for entry in entries if entry.name == '*']
        if len(star_entries) > 1:
            raise InvalidPlanError(f"{root.__name__}: '*' can only be used once in a plan")

        for entry in entries:
            if entry.name == '*':
                continue
            if entry.name not in descriptors:
                raise InvalidPlanError(f"{root.__name__} has no relationship {entry.name!r}")
            if entry.name in self._associations:
                raise InvalidPlanError(f"{root.__name__}.{entry.name} is listed more than once in a plan")
            self._add(descriptors[entry.name], entry)

        for entry in star_entries:
            for name, descriptor in descriptors.items():
                if name not in self._associations:
                    self._add(descriptor, entry)

    def _add(self, descriptor: AssociationDescriptor, entry: PlanEntry):
        if entry.batch_width is not None and entry.batch_width < 1:
            raise InvalidPlanError(f'{descriptor}: batch width must be positive, got {entry.batch_width}')
        if entry.nested is not None and entry.nested.root is not descriptor.target:
            raise InvalidPlanError(
                f'{descriptor}: nested plan is for {entry.nested.root.__name__}, '
                f'but the relationship loads {descriptor.target.__name__}'
            )

        self._associations[descriptor.name] = PlannedAssociation(
            descriptor=descriptor,
            mode=entry.mode,
            batch_width=entry.batch_width,
            nested=entry.nested,
        )

    def resolve(self, query: Select, entity=None) -> Select:
        """ Augment a query: JOIN the EAGER associations, forbid lazy-loading of LAZY_BATCH ones

        Args:
            query: The root query, e.g. select(User)
            entity: The entity the options apply to. Default: the root class. Give an alias if you use one.
        """
        return query.options(*self.loader_options(entity))

    def loader_options(self, entity=None) -> list:
        """ SqlAlchemy loader options that implement this plan """
        entity = entity if entity is not None else self.root

        options = []
        for planned in self:
            attribute = getattr(entity, planned.name)
            if planned.mode is FetchMode.EAGER:
                option = joinedload(attribute)
                if planned.nested is not None:
                    option = option.options(*planned.nested.loader_options())
            else:
                # Never let SqlAlchemy lazy-load it: that's the N+1 we're here to prevent.
                # The resolver will fill it in with set_committed_value()
                option = raiseload(attribute)
            options.append(option)
        return options

    def entry(self, name: str) -> Optional[PlannedAssociation]:
        return self._associations.get(name)

    def mode_of(self, name: str) -> Optional[FetchMode]:
        planned = self._associations.get(name)
        return planned.mode if planned is not None else None

    @property
    def eager_entries(self) -> List[PlannedAssociation]:
        return [planned for planned in self if planned.mode is FetchMode.EAGER]

    @property
    def lazy_entries(self) -> List[PlannedAssociation]:
        return [planned for planned in self if planned.mode is FetchMode.LAZY_BATCH]

    def __iter__(self) -> Iterator[PlannedAssociation]:
        return iter(self._associations.values())

    def __contains__(self, name: str):
        return name in self._associations

    def __len__(self):
        return len(self._associations)

    def __repr__(self):
        entries = ', '.join(f'{planned.name}={planned.mode.value}' for planned in self)
        return f'FetchPlan({self.root.__name__}: {entries})'
