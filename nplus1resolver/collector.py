""" Batch collector: accumulate owners awaiting the same association """

from typing import Dict, List, Optional

from funcy import lchunks

from .schema import AssociationDescriptor, EntityRef


# `500` is the number SqlAlchemy uses internally with SelectInLoader
DEFAULT_BATCH_WIDTH = 500


class _PendingBatch:
    """ Owners registered for one association, in registration order """
    __slots__ = ('owners', 'batch_width')

    def __init__(self, batch_width: int):
        # A dict is an ordered set: deduplicates, and remembers the order
        self.owners: Dict[EntityRef, None] = {}
        self.batch_width = batch_width


class BatchCollector:
    """ Collects owner keys per association, so that N lookups become one IN(...) fetch

    Single-threaded by contract: it belongs to one unit of work.
    """

    def __init__(self, batch_width: int = DEFAULT_BATCH_WIDTH):
        self.default_batch_width = batch_width
        self._pending: Dict[AssociationDescriptor, _PendingBatch] = {}

    def register(self, owner: EntityRef, descriptor: AssociationDescriptor, batch_width: Optional[int] = None) -> bool:
        """ Add an owner to the pending batch for `descriptor`

        Registering the same owner twice is a no-op.
        The first width registered for a pending batch governs the whole batch.

        Returns:
            whether the owner was added
        """
        batch = self._pending.get(descriptor)
        if batch is None:
            batch = self._pending[descriptor] = _PendingBatch(batch_width or self.default_batch_width)

        if owner in batch.owners:
            return False
        batch.owners[owner] = None
        return True

    def drain(self, descriptor: AssociationDescriptor) -> List[EntityRef]:
        """ Take every pending owner for `descriptor` and clear the batch

        The batch is detached in one step: an owner registered afterwards starts a fresh batch.
        """
        batch = self._pending.pop(descriptor, None)
        return list(batch.owners) if batch is not None else []

    def drain_chunks(self, descriptor: AssociationDescriptor, batch_width: Optional[int] = None) -> List[List[EntityRef]]:
        """ Drain, and partition the owners into chunks no wider than the batch width

        Args:
            descriptor: The association to drain
            batch_width: Override the width the batch was registered with
        """
        batch = self._pending.pop(descriptor, None)
        if batch is None:
            return []
        return lchunks(batch_width or batch.batch_width, list(batch.owners))

    def pending(self, descriptor: AssociationDescriptor) -> List[EntityRef]:
        """ Peek at the pending owners without draining """
        batch = self._pending.get(descriptor)
        return list(batch.owners) if batch is not None else []

    def batch_width(self, descriptor: AssociationDescriptor) -> Optional[int]:
        batch = self._pending.get(descriptor)
        return batch.batch_width if batch is not None else None

    @property
    def descriptors(self) -> List[AssociationDescriptor]:
        """ Associations that have a pending batch """
        return list(self._pending)

    def clear(self):
        self._pending.clear()

    def __contains__(self, descriptor: AssociationDescriptor):
        return descriptor in self._pending

    def __len__(self):
        return sum(len(batch.owners) for batch in self._pending.values())
