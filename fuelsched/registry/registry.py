"""Fixed-size registry of partitions, indexed by partition id.

Rules:
- Ids are integers in [0, max_partitions).
- Loading into an occupied slot is rejected; the occupant is unaffected.
- The registry is filled at setup time and only emptied by `teardown_all`.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from fuelsched.engine.interfaces import ExecutionEngine
from fuelsched.errors import FuelSchedError, InvalidIdError, NotLoadedError, SlotOccupiedError
from fuelsched.executor.partition import Partition

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARTITIONS = 2


class PartitionRegistry:
    def __init__(self, max_partitions: int = DEFAULT_MAX_PARTITIONS):
        if max_partitions < 1:
            raise ValueError("max_partitions must be >= 1")
        self.max_partitions = max_partitions
        self._slots: list[Partition | None] = [None] * max_partitions

    def check_id(self, partition_id: Any) -> int:
        # bool is an int subclass; True is not a partition id.
        if isinstance(partition_id, bool) or not isinstance(partition_id, int):
            raise InvalidIdError(partition_id, self.max_partitions)
        if partition_id < 0 or partition_id >= self.max_partitions:
            raise InvalidIdError(partition_id, self.max_partitions)
        return partition_id

    def check_free(self, partition_id: Any) -> int:
        """Validate an id for loading without touching the registry."""
        pid = self.check_id(partition_id)
        if self._slots[pid] is not None:
            raise SlotOccupiedError(pid)
        return pid

    def register(self, partition: Partition) -> None:
        pid = self.check_free(partition.partition_id)
        self._slots[pid] = partition

    def lookup(self, partition_id: Any) -> Partition:
        pid = self.check_id(partition_id)
        partition = self._slots[pid]
        if partition is None:
            raise NotLoadedError(pid)
        return partition

    def has(self, partition_id: Any) -> bool:
        try:
            self.lookup(partition_id)
        except (InvalidIdError, NotLoadedError):
            return False
        return True

    def ids(self) -> list[int]:
        return [i for i, p in enumerate(self._slots) if p is not None]

    def partitions(self) -> Iterator[Partition]:
        for p in self._slots:
            if p is not None:
                yield p

    def __len__(self) -> int:
        return len(self.ids())

    def teardown_all(self, engine: ExecutionEngine) -> list[int]:
        """Release every occupied slot, then the shared engine. Returns the released ids."""
        released: list[int] = []
        for pid, partition in enumerate(self._slots):
            if partition is None:
                continue
            self._slots[pid] = None
            try:
                partition.release()
            except FuelSchedError:
                logger.exception(
                    "partition_release_failed",
                    extra={"event": "partition_release_failed", "partition_id": pid, "phase": "teardown"},
                )
                continue
            released.append(pid)

        engine.close()
        logger.info("registry_torn_down", extra={"event": "registry_torn_down", "code": len(released)})
        return released
