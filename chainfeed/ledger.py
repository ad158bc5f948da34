import logging
from dataclasses import replace
from typing import Dict, Iterable, List

from .models import Entity

logger = logging.getLogger(__name__)


class OptimisticLedger:
    """Locally submitted entities waiting for a confirmed counterpart.

    Entries leave the ledger through ``reconcile`` (a confirmed entity with
    the same subject id was observed) or ``rollback`` (the submitting side
    reported the write failed). Nothing expires on a timer.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, Entity] = {}
        # newest first, mirrors how a fresh submission should show up on top
        self._order: List[int] = []

    def add(self, entity: Entity) -> bool:
        if entity.subject_id in self._entries:
            logger.debug("optimistic entry %s already present, skipping", entity.subject_id)
            return False
        if not entity.optimistic:
            entity = replace(entity, optimistic=True)
        self._entries[entity.subject_id] = entity
        self._order.insert(0, entity.subject_id)
        return True

    def reconcile(self, confirmed_ids: Iterable[int]) -> List[int]:
        confirmed = set(confirmed_ids)
        removed = [sid for sid in self._order if sid in confirmed]
        for sid in removed:
            self._drop(sid)
        if removed:
            logger.debug("reconciled optimistic entries %s", removed)
        return removed

    def rollback(self, subject_id: int) -> bool:
        if subject_id not in self._entries:
            return False
        self._drop(subject_id)
        logger.info("rolled back optimistic entry %s", subject_id)
        return True

    def current(self) -> List[Entity]:
        return [self._entries[sid] for sid in self._order]

    def clear(self) -> None:
        self._entries.clear()
        self._order.clear()

    def _drop(self, subject_id: int) -> None:
        self._entries.pop(subject_id, None)
        self._order.remove(subject_id)

    def __contains__(self, subject_id: object) -> bool:
        return subject_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
