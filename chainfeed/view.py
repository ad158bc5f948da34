from typing import List, Optional, Sequence

from .models import Entity, SortBy


def materialize(
    confirmed: Sequence[Entity],
    optimistic: Sequence[Entity],
    search: Optional[str] = None,
    sort_by: SortBy = SortBy.NEWEST,
    owner: Optional[str] = None,
) -> List[Entity]:
    confirmed_ids = set()
    unique_confirmed: List[Entity] = []
    for entity in confirmed:
        if entity.subject_id in confirmed_ids:
            continue
        confirmed_ids.add(entity.subject_id)
        unique_confirmed.append(entity)

    pending: List[Entity] = []
    pending_ids = set()
    owner_lower = owner.lower() if owner else None
    for entity in optimistic:
        if entity.subject_id in confirmed_ids or entity.subject_id in pending_ids:
            continue
        if owner_lower and entity.owner.lower() != owner_lower:
            continue
        pending_ids.add(entity.subject_id)
        pending.append(entity)

    result = pending + unique_confirmed

    if search:
        needle = search.strip().lower()
        if needle:
            result = [e for e in result if needle in str(e.subject_id)]

    if sort_by == SortBy.OLDEST:
        result.reverse()
    elif sort_by == SortBy.BY_ID:
        result.sort(key=lambda e: e.subject_id)
    return result


class Pager:
    """Tracks how many entries of a materialized list are shown."""

    def __init__(self, page_size: int = 10):
        if page_size <= 0:
            raise ValueError("page_size must be >= 1")
        self.page_size = page_size
        self._count = page_size

    def visible(self, total: int) -> int:
        return min(self._count, max(0, total))

    def has_more(self, total: int) -> bool:
        return self._count < total

    def show_more(self, total: int) -> int:
        if self.has_more(total):
            self._count = min(self._count + self.page_size, total)
        return self.visible(total)

    # Scroll sentinel became visible; same effect as an explicit request.
    on_intersect = show_more

    def reset(self) -> None:
        self._count = self.page_size

    def page(self, items: Sequence[Entity]) -> List[Entity]:
        return list(items[: self.visible(len(items))])
