import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from .adapters import EventSource
from .cache import ResponseCache
from .enricher import Enricher
from .errors import ConfigurationError, FetchCancelled, TransportError
from .ledger import OptimisticLedger
from .models import KIND_MINT, CacheEntry, Entity, EventFilter, SortBy
from .scheduler import FetchHandle, FetchScheduler
from .view import materialize

logger = logging.getLogger(__name__)

Listener = Callable[["QueryState"], None]


@dataclass(frozen=True)
class QueryState:
    entities: List[Entity] = field(default_factory=list)
    error: Optional[Exception] = None
    is_loading: bool = False
    # a refresh failed and ``entities`` is the last good view
    stale: bool = False
    progress: Tuple[int, int] = (0, 0)

    @property
    def total(self) -> int:
        return len(self.entities)


class Query:
    """One event stream as seen by one caller.

    ``run`` performs a fetch cycle (cache, single-flight fetch, enrichment,
    reconciliation, materialization) and publishes the resulting
    :class:`QueryState` to subscribers. The host decides when to call it.
    """

    def __init__(
        self,
        source: EventSource,
        cache: ResponseCache,
        scheduler: FetchScheduler,
        enricher: Enricher,
        ledger: OptimisticLedger,
        default_filter: Optional[EventFilter] = None,
    ):
        self.source = source
        self.cache = cache
        self.scheduler = scheduler
        self.enricher = enricher
        self.ledger = ledger
        self.default_filter = default_filter
        self.search: Optional[str] = None
        self.sort_by = SortBy.NEWEST
        self.owner: Optional[str] = None
        self.state = QueryState()
        self._confirmed: List[Entity] = []
        self._filter: Optional[EventFilter] = None
        self._inflight_key: Optional[Hashable] = None
        self._shared: Optional[asyncio.Future] = None
        self._enriched: Dict[Hashable, Tuple[CacheEntry, List[Entity]]] = {}
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: QueryState) -> QueryState:
        self.state = state
        for listener in list(self._listeners):
            listener(state)
        return state

    def _view(self) -> List[Entity]:
        return self.view(self.search, self.sort_by, self.owner)

    def view(
        self,
        search: Optional[str] = None,
        sort_by: SortBy = SortBy.NEWEST,
        owner: Optional[str] = None,
    ) -> List[Entity]:
        """Materialize with per-call options; the query's own view settings are untouched."""
        if owner is None and self._filter is not None:
            owner = self._filter.actor
        return materialize(
            self._confirmed,
            self.ledger.current(),
            search=search,
            sort_by=sort_by,
            owner=owner,
        )

    def set_view(
        self,
        search: Optional[str] = None,
        sort_by: SortBy = SortBy.NEWEST,
        owner: Optional[str] = None,
    ) -> QueryState:
        self.search = search
        self.sort_by = sort_by
        self.owner = owner
        return self._publish(replace(self.state, entities=self._view()))

    def add_optimistic(self, entity: Entity) -> bool:
        added = self.ledger.add(entity)
        if added:
            self._publish(replace(self.state, entities=self._view()))
        return added

    def rollback_optimistic(self, subject_id: int) -> bool:
        removed = self.ledger.rollback(subject_id)
        if removed:
            self._publish(replace(self.state, entities=self._view()))
        return removed

    def cancel(self) -> None:
        if self._inflight_key is not None:
            self.scheduler.cancel(self._inflight_key)

    def _on_progress(self, done: int, total: int) -> None:
        self._publish(replace(self.state, progress=(done, total)))

    async def _cycle(
        self,
        flt: EventFilter,
        cached: Optional[CacheEntry],
        handle: FetchHandle,
    ) -> List[Entity]:
        if cached is not None:
            memo = self._enriched.get(handle.key)
            if memo is not None and memo[0] is cached:
                return list(memo[1])
            entry = cached
        else:
            events = await self.source.fetch(flt, handle)
            if not self.scheduler.is_current(handle):
                raise FetchCancelled(f"fetch for {handle.key!r} was superseded")
            entry = self.cache.put(handle.key, events)
        entities = await self.enricher.enrich(
            entry.events,
            handle=handle,
            on_progress=self._on_progress,
            concurrent=self.source.provides_ownership,
        )
        handle.raise_if_cancelled()
        # enrichment is reused for as long as the raw events stay cached
        self._enriched[handle.key] = (entry, list(entities))
        return entities

    async def run(self, flt: Optional[EventFilter] = None, force_refresh: bool = False) -> QueryState:
        flt = flt or self.default_filter
        if flt is None:
            raise ValueError("no event filter given and no default filter set")
        key = flt.cache_key()
        if self._inflight_key is not None and self._inflight_key != key:
            logger.debug("filter changed, cancelling fetch for %s", self._inflight_key)
            self.scheduler.cancel(self._inflight_key)
            self._inflight_key = None
        self._filter = flt
        if flt.only_mine and not flt.actor:
            self._confirmed = []
            return self._publish(QueryState(entities=self._view()))

        try:
            self.source.ensure_configured()
            self.enricher.ensure_configured(
                needs_probe=flt.kind == KIND_MINT and not self.source.provides_ownership
            )
        except ConfigurationError as e:
            return self._fail_configuration(e)

        cached = None if force_refresh else self.cache.get(key)
        self._publish(replace(self.state, is_loading=True, error=None, progress=(0, 0)))
        self._inflight_key = key
        try:
            entities = await self.scheduler.submit(key, lambda h: self._cycle(flt, cached, h))
        except FetchCancelled:
            logger.debug("fetch for %s superseded", key)
            if not self.scheduler.in_flight(key) and self._inflight_key in (key, None):
                self._inflight_key = None
                self._publish(replace(self.state, is_loading=False))
            return self.state
        except ConfigurationError as e:
            if self._filter != flt:
                return self.state
            self._inflight_key = None
            return self._fail_configuration(e)
        except TransportError as e:
            if self._filter != flt:
                return self.state
            self._inflight_key = None
            logger.error("failed to fetch %s events from %s: %s", flt.kind, self.source.name, e)
            return self._publish(
                replace(self.state, error=e, is_loading=False, stale=bool(self._confirmed))
            )

        if self._filter != flt:
            # a run for another filter took over while this one was finishing
            return self.state
        self._inflight_key = None
        self._confirmed = entities
        self.ledger.reconcile(e.subject_id for e in entities)
        return self._publish(
            QueryState(entities=self._view(), progress=self.state.progress)
        )

    async def run_shared(self, force_refresh: bool = False) -> QueryState:
        """Run a cycle with the default filter, or join the one already running.

        Independent callers that share this query wait on the same cycle
        instead of superseding each other. Cancelling one waiter leaves the
        cycle running for the rest.
        """
        shared = self._shared
        if shared is None or shared.done():
            shared = asyncio.ensure_future(self.run(force_refresh=force_refresh))
            self._shared = shared
        return await asyncio.shield(shared)

    def _fail_configuration(self, e: ConfigurationError) -> QueryState:
        logger.error("%s", e)
        # Nothing fetched under a broken configuration can be trusted.
        self._confirmed = []
        return self._publish(QueryState(entities=self._view(), error=e))
