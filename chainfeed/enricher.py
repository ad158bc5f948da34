"""Turns raw events into entities: burn check, content URI lookup, metadata fetch.

Sources that already resolve ownership (the indexer) are enriched in bounded
concurrency batches; everything else goes one item at a time with a pause
between items so the JSON-RPC node and the gateway are not hammered.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from .chain import ChainReader
from .errors import ConfigurationError, DecodeError, RPCError, TransportError
from .ipfs import MetadataFetcher
from .models import KIND_FUNDED, Entity, RawEvent
from .scheduler import FetchHandle, Pacer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class Enricher:
    def __init__(
        self,
        chain: Optional[ChainReader],
        metadata: MetadataFetcher,
        batch_size: int = 5,
        item_interval: float = 0.35,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.chain = chain
        self.metadata = metadata
        self.batch_size = max(1, batch_size)
        self.item_interval = item_interval
        self._sleep = sleep

    def ensure_configured(self, needs_probe: bool) -> None:
        if needs_probe and (self.chain is None or self.chain.rpc is None):
            raise ConfigurationError("RPC URL not configured. Set RPC_URL in the config file.")

    async def _resolve_owner(self, ev: RawEvent) -> Optional[str]:
        if ev.has_resolved_owner:
            return None if ev.is_burned else ev.owner
        if self.chain is None:
            raise ConfigurationError("RPC URL not configured. Set RPC_URL in the config file.")
        # Only a node answer means burned. A TransportError fails the whole
        # cycle so the caller keeps its previous view.
        try:
            return await self.chain.owner_of(ev.subject_id)
        except RPCError as e:
            logger.debug("subject %s no longer resolves, treating as burned: %s", ev.subject_id, e)
        return None

    async def _resolve_uri(self, ev: RawEvent) -> str:
        if ev.content_uri:
            return ev.content_uri
        if self.chain is None:
            return ""
        try:
            return await self.chain.token_uri(ev.subject_id)
        except (RPCError, TransportError, DecodeError) as e:
            logger.warning("tokenURI lookup for %s failed: %s", ev.subject_id, e)
            return ""

    async def enrich_one(self, ev: RawEvent) -> Optional[Entity]:
        if ev.kind == KIND_FUNDED:
            return Entity(subject_id=ev.subject_id, owner=ev.owner or ev.actor, kind=ev.kind, event=ev)

        owner = await self._resolve_owner(ev)
        if owner is None:
            return None
        uri = await self._resolve_uri(ev)
        metadata = await self.metadata.fetch(uri) if uri else None
        return Entity(
            subject_id=ev.subject_id,
            owner=owner,
            content_uri=uri,
            metadata=metadata,
            kind=ev.kind,
            event=ev,
        )

    async def enrich(
        self,
        events: Sequence[RawEvent],
        handle: Optional[FetchHandle] = None,
        on_progress: Optional[ProgressCallback] = None,
        concurrent: Optional[bool] = None,
    ) -> List[Entity]:
        """Enrich ``events`` in input order, dropping burned subjects.

        ``concurrent`` defaults to batching when every event already carries
        its owner. A cancelled ``handle`` stops scheduling new items and the
        partial list is returned without error. A transport failure during an
        ownership probe propagates as TransportError.
        """
        if concurrent is None:
            concurrent = bool(events) and all(e.has_resolved_owner for e in events)
        if concurrent:
            return await self._enrich_batched(events, handle, on_progress)
        return await self._enrich_serial(events, handle, on_progress)

    async def _enrich_serial(
        self,
        events: Sequence[RawEvent],
        handle: Optional[FetchHandle],
        on_progress: Optional[ProgressCallback],
    ) -> List[Entity]:
        pacer = Pacer(self.item_interval, sleep=self._sleep)
        out: List[Entity] = []
        total = len(events)
        for done, ev in enumerate(events, start=1):
            if handle is not None and handle.cancelled:
                logger.debug("enrichment cancelled after %d/%d items", done - 1, total)
                break
            if ev.kind != KIND_FUNDED:
                await pacer.wait()
            entity = await self.enrich_one(ev)
            if entity is not None:
                out.append(entity)
            if on_progress:
                on_progress(done, total)
        return out

    async def _enrich_batched(
        self,
        events: Sequence[RawEvent],
        handle: Optional[FetchHandle],
        on_progress: Optional[ProgressCallback],
    ) -> List[Entity]:
        out: List[Entity] = []
        total = len(events)
        for start in range(0, total, self.batch_size):
            if handle is not None and handle.cancelled:
                logger.debug("enrichment cancelled after %d/%d items", start, total)
                break
            batch = events[start:start + self.batch_size]
            # gather keeps input order regardless of completion order
            results = await asyncio.gather(*(self.enrich_one(ev) for ev in batch))
            out.extend(e for e in results if e is not None)
            if on_progress:
                on_progress(min(start + len(batch), total), total)
        return out
