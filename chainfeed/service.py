import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .adapters import EventSource, IndexerAdapter, LogScanAdapter
from .cache import ResponseCache
from .chain import ChainReader
from .config import SOURCE_INDEXER, AppConfig, StreamConfig
from .enricher import Enricher
from .hexutil import normalize_address
from .http import HttpClient, RPCClient
from .ipfs import MetadataFetcher
from .ledger import OptimisticLedger
from .models import EventFilter
from .query import Query
from .scheduler import FetchScheduler

logger = logging.getLogger(__name__)


def build_source(cfg: AppConfig, http) -> EventSource:
    if cfg.source == SOURCE_INDEXER:
        return IndexerAdapter(http, cfg.indexer_url)
    return LogScanAdapter(http, cfg.log_scan_api_url, cfg.log_scan_api_key, cfg.chain_id)


class FeedService:
    """Owns the process-wide cache, scheduler and ledgers plus the network clients."""

    def __init__(
        self,
        cfg: AppConfig,
        http=None,
        rpc: Optional[RPCClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self._owns_http = http is None
        self.http = http if http is not None else HttpClient(timeout_sec=cfg.http_timeout_sec)
        self._owns_rpc = rpc is None and bool(cfg.rpc_url)
        if rpc is None and cfg.rpc_url:
            rpc = RPCClient(cfg.rpc_url, max_retries=cfg.max_rpc_retries, timeout_sec=cfg.http_timeout_sec)
        self.rpc = rpc
        self._sleep = sleep
        self.source = build_source(cfg, self.http)
        self.metadata = MetadataFetcher(self.http, cfg.ipfs_gateway)
        self.cache = ResponseCache(cfg.cache_ttl_sec, clock=clock)
        self.scheduler = FetchScheduler(cfg.request_interval_sec, clock=clock, sleep=sleep)
        self._ledgers: Dict[str, OptimisticLedger] = {}
        self._queries: Dict[Tuple[str, str], Query] = {}

    async def __aenter__(self) -> "FeedService":
        if self._owns_http:
            await self.http.__aenter__()
        if self._owns_rpc and self.rpc is not None:
            await self.rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.scheduler.cancel_all()
        if self._owns_rpc and self.rpc is not None:
            await self.rpc.__aexit__(exc_type, exc, tb)
        if self._owns_http:
            await self.http.__aexit__(exc_type, exc, tb)

    def ledger(self, address: str) -> OptimisticLedger:
        key = address.lower()
        if key not in self._ledgers:
            self._ledgers[key] = OptimisticLedger()
        return self._ledgers[key]

    def filter_for(self, stream_name: str, owner: Optional[str] = None) -> EventFilter:
        stream = self.cfg.stream(stream_name)
        actor = normalize_address(owner) if owner else None
        return EventFilter(
            address=stream.address,
            kind=stream.kind,
            actor=actor,
            only_mine=actor is not None,
        )

    def _enricher(self, stream: StreamConfig) -> Enricher:
        chain = ChainReader(self.rpc, stream.address) if self.rpc is not None else None
        return Enricher(
            chain,
            self.metadata,
            batch_size=self.cfg.enrich_batch_size,
            item_interval=self.cfg.item_interval_sec,
            sleep=self._sleep,
        )

    def query(self, stream_name: str, owner: Optional[str] = None) -> Query:
        stream = self.cfg.stream(stream_name)
        flt = self.filter_for(stream_name, owner)
        key = (stream_name, flt.actor or "")
        q = self._queries.get(key)
        if q is None:
            q = Query(
                self.source,
                self.cache,
                self.scheduler,
                self._enricher(stream),
                self.ledger(stream.address),
                default_filter=flt,
            )
            self._queries[key] = q
        return q

    def reset(self) -> None:
        self.scheduler.cancel_all()
        self.cache.clear()
        for ledger in self._ledgers.values():
            ledger.clear()
        self._queries.clear()
        logger.info("feed state reset")
