import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from .abi import SIGNATURES_BY_KIND, EventSignature
from .errors import ConfigurationError, DecodeError, TransportError
from .hexutil import log_position, normalize_address, topic_address
from .models import KIND_FUNDED, KIND_MINT, EventFilter, RawEvent
from .scheduler import FetchHandle

logger = logging.getLogger(__name__)

# Any of these in a status "0" reply means the source failed, not that it found nothing.
LOG_SCAN_FAULT_MARKERS = ("notok", "invalid", "error", "rate limit", "missing", "exceeded")
LOG_SCAN_EMPTY_MARKERS = ("no records", "no logs", "no transactions")


def sort_newest_first(events: Iterable[RawEvent]) -> List[RawEvent]:
    return sorted(events, key=lambda e: (e.block_number, e.log_index), reverse=True)


def unique_by_subject(events: Iterable[RawEvent]) -> List[RawEvent]:
    seen = set()
    out: List[RawEvent] = []
    for ev in events:
        if ev.subject_id in seen:
            continue
        seen.add(ev.subject_id)
        out.append(ev)
    return out


def within_blocks(ev: RawEvent, flt: EventFilter) -> bool:
    if ev.block_number < flt.from_block:
        return False
    if flt.to_block is not None and ev.block_number > flt.to_block:
        return False
    return True


class EventSource(ABC):
    # True when results already carry current owner and burn state.
    provides_ownership = False
    name = "source"

    @abstractmethod
    def ensure_configured(self) -> None:
        ...

    @abstractmethod
    async def fetch(self, flt: EventFilter, handle: Optional[FetchHandle] = None) -> List[RawEvent]:
        ...


def parse_log_scan_response(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        raise TransportError("Unexpected log scan response format")
    status = str(data.get("status", ""))
    result = data.get("result")
    if status == "1":
        if not isinstance(result, list):
            raise TransportError("Unexpected log scan response format")
        return result

    message = str(data.get("message") or "")
    if isinstance(result, list) and not result:
        return []
    text = f"{message} {result if isinstance(result, str) else ''}".lower()
    if any(m in text for m in LOG_SCAN_EMPTY_MARKERS):
        return []
    if any(m in text for m in LOG_SCAN_FAULT_MARKERS):
        detail = result if isinstance(result, str) and result else message
        raise TransportError(f"log scan API error: {detail}")
    return []


class LogScanAdapter(EventSource):
    """Block-explorer ``module=logs&action=getLogs`` source, one paced query per signature."""

    name = "log_scan"

    def __init__(self, http, api_url: str, api_key: Optional[str], chain_id: int):
        self.http = http
        self.api_url = api_url
        self.api_key = api_key
        self.chain_id = chain_id

    def ensure_configured(self) -> None:
        if not self.api_key:
            raise ConfigurationError(
                "Log scan API key not configured. Set LOG_SCAN_API_KEY in the config file."
            )
        if not self.api_url:
            raise ConfigurationError("LOG_SCAN_API_URL is empty")

    def build_params(self, flt: EventFilter, topic0: str) -> Dict[str, str]:
        params = {
            "chainid": str(self.chain_id),
            "module": "logs",
            "action": "getLogs",
            "address": flt.address.lower(),
            "topic0": topic0,
        }
        if flt.actor:
            params["topic1"] = topic_address(flt.actor)
            params["topic0_1_opr"] = "and"
        params["fromBlock"] = str(flt.from_block)
        params["toBlock"] = "latest" if flt.to_block is None else str(flt.to_block)
        params["apikey"] = str(self.api_key)
        return params

    def decode_logs(self, sig: EventSignature, logs: List[Dict[str, Any]]) -> List[RawEvent]:
        out: List[RawEvent] = []
        for log in logs:
            try:
                out.append(sig.decoder(log))
            except (DecodeError, ValueError, TypeError) as e:
                logger.warning(
                    "dropping undecodable %s log %s: %s",
                    sig.name,
                    log.get("transactionHash") if isinstance(log, dict) else log,
                    e,
                )
        return out

    async def fetch(self, flt: EventFilter, handle: Optional[FetchHandle] = None) -> List[RawEvent]:
        self.ensure_configured()
        events: List[RawEvent] = []
        for sig in SIGNATURES_BY_KIND[flt.kind]:
            if handle is not None:
                await handle.pace()
            data = await self.http.get_json(self.api_url, params=self.build_params(flt, sig.topic0))
            logs = parse_log_scan_response(data)
            events.extend(self.decode_logs(sig, logs))
        return unique_by_subject(sort_newest_first(events))


NFTS_QUERY = """
  query GetAllNFTs {
    nfts(first: 1000, orderBy: mintedAt, orderDirection: desc, where: { isBurned: false }) {
      id
      tokenId
      owner
      tokenURI
      mintedAt
      mintedBy
      blockNumber
      transactionHash
      isBurned
    }
  }
"""

USER_NFTS_QUERY = """
  query GetUserNFTs($owner: Bytes!) {
    nfts(
      first: 1000
      orderBy: mintedAt
      orderDirection: desc
      where: { owner: $owner, isBurned: false }
    ) {
      id
      tokenId
      owner
      tokenURI
      mintedAt
      mintedBy
      blockNumber
      transactionHash
      isBurned
    }
  }
"""

FUNDED_EVENTS_QUERY = """
  query GetFundedEvents($campaign: String!) {
    fundedEvents(
      first: 1000
      orderBy: blockTimestamp
      orderDirection: desc
      where: { campaign: $campaign }
    ) {
      id
      backer
      tierIndex
      amount
      totalContribution
      blockNumber
      blockTimestamp
      logIndex
      transactionHash
    }
  }
"""

BACKER_FUNDED_EVENTS_QUERY = """
  query GetBackerFundedEvents($campaign: String!, $backer: Bytes!) {
    fundedEvents(
      first: 1000
      orderBy: blockTimestamp
      orderDirection: desc
      where: { campaign: $campaign, backer: $backer }
    ) {
      id
      backer
      tierIndex
      amount
      totalContribution
      blockNumber
      blockTimestamp
      logIndex
      transactionHash
    }
  }
"""


def nft_to_event(item: Dict[str, Any]) -> RawEvent:
    owner = normalize_address(str(item["owner"]))
    minted_by = item.get("mintedBy")
    return RawEvent(
        actor=normalize_address(str(minted_by)) if minted_by else owner,
        subject_id=int(item["tokenId"]),
        block_number=int(item.get("blockNumber") or 0),
        tx_hash=str(item.get("transactionHash") or "").lower(),
        timestamp=int(item.get("mintedAt") or 0),
        content_uri=item.get("tokenURI") or None,
        kind=KIND_MINT,
        owner=owner,
        is_burned=bool(item.get("isBurned", False)),
    )


def funded_to_event(item: Dict[str, Any]) -> RawEvent:
    backer = normalize_address(str(item["backer"]))
    block_number = int(item["blockNumber"])
    log_index = int(item.get("logIndex") or 0)
    return RawEvent(
        actor=backer,
        subject_id=log_position(block_number, log_index),
        block_number=block_number,
        tx_hash=str(item.get("transactionHash") or "").lower(),
        timestamp=int(item.get("blockTimestamp") or 0),
        kind=KIND_FUNDED,
        log_index=log_index,
        owner=backer,
        extra=(
            ("tierIndex", int(item.get("tierIndex") or 0)),
            ("amount", int(item.get("amount") or 0)),
            ("totalContribution", int(item.get("totalContribution") or 0)),
        ),
    )


class IndexerAdapter(EventSource):
    """Pre-indexed GraphQL source; results carry current owner and burn flag."""

    provides_ownership = True
    name = "indexer"

    def __init__(self, http, url: Optional[str]):
        self.http = http
        self.url = url

    def ensure_configured(self) -> None:
        if not self.url:
            raise ConfigurationError("Indexer URL not configured. Set INDEXER_URL in the config file.")

    async def query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        self.ensure_configured()
        result = await self.http.post_json(str(self.url), {"query": query, "variables": variables})
        if not isinstance(result, dict):
            raise TransportError("Unexpected indexer response format")
        errors = result.get("errors")
        if errors:
            messages = ", ".join(
                str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
            )
            raise TransportError(f"GraphQL error: {messages}")
        return result.get("data") or {}

    async def fetch(self, flt: EventFilter, handle: Optional[FetchHandle] = None) -> List[RawEvent]:
        self.ensure_configured()
        if handle is not None:
            await handle.pace()
        if flt.kind == KIND_FUNDED:
            variables: Dict[str, Any] = {"campaign": flt.address.lower()}
            query = FUNDED_EVENTS_QUERY
            if flt.actor:
                variables["backer"] = flt.actor.lower()
                query = BACKER_FUNDED_EVENTS_QUERY
            data = await self.query(query, variables)
            rows, convert = data.get("fundedEvents") or [], funded_to_event
        else:
            if flt.actor:
                data = await self.query(USER_NFTS_QUERY, {"owner": flt.actor.lower()})
            else:
                data = await self.query(NFTS_QUERY, {})
            rows, convert = data.get("nfts") or [], nft_to_event

        events: List[RawEvent] = []
        for item in rows:
            try:
                ev = convert(item)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("dropping malformed indexer row %r: %s", item, e)
                continue
            if within_blocks(ev, flt):
                events.append(ev)
        return unique_by_subject(events)
