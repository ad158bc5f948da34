from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

from eth_abi import decode as abi_decode

from .errors import DecodeError
from .hexutil import decode_topic_address, event_topic, hex_to_bytes, log_position, parse_hex_int
from .models import KIND_FUNDED, KIND_MINT, RawEvent


@dataclass(frozen=True)
class EventSignature:
    name: str
    signature: str
    decoder: Callable[[Dict[str, Any]], RawEvent]

    @property
    def topic0(self) -> str:
        return event_topic(self.signature)


def _topics(log: Dict[str, Any], count: int) -> List[str]:
    topics = log.get("topics") or []
    if len(topics) < count or any(not t for t in topics[:count]):
        raise DecodeError(f"expected {count} topics, got {len(topics)}")
    return [str(t) for t in topics]


def _log_header(log: Dict[str, Any]) -> Tuple[int, str, int, int]:
    tx_hash = str(log.get("transactionHash") or "").lower()
    if not tx_hash:
        raise DecodeError("log has no transactionHash")
    return (
        parse_hex_int(log.get("blockNumber")),
        tx_hash,
        parse_hex_int(log.get("timeStamp")),
        parse_hex_int(log.get("logIndex")),
    )


def _decode_data(types: List[str], data: Any) -> Tuple[Any, ...]:
    try:
        return tuple(abi_decode(types, hex_to_bytes(data)))
    except Exception as e:
        raise DecodeError(f"cannot decode data as {types}: {e}") from e


def decode_preset_minted(log: Dict[str, Any]) -> RawEvent:
    topics = _topics(log, 3)
    block_number, tx_hash, ts, log_index = _log_header(log)
    return RawEvent(
        actor=decode_topic_address(topics[1]),
        subject_id=int(topics[2], 16),
        block_number=block_number,
        tx_hash=tx_hash,
        timestamp=ts,
        kind=KIND_MINT,
        log_index=log_index,
    )


def decode_custom_minted(log: Dict[str, Any]) -> RawEvent:
    topics = _topics(log, 3)
    block_number, tx_hash, ts, log_index = _log_header(log)
    (token_uri,) = _decode_data(["string"], log.get("data"))
    return RawEvent(
        actor=decode_topic_address(topics[1]),
        subject_id=int(topics[2], 16),
        block_number=block_number,
        tx_hash=tx_hash,
        timestamp=ts,
        content_uri=token_uri or None,
        kind=KIND_MINT,
        log_index=log_index,
    )


def decode_funded(log: Dict[str, Any]) -> RawEvent:
    topics = _topics(log, 3)
    block_number, tx_hash, ts, log_index = _log_header(log)
    amount, total = _decode_data(["uint256", "uint256"], log.get("data"))
    return RawEvent(
        actor=decode_topic_address(topics[1]),
        subject_id=log_position(block_number, log_index),
        block_number=block_number,
        tx_hash=tx_hash,
        timestamp=ts,
        kind=KIND_FUNDED,
        log_index=log_index,
        extra=(
            ("tierIndex", int(topics[2], 16)),
            ("amount", int(amount)),
            ("totalContribution", int(total)),
        ),
    )


PRESET_MINTED = EventSignature(
    "PresetMinted", "PresetMinted(address,uint256)", decode_preset_minted
)
CUSTOM_MINTED = EventSignature(
    "CustomMinted", "CustomMinted(address,uint256,string)", decode_custom_minted
)
FUNDED = EventSignature(
    "Funded", "Funded(address,uint256,uint256,uint256)", decode_funded
)

# Order matters: one paced request per signature, in this order.
SIGNATURES_BY_KIND: Dict[str, List[EventSignature]] = {
    KIND_MINT: [PRESET_MINTED, CUSTOM_MINTED],
    KIND_FUNDED: [FUNDED],
}
