from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

KIND_MINT = "mint"
KIND_FUNDED = "funded"
EVENT_KINDS = {KIND_MINT, KIND_FUNDED}


class SortBy(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    BY_ID = "by-id"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SortBy":
        if not value:
            return cls.NEWEST
        raw = str(value).strip().lower().replace("_", "-")
        if raw in {"tokenid", "id"}:
            return cls.BY_ID
        return cls(raw)


@dataclass(frozen=True)
class RawEvent:
    actor: str
    subject_id: int
    block_number: int
    tx_hash: str
    timestamp: int
    content_uri: Optional[str] = None
    kind: str = KIND_MINT
    log_index: int = 0
    # Set only by sources that already resolve current ownership.
    owner: Optional[str] = None
    is_burned: bool = False
    extra: Tuple[Tuple[str, Any], ...] = ()

    @property
    def has_resolved_owner(self) -> bool:
        return self.owner is not None

    def extra_dict(self) -> Dict[str, Any]:
        return dict(self.extra)


@dataclass(frozen=True)
class Attribute:
    trait: str
    value: Any


@dataclass(frozen=True)
class Metadata:
    name: str
    description: str
    image: str
    attributes: Tuple[Attribute, ...] = ()
    external_url: Optional[str] = None
    animation_url: Optional[str] = None


@dataclass(frozen=True)
class Entity:
    subject_id: int
    owner: str
    content_uri: str = ""
    metadata: Optional[Metadata] = None
    kind: str = KIND_MINT
    optimistic: bool = False
    event: Optional[RawEvent] = None


@dataclass(frozen=True)
class CacheEntry:
    events: Tuple[RawEvent, ...]
    fetched_at: float


@dataclass(frozen=True)
class EventFilter:
    address: str
    kind: str = KIND_MINT
    actor: Optional[str] = None
    only_mine: bool = False
    from_block: int = 0
    to_block: Optional[int] = None

    def cache_key(self) -> Tuple[Any, ...]:
        return (
            self.address.lower(),
            self.kind,
            (self.actor or "").lower(),
            self.from_block,
            "latest" if self.to_block is None else self.to_block,
        )


def metadata_to_dict(meta: Optional[Metadata]) -> Optional[Dict[str, Any]]:
    if meta is None:
        return None
    out: Dict[str, Any] = {
        "name": meta.name,
        "description": meta.description,
        "image": meta.image,
        "attributes": [{"trait_type": a.trait, "value": a.value} for a in meta.attributes],
    }
    if meta.external_url:
        out["external_url"] = meta.external_url
    if meta.animation_url:
        out["animation_url"] = meta.animation_url
    return out


def entity_to_dict(entity: Entity) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "subjectId": str(entity.subject_id),
        "kind": entity.kind,
        "owner": entity.owner,
        "contentURI": entity.content_uri,
        "metadata": metadata_to_dict(entity.metadata),
        "optimistic": entity.optimistic,
    }
    ev = entity.event
    if ev is not None:
        out["blockNumber"] = int(ev.block_number)
        out["txHash"] = ev.tx_hash
        out["timestamp"] = int(ev.timestamp)
        for key, value in ev.extra:
            out[key] = str(value) if isinstance(value, int) else value
    return out


def entities_to_list(entities: List[Entity]) -> List[Dict[str, Any]]:
    return [entity_to_dict(x) for x in entities]
