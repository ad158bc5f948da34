import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .hexutil import normalize_address
from .models import EVENT_KINDS

SOURCE_LOG_SCAN = "log_scan"
SOURCE_INDEXER = "indexer"
DEFAULT_LOG_SCAN_API_URL = "https://api.etherscan.io/v2/api"
DEFAULT_IPFS_GATEWAY = "https://ipfs.io/ipfs/"


@dataclass
class StreamConfig:
    name: str
    kind: str
    address: str


@dataclass
class AppConfig:
    chain_id: int
    source: str
    streams: List[StreamConfig]
    log_scan_api_url: str = DEFAULT_LOG_SCAN_API_URL
    log_scan_api_key: Optional[str] = None
    indexer_url: Optional[str] = None
    rpc_url: Optional[str] = None
    ipfs_gateway: str = DEFAULT_IPFS_GATEWAY
    cache_ttl_sec: float = 60.0
    request_interval_sec: float = 0.5
    item_interval_sec: float = 0.35
    enrich_batch_size: int = 5
    page_size: int = 10
    http_timeout_sec: int = 12
    max_rpc_retries: int = 3
    log_level: str = "info"
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    cors_allow_origins: List[str] = field(default_factory=list)

    def stream(self, name: str) -> StreamConfig:
        for item in self.streams:
            if item.name == name:
                return item
        raise KeyError(name)


def _optional_str(raw: Dict[str, Any], key: str) -> Optional[str]:
    value = str(raw.get(key) or "").strip()
    return value or None


def _non_negative_ms(raw: Dict[str, Any], key: str, default: int) -> float:
    value = int(raw.get(key, default))
    if value < 0:
        raise ValueError(f"{key} must be >= 0")
    return value / 1000.0


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    source = str(raw.get("SOURCE", SOURCE_LOG_SCAN)).strip().lower()
    if source not in {SOURCE_LOG_SCAN, SOURCE_INDEXER}:
        raise ValueError("SOURCE only supports log_scan or indexer")

    streams: List[StreamConfig] = []
    seen = set()
    for item in raw.get("STREAMS", []):
        name = str(item["name"]).strip()
        kind = str(item.get("kind", "mint")).strip().lower()
        if not name:
            raise ValueError("stream name cannot be empty")
        if name in seen:
            raise ValueError(f"duplicate stream name: {name}")
        if kind not in EVENT_KINDS:
            raise ValueError(f"stream {name} has unknown kind: {kind}")
        seen.add(name)
        streams.append(
            StreamConfig(name=name, kind=kind, address=normalize_address(item["address"]))
        )
    if not streams:
        raise ValueError("STREAMS cannot be empty")

    cache_ttl_sec = float(raw.get("CACHE_TTL_SEC", 60))
    if cache_ttl_sec <= 0:
        raise ValueError("CACHE_TTL_SEC must be > 0")
    enrich_batch_size = int(raw.get("ENRICH_BATCH_SIZE", 5))
    if enrich_batch_size <= 0:
        raise ValueError("ENRICH_BATCH_SIZE must be >= 1")
    page_size = int(raw.get("PAGE_SIZE", 10))
    if page_size <= 0:
        raise ValueError("PAGE_SIZE must be >= 1")

    cors_allow_origins_raw = raw.get("CORS_ALLOW_ORIGINS", [])
    cors_allow_origins: List[str] = []
    if isinstance(cors_allow_origins_raw, str):
        cors_allow_origins = [
            x.strip().rstrip("/")
            for x in cors_allow_origins_raw.split(",")
            if x and x.strip()
        ]
    elif isinstance(cors_allow_origins_raw, list):
        cors_allow_origins = [
            str(x).strip().rstrip("/")
            for x in cors_allow_origins_raw
            if str(x).strip()
        ]

    gateway = str(raw.get("IPFS_GATEWAY", DEFAULT_IPFS_GATEWAY)).strip()
    if not gateway.endswith("/"):
        gateway += "/"

    return AppConfig(
        chain_id=int(raw.get("CHAIN_ID", 1)),
        source=source,
        streams=streams,
        log_scan_api_url=str(raw.get("LOG_SCAN_API_URL", DEFAULT_LOG_SCAN_API_URL)).strip(),
        log_scan_api_key=_optional_str(raw, "LOG_SCAN_API_KEY"),
        indexer_url=_optional_str(raw, "INDEXER_URL"),
        rpc_url=_optional_str(raw, "RPC_URL"),
        ipfs_gateway=gateway,
        cache_ttl_sec=cache_ttl_sec,
        request_interval_sec=_non_negative_ms(raw, "REQUEST_INTERVAL_MS", 500),
        item_interval_sec=_non_negative_ms(raw, "ITEM_INTERVAL_MS", 350),
        enrich_batch_size=enrich_batch_size,
        page_size=page_size,
        http_timeout_sec=int(raw.get("HTTP_TIMEOUT_SEC", 12)),
        max_rpc_retries=max(1, int(raw.get("MAX_RPC_RETRIES", 3))),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cors_allow_origins=cors_allow_origins,
    )


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return parse_config(raw)
