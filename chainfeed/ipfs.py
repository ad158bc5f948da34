import logging
from typing import Any, Dict, List, Optional

from .config import DEFAULT_IPFS_GATEWAY
from .errors import TransportError
from .models import Attribute, Metadata

logger = logging.getLogger(__name__)

IPFS_SCHEME = "ipfs://"


def to_gateway_url(uri: Optional[str], gateway: str = DEFAULT_IPFS_GATEWAY) -> str:
    if not uri:
        return ""
    uri = uri.strip()
    if uri.startswith(IPFS_SCHEME):
        path = uri[len(IPFS_SCHEME):]
        if path.startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return gateway + path
    if uri.startswith("ipfs/"):
        return gateway + uri[len("ipfs/"):]
    return uri


def _attributes(raw: Any) -> List[Attribute]:
    out: List[Attribute] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if not isinstance(item, dict):
            continue
        trait = item.get("trait_type", item.get("trait"))
        if trait is None:
            continue
        out.append(Attribute(trait=str(trait), value=item.get("value")))
    return out


def normalize_metadata(raw: Dict[str, Any], gateway: str = DEFAULT_IPFS_GATEWAY) -> Metadata:
    animation = raw.get("animation_url")
    return Metadata(
        name=str(raw.get("name") or ""),
        description=str(raw.get("description") or ""),
        image=to_gateway_url(raw.get("image"), gateway),
        attributes=tuple(_attributes(raw.get("attributes"))),
        external_url=raw.get("external_url") or None,
        animation_url=to_gateway_url(animation, gateway) if animation else None,
    )


class MetadataFetcher:
    def __init__(self, http, gateway: str = DEFAULT_IPFS_GATEWAY):
        self.http = http
        self.gateway = gateway

    async def fetch(self, content_uri: str) -> Optional[Metadata]:
        url = to_gateway_url(content_uri, self.gateway)
        if not url:
            return None
        try:
            raw = await self.http.get_json(url)
        except TransportError as e:
            logger.warning("failed to fetch metadata from %s: %s", url, e)
            return None
        if not isinstance(raw, dict):
            logger.warning("metadata at %s is not a JSON object", url)
            return None
        return normalize_metadata(raw, self.gateway)
