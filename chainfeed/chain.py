from typing import Optional

from eth_abi import decode as abi_decode

from .errors import ConfigurationError, DecodeError, RPCError
from .hexutil import ZERO_ADDRESS, hex_to_bytes, normalize_address
from .http import RPCClient

OWNER_OF_SELECTOR = "0x6352211e"
TOKEN_URI_SELECTOR = "0xc87b56dd"


def _encode_uint_arg(selector: str, value: int) -> str:
    return selector + format(int(value), "064x")


class ChainReader:
    """Reads ERC-721 state (ownerOf / tokenURI) through eth_call."""

    def __init__(self, rpc: Optional[RPCClient], contract: str):
        self.rpc = rpc
        self.contract = normalize_address(contract)

    def _require_rpc(self) -> RPCClient:
        if self.rpc is None:
            raise ConfigurationError("RPC URL not configured. Set RPC_URL in the config file.")
        return self.rpc

    async def owner_of(self, token_id: int) -> str:
        out = await self._require_rpc().eth_call(
            self.contract, _encode_uint_arg(OWNER_OF_SELECTOR, token_id)
        )
        if not out or out == "0x" or len(out) < 42:
            # Some nodes return empty data instead of an error for a reverted call.
            raise RPCError(f"ownerOf({token_id}) returned no data")
        owner = "0x" + out[-40:].lower()
        if owner == ZERO_ADDRESS:
            raise RPCError(f"ownerOf({token_id}) resolved to the zero address")
        return owner

    async def token_uri(self, token_id: int) -> str:
        out = await self._require_rpc().eth_call(
            self.contract, _encode_uint_arg(TOKEN_URI_SELECTOR, token_id)
        )
        if not out or out == "0x":
            return ""
        try:
            (uri,) = abi_decode(["string"], hex_to_bytes(out))
        except Exception as e:
            raise DecodeError(f"tokenURI({token_id}) is not an ABI string: {e}") from e
        return uri
