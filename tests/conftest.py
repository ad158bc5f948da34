import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from eth_abi import encode

from chainfeed.chain import OWNER_OF_SELECTOR, TOKEN_URI_SELECTOR
from chainfeed.errors import RPCError, TransportError
from chainfeed.hexutil import topic_address, topic_uint
from chainfeed.models import KIND_MINT, RawEvent

CONTRACT = "0x" + "ab" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays and advances an optional clock instead of sleeping."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


class FakeHttp:
    """Routes get_json/post_json to handlers; a handler may return a value or raise."""

    def __init__(self) -> None:
        self.get_calls: List[Tuple[str, Optional[Dict[str, str]]]] = []
        self.post_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.get_handler: Callable[[str, Optional[Dict[str, str]]], Any] = lambda url, params: {}
        self.post_handler: Callable[[str, Dict[str, Any]], Any] = lambda url, payload: {}

    async def get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        self.get_calls.append((url, params))
        await asyncio.sleep(0)
        return self.get_handler(url, params)

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Any:
        self.post_calls.append((url, payload))
        await asyncio.sleep(0)
        return self.post_handler(url, payload)


class FakeRPC:
    """eth_call stand-in: owners and uris keyed by token id; missing owner reverts."""

    def __init__(self) -> None:
        self.owners: Dict[int, str] = {}
        self.uris: Dict[int, str] = {}
        self.fail_uri: set = set()
        self.down = False
        self.calls: List[Tuple[str, str]] = []

    async def eth_call(self, to: str, data: str) -> str:
        self.calls.append((to, data))
        await asyncio.sleep(0)
        if self.down:
            raise TransportError("RPC HTTP status 503", status=503)
        selector, token_id = data[:10], int(data[10:], 16)
        if selector == OWNER_OF_SELECTOR:
            if token_id not in self.owners:
                raise RPCError("execution reverted: ERC721NonexistentToken", code=3)
            return "0x" + encode(["address"], [self.owners[token_id]]).hex()
        if selector == TOKEN_URI_SELECTOR:
            if token_id in self.fail_uri:
                raise TransportError("RPC HTTP status 502", status=502)
            return "0x" + encode(["string"], [self.uris.get(token_id, "")]).hex()
        raise AssertionError(f"unexpected selector {selector}")


def mint_log(
    topic0: str,
    actor: str,
    token_id: int,
    block: int,
    log_index: int = 0,
    uri: Optional[str] = None,
) -> Dict[str, Any]:
    data = "0x" + encode(["string"], [uri]).hex() if uri is not None else "0x"
    return {
        "address": CONTRACT,
        "topics": [topic0, topic_address(actor), topic_uint(token_id)],
        "data": data,
        "blockNumber": hex(block),
        "timeStamp": hex(1700000000 + block),
        "logIndex": hex(log_index),
        "transactionHash": "0x" + format(block * 1000 + log_index, "064x"),
    }


def funded_log(
    topic0: str, backer: str, tier: int, amount: int, total: int, block: int, log_index: int = 0
) -> Dict[str, Any]:
    return {
        "address": CONTRACT,
        "topics": [topic0, topic_address(backer), topic_uint(tier)],
        "data": "0x" + encode(["uint256", "uint256"], [amount, total]).hex(),
        "blockNumber": hex(block),
        "timeStamp": hex(1700000000 + block),
        "logIndex": hex(log_index),
        "transactionHash": "0x" + format(block * 1000 + log_index, "064x"),
    }


def raw_event(
    subject_id: int,
    block: int,
    actor: str = ALICE,
    kind: str = KIND_MINT,
    owner: Optional[str] = None,
    content_uri: Optional[str] = None,
    is_burned: bool = False,
    log_index: int = 0,
) -> RawEvent:
    return RawEvent(
        actor=actor,
        subject_id=subject_id,
        block_number=block,
        tx_hash="0x" + format(subject_id, "064x"),
        timestamp=1700000000 + block,
        content_uri=content_uri,
        kind=kind,
        log_index=log_index,
        owner=owner,
        is_burned=is_burned,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def rpc() -> FakeRPC:
    return FakeRPC()
