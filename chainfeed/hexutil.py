from typing import Optional

from web3 import Web3

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def topic_address(addr: str) -> str:
    return "0x" + ("0" * 24) + normalize_address(addr)[2:]


def topic_uint(value: int) -> str:
    return "0x" + format(int(value), "064x")


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    value = str(value).strip()
    if value in {"", "0x", "0X"}:
        return 0
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def hex_to_bytes(data: Optional[str]) -> bytes:
    if not data:
        return b""
    if data.startswith(("0x", "0X")):
        data = data[2:]
    return bytes.fromhex(data)


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)).lower()


def log_position(block_number: int, log_index: int) -> int:
    return (int(block_number) << 32) | int(log_index)
