from decimal import Decimal, getcontext
from typing import Optional

getcontext().prec = 80

ZERO = Decimal(0)


def strip_0x(value: str) -> str:
    value = value.strip().lower()
    if value.startswith("0x"):
        return value[2:]
    return value


def normalize_evm_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    body = strip_0x(addr)
    if len(body) != 40:
        raise ValueError(f"invalid address format: {addr}")
    int(body, 16)
    return body


def normalize_sui_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    body = strip_0x(addr)
    if not body or len(body) > 64:
        raise ValueError(f"invalid address format: {addr}")
    int(body, 16)
    return body.rjust(64, "0")


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


def decode_word_address(word: str) -> str:
    return word[-40:].lower()
