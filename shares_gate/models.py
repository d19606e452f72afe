from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Checkpoint:
    chain_type: str
    position: int
    cursor_token: Optional[str] = None


@dataclass(frozen=True)
class IdentityMapping:
    address: str
    chain_type: str
    external_identity: str
    gated_flag: bool


@dataclass(frozen=True)
class Agent:
    agent_name: str
    subject_address: str
    chain_type: str
    chat_group_id: str
    bot_token: str
    invite_url: str
    bio: Optional[str]
    created_at: int


@dataclass(frozen=True)
class TradeEvent:
    trader: str
    subject: str
    is_buy: bool
    amount: int
    event_key: str
    block_number: Optional[int] = None
    tx_digest: Optional[str] = None
    event_seq: Optional[str] = None


@dataclass
class Batch:
    """One fetched window: raw chain payloads plus the checkpoint to persist
    once every payload has been applied."""

    raw_events: List[Dict[str, Any]]
    checkpoint: Checkpoint
    window: str = ""


@dataclass(frozen=True)
class LedgerTransition:
    chain_type: str
    trader: str
    subject: str
    is_buy: bool
    amount: Decimal
    previous: Decimal
    balance: Decimal
    found: bool
    mapping: Optional[IdentityMapping] = None
    gated_now: bool = False
    clamped: bool = False


class Permission(str, Enum):
    FULL = "full"
    NONE = "none"


@dataclass(frozen=True)
class GateDecision:
    external_identity: str
    chat_id: str
    permission: Permission
    bot_token: str = field(repr=False, default="")
    address: str = ""
    chain_type: str = ""
