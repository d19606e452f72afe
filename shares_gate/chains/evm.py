import logging
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from ..config import EvmChainConfig
from ..errors import MalformedSignature, QueryError, RecoveryFailed, RPCError, StartupError
from ..models import Batch, Checkpoint, TradeEvent
from ..rpc import RPCClient
from ..utils import decode_word_address, normalize_evm_address, parse_hex_int, strip_0x
from .base import Blockchain

logger = logging.getLogger(__name__)

TRADE_EVENT_SIGNATURE = "Trade(address,address,bool,uint256,uint256,uint256,uint256,uint256)"
TRADE_TOPIC0 = "0x" + keccak(text=TRADE_EVENT_SIGNATURE).hex()
SHARES_BALANCE_SELECTOR = "0x" + keccak(text="sharesBalance(address,address)")[:4].hex()
SIGNATURE_LENGTH = 65


def encode_address_word(addr: str) -> str:
    return normalize_evm_address(addr).rjust(64, "0")


def split_words(data: str) -> List[str]:
    body = strip_0x(data or "")
    return [body[i : i + 64] for i in range(0, len(body) - len(body) % 64, 64)]


class EvmBlockchain(Blockchain):
    """Block-range backend: contiguous windows of at most ``batch_blocks``
    blocks, ``eth_getLogs`` over the shares contract."""

    def __init__(self, cfg: EvmChainConfig, rpc: RPCClient):
        self.cfg = cfg
        self.rpc = rpc
        self.name = cfg.name
        self.contract_address = "0x" + normalize_evm_address(cfg.shares_contract)

    def normalize_address(self, addr: str) -> str:
        return normalize_evm_address(addr)

    def initial_checkpoint(self) -> Checkpoint:
        return Checkpoint(self.name, self.cfg.start_block)

    async def probe(self) -> None:
        try:
            chain_id = await self.rpc.chain_id()
        except (RPCError, ValueError, TypeError) as e:
            raise StartupError(f"Failed to connect to {self.name} node: {e}") from e
        logger.info("%s connected, chain id %s", self.name, chain_id)

    async def fetch_batch(self, checkpoint: Checkpoint) -> Optional[Batch]:
        head = await self.rpc.get_latest_block_number()
        start = checkpoint.position
        if start >= head:
            return None
        end = min(start + self.cfg.batch_blocks, head)
        logs = await self.rpc.get_logs(
            start, end, address=self.contract_address, topics=[TRADE_TOPIC0]
        )
        live = [lg for lg in logs if isinstance(lg, dict) and not lg.get("removed")]
        live.sort(
            key=lambda lg: (
                parse_hex_int(lg.get("blockNumber")),
                parse_hex_int(lg.get("logIndex")),
            )
        )
        return Batch(
            raw_events=live,
            checkpoint=Checkpoint(self.name, end),
            window=f"blocks {start}-{end}",
        )

    def decode(self, raw: Dict[str, Any]) -> TradeEvent:
        words = split_words(raw.get("data", ""))
        if len(words) < 4:
            raise ValueError(f"Trade log data too short: {len(words)} words")
        tx_hash = str(raw["transactionHash"]).lower()
        log_index = parse_hex_int(raw.get("logIndex"))
        return TradeEvent(
            trader=decode_word_address(words[0]),
            subject=decode_word_address(words[1]),
            is_buy=int(words[2], 16) != 0,
            amount=int(words[3], 16),
            event_key=f"{tx_hash}:{log_index}",
            block_number=parse_hex_int(raw.get("blockNumber")),
        )

    def verify_signature(self, challenge: str, signature: str) -> str:
        try:
            sig_bytes = bytes.fromhex(strip_0x(signature))
        except (ValueError, AttributeError) as e:
            raise MalformedSignature(f"Invalid signature hex: {e}") from e
        if len(sig_bytes) != SIGNATURE_LENGTH:
            raise MalformedSignature("Signature must be 65 bytes")
        try:
            recovered = Account.recover_message(encode_defunct(text=challenge), signature=sig_bytes)
        except Exception as e:
            raise RecoveryFailed(f"Recovery failed: {e}") from e
        return normalize_evm_address(recovered)

    async def get_share_balance(self, subject: str, user: str) -> int:
        try:
            data = SHARES_BALANCE_SELECTOR + encode_address_word(subject) + encode_address_word(user)
        except ValueError as e:
            raise QueryError(f"Invalid address: {e}") from e
        try:
            out = await self.rpc.eth_call(self.contract_address, data)
        except RPCError as e:
            raise QueryError(f"Failed to call sharesBalance: {e}") from e
        words = split_words(out or "")
        if not words:
            raise QueryError(f"sharesBalance returned no data: {out!r}")
        return int(words[0], 16)
