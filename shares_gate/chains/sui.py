import base64
import binascii
import hashlib
import json
import logging
import struct
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from ..config import SuiChainConfig
from ..errors import MalformedSignature, QueryError, RecoveryFailed, RPCError, StartupError
from ..models import Batch, Checkpoint, TradeEvent
from ..rpc import RPCClient
from ..utils import normalize_sui_address
from .base import Blockchain

logger = logging.getLogger(__name__)

PLACEHOLDER_DIGEST = "0" * 64
INSPECT_SENDER = "0x" + "0" * 64
PERSONAL_MESSAGE_INTENT = bytes([3, 0, 0])

FLAG_ED25519 = 0x00
FLAG_SECP256K1 = 0x01
FLAG_SECP256R1 = 0x02
PUBLIC_KEY_SIZES = {FLAG_ED25519: 32, FLAG_SECP256K1: 33, FLAG_SECP256R1: 33}
RAW_SIGNATURE_SIZE = 64


def uleb128(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def bcs_bytes(data: bytes) -> bytes:
    return uleb128(len(data)) + data


def bcs_str(text: str) -> bytes:
    return bcs_bytes(text.encode("utf-8"))


def bcs_address(addr: str) -> bytes:
    return bytes.fromhex(normalize_sui_address(addr))


def personal_message_digest(message: str) -> bytes:
    intent_message = PERSONAL_MESSAGE_INTENT + bcs_bytes(message.encode("utf-8"))
    return hashlib.blake2b(intent_message, digest_size=32).digest()


def address_from_public_key(flag: int, public_key: bytes) -> str:
    return hashlib.blake2b(bytes([flag]) + public_key, digest_size=32).hexdigest()


def parse_cursor(raw: Optional[str]) -> Optional[Dict[str, str]]:
    """Decode a stored cursor; anything unrecognised becomes a placeholder
    cursor so the worker keeps going."""
    if raw is None or not raw.strip():
        return None
    text = raw.strip()
    if text.startswith("{"):
        try:
            value = json.loads(text)
        except ValueError:
            value = None
        if isinstance(value, dict) and "txDigest" in value and "eventSeq" in value:
            return {"txDigest": str(value["txDigest"]), "eventSeq": str(value["eventSeq"])}
    event_seq = text if text.isdigit() else "0"
    logger.warning("unrecognised Sui cursor %r, resuming from placeholder", raw)
    return {"txDigest": PLACEHOLDER_DIGEST, "eventSeq": event_seq}


def cursor_position(cursor: Dict[str, str]) -> int:
    # Storage surrogate only; Sui digests are base58 so this is usually 0.
    try:
        return int(cursor.get("txDigest", "")[:16], 16)
    except ValueError:
        return 0


def serialize_cursor(cursor: Dict[str, str]) -> str:
    return json.dumps(
        {"txDigest": cursor["txDigest"], "eventSeq": cursor["eventSeq"]},
        separators=(",", ":"),
    )


def build_balance_inspection(
    package_id: str,
    trading_object_id: str,
    initial_shared_version: int,
    subject: str,
    user: str,
) -> bytes:
    """BCS TransactionKind::ProgrammableTransaction calling
    ``shares_trading::get_shares_balance(trading, subject, user)``."""
    inputs = [
        # CallArg::Object(ObjectArg::SharedObject { id, initial_shared_version, mutable: false })
        b"\x01\x01" + bcs_address(trading_object_id) + struct.pack("<Q", initial_shared_version) + b"\x00",
        b"\x00" + bcs_bytes(bcs_address(subject)),
        b"\x00" + bcs_bytes(bcs_address(user)),
    ]
    move_call = (
        b"\x00"
        + bcs_address(package_id)
        + bcs_str("shares_trading")
        + bcs_str("get_shares_balance")
        + uleb128(0)
        + uleb128(len(inputs))
        + b"".join(b"\x01" + struct.pack("<H", i) for i in range(len(inputs)))
    )
    return (
        b"\x00"
        + uleb128(len(inputs))
        + b"".join(inputs)
        + uleb128(1)
        + move_call
    )


def decode_u64_return(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, list) and value and isinstance(value[0], list):
        raw = bytes(int(b) & 0xFF for b in value[0])
        if len(raw) != 8:
            raise ValueError(f"expected 8 BCS bytes for u64, got {len(raw)}")
        return int.from_bytes(raw, "little")
    raise ValueError(f"unsupported return value: {value!r}")


class SuiBlockchain(Blockchain):
    """Cursor backend: follows ``suix_queryEvents`` pages; the serialized
    cursor is the checkpoint."""

    def __init__(self, cfg: SuiChainConfig, rpc: RPCClient):
        self.cfg = cfg
        self.rpc = rpc
        self.name = cfg.name
        self.event_type = f"{cfg.package_id}::shares_trading::Trade"
        self._initial_shared_version: Optional[int] = None

    def normalize_address(self, addr: str) -> str:
        return normalize_sui_address(addr)

    def initial_checkpoint(self) -> Checkpoint:
        cursor = parse_cursor(self.cfg.start_cursor)
        if cursor is None:
            return Checkpoint(self.name, 0)
        return Checkpoint(self.name, cursor_position(cursor), serialize_cursor(cursor))

    async def probe(self) -> None:
        try:
            ident = await self.rpc.call("sui_getChainIdentifier", [])
        except RPCError as e:
            raise StartupError(f"Failed to connect to {self.name} node: {e}") from e
        logger.info("%s connected, chain identifier %s", self.name, ident)

    async def query_events(self, cursor: Optional[Dict[str, str]]) -> Dict[str, Any]:
        query = {"MoveEventType": self.event_type}
        result = await self.rpc.call(
            "suix_queryEvents", [query, cursor, self.cfg.page_limit, False]
        )
        if not isinstance(result, dict) or not isinstance(result.get("data"), list):
            raise RPCError("Cannot parse Sui RPC response")
        next_cursor = result.get("nextCursor")
        if next_cursor is not None and not (
            isinstance(next_cursor, dict) and "txDigest" in next_cursor and "eventSeq" in next_cursor
        ):
            raise RPCError(f"malformed nextCursor: {next_cursor!r}")
        return result

    async def fetch_batch(self, checkpoint: Checkpoint) -> Optional[Batch]:
        cursor = parse_cursor(checkpoint.cursor_token)
        page = await self.query_events(cursor)
        events: List[Dict[str, Any]] = page["data"]
        next_cursor = page.get("nextCursor")
        last_id = events[-1].get("id") if events and isinstance(events[-1], dict) else None
        if next_cursor is None and isinstance(last_id, dict) and {"txDigest", "eventSeq"} <= set(last_id):
            next_cursor = last_id
        if next_cursor is not None:
            next_cursor = {"txDigest": str(next_cursor["txDigest"]), "eventSeq": str(next_cursor["eventSeq"])}
        if not events and (next_cursor is None or next_cursor == cursor):
            return None
        if next_cursor is not None:
            new_checkpoint = Checkpoint(
                self.name,
                max(checkpoint.position, cursor_position(next_cursor)),
                serialize_cursor(next_cursor),
            )
        else:
            new_checkpoint = checkpoint
        label = serialize_cursor(cursor) if cursor else "start"
        return Batch(raw_events=events, checkpoint=new_checkpoint, window=f"cursor {label}")

    def decode(self, raw: Dict[str, Any]) -> TradeEvent:
        event_id = raw["id"]
        parsed = raw["parsedJson"]
        amount = int(str(parsed["amount"]))
        if amount < 0:
            raise ValueError(f"negative trade amount: {amount}")
        tx_digest = str(event_id["txDigest"])
        event_seq = str(event_id["eventSeq"])
        return TradeEvent(
            trader=normalize_sui_address(str(parsed["trader"])),
            subject=normalize_sui_address(str(parsed["subject"])),
            is_buy=bool(parsed["is_buy"]),
            amount=amount,
            event_key=f"{tx_digest}:{event_seq}",
            tx_digest=tx_digest,
            event_seq=event_seq,
        )

    def verify_signature(self, challenge: str, signature: str) -> str:
        try:
            blob = base64.b64decode(signature.strip(), validate=True)
        except (binascii.Error, ValueError, AttributeError) as e:
            raise MalformedSignature(f"Cannot decode signature: {e}") from e
        if not blob:
            raise MalformedSignature("empty signature")
        flag = blob[0]
        pk_size = PUBLIC_KEY_SIZES.get(flag)
        if pk_size is None:
            raise MalformedSignature(f"unsupported signature scheme flag: {flag}")
        if len(blob) != 1 + RAW_SIGNATURE_SIZE + pk_size:
            raise MalformedSignature(
                f"Signature must be {1 + RAW_SIGNATURE_SIZE + pk_size} bytes for scheme {flag}"
            )
        raw_sig = blob[1 : 1 + RAW_SIGNATURE_SIZE]
        public_key = blob[1 + RAW_SIGNATURE_SIZE :]
        digest = personal_message_digest(challenge)
        try:
            if flag == FLAG_ED25519:
                Ed25519PublicKey.from_public_bytes(public_key).verify(raw_sig, digest)
            else:
                curve = ec.SECP256K1() if flag == FLAG_SECP256K1 else ec.SECP256R1()
                key = ec.EllipticCurvePublicKey.from_encoded_point(curve, public_key)
                r = int.from_bytes(raw_sig[:32], "big")
                s = int.from_bytes(raw_sig[32:], "big")
                key.verify(encode_dss_signature(r, s), digest, ec.ECDSA(hashes.SHA256()))
        except (InvalidSignature, ValueError) as e:
            raise RecoveryFailed(f"signature verification failed: {e!r}") from e
        return address_from_public_key(flag, public_key)

    async def _shared_version(self) -> int:
        if self._initial_shared_version is None:
            obj = await self.rpc.call(
                "sui_getObject", [self.cfg.shares_trading_object_id, {"showOwner": True}]
            )
            try:
                shared = obj["data"]["owner"]["Shared"]
                self._initial_shared_version = int(shared["initial_shared_version"])
            except (KeyError, TypeError, ValueError) as e:
                raise QueryError(f"shares trading object is not shared: {obj!r}") from e
        return self._initial_shared_version

    async def get_share_balance(self, subject: str, user: str) -> int:
        try:
            version = await self._shared_version()
            tx_kind = build_balance_inspection(
                self.cfg.package_id,
                self.cfg.shares_trading_object_id,
                version,
                subject,
                user,
            )
            result = await self.rpc.call(
                "sui_devInspectTransactionBlock",
                [INSPECT_SENDER, base64.b64encode(tx_kind).decode("ascii"), None, None],
            )
        except RPCError as e:
            raise QueryError(f"Sui RPC request failed: {e}") from e
        except ValueError as e:
            raise QueryError(f"Invalid address: {e}") from e
        if not isinstance(result, dict):
            raise QueryError("Cannot parse Sui devInspect response")
        if result.get("error"):
            raise QueryError(f"Sui devInspect returned error: {result['error']}")
        try:
            first_value = result["results"][0]["returnValues"][0]
            return decode_u64_return(first_value)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise QueryError(f"Cannot parse get_shares_balance result: {e}") from e
