import base64

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from eth_account import Account
from eth_account.messages import encode_defunct

from shares_gate.chains.evm import EvmBlockchain
from shares_gate.chains.sui import (
    FLAG_ED25519,
    FLAG_SECP256K1,
    SuiBlockchain,
    address_from_public_key,
    personal_message_digest,
)
from shares_gate.config import EvmChainConfig, SuiChainConfig
from shares_gate.errors import AddressMismatch, MalformedSignature, RecoveryFailed

from .fakes import FakeRPC

CHALLENGE = "123456789"


@pytest.fixture
def evm():
    cfg = EvmChainConfig(
        name="monad", rpc_url="http://node", shares_contract="ab" * 20, start_block=0
    )
    return EvmBlockchain(cfg, FakeRPC())


@pytest.fixture
def sui():
    cfg = SuiChainConfig(
        name="sui",
        rpc_url="http://node",
        package_id="0x" + "1" * 64,
        shares_trading_object_id="0x" + "2" * 64,
    )
    return SuiBlockchain(cfg, FakeRPC())


@pytest.fixture
def evm_signed():
    acct = Account.from_key("0x" + "11" * 32)
    signed = Account.sign_message(encode_defunct(text=CHALLENGE), private_key=acct.key)
    return acct.address, bytes(signed.signature)


def corrupted(sig: bytes):
    for i in range(len(sig)):
        yield i, sig[:i] + bytes([sig[i] ^ 0x01]) + sig[i + 1 :]


def test_evm_round_trip(evm, evm_signed):
    address, sig = evm_signed
    assert evm.verify_claim(CHALLENGE, "0x" + sig.hex(), address) == address[2:].lower()
    assert evm.verify_claim(CHALLENGE, sig.hex(), address.lower()) == address[2:].lower()


def test_evm_corrupt_byte_never_yields_claimed_address(evm, evm_signed):
    address, sig = evm_signed
    for i, bad in corrupted(sig):
        with pytest.raises((RecoveryFailed, MalformedSignature)):
            evm.verify_claim(CHALLENGE, bad.hex(), address)


def test_evm_other_challenge_is_a_mismatch(evm, evm_signed):
    address, sig = evm_signed
    with pytest.raises(AddressMismatch):
        evm.verify_claim("987654321", sig.hex(), address)


@pytest.mark.parametrize("signature", ["", "zz", "0x1234", "ab" * 64])
def test_evm_malformed_signature(evm, evm_signed, signature):
    address, _ = evm_signed
    with pytest.raises(MalformedSignature):
        evm.verify_claim(CHALLENGE, signature, address)


def test_evm_invalid_claimed_address(evm, evm_signed):
    _, sig = evm_signed
    with pytest.raises(MalformedSignature):
        evm.verify_claim(CHALLENGE, sig.hex(), "not-an-address")


def ed25519_signature(message: str):
    key = Ed25519PrivateKey.from_private_bytes(bytes(range(32)))
    pk = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    raw = key.sign(personal_message_digest(message))
    blob = bytes([FLAG_ED25519]) + raw + pk
    return "0x" + address_from_public_key(FLAG_ED25519, pk), blob


def secp256k1_signature(message: str):
    key = ec.derive_private_key(0xC0FFEE, ec.SECP256K1())
    pk = key.public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint)
    r, s = decode_dss_signature(key.sign(personal_message_digest(message), ec.ECDSA(hashes.SHA256())))
    raw = r.to_bytes(32, "big") + s.to_bytes(32, "big")
    blob = bytes([FLAG_SECP256K1]) + raw + pk
    return "0x" + address_from_public_key(FLAG_SECP256K1, pk), blob


@pytest.mark.parametrize("make", [ed25519_signature, secp256k1_signature])
def test_sui_round_trip(sui, make):
    address, blob = make(CHALLENGE)
    recovered = sui.verify_claim(CHALLENGE, base64.b64encode(blob).decode(), address)
    assert recovered == address[2:]
    assert len(recovered) == 64


@pytest.mark.parametrize("make", [ed25519_signature, secp256k1_signature])
def test_sui_corrupt_byte_never_yields_claimed_address(sui, make):
    address, blob = make(CHALLENGE)
    for i, bad in corrupted(blob):
        with pytest.raises((RecoveryFailed, MalformedSignature)):
            sui.verify_claim(CHALLENGE, base64.b64encode(bad).decode(), address)


def test_sui_wrong_challenge_fails(sui):
    address, blob = ed25519_signature(CHALLENGE)
    with pytest.raises(RecoveryFailed):
        sui.verify_claim("other", base64.b64encode(blob).decode(), address)


def test_sui_claimed_address_must_match(sui):
    _, blob = ed25519_signature(CHALLENGE)
    with pytest.raises(AddressMismatch):
        sui.verify_claim(CHALLENGE, base64.b64encode(blob).decode(), "0x" + "3" * 64)


@pytest.mark.parametrize("signature", ["%%%", "", base64.b64encode(b"\x07" + b"\x00" * 96).decode()])
def test_sui_malformed_signature(sui, signature):
    with pytest.raises(MalformedSignature):
        sui.verify_claim(CHALLENGE, signature, "0x1")
