import struct
from dataclasses import replace

import base58
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature, encode_dss_signature

from boomersig.errors import TransactionError
from boomersig.models import SignatureResult
from boomersig.threshold import ORDER, ShamirEngine
from boomersig.transaction import (
    PSBT_IN_NON_WITNESS_UTXO,
    PSBT_IN_SIGHASH_TYPE,
    PSBT_IN_WITNESS_UTXO,
    Psbt,
    Transaction,
    TxIn,
    TxOut,
    p2pkh_address,
    p2pkh_script,
    sha256d,
    uncompressed,
)

from test_threshold import keygen, run_rounds

# secp256k1 generator, i.e. the public key of private key 1
G_UNCOMPRESSED = bytes.fromhex(
    "0479be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
    "483ada7726a3c4655da4fbfc0e1108a8fd17b448a68554199c47d08ffb10d4b8"
)
G_HASH160 = bytes.fromhex("91b24bf9f5288532960ac687abb035127b1d28a5")

GENESIS_COINBASE = bytes.fromhex(
    "01000000010000000000000000000000000000000000000000000000000000000000000000ffffffff4d04ffff001d"
    "0104455468652054696d65732030332f4a616e2f32303039204368616e63656c6c6f72206f6e206272696e6b206f"
    "66207365636f6e64206261696c6f757420666f722062616e6b73ffffffff0100f2052a01000000434104678afdb0"
    "fe5548271967f1a67130b7105cd6a828e03909a67962e0ea1f61deb649f6bc3f4cef38c4f35504e51ec112de5c38"
    "4df7ba0b8d578a4c702b6bf11d5fac00000000"
)


def _key(secret: int):
    private = ec.derive_private_key(secret, ec.SECP256K1())
    public = private.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
    )
    return private, public


def _sign(private, public_key: bytes, digest: bytes) -> SignatureResult:
    r, s = decode_dss_signature(private.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256()))))
    return SignatureResult(r=r, s=min(s, ORDER - s), public_key=public_key, digest=digest)


def _funding(script_pubkey: bytes, value: int = 50_000) -> Transaction:
    return Transaction(1, (TxIn(bytes(32), 0xFFFFFFFF, b"\x51"),), (TxOut(value, script_pubkey),))


def _spending(prev: Transaction, outputs=(TxOut(40_000, b"\x6a"),)) -> Psbt:
    tx = Transaction(2, (TxIn(prev.hash(), 0, b"", 0xFFFFFFFD),), tuple(outputs))
    psbt = Psbt.create(tx)
    psbt.set_input(0, PSBT_IN_NON_WITNESS_UTXO, prev.serialize())
    return Psbt.from_base64(psbt.to_base64())


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def test_address_of_generator_point():
    assert p2pkh_address(G_UNCOMPRESSED, "mainnet") == "1EHNa6Q4Jz2uvNExL497mE43ikXhwF6kZm"
    # the compressed encoding hashes the same uncompressed key
    _, compressed = _key(1)
    assert p2pkh_address(compressed, "mainnet") == "1EHNa6Q4Jz2uvNExL497mE43ikXhwF6kZm"


def test_signet_address_uses_test_network_version():
    address = p2pkh_address(G_UNCOMPRESSED)
    assert address[0] in "mn"
    assert base58.b58decode_check(address) == b"\x6f" + G_HASH160
    assert p2pkh_address(G_UNCOMPRESSED, "testnet") == address


def test_address_rejects_unknown_network_and_bad_keys():
    with pytest.raises(TransactionError, match="unknown network"):
        p2pkh_address(G_UNCOMPRESSED, "litecoin")
    with pytest.raises(TransactionError):
        p2pkh_address(b"\x05" + bytes(32))


def test_p2pkh_script_layout():
    assert p2pkh_script(G_UNCOMPRESSED) == b"\x76\xa9\x14" + G_HASH160 + b"\x88\xac"


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

def test_genesis_coinbase_parses_and_reserializes():
    tx = Transaction.parse(GENESIS_COINBASE)
    assert tx.txid() == "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"
    assert tx.outputs[0].value == 50 * 100_000_000
    assert tx.serialize() == GENESIS_COINBASE


def test_segwit_encoding_keeps_the_legacy_txid():
    legacy = _funding(p2pkh_script(G_UNCOMPRESSED)).serialize()
    with_witness = legacy[:4] + b"\x00\x01" + legacy[4:-4] + b"\x01\x02\xaa\xbb" + legacy[-4:]
    assert Transaction.parse(with_witness).serialize() == legacy


def test_truncated_and_padded_transactions_are_rejected():
    with pytest.raises(TransactionError, match="truncated"):
        Transaction.parse(GENESIS_COINBASE[:-1])
    with pytest.raises(TransactionError, match="trailing"):
        Transaction.parse(GENESIS_COINBASE + b"\x00")


def test_legacy_sighash_blanks_other_inputs():
    script = p2pkh_script(G_UNCOMPRESSED)
    tx = Transaction(
        1,
        (TxIn(b"\x11" * 32, 0), TxIn(b"\x22" * 32, 1, b"\x51")),
        (TxOut(1000, b"\x6a"),),
    )
    expected = sha256d(
        Transaction(1, (TxIn(b"\x11" * 32, 0, script), TxIn(b"\x22" * 32, 1)), tx.outputs).serialize()
        + struct.pack("<I", 1)
    )
    assert tx.legacy_sighash(0, script) == expected
    assert tx.legacy_sighash(1, script) != expected
    assert replace(tx, outputs=(TxOut(999, b"\x6a"),)).legacy_sighash(0, script) != expected


# ---------------------------------------------------------------------------
# PSBT signing
# ---------------------------------------------------------------------------

def test_finalize_builds_a_verifiable_scriptsig():
    private, public = _key(1)
    prev = _funding(p2pkh_script(public))
    psbt = _spending(prev)
    digest = psbt.sighash(0)

    signed = psbt.finalize_p2pkh(0, _sign(private, public, digest))

    script_sig = signed.inputs[0].script_sig
    der_len = script_sig[0]
    der, hashtype = script_sig[1:der_len], script_sig[der_len]
    assert hashtype == 0x01
    assert script_sig[der_len + 1:] == b"\x41" + G_UNCOMPRESSED
    ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public).verify(
        der, digest, ec.ECDSA(Prehashed(hashes.SHA256()))
    )
    assert signed.inputs[0].prev_txid == prev.hash()
    assert psbt.unsigned_inputs() == []
    assert Psbt.from_base64(psbt.to_base64()).extract() == signed


def test_witness_utxo_is_accepted_for_the_spent_output():
    private, public = _key(7)
    prev = _funding(p2pkh_script(public))
    psbt = Psbt.create(Transaction(2, (TxIn(prev.hash(), 0),), (TxOut(1, b"\x6a"),)))
    psbt.set_input(0, PSBT_IN_WITNESS_UTXO, prev.outputs[0].serialize())
    signed = psbt.finalize_p2pkh(0, _sign(private, public, psbt.sighash(0)))
    assert signed.inputs[0].script_sig.endswith(uncompressed(public))


def test_threshold_signature_finalizes_a_psbt():
    engine = ShamirEngine()
    states = keygen(engine, 3, 2)
    public_key = states[1].public_key
    psbt = _spending(_funding(p2pkh_script(public_key)))
    digest = psbt.sighash(0)

    signing = run_rounds(engine, {i: engine.new_signing(states[i], digest, (2, 3)) for i in (2, 3)})
    r, s = engine.extract_signature(signing[2])
    signed = psbt.finalize_p2pkh(0, SignatureResult(r=r, s=s, public_key=public_key, digest=digest))

    expected_der = encode_dss_signature(r, s)
    assert signed.inputs[0].script_sig[1:1 + len(expected_der)] == expected_der


def test_finalize_refuses_signature_over_another_digest():
    private, public = _key(1)
    psbt = _spending(_funding(p2pkh_script(public)))
    with pytest.raises(TransactionError, match="different digest"):
        psbt.finalize_p2pkh(0, _sign(private, public, bytes(31) + b"\x01"))
    assert psbt.unsigned_inputs() == [0]


def test_finalize_refuses_a_key_that_does_not_own_the_output():
    _, owner = _key(1)
    private, public = _key(2)
    psbt = _spending(_funding(p2pkh_script(owner)))
    with pytest.raises(TransactionError, match="not locked to the signing key"):
        psbt.finalize_p2pkh(0, _sign(private, public, psbt.sighash(0)))


def test_finalize_refuses_a_bad_signature():
    private, public = _key(1)
    psbt = _spending(_funding(p2pkh_script(public)))
    good = _sign(private, public, psbt.sighash(0))
    with pytest.raises(TransactionError, match="does not verify"):
        psbt.finalize_p2pkh(0, replace(good, r=good.r + 1))


def _psbt_missing_utxo():
    return Psbt.create(Transaction(2, (TxIn(b"\x33" * 32, 0),), (TxOut(1, b"\x6a"),)))


def _psbt_wrong_prev_tx():
    psbt = _psbt_missing_utxo()
    psbt.set_input(0, PSBT_IN_NON_WITNESS_UTXO, _funding(p2pkh_script(G_UNCOMPRESSED)).serialize())
    return psbt


def _psbt_non_p2pkh():
    return _spending(_funding(b"\x00\x14" + G_HASH160))


def _psbt_anyonecanpay():
    psbt = _spending(_funding(p2pkh_script(G_UNCOMPRESSED)))
    psbt.set_input(0, PSBT_IN_SIGHASH_TYPE, struct.pack("<I", 0x81))
    return psbt


@pytest.mark.parametrize("build,match", [
    (_psbt_missing_utxo, "does not include the output"),
    (_psbt_wrong_prev_tx, "not the one the input spends"),
    (_psbt_non_p2pkh, "P2PKH"),
    (_psbt_anyonecanpay, "only SIGHASH_ALL"),
])
def test_sighash_rejects_unusable_inputs(build, match):
    with pytest.raises(TransactionError, match=match):
        build().sighash(0)


def test_sighash_input_out_of_range():
    psbt = _spending(_funding(p2pkh_script(G_UNCOMPRESSED)))
    with pytest.raises(TransactionError, match="out of range"):
        psbt.sighash(1)


@pytest.mark.parametrize("text,match", [
    ("not base64!", "base64"),
    ("cHNidP8=", "truncated"),
    ("AAAAAA==", "magic"),
])
def test_malformed_psbt_text(text, match):
    with pytest.raises(TransactionError, match=match):
        Psbt.from_base64(text)


def test_psbt_with_signed_unsigned_tx_is_rejected():
    tx = _funding(p2pkh_script(G_UNCOMPRESSED))
    with pytest.raises(TransactionError, match="already carries scriptSigs"):
        Psbt.parse(Psbt.create(tx).serialize())
