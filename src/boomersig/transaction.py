"""
transaction.py — P2PKH addresses and PSBT signing glue

Connects a threshold key and signature to a Bitcoin transaction:

    psbt = Psbt.from_base64(text)
    digest = psbt.sighash(0)                  # what the signers sign
    tx = psbt.finalize_p2pkh(0, signature)    # scriptSig <sig+hashtype> <pubkey>
    tx.serialize().hex()                      # broadcast elsewhere

Only legacy P2PKH inputs with SIGHASH_ALL are handled, and only version 0
PSBTs. The group key is used in uncompressed form for both the address and
the scriptSig, so an address printed after keygen is the one a PSBT must
spend from.
"""

from __future__ import annotations
import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

import base58
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import TransactionError
from .models import SignatureResult

PSBT_MAGIC = b"psbt\xff"
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

SIGHASH_ALL = 0x01

# P2PKH version byte per network
NETWORKS = {"mainnet": 0x00, "testnet": 0x6F, "signet": 0x6F, "regtest": 0x6F}

OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC
OP_PUSHDATA1 = 0x4C

KeyValue = Tuple[bytes, bytes]


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def uncompressed(public_key: bytes) -> bytes:
    """SEC1 uncompressed form of a secp256k1 key given in either encoding."""
    try:
        point = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(public_key))
    except ValueError as exc:
        raise TransactionError(f"not a secp256k1 public key: {exc}") from exc
    return point.public_bytes(serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint)


def p2pkh_script(public_key: bytes) -> bytes:
    return (
        bytes([OP_DUP, OP_HASH160, 20])
        + hash160(uncompressed(public_key))
        + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


def is_p2pkh(script: bytes) -> bool:
    return (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 20])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


def p2pkh_address(public_key: bytes, network: str = "signet") -> str:
    """Base58Check pay-to-pubkey-hash address of ``public_key``."""
    try:
        version = NETWORKS[network]
    except KeyError:
        raise TransactionError(f"unknown network {network!r}; expected one of {', '.join(NETWORKS)}") from None
    return base58.b58encode_check(bytes([version]) + hash160(uncompressed(public_key))).decode("ascii")


def push_data(data: bytes) -> bytes:
    if len(data) < OP_PUSHDATA1:
        return bytes([len(data)]) + data
    if len(data) <= 0xFF:
        return bytes([OP_PUSHDATA1, len(data)]) + data
    raise TransactionError(f"push of {len(data)} bytes is too large for a scriptSig")


def _varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _var_bytes(data: bytes) -> bytes:
    return _varint(len(data)) + data


class _Reader:
    def __init__(self, data: bytes, what: str) -> None:
        self.data = data
        self.pos = 0
        self.what = what

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise TransactionError(f"{self.what}: truncated at byte {self.pos}")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def varint(self) -> int:
        first = self.u8()
        if first < 0xFD:
            return first
        size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
        return int.from_bytes(self.take(size), "little")

    def var_bytes(self) -> bytes:
        return self.take(self.varint())

    def finish(self) -> None:
        if self.pos != len(self.data):
            raise TransactionError(f"{self.what}: {len(self.data) - self.pos} trailing byte(s)")


@dataclass(frozen=True)
class TxIn:
    prev_txid: bytes  # internal byte order
    prev_index: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF

    @classmethod
    def read(cls, r: _Reader) -> "TxIn":
        prev_txid = r.take(32)
        prev_index = r.u32()
        script_sig = r.var_bytes()
        return cls(prev_txid, prev_index, script_sig, r.u32())

    def serialize(self) -> bytes:
        return (
            self.prev_txid
            + struct.pack("<I", self.prev_index)
            + _var_bytes(self.script_sig)
            + struct.pack("<I", self.sequence)
        )


@dataclass(frozen=True)
class TxOut:
    value: int
    script_pubkey: bytes

    @classmethod
    def read(cls, r: _Reader) -> "TxOut":
        value = struct.unpack("<q", r.take(8))[0]
        return cls(value, r.var_bytes())

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + _var_bytes(self.script_pubkey)


@dataclass(frozen=True)
class Transaction:
    """A transaction in legacy serialization.

    ``parse`` accepts the segwit encoding too but drops the witnesses, since
    txids and legacy sighashes only commit to the legacy form.
    """

    version: int
    inputs: Tuple[TxIn, ...]
    outputs: Tuple[TxOut, ...]
    locktime: int = 0

    @classmethod
    def parse(cls, data: bytes) -> "Transaction":
        r = _Reader(bytes(data), "transaction")
        version = struct.unpack("<i", r.take(4))[0]
        count = r.varint()
        segwit = False
        if count == 0:
            if r.u8() != 0x01:
                raise TransactionError("transaction: bad segwit flag")
            segwit = True
            count = r.varint()
        inputs = tuple(TxIn.read(r) for _ in range(count))
        outputs = tuple(TxOut.read(r) for _ in range(r.varint()))
        if segwit:
            for _ in inputs:
                for _ in range(r.varint()):
                    r.var_bytes()
        locktime = r.u32()
        r.finish()
        return cls(version, inputs, outputs, locktime)

    def serialize(self) -> bytes:
        parts = [struct.pack("<i", self.version), _varint(len(self.inputs))]
        parts.extend(txin.serialize() for txin in self.inputs)
        parts.append(_varint(len(self.outputs)))
        parts.extend(txout.serialize() for txout in self.outputs)
        parts.append(struct.pack("<I", self.locktime))
        return b"".join(parts)

    def hash(self) -> bytes:
        return sha256d(self.serialize())

    def txid(self) -> str:
        return self.hash()[::-1].hex()

    def legacy_sighash(self, index: int, script_code: bytes, sighash_type: int = SIGHASH_ALL) -> bytes:
        """Pre-segwit signature hash of input ``index`` spending ``script_code``."""
        if sighash_type != SIGHASH_ALL:
            raise TransactionError(f"sighash type {sighash_type:#x} is not supported, only SIGHASH_ALL")
        if not 0 <= index < len(self.inputs):
            raise TransactionError(f"input {index} out of range ({len(self.inputs)} inputs)")
        blanked = replace(self, inputs=tuple(
            replace(txin, script_sig=script_code if n == index else b"")
            for n, txin in enumerate(self.inputs)
        ))
        return sha256d(blanked.serialize() + struct.pack("<I", sighash_type))


def _read_map(r: _Reader) -> List[KeyValue]:
    entries: List[KeyValue] = []
    seen = set()
    while True:
        key = r.var_bytes()
        if not key:
            return entries
        if key in seen:
            raise TransactionError(f"psbt: duplicate key {key.hex()}")
        seen.add(key)
        entries.append((key, r.var_bytes()))


def _write_map(entries: List[KeyValue]) -> bytes:
    return b"".join(_var_bytes(key) + _var_bytes(value) for key, value in entries) + b"\x00"


def _lookup(entries: List[KeyValue], key_type: int) -> Optional[bytes]:
    wanted = bytes([key_type])
    for key, value in entries:
        if key == wanted:
            return value
    return None


@dataclass
class Psbt:
    """A version 0 PSBT kept as raw key-value maps around its unsigned tx."""

    unsigned_tx: Transaction
    global_map: List[KeyValue]
    inputs: List[List[KeyValue]]
    outputs: List[List[KeyValue]]

    @classmethod
    def create(cls, tx: Transaction) -> "Psbt":
        return cls(tx, [(bytes([PSBT_GLOBAL_UNSIGNED_TX]), tx.serialize())],
                   [[] for _ in tx.inputs], [[] for _ in tx.outputs])

    @classmethod
    def parse(cls, data: bytes) -> "Psbt":
        if not data.startswith(PSBT_MAGIC):
            raise TransactionError("psbt: missing magic bytes")
        r = _Reader(bytes(data), "psbt")
        r.take(len(PSBT_MAGIC))
        global_map = _read_map(r)
        raw_tx = _lookup(global_map, PSBT_GLOBAL_UNSIGNED_TX)
        if raw_tx is None:
            raise TransactionError("psbt: no unsigned transaction (only version 0 PSBTs are supported)")
        tx = Transaction.parse(raw_tx)
        if any(txin.script_sig for txin in tx.inputs):
            raise TransactionError("psbt: the unsigned transaction already carries scriptSigs")
        inputs = [_read_map(r) for _ in tx.inputs]
        outputs = [_read_map(r) for _ in tx.outputs]
        r.finish()
        return cls(tx, global_map, inputs, outputs)

    @classmethod
    def from_base64(cls, text: str) -> "Psbt":
        try:
            data = base64.b64decode(text.strip(), validate=True)
        except binascii.Error as exc:
            raise TransactionError(f"psbt is not valid base64: {exc}") from exc
        return cls.parse(data)

    def serialize(self) -> bytes:
        return (
            PSBT_MAGIC
            + _write_map(self.global_map)
            + b"".join(_write_map(m) for m in self.inputs)
            + b"".join(_write_map(m) for m in self.outputs)
        )

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def set_input(self, index: int, key_type: int, value: bytes) -> None:
        key = bytes([key_type])
        entries = [(k, v) for k, v in self._input(index) if k != key]
        entries.append((key, value))
        self.inputs[index] = entries

    def _input(self, index: int) -> List[KeyValue]:
        if not 0 <= index < len(self.inputs):
            raise TransactionError(f"input {index} out of range ({len(self.inputs)} inputs)")
        return self.inputs[index]

    def spent_output(self, index: int) -> TxOut:
        """The previous output input ``index`` spends, checked against its outpoint."""
        entries = self._input(index)
        outpoint = self.unsigned_tx.inputs[index]
        raw = _lookup(entries, PSBT_IN_NON_WITNESS_UTXO)
        if raw is not None:
            prev = Transaction.parse(raw)
            if prev.hash() != outpoint.prev_txid:
                raise TransactionError(
                    f"input {index}: previous transaction {prev.txid()} is not the one the input spends"
                )
            if outpoint.prev_index >= len(prev.outputs):
                raise TransactionError(f"input {index}: previous transaction has no output {outpoint.prev_index}")
            return prev.outputs[outpoint.prev_index]
        raw = _lookup(entries, PSBT_IN_WITNESS_UTXO)
        if raw is not None:
            r = _Reader(raw, f"input {index} witness utxo")
            spent = TxOut.read(r)
            r.finish()
            return spent
        raise TransactionError(f"input {index}: the PSBT does not include the output being spent")

    def sighash_type(self, index: int) -> int:
        raw = _lookup(self._input(index), PSBT_IN_SIGHASH_TYPE)
        if raw is None:
            return SIGHASH_ALL
        if len(raw) != 4:
            raise TransactionError(f"input {index}: sighash type must be 4 bytes")
        return struct.unpack("<I", raw)[0]

    def sighash(self, index: int) -> bytes:
        """The 32-byte digest the signers sign for input ``index``."""
        spent = self.spent_output(index)
        if not is_p2pkh(spent.script_pubkey):
            raise TransactionError(f"input {index} does not spend a P2PKH output")
        return self.unsigned_tx.legacy_sighash(index, spent.script_pubkey, self.sighash_type(index))

    def finalize_p2pkh(self, index: int, signature: SignatureResult) -> Transaction:
        """Write the scriptSig for input ``index`` and extract the transaction."""
        if signature.digest != self.sighash(index):
            raise TransactionError(f"input {index}: the signature is over a different digest than this input's sighash")
        if not signature.verify():
            raise TransactionError("the signature does not verify against its public key")
        public_key = uncompressed(signature.public_key)
        if self.spent_output(index).script_pubkey != p2pkh_script(public_key):
            raise TransactionError(
                f"input {index} is not locked to the signing key ({p2pkh_address(public_key, 'mainnet')} on mainnet)"
            )
        script_sig = (
            push_data(signature.to_der() + bytes([self.sighash_type(index)]))
            + push_data(public_key)
        )
        self.set_input(index, PSBT_IN_FINAL_SCRIPTSIG, script_sig)
        return self.extract()

    def unsigned_inputs(self) -> List[int]:
        return [n for n, entries in enumerate(self.inputs)
                if _lookup(entries, PSBT_IN_FINAL_SCRIPTSIG) is None]

    def extract(self) -> Transaction:
        """The transaction with every finalized scriptSig filled in."""
        inputs = []
        for n, (txin, entries) in enumerate(zip(self.unsigned_tx.inputs, self.inputs)):
            if _lookup(entries, PSBT_IN_FINAL_SCRIPTWITNESS) is not None:
                raise TransactionError(f"input {n} is finalized with a witness; segwit extraction is not supported")
            inputs.append(replace(txin, script_sig=_lookup(entries, PSBT_IN_FINAL_SCRIPTSIG) or b""))
        return replace(self.unsigned_tx, inputs=tuple(inputs))
