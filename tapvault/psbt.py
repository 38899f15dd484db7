"""
Typed access to the parts of a BIP-174/371 PSBT that the withdrawal pipeline
reads and writes, on top of `verystable.core.psbt`.
"""
import base64
import binascii
import typing as t
from dataclasses import dataclass
from io import BytesIO

from verystable.core import psbt as core_psbt
from verystable.core.messages import (
    CTransaction,
    CTxOut,
    CTxInWitness,
    from_binary,
    ser_string_vector,
    deser_string_vector,
)
from verystable.core.psbt import PSBT, PSBTMap
from verystable.core.script import SIGHASH_DEFAULT

from .errors import MalformedTransaction, BadControlBlock, MissingPrevout

# Script-path control blocks are 33 + 32m bytes, with m <= 128.
TAPROOT_CONTROL_BASE_SIZE = 33
TAPROOT_CONTROL_NODE_SIZE = 32
TAPROOT_CONTROL_MAX_NODE_COUNT = 128
TAPROOT_LEAF_MASK = 0xfe

# Partial fields made redundant once an input has a final witness.
_TAPROOT_PARTIAL_FIELDS = (
    core_psbt.PSBT_IN_PARTIAL_SIG,
    core_psbt.PSBT_IN_SIGHASH_TYPE,
    core_psbt.PSBT_IN_REDEEM_SCRIPT,
    core_psbt.PSBT_IN_WITNESS_SCRIPT,
    core_psbt.PSBT_IN_BIP32_DERIVATION,
    core_psbt.PSBT_IN_TAP_KEY_SIG,
    core_psbt.PSBT_IN_TAP_SCRIPT_SIG,
    core_psbt.PSBT_IN_TAP_LEAF_SCRIPT,
    core_psbt.PSBT_IN_TAP_BIP32_DERIVATION,
    core_psbt.PSBT_IN_TAP_INTERNAL_KEY,
    core_psbt.PSBT_IN_TAP_MERKLE_ROOT,
)


@dataclass(frozen=True)
class ControlBlock:
    version: int
    internal_pubkey: bytes
    path: tuple[bytes, ...]

    @property
    def leaf_version(self) -> int:
        return self.version & TAPROOT_LEAF_MASK

    @property
    def output_key_parity(self) -> int:
        return self.version & 1

    def serialize(self) -> bytes:
        return bytes([self.version]) + self.internal_pubkey + b"".join(self.path)

    @classmethod
    def parse(cls, raw: bytes) -> "ControlBlock":
        n_nodes, rem = divmod(
            len(raw) - TAPROOT_CONTROL_BASE_SIZE, TAPROOT_CONTROL_NODE_SIZE)
        if len(raw) < TAPROOT_CONTROL_BASE_SIZE or rem or \
                n_nodes > TAPROOT_CONTROL_MAX_NODE_COUNT:
            raise BadControlBlock(f"control block has invalid length {len(raw)}")

        return cls(
            version=raw[0],
            internal_pubkey=bytes(raw[1:33]),
            path=tuple(
                bytes(raw[i:i + TAPROOT_CONTROL_NODE_SIZE])
                for i in range(TAPROOT_CONTROL_BASE_SIZE, len(raw),
                               TAPROOT_CONTROL_NODE_SIZE)),
        )


@dataclass(frozen=True)
class LeafScriptEntry:
    """A PSBT_IN_TAP_LEAF_SCRIPT entry."""
    control_block_bytes: bytes
    script: bytes
    leaf_version: int


@dataclass(frozen=True)
class TapScriptSig:
    """A PSBT_IN_TAP_SCRIPT_SIG entry."""
    pubkey: bytes
    leaf_hash: bytes
    signature: bytes


def parse_psbt(psbt_b64: str) -> PSBT:
    """Decode a base64 PSBT, raising MalformedTransaction on any failure."""
    cleaned = "".join((psbt_b64 or "").split())
    if not cleaned:
        raise MalformedTransaction("missing psbt")
    try:
        raw = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedTransaction(f"invalid psbt encoding: {e}")
    if not raw:
        raise MalformedTransaction("empty psbt")

    try:
        parsed = PSBT()
        parsed.deserialize(BytesIO(raw))
    except Exception as e:
        # The test-framework deserializer signals bad input with asserts and
        # struct errors alike.
        raise MalformedTransaction(f"invalid psbt: {e!r}")
    return parsed


def unsigned_tx(p: PSBT) -> CTransaction:
    return from_binary(
        CTransaction, p.g.map[core_psbt.PSBT_GLOBAL_UNSIGNED_TX])


def typed_entries(m: PSBTMap, key_type: int) -> t.Iterator[tuple[bytes, bytes]]:
    """Yield (keydata, value) for every multi-byte key of the given type."""
    for k, v in m.map.items():
        if isinstance(k, bytes) and k and k[0] == key_type:
            yield k[1:], v


def leaf_script_entries(m: PSBTMap) -> list[LeafScriptEntry]:
    out = []
    for cb, val in typed_entries(m, core_psbt.PSBT_IN_TAP_LEAF_SCRIPT):
        if not val:
            raise MalformedTransaction("empty tap leaf script entry")
        out.append(LeafScriptEntry(cb, val[:-1], val[-1]))
    return out


def tap_script_sigs(m: PSBTMap) -> list[TapScriptSig]:
    out = []
    for keydata, sig in typed_entries(m, core_psbt.PSBT_IN_TAP_SCRIPT_SIG):
        if len(keydata) != 64:
            raise MalformedTransaction("tap script sig key must be 64 bytes")
        out.append(TapScriptSig(keydata[:32], keydata[32:], sig))
    return out


def sighash_type(m: PSBTMap) -> int:
    raw = m.map.get(core_psbt.PSBT_IN_SIGHASH_TYPE)
    if raw is None:
        return SIGHASH_DEFAULT
    if len(raw) != 4:
        raise MalformedTransaction("sighash type must be 4 bytes")
    return int.from_bytes(raw, "little")


def _decode_exact(cls, raw: bytes, what: str):
    """
    Deserialize `raw`, which must be exactly one serialized `cls`. Short reads
    don't always raise, so the result has to re-serialize to the same bytes.
    """
    try:
        obj = from_binary(cls, raw)
    except Exception as e:
        raise MalformedTransaction(f"bad {what}: {e!r}")
    if obj.serialize() != raw:
        raise MalformedTransaction(f"bad {what}: truncated or trailing data")
    return obj


def resolve_prevout(tx: CTransaction, m: PSBTMap, index: int) -> CTxOut:
    """
    The output spent by input `index`: the witness UTXO if attached, otherwise
    looked up in the attached full previous transaction.
    """
    if (raw := m.map.get(core_psbt.PSBT_IN_WITNESS_UTXO)) is not None:
        return _decode_exact(CTxOut, raw, f"witness utxo on input {index}")

    if (raw := m.map.get(core_psbt.PSBT_IN_NON_WITNESS_UTXO)) is not None:
        prev = _decode_exact(CTransaction, raw, f"previous tx on input {index}")
        n = tx.vin[index].prevout.n
        if n < len(prev.vout):
            return prev.vout[n]

    raise MissingPrevout(f"no previous output data for input {index}", input=index)


def final_witness(m: PSBTMap) -> list[bytes] | None:
    if (raw := m.map.get(core_psbt.PSBT_IN_FINAL_SCRIPTWITNESS)) is None:
        return None
    return deser_string_vector(BytesIO(raw))


def set_final_witness(m: PSBTMap, stack: list[bytes]) -> None:
    """Finalize an input: write its witness and drop the partial fields."""
    for k in list(m.map):
        ktype = k if isinstance(k, int) else k[0]
        if ktype in _TAPROOT_PARTIAL_FIELDS:
            del m.map[k]
    m.map[core_psbt.PSBT_IN_FINAL_SCRIPTWITNESS] = ser_string_vector(stack)


def finalize_keypath_inputs(p: PSBT) -> list[int]:
    """
    Finalize any input whose only signature is a Taproot key-path signature.
    Returns the finalized input indexes.
    """
    done = []
    for i, m in enumerate(p.i):
        if core_psbt.PSBT_IN_FINAL_SCRIPTWITNESS in m.map:
            continue
        if (sig := m.map.get(core_psbt.PSBT_IN_TAP_KEY_SIG)) is not None:
            set_final_witness(m, [sig])
            done.append(i)
    return done


def extract_transaction(p: PSBT) -> CTransaction | None:
    """
    Return the fully signed transaction, or None if some input isn't final yet.
    """
    tx = unsigned_tx(p)
    tx.wit.vtxinwit = []

    for m in p.i:
        stack = final_witness(m)
        scriptsig = m.map.get(core_psbt.PSBT_IN_FINAL_SCRIPTSIG)
        if stack is None and scriptsig is None:
            return None

        wit = CTxInWitness()
        wit.scriptWitness.stack = stack or []
        tx.wit.vtxinwit.append(wit)

    for txin, m in zip(tx.vin, p.i):
        if (scriptsig := m.map.get(core_psbt.PSBT_IN_FINAL_SCRIPTSIG)) is not None:
            txin.scriptSig = scriptsig

    tx.rehash()
    return tx
