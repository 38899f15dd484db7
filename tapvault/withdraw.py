"""
Analysis of an externally funded withdrawal PSBT.

Given the PSBT and the vault's ledger record, locate the input spending the
vault's "redeem" leaf, check the committed leaf and control block, and derive
the BIP-341 script-path signature hash that both cosigners sign.
"""
import logging
from dataclasses import dataclass

from verystable.core import script
from verystable.core.key import TaggedHash
from verystable.core.messages import CTransaction, CTxOut, ser_string
from verystable.core.psbt import PSBT

from . import psbt as vpsbt
from .ledger import VaultRecord
from .psbt import ControlBlock, TAPROOT_LEAF_MASK
from .descriptor import TAPSCRIPT_LEAF_VERSION
from .errors import (
    VaultInputMissing,
    ProtocolLeafNotFound,
    UnsupportedLeafVersion,
    BadControlBlock,
    MalformedTransaction,
)

log = logging.getLogger(__name__)


def tap_leaf_hash(leaf_script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> bytes:
    return TaggedHash("TapLeaf", bytes([leaf_version]) + ser_string(leaf_script))


def tap_branch(a: bytes, b: bytes) -> bytes:
    if b < a:
        a, b = b, a
    return TaggedHash("TapBranch", a + b)


def compute_merkle_root(leaf_hash: bytes, path: tuple[bytes, ...] | list[bytes]) -> bytes:
    """Fold the control block path onto the leaf hash."""
    acc = leaf_hash
    for node in path:
        acc = tap_branch(acc, node)
    return acc


@dataclass(frozen=True)
class SignatureRequest:
    """What the protocol cosigner needs to produce its signature."""

    vault_id: str
    sighash: bytes
    tapleaf_hash: bytes
    control_block: bytes
    merkle_root: bytes
    leaf_script: bytes
    protocol_chain_code: bytes

    def as_payload(self) -> dict:
        return {
            "vaultId": self.vault_id,
            "sighash": self.sighash.hex(),
            "tapleafHash": self.tapleaf_hash.hex(),
            "controlBlock": self.control_block.hex(),
            "merkleRoot": self.merkle_root.hex(),
            "leafScript": self.leaf_script.hex(),
            "protocolChainCode": self.protocol_chain_code.hex(),
        }


@dataclass
class WithdrawalSession:
    """Everything derived from one withdrawal PSBT. Request scoped."""

    vault_id: str
    protocol_pubkey: bytes
    protocol_chain_code: bytes
    psbt: PSBT
    tx: CTransaction
    spent_outputs: list[CTxOut]
    vault_input_index: int
    leaf_script: bytes
    leaf_version: int
    control_block: ControlBlock
    leaf_hash: bytes
    merkle_root: bytes
    sighash: bytes
    hash_type: int

    @property
    def vault_prevout(self) -> CTxOut:
        return self.spent_outputs[self.vault_input_index]

    @property
    def control_block_bytes(self) -> bytes:
        return self.control_block.serialize()

    def signature_request(self) -> SignatureRequest:
        return SignatureRequest(
            vault_id=self.vault_id,
            sighash=self.sighash,
            tapleaf_hash=self.leaf_hash,
            control_block=self.control_block_bytes,
            merkle_root=self.merkle_root,
            leaf_script=self.leaf_script,
            protocol_chain_code=self.protocol_chain_code,
        )


def _find_vault_input(p: PSBT) -> int:
    candidates = [
        i for i, m in enumerate(p.i) if vpsbt.leaf_script_entries(m)]

    if not candidates:
        raise VaultInputMissing("no input carries a tap leaf script")
    if len(candidates) > 1:
        raise VaultInputMissing(
            "more than one input spends a script path",
            reason="multiple_script_path_inputs", inputs=candidates)
    return candidates[0]


def _find_protocol_leaf(
        entries: list[vpsbt.LeafScriptEntry], protocol_pubkey: bytes
) -> vpsbt.LeafScriptEntry:
    # Match on hex so the comparison is independent of how the key is pushed.
    needle = protocol_pubkey.hex()
    for entry in entries:
        if needle in entry.script.hex():
            return entry
    raise ProtocolLeafNotFound(
        "no leaf script contains the protocol key",
        protocol_pubkey=needle)


def analyze_withdrawal(psbt_b64: str, record: VaultRecord) -> WithdrawalSession:
    """
    Parse a withdrawal PSBT and derive the signing session for `record`'s vault.
    """
    p = vpsbt.parse_psbt(psbt_b64)
    tx = vpsbt.unsigned_tx(p)
    protocol_pubkey = bytes.fromhex(record.protocol_pubkey)

    idx = _find_vault_input(p)
    entry = _find_protocol_leaf(vpsbt.leaf_script_entries(p.i[idx]), protocol_pubkey)

    if entry.leaf_version != TAPSCRIPT_LEAF_VERSION:
        raise UnsupportedLeafVersion(
            f"leaf version {entry.leaf_version:#x} is not tapscript",
            leaf_version=entry.leaf_version)

    cb = ControlBlock.parse(entry.control_block_bytes)
    if cb.version & TAPROOT_LEAF_MASK != TAPSCRIPT_LEAF_VERSION:
        raise BadControlBlock(
            f"control block version {cb.version:#x} is not tapscript")

    leaf_hash = tap_leaf_hash(entry.script, entry.leaf_version)
    merkle_root = compute_merkle_root(leaf_hash, cb.path)

    spent_outputs = [
        vpsbt.resolve_prevout(tx, m, i) for i, m in enumerate(p.i)]

    hash_type = vpsbt.sighash_type(p.i[idx])
    try:
        sighash = script.TaprootSignatureHash(
            tx,
            spent_outputs,
            hash_type,
            input_index=idx,
            scriptpath=True,
            leaf_script=entry.script,
            leaf_ver=entry.leaf_version,
        )
    except (AssertionError, IndexError) as e:
        raise MalformedTransaction(f"unable to compute signature hash: {e!r}")

    log.info(
        "analyzed withdrawal for vault %s (input=%d, leaf=%s, merkle_root=%s)",
        record.vault_id, idx, leaf_hash.hex(), merkle_root.hex())

    return WithdrawalSession(
        vault_id=record.vault_id,
        protocol_pubkey=protocol_pubkey,
        protocol_chain_code=bytes.fromhex(record.protocol_chain_code),
        psbt=p,
        tx=tx,
        spent_outputs=spent_outputs,
        vault_input_index=idx,
        leaf_script=entry.script,
        leaf_version=entry.leaf_version,
        control_block=cb,
        leaf_hash=leaf_hash,
        merkle_root=merkle_root,
        sighash=sighash,
        hash_type=hash_type,
    )
