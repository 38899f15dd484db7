"""
Turning two Schnorr signatures into a broadcastable withdrawal.

The witness for the redeem leaf `<P> CHECKSIG <U> CHECKSIGADD 2 NUMEQUAL` is

    [user_sig, protocol_sig, leaf_script, control_block]

since the protocol key is checked first, against the top stack item.
"""
import logging
import typing as t
from dataclasses import dataclass

from verystable.core import script
from verystable.core.key import TaggedHash, verify_schnorr, tweak_add_pubkey
from verystable.core.script import CScript, SIGHASH_DEFAULT
from verystable.rpc import JSONRPCError
from verystable.script import CTransaction, cscript_bytes_to_int

from . import psbt as vpsbt
from .withdraw import WithdrawalSession
from .errors import (
    InvalidSignatureEncoding,
    SignatureHashTypeMismatch,
    VaultAlreadyWithdrawn,
    WitnessVerificationFailed,
    WithdrawFinalizeIncomplete,
)
from .node import RPC_VERIFY_ALREADY_IN_CHAIN

if t.TYPE_CHECKING:
    from .ledger import VaultLedger
    from .node import NodeClient

log = logging.getLogger(__name__)


def normalize_signature(
    sig: bytes | str, hash_type: int = SIGHASH_DEFAULT, label: str = "signature"
) -> bytes:
    """
    Bring a BIP-340 signature into the encoding its hash type requires.

    With the default hash type a signature is 64 bytes; a 65-byte form with a
    0x00 trailer is accepted and trimmed. Any other hash type requires 65 bytes
    with the hash type as trailer.
    """
    if isinstance(sig, str):
        try:
            sig = bytes.fromhex(sig.strip())
        except ValueError:
            raise InvalidSignatureEncoding(f"{label} is not valid hex", label=label)

    if len(sig) not in (64, 65):
        raise InvalidSignatureEncoding(
            f"{label} must be 64 or 65 bytes (got {len(sig)})", label=label)

    if hash_type == SIGHASH_DEFAULT:
        if len(sig) == 64:
            return bytes(sig)
        if sig[64] == 0x00:
            return bytes(sig[:64])
        raise SignatureHashTypeMismatch(
            f"{label} carries hash type {sig[64]:#x}, expected default",
            label=label)

    if len(sig) == 65 and sig[64] == hash_type:
        return bytes(sig)
    raise SignatureHashTypeMismatch(
        f"{label} does not commit to hash type {hash_type:#x}", label=label)


def build_witness(
    user_sig: bytes, protocol_sig: bytes, leaf_script: bytes, control_block: bytes,
) -> list[bytes]:
    return [user_sig, protocol_sig, bytes(leaf_script), control_block]


def _check_commitment(session: WithdrawalSession) -> None:
    spk = bytes(session.vault_prevout.scriptPubKey)
    if len(spk) != 34 or spk[0] != script.OP_1 or spk[1] != 32:
        raise WitnessVerificationFailed("spent output is not pay-to-taproot")

    cb = session.control_block
    tweak = TaggedHash("TapTweak", cb.internal_pubkey + session.merkle_root)
    if not (tweaked := tweak_add_pubkey(cb.internal_pubkey, tweak)):
        raise WitnessVerificationFailed("control block internal key is invalid")

    output_key, negated = tweaked
    if output_key != spk[2:] or int(negated) != cb.output_key_parity:
        raise WitnessVerificationFailed(
            "control block does not commit to the spent output key")


def _check_sig(session: WithdrawalSession, pubkey: bytes, sig: bytes) -> bool:
    """BIP-342 signature check: empty means false, anything invalid fails the script."""
    if not sig:
        return False
    if len(sig) == 65:
        if sig[64] == SIGHASH_DEFAULT or sig[64] != session.hash_type:
            raise WitnessVerificationFailed("signature hash type trailer is invalid")
        sig = sig[:64]
    elif len(sig) != 64 or session.hash_type != SIGHASH_DEFAULT:
        raise WitnessVerificationFailed("signature has an invalid encoding")

    if len(pubkey) != 32:
        raise WitnessVerificationFailed("leaf script pushes a non x-only key")
    if not verify_schnorr(pubkey, sig, session.sighash):
        raise WitnessVerificationFailed(
            f"signature does not verify for key {pubkey.hex()}", pubkey=pubkey.hex())
    return True


def _as_num(item: bytes | int) -> int:
    return item if isinstance(item, int) else cscript_bytes_to_int(item)


def verify_script_path(session: WithdrawalSession, witness: list[bytes]) -> None:
    """
    Check the finished witness against the spent output: the control block must
    commit to the output key and the leaf script must succeed.

    Only the opcodes used by `multi_a` leaves are evaluated.
    """
    if len(witness) < 2:
        raise WitnessVerificationFailed("witness lacks leaf script and control block")

    *args, leaf_script, control_block = witness
    if bytes(leaf_script) != bytes(session.leaf_script) or \
            control_block != session.control_block_bytes:
        raise WitnessVerificationFailed("witness doesn't spend the analyzed leaf")

    _check_commitment(session)

    stack: list[bytes | int] = list(args)

    def pop() -> bytes | int:
        if not stack:
            raise WitnessVerificationFailed("script stack underflow")
        return stack.pop()

    for op in CScript(session.leaf_script):
        if isinstance(op, (bytes, int)) and not isinstance(op, script.CScriptOp):
            stack.append(op)
        elif op == script.OP_CHECKSIG:
            pubkey, sig = pop(), pop()
            stack.append(int(_check_sig(session, bytes(pubkey), bytes(sig))))
        elif op == script.OP_CHECKSIGADD:
            pubkey, n, sig = pop(), pop(), pop()
            stack.append(
                _as_num(n) + int(_check_sig(session, bytes(pubkey), bytes(sig))))
        elif op == script.OP_NUMEQUAL:
            b, a = pop(), pop()
            stack.append(int(_as_num(a) == _as_num(b)))
        else:
            raise WitnessVerificationFailed(f"unsupported opcode in leaf: {op!r}")

    if len(stack) != 1 or not _as_num(stack[0]):
        raise WitnessVerificationFailed("leaf script did not succeed")


@dataclass
class FinalizeResult:
    vault_id: str
    psbt: str
    hex: str
    txid: str | None = None

    def as_dict(self) -> dict:
        return {
            "vaultId": self.vault_id,
            "psbt": self.psbt,
            "hex": self.hex,
            "txid": self.txid,
        }


class WitnessFinalizer:
    """
    Assembles and checks the vault input's witness, completes the transaction, and
    optionally broadcasts it.
    """

    def __init__(self, ledger: "VaultLedger", node: "NodeClient | None" = None):
        self.ledger = ledger
        self.node = node

    def finalize(
        self,
        session: WithdrawalSession,
        original_psbt: str,
        user_signature: bytes | str,
        protocol_signature: bytes | str,
        broadcast: bool = True,
    ) -> FinalizeResult:
        with self.ledger.locked(session.vault_id):
            self._check_not_withdrawn(session.vault_id)
            return self._finalize(
                session, original_psbt, user_signature, protocol_signature, broadcast)

    def _check_not_withdrawn(self, vault_id: str, txid: str | None = None) -> None:
        rec = self.ledger.require(vault_id)
        if rec.is_withdrawn and rec.withdraw_txid != txid:
            raise VaultAlreadyWithdrawn(
                f"vault {vault_id} already withdrawn in {rec.withdraw_txid}",
                vault_id=vault_id, withdraw_txid=rec.withdraw_txid)

    def _finalize(
        self,
        session: WithdrawalSession,
        original_psbt: str,
        user_signature: bytes | str,
        protocol_signature: bytes | str,
        broadcast: bool,
    ) -> FinalizeResult:
        user_sig = normalize_signature(
            user_signature, session.hash_type, "user_signature")
        protocol_sig = normalize_signature(
            protocol_signature, session.hash_type, "protocol_signature")

        witness = build_witness(
            user_sig, protocol_sig, session.leaf_script, session.control_block_bytes)
        verify_script_path(session, witness)

        p = session.psbt
        vpsbt.set_final_witness(p.i[session.vault_input_index], witness)
        if keypath := vpsbt.finalize_keypath_inputs(p):
            log.info("finalized key-path inputs %s", keypath)

        psbt_b64 = p.to_base64()
        if (tx := vpsbt.extract_transaction(p)) is not None:
            raw_hex = tx.serialize().hex()
            txid = tx.rehash()
        else:
            psbt_b64, raw_hex = self._finalize_with_node(
                session.vault_id, original_psbt, psbt_b64)
            txid = CTransaction.fromhex(raw_hex).rehash()

        log.info(
            "withdrawal for vault %s finalized (txid=%s, inputs=%d)",
            session.vault_id, txid, len(session.tx.vin))

        result = FinalizeResult(session.vault_id, psbt_b64, raw_hex)
        if broadcast:
            result.txid = self.broadcast(session.vault_id, raw_hex, txid)
        return result

    def _finalize_with_node(
        self, vault_id: str, original_psbt: str, patched_psbt: str
    ) -> tuple[str, str]:
        if self.node is None:
            raise WithdrawFinalizeIncomplete(
                "inputs other than the vault input remain unsigned", vault_id=vault_id)

        original = "".join(original_psbt.split())
        combined = self.node.combinepsbt([original, patched_psbt])
        res = self.node.finalizepsbt(combined)

        if not res.get("complete") or not res.get("hex"):
            report = self.node.analyzepsbt(combined)
            log.error("finalize incomplete for vault %s: %s", vault_id, report)
            raise WithdrawFinalizeIncomplete(
                "node could not finalize the withdrawal", vault_id=vault_id)

        return res.get("psbt") or combined, res["hex"]

    def broadcast(self, vault_id: str, raw_hex: str, txid: str) -> str:
        assert self.node, "broadcasting requires a node"

        with self.ledger.locked(vault_id):
            # A rebroadcast of the recorded withdrawal is allowed, anything else isn't.
            self._check_not_withdrawn(vault_id, txid)

            if self.node.find_transaction(txid) is not None:
                log.warning(
                    "withdrawal %s for vault %s already known to node; not resending",
                    txid, vault_id)
            else:
                try:
                    sent = self.node.sendrawtransaction(raw_hex)
                except JSONRPCError as e:
                    # Already in blockchain.
                    if e.code != RPC_VERIFY_ALREADY_IN_CHAIN:
                        raise
                else:
                    assert sent == txid, f"node reports txid {sent}, expected {txid}"
                    log.info("broadcast withdrawal %s for vault %s", txid, vault_id)

            self.ledger.mark_withdrawn(vault_id, txid)
        return txid
