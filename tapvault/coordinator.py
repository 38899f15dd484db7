"""
Two-phase withdrawal signing.

Phase A (`prepare`) derives the signature request for the protocol cosigner.
Phase B (`finalize`) re-derives everything from the supplied PSBT, pairs the
user's PSBT signature with the protocol signature, and hands off to the
WitnessFinalizer. Nothing from Phase A is cached; a PSBT is the only state
carried between the phases.
"""
import logging
import typing as t

from . import psbt as vpsbt
from .ledger import VaultLedger, VaultRecord
from .withdraw import WithdrawalSession, SignatureRequest, analyze_withdrawal
from .finalize import WitnessFinalizer, FinalizeResult
from .errors import (
    VaultAlreadyWithdrawn,
    VaultNotMinted,
    UserSignatureMissing,
    UserSignatureWrongLeaf,
)

if t.TYPE_CHECKING:
    from .oracle import SigningOracle

log = logging.getLogger(__name__)

STATUS_SIGNATURE_REQUIRED = "SIGNATURE_REQUIRED"
STATUS_FINALIZED = "FINALIZED"


def select_user_signature(session: WithdrawalSession) -> bytes:
    """
    The cosigner's signature for the analyzed leaf: the first tap script sig
    under a key other than the protocol key.
    """
    sigs = [
        s for s in vpsbt.tap_script_sigs(session.psbt.i[session.vault_input_index])
        if s.pubkey != session.protocol_pubkey
    ]
    if not sigs:
        raise UserSignatureMissing(
            "no user signature present on the vault input", vault_id=session.vault_id)

    for s in sigs:
        if s.leaf_hash == session.leaf_hash:
            return s.signature

    raise UserSignatureWrongLeaf(
        "user signature commits to a different leaf",
        vault_id=session.vault_id, leaf_hash=sigs[0].leaf_hash.hex())


class SignatureCoordinator:
    def __init__(
        self,
        ledger: VaultLedger,
        finalizer: WitnessFinalizer,
        oracle: "SigningOracle | None" = None,
    ):
        self.ledger = ledger
        self.finalizer = finalizer
        self.oracle = oracle

    def _active_record(self, vault_id: str) -> VaultRecord:
        rec = self.ledger.require(vault_id)
        if rec.is_withdrawn:
            raise VaultAlreadyWithdrawn(
                f"vault {vault_id} already withdrawn in {rec.withdraw_txid}",
                vault_id=vault_id, withdraw_txid=rec.withdraw_txid)
        if not rec.txid:
            raise VaultNotMinted(f"vault {vault_id} has no mint txid", vault_id=vault_id)
        return rec

    def prepare(self, vault_id: str, psbt_b64: str) -> SignatureRequest:
        rec = self._active_record(vault_id)
        session = analyze_withdrawal(psbt_b64, rec)
        log.info("signature request prepared for vault %s", vault_id)
        return session.signature_request()

    def finalize(
        self,
        vault_id: str,
        psbt_b64: str,
        protocol_signature: bytes | str,
        broadcast: bool = True,
    ) -> FinalizeResult:
        # Held until the withdrawal is recorded so that concurrent finalizations
        # of the same vault can't both broadcast.
        with self.ledger.locked(vault_id):
            rec = self._active_record(vault_id)
            session = analyze_withdrawal(psbt_b64, rec)
            user_sig = select_user_signature(session)
            return self.finalizer.finalize(
                session, psbt_b64, user_sig, protocol_signature, broadcast=broadcast)

    def request_protocol_signature(
        self, vault_id: str, psbt_b64: str, broadcast: bool = True
    ) -> FinalizeResult:
        """Run both phases, fetching the protocol signature from the oracle."""
        assert self.oracle, "no signing oracle configured"
        request = self.prepare(vault_id, psbt_b64)
        signature = self.oracle.sign(request)
        return self.finalize(vault_id, psbt_b64, signature, broadcast=broadcast)

    def submit(
        self,
        vault_id: str,
        psbt_b64: str,
        protocol_signature: bytes | str | None = None,
        broadcast: bool = True,
    ) -> dict:
        if not protocol_signature:
            return {
                "status": STATUS_SIGNATURE_REQUIRED,
                **self.prepare(vault_id, psbt_b64).as_payload(),
            }

        result = self.finalize(vault_id, psbt_b64, protocol_signature, broadcast)
        return {"status": STATUS_FINALIZED, **result.as_dict()}
