"""
Builds the unsigned redemption PSBT that unwinds a vault: it spends the mint's
ordinals and vault outputs to a burn marker and a payment back to the user.
"""
import logging
from dataclasses import dataclass, field

from verystable.core import psbt as core_psbt
from verystable.core.messages import COutPoint, CTxIn, CTxOut
from verystable.core.psbt import PSBT, PSBTMap
from verystable.script import CTransaction

from .config import VaultConfig
from .descriptor import (
    REDEEM_LEAF,
    RECOVER_LEAF,
    build_vault_descriptor,
    scriptpubkey_for_address,
)
from .ledger import VaultLedger, VaultRecord
from .mint import marker_script, vault_wallet_name, ordinals_wallet_name
from .node import NodeClient, btc_to_sats
from .errors import (
    VaultAlreadyWithdrawn,
    VaultNotMinted,
    RedemptionOutputsNotFound,
)

log = logging.getLogger(__name__)

MAX_BIP125_RBF_SEQUENCE = 0xfffffffd


@dataclass
class RedemptionPsbt:
    vault_id: str
    psbt: str
    burn_metadata: str
    ordinals_address: str
    payment_address: str
    vault_address: str
    inputs: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "vaultId": self.vault_id,
            "psbt": self.psbt,
            "burnMetadata": self.burn_metadata,
            "inputs": self.inputs,
            "ordinalsAddress": self.ordinals_address,
            "paymentAddress": self.payment_address,
            "vaultAddress": self.vault_address,
        }


def _output_address(vout: dict) -> list[str]:
    spk = vout.get("scriptPubKey", {})
    return ([spk["address"]] if "address" in spk else []) + spk.get("addresses", [])


def _find_output(tx_info: dict, address: str) -> dict | None:
    return next(
        (v for v in tx_info.get("vout", []) if address in _output_address(v)), None)


def _annotate_vault_input(
    config: VaultConfig, record: VaultRecord, m: PSBTMap
) -> None:
    """Attach the vault's tap tree to its input, if the stored keys rebuild it."""
    if not record.user_pubkey:
        return
    desc = build_vault_descriptor(config, record.protocol_pubkey, record.user_pubkey)
    if desc.address != record.vault_address:
        log.warning(
            "vault %s keys rebuild %s, not %s; leaving input unannotated",
            record.vault_id, desc.address, record.vault_address)
        return

    for name in (REDEEM_LEAF, RECOVER_LEAF):
        leaf = desc.taproot_info.leaves[name]
        key = bytes([core_psbt.PSBT_IN_TAP_LEAF_SCRIPT]) + desc.controlblock(name)
        m.map[key] = bytes(leaf.script) + bytes([leaf.version])
    m.map[core_psbt.PSBT_IN_TAP_INTERNAL_KEY] = desc.internal_pubkey
    m.map[core_psbt.PSBT_IN_TAP_MERKLE_ROOT] = desc.merkle_root


def prepare_redemption(
    config: VaultConfig,
    ledger: VaultLedger,
    node: NodeClient,
    vault_id: str,
    burn_metadata: str | None = None,
) -> RedemptionPsbt:
    rec = ledger.require(vault_id)
    if rec.is_withdrawn:
        raise VaultAlreadyWithdrawn(
            f"vault {vault_id} already withdrawn in {rec.withdraw_txid}",
            vault_id=vault_id)
    if not rec.txid:
        raise VaultNotMinted(f"vault {vault_id} has no mint txid", vault_id=vault_id)

    burn = (burn_metadata or config.redeem_burn_hex).lower()
    tx_info = node.getrawtransaction(rec.txid, True)
    ord_out = _find_output(tx_info, rec.metadata.ordinals_address)
    vault_out = _find_output(tx_info, rec.vault_address)
    if not ord_out or not vault_out:
        raise RedemptionOutputsNotFound(
            f"mint {rec.txid} lacks ordinals or vault output", vault_id=vault_id)

    spent = [ord_out, vault_out]
    tx = CTransaction()
    tx.version = 2
    tx.vin = [
        CTxIn(COutPoint(int(rec.txid, 16), out["n"]), nSequence=MAX_BIP125_RBF_SEQUENCE)
        for out in spent]
    tx.vout = [
        CTxOut(0, marker_script(burn)),
        CTxOut(
            config.redeem_payment_sats,
            scriptpubkey_for_address(rec.metadata.payment_address)),
    ]

    p = PSBT(
        g=PSBTMap({core_psbt.PSBT_GLOBAL_UNSIGNED_TX: tx.serialize_without_witness()}),
        i=[PSBTMap() for _ in tx.vin],
        o=[PSBTMap() for _ in tx.vout],
    )
    for m, out in zip(p.i, spent):
        prevout = CTxOut(
            btc_to_sats(out["value"]), bytes.fromhex(out["scriptPubKey"]["hex"]))
        m.map[core_psbt.PSBT_IN_WITNESS_UTXO] = prevout.serialize()
    _annotate_vault_input(config, rec, p.i[1])

    psbt_b64 = node.utxoupdatepsbt(p.to_base64())
    for wallet in (
            ordinals_wallet_name(rec.metadata.ordinals_address),
            vault_wallet_name(rec.vault_id)):
        psbt_b64 = node.walletprocesspsbt(wallet, psbt_b64, False)["psbt"]
        log.info("processed redemption psbt for vault %s with %s", vault_id, wallet)

    return RedemptionPsbt(
        vault_id=rec.vault_id,
        psbt=psbt_b64,
        burn_metadata=burn,
        ordinals_address=rec.metadata.ordinals_address,
        payment_address=rec.metadata.payment_address,
        vault_address=rec.vault_address,
        inputs=[
            {"txid": rec.txid, "vout": out["n"], "value": btc_to_sats(out["value"])}
            for out in spent],
    )
