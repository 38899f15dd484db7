"""
Mint path: register a new vault with the node and build the funded PSBT that
locks collateral into it.

The mint transaction's outputs are, in order:

    0: OP_RETURN OP_13 <mint marker>
    1: ordinals address
    2: fee recipient
    3: vault
    4: change (payment address)
"""
import re
import logging
from dataclasses import dataclass, field

from verystable.core import script
from verystable.core.script import CScript
from verystable.core.descriptors import descsum_create
from verystable.core.psbt import PSBT_GLOBAL_UNSIGNED_TX, PSBTMap
from verystable.rpc import JSONRPCError

from . import psbt as vpsbt
from .config import VaultConfig, MintAmounts, satoshis_to_btc
from .descriptor import VaultDescriptor, build_vault_descriptor, scriptpubkey_for_address
from .ledger import VaultLedger, VaultRecord, VaultMetadata
from .node import NodeClient, sanitize_wallet_name, RPC_WALLET_ERROR
from .errors import (
    DescriptorMismatch,
    MalformedTransaction,
    VaultNotFound,
)

log = logging.getLogger(__name__)

CHANGE_POSITION = 4

_TXID = re.compile(r"^[0-9a-f]{64}$")


def marker_script(data_hex: str) -> CScript:
    """A `OP_RETURN OP_13 <data>` output script."""
    return CScript([script.OP_RETURN, script.OP_13, bytes.fromhex(data_hex)])


def vault_wallet_name(vault_id: str) -> str:
    return f"vault-{vault_id}"


def ordinals_wallet_name(ordinals_address: str) -> str:
    return f"ord-{sanitize_wallet_name(ordinals_address)}"


@dataclass
class MintRequest:
    payment_address: str
    payment_pubkey: str
    ordinals_address: str
    protocol_pubkey: str
    protocol_chain_code: str
    fee_rate: float
    rune: str = "UNKNOWN"
    amounts: MintAmounts | None = None
    mint_tokens: int = 0
    mint_usd_cents: int = 0
    vault_id: str | None = None


@dataclass
class MintPsbtResult:
    wallet: str
    vault_address: str
    descriptor: str
    original_psbt: str
    psbt: str
    raw_transaction_hex: str
    inputs: list[dict] = field(default_factory=list)
    change_output: dict | None = None
    vault_descriptor: VaultDescriptor | None = None
    amounts: MintAmounts = field(default_factory=MintAmounts)


def import_descriptor(node: NodeClient, wallet: str, descriptor: str, label: str) -> None:
    [res] = node.importdescriptors(wallet, [{
        "desc": descriptor,
        "timestamp": "now",
        "active": False,
        "label": label,
    }])
    if not res.get("success"):
        raise DescriptorMismatch(
            f"node refused descriptor for wallet {wallet}: {res.get('error')}",
            descriptor=descriptor)
    log.info("imported %s descriptor into wallet %s", label, wallet)


def _fund(
    config: VaultConfig, node: NodeClient, wallet: str, outputs: list[dict],
    payment_address: str, fee_rate: float,
) -> dict:
    options = {
        "changeAddress": payment_address,
        "changePosition": CHANGE_POSITION,
        "add_inputs": True,
        "includeWatching": True,
        "fee_rate": fee_rate,
    }
    try:
        return node.walletcreatefundedpsbt(wallet, [], outputs, 0, options)
    except JSONRPCError as e:
        if e.code != RPC_WALLET_ERROR or not node.is_rescanning(wallet):
            raise

    log.warning("wallet %s is rescanning; waiting before funding", wallet)
    node.wait_for_rescan(
        wallet, config.rescan_timeout_secs, config.rescan_poll_secs)
    return node.walletcreatefundedpsbt(wallet, [], outputs, 0, options)


def build_mint_psbt(
    config: VaultConfig, node: NodeClient, request: MintRequest
) -> MintPsbtResult:
    desc = build_vault_descriptor(
        config, request.protocol_pubkey, request.payment_pubkey, node=node)

    wallet = node.ensure_wallet(sanitize_wallet_name(request.payment_address))
    import_descriptor(node, wallet, desc.descriptor, "vault")

    amounts = request.amounts or config.mint_amounts
    marker = config.mint_marker_hex.lower()
    outputs = [
        {"data": marker},
        {request.ordinals_address: satoshis_to_btc(amounts.ordinals_sats)},
        {config.fee_recipient_address: satoshis_to_btc(amounts.fee_recipient_sats)},
        {desc.address: satoshis_to_btc(amounts.vault_sats)},
    ]
    log.info(
        "funding mint for %s (vault=%s, fee_rate=%s)",
        request.payment_address, desc.address, request.fee_rate)
    funded = _fund(
        config, node, wallet, outputs, request.payment_address, request.fee_rate)
    log.info(
        "funded mint psbt (fee=%s, change=%s)",
        funded.get("fee"), funded.get("changepos"))

    p = vpsbt.parse_psbt(funded["psbt"])
    tx = vpsbt.unsigned_tx(p)

    # The node writes data outputs as a bare OP_RETURN push; replace it with the
    # structured marker.
    plain = CScript([script.OP_RETURN, bytes.fromhex(marker)])
    try:
        marker_idx = next(
            i for i, out in enumerate(tx.vout) if bytes(out.scriptPubKey) == bytes(plain))
    except StopIteration:
        raise MalformedTransaction("funded mint transaction has no marker output")
    tx.vout[marker_idx].scriptPubKey = marker_script(marker)
    p.g.map[PSBT_GLOBAL_UNSIGNED_TX] = tx.serialize_without_witness()
    p.o[marker_idx] = PSBTMap()

    updated = node.utxoupdatepsbt(p.to_base64())

    change_spk = bytes(scriptpubkey_for_address(request.payment_address))
    change = next(
        (out for out in tx.vout if bytes(out.scriptPubKey) == change_spk), None)

    return MintPsbtResult(
        wallet=wallet,
        vault_address=desc.address,
        descriptor=desc.descriptor,
        original_psbt=funded["psbt"],
        psbt=updated,
        raw_transaction_hex=tx.serialize_without_witness().hex(),
        inputs=[
            {"txid": f"{i.prevout.hash:064x}", "vout": i.prevout.n} for i in tx.vin],
        change_output=(
            {"address": request.payment_address,
             "amount_btc": f"{satoshis_to_btc(change.nValue):.8f}"}
            if change else None),
        vault_descriptor=desc,
        amounts=amounts,
    )


def record_mint(
    ledger: VaultLedger,
    request: MintRequest,
    result: MintPsbtResult,
    config: VaultConfig,
    node: NodeClient | None = None,
) -> VaultRecord:
    """Persist the vault built by `build_mint_psbt`."""
    desc = result.vault_descriptor
    assert desc, "mint result carries no descriptor"

    rec = ledger.create(VaultRecord(
        vault_id=request.vault_id or ledger.new_vault_id(),
        protocol_pubkey=desc.protocol_pubkey.hex(),
        protocol_chain_code=request.protocol_chain_code,
        vault_address=result.vault_address,
        descriptor=result.descriptor,
        user_pubkey=desc.user_pubkey.hex(),
        metadata=VaultMetadata(
            rune=request.rune,
            fee_rate=request.fee_rate,
            ordinals_address=request.ordinals_address,
            payment_address=request.payment_address,
            mint_tokens=request.mint_tokens,
            mint_usd_cents=request.mint_usd_cents,
        ),
        collateral_sats=result.amounts.vault_sats,
        min_confirmations=config.min_confirmations,
    ))

    if node is not None:
        # Watch-only wallets used later to annotate the redemption PSBT.
        vault_wallet = node.ensure_wallet(vault_wallet_name(rec.vault_id))
        import_descriptor(node, vault_wallet, rec.descriptor, "vault")
        ord_wallet = node.ensure_wallet(ordinals_wallet_name(request.ordinals_address))
        import_descriptor(
            node, ord_wallet, descsum_create(f"addr({request.ordinals_address})"),
            "ordinals")

    return rec


def confirm_mint(ledger: VaultLedger, vault_id: str, txid: str) -> VaultRecord:
    """Record the broadcast mint transaction."""
    txid = txid.strip().lower()
    if not _TXID.match(txid):
        raise MalformedTransaction(f"not a txid: {txid!r}")
    if not (rec := ledger.set_txid(ledger.require(vault_id).vault_id, txid)):
        raise VaultNotFound(f"no vault with id {vault_id}", vault_id=vault_id)
    return rec
