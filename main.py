#!/usr/bin/env python3
import os
import sys
import signal
import typing as t
from dataclasses import dataclass
from pathlib import Path

from clii import App
from rich import print, print_json

from tapvault.config import VaultConfig
from tapvault.coordinator import SignatureCoordinator
from tapvault.errors import VaultError
from tapvault.finalize import WitnessFinalizer
from tapvault.health import CollateralHealthMonitor
from tapvault.ledger import VaultLedger, VaultRecord, HEALTH_AT_RISK
from tapvault import mint as vmint
from tapvault.mint import MintRequest, build_mint_psbt, record_mint
from tapvault.node import NodeClient
from tapvault.oracle import HttpSigningOracle
from tapvault.price import PriceFeed, StaticPrice
from tapvault.redeem import prepare_redemption

import logging

loglevel = "DEBUG" if os.environ.get("DEBUG") else "INFO"
log = logging.getLogger("tapvault")
logging.basicConfig(filename="tapvault.log", level=loglevel)

cli = App(description="Operate Taproot collateral vaults.")

CONFIG_PATH = Path("./config.json")


@dataclass
class Services:
    config: VaultConfig
    ledger: VaultLedger
    node: NodeClient
    prices: PriceFeed
    health: CollateralHealthMonitor
    coordinator: SignatureCoordinator


def load(cfg_file: Path | str = CONFIG_PATH) -> Services:
    """
    Load configuration from the filesystem and wire up the service objects.
    """
    if not isinstance(cfg_file, Path):
        cfg_file = Path(cfg_file)
    if not cfg_file.exists():
        print("call ./createconfig.py")
        sys.exit(1)

    config = VaultConfig.load(cfg_file)
    ledger = VaultLedger(config.ledger_path, config.min_confirmations)
    node = NodeClient(config.bitcoin_rpc_url, net_name=config.rpc_network)
    prices = PriceFeed(
        config.price_feed_url,
        config.fallback_btc_price_usd,
        ttl_secs=config.price_cache_ttl_secs)

    return Services(
        config=config,
        ledger=ledger,
        node=node,
        prices=prices,
        health=CollateralHealthMonitor(config, ledger, node, prices),
        coordinator=SignatureCoordinator(
            ledger,
            WitnessFinalizer(ledger, node),
            HttpSigningOracle(config.signing_oracle_url)),
    )


def _read_psbt(psbt: str) -> str:
    """Accept either a base64 PSBT or a path to a file containing one."""
    if len(psbt) < 256 and (p := Path(psbt)).is_file():
        return p.read_text().strip()
    return psbt


def _dump(obj: t.Any) -> None:
    print_json(data=obj, default=str)


def print_vault(rec: VaultRecord) -> None:
    color = {
        "confirmed": "green", HEALTH_AT_RISK: "red", "withdrawn": "blue",
    }.get(rec.health, "yellow")
    ratio = f"{rec.collateral_ratio_bps / 100:.2f}%" if rec.collateral_ratio_bps else "-"
    print(f"  - [bold]{rec.vault_id}[/] [{color}]{rec.health}[/] {rec.vault_address}")
    print(
        f"    {rec.collateral_sats} sats, ratio {ratio}, "
        f"{rec.confirmations}/{rec.min_confirmations} confs")
    if rec.withdraw_txid:
        print(f"    withdrawn in {rec.withdraw_txid}")


def _sigint_handler(*args, **kwargs):
    sys.exit(0)


@cli.main
@cli.cmd
def monitor(interval: float = 30.0):
    """
    Watch vault health, reporting status changes. Leave this running!
    """
    svc = load()

    def print_activity(*lines) -> None:
        oth = "\n     ".join(str(i) for i in lines[1:])
        print(f" {lines[0]}\n    {oth}\n")

    print(" [bold]Vaults[/]\n")
    for rec in svc.health.refresh_all():
        print_vault(rec)
    print()

    def on_change(before: VaultRecord, after: VaultRecord) -> None:
        if after.health == HEALTH_AT_RISK:
            print_activity(
                "[red bold]!![/] vault is under-collateralized",
                f"vault {after.vault_id} ratio {after.collateral_ratio_bps} bps")
        else:
            print_activity(
                f"[cyan bold]=>[/] vault {after.vault_id}",
                f"{before.health} -> {after.health}")

    signal.signal(signal.SIGINT, _sigint_handler)
    svc.health.watch(interval, on_change=on_change)


@cli.cmd
def vaults(payment: str = ''):
    """List vaults, optionally only those minted by one payment address."""
    svc = load()
    recs = (
        svc.health.refresh_for_payment(payment) if payment
        else svc.health.refresh_all())
    if not recs:
        print("no vaults")
    for rec in recs:
        print_vault(rec)


@cli.cmd
def preview(sats: int, usd_cents: int, price: float = 0.0):
    """Show the collateral ratio a mint would have."""
    svc = load()
    if price:
        svc.health.prices = StaticPrice(price)
    _dump(svc.health.preview(sats, usd_cents).as_dict())


@cli.cmd
def mint(
    payment_address: str,
    payment_pubkey: str,
    ordinals_address: str,
    protocol_pubkey: str,
    protocol_chain_code: str,
    fee_rate: float = 2.0,
    rune: str = 'UNKNOWN',
    mint_tokens: int = 0,
    mint_usd_cents: int = 0,
):
    """Build the funded mint PSBT and record the new vault."""
    svc = load()
    req = MintRequest(
        payment_address=payment_address,
        payment_pubkey=payment_pubkey,
        ordinals_address=ordinals_address,
        protocol_pubkey=protocol_pubkey,
        protocol_chain_code=protocol_chain_code,
        fee_rate=fee_rate,
        rune=rune,
        mint_tokens=mint_tokens,
        mint_usd_cents=mint_usd_cents,
    )
    result = build_mint_psbt(svc.config, svc.node, req)
    rec = record_mint(svc.ledger, req, result, svc.config, node=svc.node)

    print(f"[green bold] $$[/] vault {rec.vault_id} at {rec.vault_address}")
    print(f"    descriptor: {rec.descriptor}")
    print(f"    sign and broadcast, then run `confirm-mint {rec.vault_id} <txid>`\n")
    print(result.psbt)


@cli.cmd
def confirm_mint(vault_id: str, txid: str):
    """Record the txid of a broadcast mint transaction."""
    svc = load()
    rec = vmint.confirm_mint(svc.ledger, vault_id, txid)
    print_vault(svc.health.refresh(rec))


@cli.cmd
def redeem(vault_id: str, burn_metadata: str = ''):
    """Build the unsigned redemption PSBT for a vault."""
    svc = load()
    _dump(prepare_redemption(
        svc.config, svc.ledger, svc.node, vault_id, burn_metadata or None).as_dict())


@cli.cmd
def finalize(
    vault_id: str, psbt: str, protocol_signature: str = '', no_broadcast: bool = False
):
    """
    Without a protocol signature, print the signature request; with one, finalize
    (and by default broadcast) the withdrawal.
    """
    svc = load()
    _dump(svc.coordinator.submit(
        vault_id, _read_psbt(psbt), protocol_signature or None,
        broadcast=not no_broadcast))


@cli.cmd
def cosign(vault_id: str, psbt: str, no_broadcast: bool = False):
    """Get the protocol signature from the signing oracle and finalize."""
    svc = load()
    result = svc.coordinator.request_protocol_signature(
        vault_id, _read_psbt(psbt), broadcast=not no_broadcast)
    if result.txid:
        print(f"[bold]<-[/] broadcast withdrawal {result.txid}")
    _dump(result.as_dict())


if __name__ == "__main__":
    try:
        cli.run()
    except VaultError as e:
        log.exception("command failed")
        print(f"[red bold]!![/] {e.code}: {e}")
        sys.exit(1)
