"""
Collateral health: confirmations of the mint transaction, BTC price, and the
resulting collateral ratio of each vault.
"""
import math
import time
import logging
import typing as t
from dataclasses import dataclass

from verystable.rpc import JSONRPCError

from .config import VaultConfig, SATS_PER_BTC
from .errors import NodeUnavailable
from .ledger import (
    VaultLedger,
    VaultRecord,
    HEALTH_PENDING,
    HEALTH_CONFIRMED,
    HEALTH_AT_RISK,
    HEALTH_WITHDRAWN,
    now_ms,
)

if t.TYPE_CHECKING:
    from .node import NodeClient
    from .price import PriceFeed

log = logging.getLogger(__name__)


def collateral_ratio_bps(
    collateral_sats: int, mint_usd_cents: int, btc_price_usd: float
) -> int | None:
    """Collateral value over minted value, in basis points."""
    minted_usd = mint_usd_cents / 100
    if minted_usd <= 0:
        return None
    collateral_usd = collateral_sats / SATS_PER_BTC * btc_price_usd
    ratio = collateral_usd / minted_usd * 10_000
    # Halves round up, not to even.
    whole = math.floor(ratio)
    return whole + 1 if ratio - whole >= 0.5 else whole


def determine_health(
    ratio_bps: int | None, withdrawable: bool, at_risk_ratio_bps: int,
    withdrawn: bool = False,
) -> str:
    if withdrawn:
        return HEALTH_WITHDRAWN
    if ratio_bps is not None and ratio_bps < at_risk_ratio_bps:
        return HEALTH_AT_RISK
    if withdrawable:
        return HEALTH_CONFIRMED
    return HEALTH_PENDING


@dataclass(frozen=True)
class CollateralPreview:
    price: float
    sats: int
    ratio_bps: int | None
    usd_cents: int
    using_fallback_price: bool

    def as_dict(self) -> dict:
        return {
            "price": self.price,
            "sats": self.sats,
            "ratioBps": self.ratio_bps,
            "usdCents": self.usd_cents,
            "usingFallbackPrice": self.using_fallback_price,
        }


class CollateralHealthMonitor:
    def __init__(
        self,
        config: VaultConfig,
        ledger: VaultLedger,
        node: "NodeClient",
        prices: "PriceFeed",
    ):
        self.config = config
        self.ledger = ledger
        self.node = node
        self.prices = prices

    def confirmations(self, txid: str) -> int:
        try:
            info = self.node.getrawtransaction(txid, True)
        except (JSONRPCError, NodeUnavailable):
            log.exception("unable to get confirmations for %s", txid)
            return 0
        if (confs := info.get("confirmations")) is not None:
            return int(confs)
        return 1 if info.get("blockhash") else 0

    def refresh(self, record: VaultRecord) -> VaultRecord:
        """Recompute and persist a vault's health fields."""
        if not record.txid:
            return record

        confs = self.confirmations(record.txid)
        quote = self.prices.get()
        ratio = collateral_ratio_bps(
            record.collateral_sats, record.mint_usd_cents, quote.price)

        withdrawable = (
            not record.is_withdrawn and confs >= (record.min_confirmations or 0))
        health = determine_health(
            ratio, withdrawable, self.config.at_risk_ratio_bps,
            withdrawn=record.is_withdrawn)

        updated = self.ledger.update(
            record.vault_id,
            confirmations=confs,
            withdrawable=withdrawable,
            last_btc_price_usd=quote.price,
            collateral_ratio_bps=ratio,
            health=health,
            last_health_check=now_ms(),
        )
        if updated and updated.health != record.health:
            log.info(
                "vault %s health %s -> %s (ratio=%s, confs=%d)",
                record.vault_id, record.health, updated.health, ratio, confs)
        return updated or record

    def refresh_all(self) -> list[VaultRecord]:
        return [self.refresh(r) for r in self.ledger.list_vaults()]

    def refresh_for_payment(self, payment_address: str) -> list[VaultRecord]:
        return [self.refresh(r) for r in self.ledger.list_by_payment(payment_address)]

    def preview(self, collateral_sats: int, mint_usd_cents: int) -> CollateralPreview:
        quote = self.prices.get()
        return CollateralPreview(
            price=quote.price,
            sats=collateral_sats,
            ratio_bps=collateral_ratio_bps(collateral_sats, mint_usd_cents, quote.price),
            usd_cents=mint_usd_cents,
            using_fallback_price=quote.using_fallback,
        )

    def watch(
        self,
        interval_secs: float = 30,
        on_change: t.Callable[[VaultRecord, VaultRecord], None] | None = None,
        iterations: int | None = None,
        sleep: t.Callable[[float], None] = time.sleep,
    ) -> None:
        """Refresh every vault on an interval, reporting health transitions."""
        seen: dict[str, str] = {}
        n = 0
        while iterations is None or n < iterations:
            for before in self.ledger.list_vaults():
                if before.is_withdrawn:
                    continue
                after = self.refresh(before)
                prev = seen.get(after.vault_id, before.health)
                if on_change and after.health != prev:
                    on_change(before, after)
                seen[after.vault_id] = after.health
            n += 1
            if iterations is None or n < iterations:
                sleep(interval_secs)
