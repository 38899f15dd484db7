import os
import logging
from dataclasses import dataclass, field
from pathlib import Path, PosixPath

from dotenv import load_dotenv
from verystable.serialization import VSJson

log = logging.getLogger(__name__)

SATS_PER_BTC = 100_000_000

NETWORK_HRPS = {
    "mainnet": "bc",
    "testnet": "tb",
    "testnet4": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}


def satoshis_to_btc(sats: int) -> float:
    return round(sats / SATS_PER_BTC, 8)


@dataclass
class MintAmounts:
    ordinals_sats: int = 1000
    fee_recipient_sats: int = 1000
    vault_sats: int = 1000


@dataclass
class VaultConfig:
    """
    Static, non-secret configuration shared by every vault this service manages.

    Keys may be given as 33-byte compressed or 32-byte x-only; they're normalized
    when the descriptor is built.
    """
    guardian_pubkey: bytes
    recovery_pubkey_a: bytes
    recovery_pubkey_b: bytes
    network: str = "regtest"

    # A vault is withdrawable once its mint txn has this many confirmations.
    min_confirmations: int = 3

    # Collateral ratio (basis points) below which a vault is flagged at_risk.
    at_risk_ratio_bps: int = 15_000

    fallback_btc_price_usd: float = 100_000.0
    price_cache_ttl_secs: int = 60
    price_feed_url: str = (
        "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd")

    rescan_timeout_secs: int = 300
    rescan_poll_secs: int = 5

    ledger_path: Path = Path("./vaults.sqlite")

    # Payload of the OP_RETURN OP_13 marker output attached to mint txns.
    mint_marker_hex: str = "148aca0514ad01"
    # Payload of the OP_RETURN OP_13 burn marker attached to redemption txns.
    redeem_burn_hex: str = "00dde905020a00"
    redeem_payment_sats: int = 10_000

    fee_recipient_address: str = ""
    mint_amounts: MintAmounts = field(default_factory=MintAmounts)

    signing_oracle_url: str = "http://localhost:8080"
    bitcoin_rpc_url: str = "http://localhost:18443"

    def __post_init__(self) -> None:
        for name in ("guardian_pubkey", "recovery_pubkey_a", "recovery_pubkey_b"):
            val = getattr(self, name)
            if isinstance(val, str):
                val = bytes.fromhex(val)
                setattr(self, name, val)
            assert len(val) in (32, 33), f"{name} must be 32 or 33 bytes"

        if self.network not in NETWORK_HRPS:
            raise ValueError(f"unrecognized network '{self.network}'")
        if isinstance(self.ledger_path, str):
            self.ledger_path = Path(self.ledger_path)
        if isinstance(self.mint_amounts, dict):
            self.mint_amounts = MintAmounts(**self.mint_amounts)

    @property
    def rpc_network(self) -> str:
        """The network name as understood by `verystable.rpc.BitcoinRPC`."""
        return "testnet" if self.network == "testnet4" else self.network

    @property
    def is_mainnet(self) -> bool:
        return self.network == "mainnet"

    def save(self, filepath: Path) -> None:
        filepath.write_text(VSJson.dumps(self, indent=2))
        log.info("saved vault config to %s", filepath)

    @classmethod
    def load(cls, filepath: Path | str) -> "VaultConfig":
        """
        Load the config from disk and apply environment overrides.
        """
        load_dotenv()
        obj = VSJson.loads(Path(filepath).read_text())
        assert isinstance(obj, cls)
        obj.apply_env(os.environ)
        return obj

    def apply_env(self, env) -> None:
        if url := env.get("BITCOIN_RPC_URL"):
            self.bitcoin_rpc_url = url
        if url := env.get("SIGNING_ORACLE_URL"):
            self.signing_oracle_url = url
        if url := env.get("PRICE_FEED_URL"):
            self.price_feed_url = url
        if path := env.get("TAPVAULT_LEDGER"):
            self.ledger_path = Path(path)


# Wire up JSON serialization for the classes above.
VSJson.add_allowed_classes(VaultConfig, MintAmounts, Path, PosixPath)
