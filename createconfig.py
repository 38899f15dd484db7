#!/usr/bin/env python3
import json
import sys
import secrets
from pathlib import Path

from bip32 import BIP32
from clii import App

from tapvault.config import VaultConfig, NETWORK_HRPS

cli = App('createconfig', description="Create a vault service configuration file.")

GUARDIAN_PATH = "m/0h/0"
RECOVERY_A_PATH = "m/1h/0"
RECOVERY_B_PATH = "m/1h/1"


@cli.main
def main(
    network: str = 'regtest',
    filepath: str = './config.json',
    secretspath: str = './secrets.json',
    seed_hex: str = '',
    fee_recipient_address: str = '',
    min_confirmations: int = 3,
) -> None:
    """
    Create a new vault service configuration. Don't use this with real money!

    The guardian (internal) key and both recovery keys are derived from a single
    BIP32 seed, whose xpriv is written into `secretspath`. The data in
    `config.json` isn't sensitive, whereas the stuff in `secrets.json` is.
    """
    if network not in NETWORK_HRPS:
        print(f"unknown network {network!r}; pick one of {sorted(NETWORK_HRPS)}")
        sys.exit(1)

    if Path(filepath).exists():
        if input(f"Config already exists at {filepath} - overwrite? [yn] ") != 'y':
            sys.exit(1)

    # Not necessarily secure, don't use for real money, etc. etc.
    seed: bytes = secrets.token_bytes(32)
    if seed_hex:
        seed = bytes.fromhex(seed_hex)
    else:
        print(
            "!! using (probably insecure?) `secrets.token_bytes` for the seed -- "
            "don't use with real money")

    b32 = BIP32.from_seed(seed)
    config = VaultConfig(
        guardian_pubkey=b32.get_pubkey_from_path(GUARDIAN_PATH)[1:],
        recovery_pubkey_a=b32.get_pubkey_from_path(RECOVERY_A_PATH)[1:],
        recovery_pubkey_b=b32.get_pubkey_from_path(RECOVERY_B_PATH)[1:],
        network=network,
        min_confirmations=min_confirmations,
        fee_recipient_address=fee_recipient_address,
    )
    config.save(Path(filepath))

    secpath = Path(secretspath)
    secd = {}
    if secpath.exists():
        secd.update(json.loads(secpath.read_text()))

    secd[config.guardian_pubkey.hex()] = {
        'xpriv': b32.get_xpriv(),
        'paths': {
            'guardian': GUARDIAN_PATH,
            'recovery_a': RECOVERY_A_PATH,
            'recovery_b': RECOVERY_B_PATH,
        },
    }
    secpath.write_text(json.dumps(secd, indent=2))
    print(f"wrote {filepath} (guardian key {config.guardian_pubkey.hex()})")


if __name__ == "__main__":
    cli.run()
