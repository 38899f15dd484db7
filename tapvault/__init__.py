"""Taproot collateral vaults with cooperative two-signature withdrawal."""

__version__ = "0.1.0"
