import itertools

import pytest

from tapvault import ledger as vledger
from tapvault.errors import (
    InvalidKeyEncoding,
    InvalidVaultId,
    VaultAlreadyWithdrawn,
    VaultExists,
    VaultNotFound,
)
from tapvault.ledger import VaultLedger, HEALTH_WITHDRAWN

from conftest import CHAIN_CODE, MINT_TXID, VAULT_SATS, make_record


def test_create_and_get(ledger, record, vault):
    got = ledger.get(record.vault_id)

    assert got == record
    assert got.vault_address == vault.address
    assert got.min_confirmations == 3
    assert got.locked_collateral_btc == VAULT_SATS / 100_000_000
    assert got.created_at > 0
    assert got.metadata.mint_usd_cents == 100_000


def test_records_survive_reopen(config, record):
    reopened = VaultLedger(config.ledger_path)
    assert reopened.require(record.vault_id) == record


def test_duplicate_create(ledger, record, vault, keys):
    with pytest.raises(VaultExists):
        ledger.create(make_record(vault, keys))


def test_update_merges_fields(ledger, record):
    ledger.update(record.vault_id, confirmations=2)
    ledger.update(record.vault_id, health="confirmed")

    got = ledger.get(record.vault_id)
    assert got.confirmations == 2
    assert got.health == "confirmed"
    assert got.txid == MINT_TXID


def test_update_guards(ledger, record):
    with pytest.raises(ValueError):
        ledger.update(record.vault_id, withdraw_txid="ef" * 32)
    with pytest.raises(AttributeError):
        ledger.update(record.vault_id, not_a_field=1)
    assert ledger.update("12345", health="confirmed") is None


def test_mark_withdrawn_once(ledger, record):
    txid = "ef" * 32
    rec = ledger.mark_withdrawn(record.vault_id, txid)
    assert rec.withdraw_txid == txid
    assert rec.health == HEALTH_WITHDRAWN

    # Same txid again is fine; a different one isn't.
    assert ledger.mark_withdrawn(record.vault_id, txid).withdraw_txid == txid
    with pytest.raises(VaultAlreadyWithdrawn):
        ledger.mark_withdrawn(record.vault_id, "12" * 32)

    rec = ledger.update(record.vault_id, withdrawable=True, health="confirmed")
    assert not rec.withdrawable
    assert rec.health == HEALTH_WITHDRAWN

    with pytest.raises(VaultNotFound):
        ledger.mark_withdrawn("999", txid)


@pytest.mark.parametrize("vault_id", ["", "abc", "12a", "-1", "1.5"])
def test_invalid_vault_ids(ledger, vault_id):
    with pytest.raises(InvalidVaultId):
        ledger.require(vault_id)


def test_require_unknown(ledger):
    with pytest.raises(VaultNotFound):
        ledger.require("31337")


def test_record_validates_keys(vault, keys):
    with pytest.raises(InvalidKeyEncoding):
        make_record(vault, keys, protocol_pubkey="02" + "aa" * 32)
    with pytest.raises(InvalidKeyEncoding):
        make_record(vault, keys, protocol_chain_code="zz")

    rec = make_record(vault, keys, protocol_chain_code=CHAIN_CODE.upper())
    assert rec.protocol_chain_code == CHAIN_CODE


def test_list_by_payment(ledger, vault, keys, monkeypatch):
    clock = itertools.count(1_000)
    monkeypatch.setattr(vledger, "now_ms", lambda: next(clock))

    ledger.create(make_record(vault, keys, vault_id="1"))
    ledger.create(make_record(vault, keys, vault_id="2"))
    ledger.create(make_record(vault, keys, vault_id="3", txid=None))
    ledger.create(make_record(
        vault, keys, vault_id="4",
        metadata=dict(payment_address=keys.fee_address)))

    recs = ledger.list_by_payment(keys.payment_address)
    assert [r.vault_id for r in recs] == ["2", "1"]
    assert [r.vault_id for r in ledger.list_vaults()] == ["1", "2", "3", "4"]


def test_new_vault_id_is_unused(ledger, vault, keys, monkeypatch):
    monkeypatch.setattr(vledger, "now_ms", lambda: 5_000)
    ledger.create(make_record(vault, keys, vault_id="5000"))

    assert ledger.new_vault_id() == "5001"
