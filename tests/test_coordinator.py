import threading

import pytest

from verystable.core.key import sign_schnorr

from tapvault.coordinator import (
    STATUS_FINALIZED,
    STATUS_SIGNATURE_REQUIRED,
    SignatureCoordinator,
)
from tapvault.descriptor import RECOVER_LEAF
from tapvault.errors import (
    InvalidVaultId,
    UserSignatureMissing,
    UserSignatureWrongLeaf,
    VaultAlreadyWithdrawn,
    VaultNotFound,
    VaultNotMinted,
)
from tapvault.finalize import WitnessFinalizer

from conftest import make_record


class FakeOracle:
    def __init__(self, key: bytes):
        self.key = key
        self.requests = []

    def sign(self, request):
        self.requests.append(request)
        return sign_schnorr(self.key, request.sighash).hex()


@pytest.fixture
def coordinator(ledger, node, keys):
    return SignatureCoordinator(
        ledger, WitnessFinalizer(ledger, node), FakeOracle(keys.protocol))


def test_submit_without_signature_returns_request(coordinator, withdrawal, record, node):
    built = withdrawal.build()
    out = coordinator.submit(record.vault_id, built.psbt)

    assert out["status"] == STATUS_SIGNATURE_REQUIRED
    assert out["vaultId"] == record.vault_id
    assert out["sighash"] == built.sighash.hex()
    assert out["tapleafHash"] == built.leaf_hash.hex()
    assert node.sent == []


def test_submit_with_signature_finalizes(coordinator, withdrawal, record, keys, ledger):
    built = withdrawal.build()
    out = coordinator.submit(
        record.vault_id, built.psbt, built.protocol_signature(keys).hex())

    assert out["status"] == STATUS_FINALIZED
    assert out["txid"] == built.tx.rehash()
    assert ledger.get(record.vault_id).withdraw_txid == out["txid"]


def test_prepare_then_finalize(coordinator, withdrawal, record, keys):
    built = withdrawal.build()
    request = coordinator.prepare(record.vault_id, built.psbt)
    protocol_sig = sign_schnorr(keys.protocol, request.sighash)

    result = coordinator.finalize(record.vault_id, built.psbt, protocol_sig)
    assert result.txid == built.tx.rehash()


def test_request_protocol_signature(coordinator, withdrawal, record):
    built = withdrawal.build()
    result = coordinator.request_protocol_signature(record.vault_id, built.psbt)

    assert result.txid == built.tx.rehash()
    [request] = coordinator.oracle.requests
    assert request.sighash == built.sighash


def test_withdrawn_vault_is_terminal(coordinator, withdrawal, record, keys, node):
    built = withdrawal.build()
    coordinator.finalize(record.vault_id, built.psbt, built.protocol_signature(keys))

    with pytest.raises(VaultAlreadyWithdrawn):
        coordinator.prepare(record.vault_id, built.psbt)
    with pytest.raises(VaultAlreadyWithdrawn):
        coordinator.submit(record.vault_id, built.psbt, built.protocol_signature(keys))
    assert len(node.sent) == 1


def test_concurrent_finalize_broadcasts_once(coordinator, withdrawal, record, keys, node):
    built = withdrawal.build()
    sig = built.protocol_signature(keys)
    results, errors = [], []

    def run():
        try:
            results.append(coordinator.finalize(record.vault_id, built.psbt, sig))
        except VaultAlreadyWithdrawn as e:
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(4)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert len(results) == 1
    assert len(errors) == 3
    assert len(node.sent) == 1


def test_missing_user_signature(coordinator, withdrawal, record, keys):
    built = withdrawal.build(user_sig=False)
    with pytest.raises(UserSignatureMissing):
        coordinator.finalize(record.vault_id, built.psbt, built.protocol_signature(keys))


def test_user_signature_for_other_leaf(coordinator, withdrawal, record, keys):
    built = withdrawal.build(user_sig_leaf=RECOVER_LEAF)
    with pytest.raises(UserSignatureWrongLeaf):
        coordinator.finalize(record.vault_id, built.psbt, built.protocol_signature(keys))


def test_unknown_and_unminted_vaults(coordinator, withdrawal, ledger, vault, keys):
    built = withdrawal.build()

    with pytest.raises(InvalidVaultId):
        coordinator.prepare("not-a-vault", built.psbt)
    with pytest.raises(VaultNotFound):
        coordinator.prepare("42", built.psbt)

    ledger.create(make_record(vault, keys, vault_id="43", txid=None))
    with pytest.raises(VaultNotMinted):
        coordinator.prepare("43", built.psbt)
