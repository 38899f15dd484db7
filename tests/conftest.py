import types
from decimal import Decimal
from dataclasses import dataclass

import pytest
from verystable.core import script
from verystable.core import psbt as core_psbt
from verystable.core.key import (
    compute_xonly_pubkey,
    sign_schnorr,
    tweak_add_privkey,
)
from verystable.core.messages import COutPoint, CTxIn, CTxOut
from verystable.core.psbt import PSBT, PSBTMap
from verystable.core.script import CScript
from verystable.rpc import JSONRPCError
from verystable.script import CTransaction

from tapvault.config import VaultConfig
from tapvault.descriptor import (
    REDEEM_LEAF,
    RECOVER_LEAF,
    VaultDescriptor,
    build_vault_descriptor,
    scriptpubkey_for_address,
    xonly_to_address,
)
from tapvault.ledger import VaultLedger, VaultRecord, VaultMetadata
from tapvault.node import NodeClient, btc_to_sats, RPC_INVALID_ADDRESS_OR_KEY
from tapvault.price import StaticPrice

MINT_TXID = "ab" * 32
FUNDING_TXID = "cd" * 32
CHAIN_CODE = "11" * 32
VAULT_ID = "1700000000000"
VAULT_VOUT = 3
VAULT_SATS = 1_500_000


def privkey(n: int) -> bytes:
    return n.to_bytes(32, "big")


def xonly(priv: bytes) -> bytes:
    return compute_xonly_pubkey(priv)[0]


def rpc_error(code: int, message: str = "error") -> JSONRPCError:
    return JSONRPCError({"code": code, "message": message})


@pytest.fixture
def keys():
    k = types.SimpleNamespace(
        guardian=privkey(0x1001),
        recovery_a=privkey(0x2001),
        recovery_b=privkey(0x2002),
        protocol=privkey(0x3001),
        user=privkey(0x4001),
        fee=privkey(0x5001),
        ordinals=privkey(0x6001),
    )
    for name, priv in list(vars(k).items()):
        setattr(k, f"{name}_pub", xonly(priv))
    k.payment_address = xonly_to_address(k.user_pub, "regtest")
    k.ordinals_address = xonly_to_address(k.ordinals_pub, "regtest")
    k.fee_address = xonly_to_address(k.fee_pub, "regtest")
    return k


@pytest.fixture
def config(keys, tmp_path) -> VaultConfig:
    return VaultConfig(
        guardian_pubkey=keys.guardian_pub,
        recovery_pubkey_a=keys.recovery_a_pub,
        recovery_pubkey_b=keys.recovery_b_pub,
        network="regtest",
        ledger_path=tmp_path / "vaults.sqlite",
        fee_recipient_address=keys.fee_address,
        rescan_poll_secs=0,
    )


@pytest.fixture
def ledger(config) -> VaultLedger:
    return VaultLedger(config.ledger_path, config.min_confirmations)


@pytest.fixture
def vault(config, keys) -> VaultDescriptor:
    return build_vault_descriptor(config, keys.protocol_pub, keys.user_pub)


def make_record(vault: VaultDescriptor, keys, **kwargs) -> VaultRecord:
    fields = dict(
        vault_id=VAULT_ID,
        protocol_pubkey=vault.protocol_pubkey.hex(),
        protocol_chain_code=CHAIN_CODE,
        vault_address=vault.address,
        descriptor=vault.descriptor,
        user_pubkey=vault.user_pubkey.hex(),
        metadata=VaultMetadata(
            rune="TESTRUNE",
            fee_rate=2.0,
            ordinals_address=keys.ordinals_address,
            payment_address=keys.payment_address,
            mint_tokens=1000,
            mint_usd_cents=100_000,
        ),
        collateral_sats=VAULT_SATS,
        txid=MINT_TXID,
    )
    fields.update(kwargs)
    return VaultRecord(**fields)


@pytest.fixture
def record(ledger, vault, keys) -> VaultRecord:
    return ledger.create(make_record(vault, keys))


@dataclass
class BuiltWithdrawal:
    psbt: str
    tx: CTransaction
    spent: list
    sighash: bytes
    leaf_hash: bytes
    hash_type: int

    def protocol_signature(self, keys) -> bytes:
        sig = sign_schnorr(keys.protocol, self.sighash)
        return sig + bytes([self.hash_type]) if self.hash_type else sig


class WithdrawalBuilder:
    """Builds withdrawal PSBTs spending the test vault's redeem leaf."""

    def __init__(self, keys, vault: VaultDescriptor):
        self.keys = keys
        self.vault = vault

    def _leaf_entry(self, name: str, leaf_version: int | None = None,
                    control_block: bytes | None = None) -> tuple[bytes, bytes]:
        leaf = self.vault.taproot_info.leaves[name]
        cb = control_block if control_block is not None else self.vault.controlblock(name)
        version = leaf.version if leaf_version is None else leaf_version
        return (
            bytes([core_psbt.PSBT_IN_TAP_LEAF_SCRIPT]) + cb,
            bytes(leaf.script) + bytes([version]),
        )

    def build(
        self,
        *,
        user_sig: bool = True,
        user_sig_leaf: str = REDEEM_LEAF,
        hash_type: int = 0,
        leaf_version: int | None = None,
        control_block: bytes | None = None,
        leaf_entries: bool = True,
        witness_utxo: bool = True,
        keypath_input: bool = False,
        keypath_signed: bool = True,
        second_script_input: bool = False,
    ) -> BuiltWithdrawal:
        keys = self.keys
        fee_info = script.taproot_construct(keys.fee_pub)

        tx = CTransaction()
        tx.version = 2
        tx.vin = [CTxIn(COutPoint(int(MINT_TXID, 16), VAULT_VOUT), b"", 0xfffffffd)]
        spent = [CTxOut(VAULT_SATS, self.vault.scriptPubKey)]
        if keypath_input or second_script_input:
            tx.vin.append(CTxIn(COutPoint(int(FUNDING_TXID, 16), 1), b"", 0xfffffffd))
            spent.append(CTxOut(20_000, fee_info.scriptPubKey))
        tx.vout = [
            CTxOut(VAULT_SATS + 10_000, scriptpubkey_for_address(keys.payment_address)),
        ]

        p = PSBT(
            g=PSBTMap({core_psbt.PSBT_GLOBAL_UNSIGNED_TX: tx.serialize_without_witness()}),
            i=[PSBTMap() for _ in tx.vin],
            o=[PSBTMap() for _ in tx.vout],
        )
        for m, out in zip(p.i, spent):
            if witness_utxo:
                m.map[core_psbt.PSBT_IN_WITNESS_UTXO] = out.serialize()

        vault_in = p.i[0]
        if leaf_entries:
            for name in (REDEEM_LEAF, RECOVER_LEAF):
                k, v = self._leaf_entry(
                    name,
                    leaf_version if name == REDEEM_LEAF else None,
                    control_block if name == REDEEM_LEAF else None)
                vault_in.map[k] = v
        if hash_type:
            vault_in.map[core_psbt.PSBT_IN_SIGHASH_TYPE] = hash_type.to_bytes(4, "little")

        if second_script_input:
            k, v = self._leaf_entry(RECOVER_LEAF)
            p.i[1].map[k] = v

        leaf = self.vault.taproot_info.leaves[REDEEM_LEAF]
        sighash = script.TaprootSignatureHash(
            tx, spent, hash_type, input_index=0, scriptpath=True,
            leaf_script=bytes(leaf.script), leaf_ver=leaf.version)

        if user_sig:
            sig = sign_schnorr(keys.user, sighash)
            if hash_type:
                sig += bytes([hash_type])
            sig_leaf_hash = self.vault.leaf_hash(user_sig_leaf)
            vault_in.map[
                bytes([core_psbt.PSBT_IN_TAP_SCRIPT_SIG]) + keys.user_pub + sig_leaf_hash
            ] = sig

        if keypath_input and keypath_signed:
            keypath_hash = script.TaprootSignatureHash(tx, spent, 0, input_index=1)
            tweaked = tweak_add_privkey(keys.fee, fee_info.tweak)
            p.i[1].map[core_psbt.PSBT_IN_TAP_KEY_SIG] = sign_schnorr(tweaked, keypath_hash)

        return BuiltWithdrawal(
            psbt=p.to_base64(),
            tx=tx,
            spent=spent,
            sighash=sighash,
            leaf_hash=leaf.leaf_hash,
            hash_type=hash_type,
        )


@pytest.fixture
def withdrawal(keys, vault) -> WithdrawalBuilder:
    return WithdrawalBuilder(keys, vault)


class FakeNode(NodeClient):
    """An in-memory stand-in for bitcoind's RPC surface."""

    def __init__(self):
        super().__init__(net_name="regtest", rpc=types.SimpleNamespace())
        self.wallets: set[str] = set()
        self.wallet_dir: set[str] = set()
        self.imported: dict[str, list[dict]] = {}
        self.import_ok = True
        self.derived: dict[str, str] = {}
        self.transactions: dict[str, dict] = {}
        self.sent: list[str] = []
        self.send_error: JSONRPCError | None = None
        self.scanning: dict[str, int] = {}
        self.fund_errors: list[Exception] = []
        self.fund_calls: list[dict] = []
        self.updated: list[str] = []
        self.processed: list[str] = []
        self.combined: list[str] | None = None
        self.finalize_result: dict = {"complete": False}
        self.analyzed: list[str] = []

    def listwallets(self):
        return sorted(self.wallets)

    def listwalletdir(self):
        return sorted(self.wallet_dir)

    def createwallet(self, name):
        self.wallets.add(name)
        self.wallet_dir.add(name)
        return {"name": name}

    def loadwallet(self, name):
        self.wallets.add(name)
        return {"name": name}

    def getwalletinfo(self, wallet):
        if self.scanning.get(wallet):
            self.scanning[wallet] -= 1
            return {"walletname": wallet, "scanning": {"duration": 1, "progress": 0.5}}
        return {"walletname": wallet, "scanning": False}

    def importdescriptors(self, wallet, requests):
        self.imported.setdefault(wallet, []).extend(requests)
        return [{"success": self.import_ok} for _ in requests]

    def getdescriptorinfo(self, descriptor):
        return {"descriptor": descriptor}

    def deriveaddresses(self, descriptor):
        return [self.derived[descriptor]] if descriptor in self.derived else []

    def walletcreatefundedpsbt(self, wallet, inputs, outputs, locktime, options):
        self.fund_calls.append(
            {"wallet": wallet, "outputs": outputs, "options": options})
        if self.fund_errors:
            raise self.fund_errors.pop(0)

        tx = CTransaction()
        tx.version = 2
        tx.vin = [CTxIn(COutPoint(int(FUNDING_TXID, 16), 0), b"", 0xfffffffd)]
        for out in outputs:
            [(k, v)] = out.items()
            if k == "data":
                tx.vout.append(CTxOut(0, CScript([script.OP_RETURN, bytes.fromhex(v)])))
            else:
                tx.vout.append(CTxOut(btc_to_sats(v), scriptpubkey_for_address(k)))
        tx.vout.insert(
            options["changePosition"],
            CTxOut(25_000, scriptpubkey_for_address(options["changeAddress"])))

        p = PSBT(
            g=PSBTMap({core_psbt.PSBT_GLOBAL_UNSIGNED_TX: tx.serialize_without_witness()}),
            i=[PSBTMap() for _ in tx.vin],
            o=[PSBTMap() for _ in tx.vout],
        )
        p.i[0].map[core_psbt.PSBT_IN_WITNESS_UTXO] = CTxOut(
            40_000, scriptpubkey_for_address(options["changeAddress"])).serialize()
        return {
            "psbt": p.to_base64(),
            "fee": Decimal("0.00000300"),
            "changepos": options["changePosition"],
        }

    def utxoupdatepsbt(self, psbt):
        self.updated.append(psbt)
        return psbt

    def walletprocesspsbt(self, wallet, psbt, sign=False):
        self.processed.append(wallet)
        return {"psbt": psbt, "complete": False}

    def combinepsbt(self, psbts):
        self.combined = list(psbts)
        return psbts[-1]

    def finalizepsbt(self, psbt):
        return self.finalize_result

    def analyzepsbt(self, psbt):
        self.analyzed.append(psbt)
        return {"inputs": [], "next": "signer"}

    def getrawtransaction(self, txid, verbose=True):
        if txid not in self.transactions:
            raise rpc_error(
                RPC_INVALID_ADDRESS_OR_KEY, "No such mempool or blockchain transaction")
        return self.transactions[txid]

    def sendrawtransaction(self, tx_hex):
        if self.send_error:
            raise self.send_error
        txid = CTransaction.fromhex(tx_hex).rehash()
        self.sent.append(tx_hex)
        self.transactions[txid] = {"txid": txid, "hex": tx_hex}
        return txid


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def price():
    return StaticPrice(100_000.0)

