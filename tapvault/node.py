"""
A typed wrapper over the subset of Bitcoin Core RPC the vault service uses.

Transport failures become `NodeUnavailable`; RPC-level errors propagate as
`JSONRPCError` so callers can branch on `.code`.
"""
import re
import time
import logging
import http.client
import functools
import typing as t
from decimal import Decimal

from verystable.rpc import BitcoinRPC, JSONRPCError

from .errors import NodeUnavailable, WalletRescanTimeout

log = logging.getLogger(__name__)

# Bitcoin Core RPC error codes consulted by callers.
RPC_WALLET_ERROR = -4
RPC_INVALID_PARAMETER = -8
RPC_WALLET_ALREADY_LOADED = -35
RPC_WALLET_NOT_FOUND = -18
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_VERIFY_ALREADY_IN_CHAIN = -27


def sanitize_wallet_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", name)


def _transport_guard(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except (OSError, http.client.HTTPException) as e:
            raise NodeUnavailable(f"bitcoind unreachable during {fn.__name__}: {e!r}")
    return wrapper


class NodeClient:
    """
    Node RPC capability set. Wallet-scoped calls take a `wallet` name and are
    routed to that wallet's endpoint.
    """

    def __init__(self, service_url: str | None = None, net_name: str = "regtest",
                 rpc: BitcoinRPC | None = None):
        self.service_url = service_url
        self.net_name = net_name
        self.rpc = rpc or BitcoinRPC(net_name=net_name, service_url=service_url)
        self._wallet_rpcs: dict[str, BitcoinRPC] = {}

    def _wallet(self, wallet: str | None) -> BitcoinRPC:
        if not wallet:
            return self.rpc
        if wallet not in self._wallet_rpcs:
            self._wallet_rpcs[wallet] = BitcoinRPC(
                net_name=self.net_name, service_url=self.service_url,
                wallet_name=wallet)
        return self._wallet_rpcs[wallet]

    # Wallet management

    @_transport_guard
    def listwallets(self) -> list[str]:
        return self.rpc.listwallets()

    @_transport_guard
    def listwalletdir(self) -> list[str]:
        return [w["name"] for w in self.rpc.listwalletdir()["wallets"]]

    @_transport_guard
    def createwallet(self, name: str) -> dict:
        # watch-only, blank, no passphrase, no reuse avoidance, descriptors.
        return self.rpc.createwallet(name, True, True, "", False, True, False)

    @_transport_guard
    def loadwallet(self, name: str) -> dict:
        return self.rpc.loadwallet(name)

    def ensure_wallet(self, name: str) -> str:
        """
        Make sure a watch-only descriptor wallet named `name` exists and is loaded.
        """
        if name in self.listwallets():
            return name

        if name in self.listwalletdir():
            try:
                self.loadwallet(name)
                log.info("loaded wallet %s", name)
            except JSONRPCError as e:
                if e.code != RPC_WALLET_ALREADY_LOADED:
                    raise
        else:
            self.createwallet(name)
            log.info("created watch-only wallet %s", name)
        return name

    @_transport_guard
    def getwalletinfo(self, wallet: str) -> dict:
        return self._wallet(wallet).getwalletinfo()

    def is_rescanning(self, wallet: str) -> bool:
        return bool(self.getwalletinfo(wallet).get("scanning"))

    def wait_for_rescan(
        self, wallet: str, timeout_secs: float = 300, poll_secs: float = 5,
        sleep: t.Callable[[float], None] = time.sleep,
    ) -> None:
        """Poll until the wallet has stopped scanning, up to `timeout_secs`."""
        deadline = time.monotonic() + timeout_secs
        while self.is_rescanning(wallet):
            if time.monotonic() >= deadline:
                raise WalletRescanTimeout(
                    f"wallet {wallet} still rescanning after {timeout_secs}s",
                    wallet=wallet)
            log.info("waiting for wallet %s to finish rescanning", wallet)
            sleep(poll_secs)

    # Descriptors

    @_transport_guard
    def getdescriptorinfo(self, descriptor: str) -> dict:
        return self.rpc.getdescriptorinfo(descriptor)

    @_transport_guard
    def importdescriptors(self, wallet: str, requests: list[dict]) -> list[dict]:
        return self._wallet(wallet).importdescriptors(requests)

    @_transport_guard
    def deriveaddresses(self, descriptor: str) -> list[str]:
        return self.rpc.deriveaddresses(descriptor)

    def derive_address(self, descriptor: str) -> str:
        if not (addrs := self.deriveaddresses(descriptor)):
            raise NodeUnavailable("node derived no address for descriptor")
        return addrs[0]

    # PSBTs

    @_transport_guard
    def walletcreatefundedpsbt(
        self, wallet: str, inputs: list, outputs: list | dict, locktime: int,
        options: dict,
    ) -> dict:
        return self._wallet(wallet).walletcreatefundedpsbt(
            inputs, outputs, locktime, options)

    @_transport_guard
    def decodepsbt(self, psbt: str) -> dict:
        return self.rpc.decodepsbt(psbt)

    @_transport_guard
    def utxoupdatepsbt(self, psbt: str) -> str:
        return self.rpc.utxoupdatepsbt(psbt)

    @_transport_guard
    def createpsbt(self, inputs: list, outputs: list | dict) -> str:
        return self.rpc.createpsbt(inputs, outputs)

    @_transport_guard
    def walletprocesspsbt(self, wallet: str, psbt: str, sign: bool = False) -> dict:
        return self._wallet(wallet).walletprocesspsbt(psbt, sign)

    @_transport_guard
    def combinepsbt(self, psbts: list[str]) -> str:
        return self.rpc.combinepsbt(psbts)

    @_transport_guard
    def finalizepsbt(self, psbt: str) -> dict:
        return self.rpc.finalizepsbt(psbt)

    @_transport_guard
    def analyzepsbt(self, psbt: str) -> dict:
        return self.rpc.analyzepsbt(psbt)

    # Transactions

    @_transport_guard
    def sendrawtransaction(self, tx_hex: str) -> str:
        return self.rpc.sendrawtransaction(tx_hex)

    @_transport_guard
    def getrawtransaction(self, txid: str, verbose: bool = True) -> dict | str:
        return self.rpc.getrawtransaction(txid, verbose)

    def find_transaction(self, txid: str) -> dict | None:
        """The node's view of `txid`, or None if it doesn't know of it."""
        try:
            return self.getrawtransaction(txid, True)
        except JSONRPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise


def btc_to_sats(btc: Decimal | float | int | str) -> int:
    return int(Decimal(str(btc)) * 100_000_000)
