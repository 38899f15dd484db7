"""
The vault ledger: one persisted VaultRecord per vault.

Records live in a sqlite table keyed by vault id, each row holding the
VSJson-encoded record. Every mutation is a read-modify-write of a single row
inside a `BEGIN IMMEDIATE` transaction, serialized in-process by a per-vault
re-entrant lock. Records are never deleted.
"""
import re
import time
import sqlite3
import logging
import threading
import contextlib
import dataclasses
import typing as t
from dataclasses import dataclass, field
from pathlib import Path

from verystable.serialization import VSJson

from .config import SATS_PER_BTC
from .errors import (
    InvalidVaultId,
    InvalidKeyEncoding,
    VaultAlreadyWithdrawn,
    VaultExists,
    VaultNotFound,
)

log = logging.getLogger(__name__)

HEALTH_PENDING = "pending"
HEALTH_CONFIRMED = "confirmed"
HEALTH_AT_RISK = "at_risk"
HEALTH_WITHDRAWN = "withdrawn"

_HEX32 = re.compile(r"^[0-9a-f]{64}$")
_VAULT_ID = re.compile(r"^[0-9]+$")


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def validate_vault_id(vault_id) -> str:
    vault_id = str(vault_id).strip()
    if not _VAULT_ID.match(vault_id):
        raise InvalidVaultId(f"vault id must be a decimal string, got {vault_id!r}")
    return vault_id


@dataclass
class VaultMetadata:
    rune: str = "UNKNOWN"
    fee_rate: float = 0
    ordinals_address: str = ""
    payment_address: str = ""
    mint_tokens: int = 0
    mint_usd_cents: int = 0


@dataclass
class VaultRecord:
    vault_id: str
    protocol_pubkey: str
    protocol_chain_code: str
    vault_address: str
    descriptor: str
    user_pubkey: str = ""
    metadata: VaultMetadata = field(default_factory=VaultMetadata)
    collateral_sats: int = 0
    locked_collateral_btc: float = 0.0
    min_confirmations: int | None = None
    confirmations: int = 0
    withdrawable: bool = False
    created_at: int = 0

    # Mint broadcast; unset until observed.
    txid: str | None = None
    # Set at most once, by a successful withdrawal broadcast.
    withdraw_txid: str | None = None

    collateral_ratio_bps: int | None = None
    health: str = HEALTH_PENDING
    last_btc_price_usd: float | None = None
    last_health_check: int | None = None

    def __post_init__(self) -> None:
        self.vault_id = validate_vault_id(self.vault_id)

        self.protocol_pubkey = self.protocol_pubkey.lower()
        self.protocol_chain_code = self.protocol_chain_code.lower()
        if not _HEX32.match(self.protocol_pubkey):
            raise InvalidKeyEncoding(
                "protocol_pubkey must be 32-byte x-only hex", label="protocol_pubkey")
        if not _HEX32.match(self.protocol_chain_code):
            raise InvalidKeyEncoding(
                "protocol_chain_code must be 32-byte hex", label="protocol_chain_code")

        if isinstance(self.metadata, dict):
            self.metadata = VaultMetadata(**self.metadata)

    @property
    def is_withdrawn(self) -> bool:
        return bool(self.withdraw_txid)

    @property
    def mint_usd_cents(self) -> int:
        return self.metadata.mint_usd_cents

    def as_dict(self) -> dict:
        return dataclasses.asdict(self)


VSJson.add_allowed_classes(VaultRecord, VaultMetadata)


def normalize(record: VaultRecord, default_min_confirmations: int) -> VaultRecord:
    """Fill in derived and legacy-missing fields."""
    if record.min_confirmations is None:
        record.min_confirmations = default_min_confirmations
    record.confirmations = record.confirmations or 0
    record.collateral_sats = record.collateral_sats or 0
    record.locked_collateral_btc = record.collateral_sats / SATS_PER_BTC

    if record.withdraw_txid:
        # Terminal; nothing may make a withdrawn vault withdrawable again.
        record.withdrawable = False
        record.health = HEALTH_WITHDRAWN
    return record


class VaultLedger:
    """Keyed, transactional store of VaultRecords."""

    # Fields that may only be written by `mark_withdrawn`.
    _PROTECTED_FIELDS = frozenset({"vault_id", "withdraw_txid", "created_at"})

    def __init__(self, path: Path | str, default_min_confirmations: int = 3):
        self.path = Path(path)
        self.default_min_confirmations = default_min_confirmations
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._bootstrap()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.path), timeout=30, isolation_level=None)

    def _bootstrap(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        con = self._connect()
        try:
            con.execute(
                "CREATE TABLE IF NOT EXISTS vaults ("
                " vault_id TEXT PRIMARY KEY,"
                " payment_address TEXT NOT NULL DEFAULT '',"
                " created_at INTEGER NOT NULL,"
                " record TEXT NOT NULL)")
            (count,) = con.execute("SELECT COUNT(*) FROM vaults").fetchone()
        finally:
            con.close()
        log.info("ledger ready (file=%s, count=%d)", self.path, count)

    def _decode(self, blob: str) -> VaultRecord:
        rec = VSJson.loads(blob)
        assert isinstance(rec, VaultRecord)
        return normalize(rec, self.default_min_confirmations)

    @staticmethod
    def _write(con: sqlite3.Connection, rec: VaultRecord, insert: bool = False) -> None:
        params = (
            rec.metadata.payment_address.lower(), rec.created_at,
            VSJson.dumps(rec), rec.vault_id)
        if insert:
            con.execute(
                "INSERT INTO vaults (payment_address, created_at, record, vault_id) "
                "VALUES (?, ?, ?, ?)", params)
        else:
            con.execute(
                "UPDATE vaults SET payment_address = ?, created_at = ?, record = ? "
                "WHERE vault_id = ?", params)

    @contextlib.contextmanager
    def locked(self, vault_id: str) -> t.Iterator[None]:
        """
        Hold the in-process lock for a vault. Re-entrant, so ledger writes made
        while holding it don't deadlock.
        """
        with self._locks_guard:
            lock = self._locks.setdefault(str(vault_id), threading.RLock())
        with lock:
            yield

    @contextlib.contextmanager
    def _transaction(self) -> t.Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            else:
                con.execute("COMMIT")
        finally:
            con.close()

    def new_vault_id(self) -> str:
        """A time-derived id that has never been used in this ledger."""
        with self._locks_guard:
            candidate = now_ms()
            while self.get(str(candidate)) is not None:
                candidate += 1
            return str(candidate)

    def create(self, record: VaultRecord) -> VaultRecord:
        with self.locked(record.vault_id), self._transaction() as con:
            if con.execute(
                    "SELECT 1 FROM vaults WHERE vault_id = ?",
                    (record.vault_id, )).fetchone():
                raise VaultExists(f"vault {record.vault_id} already recorded")

            record.created_at = now_ms()
            record = normalize(record, self.default_min_confirmations)
            self._write(con, record, insert=True)

        log.info(
            "recorded vault %s (address=%s, protocol_key=%s)",
            record.vault_id, record.vault_address, record.protocol_pubkey)
        return record

    def get(self, vault_id: str) -> VaultRecord | None:
        con = self._connect()
        try:
            row = con.execute(
                "SELECT record FROM vaults WHERE vault_id = ?", (str(vault_id), )
            ).fetchone()
        finally:
            con.close()
        return self._decode(row[0]) if row else None

    def require(self, vault_id: str) -> VaultRecord:
        vault_id = validate_vault_id(vault_id)
        if not (rec := self.get(vault_id)):
            raise VaultNotFound(f"no vault with id {vault_id}", vault_id=vault_id)
        return rec

    def list_vaults(self) -> list[VaultRecord]:
        con = self._connect()
        try:
            rows = con.execute(
                "SELECT record FROM vaults ORDER BY created_at").fetchall()
        finally:
            con.close()
        return [self._decode(r[0]) for r in rows]

    def list_by_payment(self, payment_address: str) -> list[VaultRecord]:
        """Minted vaults for a payment address, newest first."""
        con = self._connect()
        try:
            rows = con.execute(
                "SELECT record FROM vaults WHERE payment_address = ? "
                "ORDER BY created_at DESC", (payment_address.lower(), )).fetchall()
        finally:
            con.close()
        return [rec for r in rows if (rec := self._decode(r[0])).txid]

    def _mutate(
        self,
        vault_id: str,
        fn: t.Callable[[VaultRecord], VaultRecord],
    ) -> VaultRecord | None:
        with self.locked(vault_id), self._transaction() as con:
            row = con.execute(
                "SELECT record FROM vaults WHERE vault_id = ?", (str(vault_id), )
            ).fetchone()
            if not row:
                return None
            rec = normalize(fn(self._decode(row[0])), self.default_min_confirmations)
            self._write(con, rec)
            return rec

    def update(self, vault_id: str, **fields) -> VaultRecord | None:
        """
        Merge `fields` into the stored record. Only the named fields are written;
        everything else is whatever is stored at the time of the write.
        """
        if bad := self._PROTECTED_FIELDS.intersection(fields):
            raise ValueError(f"fields can't be set through update(): {sorted(bad)}")

        def apply(rec: VaultRecord) -> VaultRecord:
            for k, v in fields.items():
                if not hasattr(rec, k):
                    raise AttributeError(f"VaultRecord has no field {k!r}")
                setattr(rec, k, v)
            return rec

        updated = self._mutate(vault_id, apply)
        if updated is None:
            log.warning("update for unknown vault %s ignored", vault_id)
        return updated

    def set_txid(self, vault_id: str, txid: str) -> VaultRecord | None:
        rec = self.update(vault_id, txid=txid)
        if rec:
            log.info("mint txid recorded for vault %s: %s", vault_id, txid)
        return rec

    def mark_withdrawn(self, vault_id: str, txid: str) -> VaultRecord:
        """
        Record the withdrawal txid. Succeeds at most once per vault; recording the
        same txid again is a no-op.
        """
        def apply(rec: VaultRecord) -> VaultRecord:
            if rec.withdraw_txid and rec.withdraw_txid != txid:
                raise VaultAlreadyWithdrawn(
                    f"vault {vault_id} already withdrawn in {rec.withdraw_txid}",
                    vault_id=vault_id)
            rec.withdraw_txid = txid
            return rec

        if not (rec := self._mutate(vault_id, apply)):
            raise VaultNotFound(f"no vault with id {vault_id}", vault_id=vault_id)

        log.info("withdraw txid recorded for vault %s: %s", vault_id, txid)
        return rec
