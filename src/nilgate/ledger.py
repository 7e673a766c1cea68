"""
Deal ledger.

Owns athletes, deals, their split configuration and payouts. Uses a SQLite
log so status changes are atomic across threads and processes: every status
write is a ``BEGIN IMMEDIATE`` transaction that also checks-and-sets the
expected current status. This module is the only writer of deal status.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from .errors import AlreadyPaid, InvalidTransition, NotFound, UpstreamUnavailable, ValidationError
from .identity import (
    new_chain_deal_id,
    normalize_address,
    normalize_country_code,
    normalize_hex32,
    normalize_jurisdiction,
)
from .models import Athlete, Deal, DealStatus, Payout, Split, parse_splits
from .money import minor_units_to_text, parse_minor_units
from .state_machine import event_for_target, is_noop, next_status
from .storage import ensure_private_dir

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DealParams:
    """Validated, normalised inputs for a new deal."""

    vault_address: str
    brand_address: str
    amount: int
    terms_hash: str
    jurisdiction: str
    splits: tuple[Split, ...]

    def to_chain_params(self) -> dict[str, Any]:
        return {
            "vault": self.vault_address,
            "brand": self.brand_address,
            "amount": self.amount,
            "terms_hash": self.terms_hash,
            "jurisdiction": self.jurisdiction,
            "splits": [{"payee": s.payee, "share": s.share} for s in self.splits],
        }


def validate_deal_params(
    vault_address: Optional[str],
    brand_address: Optional[str],
    amount: Any,
    terms_hash: Optional[str],
    splits: Optional[Sequence[Any]],
    jurisdiction: Optional[str],
) -> DealParams:
    """Reject malformed deals before any state change."""
    required = {
        "vault_address": vault_address,
        "brand_address": brand_address,
        "amount": amount,
        "terms_hash": terms_hash,
        "splits": splits,
        "jurisdiction": jurisdiction,
    }
    absent = [name for name, value in required.items() if value is None or (isinstance(value, str) and not value.strip())]
    if absent:
        raise ValidationError(f"Missing required fields: {', '.join(absent)}")

    try:
        vault = normalize_address(vault_address)
        brand = normalize_address(brand_address)
        parsed_amount = parse_minor_units(amount, "amount")
        code = normalize_jurisdiction(jurisdiction)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if parsed_amount <= 0:
        raise ValidationError("amount must be > 0")

    try:
        parsed_splits = parse_splits(splits)
    except (ValueError, TypeError, KeyError) as exc:
        raise ValidationError(f"Invalid split: {exc}") from exc
    if not parsed_splits:
        raise ValidationError("At least one split is required")
    split_total = sum(s.share for s in parsed_splits)
    if split_total != parsed_amount:
        raise ValidationError(
            f"Split shares sum to {split_total}, deal amount is {parsed_amount}"
        )

    return DealParams(
        vault_address=vault,
        brand_address=brand,
        amount=parsed_amount,
        terms_hash=str(terms_hash).strip(),
        jurisdiction=code,
        splits=parsed_splits,
    )


class _KeyedLocks:
    """One re-entrant lock per key, dropped once no thread holds or awaits it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.RLock, list[int]]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = (threading.RLock(), [0])
            entry[1][0] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1][0] -= 1
                if entry[1][0] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class DealLedger:
    """SQLite-backed record of athletes, deals and payouts."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        ensure_private_dir(self.db_path.parent)
        self._locks = _KeyedLocks()
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        except sqlite3.Error as exc:
            raise UpstreamUnavailable(f"Deal ledger unavailable: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise UpstreamUnavailable(f"Deal ledger unavailable: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        statuses = ", ".join(f"'{s.value}'" for s in DealStatus)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS athletes (
                    athlete_id TEXT PRIMARY KEY,
                    wallet_address TEXT UNIQUE NOT NULL,
                    vault_address TEXT UNIQUE NOT NULL,
                    country_code TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS deals (
                    deal_id TEXT PRIMARY KEY,
                    chain_deal_id TEXT UNIQUE NOT NULL,
                    vault_address TEXT NOT NULL,
                    brand_address TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    terms_hash TEXT NOT NULL,
                    jurisdiction TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ({statuses})),
                    contract_ref TEXT,
                    dispute_reason TEXT,
                    disputed_by TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS deal_splits (
                    deal_id TEXT NOT NULL REFERENCES deals (deal_id),
                    position INTEGER NOT NULL,
                    payee TEXT NOT NULL,
                    share TEXT NOT NULL,
                    PRIMARY KEY (deal_id, position)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payouts (
                    payout_id TEXT PRIMARY KEY,
                    deal_id TEXT UNIQUE NOT NULL REFERENCES deals (deal_id),
                    distributor TEXT NOT NULL,
                    tx_ref TEXT NOT NULL,
                    executed_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payout_amounts (
                    payout_id TEXT NOT NULL REFERENCES payouts (payout_id),
                    position INTEGER NOT NULL,
                    payee TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    PRIMARY KEY (payout_id, position)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_deals_vault ON deals (vault_address)")

    # ── locking ────────────────────────────────────────────────────

    @contextmanager
    def deal_lock(self, deal_id: str) -> Iterator[None]:
        """Serialise multi-step work on one deal within this process."""
        with self._locks.hold(deal_id):
            yield

    # ── athletes ───────────────────────────────────────────────────

    def register_athlete(self, wallet_address: str, vault_address: str, country_code: str) -> Athlete:
        try:
            wallet = normalize_address(wallet_address)
            vault = normalize_address(vault_address)
            country = normalize_country_code(country_code)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        athlete = Athlete(
            athlete_id=uuid.uuid4().hex,
            wallet_address=wallet,
            vault_address=vault,
            country_code=country,
            created_at=int(time.time()),
        )
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO athletes (athlete_id, wallet_address, vault_address, country_code, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (athlete.athlete_id, wallet, vault, country, athlete.created_at),
                )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Athlete wallet or vault already registered: {exc}") from exc
        logger.info("Athlete registered: %s vault=%s", athlete.athlete_id, vault)
        return athlete

    def get_athlete(self, vault_address: str) -> Athlete:
        try:
            vault = normalize_address(vault_address)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM athletes WHERE vault_address = ?", (vault,)).fetchone()
        if row is None:
            raise NotFound(f"Athlete not found for vault {vault}")
        return _row_to_athlete(row)

    def list_athletes(self) -> list[Athlete]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM athletes ORDER BY created_at ASC").fetchall()
        return [_row_to_athlete(r) for r in rows]

    # ── deals ──────────────────────────────────────────────────────

    def create_deal(
        self,
        vault_address: Optional[str],
        brand_address: Optional[str],
        amount: Any,
        terms_hash: Optional[str],
        splits: Optional[Sequence[Any]],
        jurisdiction: Optional[str],
        *,
        chain_deal_id: Optional[str] = None,
        contract_ref: Optional[str] = None,
    ) -> Deal:
        """Validate and persist a new deal in status CREATED."""
        params = validate_deal_params(vault_address, brand_address, amount, terms_hash, splits, jurisdiction)
        try:
            chain_id = (
                normalize_hex32(chain_deal_id, "chain_deal_id")
                if chain_deal_id is not None
                else new_chain_deal_id(params.to_chain_params())
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        now = int(time.time())
        deal = Deal(
            deal_id=uuid.uuid4().hex,
            chain_deal_id=chain_id,
            vault_address=params.vault_address,
            brand_address=params.brand_address,
            amount=params.amount,
            terms_hash=params.terms_hash,
            jurisdiction=params.jurisdiction,
            splits=params.splits,
            status=DealStatus.CREATED,
            contract_ref=contract_ref,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO deals (
                        deal_id, chain_deal_id, vault_address, brand_address, amount,
                        terms_hash, jurisdiction, status, contract_ref, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        deal.deal_id,
                        deal.chain_deal_id,
                        deal.vault_address,
                        deal.brand_address,
                        minor_units_to_text(deal.amount),
                        deal.terms_hash,
                        deal.jurisdiction,
                        deal.status.value,
                        deal.contract_ref,
                        now,
                        now,
                    ),
                )
                conn.executemany(
                    "INSERT INTO deal_splits (deal_id, position, payee, share) VALUES (?, ?, ?, ?)",
                    [
                        (deal.deal_id, i, s.payee, minor_units_to_text(s.share))
                        for i, s in enumerate(deal.splits)
                    ],
                )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Chain deal id already exists: {chain_id}") from exc

        logger.info("Deal created: %s chain=%s amount=%s", deal.deal_id, deal.chain_deal_id, deal.amount)
        return deal

    def get_deal(self, deal_id: str) -> Deal:
        """Load a deal by internal id or chain-linked id."""
        with self._connect() as conn:
            return self._load_deal(conn, deal_id)

    def list_deals(
        self,
        status: Optional[DealStatus] = None,
        vault_address: Optional[str] = None,
    ) -> list[Deal]:
        sql = "SELECT deal_id FROM deals WHERE 1 = 1"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(DealStatus(status).value)
        if vault_address is not None:
            sql += " AND vault_address = ?"
            params.append(normalize_address(vault_address))
        sql += " ORDER BY created_at ASC, deal_id ASC"
        with self._connect() as conn:
            ids = [r["deal_id"] for r in conn.execute(sql, params).fetchall()]
            return [self._load_deal(conn, deal_id) for deal_id in ids]

    def transition(
        self,
        deal_id: str,
        target: DealStatus,
        *,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Deal:
        """Move a deal to ``target`` if the state machine allows it.

        PAID is reached only through record_payout, which writes the payout
        in the same transaction.
        """
        target = DealStatus(target)
        if target is DealStatus.PAID:
            current = self.get_deal(deal_id).status
            raise InvalidTransition(current.value, target.value, "PAID is set only by recording a payout")
        if target is DealStatus.DISPUTED and not (reason and reason.strip()):
            raise ValidationError("A dispute requires a reason")

        with self._transaction() as conn:
            deal = self._load_deal(conn, deal_id)
            if is_noop(deal.status, target):
                return deal
            next_status(deal.status, event_for_target(target, deal.status))
            self._compare_and_set(conn, deal, target, reason=reason, actor=actor)
            updated = self._load_deal(conn, deal.deal_id)

        logger.info("Deal %s: %s -> %s", updated.deal_id, deal.status.value, updated.status.value)
        return updated

    def attach_contract_ref(self, deal_id: str, contract_ref: str) -> Deal:
        with self._transaction() as conn:
            deal = self._load_deal(conn, deal_id)
            if deal.contract_ref not in (None, contract_ref):
                raise ValidationError(f"Deal {deal.deal_id} already linked to {deal.contract_ref}")
            conn.execute(
                "UPDATE deals SET contract_ref = ?, updated_at = ? WHERE deal_id = ?",
                (contract_ref, int(time.time()), deal.deal_id),
            )
            return self._load_deal(conn, deal.deal_id)

    # ── payouts ────────────────────────────────────────────────────

    def record_payout(
        self,
        deal_id: str,
        distributor: str,
        tx_ref: str,
        amounts: Sequence[Split],
        executed_at: Optional[int] = None,
    ) -> Payout:
        """Atomically store the payout and move the deal VERIFIED -> PAID."""
        if not str(tx_ref).strip():
            raise ValidationError("tx_ref is required")
        with self._transaction() as conn:
            deal = self._load_deal(conn, deal_id)
            existing = conn.execute(
                "SELECT payout_id FROM payouts WHERE deal_id = ?", (deal.deal_id,)
            ).fetchone()
            if existing is not None or deal.status is DealStatus.PAID:
                raise AlreadyPaid(f"Deal {deal.deal_id} already has a payout")
            next_status(deal.status, event_for_target(DealStatus.PAID))

            recorded = tuple(amounts)
            if sum(a.share for a in recorded) != deal.amount:
                raise ValidationError(
                    f"Payout amounts sum to {sum(a.share for a in recorded)}, deal amount is {deal.amount}"
                )

            payout = Payout(
                payout_id=uuid.uuid4().hex,
                deal_id=deal.deal_id,
                distributor=distributor,
                tx_ref=str(tx_ref),
                amounts=recorded,
                executed_at=int(time.time()) if executed_at is None else int(executed_at),
            )
            conn.execute(
                """
                INSERT INTO payouts (payout_id, deal_id, distributor, tx_ref, executed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (payout.payout_id, payout.deal_id, payout.distributor, payout.tx_ref, payout.executed_at),
            )
            conn.executemany(
                "INSERT INTO payout_amounts (payout_id, position, payee, amount) VALUES (?, ?, ?, ?)",
                [
                    (payout.payout_id, i, a.payee, minor_units_to_text(a.share))
                    for i, a in enumerate(payout.amounts)
                ],
            )
            self._compare_and_set(conn, deal, DealStatus.PAID)

        logger.info("Deal %s paid: payout=%s tx=%s", deal.deal_id, payout.payout_id, payout.tx_ref)
        return payout

    def get_payout(self, deal_id: str) -> Optional[Payout]:
        with self._connect() as conn:
            deal = self._load_deal(conn, deal_id)
            row = conn.execute("SELECT * FROM payouts WHERE deal_id = ?", (deal.deal_id,)).fetchone()
            if row is None:
                return None
            amount_rows = conn.execute(
                "SELECT payee, amount FROM payout_amounts WHERE payout_id = ? ORDER BY position ASC",
                (row["payout_id"],),
            ).fetchall()
        return Payout(
            payout_id=row["payout_id"],
            deal_id=row["deal_id"],
            distributor=row["distributor"],
            tx_ref=row["tx_ref"],
            amounts=tuple(Split(payee=r["payee"], share=int(r["amount"])) for r in amount_rows),
            executed_at=row["executed_at"],
        )

    # ── internals ──────────────────────────────────────────────────

    def _compare_and_set(
        self,
        conn: sqlite3.Connection,
        deal: Deal,
        target: DealStatus,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> None:
        if target is DealStatus.DISPUTED:
            cur = conn.execute(
                """
                UPDATE deals SET status = ?, dispute_reason = ?, disputed_by = ?, updated_at = ?
                WHERE deal_id = ? AND status = ?
                """,
                (target.value, reason.strip(), actor, int(time.time()), deal.deal_id, deal.status.value),
            )
        else:
            cur = conn.execute(
                "UPDATE deals SET status = ?, updated_at = ? WHERE deal_id = ? AND status = ?",
                (target.value, int(time.time()), deal.deal_id, deal.status.value),
            )
        if cur.rowcount != 1:
            current = self._load_deal(conn, deal.deal_id).status
            raise InvalidTransition(
                current.value,
                target.value,
                f"Deal {deal.deal_id} changed concurrently (expected {deal.status.value}, found {current.value})",
            )

    def _load_deal(self, conn: sqlite3.Connection, deal_id: str) -> Deal:
        key = str(deal_id).strip()
        row = conn.execute(
            "SELECT * FROM deals WHERE deal_id = ? OR chain_deal_id = ?",
            (key, key.lower()),
        ).fetchone()
        if row is None:
            raise NotFound(f"Deal not found: {deal_id}")
        split_rows = conn.execute(
            "SELECT payee, share FROM deal_splits WHERE deal_id = ? ORDER BY position ASC",
            (row["deal_id"],),
        ).fetchall()
        return Deal(
            deal_id=row["deal_id"],
            chain_deal_id=row["chain_deal_id"],
            vault_address=row["vault_address"],
            brand_address=row["brand_address"],
            amount=int(row["amount"]),
            terms_hash=row["terms_hash"],
            jurisdiction=row["jurisdiction"],
            splits=tuple(Split(payee=r["payee"], share=int(r["share"])) for r in split_rows),
            status=DealStatus(row["status"]),
            contract_ref=row["contract_ref"],
            dispute_reason=row["dispute_reason"],
            disputed_by=row["disputed_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _row_to_athlete(row: sqlite3.Row) -> Athlete:
    return Athlete(
        athlete_id=row["athlete_id"],
        wallet_address=row["wallet_address"],
        vault_address=row["vault_address"],
        country_code=row["country_code"],
        created_at=row["created_at"],
    )
