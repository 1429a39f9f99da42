"""
SQLite-based persistence layer for StakeFlow.

Stores tiers, positions, reward receipts, penalty records, the
GlobalState singleton, the external-ledger intent outbox and indexed
ledger events.

Every mutation runs inside ``transaction()``, which holds a re-entrant
process lock and an SQLite ``BEGIN IMMEDIATE`` write lock, so a position
change and the matching GlobalState change commit or roll back
together.  Versioned rows (positions, receipts, global state) are
updated compare-and-swap style on their ``version`` column.

Usage:
    store = StakingStore("data/stakeflow.db")
    with store.transaction():
        store.insert_position(position)
        store.update_global_state(state)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from stakeflow_core.errors import ConcurrencyConflict, PositionExists
from stakeflow_core.models import (
    Commitment,
    GlobalState,
    IntentStatus,
    LedgerEvent,
    LedgerIntent,
    PenaltyRecord,
    Position,
    RewardReceipt,
)
from stakeflow_core.tiers import Tier

logger = logging.getLogger("stakeflow_storage")

MEMORY_PATH = ":memory:"


class StakingStore:
    """Thin SQLite wrapper with serialized write transactions."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/stakeflow.db"):
        self.db_path = db_path
        if db_path != MEMORY_PATH:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly below.
        self._conn = sqlite3.connect(
            db_path, isolation_level=None, check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS tiers (
                tier_id             INTEGER PRIMARY KEY,
                penalty_rate_bp     INTEGER NOT NULL,
                min_duration_months INTEGER NOT NULL,
                max_duration_months INTEGER NOT NULL,
                active              INTEGER NOT NULL DEFAULT 1
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                position_id         TEXT PRIMARY KEY,
                owner               TEXT NOT NULL,
                position_seed       INTEGER NOT NULL,
                address             TEXT NOT NULL,
                principal_amount    INTEGER NOT NULL,
                duration_months     INTEGER NOT NULL,
                tier_id             INTEGER NOT NULL REFERENCES tiers(tier_id),
                power_multiplier_bp INTEGER NOT NULL,
                staking_power       INTEGER NOT NULL,
                start_ts            INTEGER NOT NULL,
                unlock_ts           INTEGER NOT NULL,
                last_accrual_ts     INTEGER NOT NULL,
                last_claim_ts       INTEGER NOT NULL,
                cooldown_end_ts     INTEGER,
                pending_principal   INTEGER,
                active              INTEGER NOT NULL DEFAULT 1,
                aggregate_released  INTEGER NOT NULL DEFAULT 0,
                version             INTEGER NOT NULL DEFAULT 0,
                UNIQUE (owner, position_seed)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS reward_receipts (
                receipt_id    TEXT PRIMARY KEY,
                owner         TEXT NOT NULL,
                position_id   TEXT NOT NULL REFERENCES positions(position_id),
                nft_seed      INTEGER NOT NULL,
                address       TEXT NOT NULL,
                reward_amount INTEGER NOT NULL,
                vest_ts       INTEGER NOT NULL,
                created_ts    INTEGER NOT NULL,
                active        INTEGER NOT NULL DEFAULT 1,
                vested_ts     INTEGER,
                version       INTEGER NOT NULL DEFAULT 0,
                UNIQUE (owner, nft_seed)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS penalty_records (
                record_id            INTEGER PRIMARY KEY AUTOINCREMENT,
                position_id          TEXT NOT NULL REFERENCES positions(position_id),
                owner                TEXT NOT NULL,
                penalty_amount       INTEGER NOT NULL,
                to_reward_pool       INTEGER NOT NULL,
                to_treasury          INTEGER NOT NULL,
                tier_penalty_rate_bp INTEGER NOT NULL,
                created_ts           INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS global_state (
                id                  INTEGER PRIMARY KEY CHECK (id = 1),
                epoch               INTEGER NOT NULL DEFAULT 0,
                epoch_start_ts      INTEGER NOT NULL DEFAULT 0,
                weekly_emission     INTEGER NOT NULL DEFAULT 0,
                total_staked        INTEGER NOT NULL DEFAULT 0,
                total_staking_power INTEGER NOT NULL DEFAULT 0,
                reward_pool_balance INTEGER NOT NULL DEFAULT 0,
                paused              INTEGER NOT NULL DEFAULT 0,
                version             INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("INSERT OR IGNORE INTO global_state (id) VALUES (1)")
        c.execute("""
            CREATE TABLE IF NOT EXISTS ledger_intents (
                intent_id       TEXT PRIMARY KEY,
                kind            TEXT NOT NULL,
                owner           TEXT NOT NULL,
                address         TEXT NOT NULL,
                seed            INTEGER NOT NULL,
                payload_json    TEXT NOT NULL DEFAULT '{}',
                status          TEXT NOT NULL,
                attempts        INTEGER NOT NULL DEFAULT 0,
                next_attempt_ts INTEGER NOT NULL DEFAULT 0,
                created_ts      INTEGER NOT NULL,
                last_error      TEXT,
                signature       TEXT
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS ledger_events (
                signature    TEXT PRIMARY KEY,
                instruction  TEXT NOT NULL,
                slot         INTEGER NOT NULL,
                timestamp    INTEGER NOT NULL,
                commitment   TEXT NOT NULL,
                payload_json TEXT NOT NULL DEFAULT '{}',
                ingested_ts  INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.execute(
            "CREATE INDEX IF NOT EXISTS idx_positions_cooldown "
            "ON positions (active, cooldown_end_ts)"
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS idx_intents_due "
            "ON ledger_intents (status, next_attempt_ts)"
        )

    def _ensure_schema_version(self) -> None:
        """Check / set schema version; run migrations when needed."""
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        else:
            db_ver = row["version"]
            if db_ver < self.CURRENT_SCHEMA_VERSION:
                self._migrate(db_ver, self.CURRENT_SCHEMA_VERSION)
            elif db_ver > self.CURRENT_SCHEMA_VERSION:
                raise RuntimeError(
                    f"Database schema v{db_ver} is newer than this software "
                    f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade StakeFlow."
                )

    def _migrate(self, from_ver: int, to_ver: int) -> None:
        logger.info(f"Migrating database schema v{from_ver} → v{to_ver}")
        self._conn.execute(
            "UPDATE schema_version SET version = ? WHERE id = 1", (to_ver,)
        )

    # ── transactions ─────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Serialized write transaction; nested calls join the outer one."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._depth = 0
            self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self.transaction():
            return self._conn.execute(sql, params)

    # ── tiers ────────────────────────────────────────────────────

    def save_tier(self, tier: Tier) -> None:
        self._write(
            """INSERT OR REPLACE INTO tiers
               (tier_id, penalty_rate_bp, min_duration_months,
                max_duration_months, active)
               VALUES (?, ?, ?, ?, ?)""",
            (tier.tier_id, tier.penalty_rate_bp, tier.min_duration_months,
             tier.max_duration_months, int(tier.active)),
        )

    def get_tier(self, tier_id: int) -> Optional[Tier]:
        row = self._query_one("SELECT * FROM tiers WHERE tier_id = ?", (tier_id,))
        return Tier.from_row(row) if row else None

    def load_tiers(self) -> list[Tier]:
        rows = self._query("SELECT * FROM tiers ORDER BY tier_id")
        return [Tier.from_row(r) for r in rows]

    def count_live_positions(self, tier_id: int) -> int:
        row = self._query_one(
            """SELECT COUNT(*) AS n FROM positions
               WHERE tier_id = ? AND (active = 1 OR cooldown_end_ts IS NOT NULL)""",
            (tier_id,),
        )
        return row["n"] if row else 0

    # ── positions ────────────────────────────────────────────────

    def insert_position(self, p: Position) -> None:
        try:
            self._write(
                """INSERT INTO positions
                   (position_id, owner, position_seed, address, principal_amount,
                    duration_months, tier_id, power_multiplier_bp, staking_power,
                    start_ts, unlock_ts, last_accrual_ts, last_claim_ts,
                    cooldown_end_ts, pending_principal, active,
                    aggregate_released, version)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (p.position_id, p.owner, p.position_seed, p.address,
                 p.principal_amount, p.duration_months, p.tier_id,
                 p.power_multiplier_bp, p.staking_power, p.start_ts,
                 p.unlock_ts, p.last_accrual_ts, p.last_claim_ts,
                 p.cooldown_end_ts, p.pending_principal, int(p.active),
                 int(p.aggregate_released), p.version),
            )
        except sqlite3.IntegrityError as exc:
            raise PositionExists(
                f"Position seed {p.position_seed} already used by {p.owner}"
            ) from exc

    def update_position(self, p: Position) -> None:
        """Compare-and-swap write; bumps ``p.version`` on success."""
        cur = self._write(
            """UPDATE positions SET
                 principal_amount = ?, staking_power = ?,
                 last_accrual_ts = ?, last_claim_ts = ?,
                 cooldown_end_ts = ?, pending_principal = ?,
                 active = ?, aggregate_released = ?,
                 version = version + 1
               WHERE position_id = ? AND version = ?""",
            (p.principal_amount, p.staking_power, p.last_accrual_ts,
             p.last_claim_ts, p.cooldown_end_ts, p.pending_principal,
             int(p.active), int(p.aggregate_released),
             p.position_id, p.version),
        )
        if cur.rowcount != 1:
            raise ConcurrencyConflict(
                f"Position {p.position_id} changed concurrently (v{p.version})"
            )
        p.version += 1

    def get_position(self, owner: str, seed: int) -> Optional[Position]:
        row = self._query_one(
            "SELECT * FROM positions WHERE owner = ? AND position_seed = ?",
            (owner, seed),
        )
        return Position.from_row(row) if row else None

    def get_position_by_id(self, position_id: str) -> Optional[Position]:
        row = self._query_one(
            "SELECT * FROM positions WHERE position_id = ?", (position_id,)
        )
        return Position.from_row(row) if row else None

    def list_positions(
        self, owner: Optional[str] = None, active: Optional[bool] = None,
    ) -> list[Position]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if active is not None:
            clauses.append("active = ?")
            params.append(int(active))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(
            f"SELECT * FROM positions {where} ORDER BY start_ts DESC, rowid DESC",
            tuple(params),
        )
        return [Position.from_row(r) for r in rows]

    def cooldowns_due(self, now: int) -> list[Position]:
        rows = self._query(
            """SELECT * FROM positions
               WHERE active = 0
                 AND cooldown_end_ts IS NOT NULL AND cooldown_end_ts <= ?
                 AND pending_principal IS NOT NULL AND pending_principal > 0
                 AND aggregate_released = 0
               ORDER BY cooldown_end_ts, rowid""",
            (now,),
        )
        return [Position.from_row(r) for r in rows]

    def touch_active_accruals(self, now: int) -> int:
        cur = self._write(
            """UPDATE positions SET last_accrual_ts = ?, version = version + 1
               WHERE active = 1 AND last_accrual_ts < ?""",
            (now, now),
        )
        return cur.rowcount

    def sum_positions(self, unreleased_only: bool = False) -> tuple[int, int]:
        """``(principal, staking_power)`` summed over active or unreleased rows."""
        where = "aggregate_released = 0" if unreleased_only else "active = 1"
        row = self._query_one(
            f"""SELECT COALESCE(SUM(principal_amount), 0) AS principal,
                       COALESCE(SUM(staking_power), 0) AS power
                FROM positions WHERE {where}"""
        )
        return (row["principal"], row["power"]) if row else (0, 0)

    def tier_breakdown(self) -> list[dict[str, Any]]:
        rows = self._query(
            """SELECT tier_id, COUNT(*) AS count,
                      SUM(principal_amount) AS total_staked,
                      SUM(staking_power) AS total_staking_power
               FROM positions WHERE active = 1
               GROUP BY tier_id ORDER BY tier_id"""
        )
        return [dict(r) for r in rows]

    def top_owners(self, limit: int = 10) -> list[dict[str, Any]]:
        rows = self._query(
            """SELECT owner, COUNT(*) AS positions,
                      SUM(principal_amount) AS total_staked,
                      SUM(staking_power) AS total_staking_power
               FROM positions WHERE active = 1
               GROUP BY owner
               ORDER BY total_staking_power DESC, owner
               LIMIT ?""",
            (limit,),
        )
        return [dict(r) for r in rows]

    def count_positions(self, active: Optional[bool] = None) -> int:
        if active is None:
            row = self._query_one("SELECT COUNT(*) AS n FROM positions")
        else:
            row = self._query_one(
                "SELECT COUNT(*) AS n FROM positions WHERE active = ?",
                (int(active),),
            )
        return row["n"] if row else 0

    # ── reward receipts ──────────────────────────────────────────

    def insert_receipt(self, r: RewardReceipt) -> None:
        try:
            self._write(
                """INSERT INTO reward_receipts
                   (receipt_id, owner, position_id, nft_seed, address,
                    reward_amount, vest_ts, created_ts, active, vested_ts, version)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (r.receipt_id, r.owner, r.position_id, r.nft_seed, r.address,
                 r.reward_amount, r.vest_ts, r.created_ts, int(r.active),
                 r.vested_ts, r.version),
            )
        except sqlite3.IntegrityError as exc:
            raise PositionExists(
                f"Receipt seed {r.nft_seed} already used by {r.owner}"
            ) from exc

    def update_receipt(self, r: RewardReceipt) -> None:
        cur = self._write(
            """UPDATE reward_receipts SET
                 active = ?, vested_ts = ?, version = version + 1
               WHERE receipt_id = ? AND version = ?""",
            (int(r.active), r.vested_ts, r.receipt_id, r.version),
        )
        if cur.rowcount != 1:
            raise ConcurrencyConflict(
                f"Receipt {r.receipt_id} changed concurrently (v{r.version})"
            )
        r.version += 1

    def get_receipt(self, owner: str, nft_seed: int) -> Optional[RewardReceipt]:
        row = self._query_one(
            "SELECT * FROM reward_receipts WHERE owner = ? AND nft_seed = ?",
            (owner, nft_seed),
        )
        return RewardReceipt.from_row(row) if row else None

    def list_receipts(
        self, owner: Optional[str] = None, active: Optional[bool] = None,
    ) -> list[RewardReceipt]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if active is not None:
            clauses.append("active = ?")
            params.append(int(active))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(
            f"SELECT * FROM reward_receipts {where} "
            f"ORDER BY created_ts DESC, rowid DESC",
            tuple(params),
        )
        return [RewardReceipt.from_row(r) for r in rows]

    def count_receipts(self, active: Optional[bool] = None) -> int:
        if active is None:
            row = self._query_one("SELECT COUNT(*) AS n FROM reward_receipts")
        else:
            row = self._query_one(
                "SELECT COUNT(*) AS n FROM reward_receipts WHERE active = ?",
                (int(active),),
            )
        return row["n"] if row else 0

    # ── penalty records ──────────────────────────────────────────

    def insert_penalty(self, rec: PenaltyRecord) -> int:
        cur = self._write(
            """INSERT INTO penalty_records
               (position_id, owner, penalty_amount, to_reward_pool,
                to_treasury, tier_penalty_rate_bp, created_ts)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (rec.position_id, rec.owner, rec.penalty_amount,
             rec.to_reward_pool, rec.to_treasury, rec.tier_penalty_rate_bp,
             rec.created_ts),
        )
        rec.record_id = cur.lastrowid
        return rec.record_id

    def list_penalties(self, position_id: Optional[str] = None) -> list[PenaltyRecord]:
        if position_id is None:
            rows = self._query("SELECT * FROM penalty_records ORDER BY record_id")
        else:
            rows = self._query(
                "SELECT * FROM penalty_records WHERE position_id = ? "
                "ORDER BY record_id",
                (position_id,),
            )
        return [PenaltyRecord.from_row(r) for r in rows]

    # ── global state ─────────────────────────────────────────────

    def load_global_state(self) -> GlobalState:
        row = self._query_one("SELECT * FROM global_state WHERE id = 1")
        assert row is not None
        return GlobalState.from_row(row)

    def update_global_state(self, s: GlobalState) -> None:
        cur = self._write(
            """UPDATE global_state SET
                 epoch = ?, epoch_start_ts = ?, weekly_emission = ?,
                 total_staked = ?, total_staking_power = ?,
                 reward_pool_balance = ?, paused = ?,
                 version = version + 1
               WHERE id = 1 AND version = ?""",
            (s.epoch, s.epoch_start_ts, s.weekly_emission, s.total_staked,
             s.total_staking_power, s.reward_pool_balance, int(s.paused),
             s.version),
        )
        if cur.rowcount != 1:
            raise ConcurrencyConflict(
                f"Global state changed concurrently (v{s.version})"
            )
        s.version += 1

    # ── ledger intents (outbox) ──────────────────────────────────

    def insert_intent(self, i: LedgerIntent) -> None:
        self._write(
            """INSERT INTO ledger_intents
               (intent_id, kind, owner, address, seed, payload_json, status,
                attempts, next_attempt_ts, created_ts, last_error, signature)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (i.intent_id, i.kind.value, i.owner, i.address, i.seed,
             json.dumps(i.payload, default=str), i.status.value, i.attempts,
             i.next_attempt_ts, i.created_ts, i.last_error, i.signature),
        )

    def update_intent(self, i: LedgerIntent) -> None:
        self._write(
            """UPDATE ledger_intents SET
                 status = ?, attempts = ?, next_attempt_ts = ?,
                 last_error = ?, signature = ?
               WHERE intent_id = ?""",
            (i.status.value, i.attempts, i.next_attempt_ts, i.last_error,
             i.signature, i.intent_id),
        )

    def get_intent(self, intent_id: str) -> Optional[LedgerIntent]:
        row = self._query_one(
            "SELECT * FROM ledger_intents WHERE intent_id = ?", (intent_id,)
        )
        return LedgerIntent.from_row(row) if row else None

    def get_intent_by_signature(self, signature: str) -> Optional[LedgerIntent]:
        row = self._query_one(
            "SELECT * FROM ledger_intents WHERE signature = ?", (signature,)
        )
        return LedgerIntent.from_row(row) if row else None

    def due_intents(self, now: int, limit: int = 100) -> list[LedgerIntent]:
        rows = self._query(
            """SELECT * FROM ledger_intents
               WHERE status = ? AND next_attempt_ts <= ?
               ORDER BY next_attempt_ts, created_ts, rowid
               LIMIT ?""",
            (IntentStatus.PENDING.value, now, limit),
        )
        return [LedgerIntent.from_row(r) for r in rows]

    def list_intents(self, status: Optional[IntentStatus] = None) -> list[LedgerIntent]:
        if status is None:
            rows = self._query("SELECT * FROM ledger_intents ORDER BY rowid")
        else:
            rows = self._query(
                "SELECT * FROM ledger_intents WHERE status = ? ORDER BY rowid",
                (status.value,),
            )
        return [LedgerIntent.from_row(r) for r in rows]

    # ── ledger events ────────────────────────────────────────────

    def get_event(self, signature: str) -> Optional[LedgerEvent]:
        row = self._query_one(
            "SELECT * FROM ledger_events WHERE signature = ?", (signature,)
        )
        return LedgerEvent.from_row(row) if row else None

    def insert_event(self, e: LedgerEvent) -> bool:
        """Insert an event; returns False if the signature is already known."""
        cur = self._write(
            """INSERT OR IGNORE INTO ledger_events
               (signature, instruction, slot, timestamp, commitment,
                payload_json, ingested_ts)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (e.signature, e.instruction, e.slot, e.timestamp,
             e.commitment.value, json.dumps(e.payload, default=str),
             e.ingested_ts),
        )
        return cur.rowcount == 1

    def mark_event_finalized(self, signature: str) -> bool:
        cur = self._write(
            "UPDATE ledger_events SET commitment = ? "
            "WHERE signature = ? AND commitment != ?",
            (Commitment.FINALIZED.value, signature, Commitment.FINALIZED.value),
        )
        return cur.rowcount == 1

    def latest_event_slot(self) -> int:
        row = self._query_one("SELECT MAX(slot) AS slot FROM ledger_events")
        return row["slot"] if row and row["slot"] is not None else 0

    def event_counts(self) -> dict[str, int]:
        rows = self._query(
            "SELECT instruction, COUNT(*) AS n FROM ledger_events "
            "GROUP BY instruction ORDER BY instruction"
        )
        return {r["instruction"]: r["n"] for r in rows}

    def count_events(self, finalized: Optional[bool] = None) -> int:
        if finalized is None:
            row = self._query_one("SELECT COUNT(*) AS n FROM ledger_events")
        else:
            op = "=" if finalized else "!="
            row = self._query_one(
                f"SELECT COUNT(*) AS n FROM ledger_events WHERE commitment {op} ?",
                (Commitment.FINALIZED.value,),
            )
        return row["n"] if row else 0

    def unfinalized_signatures(self, limit: int = 100) -> list[str]:
        rows = self._query(
            "SELECT signature FROM ledger_events WHERE commitment != ? "
            "ORDER BY slot LIMIT ?",
            (Commitment.FINALIZED.value, limit),
        )
        return [r["signature"] for r in rows]

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
