import contextlib
import logging
import sqlite3
import time
from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import Agent, Checkpoint, IdentityMapping, LedgerTransition
from .utils import ZERO

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # autocommit; transaction() is the only place a transaction begins
        self.conn = sqlite3.connect(db_path, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS sync_status (
                chain_type TEXT PRIMARY KEY,
                last_position INTEGER NOT NULL,
                cursor_metadata TEXT,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS trades (
                trader TEXT NOT NULL,
                subject TEXT NOT NULL,
                chain_type TEXT NOT NULL,
                share_amount TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(trader, subject, chain_type)
            );

            CREATE INDEX IF NOT EXISTS idx_trades_trader_chain
                ON trades(trader, chain_type);

            CREATE TABLE IF NOT EXISTS user_mappings (
                address TEXT NOT NULL,
                chain_type TEXT NOT NULL,
                external_identity TEXT NOT NULL,
                gated_flag INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(address, chain_type)
            );

            CREATE TABLE IF NOT EXISTS applied_events (
                chain_type TEXT NOT NULL,
                event_key TEXT NOT NULL,
                applied_at INTEGER NOT NULL,
                PRIMARY KEY(chain_type, event_key)
            );

            CREATE TABLE IF NOT EXISTS telegram_bots (
                agent_name TEXT PRIMARY KEY,
                bio TEXT,
                invite_url TEXT NOT NULL,
                bot_token TEXT NOT NULL,
                chat_group_id TEXT NOT NULL,
                subject_address TEXT NOT NULL,
                chain_type TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_telegram_bots_subject
                ON telegram_bots(subject_address, chain_type);
            CREATE INDEX IF NOT EXISTS idx_telegram_bots_chat
                ON telegram_bots(chat_group_id, chain_type);
            """
        )

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    # checkpoints

    def get_checkpoint(self, chain_type: str) -> Optional[Checkpoint]:
        row = self.conn.execute(
            "SELECT last_position, cursor_metadata FROM sync_status WHERE chain_type = ?",
            (chain_type,),
        ).fetchone()
        if not row:
            return None
        return Checkpoint(chain_type, int(row["last_position"]), row["cursor_metadata"])

    def load_or_init_checkpoint(
        self, chain_type: str, position: int, cursor_token: Optional[str] = None
    ) -> Checkpoint:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO sync_status(chain_type, last_position, cursor_metadata, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (chain_type, int(position), cursor_token, int(time.time())),
            )
        checkpoint = self.get_checkpoint(chain_type)
        if checkpoint is None:
            raise sqlite3.DatabaseError(f"checkpoint for {chain_type} was not persisted")
        return checkpoint

    def save_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        # last_position never moves backwards; the cursor token is replaced as-is.
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_status(chain_type, last_position, cursor_metadata, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(chain_type) DO UPDATE SET
                    last_position = MAX(sync_status.last_position, excluded.last_position),
                    cursor_metadata = excluded.cursor_metadata,
                    updated_at = excluded.updated_at
                """,
                (
                    checkpoint.chain_type,
                    int(checkpoint.position),
                    checkpoint.cursor_token,
                    int(time.time()),
                ),
            )
        saved = self.get_checkpoint(checkpoint.chain_type)
        if saved is None:
            raise sqlite3.DatabaseError(f"checkpoint for {checkpoint.chain_type} was not persisted")
        return saved

    def list_checkpoints(self) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM sync_status ORDER BY chain_type ASC"
        ).fetchall()
        return [dict(r) for r in rows]

    # ledger

    def _claim_event(self, conn: sqlite3.Connection, chain_type: str, event_key: Optional[str]) -> bool:
        if not event_key:
            return True
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO applied_events(chain_type, event_key, applied_at)
            VALUES (?, ?, ?)
            """,
            (chain_type, event_key, int(time.time())),
        )
        return cur.rowcount > 0

    def _read_amount(
        self, conn: sqlite3.Connection, trader: str, subject: str, chain_type: str
    ) -> Optional[Decimal]:
        row = conn.execute(
            """
            SELECT share_amount FROM trades
            WHERE trader = ? AND subject = ? AND chain_type = ?
            """,
            (trader, subject, chain_type),
        ).fetchone()
        return Decimal(str(row["share_amount"])) if row else None

    def _write_amount(
        self, conn: sqlite3.Connection, trader: str, subject: str, chain_type: str, amount: Decimal
    ) -> None:
        conn.execute(
            """
            INSERT INTO trades(trader, subject, chain_type, share_amount, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(trader, subject, chain_type) DO UPDATE SET
                share_amount = excluded.share_amount,
                updated_at = excluded.updated_at
            """,
            (trader, subject, chain_type, format(amount, "f"), int(time.time())),
        )

    def _read_mapping(
        self, conn: sqlite3.Connection, address: str, chain_type: str
    ) -> Optional[IdentityMapping]:
        row = conn.execute(
            """
            SELECT address, chain_type, external_identity, gated_flag
            FROM user_mappings
            WHERE address = ? AND chain_type = ?
            """,
            (address, chain_type),
        ).fetchone()
        if not row:
            return None
        return IdentityMapping(
            address=row["address"],
            chain_type=row["chain_type"],
            external_identity=row["external_identity"],
            gated_flag=bool(row["gated_flag"]),
        )

    def apply_buy(
        self,
        chain_type: str,
        trader: str,
        subject: str,
        amount: Decimal,
        event_key: Optional[str] = None,
    ) -> Optional[LedgerTransition]:
        with self.transaction() as conn:
            if not self._claim_event(conn, chain_type, event_key):
                return None
            previous = self._read_amount(conn, trader, subject, chain_type)
            prev = previous if previous is not None else ZERO
            balance = prev + amount
            self._write_amount(conn, trader, subject, chain_type, balance)
            mapping = self._read_mapping(conn, trader, chain_type)
        return LedgerTransition(
            chain_type=chain_type,
            trader=trader,
            subject=subject,
            is_buy=True,
            amount=amount,
            previous=prev,
            balance=balance,
            found=previous is not None,
            mapping=mapping,
        )

    def apply_sell(
        self,
        chain_type: str,
        trader: str,
        subject: str,
        amount: Decimal,
        event_key: Optional[str] = None,
    ) -> Optional[LedgerTransition]:
        with self.transaction() as conn:
            if not self._claim_event(conn, chain_type, event_key):
                return None
            previous = self._read_amount(conn, trader, subject, chain_type)
            if previous is None:
                return LedgerTransition(
                    chain_type=chain_type,
                    trader=trader,
                    subject=subject,
                    is_buy=False,
                    amount=amount,
                    previous=ZERO,
                    balance=ZERO,
                    found=False,
                )
            balance = previous - amount
            clamped = balance < 0
            if clamped:
                balance = ZERO
            self._write_amount(conn, trader, subject, chain_type, balance)
            mapping = self._read_mapping(conn, trader, chain_type)
            gated_now = False
            if balance == 0 and mapping is not None:
                conn.execute(
                    """
                    UPDATE user_mappings SET gated_flag = 1, updated_at = ?
                    WHERE address = ? AND chain_type = ?
                    """,
                    (int(time.time()), trader, chain_type),
                )
                mapping = replace(mapping, gated_flag=True)
                gated_now = True
        return LedgerTransition(
            chain_type=chain_type,
            trader=trader,
            subject=subject,
            is_buy=False,
            amount=amount,
            previous=previous,
            balance=balance,
            found=True,
            mapping=mapping,
            gated_now=gated_now,
            clamped=clamped,
        )

    def get_share_amount(self, trader: str, subject: str, chain_type: str) -> Decimal:
        amount = self._read_amount(self.conn, trader, subject, chain_type)
        return amount if amount is not None else ZERO

    def list_user_shares(self, trader: str, chain_type: str) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT trader, subject, share_amount, chain_type
            FROM trades
            WHERE trader = ? AND chain_type = ?
            ORDER BY subject ASC
            """,
            (trader, chain_type),
        ).fetchall()
        return [dict(r) for r in rows]

    def is_event_applied(self, chain_type: str, event_key: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM applied_events WHERE chain_type = ? AND event_key = ?",
            (chain_type, event_key),
        ).fetchone()
        return row is not None

    # identity mappings

    def get_identity_mapping(self, address: str, chain_type: str) -> Optional[IdentityMapping]:
        return self._read_mapping(self.conn, address, chain_type)

    def upsert_identity_mapping(
        self, address: str, chain_type: str, external_identity: str
    ) -> IdentityMapping:
        now = int(time.time())
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_mappings(address, chain_type, external_identity, gated_flag, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                ON CONFLICT(address, chain_type) DO UPDATE SET
                    external_identity = excluded.external_identity,
                    updated_at = excluded.updated_at
                """,
                (address, chain_type, external_identity, now, now),
            )
        mapping = self.get_identity_mapping(address, chain_type)
        if mapping is None:
            raise sqlite3.DatabaseError(f"identity mapping for {address} was not persisted")
        return mapping

    def set_gated_flag(self, address: str, chain_type: str, gated: bool) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE user_mappings SET gated_flag = ?, updated_at = ?
                WHERE address = ? AND chain_type = ?
                """,
                (1 if gated else 0, int(time.time()), address, chain_type),
            )

    # agents

    def _agent_from_row(self, row: sqlite3.Row) -> Agent:
        return Agent(
            agent_name=row["agent_name"],
            subject_address=row["subject_address"],
            chain_type=row["chain_type"],
            chat_group_id=row["chat_group_id"],
            bot_token=row["bot_token"],
            invite_url=row["invite_url"],
            bio=row["bio"],
            created_at=int(row["created_at"]),
        )

    def add_agent(
        self,
        *,
        agent_name: str,
        bot_token: str,
        chat_group_id: str,
        subject_address: str,
        chain_type: str,
        invite_url: str,
        bio: Optional[str] = None,
    ) -> Agent:
        agent_name = agent_name.strip()
        if not agent_name:
            raise ValueError("agent_name cannot be empty")
        now = int(time.time())
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO telegram_bots(
                    agent_name, bio, invite_url, bot_token, chat_group_id,
                    subject_address, chain_type, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (agent_name, bio, invite_url, bot_token, chat_group_id, subject_address, chain_type, now),
            )
        agent = self.get_agent(agent_name)
        if agent is None:
            raise sqlite3.DatabaseError(f"agent {agent_name} was not persisted")
        return agent

    def count_agents(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS n FROM telegram_bots").fetchone()
        return int(row["n"])

    def list_agents(self, page: int = 1, page_size: int = 10) -> List[Agent]:
        offset = (max(1, page) - 1) * page_size
        rows = self.conn.execute(
            """
            SELECT * FROM telegram_bots
            ORDER BY created_at DESC, agent_name ASC
            LIMIT ? OFFSET ?
            """,
            (page_size, offset),
        ).fetchall()
        return [self._agent_from_row(r) for r in rows]

    def get_agent(self, agent_name: str) -> Optional[Agent]:
        row = self.conn.execute(
            "SELECT * FROM telegram_bots WHERE agent_name = ?", (agent_name,)
        ).fetchone()
        return self._agent_from_row(row) if row else None

    def find_agent_by_chat(self, chat_group_id: str, chain_type: str) -> Optional[Agent]:
        row = self.conn.execute(
            """
            SELECT * FROM telegram_bots
            WHERE chat_group_id = ? AND chain_type = ?
            ORDER BY created_at ASC LIMIT 1
            """,
            (chat_group_id, chain_type),
        ).fetchone()
        return self._agent_from_row(row) if row else None

    def find_agent_by_subject(self, subject_address: str, chain_type: str) -> Optional[Agent]:
        row = self.conn.execute(
            """
            SELECT * FROM telegram_bots
            WHERE subject_address = ? AND chain_type = ?
            ORDER BY created_at ASC LIMIT 1
            """,
            (subject_address, chain_type),
        ).fetchone()
        return self._agent_from_row(row) if row else None
