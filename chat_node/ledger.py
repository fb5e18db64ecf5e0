# chat_node/ledger.py
"""
Ledger boundary.

The chat program keeps two kinds of accounts:

  ChatAccount   {participants: [wallet; 2], messages: [MessageEntry], bump}
  UserProfile   {wallet, nicknames: [{wallet, nickname}], history: [wallet], bump}

LocalLedger applies the program's rules against SQLite so a node can run
without a chain. Reads of accounts that do not exist yet return empty
results; writes go through submit(), which retries transient failures and
confirms the transaction.
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import base58
from nacl.utils import random as nacl_random

from chat_node.address import canonical_address, find_mailbox, find_profile
from chat_node.config import (
    LEDGER_COMMITMENT,
    LEDGER_MAX_RETRIES,
    MAX_IPFS_HASH_LENGTH,
    MAX_MESSAGES,
    MAX_NICKNAME_LENGTH,
    MAX_PROFILE_ENTRIES,
)
from chat_node.database import get_db
from chat_node.errors import (
    AddressNotFound,
    ChatError,
    HashTooLong,
    LedgerWriteFailed,
    NicknameTooLong,
    Unauthorized,
)

logger = logging.getLogger(__name__)

COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")


@dataclass(frozen=True)
class MessagePointer:
    sender: str
    payload_ref: str
    timestamp: int
    # position in the account's message list
    index: int


@dataclass(frozen=True)
class NicknameEntry:
    wallet: str
    nickname: str


class Ledger(Protocol):
    async def account_exists(self, address: str) -> bool: ...

    async def init_chat(self, sender: str, receiver: str) -> str: ...

    async def append_message(self, mailbox: str, sender: str, payload_ref: str) -> str: ...

    async def send_message(self, sender: str, receiver: str, payload_ref: str) -> str: ...

    async def list_pointers(self, mailbox: str) -> list[MessagePointer]: ...

    async def init_user_profile(self, wallet: str) -> str: ...

    async def set_nickname(self, authority: str, wallet: str, nickname: str) -> str: ...

    async def fetch_nicknames(self, user: str) -> list[NicknameEntry]: ...

    async def fetch_history(self, user: str) -> list[str]: ...


class LocalLedger:
    def __init__(
        self,
        conn: sqlite3.Connection | None = None,
        *,
        max_retries: int = LEDGER_MAX_RETRIES,
        commitment: str = LEDGER_COMMITMENT,
        clock: Callable[[], float] = time.time,
    ):
        if commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"Invalid commitment: {commitment}")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self._conn = conn
        self.max_retries = max_retries
        self.commitment = commitment
        self.clock = clock

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn if self._conn is not None else get_db()

    # -----------------------------------------------------
    # Transactions
    # -----------------------------------------------------

    async def submit(self, instruction: str, apply: Callable[[sqlite3.Cursor], None]) -> str:
        """
        Run *apply* as one atomic transaction, retrying while the database is
        busy. Program errors are not retried.
        Returns the transaction signature.
        """
        last_exc = None
        for attempt in range(self.max_retries):
            try:
                signature = self._execute(instruction, apply)
            except sqlite3.OperationalError as exc:
                last_exc = exc
                if attempt < self.max_retries - 1:
                    wait = 0.05 * 2 ** attempt
                    logger.warning(
                        "Ledger retry %d/%d for %s in %.2fs: %s",
                        attempt + 1, self.max_retries, instruction, wait, exc,
                    )
                    await asyncio.sleep(wait)
                continue

            self._confirm(signature)
            logger.info("%s confirmed (%s): %s", instruction, self.commitment, signature)
            return signature

        raise LedgerWriteFailed(
            f"{instruction} failed after {self.max_retries} attempts: {last_exc}"
        ) from last_exc

    def _execute(self, instruction: str, apply) -> str:
        signature = base58.b58encode(nacl_random(64)).decode()
        conn = self.conn
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            apply(cur)
            cur.execute(
                "INSERT INTO transactions(signature, instruction, commitment, err) VALUES (?, ?, ?, NULL)",
                (signature, instruction, self.commitment),
            )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            if isinstance(exc, ChatError):
                logger.error("%s rejected: %s", instruction, exc)
            raise
        return signature

    def _confirm(self, signature: str):
        row = self.conn.execute(
            "SELECT err FROM transactions WHERE signature = ?", (signature,)
        ).fetchone()
        if row is None:
            raise LedgerWriteFailed(f"transaction {signature} not found after submit")
        if row["err"]:
            raise LedgerWriteFailed(f"transaction {signature} failed: {row['err']}")

    def get_signature_status(self, signature: str) -> dict | None:
        row = self.conn.execute(
            "SELECT slot, instruction, commitment, err FROM transactions WHERE signature = ?",
            (signature,),
        ).fetchone()
        if row is None:
            return None
        return {
            "slot": row["slot"],
            "instruction": row["instruction"],
            "confirmation_status": row["commitment"],
            "err": row["err"],
        }

    # -----------------------------------------------------
    # Reads
    # -----------------------------------------------------

    async def account_exists(self, address: str) -> bool:
        address = canonical_address(address)
        row = self.conn.execute(
            """
            SELECT 1 FROM chat_accounts WHERE address = ?
            UNION ALL
            SELECT 1 FROM user_profiles WHERE address = ?
            """,
            (address, address),
        ).fetchone()
        return row is not None

    async def get_chat_account(self, mailbox: str) -> dict:
        mailbox = canonical_address(mailbox)
        row = self.conn.execute(
            "SELECT participant_a, participant_b, bump FROM chat_accounts WHERE address = ?",
            (mailbox,),
        ).fetchone()
        if row is None:
            raise AddressNotFound(f"chat account {mailbox} not initialized")
        return {
            "participants": [row["participant_a"], row["participant_b"]],
            "messages": await self.list_pointers(mailbox),
            "bump": row["bump"],
        }

    async def list_pointers(self, mailbox: str) -> list[MessagePointer]:
        """
        All message pointers of a mailbox in ledger order. A mailbox nobody
        has initialised yet is an empty conversation.
        """
        mailbox = canonical_address(mailbox)
        rows = self.conn.execute(
            """
            SELECT sender, ipfs_hash, timestamp
            FROM chat_messages
            WHERE address = ?
            ORDER BY id
            """,
            (mailbox,),
        ).fetchall()

        return [
            MessagePointer(
                sender=r["sender"],
                payload_ref=r["ipfs_hash"],
                timestamp=r["timestamp"],
                index=i,
            )
            for i, r in enumerate(rows)
        ]

    async def fetch_nicknames(self, user: str) -> list[NicknameEntry]:
        profile, _bump = find_profile(user)
        rows = self.conn.execute(
            "SELECT wallet, nickname FROM nicknames WHERE profile = ? ORDER BY position",
            (profile,),
        ).fetchall()
        return [NicknameEntry(wallet=r["wallet"], nickname=r["nickname"]) for r in rows]

    async def fetch_history(self, user: str) -> list[str]:
        profile, _bump = find_profile(user)
        rows = self.conn.execute(
            "SELECT wallet FROM history WHERE profile = ? ORDER BY position",
            (profile,),
        ).fetchall()
        return [r["wallet"] for r in rows]

    # -----------------------------------------------------
    # Instructions
    # -----------------------------------------------------

    async def init_user_profile(self, wallet: str) -> str:
        wallet = canonical_address(wallet)
        profile, bump = find_profile(wallet)

        def apply(cur):
            _create_profile(cur, profile, wallet, bump)

        return await self.submit("initUserProfile", apply)

    async def init_chat(self, sender: str, receiver: str) -> str:
        """
        Create the mailbox for (sender, receiver) and record the receiver in
        the sender's chat history. Safe to call again for an existing pair.
        """
        sender = canonical_address(sender)
        receiver = canonical_address(receiver)
        mailbox, bump = find_mailbox(sender, receiver)
        profile, profile_bump = find_profile(sender)

        def apply(cur):
            exists = cur.execute(
                "SELECT 1 FROM chat_accounts WHERE address = ?", (mailbox,)
            ).fetchone()
            if exists is None:
                cur.execute(
                    "INSERT INTO chat_accounts(address, participant_a, participant_b, bump) VALUES (?, ?, ?, ?)",
                    (mailbox, sender, receiver, bump),
                )
            _create_profile(cur, profile, sender, profile_bump)
            _append_unique(cur, "history", profile, receiver)

        signature = await self.submit("initChat", apply)
        logger.info("Chat %s initialized for %s <-> %s", mailbox, sender, receiver)
        return signature

    async def append_message(self, mailbox: str, sender: str, payload_ref: str) -> str:
        mailbox = canonical_address(mailbox)
        sender = canonical_address(sender)
        if len(payload_ref) > MAX_IPFS_HASH_LENGTH:
            raise HashTooLong()

        timestamp = int(self.clock())

        def apply(cur):
            row = cur.execute(
                "SELECT participant_a, participant_b FROM chat_accounts WHERE address = ?",
                (mailbox,),
            ).fetchone()
            if row is None:
                raise AddressNotFound(f"chat account {mailbox} not initialized")
            if sender not in (row["participant_a"], row["participant_b"]):
                raise Unauthorized()

            count = cur.execute(
                "SELECT COUNT(*) FROM chat_messages WHERE address = ?", (mailbox,)
            ).fetchone()[0]
            if count >= MAX_MESSAGES:
                cur.execute(
                    """
                    DELETE FROM chat_messages WHERE id = (
                        SELECT MIN(id) FROM chat_messages WHERE address = ?
                    )
                    """,
                    (mailbox,),
                )

            cur.execute(
                "INSERT INTO chat_messages(address, sender, ipfs_hash, timestamp) VALUES (?, ?, ?, ?)",
                (mailbox, sender, payload_ref, timestamp),
            )

        return await self.submit("sendMessage", apply)

    async def send_message(self, sender: str, receiver: str, payload_ref: str) -> str:
        """
        Append a pointer to the pair's mailbox, initialising it first if
        neither side has done so yet.
        """
        mailbox, _bump = find_mailbox(sender, receiver)
        if not await self.account_exists(mailbox):
            logger.info("Chat account %s not initialized, calling initChat", mailbox)
            await self.init_chat(sender, receiver)
        return await self.append_message(mailbox, sender, payload_ref)

    async def set_nickname(self, authority: str, wallet: str, nickname: str) -> str:
        authority = canonical_address(authority)
        wallet = canonical_address(wallet)
        if len(nickname.encode("utf-8")) > MAX_NICKNAME_LENGTH:
            raise NicknameTooLong()

        profile, _bump = find_profile(authority)

        def apply(cur):
            exists = cur.execute(
                "SELECT 1 FROM user_profiles WHERE address = ?", (profile,)
            ).fetchone()
            if exists is None:
                raise AddressNotFound(f"user profile {profile} not initialized")

            updated = cur.execute(
                "UPDATE nicknames SET nickname = ? WHERE profile = ? AND wallet = ?",
                (nickname, profile, wallet),
            ).rowcount
            if not updated:
                position = _next_position(cur, "nicknames", profile)
                cur.execute(
                    "INSERT INTO nicknames(profile, wallet, nickname, position) VALUES (?, ?, ?, ?)",
                    (profile, wallet, nickname, position),
                )

        return await self.submit("setNickname", apply)


# ---------------------------------------------------------
# Cursor helpers (run inside a transaction)
# ---------------------------------------------------------

def _create_profile(cur, profile: str, wallet: str, bump: int):
    cur.execute(
        "INSERT OR IGNORE INTO user_profiles(address, wallet, bump) VALUES (?, ?, ?)",
        (profile, wallet, bump),
    )


def _next_position(cur, table: str, profile: str) -> int:
    count, top = cur.execute(
        f"SELECT COUNT(*), COALESCE(MAX(position), -1) FROM {table} WHERE profile = ?",
        (profile,),
    ).fetchone()
    if count >= MAX_PROFILE_ENTRIES:
        raise LedgerWriteFailed(f"profile {profile} {table} list is full")
    return top + 1


def _append_unique(cur, table: str, profile: str, wallet: str):
    exists = cur.execute(
        f"SELECT 1 FROM {table} WHERE profile = ? AND wallet = ?", (profile, wallet)
    ).fetchone()
    if exists is None:
        position = _next_position(cur, table, profile)
        cur.execute(
            f"INSERT INTO {table}(profile, wallet, position) VALUES (?, ?, ?)",
            (profile, wallet, position),
        )
