# chat_node/database.py

import logging
import sqlite3

from chat_node.config import LEDGER_DB_PATH, ensure_directories

logger = logging.getLogger(__name__)

_conn = None


def _init_schema(conn: sqlite3.Connection):
    # -----------------------------------------------------
    #  CHAT ACCOUNTS (one per participant pair)
    # -----------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS chat_accounts (
            address TEXT PRIMARY KEY,
            participant_a TEXT NOT NULL,
            participant_b TEXT NOT NULL,
            bump INTEGER NOT NULL
        );
    """)

    # -----------------------------------------------------
    #  MESSAGE ENTRIES (append-only log per chat account)
    # -----------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            address TEXT NOT NULL,
            sender TEXT NOT NULL,
            ipfs_hash TEXT NOT NULL,
            timestamp INTEGER NOT NULL
        );
    """)

    # -----------------------------------------------------
    #  USER PROFILES + nickname / history lists
    # -----------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS user_profiles (
            address TEXT PRIMARY KEY,
            wallet TEXT NOT NULL,
            bump INTEGER NOT NULL
        );
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS nicknames (
            profile TEXT NOT NULL,
            wallet TEXT NOT NULL,
            nickname TEXT NOT NULL,
            position INTEGER NOT NULL,
            PRIMARY KEY(profile, wallet)
        );
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS history (
            profile TEXT NOT NULL,
            wallet TEXT NOT NULL,
            position INTEGER NOT NULL,
            PRIMARY KEY(profile, wallet)
        );
    """)

    # -----------------------------------------------------
    #  TRANSACTIONS (signature status lookups)
    # -----------------------------------------------------
    conn.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            slot INTEGER PRIMARY KEY AUTOINCREMENT,
            signature TEXT NOT NULL UNIQUE,
            instruction TEXT NOT NULL,
            commitment TEXT NOT NULL,
            err TEXT NULL
        );
    """)

    # ---- Indexes for common queries ----
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_chat_messages_address ON chat_messages(address, id)"
    )
    conn.commit()


def connect(path) -> sqlite3.Connection:
    """
    Open a ledger database at *path* and make sure the schema exists.
    """
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # ---- Performance pragmas ----
    if str(path) != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

    _init_schema(conn)
    return conn


def get_db():
    """
    Returns the global SQLite connection for the node's local ledger.
    """
    global _conn
    if _conn is None:
        ensure_directories()
        _conn = connect(LEDGER_DB_PATH)
        logger.info("Ledger database initialized (WAL mode, indexes created)")

    return _conn
