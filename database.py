# database.py
import logging
import sqlite3

from config import settings

logger = logging.getLogger("privacy_bsky.db")


def get_conn(db_path=None):
    """
    Returns a fresh SQLite connection with safe settings.
    Each FastAPI request or background task should call this instead of sharing globals.
    """
    conn = sqlite3.connect(db_path or settings["db_path"], check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")  # write-ahead logging for concurrency
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(db_path=None):
    """Initialize database and create tables if they don't exist."""
    conn = get_conn(db_path)
    cur = conn.cursor()

    # Cookie sessions, including the caller's Bluesky tokens
    cur.execute("""
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        did TEXT NOT NULL,
        handle TEXT NOT NULL,
        access_jwt TEXT DEFAULT '',
        refresh_jwt TEXT DEFAULT '',
        email TEXT,
        active INTEGER DEFAULT 1,
        created_at INTEGER NOT NULL
    );
    """)

    # Known users, for handle resolution
    cur.execute("""
    CREATE TABLE IF NOT EXISTS users (
        did TEXT PRIMARY KEY,
        handle TEXT NOT NULL,
        updated_at INTEGER
    );
    """)

    # One row per unordered pair of DIDs
    cur.execute("""
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        participant_a TEXT NOT NULL,
        participant_b TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """)

    # Messages table; content encrypted at rest
    cur.execute("""
    CREATE TABLE IF NOT EXISTS messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        sender TEXT NOT NULL,
        recipient TEXT NOT NULL,
        ciphertext TEXT NOT NULL,
        nonce TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        delivered INTEGER DEFAULT 0,
        read INTEGER DEFAULT 0
    );
    """)

    # Posts table
    cur.execute("""
    CREATE TABLE IF NOT EXISTS posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        author TEXT NOT NULL,
        title TEXT DEFAULT '',
        content TEXT NOT NULL,
        access_level TEXT DEFAULT 'public',
        privacy_score INTEGER DEFAULT 0,
        privacy_technique TEXT DEFAULT 'None',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """)

    # Indexes for performance
    cur.execute("CREATE INDEX IF NOT EXISTS idx_msg_conversation ON messages(conversation_id);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_msg_recipient ON messages(recipient);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_conv_a ON conversations(participant_a);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_conv_b ON conversations(participant_b);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_post_author ON posts(author);")

    conn.commit()
    conn.close()
    ensure_post_columns(db_path)


# columns added to `posts` after the first schema
POST_COLUMN_MIGRATIONS = {
    "at_protocol_uri": "ALTER TABLE posts ADD COLUMN at_protocol_uri TEXT",
    "at_protocol_cid": "ALTER TABLE posts ADD COLUMN at_protocol_cid TEXT",
}


def ensure_post_columns(db_path=None):
    """Safe migration: ensure the publish-reference columns exist on posts."""
    conn = get_conn(db_path)
    cur = conn.cursor()
    try:
        cols = [c[1] for c in cur.execute("PRAGMA table_info(posts)").fetchall()]
        for name, ddl in POST_COLUMN_MIGRATIONS.items():
            if name not in cols:
                cur.execute(ddl)
                logger.info("🧩 Added missing '%s' column to posts table.", name)
        conn.commit()
    finally:
        conn.close()
