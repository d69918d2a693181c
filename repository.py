# repository.py
"""
SQLite-backed repositories for the HTTP API.

Each repository opens a fresh connection per call (see database.get_conn), so
they can be shared between request handlers and background tasks. Message
content is encrypted at rest and only decrypted on the way out.
"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from config import settings
from crypto_utils import conversation_id_for, decrypt_at_rest, encrypt_at_rest, new_message_id
from database import get_conn, init_db
from models import SessionRecord

logger = logging.getLogger("privacy_bsky.repository")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class Repository:
    table = ""
    key_column = "id"

    def __init__(self, db_path=None):
        self.db_path = db_path

    def _conn(self):
        return get_conn(self.db_path)

    def get_row(self, key):
        conn = self._conn()
        try:
            return conn.execute(f"SELECT * FROM {self.table} WHERE {self.key_column} = ?", (key,)).fetchone()
        finally:
            conn.close()

    def delete(self, key) -> bool:
        conn = self._conn()
        try:
            cur = conn.execute(f"DELETE FROM {self.table} WHERE {self.key_column} = ?", (key,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()


class SessionRepository(Repository):
    table = "sessions"
    key_column = "session_id"

    def __init__(self, db_path=None, max_age_secs=None):
        super().__init__(db_path)
        self.max_age_secs = int(max_age_secs or settings.get("session_max_age_secs", 604_800))

    def put(self, record: SessionRecord) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO sessions (session_id, did, handle, access_jwt, refresh_jwt, email, active, created_at) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (record.session_id, record.did, record.handle, record.access_jwt, record.refresh_jwt,
                 record.email, int(record.active), record.created_at or int(time.time())),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Session saved: %s... for %s", record.session_id[:8], record.handle)

    def get(self, session_id: str, now: Optional[int] = None) -> Optional[SessionRecord]:
        """Return the session, or None when unknown or expired."""
        row = self.get_row(session_id)
        if row is None:
            return None
        now = now if now is not None else int(time.time())
        if row["created_at"] + self.max_age_secs < now:
            self.delete(session_id)
            return None
        return SessionRecord(
            session_id=row["session_id"],
            did=row["did"],
            handle=row["handle"],
            access_jwt=row["access_jwt"] or "",
            refresh_jwt=row["refresh_jwt"] or "",
            email=row["email"],
            active=bool(row["active"]),
            created_at=row["created_at"],
        )

    def prune(self, now: Optional[int] = None) -> int:
        """Delete expired sessions; returns how many were removed."""
        cutoff = (now if now is not None else int(time.time())) - self.max_age_secs
        conn = self._conn()
        try:
            cur = conn.execute("DELETE FROM sessions WHERE created_at < ?", (cutoff,))
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()


class UserRepository(Repository):
    table = "users"
    key_column = "did"

    def put(self, did: str, handle: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO users (did, handle, updated_at) VALUES (?,?,?)",
                (did, handle, int(time.time())),
            )
            conn.commit()
        finally:
            conn.close()

    def handle_for(self, did: str) -> Optional[str]:
        row = self.get_row(did)
        return row["handle"] if row else None


class ConversationRepository(Repository):
    table = "conversations"

    def get(self, conversation_id: str) -> Optional[dict]:
        row = self.get_row(conversation_id)
        if row is None:
            return None
        return {
            "id": row["id"],
            "participants": [row["participant_a"], row["participant_b"]],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }

    def get_or_create(self, a: str, b: str) -> str:
        conversation_id = conversation_id_for(a, b)
        first, second = sorted([a, b])
        now = utc_now_iso()
        conn = self._conn()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO conversations (id, participant_a, participant_b, created_at, updated_at) "
                "VALUES (?,?,?,?,?)",
                (conversation_id, first, second, now, now),
            )
            conn.commit()
        finally:
            conn.close()
        return conversation_id

    def touch(self, conversation_id: str, when: str) -> None:
        conn = self._conn()
        try:
            conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (when, conversation_id))
            conn.commit()
        finally:
            conn.close()

    def list_for(self, did: str) -> List[dict]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM conversations WHERE participant_a = ? OR participant_b = ? ORDER BY updated_at DESC",
                (did, did),
            ).fetchall()
        finally:
            conn.close()
        return [
            {"id": r["id"], "participants": [r["participant_a"], r["participant_b"]], "updatedAt": r["updated_at"]}
            for r in rows
        ]

    def delete(self, conversation_id: str) -> bool:
        """Delete the conversation together with all of its messages."""
        conn = self._conn()
        try:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            cur = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()


class MessageRepository(Repository):
    table = "messages"

    def __init__(self, db_path=None, key: Optional[bytes] = None):
        super().__init__(db_path)
        self.storage_key = key

    def _to_dict(self, row) -> dict:
        return {
            "id": row["id"],
            "senderId": row["sender"],
            "receiverId": row["recipient"],
            "conversationId": row["conversation_id"],
            "content": decrypt_at_rest(row["ciphertext"], row["nonce"], self.storage_key),
            "timestamp": row["timestamp"],
            "isDelivered": bool(row["delivered"]),
            "isRead": bool(row["read"]),
        }

    def get(self, message_id: str) -> Optional[dict]:
        conn = self._conn()
        try:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        finally:
            conn.close()
        return self._to_dict(row) if row else None

    def add(self, conversation_id: str, sender: str, recipient: str, content: str) -> dict:
        ciphertext, nonce = encrypt_at_rest(content, self.storage_key)
        message_id = new_message_id()
        now = utc_now_iso()
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO messages (id, conversation_id, sender, recipient, ciphertext, nonce, timestamp, delivered, read) "
                "VALUES (?,?,?,?,?,?,?,0,0)",
                (message_id, conversation_id, sender, recipient, ciphertext, nonce, now),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get(message_id)

    def list_for_conversation(self, conversation_id: str) -> List[dict]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp ASC, seq ASC",
                (conversation_id,),
            ).fetchall()
        finally:
            conn.close()
        return [self._to_dict(r) for r in rows]

    def last_message(self, conversation_id: str) -> Optional[dict]:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp DESC, seq DESC LIMIT 1",
                (conversation_id,),
            ).fetchone()
        finally:
            conn.close()
        return self._to_dict(row) if row else None

    def unread_count(self, conversation_id: str, recipient: str) -> int:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ? AND recipient = ? AND read = 0",
                (conversation_id, recipient),
            ).fetchone()
        finally:
            conn.close()
        return int(row[0])

    def mark_delivered(self, conversation_id: str, recipient: str) -> int:
        conn = self._conn()
        try:
            cur = conn.execute(
                "UPDATE messages SET delivered = 1 WHERE conversation_id = ? AND recipient = ? AND delivered = 0",
                (conversation_id, recipient),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def mark_read(self, message_ids: List[str], recipient: str) -> int:
        """Mark messages read; ids the caller did not receive are ignored."""
        if not message_ids:
            return 0
        conn = self._conn()
        try:
            updated = 0
            for message_id in message_ids:
                cur = conn.execute(
                    "UPDATE messages SET read = 1, delivered = 1 WHERE id = ? AND recipient = ?",
                    (message_id, recipient),
                )
                updated += cur.rowcount
            conn.commit()
            return updated
        finally:
            conn.close()


class PostRepository(Repository):
    table = "posts"

    @staticmethod
    def _to_dict(row) -> dict:
        return {
            "id": row["id"],
            "authorId": row["author"],
            "title": row["title"] or "",
            "content": row["content"],
            "accessLevel": row["access_level"],
            "privacyScore": row["privacy_score"],
            "privacyTechnique": row["privacy_technique"],
            "atProtocolUri": row["at_protocol_uri"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }

    def get(self, post_id: int) -> Optional[dict]:
        row = self.get_row(post_id)
        return self._to_dict(row) if row else None

    def add(self, author: str, title: str, content: str, access_level: str,
            privacy_score: int, privacy_technique: str) -> dict:
        now = utc_now_iso()
        conn = self._conn()
        try:
            cur = conn.execute(
                "INSERT INTO posts (author, title, content, access_level, privacy_score, privacy_technique, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (author, title, content, access_level, privacy_score, privacy_technique, now, now),
            )
            conn.commit()
            post_id = cur.lastrowid
        finally:
            conn.close()
        return self.get(post_id)

    def list_all(self) -> List[dict]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT * FROM posts ORDER BY created_at DESC, id DESC").fetchall()
        finally:
            conn.close()
        return [self._to_dict(r) for r in rows]

    def update(self, post_id: int, title: Optional[str] = None, content: Optional[str] = None) -> Optional[dict]:
        post = self.get(post_id)
        if post is None:
            return None
        conn = self._conn()
        try:
            conn.execute(
                "UPDATE posts SET title = ?, content = ?, updated_at = ? WHERE id = ?",
                (post["title"] if title is None else title,
                 post["content"] if content is None else content,
                 utc_now_iso(), post_id),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get(post_id)

    def set_publish_ref(self, post_id: int, uri: str, cid: Optional[str] = None) -> None:
        conn = self._conn()
        try:
            conn.execute("UPDATE posts SET at_protocol_uri = ?, at_protocol_cid = ? WHERE id = ?", (uri, cid, post_id))
            conn.commit()
        finally:
            conn.close()


class Repositories:
    """Everything the API needs, bound to one database file."""

    def __init__(self, db_path=None, key: Optional[bytes] = None):
        self.db_path = db_path or settings["db_path"]
        init_db(self.db_path)
        self.sessions = SessionRepository(self.db_path)
        self.users = UserRepository(self.db_path)
        self.conversations = ConversationRepository(self.db_path)
        self.messages = MessageRepository(self.db_path, key)
        self.posts = PostRepository(self.db_path)
