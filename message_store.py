# message_store.py
"""
Client-side conversation and message state.

Sends are shown immediately as optimistic messages with a `temp-` id and are
later replaced by the server's copy, either through the send response
(`confirm`) or through polling (`reconcile`). A server message replaces the
earliest optimistic message with the same sender, receiver and content whose
timestamp lies within the reconcile window.

All mutation goes through MessageStore methods; callers never hold copies of
the internal lists.
"""

from __future__ import annotations

import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from config import settings
from crypto_utils import conversation_id_for
from models import display_handle

logger = logging.getLogger("privacy_bsky.store")

TEMP_PREFIX = "temp-"


def parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageState(str, Enum):
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    READ = "read"


@dataclass
class Message:
    id: str
    sender_id: str
    receiver_id: str
    conversation_id: str
    content: str
    timestamp: datetime
    is_delivered: bool = False
    is_read: bool = False
    is_optimistic: bool = False
    seq: int = field(default=0, compare=False)

    @property
    def state(self) -> MessageState:
        if self.is_optimistic:
            return MessageState.OPTIMISTIC
        if self.is_read:
            return MessageState.READ
        return MessageState.CONFIRMED

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.sender_id, self.receiver_id, self.content)

    @classmethod
    def from_api(cls, data: dict) -> "Message":
        return cls(
            id=str(data["id"]),
            sender_id=data["senderId"],
            receiver_id=data["receiverId"],
            conversation_id=data.get("conversationId") or conversation_id_for(data["senderId"], data["receiverId"]),
            content=data.get("content", ""),
            timestamp=parse_timestamp(data["timestamp"]),
            is_delivered=bool(data.get("isDelivered", False)),
            is_read=bool(data.get("isRead", False)),
        )


@dataclass
class LastMessage:
    text: str
    timestamp: datetime
    is_encrypted: bool = False


@dataclass
class Conversation:
    id: str
    participant_did: str
    participant_handle: str
    last_message: Optional[LastMessage] = None
    unread_count: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "Conversation":
        last = data.get("lastMessage")
        return cls(
            id=data["id"],
            participant_did=data["participantDid"],
            participant_handle=data.get("participantHandle") or display_handle(data["participantDid"]),
            last_message=LastMessage(
                text=last.get("text", ""),
                timestamp=parse_timestamp(last["timestamp"]),
                is_encrypted=bool(last.get("isEncrypted", False)),
            ) if last else None,
            unread_count=int(data.get("unreadCount", 0)),
        )


@dataclass
class ReconcileResult:
    replaced: int = 0
    inserted: int = 0
    updated: int = 0


class MessageStore:
    def __init__(self, window_secs: Optional[float] = None, new_tag_ttl: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.window_secs = float(window_secs if window_secs is not None else settings.get("reconcile_window_secs", 10))
        self.new_tag_ttl = float(new_tag_ttl if new_tag_ttl is not None else settings.get("new_tag_ttl_secs", 2))
        self._clock = clock
        self._seq = itertools.count(1)
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, Dict[str, Message]] = {}  # conversation id -> id -> message
        self._by_id: Dict[str, Message] = {}
        self._pending: Dict[Tuple[str, str, str], List[Message]] = {}
        # optimistic id -> (lastMessage before the send, its own lastMessage, send created the conversation)
        self._rollback: Dict[str, Tuple[Optional[LastMessage], LastMessage, bool]] = {}
        self._deleted: Set[str] = set()
        self._new_tags: Dict[str, float] = {}
        # bumped by every local mutation; a listing fetched under an older value is stale
        self.generation = 0

    # -------------------- reads --------------------
    def conversations(self) -> List[Conversation]:
        return list(self._conversations.values())

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def messages_for(self, conversation_id: str) -> List[Message]:
        """Messages in ascending timestamp order, ties by insertion order."""
        bucket = self._messages.get(conversation_id, {})
        return sorted(bucket.values(), key=lambda m: (m.timestamp, m.seq))

    def has_pending(self, conversation_id: str) -> bool:
        return any(m.is_optimistic for m in self._messages.get(conversation_id, {}).values())

    def pending_conversation_ids(self) -> List[str]:
        return [cid for cid in self._messages if self.has_pending(cid)]

    def is_deleted(self, conversation_id: str) -> bool:
        return conversation_id in self._deleted

    # -------------------- "new" tags --------------------
    def tag_new(self, message_id: str) -> None:
        self._new_tags[message_id] = self._clock() + self.new_tag_ttl

    def is_new(self, message_id: str) -> bool:
        expiry = self._new_tags.get(message_id)
        if expiry is None:
            return False
        if self._clock() >= expiry:
            del self._new_tags[message_id]
            return False
        return True

    def prune_new_tags(self) -> None:
        now = self._clock()
        for message_id in [k for k, exp in self._new_tags.items() if now >= exp]:
            del self._new_tags[message_id]

    # -------------------- indexing helpers --------------------
    def _index(self, message: Message) -> None:
        if not message.seq:
            message.seq = next(self._seq)
        self._messages.setdefault(message.conversation_id, {})[message.id] = message
        self._by_id[message.id] = message
        if message.is_optimistic:
            self._pending.setdefault(message.dedup_key, []).append(message)

    def _unindex(self, message: Message) -> None:
        bucket = self._messages.get(message.conversation_id)
        if bucket is not None:
            bucket.pop(message.id, None)
        self._by_id.pop(message.id, None)
        if message.is_optimistic:
            pending = [m for m in self._pending.get(message.dedup_key, []) if m is not message]
            if pending:
                self._pending[message.dedup_key] = pending
            else:
                self._pending.pop(message.dedup_key, None)

    def _find_pending(self, server_message: Message) -> Optional[Message]:
        for candidate in self._pending.get(server_message.dedup_key, []):
            delta = abs((server_message.timestamp - candidate.timestamp).total_seconds())
            if delta < self.window_secs:
                return candidate
        return None

    # -------------------- optimistic sends --------------------
    def insert_optimistic(self, sender: str, receiver: str, content: str,
                          now: Optional[datetime] = None) -> Message:
        now = now or utc_now()
        conversation_id = conversation_id_for(sender, receiver)
        self._deleted.discard(conversation_id)

        conversation = self._conversations.get(conversation_id)
        created = conversation is None
        if created:
            conversation = Conversation(
                id=conversation_id,
                participant_did=receiver,
                participant_handle=display_handle(receiver),
            )
            self._conversations = {conversation_id: conversation, **self._conversations}

        message = Message(
            id=f"{TEMP_PREFIX}{uuid.uuid4().hex}",
            sender_id=sender,
            receiver_id=receiver,
            conversation_id=conversation_id,
            content=content,
            timestamp=now,
            is_optimistic=True,
        )
        self.generation += 1
        self._index(message)

        own_last = LastMessage(text=content, timestamp=now, is_encrypted=False)
        self._rollback[message.id] = (conversation.last_message, own_last, created)
        conversation.last_message = own_last
        return message

    def confirm(self, temp_id: str, server_message: Message) -> Message:
        """Replace an optimistic message with the server's copy, keeping its place."""
        temp = self._by_id.get(temp_id)
        existing = self._by_id.get(server_message.id)

        if temp is None or not temp.is_optimistic:
            # already replaced through polling
            if existing is not None:
                return existing
            return self._insert_confirmed(server_message, tag=False)

        snapshot = self._rollback.pop(temp_id, None)
        self._unindex(temp)
        if existing is not None:
            logger.debug("Server message %s already known; dropping %s", server_message.id, temp_id)
            return existing

        temp.id = server_message.id
        temp.conversation_id = server_message.conversation_id
        temp.timestamp = server_message.timestamp
        temp.is_delivered = server_message.is_delivered
        temp.is_read = server_message.is_read
        temp.is_optimistic = False
        self._index(temp)
        self.generation += 1

        conversation = self._conversations.get(temp.conversation_id)
        if snapshot is not None and conversation is not None and conversation.last_message is snapshot[1]:
            snapshot[1].timestamp = temp.timestamp
        return temp

    def discard(self, temp_id: str) -> bool:
        """Remove a failed optimistic message and undo its lastMessage update."""
        temp = self._by_id.get(temp_id)
        if temp is None or not temp.is_optimistic:
            return False
        self._unindex(temp)
        previous, own_last, created = self._rollback.pop(temp_id)
        self.generation += 1

        # later sends that snapshotted this message's summary fall back to ours
        for other_id, (prev, own, was_created) in list(self._rollback.items()):
            if prev is own_last:
                self._rollback[other_id] = (previous, own, was_created or created)

        conversation = self._conversations.get(temp.conversation_id)
        if conversation is None:
            return True
        if created and not self._messages.get(temp.conversation_id):
            del self._conversations[temp.conversation_id]
            self._messages.pop(temp.conversation_id, None)
        elif conversation.last_message is own_last:
            conversation.last_message = previous
        return True

    # -------------------- server refresh --------------------
    def _insert_confirmed(self, message: Message, tag: bool = True) -> Message:
        message.is_optimistic = False
        self._index(message)
        self.generation += 1
        if tag:
            self.tag_new(message.id)
        return message

    def reconcile(self, conversation_id: str, server_messages: Iterable[Message]) -> ReconcileResult:
        """Fold a server listing of one conversation into local state."""
        result = ReconcileResult()
        if conversation_id in self._deleted:
            return result
        for server_message in sorted(server_messages, key=lambda m: m.timestamp):
            known = self._by_id.get(server_message.id)
            if known is not None:
                if (known.is_delivered, known.is_read) != (server_message.is_delivered, server_message.is_read):
                    known.is_delivered = server_message.is_delivered
                    known.is_read = server_message.is_read
                    result.updated += 1
                continue
            candidate = self._find_pending(server_message)
            if candidate is not None:
                self.confirm(candidate.id, server_message)
                result.replaced += 1
            else:
                self._insert_confirmed(server_message)
                result.inserted += 1
        if result.replaced or result.inserted:
            logger.debug("Reconciled %s...: %s", conversation_id[:8], result)
        return result

    def merge_conversations(self, server_list: Iterable[Conversation], generation: Optional[int] = None) -> None:
        """Fold the server's conversation listing into local state.

        `generation` is the value of `self.generation` read before the listing
        was requested. If local state changed since, the listing cannot remove
        anything or roll a newer lastMessage back.
        """
        server_list = list(server_list)
        server_ids = {c.id for c in server_list}
        stale = generation is not None and generation != self.generation
        if not stale:
            # tombstones live until the server stops reporting the conversation
            self._deleted &= server_ids

        merged: Dict[str, Conversation] = {}
        for cid, local in self._conversations.items():
            if cid not in server_ids and (stale or self.has_pending(cid)):
                merged[cid] = local

        for incoming in server_list:
            if incoming.id in self._deleted:
                continue
            local = self._conversations.get(incoming.id)
            if local is None:
                merged[incoming.id] = incoming
                continue
            local.participant_did = incoming.participant_did
            local.participant_handle = incoming.participant_handle
            local.unread_count = incoming.unread_count
            keep_local_last = (
                (stale or self.has_pending(incoming.id))
                and local.last_message is not None
                and (incoming.last_message is None or local.last_message.timestamp > incoming.last_message.timestamp)
            )
            if not keep_local_last:
                local.last_message = incoming.last_message
            merged[incoming.id] = local

        for cid in list(self._messages):
            if cid not in merged:
                for message in list(self._messages[cid].values()):
                    self._unindex(message)
                self._messages.pop(cid, None)
        self._conversations = merged

    # -------------------- user actions --------------------
    def mark_read(self, message_ids: Iterable[str]) -> List[str]:
        """Flag messages read; returns the ids that changed."""
        changed: List[str] = []
        for message_id in message_ids:
            message = self._by_id.get(message_id)
            if message is None or message.is_read or message.is_optimistic:
                continue
            message.is_read = True
            message.is_delivered = True
            changed.append(message_id)
            conversation = self._conversations.get(message.conversation_id)
            if conversation is not None and conversation.unread_count > 0:
                conversation.unread_count -= 1
        return changed

    def delete_conversation(self, conversation_id: str) -> bool:
        existed = conversation_id in self._conversations
        self._conversations.pop(conversation_id, None)
        for message in list(self._messages.get(conversation_id, {}).values()):
            self._rollback.pop(message.id, None)
            self._unindex(message)
        self._messages.pop(conversation_id, None)
        self._deleted.add(conversation_id)
        self.generation += 1
        return existed
