# messenger.py
"""
Messenger controller: the user-facing actions on top of MessageStore, plus
the polling and health timers that keep it in sync with the API.
"""

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Set

from api_client import ApiClient, ApiError
from config import settings
from crypto_utils import conversation_id_for
from message_store import Conversation, Message, MessageStore

logger = logging.getLogger("privacy_bsky.messenger")


class ConnectionState(str, Enum):
    CHECKING = "checking"
    CONNECTED = "connected"
    FAILED = "failed"


class Messenger:
    def __init__(self, api: ApiClient, me: str, store: Optional[MessageStore] = None):
        self.api = api
        self.me = me
        self.store = store or MessageStore()
        self.input_text = ""
        self.status = ConnectionState.CHECKING
        self.selected_id: Optional[str] = None
        self.draft_recipient: Optional[str] = None
        self.last_error: Optional[str] = None
        self._background: Set[asyncio.Task] = set()

    def _network_failed(self, e: ApiError) -> None:
        if e.is_network:
            self.status = ConnectionState.FAILED

    def current_recipient(self) -> Optional[str]:
        if self.draft_recipient:
            return self.draft_recipient
        if self.selected_id:
            conversation = self.store.get_conversation(self.selected_id)
            if conversation is not None:
                return conversation.participant_did
        return None

    async def send(self, text: Optional[str] = None) -> Optional[Message]:
        """Send the input text (or `text`); returns the confirmed message, or None on failure."""
        text = self.input_text if text is None else text
        if not text.strip():
            return None
        receiver = self.current_recipient()
        if receiver is None:
            raise ValueError("no conversation selected")

        temp = self.store.insert_optimistic(self.me, receiver, text)
        self.selected_id = temp.conversation_id
        self.input_text = ""
        try:
            response = await self.api.send_message(receiver, text)
        except ApiError as e:
            logger.warning("Send to %s failed: %s", receiver, e)
            self.store.discard(temp.id)
            self.input_text = text
            self.last_error = str(e)
            self._network_failed(e)
            return None

        self.draft_recipient = None
        self.last_error = None
        return self.store.confirm(temp.id, Message.from_api(response["message"]))

    async def poll_once(self) -> bool:
        """Refresh conversations and the messages that need reconciling."""
        generation = self.store.generation
        try:
            conversations = await self.api.get_conversations()
        except ApiError as e:
            logger.warning("Conversation refresh failed: %s", e)
            self._network_failed(e)
            return False
        self.store.merge_conversations((Conversation.from_api(c) for c in conversations), generation)

        targets: List[str] = self.store.pending_conversation_ids()
        if self.selected_id and self.selected_id not in targets and not self.store.is_deleted(self.selected_id):
            targets.append(self.selected_id)

        for conversation_id in targets:
            try:
                messages = await self.api.get_messages(conversation_id)
            except ApiError as e:
                if e.status == 404:
                    # not created on the server yet
                    continue
                logger.warning("Message refresh for %s... failed: %s", conversation_id[:8], e)
                self._network_failed(e)
                return False
            self.store.reconcile(conversation_id, [Message.from_api(m) for m in messages])

        self.store.prune_new_tags()
        self.status = ConnectionState.CONNECTED
        return True

    async def select_conversation(self, conversation_id: str) -> List[Message]:
        self.selected_id = conversation_id
        self.draft_recipient = None
        try:
            messages = await self.api.get_messages(conversation_id)
        except ApiError as e:
            logger.warning("Could not load conversation %s...: %s", conversation_id[:8], e)
            self._network_failed(e)
            return self.store.messages_for(conversation_id)
        self.store.reconcile(conversation_id, [Message.from_api(m) for m in messages])

        unread = [
            m.id for m in self.store.messages_for(conversation_id)
            if m.receiver_id == self.me and not m.is_read and not m.is_optimistic
        ]
        if unread:
            self.store.mark_read(unread)
            try:
                await self.api.mark_read(unread)
            except ApiError as e:
                logger.warning("mark-read failed: %s", e)
                self._network_failed(e)
        return self.store.messages_for(conversation_id)

    def start_conversation(self, did: str) -> str:
        """Target `did` for the next send; returns the conversation id."""
        did = did.strip()
        if not did:
            raise ValueError("recipient DID is required")
        conversation_id = conversation_id_for(self.me, did)
        self.selected_id = conversation_id
        self.draft_recipient = None if self.store.get_conversation(conversation_id) else did
        return conversation_id

    def delete_conversation(self, conversation_id: str) -> None:
        """Remove locally now; the server delete runs in the background."""
        self.store.delete_conversation(conversation_id)
        if self.selected_id == conversation_id:
            self.selected_id = None
            self.draft_recipient = None
        task = asyncio.create_task(self._delete_remote(conversation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete_remote(self, conversation_id: str) -> None:
        try:
            await self.api.delete_conversation(conversation_id)
        except ApiError as e:
            logger.error("Server delete of %s... failed: %s", conversation_id[:8], e)

    async def drain(self) -> None:
        """Wait for background deletes to finish."""
        if self._background:
            await asyncio.gather(*list(self._background))

    async def check_health(self) -> ConnectionState:
        ok = await self.api.health_check()
        self.status = ConnectionState.CONNECTED if ok else ConnectionState.FAILED
        return self.status


class Poller:
    """Message polling and health polling as two asyncio tasks."""

    def __init__(self, messenger: Messenger, poll_interval: Optional[float] = None,
                 health_interval: Optional[float] = None):
        self.messenger = messenger
        self.poll_interval = float(poll_interval or settings.get("message_poll_interval_secs", 2))
        self.health_interval = float(health_interval or settings.get("health_poll_interval_secs", 30))
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._message_loop()),
            asyncio.create_task(self._health_loop()),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def _message_loop(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            if self.messenger.status == ConnectionState.FAILED:
                continue
            try:
                await self.messenger.poll_once()
            except Exception:
                logger.exception("Error in message polling loop")

    async def _health_loop(self):
        while True:
            try:
                await self.messenger.check_health()
            except Exception:
                logger.exception("Error in health polling loop")
            await asyncio.sleep(self.health_interval)
