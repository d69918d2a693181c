import asyncio
from datetime import datetime, timezone

from api_client import ApiError
from crypto_utils import conversation_id_for
from messenger import ConnectionState, Messenger, Poller

ME = "did:plc:me000000000000000000"
YOU = "did:plc:you00000000000000000"
CID = conversation_id_for(ME, YOU)


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def wire_message(id, content, sender=ME, receiver=YOU, **extra):
    data = {"id": id, "senderId": sender, "receiverId": receiver, "conversationId": CID,
            "content": content, "timestamp": now_iso(), "isDelivered": False, "isRead": False}
    data.update(extra)
    return data


class FakeApi:
    def __init__(self):
        self.conversations = []
        self.messages = {}
        self.sent = []
        self.read = []
        self.deleted = []
        self.fail = None
        self.fail_delete = None
        self.send_gate = None
        self.fail_send = None
        self.conversation_gate = None
        self.healthy = True
        self.health_calls = 0
        self.conversation_calls = 0

    async def send_message(self, receiver, content):
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail or self.fail_send:
            raise self.fail or self.fail_send
        msg = wire_message(f"s{len(self.sent) + 1}", content, receiver=receiver)
        self.sent.append(msg)
        return {"messageId": msg["id"], "conversationId": CID, "message": msg}

    async def get_conversations(self):
        self.conversation_calls += 1
        snapshot = list(self.conversations)
        if self.conversation_gate is not None:
            await self.conversation_gate.wait()
        if self.fail:
            raise self.fail
        return snapshot

    async def get_messages(self, conversation_id):
        if self.fail:
            raise self.fail
        if conversation_id not in self.messages:
            raise ApiError(404, "Conversation not found")
        return self.messages[conversation_id]

    async def mark_read(self, ids):
        self.read.extend(ids)
        return {"success": True, "updatedCount": len(ids)}

    async def delete_conversation(self, conversation_id):
        if self.fail_delete:
            raise self.fail_delete
        self.deleted.append(conversation_id)
        return {"success": True}

    async def health_check(self):
        self.health_calls += 1
        return self.healthy


def test_send_confirms_optimistic_message():
    async def scenario():
        api = FakeApi()
        m = Messenger(api, ME)
        m.start_conversation(YOU)
        m.input_text = "hello"
        sent = await m.send()
        assert sent.id == "s1"
        assert not sent.is_optimistic
        assert m.input_text == ""
        assert [x.id for x in m.store.messages_for(CID)] == ["s1"]
        assert m.store.get_conversation(CID).last_message.text == "hello"

    asyncio.run(scenario())


def test_input_cleared_while_send_in_flight():
    async def scenario():
        api = FakeApi()
        api.send_gate = asyncio.Event()
        m = Messenger(api, ME)
        m.start_conversation(YOU)
        m.input_text = "hello"
        task = asyncio.create_task(m.send())
        await asyncio.sleep(0)
        assert m.input_text == ""
        assert m.store.messages_for(CID)[0].is_optimistic
        api.send_gate.set()
        await task
        assert not m.store.has_pending(CID)

    asyncio.run(scenario())


def test_failed_send_rolls_back_and_restores_input():
    async def scenario():
        api = FakeApi()
        api.fail = ApiError(0, "connection refused")
        m = Messenger(api, ME)
        m.start_conversation(YOU)
        m.input_text = "hello"
        assert await m.send() is None
        assert m.input_text == "hello"
        assert m.store.get_conversation(CID) is None
        assert m.store.messages_for(CID) == []
        assert m.status == ConnectionState.FAILED

    asyncio.run(scenario())


def test_send_without_recipient_raises():
    async def scenario():
        m = Messenger(FakeApi(), ME)
        m.input_text = "hello"
        try:
            await m.send()
        except ValueError:
            return
        raise AssertionError("expected ValueError")

    asyncio.run(scenario())


def test_blank_input_is_not_sent():
    async def scenario():
        api = FakeApi()
        m = Messenger(api, ME)
        m.start_conversation(YOU)
        m.input_text = "   "
        assert await m.send() is None
        assert api.sent == []

    asyncio.run(scenario())


def test_poll_reconciles_pending_conversation():
    async def scenario():
        api = FakeApi()
        m = Messenger(api, ME)
        m.store.insert_optimistic(ME, YOU, "queued")
        api.conversations = [{"id": CID, "participantDid": YOU, "participantHandle": "you.test",
                              "lastMessage": {"text": "queued", "timestamp": now_iso(), "isEncrypted": True},
                              "unreadCount": 0}]
        api.messages[CID] = [wire_message("srv-1", "queued")]
        assert await m.poll_once()
        assert [x.id for x in m.store.messages_for(CID)] == ["srv-1"]
        assert m.store.get_conversation(CID).participant_handle == "you.test"
        assert m.status == ConnectionState.CONNECTED

    asyncio.run(scenario())


def test_poll_listing_older_than_send_keeps_confirmed_message():
    async def scenario():
        api = FakeApi()
        api.conversation_gate = asyncio.Event()
        m = Messenger(api, ME)
        m.start_conversation(YOU)

        poll = asyncio.create_task(m.poll_once())
        await asyncio.sleep(0)
        m.input_text = "hello"
        sent = await m.send()
        assert sent.id == "s1"

        # the listing was taken before the send reached the server
        api.conversation_gate.set()
        assert await poll

        assert [x.id for x in m.store.messages_for(CID)] == ["s1"]
        assert m.store.get_conversation(CID).last_message.text == "hello"
        assert m.current_recipient() == YOU

        # a fresh listing that still omits it is now authoritative
        api.conversation_gate = None
        await m.poll_once()
        assert m.store.get_conversation(CID) is None

    asyncio.run(scenario())


def test_poll_during_failed_send_restores_pre_send_state():
    async def scenario():
        other = "did:plc:other000000000000000"
        other_cid = conversation_id_for(ME, other)
        api = FakeApi()
        api.conversations = [{"id": other_cid, "participantDid": other, "participantHandle": "other.test",
                              "lastMessage": {"text": "earlier", "timestamp": now_iso(), "isEncrypted": True}}]
        api.messages[other_cid] = [wire_message("o1", "earlier", sender=other, receiver=ME,
                                                conversationId=other_cid)]
        m = Messenger(api, ME)
        await m.poll_once()
        await m.select_conversation(other_cid)
        before_conversations = [c.id for c in m.store.conversations()]
        before_messages = [x.id for x in m.store.messages_for(other_cid)]

        api.send_gate = asyncio.Event()
        m.start_conversation(YOU)
        m.input_text = "hello"
        send = asyncio.create_task(m.send())
        await asyncio.sleep(0)
        assert m.store.has_pending(CID)

        assert await m.poll_once()
        assert m.store.has_pending(CID)

        api.fail_send = ApiError(0, "connection refused")
        api.send_gate.set()
        assert await send is None

        assert [c.id for c in m.store.conversations()] == before_conversations
        assert [x.id for x in m.store.messages_for(other_cid)] == before_messages
        assert m.store.messages_for(CID) == []
        assert m.store.get_conversation(other_cid).last_message.text == "earlier"
        assert m.input_text == "hello"

    asyncio.run(scenario())



def test_poll_failure_sets_failed_state():
    async def scenario():
        api = FakeApi()
        api.fail = ApiError(0, "timed out")
        m = Messenger(api, ME)
        assert not await m.poll_once()
        assert m.status == ConnectionState.FAILED

    asyncio.run(scenario())


def test_select_conversation_marks_incoming_read():
    async def scenario():
        api = FakeApi()
        api.conversations = [{"id": CID, "participantDid": YOU, "participantHandle": "you.test", "unreadCount": 2}]
        api.messages[CID] = [
            wire_message("in-1", "hey", sender=YOU, receiver=ME),
            wire_message("out-1", "hi", sender=ME, receiver=YOU),
            wire_message("in-2", "there", sender=YOU, receiver=ME),
        ]
        m = Messenger(api, ME)
        await m.poll_once()
        messages = await m.select_conversation(CID)
        assert len(messages) == 3
        assert sorted(api.read) == ["in-1", "in-2"]
        assert m.store.get_message("in-1").is_read
        assert not m.store.get_message("out-1").is_read
        assert m.store.get_conversation(CID).unread_count == 0

    asyncio.run(scenario())


def test_delete_conversation_is_local_first():
    async def scenario():
        api = FakeApi()
        api.conversations = [{"id": CID, "participantDid": YOU, "participantHandle": "you.test"}]
        m = Messenger(api, ME)
        await m.poll_once()
        m.delete_conversation(CID)
        assert m.store.get_conversation(CID) is None
        await m.drain()
        assert api.deleted == [CID]

    asyncio.run(scenario())


def test_delete_conversation_remote_failure_is_only_logged():
    async def scenario():
        api = FakeApi()
        api.fail_delete = ApiError(500, "boom")
        api.conversations = [{"id": CID, "participantDid": YOU, "participantHandle": "you.test"}]
        m = Messenger(api, ME)
        await m.poll_once()
        m.delete_conversation(CID)
        await m.drain()
        assert m.store.get_conversation(CID) is None

    asyncio.run(scenario())


def test_check_health():
    async def scenario():
        api = FakeApi()
        m = Messenger(api, ME)
        assert await m.check_health() == ConnectionState.CONNECTED
        api.healthy = False
        assert await m.check_health() == ConnectionState.FAILED

    asyncio.run(scenario())


def test_poller_stop_leaves_no_running_tasks():
    async def scenario():
        api = FakeApi()
        poller = Poller(Messenger(api, ME), poll_interval=0.01, health_interval=10)
        poller.start()
        await asyncio.sleep(0.05)
        assert poller.running
        await poller.stop()
        assert not poller.running
        assert api.health_calls == 1
        assert api.conversation_calls >= 1

    asyncio.run(scenario())


def test_poller_skips_message_polling_while_failed():
    async def scenario():
        api = FakeApi()
        api.healthy = False
        poller = Poller(Messenger(api, ME), poll_interval=0.01, health_interval=10)
        poller.start()
        await asyncio.sleep(0.05)
        await poller.stop()
        assert api.health_calls == 1
        assert api.conversation_calls == 0

    asyncio.run(scenario())
