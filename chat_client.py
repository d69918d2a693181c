# chat_client.py
import asyncio
import os

from api_client import ApiClient, ApiError
from config import settings, setup_logging
from crypto_utils import load_or_create_key_pair
from messenger import Messenger, Poller
from post_feed import PostFeed
from privacy import PRIVACY_MODES
from models import ACCESS_LEVELS
from storage import JsonFileStore

HELP = """Commands:
  /list                         conversations
  /open <n>                     open conversation n from /list
  /to <did>                     start a conversation
  /delete <n>                   delete conversation n
  /posts                        show visible posts
  /post <level> <mode> [title |] text
                                level: public|followers|friends|private
                                mode:  none|pii|obfuscate|generalize
  /status                       connection state
  /quit
Anything else is sent to the open conversation."""


async def ainput(prompt: str = "") -> str:
    return await asyncio.to_thread(input, prompt)


def print_conversations(messenger: Messenger):
    conversations = messenger.store.conversations()
    if not conversations:
        print("(no conversations)")
    for i, c in enumerate(conversations, 1):
        last = c.last_message.text[:40] if c.last_message else ""
        unread = f" [{c.unread_count} unread]" if c.unread_count else ""
        print(f"{i}. {c.participant_handle}{unread}  {last}")


def print_messages(messenger: Messenger, conversation_id: str):
    for m in messenger.store.messages_for(conversation_id):
        who = "me" if m.sender_id == messenger.me else m.sender_id[:16]
        mark = "…" if m.is_optimistic else ("✓✓" if m.is_read else "✓")
        print(f"[{m.timestamp:%H:%M:%S}] {who}: {m.content} {mark}")


def pick(messenger: Messenger, arg: str):
    conversations = messenger.store.conversations()
    try:
        return conversations[int(arg) - 1].id
    except (ValueError, IndexError):
        print("⚠️ No such conversation")
        return None


async def repl(messenger: Messenger, feed: PostFeed):
    print(HELP)
    while True:
        line = (await ainput("> ")).strip()
        if not line:
            continue
        cmd, _, arg = line.partition(" ")
        arg = arg.strip()

        if cmd == "/quit":
            return
        elif cmd == "/list":
            print_conversations(messenger)
        elif cmd == "/open":
            cid = pick(messenger, arg)
            if cid:
                await messenger.select_conversation(cid)
                print_messages(messenger, cid)
        elif cmd == "/to":
            try:
                messenger.start_conversation(arg)
                print(f"✏️ Writing to {arg}")
            except ValueError as e:
                print("⚠️", e)
        elif cmd == "/delete":
            cid = pick(messenger, arg)
            if cid:
                messenger.delete_conversation(cid)
                print("🗑️ Deleted")
        elif cmd == "/posts":
            posts = await feed.load()
            if not feed.online:
                print("⚠️ Backend unreachable, showing local posts")
            for p in posts:
                print(f"#{p.id} [{p.access_level}, privacy {p.privacy_score}] {p.title}: {p.content}")
        elif cmd == "/post":
            parts = arg.split(" ", 2)
            if len(parts) < 3 or parts[0] not in ACCESS_LEVELS or parts[1] not in PRIVACY_MODES:
                print(HELP)
                continue
            level, mode, rest = parts
            title, sep, text = rest.partition(" | ")
            if not sep:
                title, text = "", rest
            try:
                res = await feed.submit(title, text, access_level=level, mode=mode)
            except ApiError as e:
                print("❌ Failed to create post:", e)
                continue
            except ValueError as e:
                print("⚠️", e)
                continue
            print(f"{res.message}  (score {res.post.privacy_score}, {res.privacy.technique})")
            if res.bluesky_url:
                print("🔗", res.bluesky_url)
        elif cmd == "/status":
            print(f"📡 {messenger.status.value}")
        elif cmd.startswith("/"):
            print(HELP)
        else:
            messenger.input_text = line
            try:
                sent = await messenger.send()
            except ValueError as e:
                print(f"⚠️ {e}; use /to <did> or /open <n> first")
                continue
            if sent is None:
                print(f"❌ Not sent ({messenger.last_error})")


async def main():
    setup_logging()
    store = JsonFileStore()
    keys = load_or_create_key_pair(store)
    print(f"🔐 Device key {keys.public_key[:16]}…")

    async with ApiClient() as api:
        try:
            if os.environ.get("BSKY_IDENTIFIER") and os.environ.get("BSKY_PASSWORD"):
                data = await api.login_with_password(os.environ["BSKY_IDENTIFIER"], os.environ["BSKY_PASSWORD"])
            else:
                did = os.environ.get("BSKY_DID") or (await ainput("DID: ")).strip()
                handle = os.environ.get("BSKY_HANDLE") or (await ainput("Handle: ")).strip()
                data = await api.login(did, handle, os.environ.get("BSKY_ACCESS_JWT"), os.environ.get("BSKY_REFRESH_JWT"))
        except ApiError as e:
            print(f"❌ Login failed against {settings['api_url']}: {e}")
            return

        me = data["user"]["did"]
        print(f"✅ Logged in as {data['user']['handle']} ({data['message']})")

        messenger = Messenger(api, me)
        feed = PostFeed(api, me, store)
        poller = Poller(messenger)
        poller.start()
        try:
            await messenger.poll_once()
            await repl(messenger, feed)
        finally:
            await poller.stop()
            await messenger.drain()
            try:
                await api.logout()
            except ApiError as e:
                print("⚠️ Logout failed:", e)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
