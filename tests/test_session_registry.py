"""
CipherChat - Session registry tests.

Covers idempotent pairing, key derivation, ordering, unread accounting
and the last-message cache derived from the message log.
"""

from unittest.mock import patch

import pytest

from cipherchat.constants import NS_SESSIONS
from cipherchat.errors import PairingError, SessionNotFoundError
from cipherchat.locks import ChatLocks
from cipherchat.message import MessageStore
from cipherchat.pairing import PeerDescriptor
from cipherchat.session import ChatSession, SessionRegistry


def make_peer(crypto, peer_id: str, name: str = "Peer") -> PeerDescriptor:
    public_key, _ = crypto.generate_key_pair()
    return PeerDescriptor(id=peer_id, name=name, key=public_key)


class TestChatSession:
    """Tests for the ChatSession record."""

    def test_sort_time_falls_back_to_paired_at(self):
        """Test ordering time for a session without messages."""
        session = ChatSession(id="bob-1", peer_nickname="Bob", peer_avatar_color="red", paired_at=42)
        assert session.sort_time == 42

        session.last_message_time = 100
        assert session.sort_time == 100

    def test_from_dict_ignores_unknown_fields(self):
        """Test that records written by newer versions still load."""
        session = ChatSession.from_dict(
            {"id": "bob-1", "peer_nickname": "Bob", "peer_avatar_color": "red", "future": 1}
        )

        assert session.id == "bob-1"
        assert session.unread_count == 0


@pytest.mark.asyncio
class TestSessionRegistry:
    """Tests for SessionRegistry operations."""

    async def test_upsert_creates_session(self, registry, bob):
        """Test that pairing creates an empty session."""
        session = await registry.upsert(bob)

        assert session.id == "bob-1"
        assert session.peer_nickname == "Bob"
        assert session.unread_count == 0
        assert session.last_message is None
        assert session.last_message_time is None
        assert session.encryption_key is None

    async def test_upsert_is_idempotent(self, registry, bob):
        """Test that pairing twice returns the existing session unchanged."""
        first = await registry.upsert(bob)
        second = await registry.upsert(PeerDescriptor(id="bob-1", name="Robert", key=bob.key))

        assert second is first
        assert second.peer_nickname == "Bob"
        assert len(await registry.list()) == 1

    async def test_upsert_derives_shared_key(self, registry, crypto, bob, bob_keys, identity_store):
        """Test that both sides derive the same session key."""
        identity = await identity_store.create("Alice")

        session = await registry.upsert(bob, identity)

        _, bob_private = bob_keys
        assert session.encryption_key == crypto.derive_session_key(bob_private, identity.public_key)

    async def test_upsert_rejects_self_pairing(self, registry, identity_store):
        """Test that a device cannot pair with its own identity."""
        identity = await identity_store.create("Alice")
        me = PeerDescriptor(id=identity.id, name="Alice", key=identity.public_key)

        with pytest.raises(PairingError):
            await registry.upsert(me, identity)

    async def test_upsert_with_unusable_key(self, registry, identity_store):
        """Test that a failed key exchange surfaces as PairingError."""
        identity = await identity_store.create("Alice")

        with pytest.raises(PairingError):
            await registry.upsert(PeerDescriptor(id="x", name="X", key="bad"), identity)
        assert await registry.get("x") is None

    async def test_unknown_chat(self, registry):
        """Test that operations on unknown chats raise SessionNotFoundError."""
        assert await registry.get("ghost") is None
        with pytest.raises(SessionNotFoundError):
            await registry.mark_read("ghost")
        with pytest.raises(SessionNotFoundError):
            await registry.open_chat("ghost")

    async def test_list_orders_by_recency(self, registry, message_store, crypto, make_message):
        """Test ordering by last message time, newest first."""
        with patch("cipherchat.session.now_ms", side_effect=[100, 200, 300]):
            for peer_id in ("a", "b", "c"):
                await registry.upsert(make_peer(crypto, peer_id))

        assert [s.id for s in await registry.list()] == ["c", "b", "a"]

        await message_store.append(make_message("m1", chat_id="a", timestamp=1000))

        assert [s.id for s in await registry.list()] == ["a", "c", "b"]

    async def test_list_ties_keep_insertion_order(self, registry, crypto):
        """Test that equal times are ordered stably by pairing order."""
        with patch("cipherchat.session.now_ms", return_value=500):
            for peer_id in ("x", "y", "z"):
                await registry.upsert(make_peer(crypto, peer_id))

        for _ in range(3):
            assert [s.id for s in await registry.list()] == ["x", "y", "z"]

    async def test_record_inbound_counts_unread(self, registry, message_store, bob, make_message):
        """Test unread accounting while the chat is closed."""
        await registry.upsert(bob)

        for i in range(2):
            message = make_message(f"in{i}", timestamp=10 + i, is_me=False, content=f"hey {i}")
            await message_store.append(message)
            session = await registry.record_inbound(message)

        assert session.unread_count == 2
        assert session.last_message == "hey 1"
        assert session.last_message_time == 11

    async def test_record_inbound_while_open(self, registry, message_store, bob, make_message):
        """Test that an open chat does not accumulate unread messages."""
        await registry.upsert(bob)
        await registry.open_chat("bob-1")

        message = make_message("in1", is_me=False)
        await message_store.append(message)
        session = await registry.record_inbound(message)

        assert session.unread_count == 0
        assert session.last_message == "hello"

    async def test_open_and_close(self, registry, message_store, bob, make_message):
        """Test that opening marks read and closing stops that."""
        await registry.upsert(bob)
        message = make_message("in1", is_me=False)
        await message_store.append(message)
        await registry.record_inbound(message)

        session = await registry.open_chat("bob-1")
        assert session.unread_count == 0
        assert registry.is_active("bob-1")

        registry.close_chat("someone-else")
        assert registry.is_active("bob-1")

        registry.close_chat("bob-1")
        assert registry.active_chat_id is None

    async def test_open_chat_marks_read_once(self, registry, bob):
        """Test that open_chat calls mark_read exactly once."""
        await registry.upsert(bob)

        with patch.object(registry, "mark_read", wraps=registry.mark_read) as mark_read:
            await registry.open_chat("bob-1")

        mark_read.assert_called_once_with("bob-1")

    async def test_cache_reflects_log_maximum(self, registry, message_store, bob, make_message):
        """Test that the cache follows the highest timestamp, not the last append."""
        await registry.upsert(bob)
        await message_store.append(make_message("late", timestamp=50, content="late"))
        await message_store.append(make_message("early", timestamp=10, content="early"))

        session = await registry.get("bob-1")

        assert session.last_message == "late"
        assert session.last_message_time == 50
        assert (await registry.refresh("bob-1")) == session

    async def test_cache_follows_appends_and_compose(self, registry, message_store, state_machine, bob, make_message):
        """Test that every append moves the cache without an explicit refresh."""
        await registry.upsert(bob)

        await message_store.append(make_message("m1", timestamp=50, content="appended"))
        session = await registry.get("bob-1")
        assert (session.last_message, session.last_message_time) == ("appended", 50)

        await state_machine.compose("bob-1", "me", "composed", timestamp=60)
        [listed] = await registry.list()
        assert (listed.last_message, listed.last_message_time) == ("composed", 60)

    async def test_cache_ready_when_listeners_fire(self, registry, message_store, bob, make_message):
        """Test that append listeners already see the updated session."""
        await registry.upsert(bob)
        seen = []
        message_store.on_appended(lambda m: seen.append(registry.sessions["bob-1"].last_message))

        await message_store.append(make_message("m1", content="fresh"))

        assert seen == ["fresh"]

    async def test_cache_persisted_on_append(self, storage, registry, message_store, bob, make_message):
        """Test that the updated cache reaches storage."""
        await registry.upsert(bob)
        await message_store.append(make_message("m1", timestamp=70, content="stored"))

        record = await storage.get(NS_SESSIONS, "bob-1")

        assert record["last_message"] == "stored"
        assert record["last_message_time"] == 70

    async def test_set_online(self, registry, bob):
        """Test presence updates."""
        await registry.upsert(bob)

        assert (await registry.set_online("bob-1", True)).is_online is True
        assert (await registry.get("bob-1")).is_online is True

    async def test_reload_from_storage(self, storage, registry, message_store, crypto):
        """Test that sessions and their order survive a restart."""
        with patch("cipherchat.session.now_ms", return_value=1):
            for peer_id in ("p1", "p2"):
                await registry.upsert(make_peer(crypto, peer_id))

        reloaded = SessionRegistry(storage, MessageStore(storage, ChatLocks()), ChatLocks(), crypto)
        await reloaded.load()
        await reloaded.upsert(make_peer(crypto, "p3"))

        sessions = {s.id: s for s in await reloaded.list()}
        assert sessions["p3"].seq > sessions["p2"].seq > sessions["p1"].seq

    async def test_purge_all(self, storage, registry, bob):
        """Test that purge removes every session."""
        await registry.upsert(bob)
        await registry.open_chat("bob-1")

        assert await registry.purge_all() == 1
        assert await registry.list() == []
        assert registry.active_chat_id is None
        assert await storage.keys(NS_SESSIONS) == []
