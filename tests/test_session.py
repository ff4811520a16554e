"""Tests for session resolution and per-key locks."""

import asyncio
from datetime import timedelta

import pytest

from conftest import T0
from tether.models import Contact, SessionStatus
from tether.session import KeyedLocks, SessionResolver
from tether.session.resolver import elapsed_days
from tether.store import ConversationStore


@pytest.fixture
def resolver(store: ConversationStore) -> SessionResolver:
    return SessionResolver(store)


@pytest.fixture
def contact(store: ConversationStore) -> Contact:
    return store.create_contact("acme", "phone:+15551234567", "sms", T0)


def _open_sessions(store: ConversationStore, contact: Contact, channel: str = "sms") -> list:
    return [
        s for s in store.list_sessions(contact.id)
        if s.channel == channel and s.status != SessionStatus.CLOSED
    ]


class TestSessionResolver:
    def test_first_message_opens_session(self, resolver: SessionResolver, contact: Contact):
        result = resolver.resolve(contact, "sms", T0)

        assert result.created is True
        assert result.reactivated is False
        assert result.session.status == SessionStatus.ACTIVE
        assert result.session.channel == "sms"

    def test_reuses_active_session(self, resolver: SessionResolver, store: ConversationStore, contact: Contact):
        first = resolver.resolve(contact, "sms", T0).session
        store.append_message(first.id, "user", "hi", T0)

        second = resolver.resolve(contact, "sms", T0 + timedelta(hours=2))

        assert second.created is False
        assert second.reactivated is False
        assert second.session.id == first.id
        assert second.elapsed_days == pytest.approx(2 / 24)

    def test_channels_get_separate_sessions(self, resolver: SessionResolver, contact: Contact):
        sms = resolver.resolve(contact, "sms", T0).session
        whatsapp = resolver.resolve(contact, "whatsapp", T0).session

        assert sms.id != whatsapp.id

    def test_idle_session_reactivates_in_place(
        self, resolver: SessionResolver, store: ConversationStore, contact: Contact
    ):
        first = resolver.resolve(contact, "sms", T0).session
        store.append_message(first.id, "user", "hi", T0)

        result = resolver.resolve(contact, "sms", T0 + timedelta(days=3), inactivity_hours=24)

        assert result.reactivated is True
        assert result.created is False
        assert result.session.id == first.id
        assert result.elapsed_days == pytest.approx(3.0)
        assert result.previous_last_message_at == T0
        assert store.get_session(first.id).status == SessionStatus.ACTIVE
        assert result.went_dormant is True

    def test_dormant_session_reactivates(
        self, resolver: SessionResolver, store: ConversationStore, contact: Contact
    ):
        session = resolver.resolve(contact, "sms", T0).session
        store.append_message(session.id, "user", "hi", T0)
        resolver.mark_dormant(session, T0 + timedelta(hours=30))
        assert store.get_session(session.id).status == SessionStatus.DORMANT

        result = resolver.resolve(contact, "sms", T0 + timedelta(hours=31))

        assert result.reactivated is True
        assert result.session.id == session.id
        assert len(_open_sessions(store, contact)) == 1
        assert result.went_dormant is False

    def test_closed_session_is_replaced(
        self, resolver: SessionResolver, store: ConversationStore, contact: Contact
    ):
        session = resolver.resolve(contact, "sms", T0).session
        resolver.close(session.id, T0)

        result = resolver.resolve(contact, "sms", T0 + timedelta(minutes=5))

        assert result.created is True
        assert result.session.id != session.id
        assert store.get_session(session.id).status == SessionStatus.CLOSED

    def test_at_most_one_open_session_per_channel(
        self, resolver: SessionResolver, store: ConversationStore, contact: Contact
    ):
        now = T0
        for hours in (0, 1, 30, 31, 100):
            now = T0 + timedelta(hours=hours)
            session = resolver.resolve(contact, "sms", now).session
            store.append_message(session.id, "user", f"at {hours}", now)

        assert len(_open_sessions(store, contact)) == 1

    def test_idle_sessions(self, resolver: SessionResolver, store: ConversationStore, contact: Contact):
        session = resolver.resolve(contact, "sms", T0).session
        store.append_message(session.id, "user", "hi", T0)

        assert resolver.idle_sessions(T0 + timedelta(hours=23), 24) == []
        idle = resolver.idle_sessions(T0 + timedelta(hours=25), 24)
        assert [s.id for s in idle] == [session.id]

    def test_session_without_messages_is_not_idle(self, resolver: SessionResolver, contact: Contact):
        session = resolver.resolve(contact, "sms", T0).session
        assert resolver.is_idle(session, T0 + timedelta(days=30), 24) is False


def test_elapsed_days():
    assert elapsed_days(None, T0) == 0.0
    assert elapsed_days(T0, T0 + timedelta(days=10)) == pytest.approx(10.0)
    assert elapsed_days(T0 + timedelta(days=1), T0) == 0.0


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        order: list[str] = []

        async def worker(name: str, delay: float):
            async with locks.hold("k"):
                order.append(f"{name}-start")
                await asyncio.sleep(delay)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a", 0.02), worker("b", 0))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        locks = KeyedLocks()
        started = asyncio.Event()

        async def first():
            async with locks.hold("a"):
                await asyncio.wait_for(started.wait(), timeout=1)

        async def second():
            async with locks.hold("b"):
                started.set()

        await asyncio.gather(first(), second())

    @pytest.mark.asyncio
    async def test_unused_locks_are_dropped(self):
        locks = KeyedLocks()
        async with locks.hold("k"):
            assert locks.is_busy("k")
        assert len(locks) == 0
        assert not locks.is_busy("k")

    @pytest.mark.asyncio
    async def test_acquire_holds_across_calls(self):
        locks = KeyedLocks()
        order: list[str] = []

        await locks.acquire("k")

        async def waiter():
            async with locks.hold("k"):
                order.append("waiter")

        task = asyncio.create_task(waiter())
        await asyncio.sleep(0.01)
        assert order == []
        assert locks.is_busy("k")

        locks.release("k")
        await task

        assert order == ["waiter"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_forgotten(self):
        locks = KeyedLocks()
        await locks.acquire("k")

        task = asyncio.create_task(locks.acquire("k"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        locks.release("k")
        assert len(locks) == 0
