"""Unit tests for ChatService against the in-memory store."""

import asyncio
import random
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.api.middleware.error_handler import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from src.core.supabase import StaleWriteError
from src.models.conversation import SenderType
from src.services import chat_service as chat_module
from src.services.chat_service import (
    MAX_WRITE_ATTEMPTS,
    ChatService,
    apply_mark_read,
    apply_new_message,
    build_message,
    count_unread,
    is_participant,
    receiver_id,
)
from tests.fakes import FakeSupabaseClient

CUSTOMER = "customer-1"
VENDOR = "vendor-1"


def assert_counters_consistent(conversation: dict) -> None:
    """Stored counters must equal the unread messages per role."""
    messages = conversation["messages"]
    assert conversation["unread_customer"] == count_unread(messages, SenderType.CUSTOMER)
    assert conversation["unread_vendor"] == count_unread(messages, SenderType.VENDOR)


@pytest.fixture
def service(fake_store: FakeSupabaseClient) -> ChatService:
    return ChatService()


class TestPureHelpers:
    """Tests for the message and read-state helpers."""

    def test_new_message_bumps_receiver_only(self) -> None:
        conversation = {"messages": [], "unread_customer": 2, "unread_vendor": 0}
        message = build_message(VENDOR, SenderType.VENDOR, "Hello", "2026-01-01T00:00:00+00:00")

        changes = apply_new_message(conversation, message)

        assert changes["unread_customer"] == 3
        assert "unread_vendor" not in changes
        assert changes["last_message"] == "Hello"
        assert changes["messages"] == [message]
        assert conversation["messages"] == []

    def test_mark_read_only_touches_other_role(self) -> None:
        mine = build_message(CUSTOMER, SenderType.CUSTOMER, "Hi", "t1")
        theirs = build_message(VENDOR, SenderType.VENDOR, "Yes", "t2")
        conversation = {"messages": [mine, theirs], "unread_customer": 1, "unread_vendor": 1}

        changes = apply_mark_read(conversation, SenderType.CUSTOMER)

        assert changes["unread_customer"] == 0
        assert "unread_vendor" not in changes
        assert [m["is_read"] for m in changes["messages"]] == [False, True]

    def test_participant_helpers(self) -> None:
        conversation = {"customer_id": CUSTOMER, "vendor_id": VENDOR}

        assert is_participant(conversation, CUSTOMER)
        assert is_participant(conversation, VENDOR)
        assert not is_participant(conversation, "someone-else")
        assert receiver_id(conversation, SenderType.CUSTOMER) == VENDOR
        assert receiver_id(conversation, SenderType.VENDOR) == CUSTOMER


class TestStartOrGetConversation:
    """Tests for start_or_get_conversation."""

    @pytest.mark.asyncio
    async def test_creates_with_initial_message(self, service: ChatService) -> None:
        conversation, created = await service.start_or_get_conversation(CUSTOMER, VENDOR, "prod-1", "Hi")

        assert created is True
        assert conversation["product_id"] == "prod-1"
        assert len(conversation["messages"]) == 1
        message = conversation["messages"][0]
        assert message["sender_id"] == CUSTOMER
        assert message["sender_type"] == "customer"
        assert message["is_read"] is False
        assert conversation["last_message"] == "Hi"
        assert conversation["last_message_time"] == message["timestamp"]
        assert conversation["unread_vendor"] == 1
        assert conversation["unread_customer"] == 0

    @pytest.mark.asyncio
    async def test_creates_empty_without_initial_message(self, service: ChatService) -> None:
        conversation, created = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="   ")

        assert created is True
        assert conversation["messages"] == []
        assert conversation["last_message"] == ""
        assert conversation["unread_vendor"] == 0

    @pytest.mark.asyncio
    async def test_returns_existing_and_ignores_initial_message(
        self, service: ChatService, fake_store: FakeSupabaseClient
    ) -> None:
        first, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Hi")

        second, created = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Again")

        assert created is False
        assert second["id"] == first["id"]
        assert len(second["messages"]) == 1
        assert len(fake_store.rows("conversations")) == 1

    @pytest.mark.asyncio
    async def test_rejects_same_participant(self, service: ChatService) -> None:
        with pytest.raises(ValidationError):
            await service.start_or_get_conversation(CUSTOMER, CUSTOMER)

    @pytest.mark.asyncio
    async def test_concurrent_starts_yield_one_record(
        self, service: ChatService, fake_store: FakeSupabaseClient
    ) -> None:
        fake_store.read_delay = 0.01

        results = await asyncio.gather(
            *(service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Hi") for _ in range(5))
        )

        assert len(fake_store.rows("conversations")) == 1
        assert len({conversation["id"] for conversation, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1


class TestSendMessage:
    """Tests for send_message."""

    @pytest.mark.asyncio
    async def test_vendor_reply_increments_customer_counter(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Hi")

        updated, message = await service.send_message(conversation["id"], VENDOR, SenderType.VENDOR, "  Yes  ")

        assert message["message"] == "Yes"
        assert message["is_read"] is False
        assert updated["unread_customer"] == 1
        assert updated["unread_vendor"] == 1
        assert updated["last_message"] == "Yes"
        assert updated["messages"][-1]["id"] == message["id"]
        assert_counters_consistent(updated)

    @pytest.mark.asyncio
    async def test_accepts_role_as_string(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)

        updated, _ = await service.send_message(conversation["id"], CUSTOMER, "customer", "Hello")

        assert updated["unread_vendor"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", None])
    async def test_rejects_empty_text(self, service: ChatService, text: str | None) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)

        with pytest.raises(ValidationError):
            await service.send_message(conversation["id"], CUSTOMER, SenderType.CUSTOMER, text)

    @pytest.mark.asyncio
    async def test_rejects_unknown_role(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)

        with pytest.raises(ValidationError):
            await service.send_message(conversation["id"], CUSTOMER, "admin", "Hello")

    @pytest.mark.asyncio
    async def test_missing_conversation(self, service: ChatService) -> None:
        with pytest.raises(NotFoundError):
            await service.send_message("missing", CUSTOMER, SenderType.CUSTOMER, "Hello")

    @pytest.mark.asyncio
    async def test_rejects_sender_not_in_role(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)

        with pytest.raises(AuthorizationError):
            await service.send_message(conversation["id"], CUSTOMER, SenderType.VENDOR, "Pretending")

    @pytest.mark.asyncio
    async def test_retries_after_losing_a_race(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Hi")
        real_update = chat_module.update_if_version
        calls = 0

        async def racing_update(client, table, row, changes, operation):
            nonlocal calls
            calls += 1
            if calls == 1:
                # Another writer lands between our read and our write
                reply = build_message(VENDOR, SenderType.VENDOR, "Sneaky", "2026-01-01T00:00:00+00:00")
                await real_update(client, table, row, apply_new_message(row, reply), "race")
            return await real_update(client, table, row, changes, operation)

        with patch("src.services.chat_service.update_if_version", side_effect=racing_update):
            updated, message = await service.send_message(conversation["id"], CUSTOMER, SenderType.CUSTOMER, "Mine")

        assert calls == 2
        assert [m["message"] for m in updated["messages"]] == ["Hi", "Sneaky", "Mine"]
        assert updated["messages"][-1]["id"] == message["id"]
        assert_counters_consistent(updated)

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_stale_writes(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)
        stale = AsyncMock(side_effect=StaleWriteError(conversation["id"]))

        with patch("src.services.chat_service.update_if_version", stale):
            with pytest.raises(ConflictError):
                await service.send_message(conversation["id"], CUSTOMER, SenderType.CUSTOMER, "Hello")

        assert stale.await_count == MAX_WRITE_ATTEMPTS

    @pytest.mark.asyncio
    async def test_concurrent_sends_never_lose_messages(
        self, service: ChatService, fake_store: FakeSupabaseClient
    ) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)
        fake_store.read_delay = 0.002

        results = await asyncio.gather(
            *(
                service.send_message(conversation["id"], CUSTOMER, SenderType.CUSTOMER, f"msg {i}")
                for i in range(3)
            ),
            return_exceptions=True,
        )

        for result in results:
            assert not isinstance(result, Exception) or isinstance(result, ConflictError)
        sent = [result[1]["message"] for result in results if not isinstance(result, Exception)]

        stored = fake_store.rows("conversations")[0]
        assert sorted(m["message"] for m in stored["messages"]) == sorted(sent)
        assert stored["version"] == len(sent)
        assert_counters_consistent(stored)

    @pytest.mark.asyncio
    async def test_store_failure_surfaces_as_store_error(
        self, service: ChatService, fake_store: FakeSupabaseClient
    ) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)
        fake_store.fail_next(httpx.ConnectError("connection refused"))

        with pytest.raises(StoreError) as exc_info:
            await service.send_message(conversation["id"], CUSTOMER, SenderType.CUSTOMER, "Hello")

        assert "connection refused" not in exc_info.value.message


class TestMarkAllRead:
    """Tests for mark_all_read."""

    @pytest.mark.asyncio
    async def test_chat_round_trip(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Hi")
        await service.send_message(conversation["id"], VENDOR, SenderType.VENDOR, "Yes")

        updated = await service.mark_all_read(conversation["id"], SenderType.CUSTOMER)

        hi, yes = updated["messages"]
        assert yes["is_read"] is True
        assert hi["is_read"] is False
        assert updated["unread_customer"] == 0
        assert updated["unread_vendor"] == 1

    @pytest.mark.asyncio
    async def test_nothing_to_read_is_harmless(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)

        updated = await service.mark_all_read(conversation["id"], "vendor")

        assert updated["unread_vendor"] == 0
        assert updated["messages"] == []

    @pytest.mark.asyncio
    async def test_missing_conversation(self, service: ChatService) -> None:
        with pytest.raises(NotFoundError):
            await service.mark_all_read("missing", SenderType.VENDOR)

    @pytest.mark.asyncio
    async def test_message_arriving_during_read_stays_unread(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Hi")
        real_update = chat_module.update_if_version
        calls = 0

        async def racing_update(client, table, row, changes, operation):
            nonlocal calls
            calls += 1
            if calls == 1:
                late = build_message(CUSTOMER, SenderType.CUSTOMER, "Late", "2026-01-01T00:00:00+00:00")
                await real_update(client, table, row, apply_new_message(row, late), "race")
            return await real_update(client, table, row, changes, operation)

        with patch("src.services.chat_service.update_if_version", side_effect=racing_update):
            updated = await service.mark_all_read(conversation["id"], SenderType.VENDOR)

        assert [m["is_read"] for m in updated["messages"]] == [True, True]
        assert updated["unread_vendor"] == 0
        assert_counters_consistent(updated)

    @pytest.mark.asyncio
    async def test_counters_track_unread_messages_for_any_sequence(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR)
        rng = random.Random(7)

        for step in range(40):
            action = rng.choice(["customer", "vendor", "read-customer", "read-vendor"])
            if action == "customer":
                updated, _ = await service.send_message(conversation["id"], CUSTOMER, action, f"c{step}")
            elif action == "vendor":
                updated, _ = await service.send_message(conversation["id"], VENDOR, action, f"v{step}")
            else:
                updated = await service.mark_all_read(conversation["id"], action.split("-")[1])
            assert_counters_consistent(updated)


class TestQueries:
    """Tests for listing, fetching and unread totals."""

    @pytest.mark.asyncio
    async def test_list_sorted_by_latest_activity(self, service: ChatService) -> None:
        first, _ = await service.start_or_get_conversation(CUSTOMER, "vendor-a", initial_message="a")
        await service.start_or_get_conversation(CUSTOMER, "vendor-b", initial_message="b")
        await service.start_or_get_conversation(CUSTOMER, "vendor-c", initial_message="c")
        await service.send_message(first["id"], "vendor-a", SenderType.VENDOR, "newest")

        rows, pagination = await service.list_conversations(CUSTOMER, SenderType.CUSTOMER, page=1, page_size=2)

        assert [row["vendor_id"] for row in rows] == ["vendor-a", "vendor-c"]
        assert all("messages" not in row for row in rows)
        assert pagination == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

        rows, _ = await service.list_conversations(CUSTOMER, SenderType.CUSTOMER, page=2, page_size=2)
        assert [row["vendor_id"] for row in rows] == ["vendor-b"]

    @pytest.mark.asyncio
    async def test_list_filters_by_role(self, service: ChatService) -> None:
        await service.start_or_get_conversation(CUSTOMER, VENDOR)

        as_vendor, _ = await service.list_conversations(CUSTOMER, SenderType.VENDOR)
        vendor_rows, _ = await service.list_conversations(VENDOR, SenderType.VENDOR)

        assert as_vendor == []
        assert len(vendor_rows) == 1

    @pytest.mark.asyncio
    async def test_list_caps_page_size(self, service: ChatService) -> None:
        _, pagination = await service.list_conversations(CUSTOMER, SenderType.CUSTOMER, page_size=10_000)

        assert pagination["limit"] == service.settings.chat_max_page_size
        assert pagination["total_pages"] == 0

    @pytest.mark.asyncio
    async def test_get_conversation_for_participants_only(self, service: ChatService) -> None:
        conversation, _ = await service.start_or_get_conversation(CUSTOMER, VENDOR, initial_message="Hi")

        fetched = await service.get_conversation(conversation["id"], VENDOR)
        assert fetched["messages"][0]["message"] == "Hi"

        with pytest.raises(AuthorizationError):
            await service.get_conversation(conversation["id"], "someone-else")
        with pytest.raises(NotFoundError):
            await service.get_conversation("missing", CUSTOMER)

    @pytest.mark.asyncio
    async def test_unread_total_sums_role_counters(self, service: ChatService) -> None:
        await service.start_or_get_conversation(CUSTOMER, "vendor-a", initial_message="one")
        second, _ = await service.start_or_get_conversation(CUSTOMER, "vendor-b", initial_message="two")
        await service.send_message(second["id"], CUSTOMER, SenderType.CUSTOMER, "three")
        await service.start_or_get_conversation("customer-2", "vendor-a", initial_message="four")

        assert await service.get_unread_total("vendor-b", SenderType.VENDOR) == 2
        assert await service.get_unread_total("vendor-a", SenderType.VENDOR) == 2
        assert await service.get_unread_total(CUSTOMER, SenderType.CUSTOMER) == 0
        assert await service.get_unread_total("nobody", SenderType.VENDOR) == 0
