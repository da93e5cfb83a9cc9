"""Tests for the change feed."""

from datetime import timedelta

import pytest

from expense_sync.clock import EPOCH
from expense_sync.models import ChangeAction, EntityKind
from expense_sync.sync import ChangeFeed

from helpers import OTHER_USER, USER, START, change, push_body


class TestChangeFeed:
    """Tests for ChangeFeed selection and ordering."""

    @pytest.fixture
    def feed(self, store, clock):
        return ChangeFeed(store, clock=clock)

    @pytest.mark.asyncio
    async def test_empty_feed(self, feed):
        """Test a user with no records gets no events."""
        response = await feed.changes_for_user(USER)

        assert response.changes.total == 0
        assert response.timestamp == EPOCH

    @pytest.mark.asyncio
    async def test_since_is_strict(self, feed, service, clock):
        """Test a record updated exactly at `since` is excluded."""
        clock.advance()
        await service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))

        assert await feed.changes(USER, EntityKind.EXPENSE, since=clock.now()) == []
        assert len(await feed.changes(USER, EntityKind.EXPENSE, since=START)) == 1

    @pytest.mark.asyncio
    async def test_ordered_by_updated_at_then_id(self, feed, service, clock):
        """Test ascending updatedAt with id as tie-breaker."""
        clock.advance()
        await service.push(USER, push_body("A", expenses=[
            change("E3", {"amount": 3}),
            change("E2", {"amount": 2}),
        ]))
        clock.advance()
        await service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))

        events = await feed.changes(USER, EntityKind.EXPENSE)

        assert [e.id for e in events] == ["E2", "E3", "E1"]

    @pytest.mark.asyncio
    async def test_live_record_is_upsert_with_document(self, feed, service, clock):
        """Test live records carry their full document."""
        clock.advance()
        await service.push(USER, push_body("A", categories=[change("C1", {"name": "Food"})]))

        events = await feed.changes(USER, EntityKind.CATEGORY)

        assert events[0].action == ChangeAction.UPSERT
        assert events[0].data["name"] == "Food"
        assert events[0].data["isActive"] is True
        assert events[0].updated_at == clock.now()

    @pytest.mark.asyncio
    async def test_inactive_budget_is_delete(self, feed, service, clock):
        """Test an inactive budget is reported as a delete with no data."""
        clock.advance()
        await service.push(USER, push_body("A", budgets=[change("B1", {"amount": 100, "isActive": False})]))

        events = await feed.changes(USER, EntityKind.BUDGET)

        assert events[0].action == ChangeAction.DELETE
        assert events[0].data is None

    @pytest.mark.asyncio
    async def test_other_users_records_excluded(self, feed, service, clock):
        """Test the feed never leaks another user's records."""
        clock.advance()
        await service.push(OTHER_USER, push_body("Z", expenses=[change("E9", {"amount": 9})]))

        response = await feed.changes_for_user(USER)

        assert response.changes.total == 0

    @pytest.mark.asyncio
    async def test_timestamp_is_high_water_mark(self, feed, service, clock):
        """Test the response timestamp is the latest updatedAt delivered."""
        clock.advance()
        await service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))
        clock.advance()
        await service.push(USER, push_body("A", categories=[change("C1", {"name": "Food"})]))
        last_write = clock.now()
        clock.advance(60)

        response = await feed.changes_for_user(USER)

        assert response.timestamp == last_write
        assert response.changes.total == 2

    @pytest.mark.asyncio
    async def test_timestamp_echoes_since_when_nothing_changed(self, feed, clock):
        """Test an empty pull doesn't move the client's `since`."""
        clock.advance(2 * 60 * 60)
        since = START + timedelta(hours=1)

        response = await feed.changes_for_user(USER, since=since)

        assert response.timestamp == since

    @pytest.mark.asyncio
    async def test_future_since_capped_at_now(self, feed, clock):
        """Test a `since` ahead of the server clock comes back as now."""
        response = await feed.changes_for_user(USER, since=START + timedelta(days=365))

        assert response.timestamp == clock.now()
        assert response.changes.total == 0

    @pytest.mark.asyncio
    async def test_feed_has_no_side_effects(self, feed, service, store, clock):
        """Test reading the feed doesn't touch records."""
        clock.advance()
        await service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))
        before = await store.get_record(USER, EntityKind.EXPENSE, "E1")

        await feed.changes_for_user(USER)

        assert await store.get_record(USER, EntityKind.EXPENSE, "E1") == before

    @pytest.mark.asyncio
    async def test_response_wire_shape(self, feed, service, clock):
        """Test the response serializes with camelCase keys."""
        clock.advance()
        await service.push(USER, push_body("A", expenses=[change("E1", {"amount": 1})]))

        body = (await feed.changes_for_user(USER)).to_response()

        assert set(body) == {"timestamp", "changes"}
        assert set(body["changes"]) == {"expenses", "categories", "budgets"}
        assert set(body["changes"]["expenses"][0]) == {"id", "kind", "action", "data", "updatedAt"}
