"""
Unit tests for services.notifier.aggregator module.

Tests:
- Payload rendering: titles, bodies, deep links
- Gates: preference, quiet hours, rate limit, unknown subscribers
- Collapse of several triggers for the same event
- Hourly batching and flush_due()
"""

import pytest

from pushbrotr.models.constants import Frequency, KeyPrefix, Priority, TriggerType
from pushbrotr.models.subscriber import QuietHours
from pushbrotr.services.common.configs import PayloadConfig, PushConfig
from pushbrotr.services.common.queue import DeliveryQueue
from pushbrotr.services.common.registry import SubscriberRegistry
from pushbrotr.services.common.telemetry import DeliveryMetrics
from pushbrotr.services.notifier.aggregator import (
    Aggregator,
    GateDecision,
    build_payload,
    collapse,
    group_label,
    local_hour,
)
from pushbrotr.services.notifier.configs import AggregatorConfig
from tests.conftest import NOW, U1, U2, add_subscriber, make_trigger


COMMUNITY = "34550:" + "a" * 64 + ":rust"
QUIET_NOW = NOW + 2_800  # 23:00:00 UTC


@pytest.fixture
def registry(store, clock) -> SubscriberRegistry:
    return SubscriberRegistry(store, clock)


@pytest.fixture
def queue(store, registry, transport, clock) -> DeliveryQueue:
    return DeliveryQueue(store, registry, transport, DeliveryMetrics(clock), PushConfig(), clock)


@pytest.fixture
def aggregator(store, registry, queue, clock) -> Aggregator:
    return Aggregator(store, registry, queue, AggregatorConfig(), PayloadConfig(), clock)


def activity(event_id: str, **kwargs):
    return make_trigger(
        event_id,
        type_=TriggerType.GROUP_ACTIVITY,
        priority=Priority.NORMAL,
        group_id="g1",
        **kwargs,
    )


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    def test_group_label(self):
        assert group_label(COMMUNITY) == "rust"
        assert group_label("g1") == "g1"
        assert group_label("a:b") == "a:b"

    def test_local_hour(self):
        assert local_hour(QUIET_NOW, "UTC") == 23
        assert local_hour(QUIET_NOW, "Europe/Berlin") == 0

    def test_local_hour_unknown_zone_falls_back_to_utc(self):
        assert local_hour(QUIET_NOW, "Mars/Olympus") == 23

    def test_collapse_keeps_highest_priority(self):
        normal = activity("e1")
        mention = make_trigger("e1")
        other = activity("e2")
        assert collapse([normal, other, mention]) == [mention, other]


class TestBuildPayload:
    def test_single_mention(self):
        payload = build_payload([make_trigger("e1", excerpt="hi")], PayloadConfig(), NOW)

        assert payload.title == "You were mentioned"
        assert payload.body == "hi"
        assert payload.timestamp == NOW
        assert payload.icon == "/icon-192x192.png"
        assert payload.data == {
            "eventId": "e1",
            "groupId": None,
            "type": "mention",
            "url": "/settings/notifications",
        }

    def test_single_group_activity(self):
        trigger = make_trigger(
            "e9", type_=TriggerType.GROUP_ACTIVITY, priority=Priority.NORMAL, group_id=COMMUNITY
        )
        payload = build_payload([trigger], PayloadConfig(), NOW)

        assert payload.title == "Activity in rust"
        assert payload.data["url"] == f"/group/{COMMUNITY}?post=e9"

    @pytest.mark.parametrize(
        ("type_", "title"),
        [
            (TriggerType.KEYWORD, "Keyword alert"),
            (TriggerType.MODERATION, "Moderation notice"),
            (TriggerType.REACTION, "New reaction"),
        ],
    )
    def test_titles(self, type_, title):
        assert build_payload([make_trigger(type_=type_)], PayloadConfig(), NOW).title == title

    def test_summary(self):
        triggers = [make_trigger("e1", group_id="g1"), activity("e2"), activity("e3")]
        payload = build_payload(triggers, PayloadConfig(), NOW)

        assert payload.title == "3 new notifications"
        assert payload.body == "1 mention, 2 group updates"
        assert payload.data == {
            "eventIds": ["e1", "e2", "e3"],
            "groupIds": ["g1"],
            "url": "/group/g1",
        }

    def test_summary_across_groups_links_settings(self):
        triggers = [activity("e1"), make_trigger("e2", group_id="g2")]
        payload = build_payload(triggers, PayloadConfig(default_url="/inbox"), NOW)
        assert payload.data["url"] == "/inbox"


# ============================================================================
# Gates
# ============================================================================


class TestGates:
    @pytest.mark.asyncio
    async def test_immediate_delivery(self, aggregator, registry, queue):
        await add_subscriber(registry, U1)

        result = await aggregator.process([make_trigger("e1")], now=NOW)

        [item] = result.enqueued
        assert item.subscriber_id == U1
        assert item.priority == Priority.HIGH
        assert await queue.pending() == [item]
        assert (await registry.get(U1)).notification_count == 1

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, aggregator):
        result = await aggregator.process([make_trigger(targets=[U1, U2])], now=NOW)
        assert result.filtered == 2
        assert result.decisions[GateDecision.UNKNOWN_SUBSCRIBER] == 2

    @pytest.mark.asyncio
    async def test_preference_disabled(self, aggregator, registry, queue):
        await add_subscriber(registry, U1)  # reactions off by default
        trigger = make_trigger(type_=TriggerType.REACTION, priority=Priority.NORMAL)

        result = await aggregator.process([trigger], now=NOW)

        assert result.decisions == {GateDecision.PREFERENCE: 1}
        assert await queue.pending() == []

    @pytest.mark.asyncio
    async def test_keyword_ignores_category_flags(self, aggregator, registry):
        await add_subscriber(
            registry, U1, mentions=False, group_activity=False, moderation=False
        )
        trigger = make_trigger(type_=TriggerType.KEYWORD, priority=Priority.NORMAL)
        assert len((await aggregator.process([trigger], now=NOW)).enqueued) == 1

    @pytest.mark.asyncio
    async def test_quiet_hours(self, aggregator, registry):
        await add_subscriber(registry, U1, quiet_hours=QuietHours(22, 7))

        normal = await aggregator.process([activity("e1")], now=QUIET_NOW)
        assert normal.decisions == {GateDecision.QUIET_HOURS: 1}

        urgent = await aggregator.process([make_trigger("e2")], now=QUIET_NOW)
        assert len(urgent.enqueued) == 1

    @pytest.mark.asyncio
    async def test_quiet_hours_in_subscriber_timezone(self, aggregator, registry):
        # 23:00 UTC is 18:00 in New York
        await add_subscriber(
            registry, U1, quiet_hours=QuietHours(22, 7, timezone="America/New_York")
        )
        result = await aggregator.process([activity("e1")], now=QUIET_NOW)
        assert len(result.enqueued) == 1

    @pytest.mark.asyncio
    async def test_rate_limit(self, aggregator, registry):
        await add_subscriber(registry, U1)
        await registry.record_notifications(U1, 10, now=NOW - 10)

        blocked = await aggregator.process([activity("e1")], now=NOW)
        assert blocked.decisions == {GateDecision.RATE_LIMIT: 1}

        urgent = await aggregator.process([make_trigger("e2")], now=NOW)
        assert len(urgent.enqueued) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_counts_current_pass(self, aggregator, registry):
        await add_subscriber(registry, U1)
        await registry.record_notifications(U1, 9, now=NOW - 10)

        result = await aggregator.process([activity("e1"), activity("e2")], now=NOW)

        assert result.decisions == {GateDecision.RATE_LIMIT: 1}
        [item] = result.enqueued
        assert item.payload.data["eventId"] == "e1"

    @pytest.mark.asyncio
    async def test_rate_window_expires(self, aggregator, registry):
        await add_subscriber(registry, U1)
        await registry.record_notifications(U1, 10, now=NOW - 3_600)

        result = await aggregator.process([activity("e1")], now=NOW)

        assert len(result.enqueued) == 1


class TestCollapse:
    @pytest.mark.asyncio
    async def test_one_notification_per_event(self, aggregator, registry, queue):
        await add_subscriber(registry, U1, groups=["g1"])
        await add_subscriber(registry, U2, groups=["g1"])
        triggers = [
            make_trigger("e1", targets=[U1], group_id="g1"),
            activity("e1", targets=[U1, U2]),
        ]

        await aggregator.process(triggers, now=NOW)

        items = {i.subscriber_id: i for i in await queue.pending()}
        assert items[U1].payload.title == "You were mentioned"
        assert items[U1].priority == Priority.HIGH
        assert items[U2].payload.title == "Activity in g1"
        assert items[U2].priority == Priority.NORMAL


# ============================================================================
# Batching
# ============================================================================


class TestBatching:
    @pytest.mark.asyncio
    async def test_hourly_batch(self, aggregator, registry, queue, store):
        await add_subscriber(registry, U1, frequency=Frequency.HOURLY)

        result = await aggregator.process([activity(f"e{i}") for i in range(3)], now=NOW)

        assert result.pending == [U1]
        assert await queue.pending() == []
        assert await aggregator.flush_due(now=NOW + 3_599) == []

        [item] = await aggregator.flush_due(now=NOW + 3_600)

        assert item.payload.title == "3 new notifications"
        assert item.payload.body == "3 group updates"
        assert item.priority == Priority.NORMAL
        assert await store.get(KeyPrefix.PENDING.key(U1)) is None
        assert (await registry.get(U1)).notification_count == 3

    @pytest.mark.asyncio
    async def test_batch_accumulates_across_passes(self, aggregator, registry):
        await add_subscriber(registry, U1, frequency=Frequency.DAILY)
        await aggregator.process([activity("e1")], now=NOW)
        await aggregator.process([activity("e2")], now=NOW + 60)

        assert await aggregator.flush_due(now=NOW + 3_600) == []
        [item] = await aggregator.flush_due(now=NOW + 86_400)
        assert item.payload.data["eventIds"] == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_high_priority_flushes_pending(self, aggregator, registry, store):
        await add_subscriber(registry, U1, frequency=Frequency.HOURLY)
        await aggregator.process([activity("e1")], now=NOW)

        result = await aggregator.process([make_trigger("e2")], now=NOW + 10)

        [item] = result.enqueued
        assert item.payload.body == "1 mention, 1 group update"
        assert item.priority == Priority.HIGH
        assert await store.get(KeyPrefix.PENDING.key(U1)) is None

    @pytest.mark.asyncio
    async def test_flush_due_drops_batches_of_unknown_subscribers(
        self, aggregator, registry, store
    ):
        await add_subscriber(registry, U1, frequency=Frequency.HOURLY)
        await aggregator.process([activity("e1")], now=NOW)
        await registry.unsubscribe(U1)
        await store.put(KeyPrefix.PENDING.key(U2), {"subscriber_id": U2, "since": NOW,
                                                   "triggers": []})

        assert await aggregator.flush_due(now=NOW + 7_200) == []
        assert await store.get(KeyPrefix.PENDING.key(U2)) is None

    @pytest.mark.asyncio
    async def test_invalid_batch_removed(self, aggregator, store):
        await store.put(KeyPrefix.PENDING.key(U1), {"bogus": True})
        assert await aggregator.flush_due(now=NOW) == []
        assert await store.get(KeyPrefix.PENDING.key(U1)) is None

    @pytest.mark.asyncio
    async def test_flush_nothing(self, aggregator, registry):
        await add_subscriber(registry, U1)
        assert await aggregator.flush(U1, now=NOW) is None

    @pytest.mark.asyncio
    async def test_disabled_category_not_flushed(self, aggregator, registry, queue, store):
        await add_subscriber(registry, U1, groups=["g1"], frequency=Frequency.HOURLY)
        await aggregator.process([activity("e1")], now=NOW)

        await registry.update_preferences(U1, {"group_activity": False})

        assert await aggregator.flush_due(now=NOW + 3_600) == []
        assert await queue.pending() == []
        assert await store.get(KeyPrefix.PENDING.key(U1)) is None

    @pytest.mark.asyncio
    async def test_quiet_hours_hold_batch(self, aggregator, registry, store):
        await add_subscriber(
            registry, U1, frequency=Frequency.HOURLY, quiet_hours=QuietHours(22, 7)
        )
        await aggregator.process([activity("e1")], now=NOW - 3_600)  # 21:13 UTC

        assert await aggregator.flush_due(now=QUIET_NOW) == []
        assert await store.get(KeyPrefix.PENDING.key(U1)) is not None

        [item] = await aggregator.flush_due(now=QUIET_NOW + 8 * 3_600)  # 07:00 UTC
        assert item.payload.data["eventId"] == "e1"

    @pytest.mark.asyncio
    async def test_urgent_flush_in_quiet_hours_keeps_normal_pending(
        self, aggregator, registry, store
    ):
        await add_subscriber(
            registry, U1, frequency=Frequency.HOURLY, quiet_hours=QuietHours(22, 7)
        )
        await aggregator.process([activity("e1")], now=NOW - 3_600)

        result = await aggregator.process([make_trigger("e2")], now=QUIET_NOW)

        [item] = result.enqueued
        assert item.payload.title == "You were mentioned"
        pending = await store.get(KeyPrefix.PENDING.key(U1))
        assert [t["source_event_id"] for t in pending["triggers"]] == ["e1"]
        assert pending["since"] == NOW - 3_600

    @pytest.mark.asyncio
    async def test_flush_counts_dropped_triggers(self, aggregator, registry):
        await add_subscriber(registry, U1, frequency=Frequency.HOURLY)
        await aggregator.process([activity("e1")], now=NOW)
        await registry.update_preferences(U1, {"group_activity": False})

        result = await aggregator.process([make_trigger("e2")], now=NOW + 10)

        assert result.decisions == {GateDecision.PREFERENCE: 1}
        [item] = result.enqueued
        assert item.payload.data["eventId"] == "e2"
        assert (await registry.get(U1)).notification_count == 1
