"""
Unit tests for services.common.registry module.

Tests:
- subscribe(): record creation, index maintenance, re-subscribe semantics
- unsubscribe(): index cleanup, pending batch removal, idempotence
- update_preferences(): partial updates and index moves
- record_notifications(): rate window accounting
- Read-time index pruning and reconcile_indices()
"""

import pytest

from pushbrotr.core.store import MemoryStore
from pushbrotr.models.constants import Frequency, KeyPrefix
from pushbrotr.models.subscriber import Preferences, QuietHours
from pushbrotr.services.common.registry import SubscriberRegistry, apply_preference_changes
from tests.conftest import NOW, PUSH_KEYS, U1, U2, FakeClock, add_subscriber, endpoint_for


@pytest.fixture
def registry(store: MemoryStore, clock: FakeClock) -> SubscriberRegistry:
    return SubscriberRegistry(store, clock)


# ============================================================================
# subscribe / unsubscribe
# ============================================================================


class TestSubscribe:
    """Subscription creation and replacement."""

    @pytest.mark.asyncio
    async def test_creates_record_and_indices(self, registry, store):
        sub = await add_subscriber(registry, U1, groups=["g1"], keywords=["Bitcoin"])

        assert sub.created_at == NOW
        assert sub.keywords == frozenset({"bitcoin"})
        assert await registry.get(U1) == sub
        assert await store.get(KeyPrefix.GROUP.key("g1")) == [U1]
        assert await store.get(KeyPrefix.KEYWORD.key("bitcoin")) == [U1]

    @pytest.mark.asyncio
    async def test_index_lists_are_sorted(self, registry, store):
        await add_subscriber(registry, U1, groups=["g1"])
        await add_subscriber(registry, U2, groups=["g1"])
        assert await store.get(KeyPrefix.GROUP.key("g1")) == sorted([U1, U2])

    @pytest.mark.asyncio
    async def test_resubscribe_moves_indices(self, registry, store):
        await add_subscriber(registry, U1, groups=["g1", "g2"])
        await add_subscriber(registry, U1, groups=["g2", "g3"])

        assert await store.get(KeyPrefix.GROUP.key("g1")) is None
        assert await store.get(KeyPrefix.GROUP.key("g2")) == [U1]
        assert await store.get(KeyPrefix.GROUP.key("g3")) == [U1]

    @pytest.mark.asyncio
    async def test_resubscribe_keeps_created_at_and_rate_window(self, registry, clock):
        await add_subscriber(registry, U1)
        await registry.record_notifications(U1, 4, now=NOW + 10)
        clock.advance(100)

        sub = await registry.subscribe(U1, "https://push.example.com/new", PUSH_KEYS)

        assert sub.push_endpoint == "https://push.example.com/new"
        assert sub.created_at == NOW
        assert sub.last_notified_at == NOW + 10
        assert sub.notification_count == 4


class TestUnsubscribe:
    @pytest.mark.asyncio
    async def test_removes_record_indices_and_pending(self, registry, store):
        await add_subscriber(registry, U1, groups=["g1"], keywords=["zap"])
        await add_subscriber(registry, U2, groups=["g1"])
        await store.put(KeyPrefix.PENDING.key(U1), {"subscriber_id": U1})

        assert await registry.unsubscribe(U1) is True

        assert await registry.get(U1) is None
        assert await store.get(KeyPrefix.GROUP.key("g1")) == [U2]
        assert await store.get(KeyPrefix.KEYWORD.key("zap")) is None
        assert await store.get(KeyPrefix.PENDING.key(U1)) is None

    @pytest.mark.asyncio
    async def test_unknown_is_noop(self, registry):
        assert await registry.unsubscribe("nobody") is False

    @pytest.mark.asyncio
    async def test_unreadable_record_removed(self, registry, store):
        await store.put(KeyPrefix.SUBSCRIBER.key(U1), {"garbage": True})
        assert await registry.get(U1) is None
        assert await registry.unsubscribe(U1) is True
        assert await store.get(KeyPrefix.SUBSCRIBER.key(U1)) is None


# ============================================================================
# Preferences
# ============================================================================


class TestApplyPreferenceChanges:
    """Pure partial-update helper."""

    @pytest.mark.asyncio
    async def test_partial_flags(self, registry):
        sub = await add_subscriber(registry, U1, reactions=False)
        updated = apply_preference_changes(sub, {"reactions": True})
        assert updated.preferences == Preferences(reactions=True)

    @pytest.mark.asyncio
    async def test_quiet_hours_set_and_clear(self, registry):
        sub = await add_subscriber(registry, U1)
        with_quiet = apply_preference_changes(
            sub, {"quiet_hours": {"start_hour": 22, "end_hour": 7}}
        )
        assert with_quiet.preferences.quiet_hours == QuietHours(22, 7)
        cleared = apply_preference_changes(with_quiet, {"quiet_hours": None})
        assert cleared.preferences.quiet_hours is None

    @pytest.mark.asyncio
    async def test_null_flag_leaves_setting(self, registry):
        sub = await add_subscriber(registry, U1, mentions=True, reactions=True)
        updated = apply_preference_changes(sub, {"mentions": None, "reactions": False})
        assert updated.preferences.mentions is True
        assert updated.preferences.reactions is False

    @pytest.mark.asyncio
    async def test_unknown_keys_ignored(self, registry):
        sub = await add_subscriber(registry, U1)
        assert apply_preference_changes(sub, {"color": "red"}) == sub


class TestUpdatePreferences:
    @pytest.mark.asyncio
    async def test_updates_record_and_indices(self, registry, store):
        await add_subscriber(registry, U1, groups=["g1"])

        updated = await registry.update_preferences(
            U1, {"frequency": "hourly", "groups": ["g2"], "keywords": ["Nostr"]}
        )

        assert updated.preferences.frequency is Frequency.HOURLY
        assert updated.groups == frozenset({"g2"})
        assert await registry.get(U1) == updated
        assert await store.get(KeyPrefix.GROUP.key("g1")) is None
        assert await store.get(KeyPrefix.GROUP.key("g2")) == [U1]
        assert await store.get(KeyPrefix.KEYWORD.key("nostr")) == [U1]

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, registry, store):
        assert await registry.update_preferences(U1, {"mentions": False}) is None
        assert await store.get(KeyPrefix.SUBSCRIBER.key(U1)) is None


# ============================================================================
# Rate window
# ============================================================================


class TestRecordNotifications:
    @pytest.mark.asyncio
    async def test_first_notification_opens_window(self, registry):
        await add_subscriber(registry, U1)
        await registry.record_notifications(U1, 1, now=NOW)
        sub = await registry.get(U1)
        assert sub.last_notified_at == NOW
        assert sub.notification_count == 1

    @pytest.mark.asyncio
    async def test_accumulates_within_window(self, registry):
        await add_subscriber(registry, U1)
        await registry.record_notifications(U1, 2, now=NOW)
        await registry.record_notifications(U1, 3, now=NOW + 600)
        assert (await registry.get(U1)).notification_count == 5

    @pytest.mark.asyncio
    async def test_restarts_after_window(self, registry):
        await add_subscriber(registry, U1)
        await registry.record_notifications(U1, 9, now=NOW)
        await registry.record_notifications(U1, 1, now=NOW + 3600)
        sub = await registry.get(U1)
        assert sub.notification_count == 1
        assert sub.last_notified_at == NOW + 3600

    @pytest.mark.asyncio
    async def test_unknown_subscriber_ignored(self, registry, store):
        await registry.record_notifications("nobody", 1, now=NOW)
        assert len(store) == 0


# ============================================================================
# Index reads and reconciliation
# ============================================================================


class TestIndices:
    """Read-time pruning and full reconciliation."""

    @pytest.mark.asyncio
    async def test_list_group_members_prunes_stale(self, registry, store):
        await add_subscriber(registry, U1, groups=["g1"])
        await store.put(KeyPrefix.GROUP.key("g1"), [U1, U2, "ghost"])
        await add_subscriber(registry, U2, groups=[])  # record without g1

        assert await registry.list_group_members("g1") == [U1]
        assert await store.get(KeyPrefix.GROUP.key("g1")) == [U1]

    @pytest.mark.asyncio
    async def test_keyword_lookup_is_case_insensitive(self, registry):
        await add_subscriber(registry, U1, keywords=["bitcoin"])
        assert await registry.list_keyword_subscribers(" BitCoin ") == [U1]

    @pytest.mark.asyncio
    async def test_list_groups_and_keywords(self, registry):
        await add_subscriber(registry, U1, groups=["g2", "g1"], keywords=["zap"])
        assert await registry.list_groups() == ["g1", "g2"]
        assert await registry.list_keywords() == ["zap"]

    @pytest.mark.asyncio
    async def test_reconcile_restores_missing_and_removes_stale(self, registry, store):
        await add_subscriber(registry, U1, groups=["g1"], keywords=["zap"])
        await store.delete(KeyPrefix.GROUP.key("g1"))
        await store.put(KeyPrefix.KEYWORD.key("old"), [U1])

        assert await registry.reconcile_indices() == 2
        assert await store.get(KeyPrefix.GROUP.key("g1")) == [U1]
        assert await store.get(KeyPrefix.KEYWORD.key("old")) is None
        assert await registry.reconcile_indices() == 0

    @pytest.mark.asyncio
    async def test_counts(self, registry):
        await add_subscriber(registry, U1, groups=["g1"], keywords=["zap", "nostr"])
        await add_subscriber(registry, U2, groups=["g1"])
        assert await registry.counts() == {"subscribers": 2, "groups": 1, "keywords": 2}

    @pytest.mark.asyncio
    async def test_list_subscribers_skips_unreadable(self, registry, store):
        await add_subscriber(registry, U1)
        await store.put(KeyPrefix.SUBSCRIBER.key("broken"), {"subscriber_id": "broken"})
        assert [s.subscriber_id for s in await registry.list_subscribers()] == [U1]
        assert endpoint_for(U1) == (await registry.get(U1)).push_endpoint
