"""
Unit tests for services.notifier.extractor module.

Tests:
- Mentions from p tags and npub references, author exclusion
- Group activity, moderation, reactions and keyword matches
- Signature rejection and processed-event idempotence
"""

import pytest

from pushbrotr.models.constants import Priority, TriggerType
from pushbrotr.services.common.registry import SubscriberRegistry
from pushbrotr.services.common.state import EventState
from pushbrotr.services.notifier.configs import ExtractorConfig
from pushbrotr.services.notifier.extractor import TriggerExtractor
from tests.conftest import AUTHOR, U1, U2, add_subscriber, make_event


@pytest.fixture
def registry(store, clock) -> SubscriberRegistry:
    return SubscriberRegistry(store, clock)


@pytest.fixture
def state(store) -> EventState:
    return EventState(store)


@pytest.fixture
def extractor(state, registry) -> TriggerExtractor:
    return TriggerExtractor(state, registry, ExtractorConfig(), verifier=lambda _e: True)


def by_type(triggers):
    return {t.type: t for t in triggers}


# ============================================================================
# Classification
# ============================================================================


class TestMentions:
    @pytest.mark.asyncio
    async def test_p_tag(self, extractor):
        triggers = await extractor.extract([make_event(tags=[["p", U1]], content="hi there")])

        [mention] = triggers
        assert mention.type == TriggerType.MENTION
        assert mention.priority == Priority.HIGH
        assert mention.target_subscriber_ids == (U1,)
        assert mention.excerpt == "hi there"

    @pytest.mark.asyncio
    async def test_npub_in_content(self, extractor):
        triggers = await extractor.extract([make_event(content=f"ping {U2} please")])
        assert triggers[0].target_subscriber_ids == (U2,)

    @pytest.mark.asyncio
    async def test_deduplicated_targets(self, extractor):
        event = make_event(tags=[["p", U1], ["p", U1]], content=f"cc {U1}")
        [mention] = await extractor.extract([event])
        assert mention.target_subscriber_ids == (U1,)

    @pytest.mark.asyncio
    async def test_author_excluded(self, extractor):
        event = make_event(pubkey=U1, tags=[["p", U1]])
        assert await extractor.extract([event]) == []

    @pytest.mark.asyncio
    async def test_excerpt_truncated(self, extractor):
        event = make_event(tags=[["p", U1]], content="x" * 300)
        [mention] = await extractor.extract([event])
        assert len(mention.excerpt) == 100


class TestGroupActivity:
    @pytest.mark.asyncio
    async def test_members_notified(self, extractor, registry):
        await add_subscriber(registry, U1, groups=["g1"])
        await add_subscriber(registry, U2, groups=["g1"])
        event = make_event(kind=11, tags=[["h", "g1"], ["p", U1]], created_at=1234)

        triggers = by_type(await extractor.extract([event]))

        assert triggers[TriggerType.MENTION].target_subscriber_ids == (U1,)
        activity = triggers[TriggerType.GROUP_ACTIVITY]
        assert activity.priority == Priority.NORMAL
        assert set(activity.target_subscriber_ids) == {U1, U2}
        assert activity.group_id == "g1"
        assert activity.timestamp == 1234
        assert triggers[TriggerType.MENTION].group_id == "g1"

    @pytest.mark.asyncio
    async def test_author_not_notified_of_own_post(self, extractor, registry):
        await add_subscriber(registry, U1, groups=["g1"])
        event = make_event(pubkey=U1, kind=11, tags=[["h", "g1"]])
        assert await extractor.extract([event]) == []

    @pytest.mark.asyncio
    async def test_community_coordinate(self, extractor, registry):
        community = "34550:" + "a" * 64 + ":rust"
        await add_subscriber(registry, U1, groups=[community])
        event = make_event(kind=42, tags=[["a", community]])

        [activity] = await extractor.extract([event])

        assert activity.group_id == community

    @pytest.mark.asyncio
    async def test_non_post_kind_has_no_group_activity(self, extractor, registry):
        await add_subscriber(registry, U1, groups=["g1"])
        event = make_event(kind=1111, tags=[["h", "g1"]])
        assert await extractor.extract([event]) == []


class TestModerationAndReactions:
    @pytest.mark.asyncio
    async def test_moderation(self, extractor):
        event = make_event(kind=9001, tags=[["p", U1], ["p", U2]], content="spam " * 20)

        [moderation] = await extractor.extract([event])

        assert moderation.type == TriggerType.MODERATION
        assert moderation.priority == Priority.HIGH
        assert moderation.target_subscriber_ids == (U1,)
        assert moderation.excerpt == "Moderation action: " + ("spam " * 20)[:50]

    @pytest.mark.asyncio
    async def test_moderation_without_target(self, extractor):
        assert await extractor.extract([make_event(kind=9005, tags=[["e", "x"]])]) == []

    @pytest.mark.asyncio
    async def test_reaction_targets_last_p(self, extractor, registry):
        await add_subscriber(registry, U2, keywords=["+"])
        event = make_event(kind=7, tags=[["e", "orig"], ["p", U2], ["p", U1]], content="+")

        [reaction] = await extractor.extract([event])

        assert reaction.type == TriggerType.REACTION
        assert reaction.priority == Priority.NORMAL
        assert reaction.target_subscriber_ids == (U1,)


class TestKeywords:
    @pytest.mark.asyncio
    async def test_plain_keyword(self, extractor, registry):
        await add_subscriber(registry, U1, keywords=["bitcoin"])
        event = make_event(kind=1111, content="Bitcoin is up")

        [keyword] = await extractor.extract([event])

        assert keyword.type == TriggerType.KEYWORD
        assert keyword.priority == Priority.NORMAL
        assert keyword.target_subscriber_ids == (U1,)
        assert keyword.excerpt == 'Keyword "bitcoin": Bitcoin is up'

    @pytest.mark.asyncio
    async def test_urgent_keyword_is_high(self, extractor, registry):
        await add_subscriber(registry, U2, keywords=["urgent"])
        [keyword] = await extractor.extract([make_event(content="URGENT: server down")])
        assert keyword.priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_custom_urgent_keywords(self, state, registry):
        extractor = TriggerExtractor(
            state, registry, ExtractorConfig(urgent_keywords=[" Outage "]), lambda _e: True
        )
        await add_subscriber(registry, U1, keywords=["outage", "urgent"])

        triggers = await extractor.extract([make_event(content="urgent outage")])

        priorities = {t.excerpt.split('"')[1]: t.priority for t in triggers}
        assert priorities == {"outage": Priority.HIGH, "urgent": Priority.NORMAL}

    @pytest.mark.asyncio
    async def test_author_keyword_excluded(self, extractor, registry):
        await add_subscriber(registry, AUTHOR, keywords=["hello"])
        assert await extractor.extract([make_event(content="hello")]) == []


# ============================================================================
# Bookkeeping
# ============================================================================


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_processed_once(self, extractor, state):
        event = make_event(tags=[["p", U1]])

        assert len(await extractor.extract([event])) == 1
        assert await state.has_processed(event.id) is True
        assert await extractor.extract([event]) == []
        assert extractor.skipped_events == 1

    @pytest.mark.asyncio
    async def test_event_without_triggers_still_marked(self, extractor, state):
        await extractor.extract([make_event("quiet")])
        assert await state.has_processed("quiet") is True

    @pytest.mark.asyncio
    async def test_invalid_signature(self, state, registry):
        extractor = TriggerExtractor(state, registry, verifier=lambda _e: False)

        assert await extractor.extract([make_event(tags=[["p", U1]])]) == []
        assert extractor.invalid_events == 1
        assert await state.has_processed("e1") is False

    @pytest.mark.asyncio
    async def test_reset_counters(self, state, registry):
        extractor = TriggerExtractor(state, registry, verifier=lambda _e: False)
        await extractor.extract([make_event()])
        extractor.reset_counters()
        assert extractor.invalid_events == 0
        assert extractor.skipped_events == 0
