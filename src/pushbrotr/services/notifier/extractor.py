"""
Trigger extraction: turns verified events into notification triggers.

For every event [TriggerExtractor.extract()][pushbrotr.services.notifier.extractor.TriggerExtractor.extract]:

1. verifies the signature; invalid events are dropped, logged and left
   unmarked;
2. skips events already marked processed;
3. classifies the event into zero or more triggers;
4. marks the event processed, once.

Classification rules:

| Trigger          | Priority          | Source                                                    |
|------------------|-------------------|-----------------------------------------------------------|
| `mention`        | high              | ``p`` tags and ``npub1`` references (not reactions, moderation) |
| `moderation`     | high              | moderation kinds with a ``p`` target                      |
| `group_activity` | normal            | group-post kinds with a group reference                   |
| `keyword`        | high if urgent    | registered keyword in the content (not reactions)         |
| `reaction`       | normal            | kind 7; the last ``p`` tag is the reacted-to author       |

The author of an event is never notified about it.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING

from pushbrotr.core.exceptions import ValidationError
from pushbrotr.core.logger import Logger
from pushbrotr.models.constants import (
    GROUP_POST_KINDS,
    MODERATION_KINDS,
    EventKind,
    Priority,
    TriggerType,
)
from pushbrotr.models.notification import NotificationTrigger
from pushbrotr.utils.keys import identities, to_npub


if TYPE_CHECKING:
    from pushbrotr.models.event import Event
    from pushbrotr.services.common.registry import SubscriberRegistry
    from pushbrotr.services.common.state import EventState

    from .configs import ExtractorConfig


NPUB_PATTERN = re.compile(r"npub1[02-9ac-hj-np-z]{58}")
DEFAULT_URGENT_KEYWORDS = frozenset({"urgent", "emergency", "action", "important"})

_MENTION_EXCERPT = 100
_MODERATION_EXCERPT = 50
_KEYWORD_EXCERPT = 80

Verifier = Callable[["Event"], bool]


def _default_verifier(event: Event) -> bool:
    return event.verify()


def _recipients(candidates: Iterable[str], author: frozenset[str]) -> tuple[str, ...]:
    """Deduplicated ``npub`` ids, without the author."""
    result: dict[str, None] = {}
    for candidate in candidates:
        npub = to_npub(candidate)
        if npub not in author and candidate not in author:
            result.setdefault(npub, None)
    return tuple(result)


class TriggerExtractor:
    """Classifies events into notification triggers.

    Args:
        state: Processed-event markers.
        registry: Group and keyword membership lookups.
        config: Urgent keywords.
        verifier: Signature check; defaults to
            [Event.verify()][pushbrotr.models.event.Event.verify].
    """

    def __init__(
        self,
        state: EventState,
        registry: SubscriberRegistry,
        config: ExtractorConfig | None = None,
        verifier: Verifier | None = None,
    ) -> None:
        self._state = state
        self._registry = registry
        self._urgent = (
            frozenset(config.urgent_keywords) if config is not None else DEFAULT_URGENT_KEYWORDS
        )
        self._verify = verifier or _default_verifier
        self._logger = Logger("extractor")
        self.invalid_events = 0
        self.skipped_events = 0
        self.rejected_ids: set[str] = set()

    def reset_counters(self) -> None:
        self.invalid_events = 0
        self.skipped_events = 0
        self.rejected_ids = set()

    async def extract(self, events: Sequence[Event]) -> list[NotificationTrigger]:
        """Process a batch of events in order and return all triggers."""
        triggers: list[NotificationTrigger] = []
        for event in events:
            triggers.extend(await self.extract_event(event))
        return triggers

    async def extract_event(self, event: Event) -> list[NotificationTrigger]:
        """Process one event; a no-op for invalid or already processed events."""
        try:
            self._check_signature(event)
        except ValidationError as e:
            self.invalid_events += 1
            self.rejected_ids.add(event.id)
            self._logger.warning("event_rejected", event_id=event.id, error=str(e))
            return []

        if await self._state.has_processed(event.id):
            self.skipped_events += 1
            self._logger.debug("event_already_processed", event_id=event.id)
            return []

        triggers = await self.classify(event)
        await self._state.mark_processed(event.id)

        if triggers:
            self._logger.debug(
                "triggers_extracted",
                event_id=event.id,
                kind=event.kind,
                types=",".join(t.type.value for t in triggers),
            )
        return triggers

    def _check_signature(self, event: Event) -> None:
        if not self._verify(event):
            raise ValidationError(f"invalid signature for event {event.id}")

    async def classify(self, event: Event) -> list[NotificationTrigger]:
        """All triggers for ``event``, without any dedup bookkeeping."""
        author = identities(event.pubkey)
        tags = event.parsed_tags
        group_ids = tags.group_ids
        group_id = group_ids[0] if group_ids else None
        triggers: list[NotificationTrigger] = []

        def trigger(
            type_: TriggerType,
            priority: Priority,
            targets: Sequence[str],
            excerpt: str,
            group: str | None = group_id,
        ) -> None:
            if targets:
                triggers.append(
                    NotificationTrigger(
                        source_event_id=event.id,
                        type=type_,
                        priority=priority,
                        target_subscriber_ids=tuple(targets),
                        group_id=group,
                        excerpt=excerpt,
                        timestamp=event.created_at,
                    )
                )

        if event.kind == EventKind.REACTION:
            if tags.pubkeys:
                reacted_to = tags.pubkeys[-1].pubkey
                trigger(
                    TriggerType.REACTION,
                    Priority.NORMAL,
                    _recipients([reacted_to], author),
                    event.content[:_MENTION_EXCERPT],
                )
            return triggers

        if event.kind in MODERATION_KINDS:
            if tags.pubkeys:
                trigger(
                    TriggerType.MODERATION,
                    Priority.HIGH,
                    _recipients([tags.pubkeys[0].pubkey], author),
                    "Moderation action: " + event.content[:_MODERATION_EXCERPT],
                )
        else:
            mentioned = [*tags.mentioned_pubkeys, *NPUB_PATTERN.findall(event.content)]
            trigger(
                TriggerType.MENTION,
                Priority.HIGH,
                _recipients(mentioned, author),
                event.content[:_MENTION_EXCERPT],
            )

        if event.kind in GROUP_POST_KINDS and group_id is not None:
            members = await self._registry.list_group_members(group_id)
            trigger(
                TriggerType.GROUP_ACTIVITY,
                Priority.NORMAL,
                _recipients(members, author),
                event.content[:_MENTION_EXCERPT],
            )

        await self._match_keywords(event, author, trigger)
        return triggers

    async def _match_keywords(
        self,
        event: Event,
        author: frozenset[str],
        trigger: Callable[[TriggerType, Priority, Sequence[str], str], None],
    ) -> None:
        content = event.content.lower()
        if not content:
            return
        for keyword in await self._registry.list_keywords():
            if keyword not in content:
                continue
            subscribers = await self._registry.list_keyword_subscribers(keyword)
            priority = Priority.HIGH if keyword in self._urgent else Priority.NORMAL
            trigger(
                TriggerType.KEYWORD,
                priority,
                _recipients(subscribers, author),
                f'Keyword "{keyword}": {event.content[:_KEYWORD_EXCERPT]}',
            )
