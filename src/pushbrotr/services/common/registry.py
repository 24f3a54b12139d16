"""
Subscriber records and the group/keyword membership indices.

The [SubscriberRegistry][pushbrotr.services.common.registry.SubscriberRegistry]
is the only writer of ``sub:{id}`` records and of their inverse indices
``group:{group_id}`` and ``keyword:{keyword}`` (sorted lists of subscriber
ids).

Consistency model: **reconcilable on read**. The store has no multi-key
transactions, so a record write and its index writes can be separated by a
crash. The record is the source of truth:

- index readers ([list_group_members()][pushbrotr.services.common.registry.SubscriberRegistry.list_group_members],
  [list_keyword_subscribers()][pushbrotr.services.common.registry.SubscriberRegistry.list_keyword_subscribers])
  return only members whose record still lists the group or keyword, and
  prune the stale ones;
- [reconcile_indices()][pushbrotr.services.common.registry.SubscriberRegistry.reconcile_indices]
  re-adds entries missing from an index and is run on every notifier tick.

Every read-modify-write goes through
[Store.update()][pushbrotr.core.store.Store.update], so concurrent API and
notifier writers never silently lose each other's changes.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from pushbrotr.core.logger import Logger
from pushbrotr.models.constants import Frequency, KeyPrefix
from pushbrotr.models.subscriber import (
    Preferences,
    PushKeys,
    QuietHours,
    Subscriber,
    normalize_keywords,
)


if TYPE_CHECKING:
    from pushbrotr.core.store import Store


_PREFERENCE_FLAGS = ("mentions", "group_activity", "reactions", "moderation")

DEFAULT_RATE_WINDOW = 3600


def _with_member(member: str) -> Callable[[Any], Any]:
    def apply(current: Any) -> Any:
        return sorted(set(current or ()) | {member})

    return apply


def _without_members(members: Iterable[str]) -> Callable[[Any], Any]:
    drop = set(members)

    def apply(current: Any) -> Any:
        remaining = sorted(set(current or ()) - drop)
        return remaining or None

    return apply


def apply_preference_changes(subscriber: Subscriber, changes: Mapping[str, Any]) -> Subscriber:
    """Return ``subscriber`` with a partial preference update applied.

    Recognized keys: the four category flags, ``frequency``, ``quiet_hours``
    (a mapping, or ``None`` to clear), ``groups`` and ``keywords``. Unknown
    keys are ignored.
    """
    prefs = subscriber.preferences
    flags = {k: bool(changes[k]) for k in _PREFERENCE_FLAGS if changes.get(k) is not None}
    if flags:
        prefs = replace(prefs, **flags)
    if changes.get("frequency") is not None:
        prefs = replace(prefs, frequency=Frequency(changes["frequency"]))
    if "quiet_hours" in changes:
        quiet = changes["quiet_hours"]
        prefs = replace(prefs, quiet_hours=QuietHours.from_dict(quiet) if quiet else None)

    updated = replace(subscriber, preferences=prefs)
    if changes.get("groups") is not None:
        updated = replace(updated, groups=frozenset(changes["groups"]))
    if changes.get("keywords") is not None:
        updated = replace(updated, keywords=normalize_keywords(changes["keywords"]))
    return updated


class SubscriberRegistry:
    """CRUD over subscriber records with inverse group and keyword indices.

    Examples:
        ```python
        registry = SubscriberRegistry(store)
        await registry.subscribe("npub1...", endpoint, PushKeys(p256dh, auth), groups=["34550:ab..:rust"])
        members = await registry.list_group_members("34550:ab..:rust")
        ```
    """

    def __init__(self, store: Store, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._logger = Logger("registry")

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def get(self, subscriber_id: str) -> Subscriber | None:
        """Return the subscriber, or ``None`` if unknown or unreadable."""
        value = await self._store.get(KeyPrefix.SUBSCRIBER.key(subscriber_id))
        if value is None:
            return None
        try:
            return Subscriber.from_dict(value)
        except (KeyError, TypeError, ValueError) as e:
            self._logger.warning(
                "subscriber_record_invalid", subscriber_id=subscriber_id, error=str(e)
            )
            return None

    async def list_subscribers(self) -> list[Subscriber]:
        """All readable subscriber records, sorted by id."""
        subscribers = []
        for entry in await self._store.list_entries(KeyPrefix.SUBSCRIBER.scan):
            try:
                subscribers.append(Subscriber.from_dict(entry.value))
            except (KeyError, TypeError, ValueError) as e:
                self._logger.warning("subscriber_record_invalid", key=entry.key, error=str(e))
        return subscribers

    async def subscribe(
        self,
        subscriber_id: str,
        endpoint: str,
        keys: PushKeys,
        preferences: Preferences | None = None,
        groups: Iterable[str] = (),
        keywords: Iterable[str] = (),
    ) -> Subscriber:
        """Create or replace a subscription and update the indices.

        Re-subscribing keeps the original ``created_at`` and the current rate
        window, so it cannot be used to reset the rate limit.
        """
        now = int(self._clock())
        groups = list(groups)
        keywords = list(keywords)
        previous: list[Subscriber | None] = [None]

        def apply(current: Any) -> Any:
            old = Subscriber.from_dict(current) if current else None
            new = Subscriber(
                subscriber_id=subscriber_id,
                push_endpoint=endpoint,
                push_keys=keys,
                preferences=preferences or Preferences(),
                groups=frozenset(groups),
                keywords=frozenset(keywords),
                created_at=old.created_at if old else now,
                last_notified_at=old.last_notified_at if old else None,
                notification_count=old.notification_count if old else 0,
            )
            previous[0] = old
            return new.to_dict()

        written = await self._store.update(KeyPrefix.SUBSCRIBER.key(subscriber_id), apply)
        new = Subscriber.from_dict(written)

        await self._sync_indices(subscriber_id, previous[0], new)
        self._logger.info(
            "subscriber_registered",
            subscriber_id=subscriber_id,
            groups=len(new.groups),
            keywords=len(new.keywords),
            replaced=previous[0] is not None,
        )
        return new

    async def unsubscribe(self, subscriber_id: str) -> bool:
        """Remove the subscriber from every index entry, then delete the record.

        Idempotent: unknown ids are ignored.

        Returns:
            True if a record existed.
        """
        existing = await self.get(subscriber_id)
        if existing is None:
            # An unreadable record is still removed.
            return await self._store.delete(KeyPrefix.SUBSCRIBER.key(subscriber_id))

        for group_id in existing.groups:
            await self._store.update(
                KeyPrefix.GROUP.key(group_id), _without_members([subscriber_id])
            )
        for keyword in existing.keywords:
            await self._store.update(
                KeyPrefix.KEYWORD.key(keyword), _without_members([subscriber_id])
            )

        await self._store.delete(KeyPrefix.PENDING.key(subscriber_id))
        await self._store.delete(KeyPrefix.SUBSCRIBER.key(subscriber_id))
        self._logger.info("subscriber_removed", subscriber_id=subscriber_id)
        return True

    async def update_preferences(
        self, subscriber_id: str, changes: Mapping[str, Any]
    ) -> Subscriber | None:
        """Apply a partial preference update and reconcile the indices.

        Returns:
            The updated subscriber, or ``None`` if the id is unknown.
        """
        previous: list[Subscriber | None] = [None]
        record: list[Subscriber | None] = [None]

        def apply(current: Any) -> Any:
            if current is None:
                return None
            old = Subscriber.from_dict(current)
            new = apply_preference_changes(old, changes)
            previous[0], record[0] = old, new
            return new.to_dict()

        result = await self._store.update(KeyPrefix.SUBSCRIBER.key(subscriber_id), apply)
        if result is None or record[0] is None:
            return None

        await self._sync_indices(subscriber_id, previous[0], record[0])
        self._logger.info("preferences_updated", subscriber_id=subscriber_id)
        return record[0]

    async def record_notifications(
        self,
        subscriber_id: str,
        count: int,
        now: int | None = None,
        window: int = DEFAULT_RATE_WINDOW,
    ) -> None:
        """Account ``count`` delivered notifications in the rate window.

        ``last_notified_at`` moves to ``now``. The count accumulates while
        the previous notification is within ``window`` seconds and restarts
        otherwise.
        """
        at = int(self._clock()) if now is None else now

        def apply(current: Any) -> Any:
            if current is None:
                return None
            sub = Subscriber.from_dict(current)
            expired = sub.last_notified_at is None or at - sub.last_notified_at >= window
            total = count if expired else sub.notification_count + count
            return replace(sub, last_notified_at=at, notification_count=total).to_dict()

        await self._store.update(KeyPrefix.SUBSCRIBER.key(subscriber_id), apply)

    # -------------------------------------------------------------------------
    # Indices
    # -------------------------------------------------------------------------

    async def _sync_indices(
        self, subscriber_id: str, old: Subscriber | None, new: Subscriber
    ) -> None:
        old_groups = old.groups if old else frozenset()
        old_keywords = old.keywords if old else frozenset()

        for group_id in new.groups - old_groups:
            await self._store.update(KeyPrefix.GROUP.key(group_id), _with_member(subscriber_id))
        for group_id in old_groups - new.groups:
            await self._store.update(
                KeyPrefix.GROUP.key(group_id), _without_members([subscriber_id])
            )
        for keyword in new.keywords - old_keywords:
            await self._store.update(KeyPrefix.KEYWORD.key(keyword), _with_member(subscriber_id))
        for keyword in old_keywords - new.keywords:
            await self._store.update(
                KeyPrefix.KEYWORD.key(keyword), _without_members([subscriber_id])
            )

    async def _read_index(
        self,
        prefix: KeyPrefix,
        name: str,
        is_member: Callable[[Subscriber], bool],
    ) -> list[str]:
        key = prefix.key(name)
        members = await self._store.get(key) or []
        valid: list[str] = []
        stale: list[str] = []
        for subscriber_id in members:
            subscriber = await self.get(subscriber_id)
            if subscriber is not None and is_member(subscriber):
                valid.append(subscriber_id)
            else:
                stale.append(subscriber_id)

        if stale:
            await self._store.update(key, _without_members(stale))
            self._logger.debug("index_pruned", key=key, removed=len(stale))
        return valid

    async def list_group_members(self, group_id: str) -> list[str]:
        """Subscriber ids subscribed to ``group_id``, verified against their records."""
        return await self._read_index(KeyPrefix.GROUP, group_id, lambda s: group_id in s.groups)

    async def list_keyword_subscribers(self, keyword: str) -> list[str]:
        """Subscriber ids registered for ``keyword`` (case-insensitive)."""
        normalized = keyword.strip().lower()
        return await self._read_index(
            KeyPrefix.KEYWORD, normalized, lambda s: normalized in s.keywords
        )

    async def list_keywords(self) -> list[str]:
        """Every keyword with at least one index entry."""
        prefix = KeyPrefix.KEYWORD.scan
        return [key[len(prefix) :] for key in await self._store.list_keys(prefix)]

    async def list_groups(self) -> list[str]:
        """Every group with at least one index entry."""
        prefix = KeyPrefix.GROUP.scan
        return [key[len(prefix) :] for key in await self._store.list_keys(prefix)]

    async def reconcile_indices(self) -> int:
        """Rebuild index entries from the subscriber records.

        Adds members missing from an index and removes members whose record
        no longer lists the entry. Members added concurrently after the
        records were read are left untouched.

        Returns:
            Number of index entries that were changed.
        """
        expected: dict[KeyPrefix, dict[str, set[str]]] = {
            KeyPrefix.GROUP: {},
            KeyPrefix.KEYWORD: {},
        }
        for subscriber in await self.list_subscribers():
            for group_id in subscriber.groups:
                expected[KeyPrefix.GROUP].setdefault(group_id, set()).add(subscriber.subscriber_id)
            for keyword in subscriber.keywords:
                expected[KeyPrefix.KEYWORD].setdefault(keyword, set()).add(
                    subscriber.subscriber_id
                )

        changed = 0
        for prefix, wanted in expected.items():
            scan = prefix.scan
            current = {
                entry.key[len(scan) :]: set(entry.value or ())
                for entry in await self._store.list_entries(scan)
            }
            for name in sorted(set(current) | set(wanted)):
                have = current.get(name, set())
                want = wanted.get(name, set())
                missing, stale = want - have, have - want
                if not missing and not stale:
                    continue

                def apply(value: Any, missing: set[str] = missing, stale: set[str] = stale) -> Any:
                    members = (set(value or ()) | missing) - stale
                    return sorted(members) or None

                await self._store.update(prefix.key(name), apply)
                changed += 1

        if changed:
            self._logger.info("indices_reconciled", changed=changed)
        return changed

    async def counts(self) -> dict[str, int]:
        """Number of subscribers, groups and keywords currently registered."""
        return {
            "subscribers": len(await self._store.list_keys(KeyPrefix.SUBSCRIBER.scan)),
            "groups": len(await self.list_groups()),
            "keywords": len(await self.list_keywords()),
        }
