"""Request bodies of the subscription API.

Field names are camelCase on the wire (``subscriberId``, ``pushKeys``) and
snake_case in Python; both spellings are accepted.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pushbrotr.models.constants import Frequency, Priority, TriggerType


# Aliases used by web clients for the canonical trigger types.
TYPE_ALIASES: dict[str, TriggerType] = {
    "new_post": TriggerType.GROUP_ACTIVITY,
    "group_post": TriggerType.GROUP_ACTIVITY,
    "post_approved": TriggerType.MODERATION,
    "post_removed": TriggerType.MODERATION,
}


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PushKeysBody(_Body):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class QuietHoursBody(_Body):
    start: int = Field(ge=0, le=23)
    end: int = Field(ge=0, le=23)
    timezone: str = Field(default="UTC", min_length=1)

    def to_record(self) -> dict[str, Any]:
        return {"start_hour": self.start, "end_hour": self.end, "timezone": self.timezone}


class PreferencesBody(_Body):
    """Preference flags, schedule and memberships; every field is optional."""

    mentions: bool | None = None
    group_activity: bool | None = None
    reactions: bool | None = None
    moderation: bool | None = None
    frequency: Frequency | None = None
    quiet_hours: QuietHoursBody | None = None
    groups: list[str] | None = None
    keywords: list[str] | None = None

    def changes(self) -> dict[str, Any]:
        """Only the fields the client sent, in registry form.

        ``null`` clears ``quiet_hours`` and leaves every other field unchanged.
        """
        sent = {
            k: v
            for k, v in self.model_dump(exclude_unset=True).items()
            if v is not None or k == "quiet_hours"
        }
        if "quiet_hours" in sent:
            sent["quiet_hours"] = self.quiet_hours.to_record() if self.quiet_hours else None
        return sent


class SubscribeRequest(_Body):
    subscriber_id: str = Field(min_length=1)
    push_endpoint: str = Field(min_length=1, pattern=r"^https://")
    push_keys: PushKeysBody
    preferences: PreferencesBody = Field(default_factory=PreferencesBody)


class SubscriberRequest(_Body):
    subscriber_id: str = Field(min_length=1)


class PreferencesRequest(_Body):
    subscriber_id: str = Field(min_length=1)
    preferences: PreferencesBody


class NotificationBody(_Body):
    type: str = Field(min_length=1)
    content: str = ""
    event_id: str | None = None
    group_id: str | None = None
    priority: Priority | None = None

    def trigger_type(self) -> TriggerType:
        """Canonical type; raises ``ValueError`` for unknown names."""
        return TYPE_ALIASES.get(self.type) or TriggerType(self.type)


class NotifyRequest(_Body):
    subscriber_id: str = Field(min_length=1)
    notification: NotificationBody


class TestNotificationRequest(_Body):
    subscriber_id: str = Field(min_length=1)
    message: str | None = None


class CheckRequest(_Body):
    subscriber_id: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
