"""
Immutable Nostr event as seen by the notification pipeline.

[Event][pushbrotr.models.event.Event] is a plain frozen dataclass rather than
a wrapper around ``nostr_sdk.Event``: events are created by the relay
monitor from SDK objects, but tests and the ``/notify`` path build them from
dicts, and the extractor only needs the seven NIP-01 fields plus parsed
tags.

Signature checks are delegated back to nostr-sdk through
[verify()][pushbrotr.models.event.Event.verify].

See Also:
    [ParsedTags][pushbrotr.models.tags.ParsedTags]: Tag view cached on every
        event.
    [RelayMonitor][pushbrotr.services.notifier.monitor.RelayMonitor]: Builds
        events with [from_nostr()][pushbrotr.models.event.Event.from_nostr].
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nostr_sdk import Event as NostrEvent

from ._validation import (
    validate_instance,
    validate_str_no_null,
    validate_str_not_empty,
    validate_timestamp,
)
from .tags import ParsedTags


if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Event:
    """Immutable Nostr event.

    Identity is the ``id``: two instances with the same id are the same
    logical message regardless of which relay delivered them.

    Attributes:
        id: Event id (hex digest of the serialized event).
        pubkey: Author public key (hex).
        kind: Event kind.
        created_at: Unix timestamp in seconds.
        tags: Raw tags as a tuple of string tuples.
        content: Raw content.
        sig: Schnorr signature (hex).

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a string field contains null bytes or a required
            field is empty.
    """

    id: str
    pubkey: str
    kind: int
    created_at: int
    tags: tuple[tuple[str, ...], ...] = ()
    content: str = ""
    sig: str = ""
    _parsed: ParsedTags = field(
        default=None,  # type: ignore[assignment]
        init=False,
        repr=False,
        compare=False,
        hash=False,
    )

    def __post_init__(self) -> None:
        validate_str_not_empty(self.id, "id")
        validate_str_not_empty(self.pubkey, "pubkey")
        validate_timestamp(self.kind, "kind")
        validate_timestamp(self.created_at, "created_at")
        validate_str_no_null(self.content, "content")
        validate_str_no_null(self.sig, "sig")
        validate_instance(self.tags, tuple, "tags")
        for tag in self.tags:
            validate_instance(tag, tuple, "tag")
            for value in tag:
                validate_str_no_null(value, "tag value")
        object.__setattr__(self, "_parsed", ParsedTags.from_tags(self.tags))

    @property
    def parsed_tags(self) -> ParsedTags:
        """Typed view over the recognized tags, computed once."""
        return self._parsed

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _freeze_tags(tags: Iterable[Sequence[str]]) -> tuple[tuple[str, ...], ...]:
        return tuple(tuple(tag) for tag in tags)

    @classmethod
    def from_nostr(cls, event: NostrEvent) -> Event:
        """Build from a ``nostr_sdk.Event`` returned by a relay."""
        return cls(
            id=event.id().to_hex(),
            pubkey=event.author().to_hex(),
            kind=event.kind().as_u16(),
            created_at=event.created_at().as_secs(),
            tags=cls._freeze_tags(tag.as_vec() for tag in event.tags().to_vec()),
            content=event.content(),
            sig=event.signature(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Build from the NIP-01 JSON object shape."""
        return cls(
            id=data["id"],
            pubkey=data["pubkey"],
            kind=data["kind"],
            created_at=data["created_at"],
            tags=cls._freeze_tags(data.get("tags", ())),
            content=data.get("content", ""),
            sig=data.get("sig", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the NIP-01 JSON object shape."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify(self) -> bool:
        """Check the id digest and Schnorr signature with nostr-sdk.

        Returns:
            False for an invalid signature and for anything nostr-sdk cannot
            parse.
        """
        try:
            return bool(NostrEvent.from_json(json.dumps(self.to_dict())).verify())
        except Exception as e:  # nostr-sdk FFI raises its own error types
            logger.debug("event_verify_error id=%s error=%s", self.id, e)
            return False
