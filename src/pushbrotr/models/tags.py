"""
Typed views over the Nostr tags that matter for notifications.

Raw event tags are lists of strings. [parse_tag()][pushbrotr.models.tags.parse_tag]
turns the four relevant shapes into small frozen dataclasses and returns
``None`` for everything else, so the extractor never indexes into raw lists:

| Tag | Variant                                        | Meaning                        |
|-----|------------------------------------------------|--------------------------------|
| `p` | [PubkeyTag][pushbrotr.models.tags.PubkeyTag]   | mentioned or targeted user     |
| `a` | [AddressTag][pushbrotr.models.tags.AddressTag] | `kind:pubkey:identifier` pointer |
| `h` | [GroupTag][pushbrotr.models.tags.GroupTag]     | NIP-29 group id                |
| `e` | [EventTag][pushbrotr.models.tags.EventTag]     | referenced event               |

Group references are ``a`` tags pointing at a community definition
(kind 34550), identified by their full coordinate, plus ``h`` tags
identified by their value.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .constants import EventKind


_HEX64 = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True, slots=True)
class PubkeyTag:
    """``["p", <pubkey>, <relay hint>?]``."""

    pubkey: str
    relay_hint: str | None = None


@dataclass(frozen=True, slots=True)
class AddressTag:
    """``["a", "<kind>:<pubkey>:<identifier>", <relay hint>?]``."""

    kind: int
    pubkey: str
    identifier: str

    @property
    def coordinate(self) -> str:
        """The address in its ``kind:pubkey:identifier`` wire form."""
        return f"{self.kind}:{self.pubkey}:{self.identifier}"

    @property
    def is_community(self) -> bool:
        """Whether the address points at a community definition."""
        return self.kind == EventKind.COMMUNITY_DEFINITION


@dataclass(frozen=True, slots=True)
class GroupTag:
    """``["h", <group id>]``."""

    group_id: str


@dataclass(frozen=True, slots=True)
class EventTag:
    """``["e", <event id>, <relay hint>?, <marker>?]``."""

    event_id: str
    relay_hint: str | None = None
    marker: str | None = None


Tag = PubkeyTag | AddressTag | GroupTag | EventTag


def _opt(tag: Sequence[str], index: int) -> str | None:
    return tag[index] or None if len(tag) > index else None


def parse_tag(tag: Sequence[str]) -> Tag | None:
    """Parse one raw tag into a typed variant.

    Returns:
        The matching variant, or ``None`` when the tag name is not one of
        ``p``/``a``/``h``/``e`` or its value is malformed.

    Examples:
        ```python
        parse_tag(["a", "34550:ab12...:rust"])
        # AddressTag(kind=34550, pubkey='ab12...', identifier='rust')
        parse_tag(["t", "nostr"])
        # None
        ```
    """
    if len(tag) < 2 or not tag[1]:  # noqa: PLR2004
        return None

    name, value = tag[0], tag[1]

    if name == "p":
        return PubkeyTag(value, _opt(tag, 2))
    if name == "h":
        return GroupTag(value)
    if name == "e":
        return EventTag(value, _opt(tag, 2), _opt(tag, 3))
    if name == "a":
        parts = value.split(":", 2)
        if len(parts) != 3 or not parts[1]:  # noqa: PLR2004
            return None
        try:
            kind = int(parts[0])
        except ValueError:
            return None
        return AddressTag(kind, parts[1], parts[2])
    return None


@dataclass(frozen=True, slots=True)
class ParsedTags:
    """All recognized tags of one event, in their original order."""

    pubkeys: tuple[PubkeyTag, ...] = ()
    addresses: tuple[AddressTag, ...] = ()
    groups: tuple[GroupTag, ...] = ()
    events: tuple[EventTag, ...] = ()

    @classmethod
    def from_tags(cls, tags: Iterable[Sequence[str]]) -> ParsedTags:
        """Parse every raw tag, silently dropping unknown and malformed ones."""
        pubkeys: list[PubkeyTag] = []
        addresses: list[AddressTag] = []
        groups: list[GroupTag] = []
        events: list[EventTag] = []

        for raw in tags:
            parsed = parse_tag(raw)
            if isinstance(parsed, PubkeyTag):
                pubkeys.append(parsed)
            elif isinstance(parsed, AddressTag):
                addresses.append(parsed)
            elif isinstance(parsed, GroupTag):
                groups.append(parsed)
            elif isinstance(parsed, EventTag):
                events.append(parsed)

        return cls(tuple(pubkeys), tuple(addresses), tuple(groups), tuple(events))

    @property
    def group_ids(self) -> tuple[str, ...]:
        """Referenced groups: community coordinates first, then ``h`` ids, deduplicated."""
        seen: dict[str, None] = {}
        for address in self.addresses:
            if address.is_community:
                seen.setdefault(address.coordinate, None)
        for group in self.groups:
            seen.setdefault(group.group_id, None)
        return tuple(seen)

    @property
    def mentioned_pubkeys(self) -> tuple[str, ...]:
        """Distinct ``p`` tag values in order of first appearance."""
        return tuple(dict.fromkeys(tag.pubkey for tag in self.pubkeys))


def is_hex_pubkey(value: str) -> bool:
    """Whether ``value`` is a 64-character lowercase hex key."""
    return bool(_HEX64.match(value))
