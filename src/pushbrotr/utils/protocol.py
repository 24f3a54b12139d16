"""Nostr protocol client operations for pushbrotr.

Thin helpers over ``nostr_sdk`` used by the relay monitor: a read-only
client factory and a one-shot stored-events fetch that always shuts the
client down.

Examples:
    ```python
    events = await fetch_stored_events("wss://relay.example.com", nostr_filter, timeout=5.0)
    ```
"""

from __future__ import annotations

import contextlib
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from nostr_sdk import ClientBuilder, NostrSigner, RelayUrl

from pushbrotr.core.exceptions import ConnectivityError, RelayTimeoutError


if TYPE_CHECKING:
    from nostr_sdk import Client, Filter, Keys
    from nostr_sdk import Event as NostrEvent


logger = logging.getLogger(__name__)


async def create_client(keys: Keys | None = None) -> Client:
    """Create a Nostr client (read-only when ``keys`` is ``None``).

    Returns:
        A ``Client``; call ``add_relay()`` and ``connect()`` before use.
    """
    builder = ClientBuilder()
    if keys is not None:
        builder = builder.signer(NostrSigner.keys(keys))
    return builder.build()


async def fetch_stored_events(
    relay_url: str,
    nostr_filter: Filter,
    timeout: float,  # noqa: ASYNC109
) -> list[NostrEvent]:
    """Fetch the stored events matching ``nostr_filter`` from one relay.

    nostr-sdk returns when the relay sends EOSE or when ``timeout`` elapses,
    whichever comes first; a timeout yields whatever arrived so far.

    Raises:
        RelayTimeoutError: The SDK gave up before any response.
        ConnectivityError: Connection-level failures (refused, reset, DNS).
    """
    client = await create_client()
    await client.add_relay(RelayUrl.parse(relay_url))

    try:
        await client.connect()
        events = await client.fetch_events(nostr_filter, timedelta(seconds=timeout))
    except TimeoutError as e:
        raise RelayTimeoutError(f"{relay_url} did not answer within {timeout}s") from e
    except OSError as e:
        raise ConnectivityError(f"{relay_url} unreachable: {e}") from e
    else:
        result: list[NostrEvent] = events.to_vec()
        logger.debug("relay_fetch_done relay=%s events=%d", relay_url, len(result))
        await client.disconnect()
        return result
    finally:
        # shutdown() can raise arbitrary errors from the Rust FFI layer
        with contextlib.suppress(Exception):
            await client.shutdown()
