"""Nostr client helpers, key handling and the Web Push transport.

The utils layer sits in the middle of the diamond DAG next to
``pushbrotr.core``. It depends on [pushbrotr.models][pushbrotr.models] and,
for the delivery error taxonomy only, on
[pushbrotr.core.exceptions][pushbrotr.core.exceptions].

Attributes:
    keys: [VapidConfig][pushbrotr.utils.keys.VapidConfig] loading VAPID keys
        from the environment, and hex to ``npub`` conversion.
    protocol: Read-only nostr-sdk client factory and a one-shot stored
        events fetch.
    webpush: [PushTransport][pushbrotr.utils.webpush.PushTransport]: one
        encrypted, VAPID-signed push attempt classified into a
        [DeliveryResult][pushbrotr.utils.webpush.DeliveryResult].

Examples:
    ```python
    from pushbrotr.utils.keys import VapidConfig
    from pushbrotr.utils.webpush import PushTransport
    ```
"""
