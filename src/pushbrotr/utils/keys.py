"""Key handling: VAPID signing keys and Nostr public key encodings.

VAPID keys identify this application server to the browser push services.
Like every secret in pushbrotr they are read from environment variables,
never from configuration files.

Warning:
    The VAPID private key must never be logged or serialized.
    [VapidConfig][pushbrotr.utils.keys.VapidConfig] holds it as a
    ``SecretStr``.

Examples:
    ```python
    os.environ["VAPID_PRIVATE_KEY"] = "..."  # pragma: allowlist secret
    os.environ["VAPID_PUBLIC_KEY"] = "BEl6..."
    vapid = VapidConfig(subject="mailto:ops@example.com")

    to_npub("3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d")
    # 'npub180cvv07tjdrrgpa0j7j7tmnyl2yr6yr7l8j4s3evf6u64th6gkwsyjh6w6'
    ```
"""

from __future__ import annotations

import logging
import os
from typing import Any

from nostr_sdk import PublicKey
from pydantic import BaseModel, Field, SecretStr, model_validator

from pushbrotr.models.tags import is_hex_pubkey


logger = logging.getLogger(__name__)

ENV_VAPID_PRIVATE_KEY = "VAPID_PRIVATE_KEY"  # pragma: allowlist secret
ENV_VAPID_PUBLIC_KEY = "VAPID_PUBLIC_KEY"


def _require_env(env_var: str) -> str:
    value = os.getenv(env_var)
    if not value:
        raise ValueError(
            f"{env_var} environment variable is required. "
            "Generate a VAPID key pair with: vapid --gen"
        )
    return value


class VapidConfig(BaseModel):
    """VAPID identity of the application server.

    ``private_key`` and ``public_key`` are populated during validation from
    the environment variables named by ``private_key_env`` and
    ``public_key_env``.

    Raises:
        ValueError: If either environment variable is missing or empty.
    """

    private_key_env: str = Field(
        default=ENV_VAPID_PRIVATE_KEY,
        min_length=1,
        description="Environment variable holding the VAPID private key",
    )
    public_key_env: str = Field(
        default=ENV_VAPID_PUBLIC_KEY,
        min_length=1,
        description="Environment variable holding the VAPID public key",
    )
    subject: str = Field(
        default="mailto:admin@example.com",
        pattern=r"^(mailto:|https://)",
        description="Contact URI sent in the VAPID claims",
    )
    private_key: SecretStr = Field(description="VAPID private key (loaded from env)")
    public_key: str = Field(description="VAPID public key, base64url (loaded from env)")

    @model_validator(mode="before")
    @classmethod
    def _load_keys_from_env(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "private_key" not in data:
            data["private_key"] = SecretStr(
                _require_env(data.get("private_key_env", ENV_VAPID_PRIVATE_KEY))
            )
        if "public_key" not in data:
            data["public_key"] = _require_env(data.get("public_key_env", ENV_VAPID_PUBLIC_KEY))
        return data


def to_npub(pubkey: str) -> str:
    """Return the bech32 ``npub`` form of a hex public key.

    Values that are not 64-char hex (already ``npub``, or test identifiers)
    are returned unchanged, as are keys nostr-sdk rejects.
    """
    if not is_hex_pubkey(pubkey):
        return pubkey
    try:
        return str(PublicKey.parse(pubkey).to_bech32())
    except Exception as e:  # nostr-sdk FFI raises its own error types
        logger.debug("npub_conversion_failed pubkey=%s error=%s", pubkey, e)
        return pubkey


def identities(pubkey: str) -> frozenset[str]:
    """All spellings under which ``pubkey`` may appear as a subscriber id."""
    return frozenset({pubkey, to_npub(pubkey)})
