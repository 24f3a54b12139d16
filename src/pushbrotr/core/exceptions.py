"""pushbrotr exception hierarchy.

Typed exceptions let each stage of the pipeline decide what to do with a
failure: discard it, retry it, drop the subscriber, or refuse to start.

```text
PushBrotrError (base -- never raised directly)
├── ConfigurationError            -- missing relays, missing VAPID keys, bad YAML
├── StoreError                    -- key-value store failures
│   ├── ConnectionPoolError       -- transient: pool exhausted, network blip
│   └── QueryError                -- permanent: bad SQL, constraint violation
├── ConnectivityError             -- relay unreachable
│   └── RelayTimeoutError         -- connection or response timed out
├── ValidationError               -- bad signature or malformed event
└── DeliveryError                 -- push delivery failures
    ├── TransientDeliveryError    -- network error, 5xx, unexpected status
    └── PermanentSubscriptionError  -- 404/410: the subscription is gone
```

Rate limiting and preference filtering are not errors; the aggregator
reports them as gate decisions.

See Also:
    [BaseService][pushbrotr.core.base_service.BaseService]: Top-level error
        boundary in
        [run_forever()][pushbrotr.core.base_service.BaseService.run_forever].
    [DeliveryQueue][pushbrotr.services.common.queue.DeliveryQueue]: Maps
        [DeliveryError][pushbrotr.core.exceptions.DeliveryError] subclasses
        onto retry, dead-letter and cleanup decisions.
"""

from __future__ import annotations


class PushBrotrError(Exception):
    """Base exception for all pushbrotr errors.

    See Also:
        [ConfigurationError][pushbrotr.core.exceptions.ConfigurationError],
        [StoreError][pushbrotr.core.exceptions.StoreError],
        [ConnectivityError][pushbrotr.core.exceptions.ConnectivityError],
        [ValidationError][pushbrotr.core.exceptions.ValidationError],
        [DeliveryError][pushbrotr.core.exceptions.DeliveryError].
    """


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(PushBrotrError):
    """Invalid or missing configuration (YAML, env vars, CLI flags).

    Fatal at startup: the pipeline does not run.

    See Also:
        [load_yaml()][pushbrotr.core.yaml.load_yaml]: YAML loading.
        [BaseService.from_dict()][pushbrotr.core.base_service.BaseService.from_dict]:
            Wraps schema violations in this exception.
    """


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreError(PushBrotrError):
    """Base for all key-value store errors."""


class ConnectionPoolError(StoreError):
    """Transient store error: pool exhausted, connection refused, network blip.

    Callers may retry after a backoff.

    See Also:
        [Pool][pushbrotr.core.pool.Pool]: Raises this after its own retries
            are exhausted.
    """


class QueryError(StoreError):
    """Permanent store error: bad SQL, constraint violation.

    Callers should not retry.
    """


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class ConnectivityError(PushBrotrError):
    """A relay could not be reached.

    Isolated per relay: never aborts the polling tick.

    See Also:
        [RelayMonitor][pushbrotr.services.notifier.monitor.RelayMonitor]:
            Catches and logs these per relay.
    """


class RelayTimeoutError(ConnectivityError):
    """Connection or response from a relay timed out."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(PushBrotrError):
    """An event failed signature verification or is malformed.

    The event is discarded and logged, never retried and never marked as
    processed.

    See Also:
        [TriggerExtractor][pushbrotr.services.notifier.extractor.TriggerExtractor]:
            Raises and handles this during verification.
    """


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class DeliveryError(PushBrotrError):
    """Base for push delivery failures.

    Attributes:
        status_code: HTTP status of the push service response, or ``None``
            when the request never completed.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network failure, 5xx or unexpected status.

    Retried with backoff, then dead-lettered with a warning log. Never
    surfaced to any user.
    """


class PermanentSubscriptionError(DeliveryError):
    """The push service answered 404 or 410: the subscription no longer exists.

    The subscriber record is deleted immediately and the item is not retried.
    """
