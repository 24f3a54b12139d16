"""Shared building blocks of the notifier and API services.

Attributes:
    configs: [PushConfig][pushbrotr.services.common.configs.PushConfig],
        delivery and retry settings embedded by both service configs.
    registry: [SubscriberRegistry][pushbrotr.services.common.registry.SubscriberRegistry],
        subscriber records and their group and keyword indices.
    state: [EventState][pushbrotr.services.common.state.EventState],
        per-relay watermarks and processed-event markers.
    queue: [DeliveryQueue][pushbrotr.services.common.queue.DeliveryQueue],
        persistent queue with bounded retries.
    telemetry: [DeliveryMetrics][pushbrotr.services.common.telemetry.DeliveryMetrics]
        and [LogBuffer][pushbrotr.services.common.telemetry.LogBuffer].

See Also:
    [BaseService][pushbrotr.core.base_service.BaseService]: Abstract base
        class that both services extend.
    [Store][pushbrotr.core.store.Store]: Key-value store behind every
        component in this package.
"""

from .configs import PayloadConfig, PushConfig
from .queue import DeliveryQueue, DrainResult
from .registry import SubscriberRegistry, apply_preference_changes
from .state import EventState
from .telemetry import DeliveryMetrics, LogBuffer


__all__ = [
    "DeliveryMetrics",
    "DeliveryQueue",
    "DrainResult",
    "EventState",
    "LogBuffer",
    "PayloadConfig",
    "PushConfig",
    "SubscriberRegistry",
    "apply_preference_changes",
]
