"""Notifier service package.

Re-exports the public symbols::

    from pushbrotr.services.notifier import Notifier, NotifierConfig
"""

from .aggregator import AggregationResult, Aggregator, GateDecision, build_payload
from .configs import AggregatorConfig, ExtractorConfig, MonitorConfig, NotifierConfig
from .extractor import TriggerExtractor
from .monitor import PollResult, RelayMonitor
from .service import Notifier


__all__ = [
    "AggregationResult",
    "Aggregator",
    "AggregatorConfig",
    "ExtractorConfig",
    "GateDecision",
    "MonitorConfig",
    "Notifier",
    "NotifierConfig",
    "PollResult",
    "RelayMonitor",
    "TriggerExtractor",
    "build_payload",
]
