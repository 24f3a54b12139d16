"""The two pushbrotr services plus shared utilities.

Services are the top layer of the diamond DAG, depending on
[pushbrotr.core][pushbrotr.core], [pushbrotr.utils][pushbrotr.utils], and
[pushbrotr.models][pushbrotr.models]. Each service extends
[BaseService][pushbrotr.core.base_service.BaseService] and implements
``async def run()`` for one cycle of work.

```text
relays -> Notifier (poll, extract, aggregate, drain) -> push services
                 \                                  /
                  +--- store: registry + queue ----+
                 /                                  \
browsers, backends -> Api (subscribe, notify, kick) -+
```

Attributes:
    Notifier: Scheduled relay-to-push pipeline. Polls relays, turns events
        into triggers, gates and aggregates them, and drains the delivery
        queue including retries.
    Api: FastAPI subscription service. Registers subscriptions and
        preferences, injects notifications and kicks the queue.

Note:
    Both services share state only through the
    [Store][pushbrotr.core.store.Store]; they can run in separate processes.

See Also:
    [common][pushbrotr.services.common]: Registry, event state, delivery
        queue and telemetry shared by both services.
"""

from .api import (
    Api,
    ApiConfig,
)
from .notifier import (
    Notifier,
    NotifierConfig,
)


__all__ = [
    "Api",
    "ApiConfig",
    "Notifier",
    "NotifierConfig",
]
