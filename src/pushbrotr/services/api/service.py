"""HTTP subscription API for pushbrotr, served by FastAPI.

Browsers register their Web Push subscription and preferences here; trusted
backends use the bearer-protected routes to inject notifications directly
(bypassing relay polling), list subscriptions and read delivery telemetry.

The HTTP server runs as a background ``asyncio.Task`` alongside the standard
``run_forever()`` cycle. Each ``run()`` cycle logs request statistics,
persists the delivery metrics and log buffer, and updates Prometheus metrics.

Routes:

| Method | Path                  | Auth   | Purpose                                   |
|--------|-----------------------|--------|-------------------------------------------|
| POST   | `/subscribe`          |        | create or replace a subscription          |
| POST   | `/unsubscribe`        |        | remove a subscription (idempotent)        |
| POST   | `/preferences`        |        | partial preference update                 |
| POST   | `/subscription/check` |        | is this endpoint still registered?        |
| POST   | `/test-notification`  |        | send a test push right away               |
| GET    | `/health`             |        | liveness and registry counts              |
| POST   | `/notify`             | bearer | inject one notification                   |
| GET    | `/subscriptions`      | bearer | subscriber id to groups                   |
| GET    | `/stats`              | bearer | delivery metrics                          |
| GET    | `/logs`               | bearer | recent log buffer entries                 |

See Also:
    [ApiConfig][pushbrotr.services.api.ApiConfig]: Configuration model for
        this service.
    [Notifier][pushbrotr.services.notifier.Notifier]: The relay pipeline
        sharing the same store, registry and queue.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
import uuid
from typing import TYPE_CHECKING, Any, ClassVar, Self

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pushbrotr.core.base_service import BaseService
from pushbrotr.models.constants import Priority, ServiceName, TriggerType
from pushbrotr.models.notification import NotificationPayload, NotificationTrigger
from pushbrotr.models.subscriber import Preferences, PushKeys
from pushbrotr.services.common.queue import DeliveryQueue
from pushbrotr.services.common.registry import SubscriberRegistry
from pushbrotr.services.common.telemetry import DeliveryMetrics, LogBuffer
from pushbrotr.services.notifier.aggregator import Aggregator
from pushbrotr.utils.webpush import PushTransport

from .configs import ApiConfig
from .schemas import (
    CheckRequest,
    NotifyRequest,
    PreferencesRequest,
    SubscribeRequest,
    SubscriberRequest,
    TestNotificationRequest,
)


if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from pushbrotr.core.store import Store

_HTTP_ERROR_THRESHOLD = 400
_NOTIFY_EXCERPT = 100

_HIGH_BY_DEFAULT = frozenset({TriggerType.MENTION, TriggerType.MODERATION})


class Api(BaseService[ApiConfig]):
    """Subscription API service.

    Lifecycle:
        1. ``__aenter__``: open the push transport, load telemetry, start uvicorn.
        2. ``run()``: log request statistics, persist telemetry, update gauges.
        3. ``__aexit__``: cancel the HTTP server task, persist telemetry.

    The FastAPI application is built at construction and exposed as
    [app][pushbrotr.services.api.Api.app], so it can be driven by a test
    client without starting uvicorn.

    Note:
        Rate limiting of HTTP clients is handled at the reverse proxy layer.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.API
    CONFIG_CLASS: ClassVar[type[ApiConfig]] = ApiConfig

    def __init__(
        self,
        store: Store,
        config: ApiConfig | None = None,
        *,
        transport: PushTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(store=store, config=config)
        self._config: ApiConfig
        self._clock = clock

        push = self._config.push
        self._registry = SubscriberRegistry(store, clock)
        self._metrics = DeliveryMetrics(clock)
        self._logs = LogBuffer(clock=clock)
        self._log_handler = self._logs.handler()
        self._transport = transport or PushTransport(push.vapid, push.request_timeout)
        self._queue = DeliveryQueue(
            store, self._registry, self._transport, self._metrics, push, clock
        )
        self._aggregator = Aggregator(
            store, self._registry, self._queue, self._config.aggregator, push.payload, clock
        )

        self._server_task: asyncio.Task[None] | None = None
        self._requests_total = 0
        self._requests_failed = 0
        self._app = self._build_app()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def registry(self) -> SubscriberRegistry:
        return self._registry

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    @property
    def metrics(self) -> DeliveryMetrics:
        return self._metrics

    @property
    def logs(self) -> LogBuffer:
        return self._logs

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        await super().__aenter__()
        await self._transport.open()
        await self._metrics.load(self._store)
        await self._logs.load(self._store)
        logging.getLogger().addHandler(self._log_handler)

        self._server_task = asyncio.create_task(self._run_server(self._app))
        self._logger.info(
            "http_server_started",
            host=self._config.host,
            port=self._config.port,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._server_task is not None:
            self._server_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._server_task
            self._server_task = None
        self._logger.info("http_server_stopped")

        logging.getLogger().removeHandler(self._log_handler)
        await self._metrics.persist(self._store)
        await self._logs.persist(self._store)
        await self._transport.close()
        await super().__aexit__(exc_type, exc_val, exc_tb)

    async def run(self) -> None:
        """Log request stats, persist telemetry and update Prometheus metrics."""
        if self._server_task is not None and self._server_task.done():
            exc = self._server_task.exception() if not self._server_task.cancelled() else None
            self._logger.error("http_server_crashed", error=str(exc) if exc else "cancelled")
            raise RuntimeError("HTTP server task has stopped unexpectedly") from exc

        # Snapshot and reset per-cycle counters
        total = self._requests_total
        failed = self._requests_failed
        self._requests_total = 0
        self._requests_failed = 0

        await self._metrics.persist(self._store)
        await self._logs.persist(self._store)
        counts = await self._registry.counts()

        self._logger.info(
            "cycle_stats",
            requests_total=total,
            requests_failed=failed,
            **counts,
        )
        self.inc_counter("requests_total", total)
        self.inc_counter("requests_failed", failed)
        for name, value in counts.items():
            self.set_gauge(name, value)

    # -------------------------------------------------------------------------
    # Handlers shared by several routes
    # -------------------------------------------------------------------------

    def _require_token(self) -> Callable[..., Any]:
        bearer = HTTPBearer(auto_error=False)

        async def check(
            credentials: HTTPAuthorizationCredentials | None = Depends(bearer),  # noqa: B008
        ) -> None:
            expected = self._config.token
            if (
                expected is None
                or credentials is None
                or not secrets.compare_digest(
                    credentials.credentials.encode(), expected.get_secret_value().encode()
                )
            ):
                raise HTTPException(
                    status_code=401,
                    detail="Invalid or missing bearer token",
                    headers={"WWW-Authenticate": "Bearer"},
                )

        return check

    async def _kick_queue(self, subscriber_id: str) -> None:
        """Drain one subscriber's due items after a response was sent."""
        try:
            await self._queue.drain(subscriber_id=subscriber_id)
        except Exception as e:  # background task error boundary
            self._logger.error("queue_kick_failed", subscriber_id=subscriber_id, error=str(e))

    def _test_payload(self, message: str | None, now: int) -> NotificationPayload:
        payload = self._config.push.payload
        return NotificationPayload(
            title="Test notification",
            body=message or "Push notifications are working.",
            data={"type": "test", "url": payload.default_url},
            icon=payload.icon,
            badge=payload.badge,
            timestamp=now,
        )

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------

    def _build_app(self) -> FastAPI:  # noqa: C901, PLR0915
        """Construct the FastAPI application and register every route."""
        app = FastAPI(title="pushbrotr API")
        authorized = [Depends(self._require_token())]

        if self._config.cors_origins:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=self._config.cors_origins,
                allow_methods=["GET", "POST"],
                allow_headers=["*"],
            )

        # Request logging middleware
        @app.middleware("http")
        async def log_requests(request: Request, call_next: Any) -> Response:
            start = time.monotonic()
            self._logger.debug("request_received", method=request.method, path=request.url.path)
            try:
                response: Response = await call_next(request)
            except Exception as exc:  # HTTP request error boundary
                self._logger.error("unhandled_error", error=str(exc), path=request.url.path)
                response = JSONResponse({"error": "Internal server error"}, status_code=500)
            duration_ms = (time.monotonic() - start) * 1000
            self._requests_total += 1
            if response.status_code >= _HTTP_ERROR_THRESHOLD:
                self._requests_failed += 1
                self._logger.warning(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=round(duration_ms, 1),
                )
            else:
                self._logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=round(duration_ms, 1),
                )
            return response

        # Public endpoints
        @app.get("/health")
        async def health() -> dict[str, Any]:
            counts = await self._registry.counts()
            return {
                "status": "ok",
                "subscribers": counts["subscribers"],
                "groups": counts["groups"],
            }

        @app.post("/subscribe", response_model=None)
        async def subscribe(body: SubscribeRequest) -> dict[str, Any] | JSONResponse:
            changes = body.preferences.changes()
            groups = changes.pop("groups", None) or []
            keywords = changes.pop("keywords", None) or []
            try:
                await self._registry.subscribe(
                    body.subscriber_id,
                    body.push_endpoint,
                    PushKeys(p256dh=body.push_keys.p256dh, auth=body.push_keys.auth),
                    Preferences.from_dict(changes),
                    groups=groups,
                    keywords=keywords,
                )
            except ValueError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            return {"success": True}

        @app.post("/unsubscribe")
        async def unsubscribe(body: SubscriberRequest) -> dict[str, Any]:
            await self._registry.unsubscribe(body.subscriber_id)
            return {"success": True}

        @app.post("/preferences", response_model=None)
        async def preferences(body: PreferencesRequest) -> dict[str, Any] | JSONResponse:
            try:
                updated = await self._registry.update_preferences(
                    body.subscriber_id, body.preferences.changes()
                )
            except ValueError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            if updated is None:
                return JSONResponse({"error": "Subscriber not found"}, status_code=404)
            return {"success": True}

        @app.post("/subscription/check", response_model=None)
        async def check_subscription(body: CheckRequest) -> dict[str, Any] | JSONResponse:
            subscriber = await self._registry.get(body.subscriber_id)
            if subscriber is None or subscriber.push_endpoint != body.endpoint:
                return JSONResponse({"valid": False}, status_code=404)
            return {"valid": True}

        @app.post("/test-notification", response_model=None)
        async def test_notification(body: TestNotificationRequest) -> dict[str, Any] | JSONResponse:
            if await self._registry.get(body.subscriber_id) is None:
                return JSONResponse({"error": "Subscriber not found"}, status_code=404)

            now = int(self._clock())
            item = await self._queue.enqueue(
                body.subscriber_id, self._test_payload(body.message, now), Priority.HIGH, now=now
            )
            try:
                result = await asyncio.wait_for(
                    self._queue.drain(now=now, subscriber_id=body.subscriber_id),
                    timeout=self._config.request_timeout,
                )
            except TimeoutError:
                return JSONResponse({"error": "Delivery timeout"}, status_code=504)
            return {"success": True, "itemId": item.id, "delivered": result.delivered > 0}

        # Bearer-protected endpoints
        @app.post("/notify", dependencies=authorized, response_model=None)
        async def notify(body: NotifyRequest, background: BackgroundTasks) -> Any:
            notification = body.notification
            try:
                trigger_type = notification.trigger_type()
            except ValueError:
                return JSONResponse(
                    {"error": f"Unknown notification type: {notification.type}"},
                    status_code=400,
                )
            if await self._registry.get(body.subscriber_id) is None:
                return JSONResponse({"error": "Subscriber not found"}, status_code=404)

            now = int(self._clock())
            priority = notification.priority or (
                Priority.HIGH if trigger_type in _HIGH_BY_DEFAULT else Priority.NORMAL
            )
            trigger = NotificationTrigger(
                source_event_id=notification.event_id or f"api-{uuid.uuid4().hex}",
                type=trigger_type,
                priority=priority,
                target_subscriber_ids=(body.subscriber_id,),
                group_id=notification.group_id,
                excerpt=notification.content[:_NOTIFY_EXCERPT],
                timestamp=now,
            )
            result = await self._aggregator.process([trigger], now)

            if result.enqueued:
                background.add_task(self._kick_queue, body.subscriber_id)
                return {"success": True, "queued": True}
            if result.pending:
                return {"success": True, "pending": True}
            return Response(status_code=204)

        @app.get("/subscriptions", dependencies=authorized)
        async def subscriptions() -> dict[str, list[str]]:
            return {
                s.subscriber_id: sorted(s.groups)
                for s in await self._registry.list_subscribers()
            }

        @app.get("/stats", dependencies=authorized)
        async def stats() -> dict[str, Any]:
            await self._metrics.load(self._store)
            snapshot = self._metrics.get_metrics().to_dict()
            snapshot.pop("delivery_times_ms")
            return {
                "metrics": snapshot,
                "success_rate": round(self._metrics.get_success_rate(), 2),
                "top_errors": [
                    {"error": error, "count": count}
                    for error, count in self._metrics.get_top_errors()
                ],
                "queue_size": len(await self._queue.pending()),
            }

        @app.get("/logs", dependencies=authorized)
        async def logs(
            level: str | None = None,
            limit: int = Query(default=100, ge=1, le=1000),  # noqa: B008
        ) -> dict[str, Any]:
            await self._logs.load(self._store)
            entries = self._logs.get_logs(level=level.lower() if level else None, limit=limit)
            return {"logs": [entry.to_dict() for entry in entries], "count": len(entries)}

        return app

    async def _run_server(self, app: FastAPI) -> None:
        """Run uvicorn as an asyncio server."""
        config = uvicorn.Config(
            app,
            host=self._config.host,
            port=self._config.port,
            log_level="warning",
            access_log=False,
        )
        server = uvicorn.Server(config)
        await server.serve()
