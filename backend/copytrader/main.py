"""FastAPI application entry point.

Creates the app, registers routes and error handlers, and manages the
lifecycle (logging, DB init, service wiring, background job shutdown).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

# Route modules
from copytrader.api import follows, system, trades, users, webhooks, websocket
from copytrader.brokers.factory import create_broker
from copytrader.config import AppConfig, get_config
from copytrader.database import close_db, get_session_factory, init_db
from copytrader.engine.execution_confirmation import ExecutionConfirmer
from copytrader.engine.feed_aggregator import FeedAggregator
from copytrader.engine.follow_ledger import FollowLedger
from copytrader.engine.replication_engine import BrokerFactory, ReplicationEngine
from copytrader.engine.settlement_engine import SettlementEngine
from copytrader.engine.trade_actions import TradeActionRecorder
from copytrader.engine.worker_pool import JobRunner
from copytrader.errors import CopyTraderError, RateLimitError
from copytrader.services.audit_service import AuditService
from copytrader.services.follow_cache import FollowCache
from copytrader.services.log_buffer import configure_logging
from copytrader.services.market_hours import is_market_open
from copytrader.services.notification_service import NotificationService
from copytrader.services.payment_webhooks import PaymentWebhookProcessor
from copytrader.services.rate_limit import SlidingWindowRateLimiter
from copytrader.services.trade_service import MarketClock, TradeService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived component, built once per process."""

    jobs: JobRunner
    notifier: NotificationService
    audit: AuditService
    ledger: FollowLedger
    feed: FeedAggregator
    recorder: TradeActionRecorder
    replication: ReplicationEngine
    settlement: SettlementEngine
    trades: TradeService
    webhooks: PaymentWebhookProcessor


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    config: AppConfig,
    *,
    broker_factory: BrokerFactory = create_broker,
    confirmer: ExecutionConfirmer | None = None,
    market_open: MarketClock = is_market_open,
) -> Services:
    jobs = JobRunner()
    notifier = NotificationService()
    audit = AuditService(session_factory)
    cache = FollowCache(
        ttl_seconds=config.follow_cache_ttl_seconds,
        max_entries=config.follow_cache_max_entries,
    )
    ledger = FollowLedger(session_factory, cache)
    confirmer = confirmer or ExecutionConfirmer(
        poll_interval=config.confirmation_poll_interval_seconds,
        timeout=config.confirmation_timeout_seconds,
    )
    replication = ReplicationEngine(
        session_factory,
        ledger,
        notifier,
        audit,
        jobs,
        confirmer,
        broker_factory=broker_factory,
        concurrency=config.fanout_concurrency,
    )
    settlement = SettlementEngine(
        session_factory,
        notifier,
        audit,
        jobs,
        confirmer,
        broker_factory=broker_factory,
        concurrency=config.fanout_concurrency,
    )
    return Services(
        jobs=jobs,
        notifier=notifier,
        audit=audit,
        ledger=ledger,
        feed=FeedAggregator(session_factory, ledger),
        recorder=TradeActionRecorder(session_factory),
        replication=replication,
        settlement=settlement,
        trades=TradeService(
            session_factory,
            ledger,
            replication,
            settlement,
            notifier,
            audit,
            market_open=market_open if config.market_hours_check_enabled else None,
            rate_limiter=SlidingWindowRateLimiter(
                config.trade_rate_limit, config.trade_rate_window_seconds
            ),
        ),
        webhooks=PaymentWebhookProcessor(
            session_factory,
            ledger,
            audit,
            jobs,
            secret=config.webhook_signing_key,
            autoiq_plan_id=config.autoiq_plan_id,
            default_num_plays=config.default_num_plays,
        ),
    )


def wire_routes(services: Services) -> None:
    """Inject the service singletons into the route modules."""
    follows.set_follow_dependencies(
        lambda: services.feed, lambda: services.ledger, lambda: services.recorder
    )
    trades.set_trade_service_getter(lambda: services.trades)
    webhooks.set_webhook_processor_getter(lambda: services.webhooks)
    system.set_system_dependencies(lambda: services.jobs, lambda: services.notifier)
    websocket.set_ws_dependencies(lambda: services.notifier)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: init DB and services on startup, stop jobs on shutdown."""
    config = get_config()
    log_dir = configure_logging(config.log_level, config.resolved_log_dir)
    logger.info("Logging to %s", log_dir)

    await init_db()
    logger.info("Database initialized at %s", config.database_url)

    services = build_services(get_session_factory(), config)
    wire_routes(services)
    app.state.services = services

    if not config.webhook_secret:
        logger.warning("WEBHOOK_SECRET is not set; payment webhooks will be rejected")
    if not config.market_hours_check_enabled:
        logger.warning("Market hours check disabled; trades accepted at any time")

    logger.info(
        "Copy trader backend ready on http://%s:%s", config.app_host, config.app_port
    )

    yield

    logger.info("Shutting down...")
    await services.jobs.shutdown()
    await close_db()
    logger.info("Shutdown complete")


async def _domain_error_handler(request: Request, exc: CopyTraderError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.message}, headers=headers
    )


async def _http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400, content={"error": f"{field}: {message}" if field else message}
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Capper Copy Trader",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CopyTraderError, _domain_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    app.include_router(follows.router)
    app.include_router(trades.router)
    app.include_router(users.router)
    app.include_router(webhooks.router)
    app.include_router(system.router)
    app.include_router(websocket.router)

    return app


# For uvicorn: `uvicorn copytrader.main:app`
app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "copytrader.main:app",
        host=config.app_host,
        port=config.app_port,
        reload=False,
        log_level=config.log_level.lower(),
    )
