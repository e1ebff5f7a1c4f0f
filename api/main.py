"""
FastAPI Application — runs the WhatsApp Hub worker.

Provides:
- Lifespan bootstrap: settings, logging, database, session, dispatcher
- Webhook endpoint for WPPConnect sidecar events (inbound messages), guarded
  by the shared events token
- Health endpoint with session state, dispatcher counters and job counts

The session is held with `async with manager.session()` for the whole life
of the app, so it is closed on every shutdown path.
"""
from __future__ import annotations

import secrets
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request

from channels.base import SessionDriver, SessionUnavailableError
from channels.inbound_relay import InboundRelay
from channels.mock_session import MockSessionDriver
from channels.whatsapp_adapter import WppConnectDriver, parse_wppconnect_event
from config.logging import setup_logging
from config.settings import Settings, load_settings, validate_settings
from database.session import close_db, init_db
from database.store_base import BaseJobStore
from database.store_factory import create_store, reset_store
from job_queue.dispatcher import OutboundDispatcher
from session.manager import SessionLifecycleManager
from session.state_machine import RetryPolicy

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Worker:
    settings: Settings
    store: BaseJobStore
    driver: SessionDriver
    relay: InboundRelay
    manager: SessionLifecycleManager
    dispatcher: OutboundDispatcher


def create_driver(settings: Settings) -> SessionDriver:
    if settings.session.driver == "mock":
        return MockSessionDriver(session_name=settings.session.session_name)
    return WppConnectDriver(settings.session)


def build_worker(settings: Settings, store: BaseJobStore = None,
                 driver: SessionDriver = None) -> Worker:
    """Wire the collaborators together. Nothing is started here."""
    store = store or create_store({"store_backend": settings.database.store_backend})
    driver = driver or create_driver(settings)
    relay = InboundRelay(settings.webhook.url, settings.webhook.secret,
                         timeout_s=settings.webhook.timeout_s)

    session_cfg = settings.session
    manager = SessionLifecycleManager(
        driver,
        session_cfg.profile_dir,
        policy=RetryPolicy(
            max_attempts=session_cfg.acquire_attempts,
            base_delay_s=session_cfg.retry_base_delay_s,
            min_delay_s=session_cfg.retry_min_delay_s,
        ),
        settle_delay_s=session_cfg.settle_delay_s,
        cleanup_max_depth=session_cfg.cleanup_max_depth,
    )
    manager.on_message(relay.handle)

    dispatcher = OutboundDispatcher(
        store,
        manager,
        max_attempts=settings.dispatcher.max_attempts,
        poll_interval_ms=settings.dispatcher.poll_interval_ms,
    )
    return Worker(settings, store, driver, relay, manager, dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = validate_settings(load_settings())
    setup_logging(settings.log_level, json=settings.log_json)

    if settings.database.store_backend == "sql":
        await init_db(settings.database.url, echo=settings.debug)

    reset_store()
    worker = build_worker(settings)
    app.state.worker = worker

    try:
        async with worker.manager.session():
            await worker.dispatcher.start()
            logger.info("wahub_worker_started",
                        session=settings.session.session_name,
                        driver=worker.driver.name,
                        store=type(worker.store).__name__)
            try:
                yield
            finally:
                await worker.dispatcher.stop()
    finally:
        await worker.relay.aclose()
        await worker.driver.aclose()
        if settings.database.store_backend == "sql":
            await close_db()
        logger.info("wahub_worker_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="WhatsApp Hub Worker",
    description="Outbound job dispatcher and inbound relay for a WhatsApp session",
    version="1.0.0",
    lifespan=lifespan,
)


def _worker(request: Request) -> Worker:
    worker = getattr(request.app.state, "worker", None)
    if worker is None:
        raise HTTPException(503, "Worker not started")
    return worker


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    worker = _worker(request)
    try:
        jobs = await worker.store.count_by_status()
    except Exception as e:
        logger.error("health_job_counts_failed", error=str(e))
        jobs = {}
    return {
        "status": "ok" if worker.manager.is_ready else "degraded",
        "session": worker.manager.health(),
        "dispatcher": worker.dispatcher.health(),
        "relay": {"forwarded": worker.relay.forwarded, "dropped": worker.relay.dropped},
        "jobs": jobs,
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WPPConnect sidecar events
# ══════════════════════════════════════════════════════════════

@app.post("/hooks/wppconnect")
async def wppconnect_webhook(request: Request, background_tasks: BackgroundTasks):
    worker = _worker(request)
    token = request.query_params.get("token") or request.headers.get("x-webhook-token", "")
    if not secrets.compare_digest(token.encode(), worker.settings.session.events_token.encode()):
        logger.warning("wppconnect_event_unauthorized", client=getattr(request.client, "host", None))
        raise HTTPException(401, "Invalid webhook token")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Expected a JSON object")

    session_name = payload.get("session")
    if session_name and session_name != worker.settings.session.session_name:
        logger.warning("wppconnect_event_foreign_session", session=session_name)
        return {"status": "ignored"}

    message = parse_wppconnect_event(payload)
    if message is None:
        return {"status": "ignored", "event": payload.get("event")}

    try:
        session = worker.manager.current()
    except SessionUnavailableError as e:
        raise HTTPException(503, str(e))

    # relay to the dashboard after the sidecar has its response
    background_tasks.add_task(session.dispatch_inbound, message)
    return {"status": "received"}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
