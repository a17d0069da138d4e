# api/server.py
# ============================================================================
# DRIVER TOP-UP BOT — FASTAPI SERVER
# ============================================================================
# Inbound chat messages, Midtrans webhooks, operator views and health.
#
# Webhook answers:
#   401  signature failed
#   400  malformed payload
#   200  every business outcome (incl. not found / already finalized /
#        held credit) and authenticated-but-unsupported statuses
# ============================================================================

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import TopupConfig
from handlers.message_handler import BotReply
from logging_setup import configure_logging
from pipeline.bootstrap import TopupServices, build_services
from schemas.errors import (
    GatewayError,
    MalformedWebhook,
    ReconcileError,
    SignatureError,
    TopupError,
)
from schemas.topup import TopupOrder, Transaction
from tasks.maintenance import maintenance_loop

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class InboundMessage(BaseModel):
    """Chat message forwarded by the WhatsApp bridge."""
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(..., alias="from", min_length=1)
    body: str = Field(default="", max_length=4096)
    type: str = Field(default="chat")


class MessageResponse(BaseModel):
    handled: bool
    reply: Optional[BotReply] = None
    delivered: bool = False


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    pending_orders: int


class WebhookResponse(BaseModel):
    status: str
    outcome: str
    order_id: Optional[str] = None
    detail: Optional[str] = None


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    config: Optional[TopupConfig] = None,
    services: Optional[TopupServices] = None,
) -> FastAPI:
    """
    Build the FastAPI app. Tests pass prebuilt ``services``; production
    builds them from the environment inside the lifespan.
    """
    config = config or (services.config if services else TopupConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, env=config.env)
        app.state.started_at = datetime.now(timezone.utc)
        app.state.services = services or await build_services(config)

        maintenance_task = None
        if config.maintenance_enabled:
            maintenance_task = asyncio.create_task(
                maintenance_loop(app.state.services.orchestrator, config.maintenance_interval_seconds)
            )

        yield

        if maintenance_task is not None:
            maintenance_task.cancel()
            with suppress(asyncio.CancelledError):
                await maintenance_task
        await app.state.services.close()
        logger.info("server_stopped")

    app = FastAPI(
        title="Driver Top-Up Bot",
        description="Driver balance top-up over WhatsApp with Midtrans payments",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    def get_services(request: Request) -> TopupServices:
        return request.app.state.services

    # ------------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        svc = get_services(request)
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            pending_orders=await svc.orchestrator.orders.count(),
        )

    @app.get("/status")
    async def service_status(request: Request) -> Dict[str, Any]:
        svc = get_services(request)
        gateway_status = getattr(svc.gateway, "status", None)
        return {
            "version": VERSION,
            "env": config.env,
            "gateway": gateway_status() if gateway_status else {"service": type(svc.gateway).__name__},
            "directory": type(svc.directory).__name__,
            "transport": type(svc.transport).__name__,
            "admin_configured": bool(config.admin_number),
            "maintenance_enabled": config.maintenance_enabled,
            "orchestrator": await svc.orchestrator.status(),
        }

    # ------------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------------

    @app.post("/api/v1/messages", response_model=MessageResponse)
    async def inbound_message(message: InboundMessage, request: Request):
        svc = get_services(request)

        # Group chats, status broadcasts and media are not commands
        if message.type != "chat" or message.sender.endswith(("@g.us", "@broadcast")):
            return MessageResponse(handled=False)

        reply = await svc.handler.handle(message.sender, message.body)
        delivered = await svc.notifier.send_text(message.sender.split("@", 1)[0], reply.text)
        return MessageResponse(handled=True, reply=reply, delivered=delivered)

    # ------------------------------------------------------------------------
    # Gateway webhook
    # ------------------------------------------------------------------------

    @app.post("/webhook/midtrans", response_model=WebhookResponse)
    async def midtrans_webhook(request: Request):
        svc = get_services(request)
        raw = await request.body()

        try:
            event = svc.gateway.parse_webhook(raw, request.headers.get("X-Signature"))
        except SignatureError as e:
            logger.warning("webhook_signature_invalid", detail=e.detail)
            return JSONResponse(
                status_code=401,
                content=WebhookResponse(status="rejected", outcome=e.code).model_dump(),
            )
        except MalformedWebhook as e:
            if e.unsupported:
                logger.info("webhook_status_unsupported", detail=e.detail)
                return WebhookResponse(status="ok", outcome="ignored", detail=e.detail)
            logger.warning("webhook_malformed", detail=e.detail)
            return JSONResponse(
                status_code=400,
                content=WebhookResponse(status="rejected", outcome=e.code, detail=e.detail).model_dump(),
            )

        try:
            outcome = await svc.orchestrator.on_gateway_event(event)
        except ReconcileError as e:
            return WebhookResponse(status="ok", outcome=e.code, order_id=e.order_id, detail=e.detail)

        return WebhookResponse(status="ok", outcome=outcome.status.value, order_id=outcome.order_id)

    # ------------------------------------------------------------------------
    # Operator views
    # ------------------------------------------------------------------------

    @app.get("/api/v1/orders/pending", response_model=List[TopupOrder])
    async def pending_orders(request: Request):
        return await get_services(request).orchestrator.list_pending()

    @app.get("/api/v1/transactions", response_model=List[Transaction])
    async def transactions(request: Request, identity: str = Query(..., min_length=1)):
        try:
            return await get_services(request).orchestrator.list_transactions(identity)
        except TopupError as e:
            raise HTTPException(status_code=400, detail=e.detail)

    @app.post("/api/v1/orders/{order_id}/reconcile", response_model=WebhookResponse)
    async def reconcile_order(order_id: str, request: Request):
        svc = get_services(request)
        try:
            outcome = await svc.orchestrator.reconcile_from_gateway(order_id)
        except ReconcileError as e:
            return WebhookResponse(status="ok", outcome=e.code, order_id=e.order_id, detail=e.detail)
        except MalformedWebhook as e:
            return WebhookResponse(status="ok", outcome="ignored", order_id=order_id, detail=e.detail)
        except GatewayError as e:
            raise HTTPException(status_code=502, detail=e.detail)
        return WebhookResponse(status="ok", outcome=outcome.status.value, order_id=order_id)

    return app


# ============================================================================
# MAIN
# ============================================================================

def main() -> None:
    config = TopupConfig.from_env()
    configure_logging(config.log_level, config.log_format)
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
