# pipeline/bootstrap.py
# ============================================================================
# DRIVER TOP-UP BOT — COMPONENT WIRING
# ============================================================================
# Builds the orchestrator and its collaborators from TopupConfig. Anything
# passed in explicitly wins over what the config would build.
# ============================================================================

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog

from config import TopupConfig
from handlers.message_handler import MessageHandler
from integrations.midtrans import IPaymentGateway, MidtransClient
from pipeline.orchestrator import TopupOrchestrator
from services.driver_directory import (
    GoogleSheetsDriverDirectory,
    IDriverDirectory,
    InMemoryDriverDirectory,
)
from services.notifier import (
    HttpMessageTransport,
    IMessageTransport,
    InMemoryMessageTransport,
    Notifier,
)
from services.rate_limiter import RateLimiter

logger = structlog.get_logger().bind(component="bootstrap")


@dataclass
class TopupServices:
    config: TopupConfig
    orchestrator: TopupOrchestrator
    handler: MessageHandler
    notifier: Notifier
    gateway: IPaymentGateway
    directory: IDriverDirectory
    transport: IMessageTransport

    async def close(self) -> None:
        await self.transport.close()
        close = getattr(self.gateway, "close", None)
        if close is not None:
            await close()


async def build_directory(config: TopupConfig) -> IDriverDirectory:
    if config.sheets_spreadsheet_id:
        directory = GoogleSheetsDriverDirectory(
            spreadsheet_id=config.sheets_spreadsheet_id,
            credentials_path=config.sheets_credentials_path,
            sheet_range=config.sheets_range,
        )
        if await directory.initialize():
            return directory
    log = logger.warning if config.is_development else logger.error
    log("directory_in_memory", reason="Google Sheets not configured", env=config.env)
    return InMemoryDriverDirectory()


def build_transport(config: TopupConfig) -> IMessageTransport:
    if config.whatsapp_api_url:
        return HttpMessageTransport(
            base_url=config.whatsapp_api_url,
            token=config.whatsapp_api_token,
            timeout_seconds=config.transport_timeout_seconds,
        )
    logger.warning("transport_in_memory", reason="WHATSAPP_API_URL not set")
    return InMemoryMessageTransport()


async def build_services(
    config: TopupConfig,
    gateway: Optional[IPaymentGateway] = None,
    directory: Optional[IDriverDirectory] = None,
    transport: Optional[IMessageTransport] = None,
) -> TopupServices:
    if not config.midtrans_server_key and gateway is None:
        logger.warning("midtrans_server_key_missing", effect="webhooks will be rejected")

    gateway = gateway or MidtransClient(
        server_key=config.midtrans_server_key,
        is_production=config.midtrans_is_production,
        finish_url=config.midtrans_finish_url,
        expiry_hours=config.payment_expiry_hours,
        timeout_seconds=config.gateway_timeout_seconds,
    )
    if directory is None:
        directory = await build_directory(config)
    if transport is None:
        transport = build_transport(config)

    notifier = Notifier(
        transport,
        admin_number=config.admin_number,
        send_timeout_seconds=config.transport_timeout_seconds,
    )
    orchestrator = TopupOrchestrator(
        directory=directory,
        gateway=gateway,
        notifier=notifier,
        rate_limiter=RateLimiter(
            window_seconds=config.rate_limit_window_seconds,
            max_requests=config.rate_limit_max_requests,
        ),
        min_amount=config.min_amount,
        max_amount=config.max_amount,
        gateway_timeout_seconds=config.gateway_timeout_seconds,
        directory_timeout_seconds=config.directory_timeout_seconds,
        max_credit_attempts=config.max_credit_attempts,
        stale_after=timedelta(minutes=config.stale_order_minutes),
    )

    return TopupServices(
        config=config,
        orchestrator=orchestrator,
        handler=MessageHandler(orchestrator),
        notifier=notifier,
        gateway=gateway,
        directory=directory,
        transport=transport,
    )


__all__ = ["TopupServices", "build_services", "build_directory", "build_transport"]
