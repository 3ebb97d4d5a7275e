#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Shipment booking server (Python/FastAPI)."""

import asyncio
import contextlib
import logging
import sys
from typing import Optional, Sequence

from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
import httpx
from shipbook import config
from shipbook import db
from shipbook.exceptions import ShipbookError
from shipbook.integrations.accounting import AccountingSync
from shipbook.integrations.accounting import LoggingAccountingSync
from shipbook.integrations.carriers.registry import build_carrier_registry
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.integrations.payments.registry import build_payment_gateway
from shipbook.routes.addresses import router as addresses_router
from shipbook.routes.admin import router as admin_router
from shipbook.routes.payments import router as payments_router
from shipbook.routes.shipments import router as shipments_router
from shipbook.routes.webhooks import router as webhooks_router
from shipbook.services import maintenance
from shipbook.services.accounting_outbox import AccountingOutbox
from shipbook.services.integration_logger import IntegrationLogger
from shipbook.services.webhook_service import build_webhook_sources
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def shipbook_exception_handler(request: Request, exc: ShipbookError):
  """Converts service exceptions to JSON responses."""
  del request  # Unused.
  return JSONResponse(
      status_code=exc.status_code,
      content={"detail": exc.message, "code": exc.code},
  )


def create_app(
    settings: config.Settings,
    carriers: Optional[CarrierRegistry] = None,
    payment_gateway: Optional[PaymentGateway] = None,
    accounting: Optional[AccountingSync] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
  """Builds the application.

  Adapters not passed in are built from `settings` when the app starts.

  Args:
    settings: The resolved configuration.
    carriers: A prebuilt carrier registry.
    payment_gateway: A prebuilt payment gateway.
    accounting: The accounting collaborator; defaults to logging only.
    http_transport: httpx transport for the adapters built from settings.

  Returns:
    The FastAPI application.
  """

  @contextlib.asynccontextmanager
  async def lifespan(app: FastAPI):
    if settings.db_path:
      await db.manager.init_db(settings.db_path)
    integration_logger = IntegrationLogger(db.manager.session_factory)
    state = app.state
    state.settings = settings
    state.carriers = carriers or build_carrier_registry(
        settings, integration_logger, http_transport
    )
    state.payment_gateway = payment_gateway or build_payment_gateway(
        settings, integration_logger, http_transport
    )
    state.webhook_sources = build_webhook_sources(
        state.carriers, state.payment_gateway
    )
    state.outbox = AccountingOutbox(accounting or LoggingAccountingSync())

    sweeper = None
    if settings.webhook_sweep_interval > 0:
      sweeper = asyncio.create_task(
          maintenance.run_periodically(
              settings.webhook_sweep_interval,
              db.manager.session_factory,
              settings,
              state.carriers,
              state.payment_gateway,
              state.webhook_sources,
              state.outbox,
          )
      )
    yield
    if sweeper is not None:
      sweeper.cancel()
      with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await state.outbox.drain()
    await db.manager.close()

  app = FastAPI(
      title="Shipment Booking Service",
      version=config.SERVER_VERSION,
      description="Rate quoting, checkout and carrier booking for shipments",
      lifespan=lifespan,
  )
  app.add_exception_handler(ShipbookError, shipbook_exception_handler)
  app.include_router(shipments_router)
  app.include_router(addresses_router)
  app.include_router(payments_router)
  app.include_router(webhooks_router)
  app.include_router(admin_router)
  return app


def main(argv: Sequence[str]) -> None:
  """Main entry point for the shipment booking server."""
  del argv  # Unused.

  if config.FLAGS.db_path is None or config.FLAGS.port is None:
    logger.error("Both --db_path and --port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  settings = config.Settings.from_env().with_flags()
  uvicorn.run(
      create_app(settings), host=config.FLAGS.host, port=config.FLAGS.port
  )


if __name__ == "__main__":
  absl_app.run(main)
