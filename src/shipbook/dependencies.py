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

"""FastAPI dependencies for the shipment booking server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Header extraction (X-Client-Account-Id, Idempotency-Key).
- Database session management.
- Service instantiation (CheckoutService, WebhookService) over the adapters
  built once at startup and kept on `app.state`.
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends
from fastapi import Header
from fastapi import Request
from shipbook import db
from shipbook.config import Settings
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.services.checkout_service import CheckoutService
from shipbook.services.webhook_service import WebhookService
from sqlalchemy.ext.asyncio import AsyncSession


async def client_account_id(
    x_client_account_id: str = Header(..., min_length=1),
) -> str:
  """Extracts the authenticated client account from the gateway header."""
  return x_client_account_id


async def idempotency_header(
    idempotency_key: Optional[str] = Header(None),
) -> Optional[str]:
  """Extracts the optional Idempotency-Key header."""
  return idempotency_key


async def get_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a database session."""
  async with db.manager.session_factory() as session:
    yield session


def get_settings(request: Request) -> Settings:
  return request.app.state.settings


def get_carriers(request: Request) -> CarrierRegistry:
  return request.app.state.carriers


def get_checkout_service(
    request: Request,
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""
  state = request.app.state
  return CheckoutService(
      session,
      state.carriers,
      state.payment_gateway,
      settings.public_base_url,
      quote_ttl_seconds=settings.quote_ttl_seconds,
      outbox=state.outbox,
  )


def get_webhook_service(
    request: Request,
    session: AsyncSession = Depends(get_db),
    checkout_service: CheckoutService = Depends(get_checkout_service),
) -> WebhookService:
  """Dependency provider for WebhookService."""
  return WebhookService(
      session, request.app.state.webhook_sources, checkout_service
  )
