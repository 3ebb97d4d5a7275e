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

"""Periodic housekeeping for webhooks, quotes, claims and idempotency keys."""

import asyncio
import datetime
import logging
from typing import Callable, Mapping, NamedTuple, Optional

from shipbook import db
from shipbook.config import Settings
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.models import RetrySweepResponse
from shipbook.money import to_iso
from shipbook.money import utcnow
from shipbook.services.accounting_outbox import AccountingOutbox
from shipbook.services.checkout_service import CheckoutService
from shipbook.services.quote_store import QuoteStore
from shipbook.services.webhook_service import WebhookService
from shipbook.services.webhook_service import WebhookSource
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SweepResult(NamedTuple):
  webhooks: RetrySweepResponse
  expired_quotes: int
  stale_confirmations: int = 0
  purged_idempotency_records: int = 0


async def sweep(
    session: AsyncSession,
    settings: Settings,
    carriers: CarrierRegistry,
    payment_gateway: PaymentGateway,
    webhook_sources: Mapping[str, WebhookSource],
    outbox: Optional[AccountingOutbox] = None,
    clock: Callable[[], datetime.datetime] = utcnow,
) -> SweepResult:
  """Runs one housekeeping pass.

  Retries pending webhooks, expires stale quotes, fails confirmations whose
  claim was abandoned and purges expired idempotency records.
  """
  checkout_service = CheckoutService(
      session,
      carriers,
      payment_gateway,
      settings.public_base_url,
      quote_ttl_seconds=settings.quote_ttl_seconds,
      outbox=outbox,
      clock=clock,
  )
  webhooks = await WebhookService(
      session, webhook_sources, checkout_service
  ).retry_pending()
  expired = await QuoteStore(
      session, settings.quote_ttl_seconds, clock
  ).expire_stale()
  stale = await checkout_service.fail_stale_confirmations()
  purged = await db.purge_idempotency_records(session, to_iso(clock()))
  await session.commit()
  if purged:
    logger.info("Purged %d expired idempotency records", purged)
  return SweepResult(webhooks, expired, stale, purged)


async def run_periodically(
    interval: float,
    session_factory: Callable[[], AsyncSession],
    settings: Settings,
    carriers: CarrierRegistry,
    payment_gateway: PaymentGateway,
    webhook_sources: Mapping[str, WebhookSource],
    outbox: Optional[AccountingOutbox] = None,
) -> None:
  """Runs `sweep` every `interval` seconds until cancelled."""
  logger.info("Maintenance sweep every %s seconds", interval)
  while True:
    await asyncio.sleep(interval)
    try:
      async with session_factory() as session:
        await sweep(
            session,
            settings,
            carriers,
            payment_gateway,
            webhook_sources,
            outbox,
        )
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception("Maintenance sweep failed")
