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

"""Time-bounded, single-use reservations of priced rate options.

A reservation only ever moves from `reserved` to `consumed` or `expired`.
Consumption is one conditional UPDATE, so of several concurrent attempts on
the same quote exactly one succeeds.
"""

import datetime
import logging
import secrets
from typing import Callable, List, NamedTuple, Optional, Sequence

from shipbook import db
from shipbook.enums import QuoteStatus
from shipbook.exceptions import AlreadyConsumedError
from shipbook.exceptions import ExpiredReservationError
from shipbook.exceptions import QuoteNotFoundError
from shipbook.exceptions import ResourceNotFoundError
from shipbook.models import RateQuoteOption
from shipbook.models import ShipmentRequest
from shipbook.money import to_iso
from shipbook.money import to_minor_units
from shipbook.money import utcnow
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_QUOTE_TTL_SECONDS = 900


def new_quote_id() -> str:
  return "qt_" + secrets.token_urlsafe(16)


class QuoteBatch(NamedTuple):
  """The sibling reservations of one rate-shopping call."""

  rate_group_id: str
  reservations: List[db.QuoteReservation]
  expires_at: str


class QuoteStore:
  """Reserves and consumes quotes through one database session."""

  def __init__(
      self,
      session: AsyncSession,
      ttl_seconds: int = DEFAULT_QUOTE_TTL_SECONDS,
      clock: Callable[[], datetime.datetime] = utcnow,
  ):
    self.session = session
    self.ttl = datetime.timedelta(seconds=ttl_seconds)
    self._clock = clock

  def _new_reservation(
      self,
      option: RateQuoteOption,
      request: ShipmentRequest,
      client_account_id: str,
      profile: str,
      rate_group_id: str,
      now: datetime.datetime,
  ) -> db.QuoteReservation:
    return db.QuoteReservation(
        id=new_quote_id(),
        rate_group_id=rate_group_id,
        client_account_id=client_account_id,
        profile=profile,
        carrier_code=option.carrier_code,
        carrier_name=option.carrier_name,
        service_type=option.service_type,
        service_name=option.service_name,
        currency=option.currency,
        base_rate=to_minor_units(option.base_rate),
        margin_percentage=option.margin_percentage,
        margin_amount=to_minor_units(option.margin_amount),
        final_price=to_minor_units(option.final_price),
        transit_days=option.transit_days,
        estimated_delivery=option.estimated_delivery,
        shipment_request=request.model_dump(mode="json"),
        status=QuoteStatus.RESERVED.value,
        created_at=to_iso(now),
        expires_at=to_iso(now + self.ttl),
    )

  async def reserve(
      self,
      option: RateQuoteOption,
      request: ShipmentRequest,
      client_account_id: str,
      profile: str,
      rate_group_id: Optional[str] = None,
  ) -> db.QuoteReservation:
    """Stores one priced option and returns its reservation."""
    batch = await self.reserve_all(
        [option], request, client_account_id, profile, rate_group_id
    )
    return batch.reservations[0]

  async def reserve_all(
      self,
      options: Sequence[RateQuoteOption],
      request: ShipmentRequest,
      client_account_id: str,
      profile: str,
      rate_group_id: Optional[str] = None,
  ) -> QuoteBatch:
    """Stores the options of one rate-shopping call with a shared expiry."""
    now = self._clock()
    rate_group_id = rate_group_id or "rg_" + secrets.token_urlsafe(12)
    reservations = [
        self._new_reservation(
            option, request, client_account_id, profile, rate_group_id, now
        )
        for option in options
    ]
    self.session.add_all(reservations)
    await self.session.commit()
    logger.info(
        "Reserved %d quotes in group %s for %s",
        len(reservations),
        rate_group_id,
        client_account_id,
    )
    return QuoteBatch(rate_group_id, reservations, to_iso(now + self.ttl))

  async def consume(
      self, quote_id: str, client_account_id: Optional[str] = None
  ) -> db.QuoteReservation:
    """Marks a reservation consumed.

    The change is flushed but not committed, so the caller can commit it
    together with whatever the quote is consumed for.

    Args:
      quote_id: The reservation to consume.
      client_account_id: When given, the reservation must belong to it.

    Returns:
      The consumed reservation.

    Raises:
      QuoteNotFoundError: No reservation has this id.
      ResourceNotFoundError: The reservation belongs to another client.
      AlreadyConsumedError: The reservation was consumed before.
      ExpiredReservationError: The reservation expired.
    """
    quote = await db.get_quote(self.session, quote_id)
    if quote is None:
      raise QuoteNotFoundError()
    if client_account_id and quote.client_account_id != client_account_id:
      raise ResourceNotFoundError("Quote not found")

    now = to_iso(self._clock())
    if await db.consume_quote(self.session, quote_id, now):
      await self.session.refresh(quote)
      logger.info("Consumed quote %s", quote_id)
      return quote

    await self.session.refresh(quote)
    if quote.status == QuoteStatus.CONSUMED.value:
      raise AlreadyConsumedError()
    raise ExpiredReservationError()

  async def expire_stale(self) -> int:
    """Marks every past-due reservation expired."""
    count = await db.expire_quotes(self.session, to_iso(self._clock()))
    await self.session.commit()
    if count:
      logger.info("Expired %d stale quotes", count)
    return count
