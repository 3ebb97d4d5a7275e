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

"""Fixtures shared by the shipment booking tests."""

import contextlib
import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional

from shipbook import db
from shipbook.exceptions import ProviderUnavailableError
from shipbook.integrations.carriers.mock import MockCarrierAdapter
from shipbook.models import CarrierBooking
from shipbook.models import PackageDetails
from shipbook.models import RateQuoteOption
from shipbook.models import ShipmentRequest
from shipbook.models import ShippingAddress
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import NullPool

CLIENT_ID = "client-acme"
T0 = datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


class FakeClock:
  """A settable UTC clock."""

  def __init__(self, start: datetime.datetime = T0):
    self.now = start

  def __call__(self) -> datetime.datetime:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += datetime.timedelta(seconds=seconds)


async def no_sleep(seconds: float) -> None:
  del seconds  # Unused.


class RecordingCarrier(MockCarrierAdapter):
  """Mock carrier that records bookings and can be told to fail them."""

  def __init__(self, **kwargs):
    super().__init__(**kwargs)
    self.bookings: List[Optional[str]] = []
    self.cancellations: List[str] = []
    self.fail_bookings = False
    self.booking_error: Optional[Exception] = None

  async def create_shipment(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: str,
      label_format: str = "PDF",
      reference: Optional[str] = None,
  ) -> CarrierBooking:
    if self.fail_bookings:
      raise ProviderUnavailableError("fedex", 503)
    if self.booking_error is not None:
      raise self.booking_error
    self.bookings.append(reference)
    return await super().create_shipment(
        shipper, recipient, packages, service_type, label_format, reference
    )

  async def cancel_shipment(self, tracking_number: str) -> bool:
    self.cancellations.append(tracking_number)
    return await super().cancel_shipment(tracking_number)


@contextlib.asynccontextmanager
async def temp_database(path: str) -> AsyncIterator[db.DatabaseManager]:
  """Creates the schema in a SQLite file and yields its manager."""
  manager = db.DatabaseManager()
  await manager.init_db(path, poolclass=NullPool)
  try:
    yield manager
  finally:
    await manager.close()


async def add_client(
    session: AsyncSession,
    client_id: str = CLIENT_ID,
    profile: str = "regular",
) -> None:
  session.add(
      db.ClientAccount(
          id=client_id,
          name="Acme Trading",
          email="ops@acme.example",
          phone="+966500000000",
          country="SA",
          profile=profile,
      )
  )
  await session.commit()


def address(
    name: str = "Warehouse",
    city: str = "Memphis",
    postal_code: str = "38118",
    country_code: str = "US",
) -> ShippingAddress:
  return ShippingAddress(
      name=name,
      street_lines=["10 Main Street"],
      city=city,
      state_or_province="TN" if country_code == "US" else None,
      postal_code=postal_code,
      country_code=country_code,
      phone="+15550100",
  )


def shipment_request(
    weight: str = "10", international: bool = False
) -> ShipmentRequest:
  """A 10 lb shipment; FedEx Ground quotes 27.99 for it domestically."""
  recipient = address("Customer", "Nashville", "37203")
  if international:
    recipient = address("Customer", "Riyadh", "12211", "SA")
  return ShipmentRequest(
      shipper=address(),
      recipient=recipient,
      packages=[PackageDetails(weight=Decimal(weight), weight_unit="LB")],
  )


def rate_option(
    service_type: str = "FEDEX_GROUND", base_rate: str = "27.99"
) -> RateQuoteOption:
  """A priced option with a 20% margin."""
  base = Decimal(base_rate)
  margin = (base * Decimal("0.2")).quantize(Decimal("0.01"))
  return RateQuoteOption(
      carrier_code="FEDEX",
      carrier_name="FedEx",
      service_type=service_type,
      service_name=service_type.replace("_", " ").title(),
      currency="SAR",
      base_rate=base,
      margin_percentage=Decimal("20"),
      margin_amount=margin,
      final_price=base + margin,
      transit_days=5,
  )
