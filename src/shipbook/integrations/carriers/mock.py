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

"""Deterministic offline carrier.

Rates are derived only from the request: a fixed base per service plus a
per-pound charge on the total package weight, with a larger table for
international shipments. Tracking numbers and events are derived from the
reference they are created for, so repeated calls agree.
"""

import datetime
from decimal import Decimal
import hashlib
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from shipbook.integrations.carriers.base import CarrierAdapter
from shipbook.integrations.carriers.base import parse_shipment_status_event
from shipbook.models import AddressValidation
from shipbook.models import CarrierBooking
from shipbook.models import CarrierRate
from shipbook.models import PackageDetails
from shipbook.models import PostalCodeValidation
from shipbook.models import ServiceAvailability
from shipbook.models import ShippingAddress
from shipbook.models import TrackingEvent
from shipbook.models import TrackingResult
from shipbook.models import WebhookPayload
from shipbook.money import quantize
from shipbook.money import to_iso
from shipbook.money import utcnow

logger = logging.getLogger(__name__)

MOCK_CURRENCY = "SAR"

# (service type, name, (domestic base, per lb, days), (intl base, per lb, days))
MOCK_RATE_TABLE = (
    (
        "FEDEX_GROUND",
        "FedEx Ground",
        ("15.99", "1.2", 5),
        ("45.99", "2.5", 7),
    ),
    (
        "FEDEX_EXPRESS_SAVER",
        "FedEx Express Saver",
        ("29.99", "2", 3),
        ("89.99", "4", 4),
    ),
    (
        "FEDEX_2_DAY",
        "FedEx 2Day",
        ("49.99", "3", 2),
        ("149.99", "6", 2),
    ),
    (
        "FEDEX_PRIORITY_OVERNIGHT",
        "FedEx Priority Overnight",
        ("79.99", "5", 1),
        ("249.99", "10", 1),
    ),
)

_POSTAL_PATTERNS = (
    re.compile(r"^\d{5}(-\d{4})?$"),
    re.compile(r"^[A-Za-z]\d[A-Za-z][ -]?\d[A-Za-z]\d$"),
)


def _transit_days(service_type: str, international: bool = False) -> int:
  for row in MOCK_RATE_TABLE:
    if row[0] == service_type:
      return (row[3] if international else row[2])[2]
  return 5


class MockCarrierAdapter(CarrierAdapter):
  """Offline stand-in for a carrier, always configured."""

  signature_header = "x-fedex-signature"

  def __init__(
      self,
      carrier_code: str = "FEDEX",
      name: str = "FedEx",
      clock: Callable[[], datetime.datetime] = utcnow,
  ):
    self.carrier_code = carrier_code
    self.name = name
    self._clock = clock

  def is_configured(self) -> bool:
    return True

  async def validate_address(
      self, address: ShippingAddress
  ) -> AddressValidation:
    return AddressValidation(
        valid=True,
        resolved_addresses=[{
            "streetLines": list(address.street_lines),
            "city": address.city,
            "stateOrProvince": address.state_or_province or "XX",
            "postalCode": address.postal_code,
            "countryCode": address.country_code,
            "residential": False,
        }],
        messages=["Mock validation"],
    )

  async def validate_postal_code(
      self,
      postal_code: str,
      country_code: str,
      state_or_province: Optional[str] = None,
  ) -> PostalCodeValidation:
    valid = any(p.match(postal_code) for p in _POSTAL_PATTERNS)
    return PostalCodeValidation(
        valid=valid,
        location_description="Mock Location" if valid else None,
        state_or_province=state_or_province,
    )

  async def check_service_availability(
      self,
      origin: ShippingAddress,
      destination: ShippingAddress,
      ship_date: Optional[datetime.date] = None,
  ) -> List[ServiceAvailability]:
    del ship_date  # Unused.
    international = origin.country_code != destination.country_code
    services = [
        ServiceAvailability(
            service_type=service_type,
            service_name=service_name,
            transit_days=(intl if international else dom)[2],
        )
        for service_type, service_name, dom, intl in MOCK_RATE_TABLE
        if not (international and service_type == "FEDEX_GROUND")
    ]
    if international:
      services.append(
          ServiceAvailability(
              service_type="FEDEX_INTERNATIONAL_PRIORITY",
              service_name="FedEx International Priority",
              transit_days=3,
          )
      )
      services.append(
          ServiceAvailability(
              service_type="FEDEX_INTERNATIONAL_ECONOMY",
              service_name="FedEx International Economy",
              transit_days=5,
          )
      )
    return services

  async def get_rates(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: Optional[str] = None,
  ) -> List[CarrierRate]:
    weight = sum((p.weight_in_lb() for p in packages), Decimal(0))
    international = shipper.country_code != recipient.country_code
    rates = []
    for code, service_name, dom, intl in MOCK_RATE_TABLE:
      if service_type and code != service_type:
        continue
      base, per_lb, days = intl if international else dom
      rates.append(
          CarrierRate(
              carrier_code=self.carrier_code,
              carrier_name=self.name,
              service_type=code,
              service_name=service_name,
              currency=MOCK_CURRENCY,
              base_rate=quantize(Decimal(base) + weight * Decimal(per_lb)),
              transit_days=days,
          )
      )
    logger.info(
        "Using mock %s rates (weight %s lb, international %s)",
        self.name,
        quantize(weight),
        international,
    )
    return rates

  async def create_shipment(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: str,
      label_format: str = "PDF",
      reference: Optional[str] = None,
  ) -> CarrierBooking:
    del packages, label_format  # Unused.
    seed = reference or f"{shipper.postal_code}:{recipient.postal_code}"
    digits = str(int(hashlib.sha256(seed.encode("utf-8")).hexdigest(), 16))
    carrier_tracking_number = "7489" + digits[:10]
    international = shipper.country_code != recipient.country_code
    estimated = self._clock() + datetime.timedelta(
        days=_transit_days(service_type, international)
    )
    logger.info(
        "Created mock %s shipment %s", self.name, carrier_tracking_number
    )
    return CarrierBooking(
        tracking_number=reference or carrier_tracking_number,
        carrier_tracking_number=carrier_tracking_number,
        estimated_delivery=to_iso(estimated),
    )

  async def track_shipment(self, tracking_number: str) -> TrackingResult:
    now = self._clock()
    day = datetime.timedelta(days=1)
    return TrackingResult(
        tracking_number=tracking_number,
        status="In Transit",
        estimated_delivery=to_iso(now + 2 * day),
        events=[
            TrackingEvent(
                timestamp=to_iso(now),
                status="IN_TRANSIT",
                description="In transit to destination",
                location="Memphis, TN",
            ),
            TrackingEvent(
                timestamp=to_iso(now - day),
                status="DEPARTED_FEDEX_LOCATION",
                description="Departed FedEx location",
                location="Indianapolis, IN",
            ),
            TrackingEvent(
                timestamp=to_iso(now - 2 * day),
                status="PICKED_UP",
                description="Picked up",
                location="Origin City",
            ),
        ],
    )

  async def cancel_shipment(self, tracking_number: str) -> bool:
    logger.info("Mock %s cancellation of %s", self.name, tracking_number)
    return True

  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    return parse_shipment_status_event(payload)
