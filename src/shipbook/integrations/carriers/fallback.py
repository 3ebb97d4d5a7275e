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

"""Selects between a live carrier and its offline mock.

Read-style calls (rates, address and postal code checks, service
availability) are served by the mock when the live carrier has no
credentials, and also when it is configured but unavailable after retries.

Calls that book or cancel a shipment never fall back once credentials are
configured. Without credentials they use the mock only when
`allow_mock_fallback` is set, and otherwise fail with
`ProviderNotConfiguredError`. Tracking uses the mock only without
credentials, so a live shipment is never shown synthetic scan events.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional

from shipbook.exceptions import ProviderNotConfiguredError
from shipbook.exceptions import ProviderUnavailableError
from shipbook.integrations.carriers.base import CarrierAdapter
from shipbook.integrations.carriers.mock import MockCarrierAdapter
from shipbook.models import AddressValidation
from shipbook.models import CarrierBooking
from shipbook.models import CarrierRate
from shipbook.models import PackageDetails
from shipbook.models import PostalCodeValidation
from shipbook.models import ServiceAvailability
from shipbook.models import ShippingAddress
from shipbook.models import TrackingResult
from shipbook.models import WebhookPayload

logger = logging.getLogger(__name__)


class FallbackCarrierAdapter(CarrierAdapter):
  """Wraps a live carrier adapter with mock fallback rules."""

  def __init__(
      self,
      live: CarrierAdapter,
      mock: Optional[CarrierAdapter] = None,
      allow_mock_fallback: bool = False,
  ):
    self.live = live
    self.mock = mock or MockCarrierAdapter(live.carrier_code, live.name)
    self.allow_mock_fallback = allow_mock_fallback
    self.name = live.name
    self.carrier_code = live.carrier_code
    self.signature_header = live.signature_header

  @property
  def webhook_secret(self) -> Optional[str]:
    return self.live.webhook_secret

  def is_configured(self) -> bool:
    return self.live.is_configured()

  async def _read(self, operation: str, *args: Any) -> Any:
    if not self.live.is_configured():
      logger.info("%s not configured, using mock %s", self.name, operation)
      return await getattr(self.mock, operation)(*args)
    try:
      return await getattr(self.live, operation)(*args)
    except ProviderUnavailableError:
      logger.warning("%s unavailable, using mock %s", self.name, operation)
      return await getattr(self.mock, operation)(*args)

  def _booking_adapter(self) -> CarrierAdapter:
    if self.live.is_configured():
      return self.live
    if self.allow_mock_fallback:
      logger.warning("%s not configured, booking against mock", self.name)
      return self.mock
    raise ProviderNotConfiguredError(self.live.carrier_code.lower())

  async def validate_address(
      self, address: ShippingAddress
  ) -> AddressValidation:
    return await self._read("validate_address", address)

  async def validate_postal_code(
      self,
      postal_code: str,
      country_code: str,
      state_or_province: Optional[str] = None,
  ) -> PostalCodeValidation:
    return await self._read(
        "validate_postal_code", postal_code, country_code, state_or_province
    )

  async def check_service_availability(
      self,
      origin: ShippingAddress,
      destination: ShippingAddress,
      ship_date: Optional[datetime.date] = None,
  ) -> List[ServiceAvailability]:
    return await self._read(
        "check_service_availability", origin, destination, ship_date
    )

  async def get_rates(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: Optional[str] = None,
  ) -> List[CarrierRate]:
    return await self._read(
        "get_rates", shipper, recipient, packages, service_type
    )

  async def create_shipment(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: str,
      label_format: str = "PDF",
      reference: Optional[str] = None,
  ) -> CarrierBooking:
    adapter = self._booking_adapter()
    return await adapter.create_shipment(
        shipper, recipient, packages, service_type, label_format, reference
    )

  async def track_shipment(self, tracking_number: str) -> TrackingResult:
    if self.live.is_configured():
      return await self.live.track_shipment(tracking_number)
    return await self.mock.track_shipment(tracking_number)

  async def cancel_shipment(self, tracking_number: str) -> bool:
    return await self._booking_adapter().cancel_shipment(tracking_number)

  def validate_webhook_signature(
      self, payload: bytes, signature: Optional[str]
  ) -> bool:
    return self.live.validate_webhook_signature(payload, signature)

  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    return self.live.parse_webhook(payload)
