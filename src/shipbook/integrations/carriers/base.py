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

"""Carrier adapter interface."""

import abc
import datetime
from typing import Any, Dict, List, Optional

from shipbook.enums import WebhookEventType
from shipbook.integrations.signing import payload_digest
from shipbook.integrations.signing import verify_hex_signature
from shipbook.models import AddressValidation
from shipbook.models import CarrierBooking
from shipbook.models import CarrierRate
from shipbook.models import PackageDetails
from shipbook.models import PostalCodeValidation
from shipbook.models import ServiceAvailability
from shipbook.models import ShippingAddress
from shipbook.models import TrackingResult
from shipbook.models import WebhookPayload


class CarrierAdapter(abc.ABC):
  """Uniform contract over one shipping carrier."""

  name: str = ""
  carrier_code: str = ""
  signature_header: str = "x-signature"

  @property
  def webhook_secret(self) -> Optional[str]:
    """Secret used to sign this carrier's webhooks, if any."""
    return None

  @abc.abstractmethod
  def is_configured(self) -> bool:
    """Returns True iff all required credentials are present."""

  @abc.abstractmethod
  async def validate_address(
      self, address: ShippingAddress
  ) -> AddressValidation:
    """Resolves an address against the carrier's address book."""

  @abc.abstractmethod
  async def validate_postal_code(
      self,
      postal_code: str,
      country_code: str,
      state_or_province: Optional[str] = None,
  ) -> PostalCodeValidation:
    """Checks that a postal code exists in a country."""

  @abc.abstractmethod
  async def check_service_availability(
      self,
      origin: ShippingAddress,
      destination: ShippingAddress,
      ship_date: Optional[datetime.date] = None,
  ) -> List[ServiceAvailability]:
    """Lists the services offered between two addresses."""

  @abc.abstractmethod
  async def get_rates(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: Optional[str] = None,
  ) -> List[CarrierRate]:
    """Quotes carrier-side base rates. No margin is applied here."""

  @abc.abstractmethod
  async def create_shipment(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: str,
      label_format: str = "PDF",
      reference: Optional[str] = None,
  ) -> CarrierBooking:
    """Books a shipment and returns the carrier's tracking number.

    Args:
      shipper: Origin address.
      recipient: Destination address.
      packages: The packages to ship.
      service_type: The carrier service code chosen at quoting time.
      label_format: PDF, PNG or ZPL.
      reference: Our local tracking number, passed to the carrier as the
        customer reference.

    Returns:
      The booking confirmation.
    """

  @abc.abstractmethod
  async def track_shipment(self, tracking_number: str) -> TrackingResult:
    """Fetches tracking events for a carrier tracking number."""

  @abc.abstractmethod
  async def cancel_shipment(self, tracking_number: str) -> bool:
    """Cancels a booked shipment."""

  def validate_webhook_signature(
      self, payload: bytes, signature: Optional[str]
  ) -> bool:
    """Verifies an HMAC-SHA256 hex signature of the raw webhook body."""
    if not self.webhook_secret:
      return True
    return verify_hex_signature(self.webhook_secret, payload, signature)

  @abc.abstractmethod
  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    """Reduces a decoded webhook body to a WebhookPayload."""


def parse_shipment_status_event(payload: Dict[str, Any]) -> WebhookPayload:
  """Parses the `shipment.status_update` webhook shape used by FedEx."""
  provider_event_type = payload.get("eventType") or "unknown"
  event_type = WebhookEventType.UNKNOWN
  if provider_event_type == "shipment.status_update":
    event_type = WebhookEventType.TRACKING_UPDATE
  return WebhookPayload(
      delivery_id=str(payload.get("eventId") or payload_digest(payload)),
      event_type=event_type,
      provider_event_type=provider_event_type,
      tracking_number=payload.get("trackingNumber"),
      status=payload.get("status"),
      occurred_at=payload.get("deliveryDate") or payload.get("timestamp"),
      data=payload,
  )
