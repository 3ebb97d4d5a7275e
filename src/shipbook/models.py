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

"""Request, response and integration models for the shipment booking server.

API models serialize with camelCase keys. Monetary amounts are `Decimal` in
major units inside the process and are rendered as JSON numbers.
"""

import datetime
from decimal import Decimal
from typing import Annotated
from typing import Any
from typing import Dict
from typing import List
from typing import Literal
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic import PlainSerializer
from pydantic.alias_generators import to_camel
from shipbook.enums import WebhookEventType

Money = Annotated[
    Decimal,
    PlainSerializer(float, return_type=float, when_used="json"),
]


class ApiModel(BaseModel):
  """Base model with camelCase aliases."""

  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Shipment request ---


class ShippingAddress(ApiModel):
  """A postal address of a shipper or recipient."""

  model_config = ConfigDict(
      alias_generator=to_camel, populate_by_name=True, frozen=True
  )

  name: str = Field(min_length=1)
  street_lines: List[str] = Field(min_length=1, max_length=3)
  city: str = Field(min_length=1)
  state_or_province: Optional[str] = None
  postal_code: str = Field(min_length=1)
  country_code: str
  phone: Optional[str] = None

  @field_validator("country_code")
  @classmethod
  def _normalize_country(cls, value: str) -> str:
    value = value.strip().upper()
    if len(value) != 2 or not value.isalpha():
      raise ValueError("country_code must be an ISO 3166-1 alpha-2 code")
    return value

  @field_validator("street_lines")
  @classmethod
  def _non_blank_lines(cls, value: List[str]) -> List[str]:
    if any(not line.strip() for line in value):
      raise ValueError("street lines must not be blank")
    return value


class Dimensions(ApiModel):
  length: Decimal = Field(gt=0)
  width: Decimal = Field(gt=0)
  height: Decimal = Field(gt=0)
  unit: Literal["IN", "CM"] = "CM"


class PackageDetails(ApiModel):
  """One package (or `count` identical packages) of a shipment."""

  weight: Decimal = Field(gt=0)
  weight_unit: Literal["LB", "KG"] = "KG"
  dimensions: Optional[Dimensions] = None
  package_type: str = "YOUR_PACKAGING"
  count: int = Field(default=1, ge=1)

  def weight_in_lb(self) -> Decimal:
    weight = self.weight
    if self.weight_unit == "KG":
      weight = weight * Decimal("2.20462")
    return weight * self.count


class ShipmentRequest(ApiModel):
  """A rate-shopping request."""

  shipper: ShippingAddress
  recipient: ShippingAddress
  packages: List[PackageDetails] = Field(min_length=1)
  service_type: Optional[str] = None
  carrier_code: Optional[str] = None
  ship_date: Optional[datetime.date] = None


# --- Carrier side ---


class CarrierRate(ApiModel):
  """A carrier's base rate for one service. Never shown to clients."""

  model_config = ConfigDict(
      alias_generator=to_camel, populate_by_name=True, frozen=True
  )

  carrier_code: str
  carrier_name: str
  service_type: str
  service_name: str
  currency: str
  base_rate: Money
  transit_days: Optional[int] = None
  estimated_delivery: Optional[str] = None


class PriceBreakdown(ApiModel):
  model_config = ConfigDict(
      alias_generator=to_camel, populate_by_name=True, frozen=True
  )

  base_rate: Money
  margin_percentage: Money
  margin_amount: Money
  final_price: Money


class RateQuoteOption(CarrierRate):
  """A carrier rate with the client's margin applied."""

  margin_percentage: Money
  margin_amount: Money
  final_price: Money


class AddressValidation(ApiModel):
  valid: bool
  resolved_addresses: List[Dict[str, Any]] = Field(default_factory=list)
  messages: List[str] = Field(default_factory=list)


class PostalCodeValidation(ApiModel):
  valid: bool
  location_description: Optional[str] = None
  state_or_province: Optional[str] = None


class ServiceAvailability(ApiModel):
  service_type: str
  service_name: str
  available: bool = True
  transit_days: Optional[int] = None


class CarrierBooking(ApiModel):
  """The carrier's confirmation of a booked shipment."""

  tracking_number: str
  carrier_tracking_number: str
  label_data: Optional[str] = None
  label_url: Optional[str] = None
  estimated_delivery: Optional[str] = None


class TrackingEvent(ApiModel):
  timestamp: str
  status: str
  description: str
  location: Optional[str] = None


class TrackingResult(ApiModel):
  tracking_number: str
  status: str
  events: List[TrackingEvent] = Field(default_factory=list)
  estimated_delivery: Optional[str] = None
  actual_delivery: Optional[str] = None


# --- Payment side ---


class PaymentResult(ApiModel):
  payment_id: str
  status: str
  transaction_url: Optional[str] = None


class Payment(ApiModel):
  payment_id: str
  status: str
  amount: int  # In minor units
  currency: str
  metadata: Dict[str, Any] = Field(default_factory=dict)


# --- Webhooks ---


class WebhookPayload(BaseModel):
  """A provider webhook reduced to what the reconciler acts on."""

  delivery_id: str
  event_type: WebhookEventType
  provider_event_type: str
  shipment_id: Optional[str] = None
  payment_id: Optional[str] = None
  tracking_number: Optional[str] = None
  status: Optional[str] = None
  occurred_at: Optional[str] = None
  data: Dict[str, Any] = Field(default_factory=dict)

  @field_validator(
      "provider_event_type",
      "shipment_id",
      "payment_id",
      "tracking_number",
      "status",
      mode="before",
  )
  @classmethod
  def _numbers_as_text(cls, value: Any) -> Any:
    # Providers send some identifiers as JSON numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
      return str(value)
    return value


class WebhookReceipt(ApiModel):
  received: bool = True
  event_id: str
  duplicate: bool = False


# --- HTTP API ---


class QuoteView(ApiModel):
  """A reserved quote as shown to the client."""

  quote_id: str
  carrier_code: str
  carrier_name: str
  service_type: str
  service_name: str
  currency: str
  price: Money
  transit_days: Optional[int] = None
  estimated_delivery: Optional[str] = None
  expires_at: str


class RatesResponse(ApiModel):
  quotes: List[QuoteView]
  expires_at: Optional[str] = None


class CheckoutRequest(ApiModel):
  quote_id: str = Field(min_length=1)


class CheckoutResponse(ApiModel):
  shipment_id: str
  tracking_number: str
  status: str
  payment_id: Optional[str] = None
  transaction_url: Optional[str] = None
  amount: Money
  currency: str


class ConfirmRequest(ApiModel):
  shipment_id: str = Field(min_length=1)
  payment_intent_id: Optional[str] = None


class ShipmentView(ApiModel):
  id: str
  tracking_number: str
  carrier_tracking_number: Optional[str] = None
  carrier_code: str
  carrier_name: str
  service_type: str
  service_name: str
  status: str
  payment_status: str
  payment_id: Optional[str] = None
  amount: Money
  currency: str
  label_url: Optional[str] = None
  estimated_delivery: Optional[str] = None
  actual_delivery: Optional[str] = None
  status_history: List[Dict[str, Any]] = Field(default_factory=list)
  created_at: str


class ConfirmResponse(ApiModel):
  shipment: ShipmentView
  carrier_tracking_number: str
  label_url: Optional[str] = None
  estimated_delivery: Optional[str] = None


class CancelResponse(ApiModel):
  shipment_id: str
  status: str
  cancelled: bool


class AddressValidationRequest(ApiModel):
  address: ShippingAddress
  carrier_code: Optional[str] = None


class PostalCodeRequest(ApiModel):
  postal_code: str = Field(min_length=1)
  country_code: str = Field(min_length=2, max_length=2)
  state_or_province: Optional[str] = None
  carrier_code: Optional[str] = None


class AvailabilityRequest(ApiModel):
  origin: ShippingAddress
  destination: ShippingAddress
  ship_date: Optional[datetime.date] = None
  carrier_code: Optional[str] = None


class PaymentCallbackResponse(ApiModel):
  shipment_id: str
  status: str
  payment_status: str
  carrier_tracking_number: Optional[str] = None


class RetrySweepResponse(ApiModel):
  attempted: int
  processed: int
  flagged_for_review: int


class IntegrationLogView(ApiModel):
  id: int
  service: str
  operation: str
  request_payload: Optional[str] = None
  response_payload: Optional[str] = None
  status_code: int
  duration_ms: int
  success: bool
  error_message: Optional[str] = None
  timestamp: str


class WebhookEventView(ApiModel):
  id: str
  source: str
  delivery_id: Optional[str] = None
  event_type: str
  processed: bool
  processed_at: Optional[str] = None
  error_message: Optional[str] = None
  retry_count: int
  needs_review: bool
  created_at: str
