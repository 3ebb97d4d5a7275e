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

"""Payment gateway interface."""

import abc
import logging
from typing import Any, Dict, Optional

import httpx
from shipbook.enums import PAYMENT_FAILURE_STATUSES
from shipbook.enums import PAYMENT_SUCCESS_STATUSES
from shipbook.enums import WebhookEventType
from shipbook.exceptions import ProviderBadResponseError
from shipbook.integrations.signing import payload_digest
from shipbook.integrations.signing import verify_hex_signature
from shipbook.models import Payment
from shipbook.models import PaymentResult
from shipbook.models import WebhookPayload

logger = logging.getLogger(__name__)


def classify_payment_status(status: Optional[str]) -> WebhookEventType:
  if status in PAYMENT_SUCCESS_STATUSES:
    return WebhookEventType.PAYMENT_SUCCEEDED
  if status in PAYMENT_FAILURE_STATUSES:
    return WebhookEventType.PAYMENT_FAILED
  return WebhookEventType.UNKNOWN


def payment_object(
    response: httpx.Response, service: str, operation: str
) -> Dict[str, Any]:
  """Decodes a provider response that must be a payment object with an id."""
  try:
    body = response.json()
  except ValueError as e:
    raise ProviderBadResponseError(service, operation) from e
  if not isinstance(body, dict) or not body.get("id"):
    logger.error("Unexpected %s response to %s", service, operation)
    raise ProviderBadResponseError(service, operation)
  return body


def shipment_reference(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
  """Reads the shipment id we attach to every payment's metadata."""
  if not metadata:
    return None
  return metadata.get("shipment_id") or metadata.get("shipmentId")


class PaymentGateway(abc.ABC):
  """Uniform contract over one payment processor.

  Amounts are always in the currency's smallest unit.
  """

  name: str = ""
  signature_header: str = "x-signature"

  @property
  def webhook_secret(self) -> Optional[str]:
    return None

  @abc.abstractmethod
  def is_configured(self) -> bool:
    """Returns True iff the gateway has credentials."""

  @abc.abstractmethod
  async def create_payment(
      self,
      amount: int,
      currency: str,
      description: str,
      callback_url: str,
      metadata: Dict[str, str],
  ) -> PaymentResult:
    """Creates a payment and returns its id and any redirect URL."""

  @abc.abstractmethod
  async def get_payment(self, payment_id: str) -> Optional[Payment]:
    """Fetches a payment, or None if the provider does not know it."""

  async def verify_payment(self, payment_id: str) -> str:
    """Returns the provider's authoritative status for a payment."""
    payment = await self.get_payment(payment_id)
    return payment.status if payment else "unknown"

  @abc.abstractmethod
  async def refund_payment(
      self, payment_id: str, amount: Optional[int] = None
  ) -> bool:
    """Refunds a payment in full, or `amount` of it."""

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


def parse_payment_event(payload: Dict[str, Any]) -> WebhookPayload:
  """Parses a payment webhook carrying the payment object.

  The payment is either the body itself or nested under `data`, as Moyasar
  sends it.
  """
  payment = payload.get("data")
  if not isinstance(payment, dict):
    payment = payload
  payment_id = payment.get("id")
  status = payment.get("status")
  if "data" in payload and payload.get("id"):
    delivery_id = str(payload["id"])
  else:
    delivery_id = payload_digest(payload)
  return WebhookPayload(
      delivery_id=delivery_id,
      event_type=classify_payment_status(status),
      provider_event_type=payload.get("type") or f"payment_{status}",
      payment_id=payment_id,
      shipment_id=shipment_reference(payment.get("metadata")),
      status=status,
      occurred_at=payment.get("updated_at") or payload.get("created_at"),
      data=payload,
  )
