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

"""Stripe payment intents gateway over the Stripe REST API."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from shipbook.enums import WebhookEventType
from shipbook.exceptions import ProviderBadResponseError
from shipbook.exceptions import ProviderNotConfiguredError
from shipbook.exceptions import ProviderRequestError
from shipbook.integrations.payments.base import classify_payment_status
from shipbook.integrations.payments.base import payment_object
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.integrations.payments.base import shipment_reference
from shipbook.integrations.signing import payload_digest
from shipbook.integrations.transport import IntegrationTransport
from shipbook.models import Payment
from shipbook.models import PaymentResult
from shipbook.models import WebhookPayload
from shipbook.services.integration_logger import IntegrationLogger
import stripe

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
SIGNATURE_TOLERANCE_SECONDS = 300

_EVENT_TYPES = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "payment_intent.canceled": WebhookEventType.PAYMENT_FAILED,
}


def _form_metadata(metadata: Dict[str, str]) -> Dict[str, str]:
  return {f"metadata[{key}]": str(value) for key, value in metadata.items()}


class StripeGateway(PaymentGateway):
  """Live Stripe gateway using payment intents."""

  name = "stripe"
  signature_header = "stripe-signature"

  def __init__(
      self,
      secret_key: Optional[str],
      integration_logger: IntegrationLogger,
      webhook_secret: Optional[str] = None,
      base_url: str = STRIPE_API_BASE,
      timeout: float = 30.0,
      base_delay: float = 1.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
      sleep: Optional[Callable[[float], Awaitable[None]]] = None,
  ):
    self._secret_key = secret_key
    self._webhook_secret = webhook_secret
    self._http = IntegrationTransport(
        self.name,
        base_url,
        integration_logger,
        timeout=timeout,
        base_delay=base_delay,
        transport=transport,
        sleep=sleep or asyncio.sleep,
    )

  @property
  def webhook_secret(self) -> Optional[str]:
    return self._webhook_secret

  def is_configured(self) -> bool:
    return bool(self._secret_key)

  def _headers(self) -> Dict[str, str]:
    if not self.is_configured():
      raise ProviderNotConfiguredError(self.name)
    return {"Authorization": f"Bearer {self._secret_key}"}

  async def create_payment(
      self,
      amount: int,
      currency: str,
      description: str,
      callback_url: str,
      metadata: Dict[str, str],
  ) -> PaymentResult:
    del callback_url  # Stripe confirms client-side; no redirect URL.
    form = {
        "amount": str(amount),
        "currency": currency.lower(),
        "description": description,
        **_form_metadata(metadata),
    }
    response = await self._http.request(
        "POST", "/payment_intents", data=form, headers=self._headers()
    )
    intent = payment_object(response, self.name, "create_payment")
    if not intent.get("status"):
      raise ProviderBadResponseError(self.name, "create_payment")
    return PaymentResult(payment_id=str(intent["id"]), status=intent["status"])

  async def get_payment(self, payment_id: str) -> Optional[Payment]:
    try:
      response = await self._http.request(
          "GET", f"/payment_intents/{payment_id}", headers=self._headers()
      )
    except ProviderRequestError as e:
      if e.provider_status == 404:
        return None
      raise
    intent = payment_object(response, self.name, "get_payment")
    return Payment(
        payment_id=str(intent["id"]),
        status=intent.get("status", "unknown"),
        amount=int(intent.get("amount", 0)),
        currency=(intent.get("currency") or "").upper(),
        metadata=intent.get("metadata") or {},
    )

  async def refund_payment(
      self, payment_id: str, amount: Optional[int] = None
  ) -> bool:
    form = {"payment_intent": payment_id}
    if amount:
      form["amount"] = str(amount)
    try:
      await self._http.request(
          "POST", "/refunds", data=form, headers=self._headers()
      )
    except ProviderRequestError as e:
      logger.error(
          "Stripe refused refund of %s (HTTP %s)", payment_id, e.provider_status
      )
      return False
    return True

  def validate_webhook_signature(
      self, payload: bytes, signature: Optional[str]
  ) -> bool:
    """Verifies Stripe's `t=timestamp,v1=signature` header.

    Timestamps older than `SIGNATURE_TOLERANCE_SECONDS` are rejected to limit
    replays.
    """
    if not self.webhook_secret:
      return True
    if not signature:
      return False
    try:
      stripe.WebhookSignature.verify_header(
          payload.decode("utf-8"),
          signature,
          self.webhook_secret,
          tolerance=SIGNATURE_TOLERANCE_SECONDS,
      )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
      logger.warning("Stripe signature rejected: %s", e)
      return False
    return True

  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    provider_event_type = payload.get("type") or "unknown"
    intent = (payload.get("data") or {}).get("object") or {}
    status = intent.get("status")
    event_type = _EVENT_TYPES.get(provider_event_type)
    if event_type is None:
      event_type = classify_payment_status(status)
    return WebhookPayload(
        delivery_id=str(payload.get("id") or payload_digest(payload)),
        event_type=event_type,
        provider_event_type=provider_event_type,
        payment_id=intent.get("id"),
        shipment_id=shipment_reference(intent.get("metadata")),
        status=status,
        data=payload,
    )
