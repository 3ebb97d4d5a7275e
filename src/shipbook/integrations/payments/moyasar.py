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

"""Moyasar payment gateway.

Moyasar authenticates with HTTP Basic auth (secret key as username, empty
password) and is redirect based: a created payment carries a
`transaction_url` the customer is sent to, after which Moyasar redirects back
to our callback URL.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from shipbook.exceptions import ProviderNotConfiguredError
from shipbook.exceptions import ProviderRequestError
from shipbook.integrations.payments.base import parse_payment_event
from shipbook.integrations.payments.base import payment_object
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.integrations.transport import IntegrationTransport
from shipbook.models import Payment
from shipbook.models import PaymentResult
from shipbook.models import WebhookPayload
from shipbook.services.integration_logger import IntegrationLogger

logger = logging.getLogger(__name__)

MOYASAR_API_BASE = "https://api.moyasar.com/v1"


class MoyasarGateway(PaymentGateway):
  """Live Moyasar gateway."""

  name = "moyasar"
  signature_header = "x-moyasar-signature"

  def __init__(
      self,
      secret_key: Optional[str],
      integration_logger: IntegrationLogger,
      publishable_key: Optional[str] = None,
      webhook_secret: Optional[str] = None,
      base_url: str = MOYASAR_API_BASE,
      timeout: float = 30.0,
      base_delay: float = 1.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
      sleep: Optional[Callable[[float], Awaitable[None]]] = None,
  ):
    self._secret_key = secret_key
    self.publishable_key = publishable_key
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

  def _auth(self) -> httpx.BasicAuth:
    if not self.is_configured():
      raise ProviderNotConfiguredError(self.name)
    return httpx.BasicAuth(self._secret_key, "")

  async def create_payment(
      self,
      amount: int,
      currency: str,
      description: str,
      callback_url: str,
      metadata: Dict[str, str],
  ) -> PaymentResult:
    response = await self._http.request(
        "POST",
        "/payments",
        json={
            "amount": amount,
            "currency": currency,
            "description": description,
            "callback_url": callback_url,
            "metadata": metadata,
            "source": {"type": "creditcard", "3ds": True},
        },
        auth=self._auth(),
    )
    payment = payment_object(response, self.name, "create_payment")
    return PaymentResult(
        payment_id=str(payment["id"]),
        status=payment.get("status", "initiated"),
        transaction_url=(payment.get("source") or {}).get("transaction_url"),
    )

  async def get_payment(self, payment_id: str) -> Optional[Payment]:
    try:
      response = await self._http.request(
          "GET", f"/payments/{payment_id}", auth=self._auth()
      )
    except ProviderRequestError as e:
      if e.provider_status == 404:
        return None
      raise
    payment = payment_object(response, self.name, "get_payment")
    return Payment(
        payment_id=str(payment["id"]),
        status=payment.get("status", "unknown"),
        amount=int(payment.get("amount", 0)),
        currency=payment.get("currency", ""),
        metadata=payment.get("metadata") or {},
    )

  async def refund_payment(
      self, payment_id: str, amount: Optional[int] = None
  ) -> bool:
    try:
      await self._http.request(
          "POST",
          f"/payments/{payment_id}/refund",
          json={"amount": amount} if amount else None,
          auth=self._auth(),
      )
    except ProviderRequestError as e:
      logger.error(
          "Moyasar refused refund of %s (HTTP %s)",
          payment_id,
          e.provider_status,
      )
      return False
    return True

  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    return parse_payment_event(payload)
