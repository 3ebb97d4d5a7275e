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

"""Selects between a live payment gateway and the mock.

A configured gateway is always used. Without credentials every call goes to
the mock when `allow_mock_fallback` is set and otherwise fails with
`ProviderNotConfiguredError`.
"""

import logging
from typing import Any, Dict, Optional

from shipbook.exceptions import ProviderNotConfiguredError
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.integrations.payments.mock import MockPaymentGateway
from shipbook.models import Payment
from shipbook.models import PaymentResult
from shipbook.models import WebhookPayload

logger = logging.getLogger(__name__)


class FallbackPaymentGateway(PaymentGateway):
  """Wraps a live payment gateway with mock fallback rules."""

  def __init__(
      self,
      live: PaymentGateway,
      mock: Optional[PaymentGateway] = None,
      allow_mock_fallback: bool = False,
  ):
    self.live = live
    self.mock = mock or MockPaymentGateway(name=live.name)
    self.allow_mock_fallback = allow_mock_fallback
    self.name = live.name
    self.signature_header = live.signature_header

  @property
  def webhook_secret(self) -> Optional[str]:
    return self.live.webhook_secret

  def is_configured(self) -> bool:
    return self.live.is_configured()

  def _gateway(self) -> PaymentGateway:
    if self.live.is_configured():
      return self.live
    if self.allow_mock_fallback:
      logger.warning("%s not configured, using mock payments", self.name)
      return self.mock
    raise ProviderNotConfiguredError(self.name)

  async def create_payment(
      self,
      amount: int,
      currency: str,
      description: str,
      callback_url: str,
      metadata: Dict[str, str],
  ) -> PaymentResult:
    return await self._gateway().create_payment(
        amount, currency, description, callback_url, metadata
    )

  async def get_payment(self, payment_id: str) -> Optional[Payment]:
    return await self._gateway().get_payment(payment_id)

  async def verify_payment(self, payment_id: str) -> str:
    return await self._gateway().verify_payment(payment_id)

  async def refund_payment(
      self, payment_id: str, amount: Optional[int] = None
  ) -> bool:
    return await self._gateway().refund_payment(payment_id, amount)

  def validate_webhook_signature(
      self, payload: bytes, signature: Optional[str]
  ) -> bool:
    return self.live.validate_webhook_signature(payload, signature)

  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    return self.live.parse_webhook(payload)
