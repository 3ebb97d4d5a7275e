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

"""In-memory payment gateway for local runs and tests."""

import logging
import secrets
from typing import Any, Dict, Optional

from shipbook.integrations.payments.base import parse_payment_event
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.models import Payment
from shipbook.models import PaymentResult
from shipbook.models import WebhookPayload

logger = logging.getLogger(__name__)


class MockPaymentGateway(PaymentGateway):
  """Creates synthetic payments that verify with `success_status`.

  Tests can move an individual payment to another status with `set_status`.
  """

  signature_header = "x-moyasar-signature"

  def __init__(
      self,
      name: str = "moyasar",
      prefix: str = "mpy_mock_",
      success_status: str = "paid",
  ):
    self.name = name
    self.prefix = prefix
    self.success_status = success_status
    self.payments: Dict[str, Payment] = {}
    self.refunds: Dict[str, Optional[int]] = {}

  def is_configured(self) -> bool:
    return True

  async def create_payment(
      self,
      amount: int,
      currency: str,
      description: str,
      callback_url: str,
      metadata: Dict[str, str],
  ) -> PaymentResult:
    del description  # Unused.
    payment_id = self.prefix + secrets.token_hex(8)
    self.payments[payment_id] = Payment(
        payment_id=payment_id,
        status=self.success_status,
        amount=amount,
        currency=currency,
        metadata=dict(metadata),
    )
    logger.info(
        "Created mock payment %s for %s %s", payment_id, amount, currency
    )
    return PaymentResult(
        payment_id=payment_id,
        status="initiated",
        transaction_url=f"{callback_url}?id={payment_id}&status=paid",
    )

  async def get_payment(self, payment_id: str) -> Optional[Payment]:
    payment = self.payments.get(payment_id)
    if payment is None and payment_id.startswith(self.prefix):
      # Payments created before a restart verify as successful.
      payment = Payment(
          payment_id=payment_id,
          status=self.success_status,
          amount=0,
          currency="",
      )
    return payment

  def set_status(self, payment_id: str, status: str) -> None:
    payment = self.payments[payment_id]
    self.payments[payment_id] = payment.model_copy(update={"status": status})

  async def refund_payment(
      self, payment_id: str, amount: Optional[int] = None
  ) -> bool:
    self.refunds[payment_id] = amount
    logger.info("Mock refund of %s", payment_id)
    return True

  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    return parse_payment_event(payload)
