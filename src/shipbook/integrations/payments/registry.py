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

"""Builds the active payment gateway from settings."""

import logging
from typing import Optional

import httpx
from shipbook.config import Settings
from shipbook.exceptions import ValidationError
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.integrations.payments.fallback import FallbackPaymentGateway
from shipbook.integrations.payments.mock import MockPaymentGateway
from shipbook.integrations.payments.moyasar import MoyasarGateway
from shipbook.integrations.payments.stripe_gateway import StripeGateway
from shipbook.services.integration_logger import IntegrationLogger

logger = logging.getLogger(__name__)


def build_payment_gateway(
    settings: Settings,
    integration_logger: IntegrationLogger,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentGateway:
  """Returns the gateway named by `settings.payment_provider`."""
  provider = settings.payment_provider.lower()
  if provider == "moyasar":
    live = MoyasarGateway(
        secret_key=settings.moyasar_secret_key,
        integration_logger=integration_logger,
        publishable_key=settings.moyasar_publishable_key,
        webhook_secret=settings.moyasar_webhook_secret,
        timeout=settings.request_timeout,
        base_delay=settings.retry_base_delay,
        transport=transport,
    )
    mock = MockPaymentGateway(name="moyasar")
  elif provider == "stripe":
    live = StripeGateway(
        secret_key=settings.stripe_secret_key,
        integration_logger=integration_logger,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.request_timeout,
        base_delay=settings.retry_base_delay,
        transport=transport,
    )
    mock = MockPaymentGateway(
        name="stripe", prefix="pi_mock_", success_status="succeeded"
    )
  else:
    raise ValidationError(f"Unsupported payment provider: {provider}")

  logger.info(
      "Payment provider: %s - configured: %s, mock fallback: %s",
      provider,
      live.is_configured(),
      settings.allow_mock_fallback,
  )
  return FallbackPaymentGateway(
      live, mock=mock, allow_mock_fallback=settings.allow_mock_fallback
  )
