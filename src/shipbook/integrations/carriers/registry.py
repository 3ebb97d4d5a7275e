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

"""Closed registry of carrier adapters keyed by carrier code."""

import logging
from typing import Dict, List, Optional

import httpx
from shipbook.config import Settings
from shipbook.exceptions import ValidationError
from shipbook.integrations.carriers.base import CarrierAdapter
from shipbook.integrations.carriers.fallback import FallbackCarrierAdapter
from shipbook.integrations.carriers.fedex import FedExAdapter
from shipbook.services.integration_logger import IntegrationLogger

logger = logging.getLogger(__name__)


class CarrierRegistry:
  """Maps carrier codes to adapters."""

  def __init__(self, adapters: List[CarrierAdapter], default_code: str):
    self._adapters: Dict[str, CarrierAdapter] = {}
    for adapter in adapters:
      code = adapter.carrier_code.upper()
      self._adapters[code] = adapter
      logger.info(
          "Registered carrier adapter: %s (%s) - configured: %s",
          adapter.name,
          code,
          adapter.is_configured(),
      )
    if default_code.upper() not in self._adapters:
      raise ValueError(f"Default carrier {default_code} is not registered")
    self._default_code = default_code.upper()

  def get(self, carrier_code: Optional[str] = None) -> CarrierAdapter:
    if not carrier_code:
      return self.default()
    adapter = self._adapters.get(carrier_code.upper())
    if adapter is None:
      raise ValidationError(f"Carrier not supported: {carrier_code}")
    return adapter

  def find(self, carrier_code: str) -> Optional[CarrierAdapter]:
    return self._adapters.get(carrier_code.upper())

  def default(self) -> CarrierAdapter:
    return self._adapters[self._default_code]

  def supported(self) -> List[str]:
    return list(self._adapters)


def build_carrier_registry(
    settings: Settings,
    integration_logger: IntegrationLogger,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CarrierRegistry:
  """Builds the registry once at startup from the resolved settings."""
  fedex = FedExAdapter(
      client_id=settings.fedex_client_id,
      client_secret=settings.fedex_client_secret,
      account_number=settings.fedex_account_number,
      integration_logger=integration_logger,
      base_url=settings.fedex_base_url,
      webhook_secret=settings.fedex_webhook_secret,
      timeout=settings.request_timeout,
      base_delay=settings.retry_base_delay,
      transport=transport,
  )
  return CarrierRegistry(
      [
          FallbackCarrierAdapter(
              fedex, allow_mock_fallback=settings.allow_mock_fallback
          )
      ],
      default_code=fedex.carrier_code,
  )
