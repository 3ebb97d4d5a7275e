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

"""HTTP transport shared by the carrier and payment adapters.

Each call is attempted up to `MAX_RETRIES` times by tenacity. Server errors,
rate limiting, timeouts and connection failures are retried with a linear
backoff; any other 4xx is raised immediately as `ProviderRequestError`. Every
attempt, failed or not, is written to the integration log.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from shipbook.exceptions import ProviderRequestError
from shipbook.exceptions import ProviderUnavailableError
from shipbook.exceptions import TransientProviderError
from shipbook.services.integration_logger import IntegrationLogger
from tenacity import AsyncRetrying
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_incrementing

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0
DEFAULT_TIMEOUT = 30.0


def _is_retryable(status_code: int) -> bool:
  return status_code >= 500 or status_code == 429


def _response_body(response: httpx.Response) -> Any:
  try:
    return response.json()
  except ValueError:
    return response.text


class IntegrationTransport:
  """Retrying, logging HTTP client for one external service."""

  def __init__(
      self,
      service: str,
      base_url: str,
      integration_logger: IntegrationLogger,
      timeout: float = DEFAULT_TIMEOUT,
      max_retries: int = MAX_RETRIES,
      base_delay: float = RETRY_BASE_DELAY,
      transport: Optional[httpx.AsyncBaseTransport] = None,
      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ):
    self.service = service
    self.base_url = base_url.rstrip("/")
    self.integration_logger = integration_logger
    self.timeout = timeout
    self.max_retries = max_retries
    self.base_delay = base_delay
    self._transport = transport
    self._sleep = sleep

  async def request(
      self,
      method: str,
      path: str,
      *,
      json: Optional[Any] = None,
      data: Optional[Dict[str, Any]] = None,
      params: Optional[Dict[str, Any]] = None,
      headers: Optional[Dict[str, str]] = None,
      auth: Optional[httpx.Auth] = None,
  ) -> httpx.Response:
    """Sends a request, retrying transient failures.

    Args:
      method: The HTTP method.
      path: The path relative to the service's base URL.
      json: A JSON request body.
      data: A form-encoded request body.
      params: Query parameters.
      headers: Extra request headers.
      auth: httpx authentication for the request.

    Returns:
      The first successful (2xx/3xx) response.

    Raises:
      ProviderRequestError: The provider rejected the request with a 4xx.
      ProviderUnavailableError: Every attempt failed transiently.
    """
    operation = f"{method.upper()} {path}"
    logged_request = json if json is not None else (data or params)
    retrying = AsyncRetrying(
        stop=stop_after_attempt(self.max_retries),
        wait=wait_incrementing(
            start=self.base_delay, increment=self.base_delay
        ),
        retry=retry_if_exception_type(TransientProviderError),
        sleep=self._sleep,
        reraise=True,
    )
    try:
      async for attempt in retrying:
        with attempt:
          response = await self._attempt(
              attempt.retry_state.attempt_number,
              method,
              path,
              operation,
              logged_request,
              json=json,
              data=data,
              params=params,
              headers=headers,
              auth=auth,
          )
    except TransientProviderError as e:
      logger.error(
          "%s %s unavailable after %d attempts",
          self.service,
          operation,
          self.max_retries,
      )
      raise ProviderUnavailableError(self.service, e.provider_status) from e
    return response

  async def _attempt(
      self,
      attempt: int,
      method: str,
      path: str,
      operation: str,
      logged_request: Any,
      **kwargs: Any,
  ) -> httpx.Response:
    """Sends one attempt and writes it to the integration log."""
    started = time.monotonic()
    try:
      async with httpx.AsyncClient(
          transport=self._transport, timeout=self.timeout
      ) as client:
        response = await client.request(
            method, f"{self.base_url}{path}", **kwargs
        )
    except httpx.TransportError as e:
      await self.integration_logger.record(
          self.service,
          operation,
          request_payload=logged_request,
          status_code=0,
          duration_ms=int((time.monotonic() - started) * 1000),
          success=False,
          error_message=f"attempt {attempt}: {type(e).__name__}: {e}",
      )
      raise TransientProviderError(self.service) from e

    status = response.status_code
    success = status < 400
    await self.integration_logger.record(
        self.service,
        operation,
        request_payload=logged_request,
        response_payload=_response_body(response),
        status_code=status,
        duration_ms=int((time.monotonic() - started) * 1000),
        success=success,
        error_message=None if success else f"attempt {attempt}: HTTP {status}",
    )
    if success:
      return response
    if _is_retryable(status):
      raise TransientProviderError(self.service, status)
    raise ProviderRequestError(self.service, status)
