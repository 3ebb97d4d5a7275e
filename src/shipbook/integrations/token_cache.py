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

"""In-memory OAuth access token cache with single-flight refresh."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

TOKEN_SAFETY_MARGIN_SECONDS = 60


class TokenCache:
  """Caches one bearer token until shortly before it expires.

  Concurrent callers that find the token missing or expired wait on a single
  refresh instead of each requesting a new token.
  """

  def __init__(
      self,
      fetch: Callable[[], Awaitable[Tuple[str, int]]],
      safety_margin: float = TOKEN_SAFETY_MARGIN_SECONDS,
      clock: Callable[[], float] = time.monotonic,
  ):
    """Initializes the cache.

    Args:
      fetch: Coroutine returning `(access_token, expires_in_seconds)`.
      safety_margin: Seconds before the provider's expiry at which the token
        is treated as expired.
      clock: Monotonic clock in seconds.
    """
    self._fetch = fetch
    self._safety_margin = safety_margin
    self._clock = clock
    self._lock = asyncio.Lock()
    self._token: Optional[str] = None
    self._expires_at = 0.0

  def _is_fresh(self) -> bool:
    return self._token is not None and self._clock() < self._expires_at

  async def get(self) -> str:
    if self._is_fresh():
      return self._token
    async with self._lock:
      # Another waiter may have refreshed while we queued.
      if self._is_fresh():
        return self._token
      issued_at = self._clock()
      token, expires_in = await self._fetch()
      self._token = token
      self._expires_at = issued_at + expires_in - self._safety_margin
      logger.info("Refreshed access token, valid for %ss", expires_in)
      return token

  def invalidate(self) -> None:
    self._token = None
    self._expires_at = 0.0
