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

"""Tests for the OAuth token cache."""

import asyncio

from absl.testing import absltest
from shipbook.integrations.token_cache import TokenCache


class TokenCacheTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.now = 1000.0
    self.fetches = 0

  def _clock(self) -> float:
    return self.now

  async def _fetch(self):
    self.fetches += 1
    # Yield so that concurrent callers pile up behind the refresh.
    await asyncio.sleep(0.01)
    return f"token-{self.fetches}", 3600

  def test_concurrent_callers_share_one_refresh(self) -> None:
    cache = TokenCache(self._fetch, clock=self._clock)

    async def scenario():
      return await asyncio.gather(*(cache.get() for _ in range(10)))

    tokens = asyncio.run(scenario())
    self.assertEqual(set(tokens), {"token-1"})
    self.assertEqual(self.fetches, 1)

  def test_refreshes_before_expiry(self) -> None:
    cache = TokenCache(self._fetch, safety_margin=60, clock=self._clock)

    async def scenario() -> None:
      self.assertEqual(await cache.get(), "token-1")
      self.now += 3539
      self.assertEqual(await cache.get(), "token-1")
      self.now += 1
      self.assertEqual(await cache.get(), "token-2")

    asyncio.run(scenario())
    self.assertEqual(self.fetches, 2)

  def test_invalidate_forces_refresh(self) -> None:
    cache = TokenCache(self._fetch, clock=self._clock)

    async def scenario() -> None:
      await cache.get()
      cache.invalidate()
      self.assertEqual(await cache.get(), "token-2")

    asyncio.run(scenario())

  def test_failed_refresh_is_retried_by_next_caller(self) -> None:
    attempts = []

    async def flaky_fetch():
      attempts.append(None)
      if len(attempts) == 1:
        raise RuntimeError("token endpoint down")
      return "token-ok", 3600

    cache = TokenCache(flaky_fetch, clock=self._clock)

    async def scenario() -> None:
      with self.assertRaises(RuntimeError):
        await cache.get()
      self.assertEqual(await cache.get(), "token-ok")

    asyncio.run(scenario())
    self.assertLen(attempts, 2)


if __name__ == "__main__":
  absltest.main()
