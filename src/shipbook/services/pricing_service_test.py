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

"""Tests for tiered margin pricing."""

import asyncio
from decimal import Decimal
import os
import shutil
import tempfile

from absl.testing import absltest
from shipbook import db
from shipbook import testing
from shipbook.exceptions import ValidationError
from shipbook.services import pricing_service
from shipbook.services.pricing_service import PricingService

D = Decimal

TIERS = [(D("0"), D("100")), (D("100"), D("50")), (D("500"), D("25"))]


class MarginMathTest(absltest.TestCase):

  def test_highest_tier_not_above_base_rate_applies(self) -> None:
    self.assertEqual(
        pricing_service.select_margin(TIERS, D("20"), D("150")), D("50")
    )
    self.assertEqual(
        pricing_service.select_margin(TIERS, D("20"), D("99.99")), D("100")
    )
    self.assertEqual(
        pricing_service.select_margin(TIERS, D("20"), D("500")), D("25")
    )

  def test_flat_margin_below_first_tier(self) -> None:
    tiers = [(D("100"), D("10"))]
    self.assertEqual(
        pricing_service.select_margin(tiers, D("20"), D("99")), D("20")
    )
    self.assertEqual(
        pricing_service.select_margin([], D("15"), D("1000")), D("15")
    )

  def test_unsorted_tiers(self) -> None:
    self.assertEqual(
        pricing_service.select_margin(list(reversed(TIERS)), D("20"), D("150")),
        D("50"),
    )

  def test_apply_margin(self) -> None:
    price = pricing_service.apply_margin(D("150"), D("50"))
    self.assertEqual(price.margin_amount, D("75.00"))
    self.assertEqual(price.final_price, D("225.00"))

  def test_apply_margin_rounds_half_up(self) -> None:
    # 10.05 * 15% = 1.5075
    price = pricing_service.apply_margin(D("10.05"), D("15"))
    self.assertEqual(price.margin_amount, D("1.51"))
    self.assertEqual(price.final_price, D("11.56"))

  def test_apply_margin_uses_unrounded_base_rate(self) -> None:
    # 10.005 * 1.5 = 15.0075; rounding the base first would give 15.02.
    price = pricing_service.apply_margin(D("10.005"), D("50"))
    self.assertEqual(price.base_rate, D("10.01"))
    self.assertEqual(price.margin_amount, D("5.00"))
    self.assertEqual(price.final_price, D("15.01"))

  def test_zero_margin(self) -> None:
    price = pricing_service.apply_margin(D("42.10"), D("0"))
    self.assertEqual(price.final_price, D("42.10"))


class PricingServiceTest(absltest.TestCase):
  """Pricing rules stored in the database."""

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.db_path = os.path.join(self.test_dir, "pricing.db")

  def tearDown(self) -> None:
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def _run(self, scenario) -> None:
    async def run() -> None:
      async with testing.temp_database(self.db_path) as manager:
        async with manager.session_factory() as session:
          await scenario(PricingService(session))

    asyncio.run(run())

  def test_tiered_profile(self) -> None:
    async def scenario(pricing: PricingService) -> None:
      await pricing.upsert_rule("vip", "VIP", D("10"), TIERS)
      price = await pricing.compute_final_price("vip", D("150"))
      self.assertEqual(price.margin_percentage, D("50"))
      self.assertEqual(price.final_price, D("225.00"))

    self._run(scenario)

  def test_unknown_profile_uses_default_margin(self) -> None:
    async def scenario(pricing: PricingService) -> None:
      with self.assertLogs(pricing_service.logger, "WARNING"):
        price = await pricing.compute_final_price("platinum", D("100"))
      self.assertEqual(price.margin_percentage, D("20"))
      self.assertEqual(price.final_price, D("120.00"))

    self._run(scenario)

  def test_inactive_rule_is_ignored(self) -> None:
    async def scenario(pricing: PricingService) -> None:
      await pricing.upsert_rule("vip", "VIP", D("5"), is_active=False)
      price = await pricing.compute_final_price("vip", D("100"))
      self.assertEqual(price.final_price, D("120.00"))

    self._run(scenario)

  def test_upsert_replaces_tiers(self) -> None:
    async def scenario(pricing: PricingService) -> None:
      await pricing.upsert_rule("vip", "VIP", D("10"), TIERS)
      # Reuses the 100.00 minimum with a different margin.
      await pricing.upsert_rule("vip", "VIP", D("10"), [(D("100"), D("5"))])
      rule = await db.get_pricing_rule(pricing.session, "vip")
      self.assertLen(rule.tiers, 1)
      self.assertEqual(rule.tiers[0].min_amount, 10000)
      price = await pricing.compute_final_price("vip", D("150"))
      self.assertEqual(price.final_price, D("157.50"))

    self._run(scenario)

  def test_rejects_invalid_rules(self) -> None:
    async def scenario(pricing: PricingService) -> None:
      with self.assertRaises(ValidationError):
        await pricing.upsert_rule("vip", "VIP", D("101"))
      with self.assertRaises(ValidationError):
        await pricing.upsert_rule("vip", "VIP", D("10"), [(D("-1"), D("5"))])
      with self.assertRaises(ValidationError):
        await pricing.upsert_rule(
            "vip", "VIP", D("10"), [(D("50"), D("5")), (D("50"), D("7"))]
        )
      self.assertIsNone(
          await db.get_pricing_rule(pricing.session, "vip", active_only=False)
      )

    self._run(scenario)

  def test_seed_default_rules_once(self) -> None:
    async def scenario(pricing: PricingService) -> None:
      self.assertEqual(await pricing.seed_default_rules(), 3)
      self.assertEqual(await pricing.seed_default_rules(), 0)
      price = await pricing.compute_final_price("mid_level", D("100"))
      self.assertEqual(price.final_price, D("115.00"))

    self._run(scenario)


if __name__ == "__main__":
  absltest.main()
