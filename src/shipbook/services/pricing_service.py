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

"""Tiered margin pricing.

A client's pricing profile names a `PricingRule`. The rule's tiers are sorted
by `min_amount`; a base rate uses the margin of the tier with the greatest
`min_amount` not above it, and the rule's flat margin when no tier applies.
"""

from decimal import Decimal
import logging
from typing import Optional, Sequence, Tuple

from shipbook import db
from shipbook.exceptions import ValidationError
from shipbook.models import PriceBreakdown
from shipbook.money import from_minor_units
from shipbook.money import quantize
from shipbook.money import to_iso
from shipbook.money import to_minor_units
from shipbook.money import utcnow
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "regular"
DEFAULT_MARGIN_PERCENTAGE = Decimal("20")

# (profile, display name, flat margin)
DEFAULT_RULES = (
    ("regular", "Regular", Decimal("20")),
    ("mid_level", "Mid Level", Decimal("15")),
    ("vip", "VIP", Decimal("10")),
)

# (min base rate, margin percentage), in major units.
Tier = Tuple[Decimal, Decimal]


def select_margin(
    tiers: Sequence[Tier], flat_margin: Decimal, base_rate: Decimal
) -> Decimal:
  """Returns the margin percentage that applies to `base_rate`."""
  margin = flat_margin
  for min_amount, tier_margin in sorted(tiers, key=lambda t: t[0]):
    if min_amount > base_rate:
      break
    margin = tier_margin
  return margin


def apply_margin(
    base_rate: Decimal, margin_percentage: Decimal
) -> PriceBreakdown:
  """Computes the client price for a base rate.

  The margin is taken on the unrounded carrier rate and the final price is
  rounded half-up to cents once. The reported base rate and margin amount are
  rounded separately for display.
  """
  base_rate = Decimal(base_rate)
  margin_percentage = Decimal(margin_percentage)
  margin = base_rate * margin_percentage / 100
  return PriceBreakdown(
      base_rate=quantize(base_rate),
      margin_percentage=margin_percentage,
      margin_amount=quantize(margin),
      final_price=quantize(base_rate + margin),
  )


def _rule_tiers(rule: db.PricingRule) -> Sequence[Tier]:
  return [
      (from_minor_units(t.min_amount), Decimal(t.margin_percentage))
      for t in rule.tiers
  ]


def _check_percentage(value: Decimal) -> Decimal:
  value = Decimal(value)
  if value < 0 or value > 100:
    raise ValidationError("Margin percentage must be between 0 and 100")
  return value


class PricingService:
  """Prices carrier rates per client profile."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def compute_final_price(
      self, profile: Optional[str], base_rate: Decimal
  ) -> PriceBreakdown:
    profile = profile or DEFAULT_PROFILE
    rule = await db.get_pricing_rule(self.session, profile)
    if rule is None:
      logger.warning(
          "No active pricing rule for profile %s, using default %s%% margin",
          profile,
          DEFAULT_MARGIN_PERCENTAGE,
      )
      return apply_margin(base_rate, DEFAULT_MARGIN_PERCENTAGE)
    margin = select_margin(
        _rule_tiers(rule), Decimal(rule.margin_percentage), base_rate
    )
    return apply_margin(base_rate, margin)

  async def upsert_rule(
      self,
      profile: str,
      display_name: str,
      margin_percentage: Decimal,
      tiers: Sequence[Tier] = (),
      is_active: bool = True,
  ) -> db.PricingRule:
    """Creates or replaces the pricing rule of a profile.

    Args:
      profile: The pricing profile key.
      display_name: Human readable name of the profile.
      margin_percentage: The flat margin used when no tier applies.
      tiers: `(min_amount, margin_percentage)` pairs with distinct minimums.
      is_active: Whether the rule is used for pricing.

    Returns:
      The stored rule.

    Raises:
      ValidationError: A margin is outside [0, 100], a minimum is negative,
        or two tiers share a minimum.
    """
    margin_percentage = _check_percentage(margin_percentage)
    checked = []
    for min_amount, tier_margin in tiers:
      if Decimal(min_amount) < 0:
        raise ValidationError("Tier minimum amount must not be negative")
      checked.append(
          (to_minor_units(min_amount), _check_percentage(tier_margin))
      )
    minimums = [m for m, _ in checked]
    if len(set(minimums)) != len(minimums):
      raise ValidationError("Tier minimum amounts must be distinct")

    rule = await db.get_pricing_rule(self.session, profile, active_only=False)
    if rule is None:
      rule = db.PricingRule(profile=profile, tiers=[])
      self.session.add(rule)
    else:
      rule.tiers.clear()
      # Old tiers must be gone before new ones reuse their minimums.
      await self.session.flush()

    rule.display_name = display_name
    rule.margin_percentage = margin_percentage
    rule.is_active = is_active
    rule.updated_at = to_iso(utcnow())
    for min_amount, tier_margin in sorted(checked):
      rule.tiers.append(
          db.PricingTier(min_amount=min_amount, margin_percentage=tier_margin)
      )
    await self.session.commit()
    logger.info(
        "Pricing rule %s set: flat %s%%, %d tiers, active %s",
        profile,
        margin_percentage,
        len(checked),
        is_active,
    )
    return rule

  async def seed_default_rules(self) -> int:
    """Creates the default profiles that do not exist yet."""
    created = 0
    for profile, display_name, margin in DEFAULT_RULES:
      existing = await db.get_pricing_rule(
          self.session, profile, active_only=False
      )
      if existing is None:
        await self.upsert_rule(profile, display_name, margin)
        created += 1
    return created
