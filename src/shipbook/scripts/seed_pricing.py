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

"""Seeds or updates pricing rules.

Without --profile, the default rules (regular 20%, mid_level 15%, vip 10%) are
created where missing. With --profile, that profile's rule is replaced.

Usage:
  python -m shipbook.scripts.seed_pricing --db_path=...
  python -m shipbook.scripts.seed_pricing --db_path=... --profile=vip \
      --margin=10 --tier=0:12 --tier=500:8
"""

import asyncio
from decimal import Decimal
from decimal import InvalidOperation
import sys

from absl import app as absl_app
from absl import flags
from shipbook import db
from shipbook.services.pricing_service import PricingService

FLAGS = flags.FLAGS
flags.DEFINE_string("db_path", None, "Path to the SQLite database")
flags.DEFINE_string("profile", None, "Pricing profile to create or replace")
flags.DEFINE_string("display_name", None, "Display name of the profile")
flags.DEFINE_string("margin", None, "Flat margin percentage of the profile")
flags.DEFINE_multi_string(
    "tier", [], "Tier as MIN_AMOUNT:MARGIN_PERCENTAGE; may be repeated"
)


def parse_tier(value: str):
  """Parses `MIN_AMOUNT:MARGIN_PERCENTAGE`."""
  min_amount, sep, margin = value.partition(":")
  if not sep:
    raise ValueError(f"Tier must be MIN_AMOUNT:MARGIN, got {value!r}")
  try:
    return Decimal(min_amount), Decimal(margin)
  except InvalidOperation as e:
    raise ValueError(f"Tier must be numeric, got {value!r}") from e


async def seed():
  """Writes the requested pricing rules and prints the result."""
  await db.manager.init_db(FLAGS.db_path)
  try:
    async with db.manager.session_factory() as session:
      pricing = PricingService(session)
      if FLAGS.profile:
        if FLAGS.margin is None:
          print("Error: --margin is required with --profile.")
          sys.exit(1)
        await pricing.upsert_rule(
            FLAGS.profile,
            FLAGS.display_name or FLAGS.profile,
            Decimal(FLAGS.margin),
            [parse_tier(t) for t in FLAGS.tier],
        )
      else:
        created = await pricing.seed_default_rules()
        print(f"Created {created} default pricing rules.")

      for rule in await db.list_pricing_rules(session):
        active = "" if rule.is_active else " (inactive)"
        print(f"{rule.profile}: {rule.margin_percentage}%{active}")
        for tier in rule.tiers:
          print(
              f"  from {tier.min_amount / 100:.2f}:"
              f" {tier.margin_percentage}%"
          )
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the pricing seed script."""
  del argv
  if not FLAGS.db_path:
    print("Error: --db_path is required.")
    sys.exit(1)
  asyncio.run(seed())


if __name__ == "__main__":
  absl_app.run(main)
